import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from loguru import logger

from .backend import BackendError, DifyBackend, ExecutionState, backend_user
from .lifecycle import TaskLifecycleManager, is_terminal
from .orders import OrderService
from .service_config import ServiceConfigResolver
from ..errors import ConfigurationError, ConflictError, DependencyError, InvalidTaskTransition
from ..storage.schema import TaskRecord, TaskStatus, utcnow

LOST_REFERENCE = "execution reference lost"
STOPPED_BY_BACKEND = "execution stopped by backend"


@dataclass
class SweepReport:
    checked: int = 0
    synced: int = 0
    failed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class ExecutionReconciler:
    def __init__(self, lifecycle: TaskLifecycleManager, resolver: ServiceConfigResolver, backend: DifyBackend,
                 orders: OrderService, clock: Callable[[], datetime] = utcnow,
                 sleep: Callable[[float], None] = time.sleep, monotonic: Callable[[], float] = time.monotonic):
        self.lifecycle = lifecycle
        self.resolver = resolver
        self.backend = backend
        self.orders = orders
        self.clock = clock
        self.sleep = sleep
        self.monotonic = monotonic

    def sync(self, task: TaskRecord) -> TaskRecord:
        """Pull the backend's view of ``task`` into the store.

        Terminal tasks are returned as stored without contacting the backend.
        Backend failures raise ``DependencyError`` and leave the task as it was.
        """
        task = self.lifecycle.get(task.id)
        if is_terminal(task.status):
            return task
        if task.status == TaskStatus.PENDING or not task.external_execution_id:
            return task

        try:
            config = self.resolver.get_config(task.ai_service_id)
            result = self.backend.query_status(config, task.external_execution_id)
        except ConfigurationError as exc:
            raise DependencyError(f"cannot reach backend for task {task.id}: {exc.message}",
                                  {"taskId": task.id}, transient=False) from exc
        except BackendError as exc:
            logger.warning(f"Sync of task {task.id} failed: {exc}")
            raise DependencyError(f"status query for task {task.id} failed: {exc}",
                                  {"taskId": task.id, "status": task.status.value}, transient=exc.transient) from exc

        if result.state == ExecutionState.RUNNING:
            return self.lifecycle.touch(task)
        if result.state == ExecutionState.SUCCEEDED:
            return self._finish(task, TaskStatus.COMPLETED, {"output_data": result.outputs or {}})
        if result.state == ExecutionState.FAILED:
            return self._finish(task, TaskStatus.FAILED, {"error_message": result.error or "execution failed"})
        if result.state == ExecutionState.STOPPED:
            return self._finish(task, TaskStatus.FAILED, {"error_message": STOPPED_BY_BACKEND})
        return self._finish(task, TaskStatus.FAILED, {"error_message": LOST_REFERENCE})

    def poll(self, task_id: str, timeout: float, interval: float = 3.0) -> TaskRecord:
        """Sync repeatedly until the task is terminal or ``timeout`` seconds elapse.

        Transient sync failures are logged and retried on the next tick; the
        last stored task is returned when the deadline passes.
        """
        deadline = self.monotonic() + timeout
        task = self.lifecycle.get(task_id)
        while True:
            try:
                task = self.sync(task)
            except DependencyError as exc:
                if not exc.transient:
                    raise
                task = self.lifecycle.get(task_id)
            if is_terminal(task.status) or self.monotonic() + interval > deadline:
                return task
            self.sleep(interval)

    def sweep(self, stale_after: float, max_execution: float, now: Optional[datetime] = None) -> SweepReport:
        """Reconcile non-terminal tasks nobody has looked at recently."""
        now = now or self.clock()
        stale_cutoff = now - timedelta(seconds=stale_after)
        report = SweepReport()
        for task in self.lifecycle.repo.list_active_tasks():
            report.checked += 1
            try:
                if task.status == TaskStatus.PENDING:
                    if task.updated_at < stale_cutoff:
                        self._finish(task, TaskStatus.FAILED, {"error_message": "dispatch did not complete"})
                        report.failed.append(task.id)
                    continue
                if task.started_at and (now - task.started_at).total_seconds() > max_execution:
                    self._stop_quietly(task)
                    self._finish(task, TaskStatus.FAILED,
                                 {"error_message": f"execution timed out after {int(max_execution)}s"})
                    report.failed.append(task.id)
                    continue
                if task.updated_at < stale_cutoff:
                    synced = self.sync(task)
                    report.synced += 1
                    if synced.status == TaskStatus.FAILED:
                        report.failed.append(task.id)
            except (DependencyError, ConflictError) as exc:
                report.errors.append(f"{task.id}: {exc.message}")
        logger.info(
            f"Sweep checked {report.checked} active task(s): {report.synced} synced, "
            f"{len(report.failed)} failed, {len(report.errors)} error(s)"
        )
        return report

    def _finish(self, task: TaskRecord, status: TaskStatus, fields: dict) -> TaskRecord:
        try:
            finished = self.lifecycle.transition(task, status, fields)
        except InvalidTaskTransition:
            stored = self.lifecycle.get(task.id)
            if not is_terminal(stored.status):
                raise
            # Another writer (usually a cancel) got there first.
            return stored
        self.orders.settle_for_task(finished)
        return finished

    def _stop_quietly(self, task: TaskRecord) -> None:
        if not task.external_task_id:
            return
        try:
            config = self.resolver.get_config(task.ai_service_id)
            self.backend.stop(config, task.external_task_id, backend_user(task.id))
        except (BackendError, ConfigurationError) as exc:
            logger.warning(f"Could not stop timed-out run for task {task.id}: {exc}")
