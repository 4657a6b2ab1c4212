"""Task ownership: creation under the per-order lock and every task status write.

Nothing else in the codebase writes ``TaskRecord.status``. Writes go through
``transition``, which reloads the stored task under the order lock and checks
the edge against the stored status, so two racing writers (a poll and a
cancel, say) can never both move the same task.
"""
import copy
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional

from loguru import logger

from .notifier import Notifier
from ..errors import InvalidTaskTransition, NotFoundError, TaskAlreadyActive, ValidationError
from ..storage.schema import TaskRecord, TaskStatus, utcnow

TASK_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

REQUIRED_FIELDS: Dict[TaskStatus, tuple] = {
    TaskStatus.RUNNING: ("external_task_id", "external_execution_id"),
    TaskStatus.COMPLETED: ("output_data",),
    TaskStatus.FAILED: ("error_message",),
    TaskStatus.CANCELLED: (),
}

OPTIONAL_FIELDS: Dict[TaskStatus, tuple] = {
    TaskStatus.RUNNING: (),
    TaskStatus.COMPLETED: (),
    TaskStatus.FAILED: (),
    TaskStatus.CANCELLED: ("error_message",),
}

EVENTS = {
    TaskStatus.RUNNING: "task_started",
    TaskStatus.COMPLETED: "task_completed",
    TaskStatus.FAILED: "task_failed",
    TaskStatus.CANCELLED: "task_cancelled",
}


def is_terminal(status: TaskStatus) -> bool:
    return not TASK_TRANSITIONS[TaskStatus(status)]


class TaskLifecycleManager:
    def __init__(self, repo, notifier: Optional[Notifier] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.repo = repo
        self.notifier = notifier or Notifier()
        self.clock = clock

    def get(self, task_id: str) -> TaskRecord:
        task = self.repo.get_task(task_id)
        if task is None:
            raise NotFoundError(f"task {task_id} does not exist", {"taskId": task_id})
        return task

    def create_for_order(self, order_id: str, ai_service_id: str, input_data: Mapping[str, Any]) -> TaskRecord:
        if not isinstance(input_data, Mapping):
            raise ValidationError("task input must be an object", {"orderId": order_id})
        with self.repo.order_lock(order_id):
            existing = self.repo.active_task_for_order(order_id)
            if existing is not None:
                raise TaskAlreadyActive(order_id, existing.id, existing.status.value)
            now = self.clock()
            task = TaskRecord(
                order_id=order_id,
                ai_service_id=ai_service_id,
                input_data=copy.deepcopy(dict(input_data)),
                status=TaskStatus.PENDING,
                retry_count=0,
                created_at=now,
                updated_at=now,
            )
            self.repo.insert_task(task)
        logger.info(f"Task {task.id} created for order {order_id}")
        self.notifier.notify("task_created", self._payload(task))
        return task

    def transition(self, task: TaskRecord, requested: TaskStatus,
                   fields: Optional[Mapping[str, Any]] = None) -> TaskRecord:
        requested = TaskStatus(requested)
        fields = dict(fields or {})
        with self.repo.order_lock(task.order_id):
            stored = self.get(task.id)
            current = stored.status
            if requested not in TASK_TRANSITIONS[current]:
                reason = "task is terminal" if is_terminal(current) else None
                raise InvalidTaskTransition(task.id, current.value, requested.value, reason)

            allowed = set(REQUIRED_FIELDS[requested]) | set(OPTIONAL_FIELDS[requested])
            unexpected = sorted(set(fields) - allowed)
            if unexpected:
                raise InvalidTaskTransition(task.id, current.value, requested.value,
                                            f"unexpected fields {', '.join(unexpected)}")
            missing = [name for name in REQUIRED_FIELDS[requested] if fields.get(name) in (None, "")]
            if missing:
                raise InvalidTaskTransition(task.id, current.value, requested.value,
                                            f"missing {', '.join(missing)}")

            now = self.clock()
            update: Dict[str, Any] = {"status": requested, "updated_at": now, **fields}
            if requested == TaskStatus.RUNNING:
                update["started_at"] = now
            elif is_terminal(requested):
                update["completed_at"] = now
                if stored.started_at is not None:
                    update["execution_time"] = max(0, int((now - stored.started_at).total_seconds()))
            if "output_data" in update:
                update["output_data"] = copy.deepcopy(update["output_data"])
            updated = stored.model_copy(update=update)
            self.repo.save_task(updated)

        logger.info(f"Task {updated.id}: {current.value} -> {requested.value}")
        self.notifier.notify(EVENTS[requested], self._payload(updated))
        return updated

    def record_retry(self, task: TaskRecord) -> TaskRecord:
        with self.repo.order_lock(task.order_id):
            stored = self.get(task.id)
            updated = stored.model_copy(update={"retry_count": stored.retry_count + 1, "updated_at": self.clock()})
            self.repo.save_task(updated)
        return updated

    def touch(self, task: TaskRecord) -> TaskRecord:
        """Refresh ``updated_at`` unless the stored task moved on in the meantime."""
        with self.repo.order_lock(task.order_id):
            stored = self.get(task.id)
            if stored.status != task.status:
                return stored
            updated = stored.model_copy(update={"updated_at": self.clock()})
            self.repo.save_task(updated)
        return updated

    @staticmethod
    def _payload(task: TaskRecord) -> Dict[str, Any]:
        return {
            "taskId": task.id,
            "orderId": task.order_id,
            "status": task.status.value,
            "retryCount": task.retry_count,
            "executionTime": task.execution_time,
            "errorMessage": task.error_message,
            "updatedAt": task.updated_at.isoformat(),
        }
