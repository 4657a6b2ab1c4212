"""Composition root for the orchestration services.

Every collaborator (store, backend, notifier, clock, sleep) is passed in, so
tests and the Celery worker build their own ``Orchestrator`` instead of
sharing module-level state.
"""
import time
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from .backend import DifyBackend
from .cancellation import CancellationHandler
from .dispatcher import TaskDispatcher
from .lifecycle import TaskLifecycleManager
from .notifier import Notifier, RedisNotifier
from .orders import OrderService
from .reconciler import ExecutionReconciler, SweepReport
from .service_config import ServiceConfigResolver
from ..config import Settings, settings as default_settings
from ..errors import (
    AuthorizationError,
    DependencyError,
    InvalidTaskTransition,
    InvalidTransition,
    NoOpTransition,
    OrchestrationError,
    OrderNotDispatchable,
    PersistenceError,
    RetryLimitReached,
    ValidationError,
)
from ..storage.repo import Repo, build_repo
from ..storage.schema import (
    DISPATCHABLE_ORDER_STATUSES,
    OrderStatus,
    ServiceRecord,
    TaskRecord,
    TaskStatus,
    utcnow,
)


class Orchestrator:
    def __init__(self, repo, backend: DifyBackend, notifier: Optional[Notifier] = None,
                 cfg: Settings | None = None, clock: Callable[[], datetime] = utcnow,
                 sleep: Callable[[float], None] = time.sleep,
                 enqueue_dispatch: Optional[Callable[[str], None]] = None):
        self.cfg = cfg or default_settings
        self.repo = repo
        self.clock = clock
        self.enqueue_dispatch = enqueue_dispatch
        notifier = notifier or Notifier()
        self.orders = OrderService(repo, notifier, clock)
        self.lifecycle = TaskLifecycleManager(repo, notifier, clock)
        self.resolver = ServiceConfigResolver(repo, self.cfg)
        self.dispatcher = TaskDispatcher(
            self.lifecycle, self.resolver, backend,
            max_retries=self.cfg.max_retries,
            retry_delay=self.cfg.retry_delay_seconds,
            retry_max_delay=self.cfg.retry_max_delay_seconds,
            sleep=sleep,
        )
        self.reconciler = ExecutionReconciler(self.lifecycle, self.resolver, backend, self.orders,
                                              clock=clock, sleep=sleep)
        self.cancellation = CancellationHandler(self.lifecycle, self.resolver, backend, self.orders)

    def start_for_order(self, order_id: str, user_id: Optional[str] = None,
                        async_dispatch: bool = False) -> TaskRecord:
        """Create the order's task and dispatch it, inline or through the worker."""
        order = self.orders.get_order(order_id, user_id)
        if order.status not in DISPATCHABLE_ORDER_STATUSES:
            raise OrderNotDispatchable(order.id, order.status.value, [s.value for s in DISPATCHABLE_ORDER_STATUSES])
        if async_dispatch and self.enqueue_dispatch is None:
            raise ValidationError("asynchronous dispatch is not available on this deployment")
        failed = sum(1 for t in self.repo.tasks_for_order(order.id) if t.status == TaskStatus.FAILED)
        # The first task is not a retry.
        if failed > self.cfg.max_task_retries:
            raise RetryLimitReached(order.id, failed, self.cfg.max_task_retries)

        task = self.lifecycle.create_for_order(order.id, order.ai_service_id, order.service_data)
        if order.status == OrderStatus.PAID:
            try:
                self.orders.update_status(order.id, OrderStatus.PROCESSING, reason=f"task {task.id} created")
            except (InvalidTransition, NoOpTransition) as exc:
                logger.warning(f"Order {order.id} changed before task {task.id} was dispatched: {exc.message}")
                self.lifecycle.transition(task, TaskStatus.CANCELLED, {"error_message": "order changed before dispatch"})
                current = self.orders.get_order(order.id)
                raise OrderNotDispatchable(order.id, current.status.value,
                                           [s.value for s in DISPATCHABLE_ORDER_STATUSES]) from exc
            except PersistenceError:
                # Order write failed; release the order so a later start is not blocked.
                self._abandon(task, "order update failed before dispatch")
                raise

        if async_dispatch:
            try:
                self.enqueue_dispatch(task.id)
            except Exception as exc:
                self._abandon(task, "could not queue dispatch")
                raise DependencyError(f"could not queue task {task.id}: {exc}", {"taskId": task.id}) from exc
            logger.info(f"Task {task.id} queued for dispatch")
            return task
        return self.dispatcher.submit(task)

    def _abandon(self, task: TaskRecord, reason: str) -> None:
        try:
            self.lifecycle.transition(task, TaskStatus.FAILED, {"error_message": reason})
        except OrchestrationError as exc:
            logger.error(f"Task {task.id} left {task.status.value} after {reason}: {exc.message}")

    def retry_task(self, task_id: str, user_id: Optional[str] = None, async_dispatch: bool = False) -> TaskRecord:
        """Start a fresh task for the order of a failed one; the failed task stays as history."""
        task = self.get_task(task_id, user_id)
        if task.status != TaskStatus.FAILED:
            raise InvalidTaskTransition(task.id, task.status.value, TaskStatus.PENDING.value,
                                        "only failed tasks can be retried")
        return self.start_for_order(task.order_id, user_id, async_dispatch=async_dispatch)

    def get_task(self, task_id: str, user_id: Optional[str] = None) -> TaskRecord:
        task = self.lifecycle.get(task_id)
        if user_id is not None:
            order = self.repo.get_order(task.order_id)
            if order is None or order.user_id != user_id:
                raise AuthorizationError("task belongs to another user", {"taskId": task_id})
        return task

    def sync_task(self, task_id: str, user_id: Optional[str] = None, wait: float = 0) -> TaskRecord:
        task = self.get_task(task_id, user_id)
        if wait > 0:
            timeout = min(wait, self.cfg.max_status_longpoll_seconds)
            return self.reconciler.poll(task.id, timeout=timeout, interval=self.cfg.poll_interval_seconds)
        return self.reconciler.sync(task)

    def cancel_task(self, task_id: str, user_id: Optional[str] = None) -> TaskRecord:
        return self.cancellation.cancel(self.get_task(task_id, user_id))

    def sweep(self) -> SweepReport:
        return self.reconciler.sweep(self.cfg.stale_task_seconds, self.cfg.max_execution_seconds)

    def save_service(self, service_id: str, display_name: str, base_url: Optional[str] = None,
                     api_key: Optional[str] = None, timeout_seconds: Optional[float] = None,
                     is_active: bool = True) -> ServiceRecord:
        now = self.clock()
        existing = self.repo.get_service(service_id)
        record = ServiceRecord(
            id=service_id,
            display_name=display_name,
            base_url=base_url if base_url is not None else (existing.base_url if existing else None),
            api_key=api_key if api_key is not None else (existing.api_key if existing else None),
            timeout_seconds=timeout_seconds or (existing.timeout_seconds if existing else self.cfg.backend_timeout_seconds),
            is_active=is_active,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self.repo.save_service(record)
        logger.info(f"AI service {service_id} saved (active={is_active})")
        return record


def _enqueue_with_celery(task_id: str) -> None:
    from worker.celery_app import dispatch_task
    dispatch_task.delay(task_id)


def build_orchestrator(cfg: Settings | None = None) -> Orchestrator:
    cfg = cfg or default_settings
    repo = build_repo(cfg)
    if isinstance(repo, Repo):
        notifier: Notifier = RedisNotifier(repo.r, cfg.notify_channel)
        enqueue = _enqueue_with_celery
    else:
        notifier = Notifier()
        enqueue = None
    return Orchestrator(
        repo,
        DifyBackend(response_mode=cfg.dify_response_mode),
        notifier=notifier,
        cfg=cfg,
        enqueue_dispatch=enqueue,
    )
