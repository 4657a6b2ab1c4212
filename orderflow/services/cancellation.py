from loguru import logger

from .backend import BackendError, DifyBackend, backend_user
from .lifecycle import TaskLifecycleManager
from .orders import OrderService
from .service_config import ServiceConfigResolver
from ..errors import ConfigurationError, InvalidTaskTransition
from ..storage.schema import ACTIVE_TASK_STATUSES, TaskRecord, TaskStatus


class CancellationHandler:
    """Cancels a task locally no matter what the backend says.

    The backend stop call is best-effort: if it fails, the failure is kept in
    ``error_message`` and the task is still marked ``cancelled``.
    """

    def __init__(self, lifecycle: TaskLifecycleManager, resolver: ServiceConfigResolver, backend: DifyBackend,
                 orders: OrderService):
        self.lifecycle = lifecycle
        self.resolver = resolver
        self.backend = backend
        self.orders = orders

    def cancel(self, task: TaskRecord) -> TaskRecord:
        task = self.lifecycle.get(task.id)
        if task.status not in ACTIVE_TASK_STATUSES:
            raise InvalidTaskTransition(task.id, task.status.value, TaskStatus.CANCELLED.value, "task is terminal")

        annotation = None
        if task.external_task_id:
            try:
                config = self.resolver.get_config(task.ai_service_id)
                self.backend.stop(config, task.external_task_id, backend_user(task.id))
            except (BackendError, ConfigurationError) as exc:
                annotation = f"cancelled locally; backend stop not acknowledged: {exc}"
                logger.warning(f"Task {task.id}: {annotation}")

        fields = {"error_message": annotation} if annotation else {}
        cancelled = self.lifecycle.transition(task, TaskStatus.CANCELLED, fields)
        self.orders.settle_for_task(cancelled)
        return cancelled
