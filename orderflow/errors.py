"""Error taxonomy shared by the orchestration services and the HTTP layer.

Every error carries a machine-readable ``code``, a human-readable ``message``
and a ``details`` mapping with whatever the caller needs to act on it.
``status_code`` is the HTTP status the API renders it with.
"""
from __future__ import annotations

from typing import Any, Iterable


class OrchestrationError(Exception):
    status_code = 500
    code = "orchestration_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(OrchestrationError):
    status_code = 400
    code = "validation_error"


class NotFoundError(OrchestrationError):
    status_code = 404
    code = "not_found"


class AuthorizationError(OrchestrationError):
    status_code = 403
    code = "forbidden"


class ConflictError(OrchestrationError):
    status_code = 409
    code = "conflict"


class InvalidTransition(ConflictError):
    code = "invalid_transition"

    def __init__(self, current: str, requested: str, allowed: Iterable[str]):
        allowed_list = sorted(allowed)
        super().__init__(
            f"order status cannot change from {current} to {requested}",
            {"currentStatus": current, "requestedStatus": requested, "allowedTransitions": allowed_list},
        )
        self.current = current
        self.requested = requested
        self.allowed = allowed_list


class NoOpTransition(ConflictError):
    code = "noop_transition"

    def __init__(self, status: str):
        super().__init__(f"order is already {status}", {"currentStatus": status})
        self.status = status


class TaskAlreadyActive(ConflictError):
    code = "task_already_active"

    def __init__(self, order_id: str, task_id: str, status: str):
        super().__init__(
            f"order {order_id} already has an active task {task_id} ({status})",
            {"orderId": order_id, "taskId": task_id, "status": status},
        )
        self.order_id = order_id
        self.task_id = task_id
        self.status = status


class InvalidTaskTransition(ConflictError):
    code = "invalid_task_transition"

    def __init__(self, task_id: str, current: str, requested: str, reason: str | None = None):
        message = f"task {task_id} cannot change from {current} to {requested}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, {"taskId": task_id, "currentStatus": current, "requestedStatus": requested})
        self.current = current
        self.requested = requested


class OrderNotDispatchable(ConflictError):
    code = "order_not_dispatchable"

    def __init__(self, order_id: str, status: str, dispatchable: Iterable[str]):
        super().__init__(
            f"order {order_id} is {status} and cannot start a task",
            {"orderId": order_id, "currentStatus": status, "dispatchableStatuses": sorted(dispatchable)},
        )


class RetryLimitReached(ConflictError):
    code = "retry_limit_reached"

    def __init__(self, order_id: str, failed_tasks: int, max_retries: int):
        super().__init__(
            f"order {order_id} has used all {max_retries} retries",
            {"orderId": order_id, "failedTasks": failed_tasks, "maxRetries": max_retries},
        )


class OrderBusy(ConflictError):
    code = "order_busy"

    def __init__(self, order_id: str):
        super().__init__(f"order {order_id} is being modified by another request, retry", {"orderId": order_id})


class DependencyError(OrchestrationError):
    status_code = 502
    code = "dependency_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None, transient: bool = True):
        super().__init__(message, details)
        self.transient = transient


class ConfigurationError(DependencyError):
    code = "configuration_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details, transient=False)


class PersistenceError(OrchestrationError):
    status_code = 500
    code = "persistence_error"
