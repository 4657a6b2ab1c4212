import copy
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from loguru import logger

from . import order_state
from .notifier import Notifier
from ..errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransition,
    NoOpTransition,
    NotFoundError,
    ValidationError,
)
from ..storage.schema import OrderRecord, OrderStatus, PaymentMethod, TaskRecord, TaskStatus, utcnow

# How a task's terminal state carries over to its order. Failed tasks leave the
# order in processing so it can be dispatched again explicitly.
SETTLEMENT = {
    TaskStatus.COMPLETED: OrderStatus.COMPLETED,
    TaskStatus.CANCELLED: OrderStatus.CANCELLED,
}


class OrderService:
    def __init__(self, repo, notifier: Optional[Notifier] = None, clock: Callable[[], datetime] = utcnow):
        self.repo = repo
        self.notifier = notifier or Notifier()
        self.clock = clock

    def create_order(self, user_id: str, ai_service_id: str, service_data: Optional[Mapping[str, Any]],
                     amount: Any, payment_method: Optional[PaymentMethod] = None) -> OrderRecord:
        if not user_id:
            raise ValidationError("user id is required")
        service = self.repo.get_service(ai_service_id)
        if service is None:
            raise NotFoundError(f"AI service {ai_service_id} does not exist", {"aiServiceId": ai_service_id})
        if not service.is_active:
            raise ValidationError(f"AI service {service.display_name} is disabled", {"aiServiceId": ai_service_id})
        try:
            value = Decimal(str(amount))
            if not value.is_finite() or value <= 0:
                raise ValidationError("amount must be positive", {"amount": str(amount)})
            value = value.quantize(Decimal("0.01"))
        except (InvalidOperation, ValueError) as exc:
            # quantize also lands here when the amount has too many digits
            raise ValidationError(f"invalid amount {amount!r}", {"amount": str(amount)}) from exc

        now = self.clock()
        order = OrderRecord(
            user_id=user_id,
            ai_service_id=ai_service_id,
            service_data=copy.deepcopy(dict(service_data or {})),
            amount=value,
            payment_method=payment_method,
            created_at=now,
            updated_at=now,
        )
        self.repo.save_order(order)
        logger.info(f"Order {order.id} created for user {user_id} ({ai_service_id}, {order.amount})")
        self.notifier.notify("order_created", self._payload(order))
        return order

    def get_order(self, order_id: str, user_id: Optional[str] = None) -> OrderRecord:
        order = self.repo.get_order(order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} does not exist", {"orderId": order_id})
        if user_id is not None and order.user_id != user_id:
            raise AuthorizationError("order belongs to another user", {"orderId": order_id})
        return order

    def list_orders(self, user_id: Optional[str] = None, status: Optional[OrderStatus] = None,
                    page: int = 1, limit: int = 10) -> Tuple[List[OrderRecord], int]:
        page = max(1, page)
        limit = min(100, max(1, limit))
        return self.repo.list_orders(user_id=user_id, status=status, offset=(page - 1) * limit, limit=limit)

    def update_status(self, order_id: str, status: OrderStatus, user_id: Optional[str] = None,
                      payment_method: Optional[PaymentMethod] = None, transaction_id: Optional[str] = None,
                      reason: Optional[str] = None) -> OrderRecord:
        with self.repo.order_lock(order_id):
            order = self.get_order(order_id, user_id)
            updated = order_state.transition(order, status, now=self.clock())
            if updated.status == OrderStatus.PAID:
                extra: Dict[str, Any] = {}
                if payment_method:
                    extra["payment_method"] = payment_method
                if transaction_id:
                    extra["transaction_id"] = transaction_id
                updated = updated.model_copy(update=extra)
            self.repo.save_order(updated)

        logger.info(
            f"Order {order_id}: {order.status.value} -> {updated.status.value}"
            + (f" ({reason})" if reason else "")
            + (f" by {user_id}" if user_id else "")
        )
        self.notifier.notify("order_status_changed", {
            **self._payload(updated),
            "fromStatus": order.status.value,
            "reason": reason,
        })
        return updated

    def settle_for_task(self, task: TaskRecord) -> Optional[OrderRecord]:
        """Carry a task's terminal state over to its order, where the order allows it."""
        target = SETTLEMENT.get(task.status)
        if target is None:
            return None
        order = self.repo.get_order(task.order_id)
        if order is None:
            logger.warning(f"Task {task.id} settled but order {task.order_id} is gone")
            return None
        if target not in order_state.allowed_targets(order.status):
            logger.info(f"Order {order.id} stays {order.status.value} after task {task.id} {task.status.value}")
            return None
        try:
            return self.update_status(order.id, target, reason=f"task {task.id} {task.status.value}")
        except (InvalidTransition, NoOpTransition) as exc:
            # Order moved concurrently; its new state wins.
            logger.info(f"Order {order.id} not settled for task {task.id}: {exc.message}")
            return None

    def delete_order(self, order_id: str, user_id: Optional[str] = None) -> int:
        with self.repo.order_lock(order_id):
            self.get_order(order_id, user_id)
            active = self.repo.active_task_for_order(order_id)
            if active is not None:
                raise ConflictError(
                    f"order {order_id} has an active task {active.id}, cancel it first",
                    {"orderId": order_id, "taskId": active.id, "status": active.status.value},
                )
            removed = self.repo.delete_order(order_id)
        logger.info(f"Order {order_id} deleted with {removed} task(s)")
        self.notifier.notify("order_deleted", {"orderId": order_id, "tasksDeleted": removed})
        return removed

    @staticmethod
    def _payload(order: OrderRecord) -> Dict[str, Any]:
        return {
            "orderId": order.id,
            "userId": order.user_id,
            "status": order.status.value,
            "updatedAt": order.updated_at.isoformat(),
        }
