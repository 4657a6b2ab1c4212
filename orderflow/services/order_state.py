from datetime import datetime
from typing import Dict, FrozenSet

from ..errors import InvalidTransition, NoOpTransition
from ..storage.schema import OrderRecord, OrderStatus, utcnow

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.PROCESSING, OrderStatus.REFUNDED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


def allowed_targets(status: OrderStatus) -> FrozenSet[OrderStatus]:
    return ORDER_TRANSITIONS[OrderStatus(status)]


def is_terminal(status: OrderStatus) -> bool:
    return not allowed_targets(status)


def transition(order: OrderRecord, requested: OrderStatus, now: datetime | None = None) -> OrderRecord:
    """Return a copy of ``order`` moved to ``requested``.

    Raises ``NoOpTransition`` when the order is already in ``requested`` and
    ``InvalidTransition`` for any edge outside ``ORDER_TRANSITIONS``. Nothing is
    persisted here.
    """
    current = OrderStatus(order.status)
    requested = OrderStatus(requested)
    if current == requested:
        raise NoOpTransition(current.value)
    allowed = ORDER_TRANSITIONS[current]
    if requested not in allowed:
        raise InvalidTransition(current.value, requested.value, [s.value for s in allowed])

    now = now or utcnow()
    update = {"status": requested, "updated_at": now}
    if requested == OrderStatus.PAID:
        update["paid_at"] = now
    elif requested == OrderStatus.COMPLETED:
        update["completed_at"] = now
    return order.model_copy(update=update)
