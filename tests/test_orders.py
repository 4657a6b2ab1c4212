from decimal import Decimal
from pathlib import Path
import sys

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from conftest import SERVICE_ID
from orderflow.errors import (
    AuthorizationError,
    ConflictError,
    DependencyError,
    InvalidTransition,
    NotFoundError,
    OrderNotDispatchable,
    PersistenceError,
    RetryLimitReached,
    ValidationError,
)
from orderflow.storage.schema import OrderStatus, PaymentMethod, TaskStatus


def test_create_order(orch, notifier):
    order = orch.orders.create_order("user-1", SERVICE_ID, {"age": 30}, "19.9")

    assert order.status == OrderStatus.PENDING
    assert order.amount == Decimal("19.90")
    assert orch.orders.get_order(order.id) == order
    assert notifier.names()[-1] == "order_created"


@pytest.mark.parametrize("amount", ["0", "-5", "abc", "NaN", "Infinity", "1e30"])
def test_create_order_rejects_bad_amounts(orch, amount):
    with pytest.raises(ValidationError):
        orch.orders.create_order("user-1", SERVICE_ID, {}, amount)


def test_create_order_needs_known_active_service(orch):
    with pytest.raises(NotFoundError):
        orch.orders.create_order("user-1", "nope", {}, "10")
    orch.save_service(SERVICE_ID, "Personality Analysis", is_active=False)
    with pytest.raises(ValidationError):
        orch.orders.create_order("user-1", SERVICE_ID, {}, "10")


def test_paid_records_payment(paid_order, clock):
    assert paid_order.status == OrderStatus.PAID
    assert paid_order.paid_at == clock.now
    assert paid_order.payment_method == PaymentMethod.ALIPAY
    assert paid_order.transaction_id == "tx-1"


def test_other_users_cannot_touch_an_order(orch, paid_order):
    with pytest.raises(AuthorizationError):
        orch.orders.get_order(paid_order.id, "user-2")
    with pytest.raises(AuthorizationError):
        orch.orders.update_status(paid_order.id, OrderStatus.REFUNDED, user_id="user-2")


def test_illegal_update_lists_allowed_targets(orch, paid_order):
    with pytest.raises(InvalidTransition) as err:
        orch.orders.update_status(paid_order.id, OrderStatus.COMPLETED)
    assert err.value.details["allowedTransitions"] == ["processing", "refunded"]
    assert orch.orders.get_order(paid_order.id).status == OrderStatus.PAID


def test_list_orders_newest_first_and_paged(orch, clock):
    ids = []
    for _ in range(3):
        ids.append(orch.orders.create_order("user-1", SERVICE_ID, {}, "10").id)
        clock.advance(1)
    orch.orders.create_order("user-2", SERVICE_ID, {}, "10")

    first, total = orch.orders.list_orders(user_id="user-1", page=1, limit=2)
    second, _ = orch.orders.list_orders(user_id="user-1", page=2, limit=2)

    assert total == 3
    assert [o.id for o in first + second] == list(reversed(ids))


def test_start_requires_dispatchable_order(orch):
    order = orch.orders.create_order("user-1", SERVICE_ID, {}, "10")

    with pytest.raises(OrderNotDispatchable) as err:
        orch.start_for_order(order.id)
    assert err.value.details["currentStatus"] == "pending"
    assert orch.repo.tasks_for_order(order.id) == []


def test_retry_failed_task(orch, paid_order, dify, clock):
    dify.start = [httpx.Response(400, json={"message": "bad input"})]
    failed = orch.start_for_order(paid_order.id)
    assert failed.status == TaskStatus.FAILED

    clock.advance(1)
    retried = orch.retry_task(failed.id, "user-1")

    assert retried.status == TaskStatus.RUNNING
    assert retried.id != failed.id
    assert orch.lifecycle.get(failed.id).status == TaskStatus.FAILED


def test_retry_requires_failed_task(orch, running_task):
    with pytest.raises(ConflictError):
        orch.retry_task(running_task.id)


def test_delete_order_cascades(orch, running_task):
    with pytest.raises(ConflictError):
        orch.orders.delete_order(running_task.order_id)

    orch.cancel_task(running_task.id)
    removed = orch.orders.delete_order(running_task.order_id)

    assert removed == 1
    assert orch.repo.get_order(running_task.order_id) is None
    assert orch.repo.get_task(running_task.id) is None


def test_order_write_failure_releases_the_new_task(orch, paid_order, monkeypatch):
    real_save = orch.repo.save_order

    def failing_save(rec):
        if rec.status == OrderStatus.PROCESSING:
            raise PersistenceError("store order write failed")
        real_save(rec)

    monkeypatch.setattr(orch.repo, "save_order", failing_save)
    with pytest.raises(PersistenceError):
        orch.start_for_order(paid_order.id)

    tasks = orch.repo.tasks_for_order(paid_order.id)
    assert [t.status for t in tasks] == [TaskStatus.FAILED]
    assert tasks[0].error_message == "order update failed before dispatch"
    assert orch.orders.get_order(paid_order.id).status == OrderStatus.PAID

    monkeypatch.setattr(orch.repo, "save_order", real_save)
    assert orch.start_for_order(paid_order.id).status == TaskStatus.RUNNING


def test_queue_failure_releases_the_new_task(orch, paid_order):
    def broker_down(task_id):
        raise ConnectionError("broker unreachable")

    orch.enqueue_dispatch = broker_down
    with pytest.raises(DependencyError):
        orch.start_for_order(paid_order.id, async_dispatch=True)

    assert orch.repo.active_task_for_order(paid_order.id) is None


def test_explicit_retries_are_limited(orch, paid_order, dify, clock):
    dify.start = [httpx.Response(400, json={"message": "bad input"}) for _ in range(4)]
    task = orch.start_for_order(paid_order.id)
    for _ in range(3):
        clock.advance(1)
        task = orch.retry_task(task.id, "user-1")
        assert task.status == TaskStatus.FAILED

    with pytest.raises(RetryLimitReached) as err:
        orch.retry_task(task.id, "user-1")
    assert err.value.details == {"orderId": paid_order.id, "failedTasks": 4, "maxRetries": 3}
    assert err.value.status_code == 409
    assert len(orch.repo.tasks_for_order(paid_order.id)) == 4
