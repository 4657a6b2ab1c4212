from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Response, status
from loguru import logger

from ..auth import current_user_id, require_token
from ..deps import get_orchestrator
from ..errors import ConflictError
from ..models import (
    CreateOrderRequest,
    OrderDetail,
    OrderListResponse,
    OrderStatusUpdate,
    OrderView,
    StartTaskRequest,
    TaskListResponse,
    TaskView,
)
from ..services.orchestrator import Orchestrator
from ..storage.schema import OrderStatus

router = APIRouter(prefix="/orders", tags=["orders"], dependencies=[Depends(require_token)])


def _detail(orch: Orchestrator, order_id: str, user_id: str) -> OrderDetail:
    order = orch.orders.get_order(order_id, user_id)
    tasks = orch.repo.tasks_for_order(order.id)
    latest = TaskView.from_record(tasks[0], orch.clock()) if tasks else None
    return OrderDetail(order=OrderView.from_record(order), task=latest)


@router.post("", response_model=OrderView, status_code=status.HTTP_201_CREATED)
def create_order(payload: CreateOrderRequest, user_id: str = Depends(current_user_id),
                 orch: Orchestrator = Depends(get_orchestrator)):
    order = orch.orders.create_order(
        user_id, payload.ai_service_id, payload.service_data, payload.amount, payload.payment_method,
    )
    return OrderView.from_record(order)


@router.get("", response_model=OrderListResponse)
def list_orders(status_filter: Optional[OrderStatus] = Query(default=None, alias="status"),
                page: int = Query(default=1, ge=1), limit: int = Query(default=10, ge=1, le=100),
                user_id: str = Depends(current_user_id), orch: Orchestrator = Depends(get_orchestrator)):
    orders, total = orch.orders.list_orders(user_id=user_id, status=status_filter, page=page, limit=limit)
    return OrderListResponse(orders=[OrderView.from_record(o) for o in orders], total=total, page=page, limit=limit)


@router.get("/{order_id}", response_model=OrderDetail)
def get_order(order_id: str, user_id: str = Depends(current_user_id),
              orch: Orchestrator = Depends(get_orchestrator)):
    return _detail(orch, order_id, user_id)


@router.patch("/{order_id}/status", response_model=OrderDetail)
def update_order_status(order_id: str, payload: OrderStatusUpdate, user_id: str = Depends(current_user_id),
                        orch: Orchestrator = Depends(get_orchestrator)):
    order = orch.orders.update_status(
        order_id, payload.status, user_id=user_id,
        payment_method=payload.payment_method, transaction_id=payload.transaction_id, reason=payload.reason,
    )
    if order.status == OrderStatus.PAID and orch.cfg.auto_dispatch_on_paid:
        try:
            orch.start_for_order(order.id, user_id, async_dispatch=orch.enqueue_dispatch is not None)
        except ConflictError as exc:
            # The payment stands; the task can still be started explicitly.
            logger.warning(f"Auto-dispatch for paid order {order.id} skipped: {exc.message}")
    return _detail(orch, order_id, user_id)


@router.delete("/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_order(order_id: str, user_id: str = Depends(current_user_id),
                 orch: Orchestrator = Depends(get_orchestrator)):
    orch.orders.delete_order(order_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{order_id}/tasks", response_model=TaskView, status_code=status.HTTP_201_CREATED)
def start_task(order_id: str, response: Response, payload: Optional[StartTaskRequest] = Body(default=None),
               user_id: str = Depends(current_user_id), orch: Orchestrator = Depends(get_orchestrator)):
    async_dispatch = bool(payload and payload.async_dispatch)
    task = orch.start_for_order(order_id, user_id, async_dispatch=async_dispatch)
    if async_dispatch:
        response.status_code = status.HTTP_202_ACCEPTED
    return TaskView.from_record(task, orch.clock())


@router.get("/{order_id}/tasks", response_model=TaskListResponse)
def list_order_tasks(order_id: str, user_id: str = Depends(current_user_id),
                     orch: Orchestrator = Depends(get_orchestrator)):
    order = orch.orders.get_order(order_id, user_id)
    tasks = orch.repo.tasks_for_order(order.id)
    now = orch.clock()
    return TaskListResponse(tasks=[TaskView.from_record(t, now) for t in tasks],
                            total=len(tasks), page=1, limit=max(1, len(tasks)))
