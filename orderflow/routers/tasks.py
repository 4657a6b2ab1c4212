from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Response, status

from ..auth import current_user_id, require_admin, require_token
from ..deps import get_orchestrator
from ..models import StartTaskRequest, SweepResponse, TaskListResponse, TaskStatsResponse, TaskView
from ..services.metrics import Metrics
from ..services.orchestrator import Orchestrator
from ..storage.schema import TaskStatus

router = APIRouter(prefix="/tasks", tags=["tasks"], dependencies=[Depends(require_token)])


@router.get("", response_model=TaskListResponse, dependencies=[Depends(require_admin)])
def list_tasks(order_id: Optional[str] = Query(default=None, alias="orderId"),
               ai_service_id: Optional[str] = Query(default=None, alias="aiServiceId"),
               status_filter: Optional[TaskStatus] = Query(default=None, alias="status"),
               page: int = Query(default=1, ge=1), limit: int = Query(default=20, ge=1, le=100),
               orch: Orchestrator = Depends(get_orchestrator)):
    tasks, total = orch.repo.list_tasks(order_id=order_id, ai_service_id=ai_service_id, status=status_filter,
                                        offset=(page - 1) * limit, limit=limit)
    now = orch.clock()
    return TaskListResponse(tasks=[TaskView.from_record(t, now) for t in tasks], total=total, page=page, limit=limit)


@router.get("/stats", response_model=TaskStatsResponse, dependencies=[Depends(require_admin)])
def task_stats(ai_service_id: Optional[str] = Query(default=None, alias="aiServiceId"),
               orch: Orchestrator = Depends(get_orchestrator)):
    tasks, _ = orch.repo.list_tasks(ai_service_id=ai_service_id, limit=None)
    return TaskStatsResponse(**Metrics.task_stats(tasks))


@router.post("/sweep", response_model=SweepResponse, dependencies=[Depends(require_admin)])
def sweep(orch: Orchestrator = Depends(get_orchestrator)):
    report = orch.sweep()
    return SweepResponse(checked=report.checked, synced=report.synced, failed=report.failed, errors=report.errors)


@router.get("/{task_id}", response_model=TaskView)
def get_task(task_id: str, sync: bool = True, wait: float = Query(default=0, ge=0),
             user_id: str = Depends(current_user_id), orch: Orchestrator = Depends(get_orchestrator)):
    """Task status; ``sync`` pulls the backend state first, ``wait`` long-polls until terminal."""
    if sync or wait > 0:
        task = orch.sync_task(task_id, user_id, wait=wait)
    else:
        task = orch.get_task(task_id, user_id)
    return TaskView.from_record(task, orch.clock())


@router.post("/{task_id}/cancel", response_model=TaskView)
def cancel_task(task_id: str, user_id: str = Depends(current_user_id),
                orch: Orchestrator = Depends(get_orchestrator)):
    return TaskView.from_record(orch.cancel_task(task_id, user_id), orch.clock())


@router.post("/{task_id}/retry", response_model=TaskView, status_code=status.HTTP_201_CREATED)
def retry_task(task_id: str, response: Response, payload: Optional[StartTaskRequest] = Body(default=None),
               user_id: str = Depends(current_user_id), orch: Orchestrator = Depends(get_orchestrator)):
    async_dispatch = bool(payload and payload.async_dispatch)
    task = orch.retry_task(task_id, user_id, async_dispatch=async_dispatch)
    if async_dispatch:
        response.status_code = status.HTTP_202_ACCEPTED
    return TaskView.from_record(task, orch.clock())
