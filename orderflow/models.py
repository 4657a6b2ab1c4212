from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .services.metrics import Metrics
from .storage.schema import OrderRecord, OrderStatus, PaymentMethod, ServiceRecord, TaskRecord, TaskStatus


class ApiModel(BaseModel):
    # camelCase on the wire, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateOrderRequest(ApiModel):
    ai_service_id: str = Field(min_length=1)
    service_data: Dict[str, Any] = Field(default_factory=dict)
    amount: Decimal
    payment_method: Optional[PaymentMethod] = None


class OrderStatusUpdate(ApiModel):
    status: OrderStatus
    payment_method: Optional[PaymentMethod] = None
    transaction_id: Optional[str] = None
    reason: Optional[str] = None


class StartTaskRequest(ApiModel):
    async_dispatch: bool = False


class OrderView(ApiModel):
    id: str
    user_id: str
    ai_service_id: str
    service_data: Dict[str, Any]
    amount: Decimal
    status: OrderStatus
    payment_method: Optional[PaymentMethod] = None
    transaction_id: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime

    @classmethod
    def from_record(cls, rec: OrderRecord) -> "OrderView":
        return cls(**rec.model_dump())


class TaskView(ApiModel):
    id: str
    order_id: str
    ai_service_id: str
    external_task_id: Optional[str] = None
    external_execution_id: Optional[str] = None
    status: TaskStatus
    input_data: Dict[str, Any]
    output_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    retry_count: int
    execution_time: Optional[int] = None
    progress: int
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime

    @classmethod
    def from_record(cls, rec: TaskRecord, now: datetime) -> "TaskView":
        return cls(**rec.model_dump(), progress=Metrics.task_progress(rec, now))


class OrderDetail(ApiModel):
    order: OrderView
    task: Optional[TaskView] = None  # most recent task, if any


class OrderListResponse(ApiModel):
    orders: List[OrderView]
    total: int
    page: int
    limit: int


class TaskListResponse(ApiModel):
    tasks: List[TaskView]
    total: int
    page: int
    limit: int


class TaskStatsResponse(ApiModel):
    total_tasks: int
    pending_tasks: int
    running_tasks: int
    completed_tasks: int
    failed_tasks: int
    cancelled_tasks: int
    average_execution_time: float
    success_rate: float


class SweepResponse(ApiModel):
    checked: int
    synced: int
    failed: List[str]
    errors: List[str]


class ServiceConfigIn(ApiModel):
    display_name: str = Field(min_length=1)
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    is_active: bool = True


class ServiceView(ApiModel):
    """Registered AI service; the credential is never echoed back."""
    id: str
    display_name: str
    base_url: Optional[str] = None
    has_api_key: bool
    timeout_seconds: float
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, rec: ServiceRecord) -> "ServiceView":
        data = rec.model_dump(exclude={"api_key"})
        return cls(**data, has_api_key=bool(rec.api_key))


class HealthResponse(ApiModel):
    status: str  # ok | degraded
    store: bool
    active_tasks: Optional[int] = None


class ErrorResponse(ApiModel):
    error: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
