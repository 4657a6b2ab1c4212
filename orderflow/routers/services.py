from fastapi import APIRouter, Depends

from ..auth import require_admin, require_token
from ..deps import get_orchestrator
from ..errors import NotFoundError
from ..models import ServiceConfigIn, ServiceView
from ..services.orchestrator import Orchestrator

router = APIRouter(prefix="/services", tags=["services"], dependencies=[Depends(require_token), Depends(require_admin)])


@router.put("/{service_id}", response_model=ServiceView)
def put_service(service_id: str, payload: ServiceConfigIn, orch: Orchestrator = Depends(get_orchestrator)):
    record = orch.save_service(
        service_id,
        payload.display_name,
        base_url=payload.base_url,
        api_key=payload.api_key,
        timeout_seconds=payload.timeout_seconds,
        is_active=payload.is_active,
    )
    return ServiceView.from_record(record)


@router.get("/{service_id}", response_model=ServiceView)
def get_service(service_id: str, orch: Orchestrator = Depends(get_orchestrator)):
    record = orch.repo.get_service(service_id)
    if record is None:
        raise NotFoundError(f"AI service {service_id} does not exist", {"aiServiceId": service_id})
    return ServiceView.from_record(record)
