from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from .auth import require_token
from .config import settings
from .deps import get_orchestrator
from .errors import OrchestrationError, PersistenceError
from .logs import configure_logging
from .models import HealthResponse
from .routers import orders, services, tasks
from .services.orchestrator import Orchestrator

configure_logging(settings.log_level, settings.log_serialize)

app = FastAPI(title="Orderflow API", version="1.0.0")
app.include_router(orders.router)
app.include_router(tasks.router)
app.include_router(services.router)


@app.exception_handler(OrchestrationError)
async def orchestration_error_handler(request: Request, exc: OrchestrationError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health", response_model=HealthResponse)
def health(orch: Orchestrator = Depends(get_orchestrator), _=Depends(require_token)):
    try:
        orch.repo.ping()
        active = orch.repo.count_active_tasks()
    except PersistenceError:
        return JSONResponse(status_code=503, content={"status": "degraded", "store": False, "activeTasks": None})
    return HealthResponse(status="ok", store=True, active_tasks=active)
