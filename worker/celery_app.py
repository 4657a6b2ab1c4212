from functools import lru_cache

from celery import Celery
from loguru import logger

from orderflow.config import settings

celery_app = Celery(
    "orderflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
)
celery_app.conf.beat_schedule = {
    "sweep-stale-tasks": {
        "task": "sweep_stale_tasks",
        "schedule": float(settings.sweep_interval_seconds),
    },
}


@lru_cache(maxsize=1)
def _orchestrator():
    from orderflow.logs import configure_logging
    from orderflow.services.orchestrator import build_orchestrator
    configure_logging(settings.log_level, settings.log_serialize)
    return build_orchestrator(settings)


def _summary(task) -> dict:
    return {"taskId": task.id, "status": task.status.value, "retryCount": task.retry_count,
            "errorMessage": task.error_message}


@celery_app.task(name="dispatch_task")
def dispatch_task(task_id: str) -> dict:
    from orderflow.errors import InvalidTaskTransition
    orch = _orchestrator()
    task = orch.lifecycle.get(task_id)
    try:
        task = orch.dispatcher.submit(task)
    except InvalidTaskTransition as exc:
        # Cancelled or swept before the worker picked it up.
        logger.info(f"Queued dispatch of task {task_id} skipped: {exc.message}")
        task = orch.lifecycle.get(task_id)
    return _summary(task)


@celery_app.task(name="sync_task")
def sync_task(task_id: str) -> dict:
    orch = _orchestrator()
    return _summary(orch.reconciler.sync(orch.lifecycle.get(task_id)))


@celery_app.task(name="sweep_stale_tasks")
def sweep_stale_tasks() -> dict:
    report = _orchestrator().sweep()
    return {"checked": report.checked, "synced": report.synced, "failed": report.failed, "errors": report.errors}
