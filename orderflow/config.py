from pydantic import BaseModel
import os


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    api_token: str = os.getenv("API_TOKEN", "change-me")
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    store_backend: str = os.getenv("STORE_BACKEND", "redis")  # redis | memory
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_serialize: bool = _env_bool("LOG_SERIALIZE", False)

    # Fallback endpoint for AI services registered without their own
    dify_base_url: str | None = os.getenv("DIFY_BASE_URL")
    dify_api_key: str | None = os.getenv("DIFY_API_KEY")
    dify_response_mode: str = os.getenv("DIFY_RESPONSE_MODE", "streaming")
    backend_timeout_seconds: float = float(os.getenv("BACKEND_TIMEOUT_SECONDS", 30))

    max_retries: int = int(os.getenv("DISPATCH_MAX_RETRIES", 3))
    retry_delay_seconds: float = float(os.getenv("DISPATCH_RETRY_DELAY_SECONDS", 1.0))
    retry_max_delay_seconds: float = float(os.getenv("DISPATCH_RETRY_MAX_DELAY_SECONDS", 30))
    # Explicit restarts of an order after failed tasks
    max_task_retries: int = int(os.getenv("TASK_MAX_RETRIES", 3))

    poll_interval_seconds: float = float(os.getenv("POLL_INTERVAL_SECONDS", 3))
    max_status_longpoll_seconds: int = int(os.getenv("MAX_STATUS_LONGPOLL_SECONDS", 60))
    stale_task_seconds: int = int(os.getenv("STALE_TASK_SECONDS", 300))
    max_execution_seconds: int = int(os.getenv("MAX_EXECUTION_SECONDS", 3600))
    sweep_interval_seconds: int = int(os.getenv("SWEEP_INTERVAL_SECONDS", 60))

    lock_timeout_seconds: float = float(os.getenv("ORDER_LOCK_TIMEOUT_SECONDS", 10))
    lock_wait_seconds: float = float(os.getenv("ORDER_LOCK_WAIT_SECONDS", 5))

    notify_channel: str = os.getenv("NOTIFY_CHANNEL", "task-updates")
    admin_token: str | None = os.getenv("ADMIN_TOKEN")
    auto_dispatch_on_paid: bool = _env_bool("AUTO_DISPATCH_ON_PAID", True)

settings = Settings()
