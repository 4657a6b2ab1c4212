from dataclasses import dataclass

from ..config import Settings, settings as default_settings
from ..errors import ConfigurationError


@dataclass(frozen=True)
class ServiceConfig:
    base_url: str
    credential: str
    timeout: float = 30.0


class ServiceConfigResolver:
    """Resolves ``aiServiceId`` to the backend endpoint and credential.

    A service record may omit ``base_url``/``api_key``, in which case the
    process-wide ``DIFY_BASE_URL``/``DIFY_API_KEY`` apply.
    """

    def __init__(self, repo, cfg: Settings | None = None):
        self.repo = repo
        self.cfg = cfg or default_settings

    def get_config(self, ai_service_id: str) -> ServiceConfig:
        service = self.repo.get_service(ai_service_id)
        if service is None:
            raise ConfigurationError(f"AI service {ai_service_id} is not configured", {"aiServiceId": ai_service_id})
        if not service.is_active:
            raise ConfigurationError(f"AI service {service.display_name} is disabled", {"aiServiceId": ai_service_id})
        base_url = service.base_url or self.cfg.dify_base_url
        credential = service.api_key or self.cfg.dify_api_key
        if not base_url or not credential:
            raise ConfigurationError(
                f"AI service {service.display_name} has no backend endpoint or credential",
                {"aiServiceId": ai_service_id},
            )
        return ServiceConfig(base_url=base_url.rstrip("/"), credential=credential,
                             timeout=service.timeout_seconds or self.cfg.backend_timeout_seconds)
