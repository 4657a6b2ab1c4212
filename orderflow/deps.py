from functools import lru_cache

from .services.orchestrator import Orchestrator, build_orchestrator


@lru_cache(maxsize=1)
def get_orchestrator() -> Orchestrator:
    # Built on first request; tests replace it through app.dependency_overrides.
    return build_orchestrator()
