"""
Process-wide service instances.

The application builds these lazily on first use; tests swap them with
``set_cache`` / ``reset_services`` or FastAPI dependency overrides.
"""
from typing import Optional

from app.core.config import settings
from app.db.session import AsyncSessionLocal
from app.services.analysis import AnalysisService
from app.services.badge_service import BadgeService
from app.services.cache import DualTierCache, LocalCache
from app.services.github_service import get_github_service, reset_github_service
from app.services.orchestrator import AnalysisOrchestrator
from app.services.rate_limiter import RateLimitStore
from app.services.repository_service import RepositoryService

_cache: Optional[DualTierCache] = None
_orchestrator: Optional[AnalysisOrchestrator] = None
_badge_service: Optional[BadgeService] = None
_repository_service: Optional[RepositoryService] = None

# Shared by every limiter; see app.api.deps
rate_limit_store = RateLimitStore()


def get_cache() -> DualTierCache:
    global _cache
    if _cache is None:
        _cache = DualTierCache(
            settings.REDIS_URL,
            local=LocalCache(max_entries=settings.CACHE_LOCAL_MAX_ENTRIES),
            sweep_interval=settings.CACHE_SWEEP_INTERVAL_SECONDS,
        )
    return _cache


def set_cache(cache: DualTierCache) -> None:
    global _cache
    _cache = cache


def get_orchestrator() -> AnalysisOrchestrator:
    """The AnalysisOrchestrator, wired to the GitHub-backed AnalysisService."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = AnalysisOrchestrator(AsyncSessionLocal, AnalysisService(get_github_service(get_cache())), get_cache())
    return _orchestrator


def get_badge_service() -> BadgeService:
    global _badge_service
    if _badge_service is None:
        _badge_service = BadgeService(get_orchestrator(), get_cache())
    return _badge_service


def get_repository_service() -> RepositoryService:
    global _repository_service
    if _repository_service is None:
        _repository_service = RepositoryService(get_github_service(get_cache()), get_orchestrator(), get_cache())
    return _repository_service


def reset_services() -> None:
    """Forget every instance so the next call builds fresh ones."""
    global _cache, _orchestrator, _badge_service, _repository_service
    _cache = _orchestrator = _badge_service = _repository_service = None
    reset_github_service()
    rate_limit_store.reset()
