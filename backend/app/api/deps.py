"""
Shared router dependencies: rate limiters and service providers.

Limiters are used as route or router dependencies, e.g.
``dependencies=[Depends(analysis_limiter)]``. They share one
RateLimitStore; each keeps its counters under its own name.
"""
from fastapi import Request

from app.core.auth import get_optional_user
from app.core.config import settings
from app.services.badge_service import BadgeService
from app.services.cache import DualTierCache
from app.services.container import (
    get_badge_service,
    get_cache,
    get_repository_service,
    rate_limit_store,
)
from app.services.rate_limiter import (
    FixedWindowLimiter,
    ProgressiveLimiter,
    SlidingWindowLimiter,
    ip_identity,
    resolve_identity,
    user_identity,
)
from app.services.repository_service import RepositoryService


async def is_premium(request: Request) -> bool:
    user = await get_optional_user(request)
    return bool(user and user.plan == "premium")


# Every API route: per IP
basic_limiter = FixedWindowLimiter(
    "basic",
    settings.RATE_LIMIT_BASIC_MAX,
    settings.RATE_LIMIT_BASIC_WINDOW_SECONDS,
    store=rate_limit_store,
    key_func=ip_identity,
)

# Routes that run an analysis: API key, then user, then IP
analysis_limiter = FixedWindowLimiter(
    "analysis",
    settings.RATE_LIMIT_ANALYSIS_MAX,
    settings.RATE_LIMIT_ANALYSIS_WINDOW_SECONDS,
    store=rate_limit_store,
    key_func=resolve_identity,
    message="Repository analysis is resource-intensive. Please wait 10 minutes between analyses.",
)

# Repository mutations: per user, premium plans are exempt
authenticated_limiter = FixedWindowLimiter(
    "authenticated",
    settings.RATE_LIMIT_AUTHENTICATED_MAX,
    settings.RATE_LIMIT_AUTHENTICATED_WINDOW_SECONDS,
    store=rate_limit_store,
    key_func=user_identity,
    message="Authenticated user rate limit exceeded.",
    skip=is_premium,
)

# Detail reads
sliding_limiter = SlidingWindowLimiter(
    "sliding",
    settings.RATE_LIMIT_SLIDING_MAX,
    settings.RATE_LIMIT_SLIDING_WINDOW_SECONDS,
    store=rate_limit_store,
    key_func=user_identity,
)

# Listing, search and statistics
progressive_limiter = ProgressiveLimiter("progressive", store=rate_limit_store, key_func=user_identity)


def cache_dependency() -> DualTierCache:
    return get_cache()


def repository_service_dependency() -> RepositoryService:
    return get_repository_service()


def badge_service_dependency() -> BadgeService:
    return get_badge_service()
