from typing import Any, Dict

from fastapi import APIRouter, Depends

from app.api.deps import cache_dependency
from app.services.cache import DualTierCache

router = APIRouter()


@router.get("")
async def health_check():
    return {"status": "healthy"}


@router.get("/cache")
async def cache_health(cache: DualTierCache = Depends(cache_dependency)) -> Dict[str, Any]:
    """Which cache tier is serving, and how many keys it holds."""
    return {"success": True, "data": await cache.stats()}
