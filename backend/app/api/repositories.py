import logging
import uuid
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    authenticated_limiter,
    basic_limiter,
    analysis_limiter,
    progressive_limiter,
    repository_service_dependency,
    sliding_limiter,
)
from app.core.auth import JWTPayload, get_current_user, get_optional_user
from app.db.session import get_db
from app.schemas.analysis import AnalysisSnapshot, TrendPoint
from app.schemas.common import ApiResponse
from app.schemas.repository import (
    AddRepositoryResult,
    RepositoryCreate,
    RepositoryPage,
    RepositoryRead,
    RepositoryStats,
    RepositoryUpdate,
    SortField,
)
from app.services.repository_service import RepositoryService

router = APIRouter(dependencies=[Depends(basic_limiter)])
logger = logging.getLogger(__name__)


@router.get(
    "",
    response_model=ApiResponse[RepositoryPage],
    dependencies=[Depends(progressive_limiter)],
)
async def list_repositories(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: SortField = Query("updatedAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    search: Optional[str] = Query(None, max_length=100),
    language: Optional[str] = Query(None, max_length=64),
    min_score: Optional[int] = Query(None, ge=0, le=100, alias="minScore"),
    max_score: Optional[int] = Query(None, ge=0, le=100, alias="maxScore"),
    db: AsyncSession = Depends(get_db),
    service: RepositoryService = Depends(repository_service_dependency),
):
    """Paginated, filterable list of tracked repositories."""
    result = await service.list_repositories(
        db,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        search=search,
        language=language,
        min_score=min_score,
        max_score=max_score,
    )
    return ApiResponse(data=result)


@router.get(
    "/stats",
    response_model=ApiResponse[RepositoryStats],
    dependencies=[Depends(progressive_limiter)],
)
async def repository_stats(
    db: AsyncSession = Depends(get_db),
    service: RepositoryService = Depends(repository_service_dependency),
):
    """Dashboard aggregates; cached for 30 minutes."""
    stats = await service.get_stats(db)
    return ApiResponse(data=RepositoryStats.model_validate(stats))


# The uuid convertor keeps this from shadowing /{owner}/{name}
@router.get(
    "/{repository_id:uuid}/analyses",
    response_model=ApiResponse[List[TrendPoint]],
    dependencies=[Depends(sliding_limiter)],
)
async def repository_analyses(
    repository_id: uuid.UUID,
    limit: int = Query(30, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    service: RepositoryService = Depends(repository_service_dependency),
):
    """Quality history of a repository, newest first."""
    return ApiResponse(data=await service.analysis_history(db, repository_id, limit))


@router.get(
    "/{owner}/{name}",
    response_model=ApiResponse[RepositoryRead],
    dependencies=[Depends(sliding_limiter)],
)
async def get_repository_by_github(
    owner: str,
    name: str,
    db: AsyncSession = Depends(get_db),
    service: RepositoryService = Depends(repository_service_dependency),
):
    return ApiResponse(data=await service.get_by_github(db, owner, name))


@router.get(
    "/{repository_id}",
    response_model=ApiResponse[RepositoryRead],
    dependencies=[Depends(sliding_limiter)],
)
async def get_repository(
    repository_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    service: RepositoryService = Depends(repository_service_dependency),
):
    return ApiResponse(data=await service.get_repository(db, repository_id))


@router.post(
    "",
    response_model=ApiResponse[AddRepositoryResult],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(authenticated_limiter)],
)
async def add_repository(
    request: Request,
    body: RepositoryCreate,
    db: AsyncSession = Depends(get_db),
    service: RepositoryService = Depends(repository_service_dependency),
):
    """Start tracking a repository; analyzes it right away unless autoAnalyze is false."""
    user: Optional[JWTPayload] = await get_optional_user(request)
    result = await service.add_repository(
        db,
        body.repo_url,
        auto_analyze=body.auto_analyze,
        added_by=user.id if user else None,
    )
    return ApiResponse(data=result, message="Repository added successfully")


@router.put(
    "/{repository_id}",
    response_model=ApiResponse[RepositoryRead],
    dependencies=[Depends(authenticated_limiter)],
)
async def update_repository(
    repository_id: uuid.UUID,
    body: RepositoryUpdate,
    current_user: JWTPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: RepositoryService = Depends(repository_service_dependency),
):
    logger.debug(f"User {current_user.id} updating repository {repository_id}")
    result = await service.update_repository(db, repository_id, body)
    return ApiResponse(data=result, message="Repository updated successfully")


@router.delete(
    "/{repository_id}",
    response_model=ApiResponse[None],
    dependencies=[Depends(authenticated_limiter)],
)
async def delete_repository(
    repository_id: uuid.UUID,
    current_user: JWTPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    service: RepositoryService = Depends(repository_service_dependency),
):
    """Delete a repository, its analyses and its cached analysis and badges."""
    logger.info(f"User {current_user.id} deleting repository {repository_id}")
    await service.delete_repository(db, repository_id)
    return ApiResponse(message="Repository and all associated data deleted successfully")


@router.post(
    "/{repository_id}/sync",
    response_model=ApiResponse[RepositoryRead],
    dependencies=[Depends(authenticated_limiter)],
)
async def sync_repository(
    repository_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    service: RepositoryService = Depends(repository_service_dependency),
):
    """Refresh stars, language and description from GitHub."""
    result = await service.sync_repository(db, repository_id)
    return ApiResponse(data=result, message="Repository synced with GitHub successfully")


@router.post(
    "/{repository_id}/analyze",
    response_model=ApiResponse[AnalysisSnapshot],
    dependencies=[Depends(analysis_limiter)],
)
async def analyze_repository(
    request: Request,
    repository_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    service: RepositoryService = Depends(repository_service_dependency),
):
    """Run a fresh analysis, bypassing the cached one."""
    user = await get_optional_user(request)
    outcome = await service.analyze_repository(db, repository_id, triggered_by_user=user.id if user else None)
    return ApiResponse(data=outcome.snapshot, message="Analysis completed")
