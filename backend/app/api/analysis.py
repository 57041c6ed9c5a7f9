import logging
import uuid

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    analysis_limiter,
    badge_service_dependency,
    basic_limiter,
    repository_service_dependency,
    sliding_limiter,
)
from app.core.auth import get_optional_user
from app.core.config import settings
from app.db.session import get_db
from app.schemas.analysis import AnalysisRead, BadgeVariants
from app.schemas.common import ApiResponse
from app.schemas.repository import AddRepositoryResult, RepositoryCreate
from app.services.badge import render_unknown_badge
from app.services.badge_service import BadgeService
from app.services.repository_service import RepositoryService

router = APIRouter()
logger = logging.getLogger(__name__)

SVG_MEDIA_TYPE = "image/svg+xml"
BADGE_VARIANTS = ("security", "coverage", "complexity")


def _svg(content: str) -> Response:
    return Response(
        content=content,
        media_type=SVG_MEDIA_TYPE,
        headers={"Cache-Control": f"public, max-age={settings.BADGE_CACHE_TTL_SECONDS}"},
    )


@router.post(
    "",
    response_model=ApiResponse[AddRepositoryResult],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(basic_limiter), Depends(analysis_limiter)],
)
async def analyze_repository(
    request: Request,
    body: RepositoryCreate,
    db: AsyncSession = Depends(get_db),
    service: RepositoryService = Depends(repository_service_dependency),
):
    """
    Track and analyze a GitHub repository.

    400 for a malformed URL, 404 when GitHub does not know the repository,
    409 when it is already tracked.
    """
    user = await get_optional_user(request)
    logger.debug(f"[ANALYZE] repo_url={body.repo_url} auto_analyze={body.auto_analyze}")
    result = await service.add_repository(
        db,
        body.repo_url,
        auto_analyze=body.auto_analyze,
        added_by=user.id if user else None,
    )
    return ApiResponse(data=result, message="Repository added successfully")


# Badges are embedded in READMEs and served through image proxies; they are
# not rate limited and always answer 200 with an SVG. Only a badge that has
# to run a first analysis counts against the caller's analysis limit.

def _analysis_admission(request: Request):
    async def admit() -> bool:
        return await analysis_limiter.admit(request)
    return admit


@router.get("/badge/{owner}/{repo}/variants", response_model=ApiResponse[BadgeVariants])
async def badge_variants(
    owner: str,
    repo: str,
    request: Request,
    badges: BadgeService = Depends(badge_service_dependency),
):
    """URLs, markdown snippets and scores for every badge of a repository."""
    data = await badges.get_variants(owner, repo, str(request.base_url))
    return ApiResponse(data=data)


@router.get("/badge/{owner}/{repo}", response_class=Response)
async def quality_badge(
    owner: str,
    repo: str,
    request: Request,
    style: str = "flat",
    format: str = "svg",
    badges: BadgeService = Depends(badge_service_dependency),
):
    # only SVG is rendered; format is accepted for URL compatibility
    return _svg(await badges.get_badge(owner, repo, "quality", style, admit=_analysis_admission(request)))


@router.get("/badge/{owner}/{repo}/{variant}", response_class=Response)
async def variant_badge(
    owner: str,
    repo: str,
    variant: str,
    request: Request,
    style: str = "flat",
    badges: BadgeService = Depends(badge_service_dependency),
):
    if variant not in BADGE_VARIANTS:
        return _svg(render_unknown_badge())
    return _svg(await badges.get_badge(owner, repo, variant, style, admit=_analysis_admission(request)))


@router.get(
    "/{analysis_id}",
    response_model=ApiResponse[AnalysisRead],
    dependencies=[Depends(basic_limiter), Depends(sliding_limiter)],
)
async def get_analysis(
    analysis_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    service: RepositoryService = Depends(repository_service_dependency),
):
    """One analysis with its summary."""
    return ApiResponse(data=await service.get_analysis(db, analysis_id))
