"""
Tracked repositories: adding, listing, syncing, deleting and statistics.

Each method takes the request's AsyncSession. Analyses themselves go through
the AnalysisOrchestrator, which uses sessions of its own.
"""
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import case, delete, func, or_, select
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import AppError, ConflictError, NotFoundError, ValidationError
from app.models.analysis import AnalysisRecord
from app.models.repository import RepositoryRecord
from app.schemas.analysis import AnalysisRead, AnalysisSummary, TrendPoint
from app.schemas.repository import (
    AddRepositoryResult,
    Pagination,
    RepositoryPage,
    RepositoryRead,
    RepositoryUpdate,
)
from app.services import derivations
from app.services.cache import DualTierCache
from app.services.github_service import GitHubService
from app.services.orchestrator import (
    STATS_CACHE_KEY,
    AnalysisOrchestrator,
    AnalysisOutcome,
    analysis_cache_key,
    badge_cache_pattern,
)
from app.utils.url_helpers import normalize_github_url, parse_github_url

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "name": RepositoryRecord.name,
    "owner": RepositoryRecord.owner,
    "stars": RepositoryRecord.stars,
    "lastQualityScore": RepositoryRecord.last_quality_score,
    "lastAnalyzedAt": RepositoryRecord.last_analyzed_at,
    "createdAt": RepositoryRecord.created_at,
    "updatedAt": RepositoryRecord.updated_at,
}

# (label, lower bound inclusive, upper bound exclusive); the last bucket includes 100
SCORE_BUCKETS = (("0-20", 0, 20), ("20-40", 20, 40), ("40-60", 40, 60), ("60-80", 60, 80), ("80-100", 80, 100))


def _parse_github_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _columns(record: Any) -> Dict[str, Any]:
    return {attr.key: getattr(record, attr.key) for attr in sa_inspect(record).mapper.column_attrs}


def to_analysis_read(analysis: AnalysisRecord, with_summary: bool = False) -> AnalysisRead:
    data = _columns(analysis)
    data["quality_grade"] = derivations.quality_grade(analysis.quality_score)
    if with_summary:
        data["summary"] = AnalysisSummary(**derivations.analysis_summary(analysis))
    return AnalysisRead(**data)


def to_repository_read(
    repository: RepositoryRecord,
    latest: Optional[AnalysisRecord] = None,
    analyses: Optional[List[AnalysisRecord]] = None,
) -> RepositoryRead:
    data = _columns(repository)
    data.update(
        quality_grade=derivations.quality_grade(repository.last_quality_score),
        github_url=derivations.github_url(repository),
        days_since_last_analysis=derivations.days_since_last_analysis(repository),
        needs_analysis=derivations.needs_analysis(repository),
        latest_analysis=to_analysis_read(latest) if latest is not None else None,
        analyses=[to_analysis_read(a) for a in analyses] if analyses is not None else None,
    )
    return RepositoryRead(**data)


class RepositoryService:
    def __init__(
        self,
        github: GitHubService,
        orchestrator: AnalysisOrchestrator,
        cache: DualTierCache,
        stats_ttl_seconds: int = settings.STATS_CACHE_TTL_SECONDS,
    ):
        self.github = github
        self.orchestrator = orchestrator
        self.cache = cache
        self.stats_ttl_seconds = stats_ttl_seconds

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _get_or_404(self, session: AsyncSession, repository_id: uuid.UUID) -> RepositoryRecord:
        repository = await session.get(RepositoryRecord, repository_id)
        if repository is None:
            raise NotFoundError("No repository found with the provided ID")
        return repository

    async def _find(self, session: AsyncSession, owner: str, name: str) -> Optional[RepositoryRecord]:
        result = await session.execute(
            select(RepositoryRecord).where(
                RepositoryRecord.owner == owner.lower(),
                RepositoryRecord.name == name.lower(),
            )
        )
        return result.scalar_one_or_none()

    async def _recent_analyses(
        self, session: AsyncSession, repository_id: uuid.UUID, limit: int
    ) -> List[AnalysisRecord]:
        result = await session.execute(
            select(AnalysisRecord)
            .where(AnalysisRecord.repository_id == repository_id)
            .order_by(AnalysisRecord.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _detail(self, session: AsyncSession, repository: RepositoryRecord, history: int) -> RepositoryRead:
        latest = None
        if repository.latest_analysis_id is not None:
            latest = await session.get(AnalysisRecord, repository.latest_analysis_id)
        analyses = await self._recent_analyses(session, repository.id, history)
        return to_repository_read(repository, latest, analyses)

    async def get_repository(self, session: AsyncSession, repository_id: uuid.UUID) -> RepositoryRead:
        repository = await self._get_or_404(session, repository_id)
        return await self._detail(session, repository, history=10)

    async def get_by_github(self, session: AsyncSession, owner: str, name: str) -> RepositoryRead:
        repository = await self._find(session, owner, name)
        if repository is None:
            raise NotFoundError(f"Repository {owner}/{name} not found in our database")
        return await self._detail(session, repository, history=5)

    async def list_repositories(
        self,
        session: AsyncSession,
        *,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "updatedAt",
        sort_order: str = "desc",
        search: Optional[str] = None,
        language: Optional[str] = None,
        min_score: Optional[int] = None,
        max_score: Optional[int] = None,
    ) -> RepositoryPage:
        filters = []
        if search:
            pattern = f"%{search}%"
            filters.append(or_(
                RepositoryRecord.name.ilike(pattern),
                RepositoryRecord.owner.ilike(pattern),
                RepositoryRecord.description.ilike(pattern),
            ))
        if language:
            filters.append(func.lower(RepositoryRecord.language) == language.lower())
        if min_score is not None:
            filters.append(RepositoryRecord.last_quality_score >= min_score)
        if max_score is not None:
            filters.append(RepositoryRecord.last_quality_score <= max_score)

        column = SORT_COLUMNS.get(sort_by, RepositoryRecord.updated_at)
        order = column.asc() if sort_order == "asc" else column.desc()

        total = (await session.execute(
            select(func.count(RepositoryRecord.id)).where(*filters)
        )).scalar_one()
        result = await session.execute(
            select(RepositoryRecord)
            .where(*filters)
            .order_by(order, RepositoryRecord.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        repositories = list(result.scalars().all())

        latest_ids = [r.latest_analysis_id for r in repositories if r.latest_analysis_id is not None]
        latest: Dict[uuid.UUID, AnalysisRecord] = {}
        if latest_ids:
            rows = await session.execute(select(AnalysisRecord).where(AnalysisRecord.id.in_(latest_ids)))
            latest = {a.id: a for a in rows.scalars().all()}

        total_pages = math.ceil(total / limit) if total else 0
        return RepositoryPage(
            repositories=[to_repository_read(r, latest.get(r.latest_analysis_id)) for r in repositories],
            pagination=Pagination(
                current_page=page,
                total_pages=total_pages,
                total_items=total,
                items_per_page=limit,
                has_next=page < total_pages,
                has_prev=page > 1,
            ),
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add_repository(
        self,
        session: AsyncSession,
        repo_url: str,
        auto_analyze: bool = True,
        added_by: Optional[str] = None,
    ) -> AddRepositoryResult:
        """
        Start tracking a GitHub repository and, optionally, analyze it.

        Raises:
            ValidationError: malformed URL
            ConflictError: already tracked (carries the existing repository)
            UpstreamNotFoundError: GitHub does not know the repository
        """
        owner, name = parse_github_url(repo_url)

        existing = await self._find(session, owner, name)
        if existing is not None:
            raise ConflictError(
                "This repository is already being tracked",
                extra={"data": to_repository_read(existing).model_dump(mode="json", by_alias=True)},
            )

        info = await self.github.get_repository_info(owner, name)
        repository = RepositoryRecord(
            owner=info["owner"] or owner,
            name=info["name"] or name,
            github_id=info["id"],
            description=info.get("description"),
            url=normalize_github_url(info.get("url") or f"https://github.com/{owner}/{name}"),
            clone_url=info.get("cloneUrl") or f"https://github.com/{owner}/{name}.git",
            language=info.get("language"),
            stars=info.get("stars", 0),
            forks=info.get("forks", 0),
            open_issues=info.get("openIssues", 0),
            size=info.get("size", 0),
            is_private=info.get("isPrivate", False),
            default_branch=info.get("defaultBranch") or "main",
            github_created_at=_parse_github_datetime(info.get("createdAt")),
            github_updated_at=_parse_github_datetime(info.get("updatedAt")),
            added_by=added_by,
            auto_analyze=auto_analyze,
        )
        session.add(repository)
        try:
            await session.commit()
        except IntegrityError:
            # lost a race with another request adding the same repository
            await session.rollback()
            raise ConflictError("This repository is already being tracked")

        logger.info(f"Repository {repository.full_name} added by user {added_by or 'anonymous'}")
        await self.cache.delete(STATS_CACHE_KEY)
        # drop unknown badges served while the repository was untracked
        await self.cache.delete_pattern(badge_cache_pattern(repository.owner, repository.name))

        analysis: Optional[Dict[str, Any]] = None
        if auto_analyze:
            try:
                outcome = await self.orchestrator.analyze(
                    repository.owner, repository.name, triggered_by="api", triggered_by_user=added_by
                )
                analysis = {"qualityScore": outcome.snapshot.quality_score}
            except AppError as e:
                logger.warning(f"Initial analysis of {repository.full_name} failed: {e.message}")
            await session.refresh(repository)

        return AddRepositoryResult(repository=to_repository_read(repository), analysis=analysis)

    async def update_repository(
        self, session: AsyncSession, repository_id: uuid.UUID, update: RepositoryUpdate
    ) -> RepositoryRead:
        repository = await self._get_or_404(session, repository_id)
        try:
            for field, value in update.model_dump(exclude_unset=True).items():
                setattr(repository, field, value)
        except ValueError as e:
            raise ValidationError(str(e))
        await session.commit()
        await session.refresh(repository)
        await self.cache.delete(STATS_CACHE_KEY)
        logger.info(f"Repository {repository.full_name} updated")
        return await self._detail(session, repository, history=10)

    async def delete_repository(self, session: AsyncSession, repository_id: uuid.UUID) -> None:
        """Delete the repository, all of its analyses and its cache entries."""
        repository = await self._get_or_404(session, repository_id)
        owner, name, full_name = repository.owner, repository.name, repository.full_name

        await session.execute(delete(AnalysisRecord).where(AnalysisRecord.repository_id == repository.id))
        await session.delete(repository)
        await session.commit()

        await self.cache.delete(analysis_cache_key(owner, name))
        await self.cache.delete_pattern(badge_cache_pattern(owner, name))
        await self.cache.delete(STATS_CACHE_KEY)
        logger.info(f"Repository {full_name} deleted")

    async def sync_repository(self, session: AsyncSession, repository_id: uuid.UUID) -> RepositoryRead:
        """Refresh the GitHub metadata of a tracked repository."""
        repository = await self._get_or_404(session, repository_id)
        info = await self.github.refresh_repository_info(repository.owner, repository.name)

        repository.description = info.get("description")
        repository.language = info.get("language")
        repository.stars = info.get("stars", 0)
        repository.forks = info.get("forks", 0)
        repository.open_issues = info.get("openIssues", 0)
        repository.size = info.get("size", 0)
        repository.github_updated_at = _parse_github_datetime(info.get("updatedAt"))
        repository.last_synced_at = datetime.now(timezone.utc)
        await session.commit()
        await session.refresh(repository)

        logger.info(f"Repository {repository.full_name} synced with GitHub")
        return to_repository_read(repository)

    async def analyze_repository(
        self,
        session: AsyncSession,
        repository_id: uuid.UUID,
        triggered_by_user: Optional[str] = None,
    ) -> AnalysisOutcome:
        """Run a fresh analysis of a tracked repository."""
        repository = await self._get_or_404(session, repository_id)
        return await self.orchestrator.analyze(
            repository.owner,
            repository.name,
            force=True,
            triggered_by="manual",
            triggered_by_user=triggered_by_user,
        )

    # ------------------------------------------------------------------
    # Analyses
    # ------------------------------------------------------------------

    async def analysis_history(
        self, session: AsyncSession, repository_id: uuid.UUID, limit: int = 30
    ) -> List[TrendPoint]:
        await self._get_or_404(session, repository_id)
        return [
            TrendPoint(
                id=analysis.id,
                quality_score=analysis.quality_score,
                test_coverage=(analysis.code_metrics or {}).get("testCoverage"),
                security_score=(analysis.security or {}).get("securityScore"),
                status=analysis.status,
                created_at=analysis.created_at,
            )
            for analysis in await self._recent_analyses(session, repository_id, limit)
        ]

    async def get_analysis(self, session: AsyncSession, analysis_id: uuid.UUID) -> AnalysisRead:
        analysis = await session.get(AnalysisRecord, analysis_id)
        if analysis is None:
            raise NotFoundError("No analysis found with the provided ID")
        return to_analysis_read(analysis, with_summary=True)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_stats(self, session: AsyncSession) -> Dict[str, Any]:
        """Aggregate dashboard numbers, cached for STATS_CACHE_TTL_SECONDS."""
        async def compute() -> Dict[str, Any]:
            return await self._compute_stats(session)

        return await self.cache.wrap(STATS_CACHE_KEY, compute, self.stats_ttl_seconds)

    async def _compute_stats(self, session: AsyncSession) -> Dict[str, Any]:
        score = RepositoryRecord.last_quality_score

        total = (await session.execute(select(func.count(RepositoryRecord.id)))).scalar_one()
        analyzed = (await session.execute(
            select(func.count(RepositoryRecord.id)).where(score.is_not(None))
        )).scalar_one()

        language_rows = await session.execute(
            select(RepositoryRecord.language, func.count(RepositoryRecord.id).label("count"))
            .group_by(RepositoryRecord.language)
            .order_by(func.count(RepositoryRecord.id).desc())
            .limit(10)
        )
        languages = [{"language": language, "count": count} for language, count in language_rows.all()]

        bucket = case(
            *[(score < upper, label) for label, _, upper in SCORE_BUCKETS[:-1]],
            (score <= 100, SCORE_BUCKETS[-1][0]),
            else_="unknown",
        )
        bucket_rows = await session.execute(
            select(bucket.label("bucket"), func.count(RepositoryRecord.id)).group_by("bucket")
        )
        counts = dict(bucket_rows.all())
        distribution = [
            {"range": label, "min": lower, "max": upper, "count": counts.get(label, 0)}
            for label, lower, upper in SCORE_BUCKETS
        ]
        distribution.append({"range": "unknown", "min": None, "max": None, "count": counts.get("unknown", 0)})

        recent_rows = await session.execute(
            select(RepositoryRecord)
            .where(RepositoryRecord.last_analyzed_at.is_not(None))
            .order_by(RepositoryRecord.last_analyzed_at.desc())
            .limit(5)
        )
        recent = [
            {
                "id": str(r.id),
                "owner": r.owner,
                "name": r.name,
                "lastQualityScore": r.last_quality_score,
                "lastAnalyzedAt": r.last_analyzed_at.isoformat() if r.last_analyzed_at else None,
            }
            for r in recent_rows.scalars().all()
        ]

        average = (await session.execute(select(func.avg(score)).where(score.is_not(None)))).scalar_one()

        return {
            "totalRepositories": total,
            "analyzedRepositories": analyzed,
            "languageDistribution": languages,
            "qualityScoreDistribution": distribution,
            "recentlyAnalyzed": recent,
            "averageQualityScore": round(average) if average is not None else 0,
        }
