"""
Analysis orchestration.

``AnalysisOrchestrator.analyze(owner, name)`` answers "what is the current
analysis of this repository?":

1. a cached snapshot (``analysis:<owner>:<name>``) is returned as is;
2. a repository whose latest analysis is already stored is answered from the
   database, without calling the producer;
3. otherwise the producer runs, and the new AnalysisRecord and the
   repository's latest-analysis pointer are committed in one transaction.

Concurrent calls for the same repository share one run. The run is a task of
its own, so a caller that goes away (HTTP timeout, client disconnect) does
not cancel it; the result is cached for whoever asks next.

A producer failure is stored as a ``failed`` AnalysisRecord, leaves the
repository untouched, and is re-raised.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.errors import AppError, InternalError, NotFoundError, UpstreamError
from app.models.analysis import AnalysisRecord
from app.models.repository import RepositoryRecord
from app.schemas.analysis import AnalysisResult, AnalysisSnapshot
from app.services.cache import DualTierCache

logger = logging.getLogger(__name__)

STATS_CACHE_KEY = "repository-stats"


class AnalysisProducer(Protocol):
    async def perform_full_analysis(self, owner: str, repo: str) -> AnalysisResult:
        ...


@dataclass
class AnalysisOutcome:
    snapshot: AnalysisSnapshot
    # True when no new analysis was run for this call
    cached: bool


def analysis_cache_key(owner: str, name: str) -> str:
    return f"analysis:{owner.lower()}:{name.lower()}"


def badge_cache_pattern(owner: str, name: str) -> str:
    return f"badge:{owner.lower()}:{name.lower()}:*"


def build_snapshot(repository: RepositoryRecord, analysis: AnalysisRecord) -> AnalysisSnapshot:
    return AnalysisSnapshot(
        owner=repository.owner,
        name=repository.name,
        repository_id=repository.id,
        analysis_id=analysis.id,
        quality_score=analysis.quality_score,
        security_score=(analysis.security or {}).get("securityScore"),
        test_coverage=(analysis.code_metrics or {}).get("testCoverage"),
        complexity_grade=(analysis.complexity or {}).get("complexityGrade"),
        analyzed_at=analysis.created_at,
    )


def compute_trends(result: AnalysisResult, previous: Optional[AnalysisRecord]) -> Dict[str, float]:
    """Deltas against the previous completed analysis; all zero for the first one."""
    if previous is None:
        return {"qualityScoreDelta": 0, "coverageDelta": 0, "complexityDelta": 0, "issuesDelta": 0}

    previous_metrics = previous.code_metrics or {}
    previous_complexity = previous.complexity or {}
    return {
        "qualityScoreDelta": result.quality_score - (previous.quality_score or 0),
        "coverageDelta": round(
            result.code_metrics.test_coverage - previous_metrics.get("testCoverage", 0), 1
        ),
        "complexityDelta": round(
            result.complexity.average_complexity - previous_complexity.get("averageComplexity", 0), 1
        ),
        "issuesDelta": len(result.issues) - len(previous.issues or []),
    }


class AnalysisOrchestrator:
    """
    Cached, coalesced analysis of tracked repositories.

    Args:
        session_factory: Opens the database sessions used for each run
        producer: Anything with ``perform_full_analysis(owner, repo)``
        cache: Shared DualTierCache
        ttl_seconds: Lifetime of cached snapshots
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        producer: AnalysisProducer,
        cache: DualTierCache,
        ttl_seconds: int = settings.ANALYSIS_CACHE_TTL_SECONDS,
    ):
        self.session_factory = session_factory
        self.producer = producer
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._inflight: Dict[Tuple[str, str], asyncio.Task] = {}

    async def analyze(
        self,
        owner: str,
        name: str,
        *,
        force: bool = False,
        triggered_by: str = "api",
        triggered_by_user: Optional[str] = None,
    ) -> AnalysisOutcome:
        """
        Current analysis of ``owner/name``, running one when needed.

        Args:
            force: Skip the cache and the stored analysis; always run the producer

        Raises:
            NotFoundError: the repository is not tracked
            UpstreamError: the producer failed
        """
        owner, name = owner.strip().lower(), name.strip().lower()

        if not force:
            cached = await self.cache.get(analysis_cache_key(owner, name))
            if cached is not None:
                return AnalysisOutcome(AnalysisSnapshot.model_validate(cached), cached=True)

        identity = (owner, name)
        task = self._inflight.get(identity)
        if task is None:
            task = asyncio.create_task(self._run(owner, name, force, triggered_by, triggered_by_user))
            self._inflight[identity] = task
            task.add_done_callback(lambda done: self._forget(identity, done))
        else:
            logger.debug(f"Joining in-flight analysis of {owner}/{name}")
        return await asyncio.shield(task)

    def _forget(self, identity: Tuple[str, str], task: asyncio.Task) -> None:
        if self._inflight.get(identity) is task:
            del self._inflight[identity]
        # nobody may be awaiting any more; retrieve it so asyncio stays quiet
        if not task.cancelled():
            task.exception()

    async def latest(self, owner: str, name: str) -> Optional[AnalysisSnapshot]:
        """The stored analysis, if any. Never runs the producer."""
        owner, name = owner.strip().lower(), name.strip().lower()
        cached = await self.cache.get(analysis_cache_key(owner, name))
        if cached is not None:
            return AnalysisSnapshot.model_validate(cached)

        async with self.session_factory() as session:
            repository = await self._find_repository(session, owner, name)
            if repository is None:
                return None
            analysis = await self._load_latest(session, repository)
            if analysis is None:
                return None
            snapshot = build_snapshot(repository, analysis)
        await self._store(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # One run
    # ------------------------------------------------------------------

    async def _run(
        self,
        owner: str,
        name: str,
        force: bool,
        triggered_by: str,
        triggered_by_user: Optional[str],
    ) -> AnalysisOutcome:
        async with self.session_factory() as session:
            repository = await self._find_repository(session, owner, name)
            if repository is None:
                raise NotFoundError(f"Repository {owner}/{name} is not tracked")

            if not force:
                latest = await self._load_latest(session, repository)
                if latest is not None:
                    snapshot = build_snapshot(repository, latest)
                    await self._store(snapshot)
                    return AnalysisOutcome(snapshot, cached=True)

            snapshot = await self._produce(session, repository, triggered_by, triggered_by_user)

        await self._store(snapshot)
        await self.cache.delete_pattern(badge_cache_pattern(owner, name))
        await self.cache.delete(STATS_CACHE_KEY)
        return AnalysisOutcome(snapshot, cached=False)

    async def _produce(
        self,
        session: AsyncSession,
        repository: RepositoryRecord,
        triggered_by: str,
        triggered_by_user: Optional[str],
    ) -> AnalysisSnapshot:
        owner, name = repository.owner, repository.name
        logger.info(f"Running analysis for {owner}/{name} (triggered by {triggered_by})")
        started = time.monotonic()

        try:
            result = await self.producer.perform_full_analysis(owner, name)
        except AppError as e:
            await self._record_failure(session, repository, e, triggered_by, triggered_by_user, started)
            raise
        except Exception as e:
            logger.error(f"Analysis producer crashed for {owner}/{name}", exc_info=e)
            error = UpstreamError(f"Analysis of {owner}/{name} failed")
            await self._record_failure(session, repository, error, triggered_by, triggered_by_user, started)
            raise error from e

        duration_ms = int((time.monotonic() - started) * 1000)
        try:
            previous = await self._latest_completed(session, repository.id)
            record = AnalysisRecord(
                id=uuid.uuid4(),
                repository_id=repository.id,
                quality_score=result.quality_score,
                code_metrics=result.code_metrics.model_dump(by_alias=True),
                security=result.security.model_dump(by_alias=True),
                complexity=result.complexity.model_dump(by_alias=True),
                issues=[issue.model_dump(by_alias=True) for issue in result.issues],
                recommendations=[rec.model_dump(by_alias=True) for rec in result.recommendations],
                language_breakdown={
                    language: share.model_dump(by_alias=True)
                    for language, share in result.language_breakdown.items()
                },
                trends=compute_trends(result, previous),
                status="completed",
                triggered_by=triggered_by,
                triggered_by_user=triggered_by_user,
                duration_ms=duration_ms,
                created_at=datetime.now(timezone.utc),
            )
            session.add(record)
            # record and pointer share one commit
            self._point_at(repository, record)
            repository.analysis_count = (repository.analysis_count or 0) + 1
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Failed to save analysis of {owner}/{name}", exc_info=e)
            raise InternalError(f"Failed to save analysis of {owner}/{name}") from e

        logger.info(
            f"Analysis for {owner}/{name} completed: score {record.quality_score} in {duration_ms}ms"
        )
        return build_snapshot(repository, record)

    async def _record_failure(
        self,
        session: AsyncSession,
        repository: RepositoryRecord,
        error: AppError,
        triggered_by: str,
        triggered_by_user: Optional[str],
        started: float,
    ) -> None:
        logger.warning(f"Analysis for {repository.full_name} failed: {error.message}")
        try:
            session.add(AnalysisRecord(
                repository_id=repository.id,
                status="failed",
                error_message=error.message,
                triggered_by=triggered_by,
                triggered_by_user=triggered_by_user,
                duration_ms=int((time.monotonic() - started) * 1000),
            ))
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Failed to record failed analysis of {repository.full_name}", exc_info=e)

    # ------------------------------------------------------------------
    # Storage helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _find_repository(session: AsyncSession, owner: str, name: str) -> Optional[RepositoryRecord]:
        result = await session.execute(
            select(RepositoryRecord).where(RepositoryRecord.owner == owner, RepositoryRecord.name == name)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _latest_completed(session: AsyncSession, repository_id: uuid.UUID) -> Optional[AnalysisRecord]:
        result = await session.execute(
            select(AnalysisRecord)
            .where(AnalysisRecord.repository_id == repository_id, AnalysisRecord.status == "completed")
            .order_by(AnalysisRecord.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _load_latest(self, session: AsyncSession, repository: RepositoryRecord) -> Optional[AnalysisRecord]:
        """
        The analysis the repository points at. If the pointer is missing or
        dangling but a completed analysis exists, the pointer is repaired
        instead of running a new analysis.
        """
        if repository.latest_analysis_id is not None:
            analysis = await session.get(AnalysisRecord, repository.latest_analysis_id)
            if analysis is not None:
                return analysis

        analysis = await self._latest_completed(session, repository.id)
        if analysis is None:
            return None

        logger.info(f"Repairing latest analysis pointer of {repository.full_name}")
        try:
            self._point_at(repository, analysis)
            count = await session.execute(
                select(func.count(AnalysisRecord.id)).where(
                    AnalysisRecord.repository_id == repository.id,
                    AnalysisRecord.status == "completed",
                )
            )
            repository.analysis_count = count.scalar_one()
            await session.commit()
        except SQLAlchemyError as e:
            # the analysis is still valid; the repair is retried next time
            await session.rollback()
            await session.refresh(repository)
            await session.refresh(analysis)
            logger.error(f"Failed to repair latest analysis pointer of {repository.full_name}", exc_info=e)
        return analysis

    @staticmethod
    def _point_at(repository: RepositoryRecord, analysis: AnalysisRecord) -> None:
        repository.latest_analysis_id = analysis.id
        repository.last_quality_score = analysis.quality_score
        repository.last_analyzed_at = analysis.created_at

    async def _store(self, snapshot: AnalysisSnapshot) -> None:
        payload: Dict[str, Any] = snapshot.model_dump(mode="json", by_alias=True)
        await self.cache.set(analysis_cache_key(snapshot.owner, snapshot.name), payload, self.ttl_seconds)
