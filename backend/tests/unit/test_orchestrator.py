import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.errors import NotFoundError, UpstreamError, UpstreamNotFoundError
from app.db.base import Base
from app.models.analysis import AnalysisRecord
from app.models.repository import RepositoryRecord
from app.services.cache import DualTierCache
from app.services.orchestrator import (
    STATS_CACHE_KEY,
    AnalysisOrchestrator,
    analysis_cache_key,
    compute_trends,
)


class GatedProducer:
    """Blocks every analysis until ``release()`` is called."""

    def __init__(self, result):
        self.result = result
        self.calls = 0
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    async def perform_full_analysis(self, owner, repo):
        self.calls += 1
        self.started.set()
        await self.gate.wait()
        return self.result

    def release(self):
        self.gate.set()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def repository(session_factory) -> RepositoryRecord:
    async with session_factory() as session:
        record = RepositoryRecord(
            owner="octocat",
            name="hello-world",
            github_id=1296269,
            url="https://github.com/octocat/hello-world",
            clone_url="https://github.com/octocat/hello-world.git",
        )
        session.add(record)
        await session.commit()
        return record


@pytest.fixture
def cache() -> DualTierCache:
    return DualTierCache()


@pytest.fixture
def orchestrator(session_factory, cache, fake_producer) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(session_factory, fake_producer, cache)


async def load_repository(session_factory, repository_id) -> RepositoryRecord:
    async with session_factory() as session:
        return await session.get(RepositoryRecord, repository_id)


async def load_analyses(session_factory, repository_id):
    async with session_factory() as session:
        result = await session.execute(
            select(AnalysisRecord)
            .where(AnalysisRecord.repository_id == repository_id)
            .order_by(AnalysisRecord.created_at)
        )
        return list(result.scalars().all())


class TestAnalyze:

    @pytest.mark.asyncio
    async def test_first_analysis_runs_producer_and_stores_pointer(
        self, orchestrator, repository, fake_producer, session_factory, cache
    ):
        outcome = await orchestrator.analyze("OctoCat", "Hello-World")

        assert outcome.cached is False
        assert outcome.snapshot.quality_score == 85
        assert outcome.snapshot.test_coverage == 72.5
        assert outcome.snapshot.security_score == 90
        assert outcome.snapshot.complexity_grade == "B"
        assert fake_producer.calls == 1

        stored = await load_repository(session_factory, repository.id)
        assert stored.latest_analysis_id == outcome.snapshot.analysis_id
        assert stored.last_quality_score == 85
        assert stored.analysis_count == 1
        assert stored.last_analyzed_at is not None

        analyses = await load_analyses(session_factory, repository.id)
        assert len(analyses) == 1
        assert analyses[0].status == "completed"
        assert analyses[0].triggered_by == "api"
        assert analyses[0].trends == {
            "qualityScoreDelta": 0, "coverageDelta": 0, "complexityDelta": 0, "issuesDelta": 0,
        }

        cached = await cache.get(analysis_cache_key("octocat", "hello-world"))
        assert cached["qualityScore"] == 85

    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self, orchestrator, repository, fake_producer):
        await orchestrator.analyze("octocat", "hello-world")
        outcome = await orchestrator.analyze("octocat", "hello-world")

        assert outcome.cached is True
        assert fake_producer.calls == 1

    @pytest.mark.asyncio
    async def test_stored_analysis_used_when_cache_is_empty(self, orchestrator, repository, fake_producer, cache):
        first = await orchestrator.analyze("octocat", "hello-world")
        await cache.flush()

        outcome = await orchestrator.analyze("octocat", "hello-world")

        assert outcome.cached is True
        assert outcome.snapshot.analysis_id == first.snapshot.analysis_id
        assert fake_producer.calls == 1

    @pytest.mark.asyncio
    async def test_untracked_repository(self, orchestrator, fake_producer):
        with pytest.raises(NotFoundError):
            await orchestrator.analyze("octocat", "nope")
        assert fake_producer.calls == 0

    @pytest.mark.asyncio
    async def test_forced_analysis_computes_trends(
        self, orchestrator, repository, fake_producer, result_factory, session_factory
    ):
        await orchestrator.analyze("octocat", "hello-world")
        fake_producer.result = result_factory(score=90, coverage=80, issues=1)

        outcome = await orchestrator.analyze("octocat", "hello-world", force=True, triggered_by="manual")

        assert outcome.cached is False
        assert outcome.snapshot.quality_score == 90
        assert fake_producer.calls == 2

        analyses = await load_analyses(session_factory, repository.id)
        assert analyses[-1].trends == {
            "qualityScoreDelta": 5, "coverageDelta": 7.5, "complexityDelta": 0, "issuesDelta": -1,
        }
        assert analyses[-1].triggered_by == "manual"
        stored = await load_repository(session_factory, repository.id)
        assert stored.analysis_count == 2
        assert stored.latest_analysis_id == analyses[-1].id

    @pytest.mark.asyncio
    async def test_run_invalidates_badges_and_stats(self, orchestrator, repository, cache):
        await cache.set("badge:octocat:hello-world:flat", "<svg>old</svg>")
        await cache.set("badge:octocat:other:flat", "<svg>other</svg>")
        await cache.set(STATS_CACHE_KEY, {"totalRepositories": 1})

        await orchestrator.analyze("octocat", "hello-world")

        assert await cache.keys("badge:*") == ["badge:octocat:other:flat"]
        assert await cache.get(STATS_CACHE_KEY) is None


class TestCoalescing:

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_run(self, session_factory, cache, repository, result_factory):
        producer = GatedProducer(result_factory())
        orchestrator = AnalysisOrchestrator(session_factory, producer, cache)

        calls = [asyncio.create_task(orchestrator.analyze("octocat", "hello-world")) for _ in range(5)]
        await producer.started.wait()
        producer.release()
        outcomes = await asyncio.gather(*calls)

        assert producer.calls == 1
        assert len({o.snapshot.analysis_id for o in outcomes}) == 1
        assert len(await load_analyses(session_factory, repository.id)) == 1
        assert orchestrator._inflight == {}

    @pytest.mark.asyncio
    async def test_forced_call_joins_running_analysis(self, session_factory, cache, repository, result_factory):
        producer = GatedProducer(result_factory())
        orchestrator = AnalysisOrchestrator(session_factory, producer, cache)

        first = asyncio.create_task(orchestrator.analyze("octocat", "hello-world"))
        await producer.started.wait()
        forced = asyncio.create_task(orchestrator.analyze("octocat", "hello-world", force=True))
        await asyncio.sleep(0)
        producer.release()

        a, b = await asyncio.gather(first, forced)
        assert producer.calls == 1
        assert a.snapshot.analysis_id == b.snapshot.analysis_id

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_run(self, session_factory, cache, repository, result_factory):
        producer = GatedProducer(result_factory(score=88))
        orchestrator = AnalysisOrchestrator(session_factory, producer, cache)

        caller = asyncio.create_task(orchestrator.analyze("octocat", "hello-world"))
        await producer.started.wait()
        run = orchestrator._inflight[("octocat", "hello-world")]
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        producer.release()
        await run

        outcome = await orchestrator.analyze("octocat", "hello-world")
        assert outcome.cached is True
        assert outcome.snapshot.quality_score == 88
        assert producer.calls == 1


class TestFailures:

    @pytest.mark.asyncio
    async def test_producer_failure_is_recorded(
        self, orchestrator, repository, fake_producer, session_factory, cache
    ):
        fake_producer.error = UpstreamNotFoundError("Repository octocat/hello-world not found or not accessible")

        with pytest.raises(UpstreamNotFoundError):
            await orchestrator.analyze("octocat", "hello-world")

        analyses = await load_analyses(session_factory, repository.id)
        assert len(analyses) == 1
        assert analyses[0].status == "failed"
        assert analyses[0].quality_score is None
        assert analyses[0].error_message == "Repository octocat/hello-world not found or not accessible"

        stored = await load_repository(session_factory, repository.id)
        assert stored.latest_analysis_id is None
        assert stored.analysis_count == 0
        assert await cache.get(analysis_cache_key("octocat", "hello-world")) is None

    @pytest.mark.asyncio
    async def test_unexpected_producer_error_becomes_upstream_error(self, orchestrator, repository, fake_producer):
        fake_producer.error = RuntimeError("scorer bug")

        with pytest.raises(UpstreamError) as exc_info:
            await orchestrator.analyze("octocat", "hello-world")
        assert exc_info.value.message == "Analysis of octocat/hello-world failed"

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_analysis(
        self, orchestrator, repository, fake_producer, session_factory
    ):
        first = await orchestrator.analyze("octocat", "hello-world")
        fake_producer.error = UpstreamError("Failed to communicate with GitHub API")

        with pytest.raises(UpstreamError):
            await orchestrator.analyze("octocat", "hello-world", force=True)

        stored = await load_repository(session_factory, repository.id)
        assert stored.latest_analysis_id == first.snapshot.analysis_id
        assert stored.last_quality_score == 85

    @pytest.mark.asyncio
    async def test_failure_is_not_reused_by_next_call(self, orchestrator, repository, fake_producer):
        fake_producer.error = UpstreamError("Failed to communicate with GitHub API")
        with pytest.raises(UpstreamError):
            await orchestrator.analyze("octocat", "hello-world")

        fake_producer.error = None
        outcome = await orchestrator.analyze("octocat", "hello-world")
        assert outcome.snapshot.quality_score == 85
        assert fake_producer.calls == 2


class TestPointerRepair:

    async def add_completed_analysis(self, session_factory, repository, score=77):
        async with session_factory() as session:
            analysis = AnalysisRecord(
                repository_id=repository.id,
                quality_score=score,
                code_metrics={"testCoverage": 50},
                security={"securityScore": 80},
                complexity={"complexityGrade": "C"},
                status="completed",
                created_at=datetime.now(timezone.utc) - timedelta(days=1),
            )
            session.add(analysis)
            await session.commit()
            return analysis

    @pytest.mark.asyncio
    async def test_missing_pointer_is_repaired(self, orchestrator, repository, fake_producer, session_factory):
        analysis = await self.add_completed_analysis(session_factory, repository)

        outcome = await orchestrator.analyze("octocat", "hello-world")

        assert outcome.cached is True
        assert outcome.snapshot.analysis_id == analysis.id
        assert outcome.snapshot.quality_score == 77
        assert fake_producer.calls == 0

        stored = await load_repository(session_factory, repository.id)
        assert stored.latest_analysis_id == analysis.id
        assert stored.last_quality_score == 77
        assert stored.analysis_count == 1

    @pytest.mark.asyncio
    async def test_dangling_pointer_is_repaired(self, orchestrator, repository, fake_producer, session_factory):
        analysis = await self.add_completed_analysis(session_factory, repository)
        async with session_factory() as session:
            record = await session.get(RepositoryRecord, repository.id)
            record.latest_analysis_id = uuid.uuid4()
            await session.commit()

        outcome = await orchestrator.analyze("octocat", "hello-world")

        assert outcome.snapshot.analysis_id == analysis.id
        assert fake_producer.calls == 0


class TestLatest:

    @pytest.mark.asyncio
    async def test_latest_never_runs_producer(self, orchestrator, repository, fake_producer):
        assert await orchestrator.latest("octocat", "nope") is None
        assert await orchestrator.latest("octocat", "hello-world") is None
        assert fake_producer.calls == 0

    @pytest.mark.asyncio
    async def test_latest_after_analysis(self, orchestrator, repository, cache):
        outcome = await orchestrator.analyze("octocat", "hello-world")
        await cache.flush()

        snapshot = await orchestrator.latest("OctoCat", "Hello-World")

        assert snapshot.analysis_id == outcome.snapshot.analysis_id
        assert await cache.exists(analysis_cache_key("octocat", "hello-world"))


def test_compute_trends_without_previous(result_factory):
    assert compute_trends(result_factory(), None) == {
        "qualityScoreDelta": 0, "coverageDelta": 0, "complexityDelta": 0, "issuesDelta": 0,
    }


def test_compute_trends(result_factory):
    previous = AnalysisRecord(
        quality_score=80,
        code_metrics={"testCoverage": 70.0},
        complexity={"averageComplexity": 8.0},
        issues=[{}, {}, {}],
    )

    trends = compute_trends(result_factory(score=85, coverage=72.5, issues=2), previous)

    assert trends == {"qualityScoreDelta": 5, "coverageDelta": 2.5, "complexityDelta": -1.5, "issuesDelta": -1}
