"""Badge endpoints: always 200 with an SVG, "unknown" when there is nothing to show."""
import pytest
from httpx import AsyncClient

from app.services.badge import render_badge, render_unknown_badge

BADGE_URL = "/api/analysis/badge/octocat/hello-world"


@pytest.mark.asyncio
async def test_quality_badge_end_to_end(client: AsyncClient, add_repository):
    await add_repository()

    response = await client.get(BADGE_URL)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("image/svg+xml")
    assert response.headers["cache-control"] == "public, max-age=3600"
    assert "85/100" in response.text
    assert 'fill="#97ca00"' in response.text
    assert response.text == render_badge(85, "quality", "flat")


@pytest.mark.asyncio
async def test_badge_served_from_cache(client: AsyncClient, fake_producer, cache, add_repository):
    await add_repository()

    first = await client.get(BADGE_URL)
    second = await client.get(BADGE_URL)

    assert first.text == second.text
    # only the analysis run when the repository was added
    assert fake_producer.calls == 1
    assert await cache.exists("badge:octocat:hello-world:flat")


@pytest.mark.asyncio
async def test_badge_style(client: AsyncClient, add_repository):
    await add_repository()

    plastic = await client.get(BADGE_URL, params={"style": "plastic"})
    unknown_style = await client.get(BADGE_URL, params={"style": "neon"})

    assert 'rx="3"' in plastic.text
    assert unknown_style.text == render_badge(85, "quality", "flat")


@pytest.mark.asyncio
async def test_variant_badges(client: AsyncClient, add_repository):
    await add_repository()

    coverage = await client.get(f"{BADGE_URL}/coverage")
    security = await client.get(f"{BADGE_URL}/security")
    complexity = await client.get(f"{BADGE_URL}/complexity")

    assert coverage.status_code == 200
    assert "72.5%" in coverage.text
    assert 'fill="#a4a61d"' in coverage.text
    assert "90/100" in security.text
    assert 'fill="#4c1"' in security.text
    assert ">B</text>" in complexity.text


@pytest.mark.asyncio
async def test_untracked_repository_badge_is_unknown(client: AsyncClient, fake_producer, cache):
    response = await client.get("/api/analysis/badge/someone/nothing-here")

    assert response.status_code == 200
    assert response.text == render_unknown_badge("quality")
    assert fake_producer.calls == 0
    # failures are cached briefly
    assert await cache.keys("badge:*") == ["badge:someone:nothing-here:flat"]
    assert 0 < await cache.ttl("badge:someone:nothing-here:flat") <= 300


@pytest.mark.asyncio
async def test_adding_repository_replaces_cached_unknown_badge(client: AsyncClient, fake_producer, add_repository):
    assert (await client.get(BADGE_URL)).text == render_unknown_badge("quality")

    await add_repository(autoAnalyze=False)
    response = await client.get(BADGE_URL)

    assert "85/100" in response.text
    assert fake_producer.calls == 1


@pytest.mark.asyncio
async def test_failing_analysis_is_not_retried_by_every_badge_hit(
    client: AsyncClient, fake_producer, upstream_failure, add_repository
):
    await add_repository(autoAnalyze=False)
    fake_producer.error = upstream_failure

    for _ in range(20):
        response = await client.get(BADGE_URL)
        assert response.status_code == 200
        assert response.text == render_unknown_badge("quality")

    assert fake_producer.calls == 1


@pytest.mark.asyncio
async def test_badge_analyses_count_against_analysis_limit(
    client: AsyncClient, fake_producer, upstream_failure, add_repository
):
    await add_repository(autoAnalyze=False)
    fake_producer.error = upstream_failure

    # every style and variant is its own cache entry
    for style in ("flat", "flat-square", "plastic", "for-the-badge", "social"):
        for path in (BADGE_URL, f"{BADGE_URL}/coverage", f"{BADGE_URL}/security", f"{BADGE_URL}/complexity"):
            response = await client.get(path, params={"style": style})
            assert response.status_code == 200
            assert ">unknown<" in response.text

    assert fake_producer.calls == 5


@pytest.mark.asyncio
async def test_repository_without_analysis_gets_analyzed_by_badge(client: AsyncClient, fake_producer, add_repository):
    await add_repository(autoAnalyze=False)

    response = await client.get(BADGE_URL)

    assert "85/100" in response.text
    assert fake_producer.calls == 1


@pytest.mark.asyncio
async def test_invalid_variant_is_unknown(client: AsyncClient, add_repository):
    await add_repository()

    response = await client.get(f"{BADGE_URL}/popularity")

    assert response.status_code == 200
    assert response.text == render_unknown_badge()


@pytest.mark.asyncio
async def test_badges_are_not_rate_limited(client: AsyncClient, add_repository):
    await add_repository()

    for _ in range(120):
        response = await client.get(BADGE_URL)
        assert response.status_code == 200
    assert "x-ratelimit-limit" not in response.headers


@pytest.mark.asyncio
async def test_badge_unknown_after_delete(client: AsyncClient, auth_headers, cache, add_repository):
    added = await add_repository()
    repository_id = added.json()["data"]["repository"]["id"]
    assert "85/100" in (await client.get(BADGE_URL)).text

    deleted = await client.delete(f"/api/repositories/{repository_id}", headers=auth_headers)
    assert deleted.status_code == 200

    response = await client.get(BADGE_URL)
    assert response.text == render_unknown_badge("quality")
    assert await cache.get("analysis:octocat:hello-world") is None


@pytest.mark.asyncio
async def test_badge_refreshes_after_forced_analysis(client: AsyncClient, fake_producer, result_factory, add_repository):
    added = await add_repository()
    repository_id = added.json()["data"]["repository"]["id"]
    assert "85/100" in (await client.get(BADGE_URL)).text

    fake_producer.result = result_factory(score=93)
    analyzed = await client.post(f"/api/repositories/{repository_id}/analyze")
    assert analyzed.status_code == 200

    response = await client.get(BADGE_URL)
    assert "93/100" in response.text
    assert 'fill="#4c1"' in response.text


@pytest.mark.asyncio
async def test_badge_variants(client: AsyncClient, add_repository):
    await add_repository()

    response = await client.get(f"{BADGE_URL}/variants")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["repository"] == "octocat/hello-world"
    assert data["scores"] == {"quality": 85, "security": 90, "coverage": 72.5, "complexity": "B"}
    assert data["badges"]["quality"]["url"] == "/api/analysis/badge/octocat/hello-world?style=flat"
    assert data["badges"]["coverage"]["markdown"] == (
        "![Test Coverage](http://test/api/analysis/badge/octocat/hello-world/coverage)"
    )
    assert set(data["badges"]) == {"quality", "security", "coverage", "complexity"}


@pytest.mark.asyncio
async def test_badge_variants_not_analyzed(client: AsyncClient, add_repository):
    await add_repository(autoAnalyze=False)

    response = await client.get(f"{BADGE_URL}/variants")

    assert response.status_code == 404
    assert response.json()["message"] == "Repository not found or not analyzed yet"


@pytest.mark.asyncio
async def test_badge_variants_untracked(client: AsyncClient):
    response = await client.get("/api/analysis/badge/someone/nothing-here/variants")
    assert response.status_code == 404
