"""POST /api/analysis: add a repository and run its first analysis."""
import pytest
from httpx import AsyncClient

from app.core.errors import UpstreamError

ANALYZE_URL = "/api/analysis"
HELLO_WORLD = "https://github.com/octocat/hello-world"


@pytest.mark.asyncio
async def test_analyze_new_repository(client: AsyncClient, fake_producer):
    response = await client.post(ANALYZE_URL, json={"repoUrl": HELLO_WORLD})

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Repository added successfully"

    repository = body["data"]["repository"]
    assert repository["owner"] == "octocat"
    assert repository["name"] == "hello-world"
    assert repository["fullName"] == "octocat/hello-world"
    assert repository["language"] == "Python"
    assert repository["lastQualityScore"] == 85
    assert repository["qualityGrade"] == "B"
    assert repository["analysisCount"] == 1
    assert body["data"]["analysis"] == {"qualityScore": 85}
    assert fake_producer.calls == 1


@pytest.mark.asyncio
async def test_analyze_accepts_trailing_slash_and_mixed_case(client: AsyncClient):
    response = await client.post(ANALYZE_URL, json={"repoUrl": "https://github.com/OctoCat/Hello-World/"})

    assert response.status_code == 201
    repository = response.json()["data"]["repository"]
    assert repository["fullName"] == "octocat/hello-world"
    assert repository["url"] == "https://github.com/octocat/hello-world"


@pytest.mark.asyncio
async def test_analyze_rejects_invalid_url(client: AsyncClient, fake_producer):
    for url in ["not-a-url", "https://gitlab.com/owner/repo", "https://github.com/owner", "https://github.com/../x", ""]:
        response = await client.post(ANALYZE_URL, json={"repoUrl": url})
        assert response.status_code == 400, f"Should reject: {url}"
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "Validation Error"
        assert body["message"] == "Please provide a valid GitHub repository URL"

    assert fake_producer.calls == 0


@pytest.mark.asyncio
async def test_analyze_missing_body_field(client: AsyncClient):
    response = await client.post(ANALYZE_URL, json={})

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Validation Error"
    assert "repoUrl" in body["details"]


@pytest.mark.asyncio
async def test_analyze_unknown_github_repository(client: AsyncClient, fake_producer):
    response = await client.post(ANALYZE_URL, json={"repoUrl": "https://github.com/octocat/does-not-exist"})

    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Repository Not Found"
    assert fake_producer.calls == 0


@pytest.mark.asyncio
async def test_analyze_duplicate_repository(client: AsyncClient):
    first = await client.post(ANALYZE_URL, json={"repoUrl": HELLO_WORLD})
    assert first.status_code == 201

    response = await client.post(ANALYZE_URL, json={"repoUrl": HELLO_WORLD + ".git"})

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "Conflict"
    assert body["message"] == "This repository is already being tracked"
    assert body["data"]["fullName"] == "octocat/hello-world"
    assert body["data"]["id"] == first.json()["data"]["repository"]["id"]


@pytest.mark.asyncio
async def test_analyze_without_auto_analyze(client: AsyncClient, fake_producer):
    response = await client.post(ANALYZE_URL, json={"repoUrl": HELLO_WORLD, "autoAnalyze": False})

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["analysis"] is None
    assert data["repository"]["lastQualityScore"] is None
    assert data["repository"]["needsAnalysis"] is True
    assert fake_producer.calls == 0


@pytest.mark.asyncio
async def test_analyze_producer_failure_still_tracks_repository(client: AsyncClient, fake_producer):
    fake_producer.error = UpstreamError("Failed to communicate with GitHub API")

    response = await client.post(ANALYZE_URL, json={"repoUrl": HELLO_WORLD})

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["analysis"] is None
    assert data["repository"]["lastQualityScore"] is None
    assert data["repository"]["analysisCount"] == 0


@pytest.mark.asyncio
async def test_analyze_records_authenticated_user(client: AsyncClient, auth_headers):
    response = await client.post(ANALYZE_URL, json={"repoUrl": HELLO_WORLD}, headers=auth_headers)

    assert response.status_code == 201
    assert response.json()["data"]["repository"]["addedBy"] == "user-1"


@pytest.mark.asyncio
async def test_analyze_rate_limited_after_five_requests(client: AsyncClient):
    for _ in range(5):
        response = await client.post(ANALYZE_URL, json={"repoUrl": HELLO_WORLD})
        assert response.status_code in (201, 409)

    response = await client.post(ANALYZE_URL, json={"repoUrl": HELLO_WORLD})

    assert response.status_code == 429
    body = response.json()
    assert body["success"] is False
    assert body["message"] == (
        "Repository analysis is resource-intensive. Please wait 10 minutes between analyses."
    )
    assert 0 < body["retryAfter"] <= 600
    assert response.headers["Retry-After"] == str(body["retryAfter"])
    assert response.headers["X-RateLimit-Remaining"] == "0"


@pytest.mark.asyncio
async def test_analysis_limit_is_per_api_key(client: AsyncClient):
    for _ in range(5):
        await client.post(ANALYZE_URL, json={"repoUrl": HELLO_WORLD}, headers={"X-API-Key": "key-a"})

    limited = await client.post(ANALYZE_URL, json={"repoUrl": HELLO_WORLD}, headers={"X-API-Key": "key-a"})
    other = await client.post(ANALYZE_URL, json={"repoUrl": HELLO_WORLD}, headers={"X-API-Key": "key-b"})

    assert limited.status_code == 429
    assert other.status_code == 409


@pytest.mark.asyncio
async def test_analysis_detail(client: AsyncClient):
    added = await client.post(ANALYZE_URL, json={"repoUrl": HELLO_WORLD})
    repository_id = added.json()["data"]["repository"]["id"]
    detail = await client.get(f"/api/repositories/{repository_id}")
    analysis_id = detail.json()["data"]["latestAnalysisId"]

    response = await client.get(f"{ANALYZE_URL}/{analysis_id}")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["qualityScore"] == 85
    assert data["qualityGrade"] == "B"
    assert data["status"] == "completed"
    assert data["summary"]["issues"]["warning"] == 2
    assert data["summary"]["recommendations"] == 1
    assert data["summary"]["isStale"] is False
    assert data["trends"] == {
        "qualityScoreDelta": 0,
        "coverageDelta": 0,
        "complexityDelta": 0,
        "issuesDelta": 0,
    }


@pytest.mark.asyncio
async def test_analysis_detail_not_found(client: AsyncClient):
    response = await client.get(f"{ANALYZE_URL}/00000000-0000-0000-0000-000000000000")
    assert response.status_code == 404
    assert response.json()["message"] == "No analysis found with the provided ID"


@pytest.mark.asyncio
async def test_analysis_detail_invalid_id(client: AsyncClient):
    response = await client.get(f"{ANALYZE_URL}/not-a-uuid")
    assert response.status_code == 400
