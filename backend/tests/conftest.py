import os

# Set environment variables for tests before importing the app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["AUTH_SECRET"] = "test-auth-secret"
os.environ.pop("REDIS_URL", None)
os.environ.pop("GITHUB_TOKEN", None)

from typing import Any, Callable, Dict, Optional

import pytest

from app.core.errors import UpstreamError, UpstreamNotFoundError
from app.schemas.analysis import (
    AnalysisResult,
    CodeMetrics,
    ComplexityReport,
    Issue,
    Recommendation,
    SecurityReport,
)
from app.services.container import rate_limit_store


def github_repo(owner: str, name: str, github_id: int, **overrides: Any) -> Dict[str, Any]:
    """Repository info in the shape GitHubService.get_repository_info returns."""
    info = {
        "id": github_id,
        "name": name,
        "owner": owner,
        "fullName": f"{owner}/{name}",
        "description": f"{name} by {owner}",
        "url": f"https://github.com/{owner}/{name}",
        "cloneUrl": f"https://github.com/{owner}/{name}.git",
        "language": "python",
        "stars": 42,
        "forks": 7,
        "openIssues": 3,
        "size": 128,
        "isPrivate": False,
        "defaultBranch": "main",
        "license": "MIT",
        "topics": [],
        "createdAt": "2011-01-26T19:01:12Z",
        "updatedAt": "2024-05-01T10:00:00Z",
    }
    info.update(overrides)
    return info


class FakeGitHub:
    """Stands in for GitHubService; knows a fixed set of repositories."""

    def __init__(self) -> None:
        self.repos: Dict[str, Dict[str, Any]] = {
            "octocat/hello-world": github_repo("octocat", "Hello-World", 1296269),
            "octocat/spoon-knife": github_repo("octocat", "Spoon-Knife", 1300192, language="html"),
        }
        self.calls = 0

    async def get_repository_info(self, owner: str, repo: str) -> Dict[str, Any]:
        self.calls += 1
        info = self.repos.get(f"{owner}/{repo}".lower())
        if info is None:
            raise UpstreamNotFoundError(f"Repository {owner}/{repo} not found or not accessible")
        return info

    async def refresh_repository_info(self, owner: str, repo: str) -> Dict[str, Any]:
        return await self.get_repository_info(owner, repo)


def make_result(
    score: int = 85,
    coverage: float = 72.5,
    security: float = 90,
    grade: str = "B",
    issues: int = 2,
) -> AnalysisResult:
    return AnalysisResult(
        quality_score=score,
        code_metrics=CodeMetrics(lines_of_code=1200, file_count=30, test_coverage=coverage, maintainability_index=80),
        security=SecurityReport(total_dependencies=12, security_score=security, has_lock_file=True),
        complexity=ComplexityReport(average_complexity=6.5, complexity_grade=grade),
        issues=[
            Issue(severity="warning", category="maintainability", message=f"issue {i}")
            for i in range(issues)
        ],
        recommendations=[
            Recommendation(priority="high", category="testing", title="Add tests", message="More tests"),
        ],
    )


class FakeProducer:
    """Stands in for AnalysisService; counts calls and can be told to fail."""

    def __init__(self, result: Optional[AnalysisResult] = None) -> None:
        self.result = result or make_result()
        self.error: Optional[Exception] = None
        self.calls = 0

    async def perform_full_analysis(self, owner: str, repo: str) -> AnalysisResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """Limiter counters are process-wide; every test starts with none."""
    rate_limit_store.reset()
    yield
    rate_limit_store.reset()


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def fake_producer() -> FakeProducer:
    return FakeProducer()


@pytest.fixture
def result_factory() -> Callable[..., AnalysisResult]:
    return make_result


@pytest.fixture
def upstream_failure() -> UpstreamError:
    return UpstreamError("Failed to communicate with GitHub API for octocat/hello-world")
