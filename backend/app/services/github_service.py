import asyncio
import logging
import re
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from app.core.config import settings
from app.core.errors import (
    UpstreamAccessDeniedError,
    UpstreamError,
    UpstreamNotFoundError,
    UpstreamRateLimitError,
)
from app.services.cache import DualTierCache

logger = logging.getLogger(__name__)

# GitHub API constants
DEFAULT_TIMEOUT_SECONDS = 10.0
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
USER_AGENT = "Code-Quality-Dashboard/1.0"

# GitHub URL patterns
GITHUB_URL_PATTERNS = [
    re.compile(r"^https?://github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$"),
    re.compile(r"^git@github\.com:([^/]+)/([^/]+?)(?:\.git)?$"),
    re.compile(r"^https?://www\.github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$"),
]


class GitHubService:
    """
    Thin client for the GitHub REST API.

    Features:
    - URL parsing for various GitHub URL formats
    - Repository metadata, languages, file tree and raw file contents
    - Repository metadata cached through the shared DualTierCache
    - Exponential backoff on timeouts and 5xx responses
    - GitHub failures mapped onto the Upstream* errors (404/403/429/502)
    """

    def __init__(
        self,
        token: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        cache: Optional[DualTierCache] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.token = token
        self.base_url = (base_url or settings.GITHUB_API_URL).rstrip("/")
        self.cache = cache
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep

    def parse_github_url(self, url: str) -> Optional[Tuple[str, str]]:
        """
        Parse GitHub repository URL to extract owner and repository name.

        Supports various GitHub URL formats:
        - https://github.com/owner/repo
        - https://github.com/owner/repo.git
        - git@github.com:owner/repo.git
        - https://www.github.com/owner/repo

        Returns:
            Tuple of (owner, repo) if valid GitHub URL, None otherwise
        """
        if not url or not isinstance(url, str):
            return None

        url = url.strip()
        if not url:
            return None

        for pattern in GITHUB_URL_PATTERNS:
            match = pattern.match(url)
            if match:
                owner, repo = match.groups()
                if repo.endswith('.git'):
                    repo = repo[:-4]
                return owner, repo

        return None

    def _headers(self, accept: str = "application/vnd.github.v3+json") -> Dict[str, str]:
        headers = {"Accept": accept, "User-Agent": USER_AGENT}
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        return headers

    def _raise_for_status(self, response: httpx.Response, what: str) -> None:
        status = response.status_code
        if status == 404:
            raise UpstreamNotFoundError(f"Repository {what} not found or not accessible")
        if status == 429 or (status == 403 and response.headers.get("X-RateLimit-Remaining") == "0"):
            retry_after = 3600
            reset_time = response.headers.get("X-RateLimit-Reset")
            if reset_time and reset_time.isdigit():
                reset_datetime = datetime.fromtimestamp(int(reset_time))
                logger.warning(f"GitHub API rate limit exceeded. Resets at {reset_datetime}")
                retry_after = max(int(reset_time) - int(time.time()), 1)
            elif response.headers.get("Retry-After", "").isdigit():
                retry_after = int(response.headers["Retry-After"])
            else:
                logger.warning("GitHub API rate limit exceeded")
            raise UpstreamRateLimitError(
                "GitHub API rate limit exceeded. Please try again later.",
                retry_after=retry_after,
            )
        if status in (401, 403):
            raise UpstreamAccessDeniedError(f"Cannot access repository {what}. Please check permissions.")
        if 400 <= status < 500:
            raise UpstreamError(f"GitHub API returned {status} for {what}")
        response.raise_for_status()

    async def _get(self, path: str, what: str, accept: Optional[str] = None) -> httpx.Response:
        """GET with retries; returns the successful response or raises an Upstream* error."""
        url = f"{self.base_url}{path}"
        headers = self._headers(accept) if accept else self._headers()
        timeout = httpx.Timeout(self.timeout)
        last_error: Optional[Exception] = None

        for attempt in range(MAX_RETRIES):
            try:
                async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                    response = await client.get(url, headers=headers)
                self._raise_for_status(response, what)
                return response
            except UpstreamError:
                # 404/403/429 will not get better by retrying
                raise
            except httpx.TimeoutException as e:
                last_error = e
                logger.warning(f"Timeout fetching {what} (attempt {attempt + 1})")
            except httpx.HTTPStatusError as e:
                last_error = e
                logger.warning(f"HTTP error fetching {what}: {e} (attempt {attempt + 1})")
            except httpx.HTTPError as e:
                last_error = e
                logger.warning(f"Error fetching {what}: {e} (attempt {attempt + 1})")

            if attempt < MAX_RETRIES - 1:
                wait_time = BACKOFF_FACTOR ** attempt
                logger.debug(f"Retrying in {wait_time} seconds...")
                await self._sleep(wait_time)

        logger.error(f"Failed to fetch {what} after {MAX_RETRIES} attempts: {last_error}")
        raise UpstreamError(f"Failed to communicate with GitHub API for {what}")

    async def get_repository_info(self, owner: str, repo: str) -> Dict[str, Any]:
        """
        Repository metadata, normalised to the dashboard's field names.

        Raises:
            UpstreamNotFoundError: repository missing or private
            UpstreamAccessDeniedError: token lacks access
            UpstreamRateLimitError: GitHub rate budget exhausted
            UpstreamError: anything else after retries
        """
        async def fetch() -> Dict[str, Any]:
            response = await self._get(f"/repos/{owner}/{repo}", f"{owner}/{repo}")
            return self._normalize_repository(response.json())

        if self.cache is None:
            return await fetch()
        return await self.cache.wrap(
            f"github:repo:{owner.lower()}/{repo.lower()}",
            fetch,
            settings.GITHUB_CACHE_TTL_SECONDS,
        )

    async def refresh_repository_info(self, owner: str, repo: str) -> Dict[str, Any]:
        """Like get_repository_info but bypasses and then refreshes the cache."""
        if self.cache is not None:
            await self.cache.delete(f"github:repo:{owner.lower()}/{repo.lower()}")
        return await self.get_repository_info(owner, repo)

    @staticmethod
    def _normalize_repository(data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": data.get("id"),
            "name": data.get("name"),
            "owner": (data.get("owner") or {}).get("login"),
            "fullName": data.get("full_name"),
            "description": data.get("description"),
            "url": data.get("html_url"),
            "cloneUrl": data.get("clone_url"),
            "language": data.get("language"),
            "stars": data.get("stargazers_count", 0),
            "forks": data.get("forks_count", 0),
            "openIssues": data.get("open_issues_count", 0),
            "size": data.get("size", 0),
            "isPrivate": data.get("private", False),
            "defaultBranch": data.get("default_branch") or "main",
            "license": (data.get("license") or {}).get("spdx_id"),
            "topics": data.get("topics", []),
            "createdAt": data.get("created_at"),
            "updatedAt": data.get("updated_at"),
        }

    async def get_languages(self, owner: str, repo: str) -> Dict[str, int]:
        """Bytes of code per language."""
        response = await self._get(f"/repos/{owner}/{repo}/languages", f"{owner}/{repo} languages")
        return response.json()

    async def get_tree(self, owner: str, repo: str, branch: str) -> List[Dict[str, Any]]:
        """Every blob in the default branch: [{"path", "size"}]."""
        response = await self._get(
            f"/repos/{owner}/{repo}/git/trees/{branch}?recursive=1",
            f"{owner}/{repo} tree",
        )
        data = response.json()
        if data.get("truncated"):
            logger.info(f"File tree of {owner}/{repo} is truncated by GitHub")
        return [
            {"path": item["path"], "size": item.get("size", 0)}
            for item in data.get("tree", [])
            if item.get("type") == "blob"
        ]

    async def get_file_content(self, owner: str, repo: str, path: str) -> Optional[str]:
        """Raw file contents, or None when the file does not exist."""
        try:
            response = await self._get(
                f"/repos/{owner}/{repo}/contents/{path}",
                f"{owner}/{repo}:{path}",
                accept="application/vnd.github.raw",
            )
        except UpstreamNotFoundError:
            return None
        return response.text


# Global service instance
_github_service: Optional[GitHubService] = None


def get_github_service(cache: Optional[DualTierCache] = None) -> GitHubService:
    """Get the global GitHub service instance; ``cache`` is used when it is first built."""
    global _github_service
    if _github_service is None:
        _github_service = GitHubService(
            token=settings.GITHUB_TOKEN,
            cache=cache,
            timeout=settings.GITHUB_TIMEOUT_SECONDS,
        )
    return _github_service


def reset_github_service() -> None:
    global _github_service
    _github_service = None
