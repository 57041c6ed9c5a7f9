"""
Badge lookups: which score goes on which badge, and the badge cache.

Rendering itself is ``app.services.badge``. This module never raises to
its callers: every failure ends up as the "unknown" badge. Failures are
cached for a few minutes, except rate-limit refusals, which cost nothing.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from app.core.config import settings
from app.core.errors import NotFoundError
from app.schemas.analysis import AnalysisSnapshot, BadgeLink, BadgeVariants
from app.services.badge import LABELS, VARIANTS, render_badge, render_unknown_badge
from app.services.cache import DualTierCache
from app.services.orchestrator import AnalysisOrchestrator

logger = logging.getLogger(__name__)

# Asked before a badge request runs an analysis; False refuses it
Admission = Callable[[], Awaitable[bool]]

BADGE_STYLES = ("flat", "flat-square", "plastic", "for-the-badge", "social")

MARKDOWN_TITLES = {
    "quality": "Code Quality",
    "security": "Security Score",
    "coverage": "Test Coverage",
    "complexity": "Code Complexity",
}


class BadgeRejected(Exception):
    """A badge needed an analysis the caller was not admitted to run."""


def normalize_style(style: Optional[str]) -> str:
    """Unknown styles fall back to "flat" so arbitrary query strings cannot grow the cache."""
    style = (style or "flat").strip().lower()
    return style if style in BADGE_STYLES else "flat"


def badge_cache_key(owner: str, repo: str, style: str, variant: str = "quality") -> str:
    key = f"badge:{owner.lower()}:{repo.lower()}:{style}"
    if variant != "quality":
        key = f"{key}:{variant}"
    return key


def variant_score(snapshot: AnalysisSnapshot, variant: str) -> Any:
    if variant == "quality":
        return snapshot.quality_score
    if variant == "security":
        return snapshot.security_score
    if variant == "coverage":
        return snapshot.test_coverage
    return snapshot.complexity_grade


class BadgeService:
    def __init__(
        self,
        orchestrator: AnalysisOrchestrator,
        cache: DualTierCache,
        ttl_seconds: int = settings.BADGE_CACHE_TTL_SECONDS,
        failure_ttl_seconds: int = settings.BADGE_FAILURE_CACHE_TTL_SECONDS,
    ):
        self.orchestrator = orchestrator
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.failure_ttl_seconds = failure_ttl_seconds

    async def get_badge(
        self,
        owner: str,
        repo: str,
        variant: str = "quality",
        style: str = "flat",
        admit: Optional[Admission] = None,
    ) -> str:
        """
        SVG for one badge; the unknown badge on any failure.

        A repository with no stored analysis is analyzed only when ``admit``
        lets the caller through. Failed badges are cached briefly so repeated
        hits do not reach the producer each time.
        """
        if variant not in LABELS:
            return render_unknown_badge()
        style = normalize_style(style)
        key = badge_cache_key(owner, repo, style, variant)

        async def produce() -> str:
            snapshot = await self.orchestrator.latest(owner, repo)
            if snapshot is None:
                if admit is not None and not await admit():
                    raise BadgeRejected(f"Analysis of {owner}/{repo} refused by rate limit")
                outcome = await self.orchestrator.analyze(owner, repo, triggered_by="api")
                snapshot = outcome.snapshot
            score = variant_score(snapshot, variant)
            if score is None:
                raise NotFoundError(f"No {variant} score for {owner}/{repo}")
            return render_badge(score, variant, style)

        try:
            return await self.cache.wrap(key, produce, self.ttl_seconds)
        except BadgeRejected as e:
            logger.warning(f"Failed to generate {variant} badge: {e}")
            return render_unknown_badge(variant)
        except Exception as e:
            logger.warning(f"Failed to generate {variant} badge for {owner}/{repo}: {e}")
            badge = render_unknown_badge(variant)
            await self.cache.set(key, badge, self.failure_ttl_seconds)
            return badge

    async def get_variants(self, owner: str, repo: str, base_url: str) -> BadgeVariants:
        """
        Badge URLs, markdown snippets and current scores.

        Raises:
            NotFoundError: the repository is not tracked or not analyzed yet
        """
        snapshot = await self.orchestrator.latest(owner, repo)
        if snapshot is None:
            raise NotFoundError("Repository not found or not analyzed yet")

        base_url = base_url.rstrip("/")
        badges: Dict[str, BadgeLink] = {}
        scores: Dict[str, Any] = {}
        for variant in VARIANTS:
            path = f"/api/analysis/badge/{owner}/{repo}"
            if variant != "quality":
                path = f"{path}/{variant}"
            badges[variant] = BadgeLink(
                url=f"{path}?style=flat",
                markdown=f"![{MARKDOWN_TITLES[variant]}]({base_url}{path})",
            )
            score = variant_score(snapshot, variant)
            scores[variant] = score if score is not None else "N/A"

        return BadgeVariants(repository=f"{owner}/{repo}", badges=badges, scores=scores)
