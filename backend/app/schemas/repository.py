from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import Field

from app.schemas.analysis import AnalysisRead, CamelModel

SortField = Literal["name", "owner", "stars", "lastQualityScore", "lastAnalyzedAt", "createdAt", "updatedAt"]
Frequency = Literal["manual", "daily", "weekly", "monthly"]


class RepositoryCreate(CamelModel):
    repo_url: str
    auto_analyze: bool = True


class RepositoryUpdate(CamelModel):
    description: Optional[str] = Field(default=None, max_length=500)
    tags: Optional[List[str]] = Field(default=None)
    auto_analyze: Optional[bool] = None
    analysis_frequency: Optional[Frequency] = None
    is_active: Optional[bool] = None


class RepositoryRead(CamelModel):
    id: UUID
    owner: str
    name: str
    full_name: str
    github_id: int
    description: Optional[str] = None
    url: str
    clone_url: str
    language: Optional[str] = None
    stars: int = 0
    forks: int = 0
    open_issues: int = 0
    size: int = 0
    is_private: bool = False
    default_branch: str = "main"
    latest_analysis_id: Optional[UUID] = None
    last_quality_score: Optional[float] = None
    analysis_count: int = 0
    github_created_at: Optional[datetime] = None
    github_updated_at: Optional[datetime] = None
    last_analyzed_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    added_by: Optional[str] = None
    is_active: bool = True
    tags: List[str] = Field(default_factory=list)
    auto_analyze: bool = True
    analysis_frequency: str = "manual"
    created_at: datetime
    updated_at: datetime

    # derived, see app.services.derivations
    quality_grade: str = "N/A"
    github_url: str = ""
    days_since_last_analysis: Optional[int] = None
    needs_analysis: bool = False

    latest_analysis: Optional[AnalysisRead] = None
    analyses: Optional[List[AnalysisRead]] = None


class Pagination(CamelModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int
    has_next: bool
    has_prev: bool


class RepositoryPage(CamelModel):
    repositories: List[RepositoryRead]
    pagination: Pagination


class AddRepositoryResult(CamelModel):
    repository: RepositoryRead
    analysis: Optional[Dict[str, Any]] = None


class RepositoryStats(CamelModel):
    total_repositories: int
    analyzed_repositories: int
    language_distribution: List[Dict[str, Any]]
    quality_score_distribution: List[Dict[str, Any]]
    recently_analyzed: List[Dict[str, Any]]
    average_quality_score: int
