"""Tracked GitHub repository."""
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.db.base import Base

if TYPE_CHECKING:
    from app.models.analysis import AnalysisRecord

ANALYSIS_FREQUENCIES = ("manual", "daily", "weekly", "monthly")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RepositoryRecord(Base):
    """
    A GitHub repository tracked by the dashboard.

    Attributes:
        owner, name: Lower-cased GitHub coordinates; the pair is unique
        full_name: Always "owner/name", recomputed on every insert/update
        github_id: GitHub's numeric repository id (unique)
        latest_analysis_id: Back-reference to the most recent completed
            AnalysisRecord. Not a foreign key: the analysis belongs to the
            repository, not the other way round.
        last_quality_score: Denormalised copy of the latest score, for sorting
        analysis_frequency: One of manual, daily, weekly, monthly

    Relationships:
        analyses: Every AnalysisRecord of this repository
    """
    __tablename__ = "repositories"
    __table_args__ = (
        UniqueConstraint("owner", "name", name="uq_repositories_owner_name"),
        CheckConstraint(
            "analysis_frequency IN ('manual', 'daily', 'weekly', 'monthly')",
            name="ck_repositories_analysis_frequency",
        ),
        Index("ix_repositories_score_analyzed", "last_quality_score", "last_analyzed_at"),
        Index("ix_repositories_language_score", "language", "last_quality_score"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    # GitHub identity
    owner: Mapped[str] = mapped_column(String(100), index=True)
    name: Mapped[str] = mapped_column(String(100), index=True)
    full_name: Mapped[str] = mapped_column(String(201), unique=True, index=True)
    github_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)

    # Descriptive metadata synced from GitHub
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url: Mapped[str] = mapped_column(String(512))
    clone_url: Mapped[str] = mapped_column(String(512))
    language: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    stars: Mapped[int] = mapped_column(Integer, default=0)
    forks: Mapped[int] = mapped_column(Integer, default=0)
    open_issues: Mapped[int] = mapped_column(Integer, default=0)
    size: Mapped[int] = mapped_column(Integer, default=0)
    is_private: Mapped[bool] = mapped_column(Boolean, default=False)
    default_branch: Mapped[str] = mapped_column(String(255), default="main")
    github_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    github_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Analysis bookkeeping
    latest_analysis_id: Mapped[Optional[uuid.UUID]] = mapped_column(nullable=True)
    last_quality_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True, index=True)
    analysis_count: Mapped[int] = mapped_column(Integer, default=0)
    last_analyzed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Policy
    added_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    tags: Mapped[List[str]] = mapped_column(JSON, default=list)
    auto_analyze: Mapped[bool] = mapped_column(Boolean, default=True)
    analysis_frequency: Mapped[str] = mapped_column(String(16), default="manual")

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    analyses: Mapped[List["AnalysisRecord"]] = relationship(
        "AnalysisRecord",
        back_populates="repository",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="AnalysisRecord.created_at",
    )

    @validates("owner", "name")
    def _lowercase(self, key: str, value: str) -> str:
        return value.strip().lower()

    @validates("language")
    def _capitalize_language(self, key: str, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        return value[0].upper() + value[1:].lower()

    @validates("analysis_frequency")
    def _check_frequency(self, key: str, value: str) -> str:
        if value not in ANALYSIS_FREQUENCIES:
            raise ValueError(f"analysis_frequency must be one of {', '.join(ANALYSIS_FREQUENCIES)}")
        return value

    @validates("tags")
    def _normalize_tags(self, key: str, value: Optional[List[str]]) -> List[str]:
        return [tag.strip().lower() for tag in (value or []) if tag and tag.strip()]

    def __repr__(self) -> str:
        return f"<RepositoryRecord(id={self.id}, full_name={self.full_name})>"


@event.listens_for(RepositoryRecord, "before_insert")
@event.listens_for(RepositoryRecord, "before_update")
def _derive_full_name(mapper, connection, target: RepositoryRecord) -> None:
    target.full_name = f"{target.owner}/{target.name}"
