"""Analysis run of a tracked repository."""
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base

if TYPE_CHECKING:
    from app.models.repository import RepositoryRecord

ANALYSIS_STATUSES = ("pending", "running", "completed", "failed", "cancelled")
TRIGGERS = ("manual", "scheduled", "webhook", "api")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def empty_trends() -> Dict[str, float]:
    return {
        "qualityScoreDelta": 0,
        "coverageDelta": 0,
        "complexityDelta": 0,
        "issuesDelta": 0,
    }


class AnalysisRecord(Base):
    """
    One analysis of a repository.

    The nested sections are stored as JSON documents with camelCase keys,
    matching the API payload:
        code_metrics: linesOfCode, fileCount, testCoverage, maintainabilityIndex,
            technicalDebt, duplicateLines
        security: totalDependencies, vulnerabilities[], outdatedDependencies,
            securityScore, hasLockFile, licenseIssues[]
        complexity: averageComplexity, maxComplexity, totalComplexity,
            fileCount, complexityGrade, highComplexityFiles[]
        trends: qualityScoreDelta, coverageDelta, complexityDelta, issuesDelta;
            computed once when the record is created

    A completed record is immutable. Failed records keep error_message and
    have no quality_score.
    """
    __tablename__ = "analyses"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'cancelled')",
            name="ck_analyses_status",
        ),
        CheckConstraint(
            "quality_score IS NULL OR (quality_score >= 0 AND quality_score <= 100)",
            name="ck_analyses_quality_score_range",
        ),
        Index("ix_analyses_repository_created", "repository_id", "created_at"),
        Index("ix_analyses_repository_status", "repository_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    repository_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("repositories.id", ondelete="CASCADE"),
        index=True,
    )

    quality_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    code_metrics: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    security: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    complexity: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    issues: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    recommendations: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    language_breakdown: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    trends: Mapped[Dict[str, float]] = mapped_column(JSON, default=empty_trends)

    status: Mapped[str] = mapped_column(String(16), default="completed", index=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    triggered_by: Mapped[str] = mapped_column(String(16), default="manual")
    triggered_by_user: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    repository: Mapped["RepositoryRecord"] = relationship("RepositoryRecord", back_populates="analyses")

    def __repr__(self) -> str:
        return (
            f"<AnalysisRecord(id={self.id}, repository_id={self.repository_id}, "
            f"status={self.status}, quality_score={self.quality_score})>"
        )
