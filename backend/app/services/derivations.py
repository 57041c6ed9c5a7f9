"""
Computed fields over stored records.

These used to be methods on the persisted documents; here they are plain
functions of a record (and, where time matters, ``now``) so the models stay
storage-only and the results are easy to test.

Datetimes read back from SQLite are naive; they are treated as UTC.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from app.models.analysis import AnalysisRecord
from app.models.repository import RepositoryRecord

FREQUENCY_DAYS = {"daily": 1, "weekly": 7, "monthly": 30}

GRADE_THRESHOLDS = ((90, "A"), (80, "B"), (70, "C"), (60, "D"))

SEVERITIES = ("low", "medium", "high", "critical")


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _now(now: Optional[datetime]) -> datetime:
    return _utc(now) if now is not None else datetime.now(timezone.utc)


def quality_grade(score: Optional[float]) -> str:
    """Letter grade of a 0-100 score; "N/A" when there is no score."""
    if score is None:
        return "N/A"
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return "F"


def github_url(repository: RepositoryRecord) -> str:
    return f"https://github.com/{repository.owner}/{repository.name}"


def days_since_last_analysis(repository: RepositoryRecord, now: Optional[datetime] = None) -> Optional[int]:
    if repository.last_analyzed_at is None:
        return None
    return (_now(now) - _utc(repository.last_analyzed_at)).days


def needs_analysis(repository: RepositoryRecord, now: Optional[datetime] = None) -> bool:
    """
    True when the repository was never analyzed, or its analysis_frequency
    says the last analysis is due. "manual" repositories are only due when
    they were never analyzed.
    """
    if repository.last_analyzed_at is None:
        return True
    interval = FREQUENCY_DAYS.get(repository.analysis_frequency)
    if interval is None:
        return False
    return _now(now) - _utc(repository.last_analyzed_at) >= timedelta(days=interval)


def issues_summary(analysis: AnalysisRecord) -> Dict[str, int]:
    summary = {"info": 0, "warning": 0, "error": 0, "critical": 0}
    for issue in analysis.issues or []:
        severity = issue.get("severity")
        if severity in summary:
            summary[severity] += 1
    return summary


def vulnerability_breakdown(analysis: AnalysisRecord) -> Dict[str, int]:
    breakdown = {severity: 0 for severity in SEVERITIES}
    for vulnerability in (analysis.security or {}).get("vulnerabilities", []):
        severity = vulnerability.get("severity")
        if severity in breakdown:
            breakdown[severity] += 1
    return breakdown


def critical_recommendations_count(analysis: AnalysisRecord) -> int:
    return sum(
        1 for recommendation in analysis.recommendations or []
        if recommendation.get("priority") in ("high", "critical")
    )


def is_stale(analysis: AnalysisRecord, hours: int = 24, now: Optional[datetime] = None) -> bool:
    return _now(now) - _utc(analysis.created_at) > timedelta(hours=hours)


def analysis_summary(analysis: AnalysisRecord) -> Dict[str, Any]:
    """Compact view of one analysis, as shown in listings."""
    return {
        "id": analysis.id,
        "quality_score": analysis.quality_score,
        "quality_grade": quality_grade(analysis.quality_score),
        "coverage": (analysis.code_metrics or {}).get("testCoverage"),
        "security": (analysis.security or {}).get("securityScore"),
        "complexity": (analysis.complexity or {}).get("complexityGrade"),
        "issues": issues_summary(analysis),
        "vulnerabilities": vulnerability_breakdown(analysis),
        "recommendations": critical_recommendations_count(analysis),
        "is_stale": is_stale(analysis),
        "created_at": analysis.created_at,
    }
