from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


Severity = Literal["low", "medium", "high", "critical"]
Grade = Literal["A", "B", "C", "D", "F"]


class CodeMetrics(CamelModel):
    lines_of_code: int = Field(ge=0)
    file_count: int = Field(default=0, ge=0)
    test_coverage: float = Field(default=0, ge=0, le=100)
    maintainability_index: float = Field(default=0, ge=0, le=100)
    technical_debt: float = Field(default=0, ge=0)
    duplicate_lines: int = Field(default=0, ge=0)


class Vulnerability(CamelModel):
    package: str
    version: Optional[str] = None
    severity: Severity
    title: Optional[str] = None
    description: Optional[str] = None
    cve: Optional[str] = None
    fixed_in: Optional[str] = None


class LicenseIssue(CamelModel):
    package: str
    license: Optional[str] = None
    issue: str


class SecurityReport(CamelModel):
    total_dependencies: int = Field(default=0, ge=0)
    vulnerabilities: List[Vulnerability] = Field(default_factory=list)
    outdated_dependencies: int = Field(default=0, ge=0)
    security_score: float = Field(default=100, ge=0, le=100)
    has_lock_file: bool = False
    license_issues: List[LicenseIssue] = Field(default_factory=list)


class HighComplexityFile(CamelModel):
    file: str
    complexity: float
    functions: int = 0


class ComplexityReport(CamelModel):
    average_complexity: float = Field(default=0, ge=0)
    max_complexity: float = Field(default=0, ge=0)
    total_complexity: float = Field(default=0, ge=0)
    file_count: int = Field(default=0, ge=0)
    complexity_grade: Grade = "A"
    high_complexity_files: List[HighComplexityFile] = Field(default_factory=list)


class Issue(CamelModel):
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    severity: Literal["info", "warning", "error", "critical"]
    category: Literal["security", "performance", "maintainability", "reliability", "style"]
    rule: Optional[str] = None
    message: str
    rule_id: Optional[str] = None


class Recommendation(CamelModel):
    priority: Literal["low", "medium", "high", "critical"]
    category: Literal["security", "performance", "testing", "code-quality", "dependencies", "documentation"]
    title: str
    message: str
    action: Optional[str] = None
    effort: Literal["low", "medium", "high"] = "medium"
    impact: Literal["low", "medium", "high"] = "medium"


class LanguageShare(CamelModel):
    lines: int = 0
    files: int = 0
    percentage: float = 0


class AnalysisResult(CamelModel):
    """What the analysis producer returns for one repository."""
    quality_score: int = Field(ge=0, le=100)
    code_metrics: CodeMetrics
    security: SecurityReport
    complexity: ComplexityReport
    issues: List[Issue] = Field(default_factory=list)
    recommendations: List[Recommendation] = Field(default_factory=list)
    language_breakdown: Dict[str, LanguageShare] = Field(default_factory=dict)


class Trends(CamelModel):
    quality_score_delta: float = 0
    coverage_delta: float = 0
    complexity_delta: float = 0
    issues_delta: int = 0


class AnalysisSnapshot(CamelModel):
    """The scores badges and listings need, as kept in the cache."""
    owner: str
    name: str
    repository_id: Optional[UUID] = None
    analysis_id: Optional[UUID] = None
    quality_score: Optional[float] = None
    security_score: Optional[float] = None
    test_coverage: Optional[float] = None
    complexity_grade: Optional[str] = None
    analyzed_at: Optional[datetime] = None


class AnalysisSummary(CamelModel):
    id: UUID
    quality_score: Optional[float]
    quality_grade: str
    coverage: Optional[float]
    security: Optional[float]
    complexity: Optional[str]
    issues: Dict[str, int]
    vulnerabilities: Dict[str, int]
    recommendations: int
    is_stale: bool = False
    created_at: datetime


class AnalysisRead(CamelModel):
    id: UUID
    repository_id: UUID
    quality_score: Optional[int] = None
    quality_grade: str
    code_metrics: Dict = Field(default_factory=dict)
    security: Dict = Field(default_factory=dict)
    complexity: Dict = Field(default_factory=dict)
    issues: List[Dict] = Field(default_factory=list)
    recommendations: List[Dict] = Field(default_factory=list)
    language_breakdown: Dict = Field(default_factory=dict)
    trends: Dict = Field(default_factory=dict)
    status: str
    error_message: Optional[str] = None
    triggered_by: str
    triggered_by_user: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: datetime
    summary: Optional[AnalysisSummary] = None


class TrendPoint(CamelModel):
    id: UUID
    quality_score: Optional[float]
    test_coverage: Optional[float]
    security_score: Optional[float]
    status: str
    created_at: datetime


class BadgeLink(CamelModel):
    url: str
    markdown: str


class BadgeVariants(CamelModel):
    repository: str
    badges: Dict[str, BadgeLink]
    scores: Dict[str, Any]
