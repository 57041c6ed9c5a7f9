import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from app.core.errors import UpstreamError
from app.schemas.analysis import (
    AnalysisResult,
    CodeMetrics,
    ComplexityReport,
    HighComplexityFile,
    Issue,
    LanguageShare,
    Recommendation,
    SecurityReport,
)
from app.services.github_service import GitHubService, get_github_service

logger = logging.getLogger(__name__)

# Rough bytes-per-line used to turn GitHub's language byte counts into lines
BYTES_PER_LINE = 40
# A file this many estimated lines long counts as "complex"
HIGH_COMPLEXITY_LINES = 500

CODE_EXTENSIONS = {
    ".py", ".js", ".jsx", ".ts", ".tsx", ".go", ".rb", ".java", ".kt", ".scala",
    ".rs", ".c", ".h", ".cc", ".cpp", ".hpp", ".cs", ".php", ".swift", ".m",
    ".sh", ".lua", ".ex", ".exs", ".clj", ".hs", ".dart", ".vue",
}
TEST_PATH_PATTERN = re.compile(r"(^|/)(tests?|__tests__|spec)(/|$)|(_test|\.test|\.spec|_spec)\.\w+$|(^|/)test_[^/]+$")

# manifest file -> lock files that pin it
MANIFESTS = {
    "package.json": ("package-lock.json", "yarn.lock", "pnpm-lock.yaml"),
    "requirements.txt": (),
    "pyproject.toml": ("poetry.lock", "uv.lock", "pdm.lock"),
    "Pipfile": ("Pipfile.lock",),
    "Gemfile": ("Gemfile.lock",),
    "go.mod": ("go.sum",),
    "Cargo.toml": ("Cargo.lock",),
}

GRADE_THRESHOLDS = ((5, "A"), (10, "B"), (20, "C"), (30, "D"))


def complexity_grade(average: float) -> str:
    for limit, grade in GRADE_THRESHOLDS:
        if average <= limit:
            return grade
    return "F"


def _extension(path: str) -> str:
    dot = path.rfind(".")
    return path[dot:].lower() if dot > path.rfind("/") else ""


def count_dependencies(manifest: str, content: str) -> Tuple[int, int]:
    """
    Count declared dependencies in a manifest.

    Returns:
        (total, unpinned) where unpinned are entries with no version or a
        wildcard/"latest" version.
    """
    if manifest == "package.json":
        try:
            data = json.loads(content)
        except ValueError:
            return 0, 0
        deps: Dict[str, Any] = {}
        for section in ("dependencies", "devDependencies"):
            if isinstance(data.get(section), dict):
                deps.update(data[section])
        unpinned = sum(1 for version in deps.values() if str(version).strip() in ("", "*", "latest"))
        return len(deps), unpinned

    if manifest == "requirements.txt":
        total = unpinned = 0
        for line in content.splitlines():
            line = line.split("#", 1)[0].strip()
            if not line or line.startswith("-"):
                continue
            total += 1
            if not re.search(r"[=<>~!]=?", line):
                unpinned += 1
        return total, unpinned

    # other ecosystems: count `name = "version"` style entries only
    entries = re.findall(r"^\s*[\w.-]+\s*=\s*[\"'{]", content, re.MULTILINE)
    return len(entries), 0


class AnalysisService:
    """
    Heuristic repository scorer built only on GitHub metadata.

    It reads the repository info, language byte counts, the file tree and
    the dependency manifests, and turns them into an AnalysisResult. No code
    is cloned or executed; the numbers are estimates.
    """

    def __init__(self, github: Optional[GitHubService] = None) -> None:
        self.github = github or get_github_service()

    # Fetch everything the scorer needs and score it
    async def perform_full_analysis(self, owner: str, repo: str) -> AnalysisResult:
        """
        Analyze ``owner/repo``.

        Raises:
            UpstreamError: (or a subclass) when GitHub cannot be read
        """
        logger.info(f"Starting analysis for {owner}/{repo}")
        info = await self.github.get_repository_info(owner, repo)
        languages, tree = await asyncio.gather(
            self.github.get_languages(owner, repo),
            self.github.get_tree(owner, repo, info.get("defaultBranch") or "main"),
        )

        paths = {item["path"] for item in tree}
        manifests: Dict[str, str] = {}
        for manifest in MANIFESTS:
            if manifest in paths:
                content = await self.github.get_file_content(owner, repo, manifest)
                if content is not None:
                    manifests[manifest] = content

        try:
            result = score_repository(info, languages, tree, manifests)
        except (KeyError, TypeError, ValueError) as e:
            # GitHub returned something the scorer cannot read
            logger.error(f"Error scoring {owner}/{repo}: {e}")
            raise UpstreamError(f"Unexpected GitHub data for {owner}/{repo}") from e

        logger.info(f"Analysis for {owner}/{repo} scored {result.quality_score}")
        return result


def score_repository(
    info: Dict[str, Any],
    languages: Dict[str, int],
    tree: List[Dict[str, Any]],
    manifests: Dict[str, str],
) -> AnalysisResult:
    """Turn GitHub metadata into an AnalysisResult. Deterministic."""
    paths = [item["path"] for item in tree]
    code_files = [item for item in tree if _extension(item["path"]) in CODE_EXTENSIONS]
    test_files = [item for item in code_files if TEST_PATH_PATTERN.search(item["path"])]
    test_paths = {item["path"] for item in test_files}
    source_files = [item for item in code_files if item["path"] not in test_paths]

    total_bytes = sum(languages.values())
    lines_of_code = total_bytes // BYTES_PER_LINE

    # Coverage proxy: one test file per two source files counts as full coverage
    if source_files:
        test_coverage = min(100.0, round(len(test_files) * 200 / len(source_files), 1))
    else:
        test_coverage = 0.0

    # Complexity proxy: estimated lines per file
    file_lines = {item["path"]: item.get("size", 0) // BYTES_PER_LINE for item in code_files}
    average_lines = sum(file_lines.values()) / len(file_lines) if file_lines else 0
    average_complexity = round(average_lines / 25, 1)
    max_complexity = round(max(file_lines.values(), default=0) / 25, 1)
    high_complexity = sorted(
        (path for path, lines in file_lines.items() if lines >= HIGH_COMPLEXITY_LINES),
        key=lambda path: -file_lines[path],
    )[:10]
    grade = complexity_grade(average_complexity)
    complexity = ComplexityReport(
        average_complexity=average_complexity,
        max_complexity=max_complexity,
        total_complexity=round(sum(file_lines.values()) / 25, 1),
        file_count=len(code_files),
        complexity_grade=grade,
        high_complexity_files=[
            HighComplexityFile(file=path, complexity=round(file_lines[path] / 25, 1))
            for path in high_complexity
        ],
    )

    # Dependencies
    total_deps = unpinned = 0
    has_lock_file = False
    for manifest, content in manifests.items():
        count, loose = count_dependencies(manifest, content)
        total_deps += count
        unpinned += loose
        if any(lock in paths for lock in MANIFESTS[manifest]):
            has_lock_file = True
        elif manifest == "requirements.txt" and count and not loose:
            # fully pinned requirements act as a lock file
            has_lock_file = True
    security_score = 100.0 - min(unpinned * 5, 40)
    if manifests and not has_lock_file:
        security_score -= 15
    security = SecurityReport(
        total_dependencies=total_deps,
        outdated_dependencies=unpinned,
        security_score=max(security_score, 0),
        has_lock_file=has_lock_file,
    )

    lower_paths = {path.lower() for path in paths}
    has_readme = any(path.startswith("readme") for path in lower_paths)
    has_license = any(path.startswith(("license", "licence", "copying")) for path in lower_paths)
    has_ci = any(path.startswith((".github/workflows/", ".gitlab-ci", ".circleci/")) for path in lower_paths)

    maintainability = 100.0 - min(average_lines / 10, 40)
    if not has_readme:
        maintainability -= 15
    if not has_ci:
        maintainability -= 10
    maintainability = max(round(maintainability, 1), 0)

    code_metrics = CodeMetrics(
        lines_of_code=lines_of_code,
        file_count=len(code_files),
        test_coverage=test_coverage,
        maintainability_index=maintainability,
        technical_debt=round(sum(max(lines - HIGH_COMPLEXITY_LINES, 0) for lines in file_lines.values()) / 50, 1),
    )

    issues: List[Issue] = []
    recommendations: List[Recommendation] = []
    if not has_readme:
        issues.append(Issue(severity="warning", category="maintainability", message="Repository has no README", rule="readme"))
        recommendations.append(Recommendation(
            priority="medium", category="documentation", title="Add a README",
            message="Document what the project does and how to run it.", effort="low", impact="medium",
        ))
    if not has_license:
        issues.append(Issue(severity="info", category="maintainability", message="Repository has no license file", rule="license"))
    if not test_files and source_files:
        issues.append(Issue(severity="error", category="reliability", message="No test files found", rule="tests"))
        recommendations.append(Recommendation(
            priority="high", category="testing", title="Add automated tests",
            message="No test files were found in the repository.", effort="high", impact="high",
        ))
    elif test_coverage < 60:
        recommendations.append(Recommendation(
            priority="medium", category="testing", title="Increase test coverage",
            message=f"Estimated coverage is {test_coverage}%.", effort="medium", impact="high",
        ))
    for path in high_complexity:
        issues.append(Issue(
            file=path, severity="warning", category="maintainability",
            message=f"File is roughly {file_lines[path]} lines long", rule="file-length",
        ))
    if high_complexity:
        recommendations.append(Recommendation(
            priority="medium", category="code-quality", title="Split large files",
            message=f"{len(high_complexity)} files exceed {HIGH_COMPLEXITY_LINES} lines.", effort="medium", impact="medium",
        ))
    if manifests and not has_lock_file:
        issues.append(Issue(severity="warning", category="security", message="Dependencies are not locked", rule="lock-file"))
        recommendations.append(Recommendation(
            priority="high", category="dependencies", title="Commit a lock file",
            message="Without a lock file builds can pull in unreviewed versions.", effort="low", impact="high",
        ))
    if unpinned:
        recommendations.append(Recommendation(
            priority="medium", category="dependencies", title="Pin dependency versions",
            message=f"{unpinned} dependencies have no version constraint.", effort="low", impact="medium",
        ))

    complexity_score = {"A": 100, "B": 85, "C": 70, "D": 55, "F": 35}[grade]
    quality_score = round(
        maintainability * 0.3
        + test_coverage * 0.25
        + security.security_score * 0.25
        + complexity_score * 0.2
    )

    language_breakdown = {
        language: LanguageShare(
            lines=count // BYTES_PER_LINE,
            files=sum(1 for item in code_files if _language_matches(language, item["path"])),
            percentage=round(count * 100 / total_bytes, 1) if total_bytes else 0,
        )
        for language, count in languages.items()
    }

    return AnalysisResult(
        quality_score=max(0, min(100, quality_score)),
        code_metrics=code_metrics,
        security=security,
        complexity=complexity,
        issues=issues,
        recommendations=recommendations,
        language_breakdown=language_breakdown,
    )


LANGUAGE_EXTENSIONS = {
    "Python": (".py",),
    "JavaScript": (".js", ".jsx"),
    "TypeScript": (".ts", ".tsx"),
    "Go": (".go",),
    "Ruby": (".rb",),
    "Java": (".java",),
    "Rust": (".rs",),
    "C": (".c", ".h"),
    "C++": (".cc", ".cpp", ".hpp"),
    "C#": (".cs",),
    "PHP": (".php",),
    "Shell": (".sh",),
}


def _language_matches(language: str, path: str) -> bool:
    return _extension(path) in LANGUAGE_EXTENSIONS.get(language, ())
