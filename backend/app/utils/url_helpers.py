"""
GitHub repository URL helpers.

``validate_repo_url`` is the gate for user input: only canonical HTTPS
github.com URLs are accepted. ``parse_github_url`` then splits an accepted
URL into the lower-cased ``(owner, name)`` pair used for storage and cache
keys; ``normalize_github_url`` gives the same URL a single spelling.
"""
import re
from typing import Tuple
from urllib.parse import urlparse, urlunparse

from app.core.errors import ValidationError

REPO_URL_PATTERN = re.compile(r"^https://github\.com/[\w.-]+/[\w.-]+/?$")


def _is_dot_segment(segment: str) -> bool:
    return segment.strip(".") == ""


def validate_repo_url(url: str) -> str:
    """
    Check a user-supplied repository URL.

    Returns:
        The URL with surrounding whitespace removed.

    Raises:
        ValidationError: if the URL is not https://github.com/<owner>/<repo>
            or owner or repo is made of dots only
    """
    candidate = (url or "").strip()
    owner_and_name = candidate.rstrip("/").split("/")[-2:]
    if not REPO_URL_PATTERN.match(candidate) or any(_is_dot_segment(s) for s in owner_and_name):
        raise ValidationError(
            "Please provide a valid GitHub repository URL",
            extra={"details": {"repoUrl": "Must look like https://github.com/owner/repo"}},
        )
    return candidate


def parse_github_url(url: str) -> Tuple[str, str]:
    """
    Split a validated repository URL into ``(owner, name)``, lower-cased,
    with a trailing ``.git`` removed.

    Examples:
        >>> parse_github_url("https://github.com/Octocat/Hello-World.git")
        ('octocat', 'hello-world')
    """
    path = urlparse(validate_repo_url(url)).path.strip("/")
    owner, name = path.split("/", 1)
    if name.endswith(".git"):
        name = name[:-4]
    return owner.lower(), name.lower()


def normalize_github_url(url: str) -> str:
    """
    Normalize a GitHub repository URL to a consistent format.

    This ensures that the following URLs are treated as identical:
    - https://github.com/user/repo
    - https://github.com/user/repo/
    - https://GitHub.com/user/repo

    Examples:
        >>> normalize_github_url("https://GitHub.com/User/Repo/")
        'https://github.com/user/repo'
    """
    parsed = urlparse(url)
    # query and fragment never identify a repository
    return urlunparse((
        parsed.scheme.lower(),
        parsed.netloc.lower(),
        parsed.path.lower().rstrip("/"),
        "",
        "",
        "",
    ))
