import re
from dataclasses import dataclass
from typing import Dict, Optional

_URL_WITH_BRANCH = re.compile(r"^https?://github\.com/([^/]+)/([^/\s]+)/tree/([^/\s]+)", re.IGNORECASE)
_URL_PATTERNS = (
    re.compile(r"^https?://github\.com/([^/]+)/([^/\s]+)", re.IGNORECASE),
    re.compile(r"^github\.com/([^/]+)/([^/\s]+)", re.IGNORECASE),
)


@dataclass(frozen=True)
class RepoRef:
    """A parsed "owner/repo[:branch]" reference"""

    owner: str
    repo: str
    branch: Optional[str]
    repo_string: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def html_url(self) -> str:
        return f"https://github.com/{self.full_name}"


def get_headers(api_token: Optional[str] = None) -> Dict[str, str]:
    """Get headers for GitHub API requests.

    Returns:
        dict: Headers including auth token if configured
    """
    headers = {"Accept": "application/vnd.github.v3+json", "User-Agent": "Commitwatch-Bot"}
    if api_token:
        headers["Authorization"] = f"Bearer {api_token}"
    return headers


def _strip_git(name: str) -> str:
    return name[:-4] if name.endswith(".git") else name


def normalize_repo_string(repo_string: str) -> str:
    """Normalize a repository reference to "owner/repo" or "owner/repo:branch".

    Accepts:
        https://github.com/owner/repo
        https://github.com/owner/repo/tree/branch
        github.com/owner/repo
        owner/repo
        owner/repo:branch
    """
    normalized = repo_string.strip().replace('"', "").replace("'", "")

    match = _URL_WITH_BRANCH.match(normalized)
    if match:
        owner, repo, branch = match.groups()
        return f"{owner}/{_strip_git(repo)}:{branch}"

    for pattern in _URL_PATTERNS:
        match = pattern.match(normalized)
        if match:
            owner, repo = match.groups()
            return f"{owner}/{_strip_git(repo)}"

    return normalized


def parse_repo_string(repo_string: str) -> RepoRef:
    """Parse a repository reference.

    Raises:
        ValueError: If the reference has no owner or repository name
    """
    normalized = normalize_repo_string(repo_string)

    path, _, branch = normalized.partition(":")
    parts = path.split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError(
            f"Invalid repository format: {repo_string}. "
            'Expected "owner/repo", "owner/repo:branch", or "https://github.com/owner/repo/tree/branch"'
        )

    owner, repo = parts
    branch = branch.strip() or None
    return RepoRef(
        owner=owner,
        repo=repo,
        branch=branch,
        repo_string=f"{owner}/{repo}:{branch}" if branch else f"{owner}/{repo}",
    )
