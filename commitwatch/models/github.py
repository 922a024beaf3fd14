from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from commitwatch.util.clock import parse_github_timestamp


@dataclass(frozen=True)
class GitHubCommit:
    """A commit as returned by the GitHub commits API, flattened to the fields we announce"""

    sha: str
    message: str
    author_name: str
    author_email: Optional[str]
    authored_at: Optional[datetime]
    html_url: Optional[str]
    author_login: Optional[str] = None

    @property
    def short_sha(self) -> str:
        return self.sha[:7] if self.sha else "unknown"

    @property
    def title(self) -> str:
        """First line of the commit message"""
        return self.message.split("\n", 1)[0] if self.message else "No message"

    @property
    def body(self) -> str:
        """Everything after the first line, stripped"""
        if not self.message or "\n" not in self.message:
            return ""
        return self.message.split("\n", 1)[1].strip()

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "GitHubCommit":
        commit = data.get("commit") or {}
        author = commit.get("author") or {}
        date = author.get("date")
        return cls(
            sha=data["sha"],
            message=commit.get("message") or "",
            author_name=author.get("name") or "Unknown Author",
            author_email=author.get("email"),
            authored_at=parse_github_timestamp(date) if date else None,
            html_url=data.get("html_url"),
            author_login=(data.get("author") or {}).get("login"),
        )


@dataclass(frozen=True)
class RateLimit:
    """Core API quota as reported by GET /rate_limit"""

    limit: int
    remaining: int
    reset: datetime

    def to_dict(self):
        return {"limit": self.limit, "remaining": self.remaining, "reset": self.reset.isoformat()}
