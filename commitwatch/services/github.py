from datetime import datetime, timezone
from typing import List, Optional

import aiohttp

from commitwatch.models.github import GitHubCommit, RateLimit
from commitwatch.util.clock import to_github_timestamp
from commitwatch.util.github import get_headers, parse_repo_string
from commitwatch.util.logging import Logger

# GitHub caps per_page at 100
MAX_PER_PAGE = 100


class GitHubError(Exception):
    """A GitHub API call did not return the expected response"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class GitHubRateLimitError(GitHubError):
    def __init__(self, message: str, status: int, reset: Optional[datetime] = None):
        super().__init__(message, status)
        self.reset = reset


class RepositoryNotFoundError(GitHubError):
    pass


class GitHubService:
    """Commit source backed by the GitHub REST API"""

    API_URL = "https://api.github.com"

    def __init__(self, api_token: Optional[str] = None, session: Optional[aiohttp.ClientSession] = None):
        self.api_token = api_token
        self.session = session
        self.logger = Logger("GitHubService")
        if not api_token:
            self.logger.warning("No GitHub API token configured - rate limits will be strict")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                headers=get_headers(self.api_token), timeout=aiohttp.ClientTimeout(total=30)
            )
        return self.session

    async def close(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()

    async def _raise_for_status(self, response, what: str) -> None:
        if response.status == 200:
            return

        body = await response.text()
        remaining = response.headers.get("X-RateLimit-Remaining")
        if response.status in (403, 429) and (remaining == "0" or response.status == 429):
            reset_header = response.headers.get("X-RateLimit-Reset")
            reset = datetime.fromtimestamp(int(reset_header), tz=timezone.utc) if reset_header else None
            raise GitHubRateLimitError(f"GitHub API rate limit exceeded while fetching {what}", response.status, reset)
        if response.status == 404:
            raise RepositoryNotFoundError(f"Repository not found: {what}", 404)
        raise GitHubError(f"Failed to fetch {what}: HTTP {response.status} {body[:200]}", response.status)

    async def fetch_commits_since(
        self, repo_string: str, since: Optional[datetime] = None, max_count: int = MAX_PER_PAGE
    ) -> List[GitHubCommit]:
        """Fetch up to max_count commits, newest first, optionally only those after since"""
        ref = parse_repo_string(repo_string)

        params = {"per_page": str(max(1, min(max_count, MAX_PER_PAGE)))}
        if ref.branch:
            params["sha"] = ref.branch
        if since is not None:
            params["since"] = to_github_timestamp(since)

        session = await self._get_session()
        url = f"{self.API_URL}/repos/{ref.owner}/{ref.repo}/commits"
        self.logger.debug(f"Fetching commits from {url}", extra_data={"params": params})

        response = await session.get(url, params=params)
        await self._raise_for_status(response, ref.repo_string)

        data = await response.json() or []
        commits = [GitHubCommit.from_api(item) for item in data[:max_count]]
        self.logger.info(f"Found {len(commits)} commits in {ref.repo_string}")
        return commits

    async def fetch_latest_commits(self, repo_string: str, count: int = 10) -> List[GitHubCommit]:
        return await self.fetch_commits_since(repo_string, since=None, max_count=count)

    async def check_rate_limit(self) -> RateLimit:
        session = await self._get_session()
        response = await session.get(f"{self.API_URL}/rate_limit")
        await self._raise_for_status(response, "rate limit")

        rate = (await response.json())["rate"]
        return RateLimit(
            limit=rate["limit"],
            remaining=rate["remaining"],
            reset=datetime.fromtimestamp(rate["reset"], tz=timezone.utc),
        )
