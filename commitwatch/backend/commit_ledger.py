from datetime import timedelta
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite

from commitwatch.backend.database import DBSessionMixin
from commitwatch.models.commit import NotifiedCommit
from commitwatch.models.github import GitHubCommit
from commitwatch.models.repository import TrackedRepository
from commitwatch.util.clock import utcnow
from commitwatch.util.logging import Logger

_UPSERT_DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


class CommitLedger(DBSessionMixin):
    """Persisted set of commit SHAs that were already announced"""

    def __init__(self, session=None):
        super().__init__(session)
        self.logger = Logger("CommitLedger")

    async def is_notified(self, sha: str) -> bool:
        async with self.get_async_session() as session:
            result = await session.execute(select(NotifiedCommit.id).where(NotifiedCommit.sha == sha))
            return result.first() is not None

    async def filter_new(self, commits: Sequence[GitHubCommit]) -> List[GitHubCommit]:
        """Drop commits already in the ledger, keeping the input order"""
        if not commits:
            return []

        shas = {commit.sha for commit in commits}
        async with self.get_async_session() as session:
            result = await session.execute(select(NotifiedCommit.sha).where(NotifiedCommit.sha.in_(shas)))
            seen = set(result.scalars().all())

        new_commits = []
        for commit in commits:
            if commit.sha in seen:
                continue
            seen.add(commit.sha)
            new_commits.append(commit)
        return new_commits

    async def record(self, repository: Optional[TrackedRepository], commits: Iterable[GitHubCommit]) -> None:
        """Insert ledger rows for delivered commits; SHAs already present are left untouched"""
        now = utcnow()
        rows = [
            {
                "sha": commit.sha,
                "repository_id": repository.id if repository is not None else None,
                "author_name": commit.author_name,
                "author_email": commit.author_email,
                "message": commit.message,
                "commit_date": commit.authored_at,
                "html_url": commit.html_url,
                "notified_at": now,
            }
            for commit in commits
        ]
        if not rows:
            return

        async with self.get_async_session() as session:
            insert = _UPSERT_DIALECTS.get(session.get_bind().dialect.name)
            if insert is not None:
                await session.execute(insert(NotifiedCommit).values(rows).on_conflict_do_nothing(index_elements=["sha"]))
            else:
                existing = await session.execute(
                    select(NotifiedCommit.sha).where(NotifiedCommit.sha.in_([row["sha"] for row in rows]))
                )
                known = set(existing.scalars().all())
                session.add_all(NotifiedCommit(**row) for row in rows if row["sha"] not in known)
            await session.commit()

    async def cleanup(self, retention_days: int = 30) -> int:
        """Delete ledger rows older than the retention window, returning how many went"""
        cutoff = utcnow() - timedelta(days=retention_days)
        async with self.get_async_session() as session:
            result = await session.execute(delete(NotifiedCommit).where(NotifiedCommit.notified_at < cutoff))
            await session.commit()

        removed = result.rowcount or 0
        if removed:
            self.logger.info(f"Removed {removed} ledger entries older than {retention_days} days")
        return removed

    async def list_recent(self, repository_id: Optional[int] = None, limit: int = 20) -> List[NotifiedCommit]:
        query = select(NotifiedCommit)
        if repository_id is not None:
            query = query.where(NotifiedCommit.repository_id == repository_id)
        query = query.order_by(NotifiedCommit.notified_at.desc(), NotifiedCommit.id.desc()).limit(limit)

        async with self.get_async_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())
