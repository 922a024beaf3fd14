from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from commitwatch.backend.database import DBSessionMixin
from commitwatch.models.repository import DEFAULT_INTERVAL, VALID_INTERVALS, TrackedRepository
from commitwatch.util.clock import utcnow
from commitwatch.util.github import parse_repo_string
from commitwatch.util.logging import Logger


def validate_interval(hours: int) -> int:
    if hours not in VALID_INTERVALS:
        allowed = ", ".join(str(i) for i in VALID_INTERVALS)
        raise ValueError(f"Invalid notification interval {hours}h. Allowed: {allowed}")
    return hours


class RepositoryStore(DBSessionMixin):
    """Tracked repositories and their notification schedule"""

    def __init__(self, session=None):
        super().__init__(session)
        self.logger = Logger("RepositoryStore")

    async def create(self, repo_string: str, notification_interval: int = DEFAULT_INTERVAL) -> TrackedRepository:
        """Register a repository, first due one interval from now.

        Raises:
            ValueError: On a malformed reference, an unknown interval or a duplicate
        """
        ref = parse_repo_string(repo_string)
        validate_interval(notification_interval)

        repository = TrackedRepository(
            repo_string=ref.repo_string,
            owner=ref.owner,
            repo=ref.repo,
            branch=ref.branch,
            notification_interval=notification_interval,
        )
        now = utcnow()
        repository.next_check_time = now + repository.interval

        async with self.get_async_session() as session:
            session.add(repository)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ValueError(f"Repository {ref.repo_string} is already tracked")

        self.logger.info(f"Tracking {ref.repo_string} every {notification_interval}h")
        return repository

    async def get(self, repository_id: int) -> Optional[TrackedRepository]:
        async with self.get_async_session() as session:
            return await session.get(TrackedRepository, repository_id)

    async def get_by_string(self, repo_string: str) -> Optional[TrackedRepository]:
        ref = parse_repo_string(repo_string)
        async with self.get_async_session() as session:
            result = await session.execute(
                select(TrackedRepository).where(TrackedRepository.repo_string == ref.repo_string)
            )
            return result.scalar_one_or_none()

    async def list_all(
        self, search: Optional[str] = None, page: int = 1, limit: int = 100
    ) -> Tuple[List[TrackedRepository], int]:
        """Paginated repositories, newest first, with the total match count"""
        query = select(TrackedRepository)
        count_query = select(func.count()).select_from(TrackedRepository)
        if search:
            condition = TrackedRepository.repo_string.ilike(f"%{search}%")
            query = query.where(condition)
            count_query = count_query.where(condition)

        query = (
            query.order_by(TrackedRepository.created_at.desc(), TrackedRepository.id.desc())
            .limit(limit)
            .offset((max(page, 1) - 1) * limit)
        )

        async with self.get_async_session() as session:
            rows = (await session.execute(query)).scalars().all()
            total = await session.scalar(count_query)
        return list(rows), total or 0

    async def update(
        self, repository_id: int, branch: Optional[str] = None, notification_interval: Optional[int] = None
    ) -> Optional[TrackedRepository]:
        """Change the branch and/or interval.

        A new interval is applied from the last check (or from now for a
        repository that was never checked).
        """
        if notification_interval is not None:
            validate_interval(notification_interval)

        async with self.get_async_session() as session:
            repository = await session.get(TrackedRepository, repository_id)
            if repository is None:
                return None

            if branch is not None:
                branch = branch.strip() or None
                repository.branch = branch
                base = f"{repository.owner}/{repository.repo}"
                repository.repo_string = f"{base}:{branch}" if branch else base

            if notification_interval is not None:
                repository.notification_interval = notification_interval
                repository.next_check_time = (repository.last_check_time or utcnow()) + repository.interval

            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ValueError(f"Repository {repository.repo_string} is already tracked")
            return repository

    async def delete(self, repository_id: int) -> bool:
        async with self.get_async_session() as session:
            repository = await session.get(TrackedRepository, repository_id)
            if repository is None:
                return False
            await session.delete(repository)
            await session.commit()
        self.logger.info(f"Stopped tracking repository {repository_id}")
        return True

    async def get_due(self, now: Optional[datetime] = None) -> List[TrackedRepository]:
        """Repositories whose next_check_time has passed, longest overdue first"""
        now = now or utcnow()
        query = (
            select(TrackedRepository)
            .where(TrackedRepository.next_check_time <= now)
            .order_by(TrackedRepository.next_check_time.asc(), TrackedRepository.id.asc())
        )
        async with self.get_async_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def advance_schedule(self, repository_id: int, now: Optional[datetime] = None) -> Optional[TrackedRepository]:
        """Record a completed check: last_check_time = now, next_check_time = now + interval"""
        now = now or utcnow()
        async with self.get_async_session() as session:
            repository = await session.get(TrackedRepository, repository_id)
            if repository is None:
                # Removed while the cycle was running
                self.logger.warning(f"Repository {repository_id} disappeared before its schedule was advanced")
                return None
            repository.schedule_from(now)
            await session.commit()
            return repository
