from datetime import datetime, timedelta

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String

from commitwatch.backend.database import Base
from commitwatch.util.clock import utcnow

# Allowed notification intervals, in hours
VALID_INTERVALS = (1, 2, 3, 6, 12, 24)
DEFAULT_INTERVAL = 3


class TrackedRepository(Base):
    """A GitHub repository (optionally pinned to a branch) whose commits are announced.

    ``next_check_time`` is the due-time the scheduler polls on. It is set to
    ``now + interval`` at registration and to ``last_check_time + interval``
    every time the scheduler finishes the repository, so it is never null.
    """

    __tablename__ = "repositories"
    __table_args__ = (
        CheckConstraint(
            f"notification_interval IN ({', '.join(str(i) for i in VALID_INTERVALS)})",
            name="valid_notification_interval",
        ),
    )

    id = Column(Integer, primary_key=True)
    repo_string = Column(String(255), unique=True, nullable=False)  # owner/repo[:branch]
    owner = Column(String(100), nullable=False)
    repo = Column(String(100), nullable=False)
    branch = Column(String(255), nullable=True)
    notification_interval = Column(Integer, nullable=False, default=DEFAULT_INTERVAL)
    last_check_time = Column(DateTime, nullable=True)
    next_check_time = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def interval(self) -> timedelta:
        return timedelta(hours=self.notification_interval)

    def schedule_from(self, now: datetime) -> None:
        """Mark the repository as checked at ``now`` and push its due-time one interval out"""
        self.last_check_time = now
        self.next_check_time = now + self.interval

    def to_dict(self):
        return {
            "id": self.id,
            "repo_string": self.repo_string,
            "owner": self.owner,
            "repo": self.repo,
            "branch": self.branch,
            "notification_interval": self.notification_interval,
            "last_check_time": self.last_check_time.isoformat() if self.last_check_time else None,
            "next_check_time": self.next_check_time.isoformat() if self.next_check_time else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<TrackedRepository(id={self.id}, repo_string={self.repo_string}, next_check_time={self.next_check_time})>"
