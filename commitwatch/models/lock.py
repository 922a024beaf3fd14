from sqlalchemy import Column, DateTime, String

from commitwatch.backend.database import Base


class SchedulerLock(Base):
    """Row-based named lock for databases without advisory locks.

    The primary key on ``name`` is the mutual exclusion: only one owner can
    insert the row. ``expires_at`` lets a new owner take over after a holder
    died without releasing.
    """

    __tablename__ = "scheduler_locks"

    name = Column(String(100), primary_key=True)
    owner = Column(String(255), nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<SchedulerLock(name={self.name}, owner={self.owner}, expires_at={self.expires_at})>"
