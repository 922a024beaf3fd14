from commitwatch.models.repository import TrackedRepository
from commitwatch.models.commit import NotifiedCommit
from commitwatch.models.lock import SchedulerLock

# Import all models here so SQLAlchemy can discover them
__all__ = ["TrackedRepository", "NotifiedCommit", "SchedulerLock"]
