from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from commitwatch.backend.database import Base
from commitwatch.util.clock import utcnow


class NotifiedCommit(Base):
    """Dedup ledger entry: a commit that has already been announced.

    Rows are inserted once, right after the message covering them was
    delivered, and are never updated. Old rows are pruned after the
    retention window.
    """

    __tablename__ = "commits"

    id = Column(Integer, primary_key=True)
    sha = Column(String(40), unique=True, nullable=False)
    # Ledger entries outlive the repository row so removal never re-arms old commits
    repository_id = Column(Integer, ForeignKey("repositories.id", ondelete="SET NULL"), nullable=True, index=True)
    author_name = Column(String(255))
    author_email = Column(String(255))
    message = Column(Text)
    commit_date = Column(DateTime)
    html_url = Column(String(500))
    notified_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "sha": self.sha,
            "repository_id": self.repository_id,
            "author_name": self.author_name,
            "author_email": self.author_email,
            "message": self.message,
            "commit_date": self.commit_date.isoformat() if self.commit_date else None,
            "html_url": self.html_url,
            "notified_at": self.notified_at.isoformat() if self.notified_at else None,
        }
