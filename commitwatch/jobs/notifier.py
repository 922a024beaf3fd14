from dataclasses import dataclass, field
from typing import Dict, List, Optional

from commitwatch.backend.repository_store import RepositoryStore
from commitwatch.config.config import Config
from commitwatch.services.github import GitHubService
from commitwatch.services.notification_service import NotificationService
from commitwatch.services.telegram import TelegramService
from commitwatch.util.formatting import COMMITS_PER_MESSAGE, build_notifications
from commitwatch.util.logging import Logger

TEST_BATCH_SIZE = 5


@dataclass
class NotificationReport:
    repos_processed: int = 0
    messages_sent: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"repos_processed": self.repos_processed, "messages_sent": self.messages_sent, "errors": self.errors}


class NotificationTester:
    """Manual notification path: sends the latest commits of repositories right now.

    Nothing is persisted. The ledger and the repository schedule are left
    alone, so running this never affects what the scheduler announces.
    """

    def __init__(
        self,
        commit_source: GitHubService,
        notifier: NotificationService,
        store: Optional[RepositoryStore] = None,
        commits_per_message: int = COMMITS_PER_MESSAGE,
    ):
        self.commit_source = commit_source
        self.notifier = notifier
        self.store = store or RepositoryStore()
        self.commits_per_message = commits_per_message
        self.logger = Logger("NotificationTester")

    @classmethod
    def from_config(cls, config: Optional[Config] = None, store: Optional[RepositoryStore] = None):
        """Build a tester from configured credentials, raising ValueError when Telegram is not configured"""
        config = config or Config()
        return cls(
            GitHubService(config.github_token),
            TelegramService(config.telegram_bot_token, config.telegram_chat_id),
            store=store,
            commits_per_message=int(config.get("telegram.commits_per_message", COMMITS_PER_MESSAGE)),
        )

    async def close(self) -> None:
        await self.commit_source.close()
        await self.notifier.close()

    async def _send_latest(self, repo_string: str, limit: int) -> int:
        commits = await self.commit_source.fetch_latest_commits(repo_string, limit)
        sent = 0
        for _, text in build_notifications(commits, repo_string, self.commits_per_message):
            await self.notifier.send_message(text)
            sent += 1
        return sent

    async def test_notifications(self) -> NotificationReport:
        """Send the latest commits of every registered repository, regardless of due-time"""
        report = NotificationReport()

        page = 1
        while True:
            repositories, total = await self.store.list_all(page=page, limit=100)
            for repo in repositories:
                try:
                    report.messages_sent += await self._send_latest(repo.repo_string, TEST_BATCH_SIZE)
                    report.repos_processed += 1
                except Exception as e:
                    self.logger.error(f"Error processing {repo.repo_string}: {e}")
                    report.errors.append({"repo": repo.repo_string, "error": str(e)})
            if not repositories or page * 100 >= total:
                break
            page += 1

        self.logger.info("Test notifications finished", extra_data=report.to_dict())
        return report

    async def send_commits_for_repo(self, repo_string: str, limit: int = TEST_BATCH_SIZE) -> int:
        """Send the latest commits of one repository, tracked or not. Returns the number of messages sent."""
        if limit < 1:
            raise ValueError("limit must be at least 1")
        return await self._send_latest(repo_string, limit)
