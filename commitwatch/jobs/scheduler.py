"""Periodic commit notification scheduler.

A recurring trigger fires every ``polling_interval_ms``. Each firing starts a
cycle in the background: take the cluster-wide lock, load the due
repositories oldest-due first, and process them one at a time. Processing a
repository means fetching commits since its last check, dropping the ones the
ledger already knows, sending the rest to Telegram and finally advancing its
schedule. That whole unit is retried with exponential backoff; a repository
that fails every attempt stays due for the next cycle.

Shutdown is cooperative. ``stop()`` prevents new cycles and the running cycle
checks the flag between repositories, never in the middle of a fetch or send.
The lock is renewed at the same points; a cycle that lost it stops there.
"""

import asyncio
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set

from commitwatch.backend.commit_ledger import CommitLedger
from commitwatch.backend.lock import DistributedLock, create_scheduler_lock
from commitwatch.backend.repository_store import RepositoryStore
from commitwatch.config.config import Config
from commitwatch.models.repository import TrackedRepository
from commitwatch.services.github import GitHubService
from commitwatch.services.notification_service import NotificationService
from commitwatch.services.telegram import TelegramService
from commitwatch.util.clock import utcnow
from commitwatch.util.formatting import build_notifications
from commitwatch.util.logging import Logger
from commitwatch.util.retry import RetryError, RetryPolicy


class SchedulerState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    IDLE = "idle"
    RUNNING_CYCLE = "running_cycle"
    DRAINING = "draining"


@dataclass
class SchedulerStats:
    """Process-local run statistics"""

    is_running: bool = False
    last_run_time: Optional[datetime] = None
    last_run_duration: Optional[int] = None  # milliseconds
    total_cycles: int = 0
    total_repos_processed: int = 0
    total_notifications_sent: int = 0
    total_errors: int = 0

    def to_dict(self) -> dict:
        return {
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "last_run_duration": self.last_run_duration,
            "total_cycles": self.total_cycles,
            "total_repos_processed": self.total_repos_processed,
            "total_notifications_sent": self.total_notifications_sent,
            "total_errors": self.total_errors,
        }


@dataclass
class SchedulerSettings:
    enabled: bool = False
    github_token: Optional[str] = field(default=None, repr=False)
    telegram_bot_token: Optional[str] = field(default=None, repr=False)
    telegram_chat_id: Optional[str] = None
    polling_interval_ms: int = 300000
    max_retries: int = 3
    retry_delay_ms: int = 1000
    retry_max_delay_ms: int = 30000
    shutdown_timeout_ms: int = 30000
    max_commits_per_fetch: int = 100
    commits_per_message: int = 5
    lock_name: str = "notification_scheduler"
    lock_ttl_seconds: int = 1800
    retention_days: int = 30

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "SchedulerSettings":
        config = config or Config()
        defaults = cls()
        return cls(
            enabled=config.scheduler_enabled,
            github_token=config.github_token,
            telegram_bot_token=config.telegram_bot_token,
            telegram_chat_id=config.telegram_chat_id,
            polling_interval_ms=int(config.get("scheduler.polling_interval_ms", defaults.polling_interval_ms)),
            max_retries=int(config.get("scheduler.max_retries", defaults.max_retries)),
            retry_delay_ms=int(config.get("scheduler.retry_delay_ms", defaults.retry_delay_ms)),
            retry_max_delay_ms=int(config.get("scheduler.retry_max_delay_ms", defaults.retry_max_delay_ms)),
            shutdown_timeout_ms=int(config.get("scheduler.shutdown_timeout_ms", defaults.shutdown_timeout_ms)),
            max_commits_per_fetch=int(config.get("github.max_commits_per_fetch", defaults.max_commits_per_fetch)),
            commits_per_message=int(config.get("telegram.commits_per_message", defaults.commits_per_message)),
            lock_name=config.get("scheduler.lock_name", defaults.lock_name),
            lock_ttl_seconds=int(config.get("scheduler.lock_ttl_seconds", defaults.lock_ttl_seconds)),
            retention_days=int(config.get("ledger.retention_days", defaults.retention_days)),
        )


class NotificationScheduler:
    """Drives notification cycles for every process instance, one cycle at a time cluster-wide"""

    SHUTDOWN_POLL_SECONDS = 0.1

    def __init__(
        self,
        settings: SchedulerSettings,
        store: Optional[RepositoryStore] = None,
        ledger: Optional[CommitLedger] = None,
        lock: Optional[DistributedLock] = None,
        commit_source: Optional[GitHubService] = None,
        notifier: Optional[NotificationService] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.logger = Logger("NotificationScheduler")
        self.stats = SchedulerStats()
        self.retry_policy = RetryPolicy.from_milliseconds(
            max(settings.max_retries, 1), settings.retry_delay_ms, settings.retry_max_delay_ms, sleep=sleep
        )
        self._clock = clock

        self._store = store
        self._ledger = ledger
        self._lock = lock
        self._commit_source = commit_source
        self._notifier = notifier
        # Collaborators built here rather than injected, closed on stop
        self._owned: List = []

        self._state = SchedulerState.STOPPED
        self._shutdown = False
        self._cycle_running = False
        self._trigger_task: Optional[asyncio.Task] = None
        self._cycle_tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: Optional[Config] = None, **collaborators) -> "NotificationScheduler":
        return cls(SchedulerSettings.from_config(config), **collaborators)

    @property
    def store(self) -> RepositoryStore:
        if self._store is None:
            self._store = RepositoryStore()
        return self._store

    @property
    def ledger(self) -> CommitLedger:
        if self._ledger is None:
            self._ledger = CommitLedger()
        return self._ledger

    @property
    def lock(self) -> DistributedLock:
        if self._lock is None:
            self._lock = create_scheduler_lock(self.settings.lock_name, self.settings.lock_ttl_seconds)
        return self._lock

    @property
    def commit_source(self) -> GitHubService:
        if self._commit_source is None:
            self._commit_source = GitHubService(self.settings.github_token)
            self._owned.append(self._commit_source)
        return self._commit_source

    @property
    def notifier(self) -> NotificationService:
        if self._notifier is None:
            self._notifier = TelegramService(self.settings.telegram_bot_token, self.settings.telegram_chat_id)
            self._owned.append(self._notifier)
        return self._notifier

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_active(self) -> bool:
        """Whether the recurring trigger is installed"""
        return self._trigger_task is not None and not self._trigger_task.done()

    def missing_credentials(self) -> List[str]:
        missing = []
        if self._commit_source is None and not self.settings.github_token:
            missing.append("GitHub token")
        if self._notifier is None:
            if not self.settings.telegram_bot_token:
                missing.append("Telegram bot token")
            if not self.settings.telegram_chat_id:
                missing.append("Telegram chat ID")
        return missing

    async def start(self) -> bool:
        """Install the recurring trigger and run the first cycle.

        Returns False without doing anything when the scheduler is disabled
        or credentials are missing.
        """
        if self.is_active:
            self.logger.warning("Scheduler already started")
            return True

        if not self.settings.enabled:
            self.logger.info("Scheduler disabled by configuration")
            return False

        missing = self.missing_credentials()
        if missing:
            self.logger.info(f"Scheduler not started, missing {', '.join(missing)}")
            return False

        self._state = SchedulerState.STARTING
        self._shutdown = False
        self.logger.info(f"Starting scheduler with {self.settings.polling_interval_ms / 1000:g}s polling interval")

        self._trigger_task = asyncio.create_task(self._trigger_loop())
        self._state = SchedulerState.IDLE

        await self.run_cycle()
        return True

    async def stop(self) -> None:
        """Stop triggering cycles and wait (up to the shutdown timeout) for the running one"""
        if self._state is SchedulerState.STOPPED and not self.is_active and not self._cycle_running:
            return

        self.logger.info("Graceful shutdown initiated")
        self._shutdown = True

        if self._trigger_task is not None:
            self._trigger_task.cancel()
            await asyncio.gather(self._trigger_task, return_exceptions=True)
            self._trigger_task = None

        if self._cycle_running:
            self._state = SchedulerState.DRAINING

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.shutdown_timeout_ms / 1000
        while self._cycle_running and loop.time() < deadline:
            await asyncio.sleep(self.SHUTDOWN_POLL_SECONDS)

        if self._cycle_running:
            # The cycle keeps running in the background; it stops at the next repository boundary
            self.logger.warning("Shutdown timeout reached while a cycle is still running")
            return

        # Triggered cycles that had not started yet return immediately now
        await asyncio.gather(*self._cycle_tasks, return_exceptions=True)

        await self.close()
        self._state = SchedulerState.STOPPED
        self.logger.info("Scheduler shutdown complete", extra_data=self.stats.to_dict())

    async def close(self) -> None:
        """Close transport resources of collaborators built by the scheduler"""
        owned, self._owned = self._owned, []
        for collaborator in owned:
            try:
                await collaborator.close()
            except Exception as e:
                self.logger.warning(f"Failed to close {collaborator.__class__.__name__}: {e}")
        if self._commit_source in owned:
            self._commit_source = None
        if self._notifier in owned:
            self._notifier = None

    def get_stats(self) -> SchedulerStats:
        """Snapshot of the run statistics"""
        return replace(self.stats, is_running=self._cycle_running)

    async def _trigger_loop(self) -> None:
        interval = self.settings.polling_interval_ms / 1000
        while not self._shutdown:
            await asyncio.sleep(interval)
            if self._shutdown:
                break
            # Fire and forget; run_cycle skips itself if the previous cycle is still going
            task = asyncio.create_task(self.run_cycle())
            self._cycle_tasks.add(task)
            task.add_done_callback(self._cycle_tasks.discard)

    def _settle_state(self) -> None:
        if self._shutdown:
            self._state = SchedulerState.DRAINING if self._cycle_running else SchedulerState.STOPPED
        else:
            self._state = SchedulerState.IDLE if self.is_active else SchedulerState.STOPPED

    async def run_cycle(self) -> bool:
        """Run one cycle if this process is not already in one and the cluster lock is free.

        Returns True when the cycle ran.
        """
        if self._shutdown or self._cycle_running:
            self.logger.debug("Cycle skipped, shutdown in progress or cycle already running")
            return False

        # Claimed before the first await so overlapping triggers see it
        self._cycle_running = True
        try:
            try:
                acquired = await self.lock.try_acquire()
            except Exception as e:
                self.logger.error(f"Failed to acquire scheduler lock: {e}")
                return False

            if not acquired:
                self.logger.info("Another instance is running a cycle, skipping")
                return False

            self._state = SchedulerState.RUNNING_CYCLE
            self.stats.is_running = True
            await self._run_locked_cycle()
            return True
        finally:
            self._cycle_running = False
            self.stats.is_running = False
            self._settle_state()
            if self._shutdown:
                # stop() may have given up waiting for this cycle
                await self.close()

    async def _run_locked_cycle(self) -> None:
        started = time.monotonic()
        try:
            repos = await self.store.get_due(self._clock())
            if repos:
                self.logger.info(f"Processing {len(repos)} repositories due for notification")

            lock_lost = False
            for repo in repos:
                if self._shutdown:
                    self.logger.info("Shutdown requested, stopping cycle")
                    break
                if not await self._keep_lock():
                    lock_lost = True
                    break
                await self._process_repo_with_retry(repo)

            if not self._shutdown and not lock_lost:
                await self._prune_ledger()
        except Exception as e:
            self.logger.error(f"Cycle error: {e}", exc_info=True)
            self.stats.total_errors += 1
        finally:
            self.stats.total_cycles += 1
            self.stats.last_run_time = self._clock()
            self.stats.last_run_duration = int((time.monotonic() - started) * 1000)

            try:
                await self.lock.release()
            except Exception as e:
                self.logger.error(f"Failed to release scheduler lock: {e}")

    async def _keep_lock(self) -> bool:
        """Renew the cluster lock before the next repository; a lost lock ends the cycle"""
        try:
            if await self.lock.renew():
                return True
            self.logger.error("Scheduler lock lost, stopping cycle")
        except Exception as e:
            self.logger.error(f"Failed to renew scheduler lock, stopping cycle: {e}")
        self.stats.total_errors += 1
        return False

    async def _process_repo_with_retry(self, repo: TrackedRepository) -> bool:
        try:
            await self.retry_policy.run(lambda: self._process_repo(repo), context=repo.repo_string, logger=self.logger)
        except RetryError as e:
            self.logger.error(
                f"All retries failed for {repo.repo_string}",
                extra_data={"attempts": e.attempts, "error": str(e.last_error)},
            )
            self.stats.total_errors += 1
            return False
        return True

    async def _process_repo(self, repo: TrackedRepository) -> None:
        """One attempt: fetch, drop known commits, notify, advance the schedule"""
        # The next fetch starts from here; commits seen twice are dropped by the ledger
        checked_at = self._clock()
        commits = await self.commit_source.fetch_commits_since(
            repo.repo_string, since=repo.last_check_time, max_count=self.settings.max_commits_per_fetch
        )
        new_commits = await self.ledger.filter_new(commits)

        if new_commits:
            notifications = build_notifications(
                new_commits, repo.repo_string, self.settings.commits_per_message, sent_at=self._clock()
            )
            for covered, text in notifications:
                await self.notifier.send_message(text)
                self.stats.total_notifications_sent += 1
                # Recorded per message, so a retry only resends what was not delivered
                await self.ledger.record(repo, covered)

            self.logger.info(
                f"Sent {len(notifications)} notification(s) for {repo.repo_string} ({len(new_commits)} commits)"
            )

        await self.store.advance_schedule(repo.id, checked_at)
        self.stats.total_repos_processed += 1

    async def _prune_ledger(self) -> None:
        try:
            await self.ledger.cleanup(self.settings.retention_days)
        except Exception as e:
            self.logger.warning(f"Failed to prune commit ledger: {e}")
