import asyncio
import os
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock, patch

import pytest

from commitwatch.backend.commit_ledger import CommitLedger
from commitwatch.backend.lock import TableLock
from commitwatch.backend.repository_store import RepositoryStore
from commitwatch.jobs.scheduler import NotificationScheduler, SchedulerSettings, SchedulerState
from commitwatch.services.notification_service import NotificationService

NOW = datetime(2024, 6, 1, 12, 0)


class FakeCommitSource:
    """Returns canned commits per repository and can fail a number of times first"""

    def __init__(self, commits=None, failures=0):
        self.commits = commits or {}
        self.failures = failures
        self.calls = []
        self.on_fetch = None

    async def fetch_commits_since(self, repo_string, since=None, max_count=100):
        self.calls.append((repo_string, since))
        if self.on_fetch:
            await self.on_fetch(len(self.calls))
        if self.failures:
            self.failures -= 1
            raise ConnectionError("GitHub unavailable")
        return list(self.commits.get(repo_string, []))[:max_count]

    async def close(self):
        pass


class FakeNotifier(NotificationService):
    """Records delivered messages; fails on the given (1-based) send attempts"""

    def __init__(self, fail_on=(), always_fail=False):
        self.fail_on = set(fail_on)
        self.always_fail = always_fail
        self.attempts = 0
        self.sent = []

    async def send_message(self, message):
        self.attempts += 1
        if self.always_fail or self.attempts in self.fail_on:
            raise ConnectionError("Telegram unavailable")
        self.sent.append(message)


def build_scheduler(session, commit_source, notifier, lock=None, clock=None, **overrides):
    settings = SchedulerSettings(
        enabled=True, github_token="gh-token", telegram_bot_token="bot-token", telegram_chat_id="-100", **overrides
    )
    return NotificationScheduler(
        settings,
        store=RepositoryStore(session=session),
        ledger=CommitLedger(session=session),
        lock=lock or TableLock(settings.lock_name, session=session),
        commit_source=commit_source,
        notifier=notifier,
        sleep=AsyncMock(),
        clock=clock or (lambda: NOW),
    )


async def add_due_repos(session, *repo_strings, interval=3):
    store = RepositoryStore(session=session)
    repos = []
    for position, repo_string in enumerate(repo_strings):
        repo = await store.create(repo_string, interval)
        # Earlier entries are more overdue
        repo.next_check_time = NOW - timedelta(minutes=len(repo_strings) - position)
        repos.append(repo)
    await session.commit()
    return repos


def mock_lock(acquired=True):
    lock = Mock()
    lock.try_acquire = AsyncMock(return_value=acquired)
    lock.release = AsyncMock()
    lock.renew = AsyncMock(return_value=True)
    return lock


@pytest.mark.asyncio
async def test_cycle_notifies_records_and_advances(session, commit_factory):
    [repo] = await add_due_repos(session, "octo/repo")
    commits = [commit_factory("a" * 40, "First"), commit_factory("b" * 40, "Second")]
    source = FakeCommitSource({"octo/repo": commits})
    notifier = FakeNotifier()
    scheduler = build_scheduler(session, source, notifier)

    assert await scheduler.run_cycle() is True

    assert source.calls == [("octo/repo", None)]
    assert len(notifier.sent) == 1
    assert "Showing 1-2/2" in notifier.sent[0]
    assert await CommitLedger(session=session).filter_new(commits) == []
    assert repo.last_check_time == NOW
    assert repo.next_check_time == NOW + timedelta(hours=3)

    stats = scheduler.get_stats()
    assert stats.total_cycles == 1
    assert stats.total_repos_processed == 1
    assert stats.total_notifications_sent == 1
    assert stats.total_errors == 0
    assert stats.last_run_time == NOW
    assert stats.is_running is False


@pytest.mark.asyncio
async def test_repository_without_commits_is_still_advanced(session):
    [repo] = await add_due_repos(session, "octo/quiet", interval=1)
    notifier = FakeNotifier()
    scheduler = build_scheduler(session, FakeCommitSource(), notifier)

    await scheduler.run_cycle()

    assert notifier.sent == []
    assert repo.next_check_time == NOW + timedelta(hours=1)
    assert scheduler.get_stats().total_repos_processed == 1


@pytest.mark.asyncio
async def test_only_due_repositories_are_processed_oldest_first(session):
    await add_due_repos(session, "octo/oldest", "octo/older", "octo/old")
    future = await RepositoryStore(session=session).create("octo/future")
    future.next_check_time = NOW + timedelta(minutes=1)
    await session.commit()
    source = FakeCommitSource()

    await build_scheduler(session, source, FakeNotifier()).run_cycle()

    assert [repo_string for repo_string, _ in source.calls] == ["octo/oldest", "octo/older", "octo/old"]


@pytest.mark.asyncio
async def test_notified_commit_is_not_sent_again(session, commit_factory):
    [repo] = await add_due_repos(session, "octo/repo")
    first, second = commit_factory("a" * 40, "First"), commit_factory("b" * 40, "Second")
    source = FakeCommitSource({"octo/repo": [first]})
    notifier = FakeNotifier()
    scheduler = build_scheduler(session, source, notifier)

    await scheduler.run_cycle()

    # Next cycle's window overlaps and returns the old commit again
    source.commits["octo/repo"] = [second, first]
    repo.next_check_time = NOW - timedelta(minutes=1)
    await session.commit()
    await scheduler.run_cycle()

    assert source.calls[1] == ("octo/repo", NOW)
    assert len(notifier.sent) == 2
    assert "<b>Second</b>" in notifier.sent[1]
    assert "First" not in notifier.sent[1]


@pytest.mark.asyncio
async def test_all_retries_failing_leaves_repository_due(session, commit_factory):
    [repo] = await add_due_repos(session, "octo/repo")
    original_next_check = repo.next_check_time
    commit = commit_factory("a" * 40)
    notifier = FakeNotifier(always_fail=True)
    scheduler = build_scheduler(session, FakeCommitSource({"octo/repo": [commit]}), notifier)

    assert await scheduler.run_cycle() is True

    assert notifier.attempts == 3
    assert repo.next_check_time == original_next_check
    assert repo.last_check_time is None
    assert [due.id for due in await RepositoryStore(session=session).get_due(NOW)] == [repo.id]
    assert await CommitLedger(session=session).is_notified(commit.sha) is False
    # Backoff of 1s then 2s between the three attempts
    assert [call.args[0] for call in scheduler.retry_policy.sleep.await_args_list] == [1.0, 2.0]

    stats = scheduler.get_stats()
    assert stats.total_errors == 1
    assert stats.total_repos_processed == 0
    assert stats.total_cycles == 1


@pytest.mark.asyncio
async def test_success_on_second_attempt_sends_once(session, commit_factory):
    [repo] = await add_due_repos(session, "octo/repo")
    source = FakeCommitSource({"octo/repo": [commit_factory("a" * 40)]})
    notifier = FakeNotifier(fail_on={1})
    scheduler = build_scheduler(session, source, notifier)

    await scheduler.run_cycle()

    assert len(source.calls) == 2
    assert len(notifier.sent) == 1
    assert repo.next_check_time == NOW + timedelta(hours=3)
    assert scheduler.get_stats().total_notifications_sent == 1
    assert scheduler.get_stats().total_errors == 0


@pytest.mark.asyncio
async def test_fetch_failure_is_retried(session):
    [repo] = await add_due_repos(session, "octo/repo")
    source = FakeCommitSource(failures=2)
    scheduler = build_scheduler(session, source, FakeNotifier())

    await scheduler.run_cycle()

    assert len(source.calls) == 3
    assert repo.last_check_time == NOW


@pytest.mark.asyncio
async def test_retry_after_partial_delivery_sends_only_the_rest(session, commit_factory):
    await add_due_repos(session, "octo/repo")
    commits = [commit_factory(f"{i:040d}", f"Commit {i}") for i in range(1, 8)]
    notifier = FakeNotifier(fail_on={2})
    scheduler = build_scheduler(session, FakeCommitSource({"octo/repo": commits}), notifier)

    await scheduler.run_cycle()

    assert len(notifier.sent) == 2
    assert "Showing 1-5/7" in notifier.sent[0]
    retry_message = notifier.sent[1]
    assert "Showing 1-2/2" in retry_message
    assert "Commit 6" in retry_message and "Commit 7" in retry_message
    assert "Commit 1\n" not in retry_message
    assert await CommitLedger(session=session).filter_new(commits) == []


@pytest.mark.asyncio
async def test_twelve_commits_are_sent_in_three_pages(session, commit_factory):
    await add_due_repos(session, "octo/repo:main")
    commits = [commit_factory(f"{i:040d}", f"Commit {i}") for i in range(1, 13)]
    notifier = FakeNotifier()
    scheduler = build_scheduler(session, FakeCommitSource({"octo/repo:main": commits}), notifier)

    await scheduler.run_cycle()

    assert len(notifier.sent) == 3
    for message, header in zip(notifier.sent, ("1-5/12", "6-10/12", "11-12/12")):
        assert f"Showing {header}" in message
    assert "<b>12.</b> Commit 12" in notifier.sent[2]
    assert scheduler.get_stats().total_notifications_sent == 3


@pytest.mark.asyncio
async def test_commit_text_is_escaped(session, commit_factory):
    await add_due_repos(session, "octo/repo")
    commit = commit_factory("a" * 40, 'Break <b>markup</b> & "quotes"', author="<Eve>")
    notifier = FakeNotifier()

    await build_scheduler(session, FakeCommitSource({"octo/repo": [commit]}), notifier).run_cycle()

    [message] = notifier.sent
    assert "&lt;b&gt;markup&lt;/b&gt; &amp; &quot;quotes&quot;" in message
    assert "&lt;Eve&gt;" in message
    assert "<Eve>" not in message


@pytest.mark.asyncio
async def test_only_one_instance_runs_the_cycle(session_factory):
    async with session_factory() as setup, session_factory() as session_a, session_factory() as session_b:
        await add_due_repos(setup, "octo/repo")
        source_a, source_b = FakeCommitSource(), FakeCommitSource()
        lock_a = TableLock("notification_scheduler", owner="a", session=session_a)
        lock_b = TableLock("notification_scheduler", owner="b", session=session_b)
        instance_a = build_scheduler(session_a, source_a, FakeNotifier(), lock=lock_a)
        instance_b = build_scheduler(session_b, source_b, FakeNotifier(), lock=lock_b)

        results = await asyncio.gather(instance_a.run_cycle(), instance_b.run_cycle())

        assert sorted(results) == [False, True]
        assert len(source_a.calls) + len(source_b.calls) == 1


@pytest.mark.asyncio
async def test_cycle_skipped_while_another_instance_holds_the_lock(session_factory):
    async with session_factory() as session, session_factory() as lock_session, session_factory() as other_session:
        [repo] = await add_due_repos(session, "octo/repo")
        other_instance = TableLock("notification_scheduler", owner="other", session=other_session)
        source = FakeCommitSource()
        own_lock = TableLock("notification_scheduler", owner="self", session=lock_session)
        scheduler = build_scheduler(session, source, FakeNotifier(), lock=own_lock)

        assert await other_instance.try_acquire() is True
        assert await scheduler.run_cycle() is False
        assert source.calls == []
        assert repo.last_check_time is None
        assert scheduler.get_stats().total_cycles == 0

        await other_instance.release()
        assert await scheduler.run_cycle() is True
        assert len(source.calls) == 1


@pytest.mark.asyncio
async def test_graceful_shutdown_stops_between_repositories(session):
    repo_strings = [f"octo/repo-{i}" for i in range(10)]
    await add_due_repos(session, *repo_strings)
    source = FakeCommitSource()
    scheduler = build_scheduler(session, source, FakeNotifier())
    stop_tasks = []

    async def stop_during_third_fetch(call_number):
        if call_number == 3:
            stop_tasks.append(asyncio.create_task(scheduler.stop()))
            await asyncio.sleep(0)

    source.on_fetch = stop_during_third_fetch

    assert await scheduler.run_cycle() is True
    await asyncio.gather(*stop_tasks)

    assert [repo_string for repo_string, _ in source.calls] == repo_strings[:3]
    assert scheduler.state is SchedulerState.STOPPED
    assert scheduler.get_stats().total_repos_processed == 3

    remaining = await RepositoryStore(session=session).get_due(NOW)
    assert [repo.repo_string for repo in remaining] == repo_strings[3:]

    # A later cycle picks up only what was skipped
    next_source = FakeCommitSource()
    await build_scheduler(session, next_source, FakeNotifier()).run_cycle()
    assert [repo_string for repo_string, _ in next_source.calls] == repo_strings[3:]


@pytest.mark.asyncio
async def test_reentrant_cycle_is_skipped(session):
    await add_due_repos(session, "octo/repo")
    source = FakeCommitSource()
    scheduler = build_scheduler(session, source, FakeNotifier())
    nested = []

    async def run_nested(_):
        nested.append(await scheduler.run_cycle())
        nested.append(scheduler.get_stats().is_running)
        nested.append(scheduler.state)

    source.on_fetch = run_nested
    await scheduler.run_cycle()

    assert nested == [False, True, SchedulerState.RUNNING_CYCLE]
    assert scheduler.get_stats().total_cycles == 1


@pytest.mark.asyncio
async def test_lock_acquire_failure_aborts_cycle():
    lock = mock_lock()
    lock.try_acquire.side_effect = ConnectionError("db down")
    store = Mock(get_due=AsyncMock())
    scheduler = NotificationScheduler(SchedulerSettings(), store=store, lock=lock)

    assert await scheduler.run_cycle() is False
    store.get_due.assert_not_awaited()
    lock.release.assert_not_awaited()
    assert scheduler.get_stats().total_cycles == 0


@pytest.mark.asyncio
async def test_due_query_failure_counts_error_and_releases_lock():
    lock = mock_lock()
    store = Mock(get_due=AsyncMock(side_effect=ConnectionError("db down")))
    scheduler = NotificationScheduler(SchedulerSettings(), store=store, lock=lock, ledger=Mock())

    assert await scheduler.run_cycle() is True

    lock.release.assert_awaited_once()
    stats = scheduler.get_stats()
    assert stats.total_errors == 1
    assert stats.total_cycles == 1
    assert stats.last_run_duration is not None


@pytest.mark.asyncio
async def test_lock_release_failure_is_not_raised():
    lock = mock_lock()
    lock.release.side_effect = ConnectionError("db down")
    store = Mock(get_due=AsyncMock(return_value=[]))
    ledger = Mock(cleanup=AsyncMock(return_value=0))
    scheduler = NotificationScheduler(SchedulerSettings(), store=store, lock=lock, ledger=ledger)

    assert await scheduler.run_cycle() is True
    lock.release.assert_awaited_once()


@pytest.mark.asyncio
async def test_cycle_prunes_ledger():
    store = Mock(get_due=AsyncMock(return_value=[]))
    ledger = Mock(cleanup=AsyncMock(side_effect=ConnectionError("db down")))
    scheduler = NotificationScheduler(SchedulerSettings(retention_days=7), store=store, lock=mock_lock(), ledger=ledger)

    # Prune failures are only logged
    assert await scheduler.run_cycle() is True
    ledger.cleanup.assert_awaited_once_with(7)
    assert scheduler.get_stats().total_errors == 0


@pytest.mark.asyncio
async def test_start_does_nothing_when_disabled():
    lock = mock_lock()
    scheduler = NotificationScheduler(
        SchedulerSettings(enabled=False, github_token="gh", telegram_bot_token="bot", telegram_chat_id="1"), lock=lock
    )

    assert await scheduler.start() is False
    assert scheduler.is_active is False
    assert scheduler.state is SchedulerState.STOPPED
    lock.try_acquire.assert_not_awaited()


@pytest.mark.asyncio
async def test_start_does_nothing_without_credentials():
    lock = mock_lock()
    scheduler = NotificationScheduler(SchedulerSettings(enabled=True, github_token="gh"), lock=lock)

    assert scheduler.missing_credentials() == ["Telegram bot token", "Telegram chat ID"]
    assert await scheduler.start() is False
    lock.try_acquire.assert_not_awaited()


@pytest.mark.asyncio
async def test_start_runs_first_cycle_and_stop_is_idempotent(session):
    scheduler = build_scheduler(session, FakeCommitSource(), FakeNotifier())

    assert await scheduler.start() is True
    assert scheduler.is_active is True
    assert scheduler.state is SchedulerState.IDLE
    assert scheduler.get_stats().total_cycles == 1

    await scheduler.stop()
    assert scheduler.is_active is False
    assert scheduler.state is SchedulerState.STOPPED

    await scheduler.stop()
    assert scheduler.state is SchedulerState.STOPPED


@pytest.mark.asyncio
async def test_trigger_runs_recurring_cycles(session):
    scheduler = build_scheduler(session, FakeCommitSource(), FakeNotifier(), polling_interval_ms=20)

    await scheduler.start()
    await asyncio.sleep(0.2)
    await scheduler.stop()

    assert scheduler.get_stats().total_cycles >= 2
    assert scheduler.state is SchedulerState.STOPPED


@pytest.mark.asyncio
async def test_stop_gives_up_after_timeout():
    scheduler = NotificationScheduler(SchedulerSettings(shutdown_timeout_ms=50))
    scheduler._cycle_running = True
    scheduler._state = SchedulerState.RUNNING_CYCLE

    await scheduler.stop()

    # The cycle keeps running in the background
    assert scheduler.state is SchedulerState.DRAINING
    assert await scheduler.run_cycle() is False


@pytest.mark.asyncio
async def test_cycle_outliving_stop_closes_owned_clients():
    fetching, finish = asyncio.Event(), asyncio.Event()
    source = Mock(close=AsyncMock())

    async def slow_fetch(repo_string, since=None, max_count=100):
        fetching.set()
        await finish.wait()
        return []

    source.fetch_commits_since = slow_fetch
    store = Mock(
        get_due=AsyncMock(return_value=[Mock(id=1, repo_string="octo/repo", last_check_time=None)]),
        advance_schedule=AsyncMock(),
    )
    ledger = Mock(filter_new=AsyncMock(return_value=[]), cleanup=AsyncMock(return_value=0))
    settings = SchedulerSettings(shutdown_timeout_ms=50, github_token="gh")

    with patch("commitwatch.jobs.scheduler.GitHubService", return_value=source):
        scheduler = NotificationScheduler(settings, store=store, ledger=ledger, lock=mock_lock(), notifier=Mock())
        cycle = asyncio.create_task(scheduler.run_cycle())
        await fetching.wait()

        await scheduler.stop()
        assert scheduler.state is SchedulerState.DRAINING
        source.close.assert_not_awaited()

        finish.set()
        assert await cycle is True

    source.close.assert_awaited_once()
    assert scheduler.state is SchedulerState.STOPPED


@pytest.mark.asyncio
async def test_lost_lock_stops_cycle_between_repositories(session):
    await add_due_repos(session, "octo/first", "octo/second", "octo/third")
    source = FakeCommitSource()
    lock = mock_lock()
    lock.renew.side_effect = [True, False]
    scheduler = build_scheduler(session, source, FakeNotifier(), lock=lock)

    with patch.object(CommitLedger, "cleanup", AsyncMock()) as cleanup:
        assert await scheduler.run_cycle() is True

    assert [repo_string for repo_string, _ in source.calls] == ["octo/first"]
    assert scheduler.get_stats().total_errors == 1
    cleanup.assert_not_awaited()
    lock.release.assert_awaited_once()

    remaining = await RepositoryStore(session=session).get_due(NOW)
    assert [repo.repo_string for repo in remaining] == ["octo/second", "octo/third"]


@pytest.mark.asyncio
async def test_lock_renew_failure_stops_cycle(session):
    await add_due_repos(session, "octo/repo")
    source = FakeCommitSource()
    lock = mock_lock()
    lock.renew.side_effect = ConnectionError("database is locked")
    scheduler = build_scheduler(session, source, FakeNotifier(), lock=lock)

    assert await scheduler.run_cycle() is True
    assert source.calls == []
    assert scheduler.get_stats().total_errors == 1


@pytest.mark.asyncio
async def test_schedule_advances_from_the_time_the_fetch_started(session, commit_factory):
    [repo] = await add_due_repos(session, "octo/repo")
    source = FakeCommitSource({"octo/repo": [commit_factory("a" * 40)]})
    now = [NOW]

    async def slow_fetch(_):
        # Commits dated during a slow fetch and send must stay inside the next window
        now[0] = NOW + timedelta(minutes=5)

    source.on_fetch = slow_fetch
    scheduler = build_scheduler(session, source, FakeNotifier(), clock=lambda: now[0])

    await scheduler.run_cycle()

    assert repo.last_check_time == NOW
    assert repo.next_check_time == NOW + timedelta(hours=3)


def test_settings_from_config():
    env = {
        "SCHEDULER_ENABLED": "true",
        "GITHUB_TOKEN": "gh",
        "TELEGRAM_BOT_TOKEN": "bot",
        "TELEGRAM_CHAT_ID": "-100",
        "SCHEDULER_POLLING_INTERVAL_MS": "60000",
        "SCHEDULER_MAX_RETRIES": "5",
        "COMMITWATCH_RETENTION_DAYS": "14",
    }
    with patch.dict(os.environ, env):
        scheduler = NotificationScheduler.from_config()

    settings = scheduler.settings
    assert settings.enabled is True
    assert settings.telegram_chat_id == "-100"
    assert settings.polling_interval_ms == 60000
    assert settings.max_retries == 5
    assert settings.retry_delay_ms == 1000
    assert settings.retention_days == 14
    assert settings.commits_per_message == 5
    assert scheduler.retry_policy.max_attempts == 5
    assert scheduler.missing_credentials() == []


def test_stats_to_dict():
    scheduler = NotificationScheduler(SchedulerSettings())
    assert scheduler.get_stats().to_dict() == {
        "is_running": False,
        "last_run_time": None,
        "last_run_duration": None,
        "total_cycles": 0,
        "total_repos_processed": 0,
        "total_notifications_sent": 0,
        "total_errors": 0,
    }
