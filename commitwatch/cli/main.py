import asyncio
from functools import wraps

import click

from commitwatch.config.config import Config
from commitwatch.models.repository import DEFAULT_INTERVAL, VALID_INTERVALS
from commitwatch.util.logging import LogConfig, Logger


def async_command(f):
    """Decorator to run async click commands"""

    @wraps(f)
    def wrapper(*args, **kwargs):
        from commitwatch.backend.database import db

        logger = Logger("CLI")
        loop = None
        try:
            # Create new event loop
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)

            # Run the command
            return loop.run_until_complete(f(*args, **kwargs))

        except KeyboardInterrupt:
            logger.info("Received keyboard interrupt, shutting down...")
            if loop:
                # Cancel all running tasks
                pending = asyncio.all_tasks(loop)
                for task in pending:
                    task.cancel()
                if pending:
                    loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))

        except ValueError as e:
            raise click.ClickException(str(e))

        except click.ClickException:
            raise

        except Exception as e:
            logger.error(f"Command failed: {e}")
            raise
        finally:
            if loop and not loop.is_closed():
                # Pooled connections belong to this loop
                loop.run_until_complete(db.close())
                loop.close()

    return wrapper


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose logging (same as --log-level DEBUG)")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Set logging level",
)
@click.pass_context
def cli(ctx, verbose, log_level):
    """Commitwatch CLI"""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["log_level"] = "DEBUG" if verbose else log_level
    ctx.obj["logger"] = Logger("CLI")

    # Configure logging
    LogConfig.set_log_level(ctx.obj["log_level"])

    # Load config
    Config()


@cli.group()
def server():
    """Server management commands"""


@server.command(name="start")
@click.pass_context
@async_command
async def server_start(ctx):
    """Start the notification scheduler and run until interrupted"""
    from commitwatch.server.server import Server

    # The server is long-running, keep its lifecycle visible
    if not ctx.obj["verbose"] and ctx.obj["log_level"] == "WARNING":
        LogConfig.set_log_level("INFO")
    await Server.run()


@cli.group()
def db():
    """Database commands"""


@db.command(name="init")
@async_command
async def db_init():
    """Create the database tables"""
    from commitwatch.server.initialization import Initializer

    click.echo(await Initializer().init_db())


@cli.group()
def repo():
    """Tracked repository commands"""


def _interval_help() -> str:
    return f"Notification interval in hours ({', '.join(str(i) for i in VALID_INTERVALS)})"


@repo.command(name="add")
@click.argument("repo_string")
@click.option("--interval", type=int, default=DEFAULT_INTERVAL, show_default=True, help=_interval_help())
@async_command
async def repo_add(repo_string, interval):
    """Track a repository: owner/repo, owner/repo:branch or a GitHub URL"""
    from commitwatch.backend.repository_store import RepositoryStore

    repository = await RepositoryStore().create(repo_string, interval)
    click.echo(
        f"Tracking {repository.repo_string} (id {repository.id}) every {repository.notification_interval}h, "
        f"first check at {repository.next_check_time:%Y-%m-%d %H:%M} UTC"
    )


@repo.command(name="list")
@click.option("--search", default=None, help="Only repositories whose name contains this text")
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--limit", type=int, default=50, show_default=True)
@async_command
async def repo_list(search, page, limit):
    """List tracked repositories"""
    from commitwatch.backend.repository_store import RepositoryStore

    repositories, total = await RepositoryStore().list_all(search=search, page=page, limit=limit)
    if not repositories:
        click.echo("No repositories tracked")
        return

    for repository in repositories:
        last = f"{repository.last_check_time:%Y-%m-%d %H:%M}" if repository.last_check_time else "never"
        click.echo(
            f"{repository.id:>4}  {repository.repo_string:<50} every {repository.notification_interval:>2}h  "
            f"last {last}  next {repository.next_check_time:%Y-%m-%d %H:%M}"
        )
    click.echo(f"{len(repositories)} of {total} repositories")


@repo.command(name="remove")
@click.argument("repository_id", type=int)
@async_command
async def repo_remove(repository_id):
    """Stop tracking a repository"""
    from commitwatch.backend.repository_store import RepositoryStore

    if not await RepositoryStore().delete(repository_id):
        raise click.ClickException(f"Repository {repository_id} not found")
    click.echo(f"Removed repository {repository_id}")


@repo.command(name="set-interval")
@click.argument("repository_id", type=int)
@click.argument("hours", type=int)
@async_command
async def repo_set_interval(repository_id, hours):
    """Change how often a repository is checked"""
    from commitwatch.backend.repository_store import RepositoryStore

    repository = await RepositoryStore().update(repository_id, notification_interval=hours)
    if repository is None:
        raise click.ClickException(f"Repository {repository_id} not found")
    click.echo(
        f"{repository.repo_string} now checked every {hours}h, next check at "
        f"{repository.next_check_time:%Y-%m-%d %H:%M} UTC"
    )


@cli.group()
def notify():
    """Manual notification commands"""


@notify.command(name="test")
@async_command
async def notify_test():
    """Send the latest commits of every tracked repository now"""
    from commitwatch.jobs.notifier import NotificationTester

    tester = NotificationTester.from_config()
    try:
        report = await tester.test_notifications()
    finally:
        await tester.close()

    click.echo(f"Processed {report.repos_processed} repositories, sent {report.messages_sent} messages")
    for error in report.errors:
        click.echo(f"  {error['repo']}: {error['error']}", err=True)


@notify.command(name="send")
@click.argument("repo_string")
@click.option("--limit", type=int, default=5, show_default=True, help="Number of latest commits to send")
@async_command
async def notify_send(repo_string, limit):
    """Send the latest commits of one repository now"""
    from commitwatch.jobs.notifier import NotificationTester

    tester = NotificationTester.from_config()
    try:
        sent = await tester.send_commits_for_repo(repo_string, limit)
    finally:
        await tester.close()
    click.echo(f"Sent {sent} message(s) for {repo_string}")


@cli.group()
def scheduler():
    """Scheduler commands"""


@scheduler.command(name="run-once")
@async_command
async def scheduler_run_once():
    """Run a single notification cycle, ignoring the enabled flag"""
    from commitwatch.jobs.scheduler import NotificationScheduler

    job = NotificationScheduler.from_config()
    missing = job.missing_credentials()
    if missing:
        raise click.ClickException(f"Missing {', '.join(missing)}")
    try:
        ran = await job.run_cycle()
    finally:
        await job.close()

    if not ran:
        click.echo(
            "Cycle did not run: the scheduler lock is held by another instance or could not be acquired (see log)"
        )
        return
    stats = job.get_stats()
    click.echo(
        f"Processed {stats.total_repos_processed} repositories, sent {stats.total_notifications_sent} "
        f"notifications, {stats.total_errors} errors"
    )


@cli.group()
def github():
    """GitHub commands"""


@github.command(name="ratelimit")
@async_command
async def github_ratelimit():
    """Show the remaining GitHub API quota"""
    from commitwatch.services.github import GitHubService

    service = GitHubService(Config().github_token)
    try:
        rate = await service.check_rate_limit()
    finally:
        await service.close()
    click.echo(f"{rate.remaining}/{rate.limit} requests left, resets at {rate.reset:%Y-%m-%d %H:%M:%S} UTC")


@cli.group()
def ledger():
    """Commit ledger commands"""


@ledger.command(name="cleanup")
@click.option("--days", type=int, default=None, help="Retention window in days (default from config)")
@async_command
async def ledger_cleanup(days):
    """Delete ledger entries older than the retention window"""
    from commitwatch.backend.commit_ledger import CommitLedger

    days = days if days is not None else int(Config().get("ledger.retention_days", 30))
    removed = await CommitLedger().cleanup(days)
    click.echo(f"Removed {removed} ledger entries older than {days} days")


if __name__ == "__main__":
    cli(obj={})
