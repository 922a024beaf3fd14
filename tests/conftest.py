# isort: skip_file
# flake8: noqa: E402
import os
import tempfile
from datetime import datetime

import pytest
import pytest_asyncio

# Point config at an empty data dir before any commitwatch import builds the database singleton
TEST_DATA_DIR = tempfile.mkdtemp(prefix="commitwatch-test-")
os.environ["COMMITWATCH_CONFIG"] = os.path.join(TEST_DATA_DIR, "nonexistent_config.yml")
os.environ["COMMITWATCH_DATA_DIR"] = TEST_DATA_DIR
for key in (
    "DATABASE_URL",
    "COMMITWATCH_ENV",
    "GITHUB_TOKEN",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_CHAT_ID",
    "SCHEDULER_ENABLED",
):
    os.environ.pop(key, None)

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from commitwatch.backend.database import Base
from commitwatch.config.config import Config
from commitwatch.models.github import GitHubCommit
import commitwatch.models


@pytest.fixture(autouse=True)
def reset_config():
    """Reset the Config singleton between tests"""
    Config._instance = None
    Config._config = None
    yield
    Config._instance = None
    Config._config = None


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh SQLite database with the full schema"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'commitwatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


def make_commit(sha: str, message: str = "Fix bug", author: str = "Alice", when: datetime = None) -> GitHubCommit:
    return GitHubCommit(
        sha=sha,
        message=message,
        author_name=author,
        author_email=f"{author.lower()}@example.com",
        authored_at=when or datetime(2024, 1, 1, 10, 0),
        html_url=f"https://github.com/octo/repo/commit/{sha}",
    )


@pytest.fixture
def commit_factory():
    return make_commit
