from contextlib import asynccontextmanager
from urllib.parse import parse_qs, urlparse

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from commitwatch.config.config import Config

# Create base class for models
Base = declarative_base()


def to_async_url(database_url: str):
    """Map a configured database URL to its async driver URL and connect args"""
    parsed = urlparse(database_url)

    if parsed.scheme.startswith("sqlite"):
        return database_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1), {}

    if parsed.scheme.startswith("postgres"):
        scheme = parsed.scheme.split("+")[0]
        params = parse_qs(parsed.query)
        if "sslmode" in params:
            # asyncpg does not understand sslmode, hosted Postgres URLs carry it
            base_url = f"{scheme}://{parsed.netloc}{parsed.path}"
            async_url = base_url.replace(f"{scheme}://", "postgresql+asyncpg://", 1)
            return async_url, {"ssl": params["sslmode"][0] != "disable"}
        async_url = database_url.replace(f"{parsed.scheme}://", "postgresql+asyncpg://", 1)
        return async_url, {}

    raise ValueError(f"Unsupported database scheme: {parsed.scheme}")


class Database:
    _instance = None
    _async_engine = None
    _AsyncSessionLocal = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(Database, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        if self._async_engine is None:
            config = Config()
            database_url = config.database_url

            if not database_url:
                if config._test_mode:
                    database_url = "sqlite:///./test.db"
                else:
                    raise ValueError("Database configuration is incomplete and not in test mode.")

            async_url, connect_args = to_async_url(database_url)
            self._async_engine = create_async_engine(async_url, connect_args=connect_args, pool_pre_ping=True)
            self._AsyncSessionLocal = async_sessionmaker(bind=self._async_engine, expire_on_commit=False)

    @asynccontextmanager
    async def async_session(self):
        """Provide an async transactional scope around a series of operations."""
        session = self._AsyncSessionLocal()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    def get_async_engine(self):
        """Get the async SQLAlchemy engine instance."""
        return self._async_engine

    @property
    def dialect_name(self) -> str:
        return self._async_engine.dialect.name

    async def is_initialized(self) -> bool:
        """Check if database is initialized by checking if the repositories table exists"""
        async with self._async_engine.connect() as conn:
            return await conn.run_sync(lambda sync_conn: inspect(sync_conn).has_table("repositories"))

    async def close(self) -> None:
        await self._async_engine.dispose()


# Global instance
db = Database()


class DBSessionMixin:
    """Mixin to provide database session handling."""

    def __init__(self, session=None):
        self._session = session

    @asynccontextmanager
    async def get_async_session(self):
        """Get an async database session - either the injected one or a new one."""
        if self._session is not None:
            yield self._session
        else:
            async with db.async_session() as session:
                yield session
