from commitwatch.backend.database import Base, db
from commitwatch.util.logging import Logger

# Registers the tables on Base.metadata
import commitwatch.models  # noqa: F401


class Initializer:
    """Handles server initialization tasks"""

    def __init__(self):
        self.logger = Logger("Initializer")

    async def init_db(self) -> str:
        """Create the schema unless it already exists"""
        try:
            if await db.is_initialized():
                return "Database already initialized"

            async with db.get_async_engine().begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            self.logger.info(f"Created tables on {db.dialect_name}")
            return "Database initialized successfully"

        except Exception as e:
            self.logger.error(f"Failed to initialize database: {str(e)}")
            raise
