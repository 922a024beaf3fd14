import asyncio
import signal

from commitwatch.backend.database import db
from commitwatch.config.config import Config
from commitwatch.jobs.scheduler import NotificationScheduler
from commitwatch.server.initialization import Initializer
from commitwatch.util.logging import Logger


class Server:
    """Runs the notification scheduler until the process is told to stop"""

    @classmethod
    async def run(cls, config: Config = None, stop_event: asyncio.Event = None) -> None:
        """Run the server"""
        logger = Logger("Server")
        config = config or Config()
        stop_event = stop_event or asyncio.Event()
        scheduler = None

        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread
                logger.debug(f"Could not install handler for {sig.name}")

        try:
            print("Starting server...")  # Direct console output
            logger.info("Starting server initialization...")

            logger.info(await Initializer().init_db())

            scheduler = NotificationScheduler.from_config(config)
            if not await scheduler.start():
                logger.info("Scheduler is not active, nothing to run")
                return

            logger.info("Server started successfully")
            print("Server is running...")  # Direct console output

            await stop_event.wait()
            logger.info("Server shutdown initiated")

        except Exception as e:
            logger.error(f"Server error: {str(e)}")
            print(f"Server error: {str(e)}")  # Direct console output
            raise

        finally:
            logger.info("Cleaning up server resources...")

            for sig in installed:
                loop.remove_signal_handler(sig)

            if scheduler is not None:
                try:
                    await scheduler.stop()
                    logger.info("Final scheduler stats", extra_data=scheduler.get_stats().to_dict())
                except Exception as e:
                    logger.error(f"Error stopping scheduler: {e}")

            await db.close()
            logger.info("Server shutdown complete")
            print("Server shutdown complete")  # Direct console output
