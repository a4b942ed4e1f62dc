"""Main entry point - periodic campaign scheduler worker."""
import asyncio
import logging
import sys

from database.db import Database, db
from outreach.config import Config
from outreach.container import ServiceContainer
from outreach.exceptions import SchedulerRunError
from outreach.services.scheduler import SchedulerRunResult

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("outreach.log")
    ]
)
logger = logging.getLogger(__name__)


class OutreachRunner:
    """
    Owns the process lifecycle: database, service container, and the
    background worker that triggers a scheduler cycle every interval.
    """

    def __init__(self, config: Config, *, database: Database | None = None):
        """Initialize the runner."""
        self.config = config
        self.database = database or (Database(config.database_url) if config.database_url else db)
        self.container: ServiceContainer = None
        self._running = False
        self._scheduler_task: asyncio.Task | None = None
        self.last_result: SchedulerRunResult | None = None

    async def initialize(self):
        """Initialize all runner components."""
        logger.info("=" * 70)
        logger.info("OUTREACH SCHEDULER - INITIALIZING")
        logger.info("=" * 70)

        try:
            logger.info("Initializing database...")
            await self.database.connect()
            await self.database.require_schema()
            logger.info("Database initialized")

            logger.info("Initializing services...")
            self.container = await ServiceContainer.create(self.config, database=self.database)
            logger.info("Services initialized")

        except Exception as e:
            logger.error(f"Failed to initialize scheduler: {e}", exc_info=True)
            raise

    async def run_once(self) -> SchedulerRunResult | None:
        """Run a single scheduler cycle; failures are logged, not raised."""
        try:
            self.last_result = await self.container.scheduler.run()
            return self.last_result
        except SchedulerRunError as e:
            logger.error(f"Scheduler cycle finished with failures: {e}")
        except Exception as e:
            logger.error(f"Scheduler cycle error: {e}", exc_info=True)
        return None

    async def start(self):
        """Start the background scheduler worker."""
        if self._running:
            logger.warning("Scheduler is already running")
            return

        self._running = True
        self._scheduler_task = asyncio.create_task(self._scheduler_worker())
        logger.info(f"Scheduler running every {self.config.scheduler_interval_seconds}s")
        logger.info(f"Campaigns: {', '.join(c.name for c in self.container.catalog) or '(none)'}")

    async def _scheduler_worker(self):
        """
        Background worker that triggers scheduler cycles.
        """
        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self.config.scheduler_interval_seconds)
            except asyncio.CancelledError:
                break

    async def run_forever(self):
        await self.start()
        try:
            while self._running:
                await asyncio.sleep(1)
        finally:
            await self.stop()

    async def stop(self):
        """Stop the worker and cleanup."""
        if not self._running and self.container is None:
            logger.warning("Scheduler is not running")
            return

        logger.info("Stopping scheduler...")
        try:
            self._running = False

            if self._scheduler_task:
                self._scheduler_task.cancel()
                try:
                    await self._scheduler_task
                except asyncio.CancelledError:
                    pass
                self._scheduler_task = None

            if self.container:
                logger.info("Draining deliveries...")
                await self.container.cleanup()
                self.container = None

            logger.info("Closing database...")
            await self.database.close()
            logger.info("Scheduler stopped")

        except Exception as e:
            logger.error(f"Error stopping scheduler: {e}", exc_info=True)
            raise

    def is_running(self) -> bool:
        """Check if the worker is running."""
        return self._running


async def main():
    """Main entry point."""
    try:
        config = Config.from_env()
        logger.info("Configuration loaded")

        runner = OutreachRunner(config)
        await runner.initialize()

        if config.run_once:
            await runner.run_once()
            await runner.stop()
            return

        await runner.run_forever()

    except KeyboardInterrupt:
        logger.info("Scheduler stopped by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


def run():
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Scheduler stopped by user")


if __name__ == "__main__":
    run()
