import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from core.exceptions import InvalidTransitionError, MigrationException
from ingestion.controller import MigrationController
from models.base import MigrationStatus

logger = logging.getLogger(__name__)


class MigrationScheduler:
    """Periodic full re-sync of the sheet into the store."""

    def __init__(self, controller: MigrationController, interval_minutes: int):
        self.scheduler = AsyncIOScheduler()
        self.controller = controller
        self.interval_minutes = interval_minutes

    @property
    def enabled(self) -> bool:
        return self.interval_minutes > 0

    async def run_sync_job(self):
        """Job to start a migration run unless one is already active"""
        status = self.controller.status
        if status in (MigrationStatus.RUNNING, MigrationStatus.PAUSED):
            logger.info(f"Scheduler: migration is {status.value}, skipping sync")
            return
        if status == MigrationStatus.FAILED:
            logger.warning("Scheduler: last migration failed, waiting for an operator reset")
            return

        logger.info("Scheduler: Starting sync migration")
        try:
            total = await self.controller.start()
            logger.info(f"Scheduler: sync started with {total} records")
        except InvalidTransitionError as e:
            logger.info(f"Scheduler: sync skipped - {e.message}")
        except MigrationException as e:
            logger.error(f"Scheduler: sync failed to start - {e.message}", extra={"error_context": e.to_dict()})

    def start(self):
        """Start the scheduler"""
        if not self.enabled:
            logger.info("Migration scheduler disabled (SYNC_INTERVAL_MINUTES=0)")
            return
        self.scheduler.add_job(
            self.run_sync_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="migration_sync_job",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info(f"Migration scheduler started (every {self.interval_minutes} minutes)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Migration scheduler stopped")
