"""
Monthly boundary update scheduler
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from boundaries.runner import run_update
from core.config import settings
from core.exceptions import ETLException
import logging

logger = logging.getLogger(__name__)


class BoundaryScheduler:
    """Schedules the full countries + maritimes update"""

    def __init__(self):
        self.scheduler = AsyncIOScheduler()

    async def run_boundary_update(self):
        """Scheduled job: update countries then maritimes"""
        logger.info("Starting scheduled boundary update")
        try:
            results = await run_update()
            for result in results:
                logger.info(f"Scheduled {result['kind']} update finished: {result['status']}")
        except ETLException as e:
            logger.error(f"Scheduled boundary update failed: {e}", extra={"error_context": e.to_dict()})

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_boundary_update,
            trigger=CronTrigger(day=settings.UPDATE_CRON_DAY, hour=settings.UPDATE_CRON_HOUR),
            id="boundary_update",
            name="Monthly boundary update",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        self.scheduler.start()
        logger.info(
            f"Boundary scheduler started (day {settings.UPDATE_CRON_DAY}, {settings.UPDATE_CRON_HOUR}:00)"
        )

    def stop(self):
        """Stop the scheduler"""
        self.scheduler.shutdown()
        logger.info("Boundary scheduler stopped")
