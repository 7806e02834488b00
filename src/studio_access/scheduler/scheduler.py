"""Timer-driven reconciliation jobs."""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    """Type of scheduled job."""

    EXPIRE_CREDENTIALS = "expire_credentials"
    PURGE_OLD_RECORDS = "purge_old_records"
    DAILY_RESYNC = "daily_resync"


@dataclass
class ScheduledJob:
    """Information about a scheduled job."""

    job_id: str
    job_type: JobType
    next_run_at: Optional[datetime]


class ReconciliationScheduler:
    """Runs the reconciliation tasks on their timers."""

    def __init__(
        self,
        on_expire_credentials: Callable[[], Awaitable[dict]],
        on_purge_old_records: Callable[[], Awaitable[dict]],
        on_daily_resync: Callable[[], Awaitable[dict]],
        expire_interval_minutes: int = 60,
        purge_hour: int = 3,
        resync_hour: int = 4,
        timezone: str = "Europe/London",
    ):
        """Initialize the scheduler.

        Args:
            on_expire_credentials: Revokes passcodes of finished bookings.
            on_purge_old_records: Deletes records past the retention window.
            on_daily_resync: Re-pushes passcodes for upcoming bookings.
            expire_interval_minutes: How often to run expiry.
            purge_hour: Local hour of the daily purge.
            resync_hour: Local hour of the daily resync.
            timezone: Timezone for the daily cron triggers.
        """
        self._on_expire_credentials = on_expire_credentials
        self._on_purge_old_records = on_purge_old_records
        self._on_daily_resync = on_daily_resync
        self._expire_interval = expire_interval_minutes
        self._purge_hour = purge_hour
        self._resync_hour = resync_hour
        self._timezone = timezone

        self._scheduler = AsyncIOScheduler(timezone=timezone)

    def start(self) -> None:
        """Start the scheduler."""
        self._scheduler.add_job(
            self._handle_expire_credentials,
            IntervalTrigger(minutes=self._expire_interval),
            id=JobType.EXPIRE_CREDENTIALS.value,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._handle_purge_old_records,
            CronTrigger(hour=self._purge_hour, minute=0, timezone=self._timezone),
            id=JobType.PURGE_OLD_RECORDS.value,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_job(
            self._handle_daily_resync,
            CronTrigger(hour=self._resync_hour, minute=0, timezone=self._timezone),
            id=JobType.DAILY_RESYNC.value,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self._scheduler.start()
        logger.info("Scheduler started")

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    async def _handle_expire_credentials(self) -> None:
        try:
            await self._on_expire_credentials()
        except Exception as e:
            logger.error(f"Error expiring credentials: {e}")

    async def _handle_purge_old_records(self) -> None:
        try:
            await self._on_purge_old_records()
        except Exception as e:
            logger.error(f"Error purging old records: {e}")

    async def _handle_daily_resync(self) -> None:
        try:
            await self._on_daily_resync()
        except Exception as e:
            logger.error(f"Error during daily resync: {e}")

    async def run_startup_tasks(self) -> None:
        """Run expiry and purge once, catching up on anything missed while down."""
        await self._handle_purge_old_records()
        await self._handle_expire_credentials()

    def get_scheduled_jobs(self) -> list[ScheduledJob]:
        """Get all scheduled jobs.

        Returns:
            List of ScheduledJob objects
        """
        jobs = []
        for job in self._scheduler.get_jobs():
            jobs.append(ScheduledJob(
                job_id=job.id,
                job_type=JobType(job.id),
                next_run_at=getattr(job, "next_run_time", None),
            ))
        return jobs
