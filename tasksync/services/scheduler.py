"""APScheduler setup for the periodic sync tick."""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

JOB_ID = "sync_tick"


class SyncScheduler:
    """Runs ``job`` every ``interval_seconds``; overlapping runs are coalesced."""

    def __init__(
        self,
        job: Callable[[], Awaitable[Any]],
        interval_seconds: int = 300,
        run_immediately: bool = True,
    ):
        self.job = job
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self.scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def start(self) -> None:
        if self.scheduler is not None:
            logger.warning("Scheduler already started")
            return

        options = {}
        if self.run_immediately:
            options["next_run_time"] = datetime.now()

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.job,
            IntervalTrigger(seconds=self.interval_seconds),
            id=JOB_ID,
            name="Push, import and pull",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            **options,
        )
        self.scheduler.start()
        logger.info(f"Scheduler started - sync every {self.interval_seconds}s")

    def shutdown(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            logger.info("Scheduler stopped")
