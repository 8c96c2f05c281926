"""Cron scheduling for the periodic sync jobs (APScheduler)."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..constants import Schedules
from ..exceptions import ScheduleError
from ..utils import utc_now

logger = logging.getLogger("pms.scheduler")

JobCallable = Callable[[], Awaitable[Any]]


class SyncScheduler:
    """Registers one cron job per sync type and answers next-run queries."""

    def __init__(self, timezone: str = Schedules.TIMEZONE):
        self._timezone = timezone
        self._started = False
        self._triggers: dict[str, CronTrigger] = {}
        self._expressions: dict[str, str] = {}
        self._scheduler = AsyncIOScheduler(
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60 * 5,
            },
            timezone=timezone,
        )

    def build_trigger(self, cron: str) -> CronTrigger:
        """Parse a five-field crontab expression.

        Raises:
            ScheduleError: If the expression is invalid
        """
        try:
            return CronTrigger.from_crontab(cron, timezone=self._timezone)
        except ValueError as e:
            raise ScheduleError(
                f"Invalid cron expression '{cron}': {e}", details={"cron": cron}
            ) from e

    def register(self, job_id: str, func: JobCallable, cron: str) -> None:
        """Add or replace a cron job. An invalid expression leaves the old job in place."""
        trigger = self.build_trigger(cron)
        if not self._scheduler.running and self._scheduler.get_job(job_id) is not None:
            # Pending jobs are not deduplicated until the scheduler starts
            self._scheduler.remove_job(job_id)
        self._scheduler.add_job(func, trigger, id=job_id, name=job_id, replace_existing=True)
        self._triggers[job_id] = trigger
        self._expressions[job_id] = cron
        logger.info("Registered cron job: %s (%s)", job_id, cron)

    def remove(self, job_id: str) -> None:
        if job_id not in self._triggers:
            return
        if self._scheduler.get_job(job_id) is not None:
            self._scheduler.remove_job(job_id)
        del self._triggers[job_id]
        del self._expressions[job_id]
        logger.info("Removed cron job: %s", job_id)

    def has_job(self, job_id: str) -> bool:
        return job_id in self._triggers

    def get_cron(self, job_id: str) -> Optional[str]:
        return self._expressions.get(job_id)

    def next_run_time(self, job_id: str, now: Optional[datetime] = None) -> Optional[datetime]:
        trigger = self._triggers.get(job_id)
        if trigger is None:
            return None
        return trigger.get_next_fire_time(None, now or utc_now())

    @property
    def timezone(self) -> str:
        return self._timezone

    async def start(self) -> None:
        """Start the scheduler on the running event loop."""
        if self._started:
            return
        self._scheduler.start()
        self._started = True
        logger.info("Scheduler started")

    async def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler. Calling it again is a no-op."""
        if not self._started:
            return
        self._started = False
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
        # The asyncio scheduler may defer its stop to the next loop iteration
        await asyncio.sleep(0)
        logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started and bool(self._scheduler.running)
