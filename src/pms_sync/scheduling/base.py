"""
Shared run/schedule/status machinery for the three sync services.

Each service is Idle or Running. A trigger that arrives while Running is
rejected with an "already running" result instead of queueing; manual and
cron triggers go through the same ``sync()``.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Optional

from ..config import SyncJobSettings
from ..logging_config import bind_sync_context, clear_context
from ..utils import utc_now
from .results import JobStatus, LastRunResult, RunSummary, ScheduleInfo, SyncResult
from .scheduler import SyncScheduler
from .single_flight import SingleFlight

logger = logging.getLogger("pms.scheduling")


class BaseSyncService:
    """Subclasses set ``job_id`` and ``display_name`` and implement ``_run()``."""

    job_id: str = ""
    display_name: str = ""

    def __init__(
        self,
        scheduler: SyncScheduler,
        job_settings: SyncJobSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._scheduler = scheduler
        self._enabled = job_settings.enabled
        self._cron = job_settings.cron
        self._clock = clock
        self._guard = SingleFlight(self.display_name)
        self._last_run_time: Optional[datetime] = None
        self._last_result: Optional[SyncResult] = None

    async def _run(self) -> RunSummary:
        raise NotImplementedError

    def _failure_summary(self, error: Exception) -> Optional[RunSummary]:
        return None

    @property
    def is_running(self) -> bool:
        return self._guard.is_running

    @property
    def last_result(self) -> Optional[SyncResult]:
        return self._last_result

    async def sync(self) -> SyncResult:
        """Run once. Never raises; failures come back as an unsuccessful result."""
        async with self._guard.acquire() as acquired:
            if not acquired:
                return SyncResult.already_running(
                    self.job_id, f"{self.display_name} is already running"
                )

            run_id = bind_sync_context(self.job_id)
            self._last_run_time = self._clock()
            started = time.perf_counter()
            logger.info(f"Starting {self.display_name.lower()}")
            try:
                summary = await self._run()
                errors = summary.errors
                message = f"{self.display_name} completed: {summary.processed} processed"
                if errors:
                    message += f", {len(errors)} errors"
                result = SyncResult(
                    success=True, message=message, job=self.job_id, run_id=run_id, summary=summary
                )
            except Exception as e:
                logger.error(f"{self.display_name} failed", extra={"error": str(e)}, exc_info=True)
                result = SyncResult(
                    success=False,
                    message=f"{self.display_name} failed: {e}",
                    job=self.job_id,
                    run_id=run_id,
                    summary=self._failure_summary(e),
                    error=str(e),
                )

            result.duration_ms = int((time.perf_counter() - started) * 1000)
            self._last_result = result
            logger.info(result.message, extra={"duration_ms": result.duration_ms})
            clear_context()
            return result

    async def trigger_manual_sync(self) -> SyncResult:
        logger.info(f"Manual {self.display_name.lower()} triggered")
        return await self.sync()

    async def _scheduled_run(self) -> None:
        logger.info(f"Scheduled {self.display_name.lower()} triggered")
        result = await self.sync()
        if result.skipped:
            logger.warning(f"Scheduled {self.display_name.lower()} skipped: {result.message}")

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------

    def setup_schedule(self) -> None:
        if not self._enabled:
            logger.info(f"{self.display_name} schedule disabled")
            self._scheduler.remove(self.job_id)
            return
        self._scheduler.register(self.job_id, self._scheduled_run, self._cron)

    def update_schedule(self, cron: str, enabled: Optional[bool] = None) -> ScheduleInfo:
        """Replace the cron registration.

        Raises:
            ScheduleError: If ``cron`` is invalid; the current schedule is kept
        """
        enabled = self._enabled if enabled is None else enabled
        if enabled:
            self._scheduler.register(self.job_id, self._scheduled_run, cron)
        else:
            self._scheduler.build_trigger(cron)
            self._scheduler.remove(self.job_id)
        self._cron = cron
        self._enabled = enabled
        logger.info(f"{self.display_name} schedule updated", extra={"cron": cron, "enabled": enabled})
        return self.get_schedule_info()

    def _next_run_time(self) -> Optional[datetime]:
        if not self._enabled:
            return None
        return self._scheduler.next_run_time(self.job_id, self._clock())

    def get_schedule_info(self) -> ScheduleInfo:
        return ScheduleInfo(
            job_id=self.job_id,
            enabled=self._enabled,
            cron=self._cron,
            timezone=self._scheduler.timezone,
            next_run=self._next_run_time(),
            last_run=self._last_run_time,
        )

    def get_status(self) -> JobStatus:
        last_run_result = None
        last = self._last_result
        if last is not None and not last.skipped:
            last_run_result = LastRunResult(
                success=last.success,
                processed=last.summary.processed if last.summary is not None else 0,
                errors=last.summary.errors if last.summary is not None else [],
                duration_ms=last.duration_ms,
                error=last.error,
            )
        return JobStatus(
            is_running=self.is_running,
            enabled=self._enabled,
            cron=self._cron,
            last_run_time=self._last_run_time,
            next_run_time=self._next_run_time(),
            last_run_result=last_run_result,
        )
