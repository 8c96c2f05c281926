"""Currency sync: backfill when history has holes, then fetch yesterday's rates."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from ..config import SyncJobSettings
from ..constants import JobIds
from ..currency.ingestion import DailyRatesSummary, SpotQuoteIngestionService
from ..utils import utc_now
from .base import BaseSyncService
from .results import CurrencySyncSummary
from .scheduler import SyncScheduler

logger = logging.getLogger("pms.scheduling.currency")


class CurrencySyncService(BaseSyncService):
    job_id = JobIds.CURRENCY_SYNC
    display_name = "Currency rate sync"

    def __init__(
        self,
        ingestion: SpotQuoteIngestionService,
        scheduler: SyncScheduler,
        job_settings: SyncJobSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(scheduler, job_settings, clock)
        self._ingestion = ingestion

    async def _run(self) -> CurrencySyncSummary:
        ingestion = self._ingestion
        summary = CurrencySyncSummary(currencies=list(ingestion.symbols), exchange=ingestion.exchange)

        summary.backfill_needed = await ingestion.check_backfill_required()
        if summary.backfill_needed:
            logger.info("Backfill required, fetching missing historical data")
            backfill = await ingestion.backfill_missing_dates()
            summary.backfill = backfill.to_dict()
            if backfill.skipped_days:
                summary.errors.append(f"backfill skipped {backfill.skipped_days} days")

        yesterday = ingestion.today() - timedelta(days=1)
        try:
            quotes = await ingestion.fetch_and_store_daily_rates(yesterday)
        except Exception as e:
            logger.error(f"Failed to fetch daily rates for {yesterday.isoformat()}: {e}")
            summary.errors.append(f"{yesterday.isoformat()}: {e}")
            quotes = []
        summary.daily_rates = DailyRatesSummary.from_quotes(yesterday, quotes).to_dict()
        return summary
