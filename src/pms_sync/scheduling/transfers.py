"""Transfer sync: a deposits pass and a withdrawals pass over every share class."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..config import SyncJobSettings
from ..constants import Defaults, JobIds
from ..models import TenantResult, TransferDirection, TransferIngestionParams
from ..repositories import ShareClassRepository
from ..transfers.processor import TransferProcessor
from ..utils import utc_now
from .base import BaseSyncService
from .results import ShareClassResult, TransferSyncSummary
from .scheduler import SyncScheduler

logger = logging.getLogger("pms.scheduling.transfers")


def merge_direction_results(
    deposits: dict[str, TenantResult[int]],
    withdrawals: dict[str, TenantResult[int]],
) -> list[ShareClassResult]:
    """Combine both passes into one line per share class, in first-seen order."""
    names = list(dict.fromkeys([*deposits, *withdrawals]))
    merged = []
    for name in names:
        dep = deposits.get(name)
        wd = withdrawals.get(name)
        dep_count = dep.value if dep else 0
        wd_count = wd.value if wd else 0
        errors = [r.error for r in (dep, wd) if r is not None and r.error]
        merged.append(
            ShareClassResult(
                share_class_name=name,
                success=not errors,
                count=dep_count + wd_count,
                error="; ".join(errors) if errors else None,
                details={"deposits": dep_count, "withdrawals": wd_count},
            )
        )
    return merged


class TransfersSyncService(BaseSyncService):
    job_id = JobIds.TRANSFERS_SYNC
    display_name = "Transfer sync"

    def __init__(
        self,
        processor: TransferProcessor,
        share_classes: ShareClassRepository,
        scheduler: SyncScheduler,
        job_settings: SyncJobSettings,
        *,
        deposit_lookback_days: int = Defaults.LOOKBACK_DAYS_DEPOSITS,
        withdrawal_lookback_days: int = Defaults.LOOKBACK_DAYS_WITHDRAWALS,
        batch_size: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(scheduler, job_settings, clock)
        self._processor = processor
        self._share_classes = share_classes
        self.deposit_lookback_days = deposit_lookback_days
        self.withdrawal_lookback_days = withdrawal_lookback_days
        self._batch_size = batch_size

    def _params(self, direction: TransferDirection, lookback_days: int, now: datetime) -> TransferIngestionParams:
        return TransferIngestionParams(
            start_date=now - timedelta(days=lookback_days),
            end_date=now,
            transfer_type=direction,
            batch_size=self._batch_size,
        )

    async def _run(self) -> TransferSyncSummary:
        share_classes = await self._share_classes.find_with_credentials()
        if not share_classes:
            logger.warning("No share classes with API credentials found")
            return TransferSyncSummary()

        logger.info(f"Found {len(share_classes)} share classes with credentials")
        now = self._clock()
        deposit_params = self._params(TransferDirection.DEPOSIT, self.deposit_lookback_days, now)
        withdrawal_params = self._params(TransferDirection.WITHDRAWAL, self.withdrawal_lookback_days, now)

        deposits = await self._processor.process_multiple_share_classes(share_classes, deposit_params)
        withdrawals = await self._processor.process_multiple_share_classes(share_classes, withdrawal_params)

        summary = TransferSyncSummary(
            share_classes_processed=len(share_classes),
            deposits=sum(r.value for r in deposits.values()),
            withdrawals=sum(r.value for r in withdrawals.values()),
            deposit_date_range=(deposit_params.start_date, deposit_params.end_date),
            withdrawal_date_range=(withdrawal_params.start_date, withdrawal_params.end_date),
            results=merge_direction_results(deposits, withdrawals),
        )
        summary.total_transfers = summary.deposits + summary.withdrawals
        return summary

    def _failure_summary(self, error: Exception) -> TransferSyncSummary:
        return TransferSyncSummary(
            results=[ShareClassResult(share_class_name="ALL", success=False, error=str(error))]
        )
