"""Accounts sync: classify and persist every share class's remote accounts."""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Callable

from ..accounts.processor import AccountProcessor
from ..config import SyncJobSettings
from ..constants import JobIds
from ..models import AccountInfo, TradingAccountType
from ..repositories import ShareClassRepository
from ..utils import utc_now
from .base import BaseSyncService
from .results import AccountSyncSummary, ShareClassResult
from .scheduler import SyncScheduler

logger = logging.getLogger("pms.scheduling.accounts")


def count_accounts(accounts: list[AccountInfo]) -> dict[str, int]:
    kinds = Counter(a.kind.value for a in accounts)
    return {
        "trading": kinds.get("TRADING", 0),
        "basic": kinds.get("BASIC", 0),
        "triparty": kinds.get("TRIPARTY", 0),
        "funding": sum(1 for a in accounts if a.account_type is TradingAccountType.FUNDING),
    }


class AccountsSyncService(BaseSyncService):
    job_id = JobIds.ACCOUNTS_SYNC
    display_name = "Accounts sync"

    def __init__(
        self,
        processor: AccountProcessor,
        share_classes: ShareClassRepository,
        scheduler: SyncScheduler,
        job_settings: SyncJobSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(scheduler, job_settings, clock)
        self._processor = processor
        self._share_classes = share_classes

    async def _run(self) -> AccountSyncSummary:
        share_classes = await self._share_classes.find_with_credentials()
        if not share_classes:
            logger.warning("No share classes with API credentials found")
            return AccountSyncSummary()

        results = await self._processor.process_multiple_share_classes(share_classes)
        summary = AccountSyncSummary(share_classes_processed=len(share_classes))
        for name, result in results.items():
            summary.results.append(
                ShareClassResult(
                    share_class_name=name,
                    success=result.success,
                    count=len(result.value),
                    error=result.error,
                    details=count_accounts(result.value),
                )
            )
            summary.total_accounts += len(result.value)
        return summary
