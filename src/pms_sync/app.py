"""Service wiring: settings -> database -> API clients -> sync services -> scheduler."""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Optional

from .accounts.processor import AccountProcessor
from .clients.factory import HrpClientFactory
from .clients.onetoken import OneTokenClient
from .config import PmsSettings, load_settings
from .currency.conversion import CurrencyConversionService
from .currency.ingestion import SpotQuoteIngestionService
from .logging_config import setup_logging
from .repository_postgres import (
    Database,
    PostgresLedgerStore,
    PostgresShareClassRepository,
    PostgresSpotQuoteRepository,
    init_schema,
)
from .scheduling.accounts import AccountsSyncService
from .scheduling.base import BaseSyncService
from .scheduling.currency import CurrencySyncService
from .scheduling.scheduler import SyncScheduler
from .scheduling.transfers import TransfersSyncService
from .transfers.processor import TransferProcessor

logger = logging.getLogger("pms.app")


@dataclass
class SyncApplication:
    settings: PmsSettings
    database: Optional[Database]
    clients: HrpClientFactory
    quote_client: OneTokenClient
    conversion: CurrencyConversionService
    scheduler: SyncScheduler
    accounts: AccountsSyncService
    transfers: TransfersSyncService
    currency: CurrencySyncService

    @classmethod
    def from_settings(cls, settings: PmsSettings) -> "SyncApplication":
        database = Database(settings.database_url)
        share_classes = PostgresShareClassRepository(database)
        quotes = PostgresSpotQuoteRepository(database)
        ledger = PostgresLedgerStore(database)

        clients = HrpClientFactory(settings)
        quote_client = OneTokenClient(
            settings.onetoken_api_key,
            settings.onetoken_api_secret,
            base_url=settings.onetoken_base_url,
            proxy_url=settings.proxy_url,
            timeout=settings.http_timeout_seconds,
        )
        conversion = CurrencyConversionService(quotes, exchange=settings.currency_exchange)
        ingestion = SpotQuoteIngestionService(
            quotes,
            quote_client,
            symbols=settings.currency_symbols,
            exchange=settings.currency_exchange,
            backfill_days=settings.currency_backfill_days,
            request_delay=settings.backfill_request_delay_seconds,
        )
        account_processor = AccountProcessor(
            clients,
            ledger,
            timeout=settings.account_transaction_timeout_seconds,
        )
        transfer_processor = TransferProcessor(
            clients,
            ledger,
            conversion,
            batch_size=settings.transfer_batch_size,
            max_wait=settings.transaction_max_wait_seconds,
            timeout=settings.transaction_timeout_seconds,
        )

        scheduler = SyncScheduler()
        return cls(
            settings=settings,
            database=database,
            clients=clients,
            quote_client=quote_client,
            conversion=conversion,
            scheduler=scheduler,
            accounts=AccountsSyncService(account_processor, share_classes, scheduler, settings.accounts),
            transfers=TransfersSyncService(
                transfer_processor,
                share_classes,
                scheduler,
                settings.transfers,
                deposit_lookback_days=settings.transfer_lookback_days_deposits,
                withdrawal_lookback_days=settings.transfer_lookback_days_withdrawals,
                batch_size=settings.transfer_batch_size,
            ),
            currency=CurrencySyncService(ingestion, scheduler, settings.currency),
        )

    @property
    def services(self) -> list[BaseSyncService]:
        return [self.currency, self.accounts, self.transfers]

    async def start(self, create_schema: bool = False) -> None:
        if create_schema and self.database is not None:
            await init_schema(self.database)
            logger.info("Database schema initialized")
        for service in self.services:
            service.setup_schedule()
        await self.scheduler.start()
        logger.info(
            "Sync service started",
            extra={"environment": self.settings.environment, "jobs": [s.job_id for s in self.services]},
        )

    async def shutdown(self) -> None:
        await self.scheduler.shutdown(wait=False)
        await self.clients.clear_all_clients()
        await self.quote_client.aclose()
        if self.database is not None:
            await self.database.close()
        logger.info("Sync service stopped")


async def run(settings: Optional[PmsSettings] = None) -> None:
    """Run the scheduler until SIGINT/SIGTERM."""
    settings = settings or load_settings()
    setup_logging(settings.log_level, json_format=settings.log_json)
    app = SyncApplication.from_settings(settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop.set)

    await app.start(create_schema=settings.environment == "dev")
    try:
        await stop.wait()
    finally:
        await app.shutdown()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
