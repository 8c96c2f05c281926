"""Ingestion of prime-broker deposits and withdrawals into the ledger.

For each trading account with a portfolio assignment, events are fetched per
direction, converted into the share class currency at their settlement
time, paired with the share class's basic account, and written as one batch.

Direction decides the account pair:

    deposit:    BASIC   -> TRADING
    withdrawal: TRADING -> BASIC
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional, Sequence

from ..clients.factory import HrpClientFactory
from ..clients.hrp import HrpClient
from ..constants import Defaults, Timeouts
from ..currency.conversion import CurrencyConversionService
from ..logging_config import set_share_class_context
from ..models import (
    AccountKind,
    BasicAccount,
    ShareClass,
    TenantResult,
    TradingAccount,
    TransferDirection,
    TransferEvent,
    TransferIngestionParams,
    TransferInput,
    transfer_idempotency_key,
)
from ..repositories import LedgerSession, LedgerStore
from ..utils import parse_timestamp, to_decimal

logger = logging.getLogger("pms.transfers.processor")


class TransferProcessor:
    """Fetches, converts and records transfers per share class."""

    def __init__(
        self,
        clients: HrpClientFactory,
        ledger: LedgerStore,
        conversion: CurrencyConversionService,
        *,
        batch_size: int = Defaults.TRANSFER_BATCH_SIZE,
        max_wait: float = Timeouts.TRANSFER_TX_MAX_WAIT,
        timeout: float = Timeouts.TRANSFER_TX_TIMEOUT,
    ):
        self._clients = clients
        self._ledger = ledger
        self._conversion = conversion
        self._batch_size = batch_size
        self._max_wait = max_wait
        self._timeout = timeout

    async def process_transfers_for_share_class(
        self,
        share_class: ShareClass,
        params: TransferIngestionParams,
        session: LedgerSession,
    ) -> int:
        """Returns the number of transfers written for one share class.

        Raises:
            ConfigurationError: If the share class has no usable credentials
        """
        client = await self._clients.get_client(share_class)
        accounts = await session.find_trading_accounts_with_portfolio(share_class.id)
        if not accounts:
            logger.warning(f"No accounts with portfolio assignments for share class {share_class.name}")
            return 0

        logger.info(f"Processing transfers for {len(accounts)} accounts in share class {share_class.name}")
        total = 0
        for account in accounts:
            for direction in params.directions():
                events = await self._fetch_events(client, account, direction, params)
                total += await self._process_batch(share_class, account, direction, events, session)

        logger.info(f"Processed {total} transfers for share class {share_class.name}")
        return total

    async def _fetch_events(
        self,
        client: HrpClient,
        account: TradingAccount,
        direction: TransferDirection,
        params: TransferIngestionParams,
    ) -> list[TransferEvent]:
        account_name = account.name.split(":", 1)[0]
        venue = account.venue_name or "unknown"
        try:
            return await client.fetch_transfers(
                direction,
                venue=venue,
                account=account_name,
                start=params.start_date,
                end=params.end_date,
                page_size=params.batch_size or self._batch_size,
            )
        except Exception as e:
            logger.error(
                f"Failed to fetch {direction.value}s from HRP",
                extra={"account": account_name, "venue": venue, "error": str(e)},
            )
            return []

    async def _process_batch(
        self,
        share_class: ShareClass,
        account: TradingAccount,
        direction: TransferDirection,
        events: Sequence[TransferEvent],
        session: LedgerSession,
    ) -> int:
        if not events:
            return 0

        basic = await session.find_basic_account(share_class.id)
        if basic is None:
            logger.error(
                f"Basic account not found for share class {share_class.name}, "
                f"dropping {len(events)} {direction.value}s"
            )
            return 0

        inputs = []
        for event in events:
            try:
                inputs.append(await self.build_transfer_input(event, share_class, account, basic, direction))
            except ValueError as e:
                logger.error(
                    f"Failed to create transfer input for HRP transfer {event.id}",
                    extra={"error": str(e), "account": account.name},
                )
        if not inputs:
            logger.warning(f"No valid transfer inputs created from {len(events)} HRP transfers")
            return 0

        try:
            async with session.savepoint():
                created = await session.create_transfers(inputs, skip_duplicates=True)
        except Exception as e:
            logger.error(
                "Failed to save transfer batch",
                extra={"error": str(e), "transfer_count": len(inputs), "account": account.name},
            )
            return 0

        logger.info(f"Created {created} {direction.value}s for account {account.name}")
        return created

    async def build_transfer_input(
        self,
        event: TransferEvent,
        share_class: ShareClass,
        account: TradingAccount,
        basic: BasicAccount,
        direction: TransferDirection,
    ) -> TransferInput:
        """Map one event onto a ledger transfer.

        Raises:
            ValueError: If the quantity or timestamps cannot be parsed
        """
        if not event.id:
            raise ValueError("transfer event has no id")
        original_amount = to_decimal(event.quantity)
        transfer_time = parse_timestamp(event.transfer_timestamp)
        valuation_time = parse_timestamp(event.event_timestamp)
        target = share_class.denom_ccy

        amount: Optional[Decimal] = await self._conversion.convert(
            original_amount, event.asset, target, transfer_time
        )
        is_converted = amount is not None
        if amount is None:
            logger.warning(
                "Currency conversion failed, using original amount",
                extra={"asset": event.asset, "target_currency": target, "amount": str(original_amount)},
            )
            amount = original_amount

        if direction is TransferDirection.DEPOSIT:
            from_type, from_id = AccountKind.BASIC, basic.id
            to_type, to_id = AccountKind.TRADING, account.id
        else:
            from_type, from_id = AccountKind.TRADING, account.id
            to_type, to_id = AccountKind.BASIC, basic.id

        return TransferInput(
            amount=amount,
            denomination=target,
            from_account_type=from_type,
            from_account_id=from_id,
            to_account_type=to_type,
            to_account_id=to_id,
            valuation_time=valuation_time,
            transfer_time=transfer_time,
            external_id=event.id,
            idempotency_key=transfer_idempotency_key(share_class.id, direction, event.id),
            original_amount=original_amount,
            original_currency=event.asset,
            is_converted=is_converted,
        )

    async def process_multiple_share_classes(
        self,
        share_classes: Sequence[ShareClass],
        params: TransferIngestionParams,
    ) -> dict[str, TenantResult[int]]:
        """One bounded transaction per share class; a failed one counts zero."""
        results: dict[str, TenantResult[int]] = {}
        for share_class in share_classes:
            set_share_class_context(share_class.name)
            try:
                count = await self._ledger.run_in_transaction(
                    lambda session, sc=share_class: self.process_transfers_for_share_class(sc, params, session),
                    max_wait=self._max_wait,
                    timeout=self._timeout,
                )
                results[share_class.name] = TenantResult(share_class.name, count)
            except Exception as e:
                logger.error(
                    f"Transaction failed for share class {share_class.name}",
                    extra={"share_class_name": share_class.name, "share_class_id": share_class.id, "error": str(e)},
                    exc_info=True,
                )
                results[share_class.name] = TenantResult(share_class.name, 0, error=str(e))
            finally:
                set_share_class_context(None)
        return results
