"""Tests for the in-memory ledger and quote repositories."""
from __future__ import annotations

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from pms_sync.exceptions import TransactionTimeoutError
from pms_sync.models import AccountKind, TradingAccountType, TransferInput
from sync_helpers import seed_quote, utc


def transfer_input(key: str, basic_id: int, trading_id: int) -> TransferInput:
    return TransferInput(
        amount=Decimal("1"),
        denomination="USD",
        from_account_type=AccountKind.BASIC,
        from_account_id=basic_id,
        to_account_type=AccountKind.TRADING,
        to_account_id=trading_id,
        valuation_time=utc(2024, 3, 10),
        transfer_time=utc(2024, 3, 10),
        external_id=key,
        idempotency_key=key,
        original_amount=Decimal("1"),
        original_currency="USD",
    )


class TestLedgerTransactions:
    @pytest.mark.asyncio
    async def test_rollback_on_error(self, ledger):
        """Writes inside a failed transaction are discarded."""
        async def work(session):
            await session.upsert_basic_account("basic:1", "USD", 1)
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            await ledger.run_in_transaction(work)
        assert await ledger.session.find_basic_account(1) is None

    @pytest.mark.asyncio
    async def test_commit_on_success(self, ledger):
        """A completed transaction keeps its writes."""
        async def work(session):
            return await session.upsert_basic_account("basic:1", "USD", 1)

        account = await ledger.run_in_transaction(work)
        assert (await ledger.session.find_basic_account(1)).id == account.id

    @pytest.mark.asyncio
    async def test_savepoint_rolls_back_only_inner(self, ledger):
        """A failed savepoint undoes its own writes but not earlier ones."""
        async def work(session):
            await session.upsert_basic_account("basic:1", "USD", 1)
            try:
                async with session.savepoint():
                    await session.upsert_basic_account("basic:2", "USD", 2)
                    raise ValueError("bad row")
            except ValueError:
                pass

        await ledger.run_in_transaction(work)
        assert await ledger.session.find_basic_account(1) is not None
        assert await ledger.session.find_basic_account(2) is None

    @pytest.mark.asyncio
    async def test_wait_timeout(self, ledger):
        """Queueing behind an open transaction is bounded by max_wait."""
        release = asyncio.Event()

        async def hold(session):
            await release.wait()

        holder = asyncio.create_task(ledger.run_in_transaction(hold))
        await asyncio.sleep(0)
        with pytest.raises(TransactionTimeoutError) as exc_info:
            await ledger.run_in_transaction(hold, max_wait=0.01)
        assert exc_info.value.phase == "wait"
        release.set()
        await holder

    @pytest.mark.asyncio
    async def test_execution_timeout_rolls_back(self, ledger):
        """Running past the timeout fails and discards the writes."""
        async def slow(session):
            await session.upsert_basic_account("basic:1", "USD", 1)
            await asyncio.sleep(1)

        with pytest.raises(TransactionTimeoutError) as exc_info:
            await ledger.run_in_transaction(slow, timeout=0.01)
        assert exc_info.value.phase == "execution"
        assert await ledger.session.find_basic_account(1) is None


class TestLedgerSession:
    @pytest.mark.asyncio
    async def test_counterparty_lookup_case_insensitive(self, ledger):
        """Venue names match regardless of case."""
        assert (await ledger.session.find_counterparty_by_name("zodia")).name == "ZODIA"
        assert await ledger.session.find_counterparty_by_name("KRAKEN") is None

    @pytest.mark.asyncio
    async def test_trading_upsert_by_name(self, ledger):
        """Re-upserting a trading account updates its type in place."""
        session = ledger.session
        venue = await session.find_counterparty_by_name("Binance")
        first = await session.upsert_trading_account("hrp1:a", TradingAccountType.OTHER, venue.id, 1)
        second = await session.upsert_trading_account("hrp1:a", TradingAccountType.FUNDING, venue.id, 1)
        assert first.id == second.id
        assert second.type is TradingAccountType.FUNDING

    @pytest.mark.asyncio
    async def test_assign_portfolio_unknown(self, ledger):
        """Assigning a portfolio to an unknown account raises KeyError."""
        with pytest.raises(KeyError):
            ledger.assign_portfolio("missing", 1)

    @pytest.mark.asyncio
    async def test_create_transfers_duplicates(self, ledger):
        """Duplicate keys are skipped, or rejected when skipping is off."""
        session = ledger.session
        basic = await session.upsert_basic_account("basic:1", "USD", 1)
        inputs = [transfer_input("k1", basic.id, 99), transfer_input("k1", basic.id, 99)]

        assert await session.create_transfers(inputs) == 1
        with pytest.raises(ValueError):
            await session.create_transfers([transfer_input("k1", basic.id, 99)], skip_duplicates=False)
        assert len(await session.find_transfers(1)) == 1
        assert await session.find_transfers(2) == []


class TestSpotQuoteRepository:
    @pytest.mark.asyncio
    async def test_upsert_and_lookup(self, quotes):
        """Symbols are case-insensitive and keyed per day and exchange."""
        await seed_quote(quotes, "BTC", date(2024, 3, 1), "40000")
        await seed_quote(quotes, "btc", date(2024, 3, 1), "41000")
        await seed_quote(quotes, "btc", date(2024, 3, 1), "39000", exchange="index")

        assert (await quotes.find_by_date("btc", date(2024, 3, 1), "cmc")).price == Decimal("41000")
        assert len(await quotes.find_by_symbol("BTC")) == 2

    @pytest.mark.asyncio
    async def test_latest_on_or_before(self, quotes):
        """The latest quote not after the day is returned."""
        for day, price in [(1, "1"), (5, "5"), (9, "9")]:
            await seed_quote(quotes, "eth", date(2024, 3, day), price)
        quote = await quotes.find_latest_on_or_before("eth", date(2024, 3, 8))
        assert quote.price == Decimal("5")
        assert await quotes.find_latest_on_or_before("eth", date(2024, 2, 28)) is None

    @pytest.mark.asyncio
    async def test_date_range_and_dates(self, quotes):
        """Range queries are inclusive and ordered by date."""
        for day in (3, 1, 2, 7):
            await seed_quote(quotes, "btc", date(2024, 3, day), "1")
        in_range = await quotes.find_by_date_range("btc", date(2024, 3, 1), date(2024, 3, 3), "cmc")
        assert [q.price_date.day for q in in_range] == [1, 2, 3]
        assert [d.day for d in await quotes.find_dates("btc", "cmc")] == [1, 2, 3, 7]

    @pytest.mark.asyncio
    async def test_unfiltered_lookup_is_deterministic(self, quotes):
        """Without an exchange filter the order of inserts does not pick the quote."""
        day = date(2024, 3, 1)
        await seed_quote(quotes, "btc", day, "39000", exchange="index")
        await seed_quote(quotes, "btc", day, "41000", exchange="cmc")

        assert (await quotes.find_by_date("btc", day)).exchange == "cmc"
        assert (await quotes.find_latest_on_or_before("btc", date(2024, 3, 2))).exchange == "cmc"

        await quotes.upsert_quote(
            symbol="btc", exchange="index", price_date=day, price=Decimal("39500"), fetched_at=utc(2024, 3, 2)
        )
        assert (await quotes.find_by_date("btc", day)).price == Decimal("39500")
