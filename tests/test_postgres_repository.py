"""Tests for the asyncpg repositories, using fake pool and connection objects."""
from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import asyncpg
import pytest

from pms_sync.exceptions import StorageError, TransactionTimeoutError
from pms_sync.models import AccountKind, TradingAccountType, TransferInput
from pms_sync.repository_memory import InMemoryLedgerSession
from pms_sync.repository_postgres import (
    Database,
    PostgresLedgerSession,
    PostgresLedgerStore,
    PostgresShareClassRepository,
    PostgresSpotQuoteRepository,
    _quote_from_row,
    _trading_from_row,
)
from sync_helpers import utc


def transfer_input(key: str) -> TransferInput:
    return TransferInput(
        amount=Decimal("2.5"),
        denomination="USD",
        from_account_type=AccountKind.BASIC,
        from_account_id=1,
        to_account_type=AccountKind.TRADING,
        to_account_id=2,
        valuation_time=utc(2024, 3, 10),
        transfer_time=utc(2024, 3, 10),
        external_id=key,
        idempotency_key=f"key-{key}",
        original_amount=Decimal("0.0001"),
        original_currency="BTC",
    )


class FakeConnection:
    """Records statements; ``fetch`` returns the configured rows."""

    def __init__(self, rows=None):
        self.rows = rows or []
        self.statements: list[tuple[str, tuple]] = []
        self.transactions = 0

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield

    async def fetch(self, query, *args):
        self.statements.append((query, args))
        return self.rows


class FakePool:
    def __init__(self, conn=None, acquire_error=None):
        self.conn = conn or FakeConnection()
        self.acquire_error = acquire_error
        self.released = []

    async def acquire(self, timeout=None):
        if self.acquire_error is not None:
            raise self.acquire_error
        return self.conn

    async def release(self, conn):
        self.released.append(conn)


def make_store(pool: FakePool) -> PostgresLedgerStore:
    db = AsyncMock()
    db.get_pool.return_value = pool
    return PostgresLedgerStore(db)


class TestRowMapping:
    def test_trading_from_row(self):
        """Trading rows map the type enum and the joined venue name."""
        now = utc(2024, 3, 10)
        row = {
            "id": 7,
            "name": "hrp123:FUNDING ACCOUNT",
            "type": "FUNDING",
            "venue_id": 3,
            "share_class_id": 1,
            "portfolio_id": None,
            "venue_name": "Binance",
            "created_at": now,
            "updated_at": now,
        }
        account = _trading_from_row(row)
        assert account.type is TradingAccountType.FUNDING
        assert account.venue_name == "Binance"
        assert account.portfolio_id is None

    def test_quote_from_row_decodes_json_metadata(self):
        """JSONB returned as text is decoded and prices become Decimal."""
        row = {
            "id": 1,
            "symbol": "btc",
            "exchange": "cmc",
            "price_date": date(2024, 3, 10),
            "price": 45000.5,
            "fetched_at": utc(2024, 3, 11),
            "base_currency": "usd",
            "data_source": "1token",
            "contract": "cmc/btc.usd",
            "original_tm": 1710028800,
            "metadata": '{"contract": "cmc/btc.usd"}',
        }
        quote = _quote_from_row(row)
        assert quote.price == Decimal("45000.5")
        assert quote.metadata == {"contract": "cmc/btc.usd"}

    def test_share_class_from_row_decodes_api_keys(self):
        """Credential JSON stored as text is decoded."""
        row = {"id": 1, "name": "Fund A", "denom_ccy": "USD", "api_keys": '{"client_id": "abc"}'}
        share_class = PostgresShareClassRepository._from_row(row)
        assert share_class.api_keys == {"client_id": "abc"}
        assert share_class.has_credentials

    def test_share_class_from_row_without_keys(self):
        row = {"id": 2, "name": "Fund B", "denom_ccy": "EUR", "api_keys": None}
        assert not PostgresShareClassRepository._from_row(row).has_credentials


class TestCreateTransfers:
    @pytest.mark.asyncio
    async def test_batch_is_one_statement(self):
        """A full batch is written with a single INSERT."""
        conn = FakeConnection(rows=[{"id": i} for i in range(250)])
        session = PostgresLedgerSession(conn)

        created = await session.create_transfers([transfer_input(str(i)) for i in range(250)])

        assert created == 250
        assert len(conn.statements) == 1
        query, args = conn.statements[0]
        assert "unnest" in query
        assert "ON CONFLICT (idempotency_key) DO NOTHING" in query
        assert len(args) == 13
        assert all(len(column) == 250 for column in args)
        assert args[2][0] == "BASIC"
        assert args[9][0] == "key-0"

    @pytest.mark.asyncio
    async def test_counts_only_inserted_rows(self):
        """Rows skipped on conflict are not counted."""
        conn = FakeConnection(rows=[{"id": 11}])
        session = PostgresLedgerSession(conn)
        created = await session.create_transfers([transfer_input("a"), transfer_input("b"), transfer_input("c")])
        assert created == 1

    @pytest.mark.asyncio
    async def test_without_skip_duplicates(self):
        conn = FakeConnection(rows=[{"id": 1}])
        await PostgresLedgerSession(conn).create_transfers([transfer_input("a")], skip_duplicates=False)
        assert "ON CONFLICT" not in conn.statements[0][0]

    @pytest.mark.asyncio
    async def test_empty_batch_skips_database(self):
        conn = FakeConnection()
        assert await PostgresLedgerSession(conn).create_transfers([]) == 0
        assert conn.statements == []


class TestRunInTransaction:
    @pytest.mark.asyncio
    async def test_commit_releases_connection(self):
        """The work runs inside a transaction and the connection goes back to the pool."""
        pool = FakePool()
        store = make_store(pool)

        async def work(session):
            assert isinstance(session, PostgresLedgerSession)
            return "done"

        assert await store.run_in_transaction(work, max_wait=1, timeout=1) == "done"
        assert pool.conn.transactions == 1
        assert pool.released == [pool.conn]

    @pytest.mark.asyncio
    async def test_acquire_timeout_is_wait_phase(self):
        """Waiting too long for a connection raises the wait-phase timeout."""
        pool = FakePool(acquire_error=asyncio.TimeoutError())
        store = make_store(pool)

        with pytest.raises(TransactionTimeoutError) as exc_info:
            await store.run_in_transaction(AsyncMock(), max_wait=15, timeout=120)
        assert exc_info.value.phase == "wait"
        assert exc_info.value.seconds == 15
        assert pool.released == []

    @pytest.mark.asyncio
    async def test_slow_work_is_execution_phase(self):
        """Work that outlives the timeout raises the execution-phase timeout."""
        pool = FakePool()
        store = make_store(pool)

        async def slow(session):
            await asyncio.sleep(1)

        with pytest.raises(TransactionTimeoutError) as exc_info:
            await store.run_in_transaction(slow, max_wait=1, timeout=0.01)
        assert exc_info.value.phase == "execution"
        assert pool.released == [pool.conn]

    @pytest.mark.asyncio
    async def test_postgres_error_becomes_storage_error(self):
        """Driver errors surface as StorageError."""
        pool = FakePool()
        store = make_store(pool)

        async def failing(session):
            raise asyncpg.PostgresError("relation does not exist")

        with pytest.raises(StorageError) as exc_info:
            await store.run_in_transaction(failing)
        assert not isinstance(exc_info.value, TransactionTimeoutError)
        assert "relation does not exist" in str(exc_info.value)
        assert pool.released == [pool.conn]


class TestSpotQuoteQueries:
    @pytest.mark.asyncio
    async def test_lookup_lowercases_symbol(self):
        """Symbols are normalized before querying."""
        db = AsyncMock()
        db.fetchrow.return_value = None
        repo = PostgresSpotQuoteRepository(db)

        assert await repo.find_latest_on_or_before("BTC", date(2024, 3, 10), "cmc") is None
        query, *args = db.fetchrow.call_args.args
        assert args == ["btc", date(2024, 3, 10), "cmc"]
        assert "ORDER BY price_date DESC, fetched_at DESC, exchange" in query


class TestInterfaces:
    def test_database_rewrites_postgres_scheme(self):
        db = Database("postgres://user:pw@localhost/pms")
        assert db._dsn.startswith("postgresql://")

    @pytest.mark.parametrize(
        "method",
        [
            "savepoint",
            "find_counterparty_by_name",
            "upsert_trading_account",
            "upsert_basic_account",
            "upsert_triparty_account",
            "find_trading_accounts_with_portfolio",
            "find_basic_account",
            "create_transfers",
            "find_transfers",
        ],
    )
    def test_session_matches_memory_session(self, method):
        """Both ledger sessions accept the same parameters."""
        postgres = inspect.signature(getattr(PostgresLedgerSession, method))
        memory = inspect.signature(getattr(InMemoryLedgerSession, method))
        assert list(postgres.parameters) == list(memory.parameters)
