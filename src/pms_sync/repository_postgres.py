"""PostgreSQL-backed repositories (asyncpg)."""
from __future__ import annotations

import asyncio
import json
import logging
import ssl
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Optional, Sequence, TypeVar

import asyncpg
from asyncpg import Pool

from .constants import Timeouts
from .exceptions import StorageError, TransactionTimeoutError
from .models import (
    AccountKind,
    BasicAccount,
    Counterparty,
    ShareClass,
    SpotQuote,
    TradingAccount,
    TradingAccountType,
    Transfer,
    TransferInput,
    TripartyAccount,
)

logger = logging.getLogger("pms.repository.postgres")

R = TypeVar("R")


class Database:
    """PostgreSQL connection pool manager."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        if dsn.startswith("postgres://"):
            dsn = dsn.replace("postgres://", "postgresql://", 1)
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[Pool] = None

    async def get_pool(self) -> Pool:
        """Get or create the connection pool."""
        if self._pool is None:
            pool_kwargs: dict = {
                "min_size": self._min_size,
                "max_size": self._max_size,
                "command_timeout": Timeouts.DB_COMMAND,
            }
            if "sslmode=require" in self._dsn:
                pool_kwargs["ssl"] = ssl.create_default_context()
            self._pool = await asyncpg.create_pool(self._dsn, **pool_kwargs)
        return self._pool

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self, timeout: Optional[float] = None) -> AsyncGenerator[asyncpg.Connection, None]:
        """Get a connection from the pool, waiting at most ``timeout`` seconds."""
        pool = await self.get_pool()
        async with pool.acquire(timeout=timeout) as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[asyncpg.Connection, None]:
        """Get a connection with an active transaction."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def fetch(self, query: str, *args) -> list:
        async with self.connection() as conn:
            return await conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args):
        async with self.connection() as conn:
            return await conn.fetchrow(query, *args)


async def init_schema(db: Database) -> None:
    """Create tables for dev/test. Production expects migrations instead."""
    async with db.connection() as conn:
        await conn.execute(SCHEMA_SQL)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS counterparties (
    id SERIAL PRIMARY KEY,
    name VARCHAR(255) UNIQUE NOT NULL
);

CREATE TABLE IF NOT EXISTS share_classes (
    id SERIAL PRIMARY KEY,
    name VARCHAR(255) UNIQUE NOT NULL,
    denom_ccy VARCHAR(16) NOT NULL,
    api_keys JSONB
);

CREATE TABLE IF NOT EXISTS hrp_trading_accounts (
    id SERIAL PRIMARY KEY,
    name VARCHAR(255) UNIQUE NOT NULL,
    type VARCHAR(16) NOT NULL,
    venue_id INTEGER NOT NULL REFERENCES counterparties(id),
    share_class_id INTEGER NOT NULL REFERENCES share_classes(id),
    portfolio_id INTEGER,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_trading_accounts_share_class ON hrp_trading_accounts(share_class_id);

CREATE TABLE IF NOT EXISTS hrp_basic_accounts (
    id SERIAL PRIMARY KEY,
    name VARCHAR(255) UNIQUE NOT NULL,
    denomination VARCHAR(16) NOT NULL,
    share_class_id INTEGER NOT NULL REFERENCES share_classes(id),
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS triparty_accounts (
    id SERIAL PRIMARY KEY,
    name VARCHAR(255) UNIQUE NOT NULL,
    denomination VARCHAR(16) NOT NULL,
    owner_id INTEGER NOT NULL REFERENCES share_classes(id),
    second_owner_id INTEGER,
    venue_id INTEGER NOT NULL REFERENCES counterparties(id),
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS transfers (
    id SERIAL PRIMARY KEY,
    amount NUMERIC(38,18) NOT NULL,
    denomination VARCHAR(16) NOT NULL,
    from_account_type VARCHAR(16) NOT NULL,
    from_account_id INTEGER NOT NULL,
    to_account_type VARCHAR(16) NOT NULL,
    to_account_id INTEGER NOT NULL,
    valuation_time TIMESTAMPTZ NOT NULL,
    transfer_time TIMESTAMPTZ NOT NULL,
    external_id VARCHAR(255) NOT NULL,
    idempotency_key VARCHAR(64) UNIQUE NOT NULL,
    original_amount NUMERIC(38,18) NOT NULL,
    original_currency VARCHAR(16) NOT NULL,
    is_converted BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_transfers_external_id ON transfers(external_id);

CREATE TABLE IF NOT EXISTS spot_quotes (
    id SERIAL PRIMARY KEY,
    symbol VARCHAR(32) NOT NULL,
    exchange VARCHAR(32) NOT NULL,
    price_date DATE NOT NULL,
    price NUMERIC(38,18) NOT NULL,
    base_currency VARCHAR(16) NOT NULL DEFAULT 'usd',
    data_source VARCHAR(32) NOT NULL DEFAULT '1token',
    contract VARCHAR(64),
    original_tm BIGINT,
    metadata JSONB,
    fetched_at TIMESTAMPTZ NOT NULL,
    UNIQUE(symbol, exchange, price_date)
);

CREATE INDEX IF NOT EXISTS idx_spot_quotes_symbol_date ON spot_quotes(symbol, price_date);
"""


# =============================================================================
# Row mapping
# =============================================================================

def _trading_from_row(row: Any) -> TradingAccount:
    return TradingAccount(
        id=row["id"],
        name=row["name"],
        type=TradingAccountType(row["type"]),
        venue_id=row["venue_id"],
        share_class_id=row["share_class_id"],
        portfolio_id=row["portfolio_id"],
        venue_name=row.get("venue_name"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _basic_from_row(row: Any) -> BasicAccount:
    return BasicAccount(
        id=row["id"],
        name=row["name"],
        denomination=row["denomination"],
        share_class_id=row["share_class_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _transfer_from_row(row: Any) -> Transfer:
    return Transfer(
        id=row["id"],
        amount=row["amount"],
        denomination=row["denomination"],
        from_account_type=AccountKind(row["from_account_type"]),
        from_account_id=row["from_account_id"],
        to_account_type=AccountKind(row["to_account_type"]),
        to_account_id=row["to_account_id"],
        valuation_time=row["valuation_time"],
        transfer_time=row["transfer_time"],
        external_id=row["external_id"],
        idempotency_key=row["idempotency_key"],
        original_amount=row["original_amount"],
        original_currency=row["original_currency"],
        is_converted=row["is_converted"],
        created_at=row["created_at"],
    )


def _quote_from_row(row: Any) -> SpotQuote:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return SpotQuote(
        id=row["id"],
        symbol=row["symbol"],
        exchange=row["exchange"],
        price_date=row["price_date"],
        price=Decimal(str(row["price"])),
        fetched_at=row["fetched_at"],
        base_currency=row["base_currency"],
        data_source=row["data_source"],
        contract=row["contract"],
        original_tm=row["original_tm"],
        metadata=metadata,
    )


# =============================================================================
# Ledger
# =============================================================================

class PostgresLedgerSession:
    """Ledger operations bound to one connection with an open transaction."""

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        # A nested transaction on an open one is a SAVEPOINT in asyncpg
        async with self._conn.transaction():
            yield

    async def find_counterparty_by_name(self, name: str) -> Optional[Counterparty]:
        row = await self._conn.fetchrow(
            "SELECT id, name FROM counterparties WHERE LOWER(name) = LOWER($1) LIMIT 1",
            name,
        )
        return Counterparty(id=row["id"], name=row["name"]) if row else None

    async def _fetch_trading(self, account_id: int) -> TradingAccount:
        row = await self._conn.fetchrow(
            """
            SELECT t.*, c.name AS venue_name
            FROM hrp_trading_accounts t
            LEFT JOIN counterparties c ON c.id = t.venue_id
            WHERE t.id = $1
            """,
            account_id,
        )
        return _trading_from_row(row)

    async def upsert_trading_account(
        self,
        name: str,
        account_type: TradingAccountType,
        venue_id: int,
        share_class_id: int,
    ) -> TradingAccount:
        account_id = await self._conn.fetchval(
            """
            INSERT INTO hrp_trading_accounts (name, type, venue_id, share_class_id)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (name) DO UPDATE SET
                type = EXCLUDED.type,
                venue_id = EXCLUDED.venue_id,
                share_class_id = EXCLUDED.share_class_id,
                updated_at = NOW()
            RETURNING id
            """,
            name,
            account_type.value,
            venue_id,
            share_class_id,
        )
        return await self._fetch_trading(account_id)

    async def upsert_basic_account(
        self, name: str, denomination: str, share_class_id: int
    ) -> BasicAccount:
        row = await self._conn.fetchrow(
            """
            INSERT INTO hrp_basic_accounts (name, denomination, share_class_id)
            VALUES ($1, $2, $3)
            ON CONFLICT (name) DO UPDATE SET updated_at = NOW()
            RETURNING *
            """,
            name,
            denomination,
            share_class_id,
        )
        return _basic_from_row(row)

    async def upsert_triparty_account(
        self, name: str, denomination: str, owner_id: int, venue_id: int
    ) -> TripartyAccount:
        row = await self._conn.fetchrow(
            """
            INSERT INTO triparty_accounts (name, denomination, owner_id, venue_id)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (name) DO UPDATE SET
                venue_id = EXCLUDED.venue_id,
                updated_at = NOW()
            RETURNING *
            """,
            name,
            denomination,
            owner_id,
            venue_id,
        )
        return TripartyAccount(
            id=row["id"],
            name=row["name"],
            denomination=row["denomination"],
            owner_id=row["owner_id"],
            venue_id=row["venue_id"],
            second_owner_id=row["second_owner_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def find_trading_accounts_with_portfolio(self, share_class_id: int) -> list[TradingAccount]:
        rows = await self._conn.fetch(
            """
            SELECT t.*, c.name AS venue_name
            FROM hrp_trading_accounts t
            LEFT JOIN counterparties c ON c.id = t.venue_id
            WHERE t.share_class_id = $1 AND t.portfolio_id IS NOT NULL
            ORDER BY t.id
            """,
            share_class_id,
        )
        return [_trading_from_row(r) for r in rows]

    async def find_basic_account(self, share_class_id: int) -> Optional[BasicAccount]:
        row = await self._conn.fetchrow(
            "SELECT * FROM hrp_basic_accounts WHERE share_class_id = $1 ORDER BY id LIMIT 1",
            share_class_id,
        )
        return _basic_from_row(row) if row else None

    async def create_transfers(
        self, inputs: Sequence[TransferInput], skip_duplicates: bool = True
    ) -> int:
        """Insert a batch in one statement; returns the number of rows actually written."""
        if not inputs:
            return 0
        conflict = "ON CONFLICT (idempotency_key) DO NOTHING" if skip_duplicates else ""
        rows = await self._conn.fetch(
            f"""
            INSERT INTO transfers (
                amount, denomination, from_account_type, from_account_id,
                to_account_type, to_account_id, valuation_time, transfer_time,
                external_id, idempotency_key, original_amount, original_currency,
                is_converted
            )
            SELECT * FROM unnest(
                $1::numeric[], $2::text[], $3::text[], $4::int[],
                $5::text[], $6::int[], $7::timestamptz[], $8::timestamptz[],
                $9::text[], $10::text[], $11::numeric[], $12::text[],
                $13::boolean[]
            )
            {conflict}
            RETURNING id
            """,
            [d.amount for d in inputs],
            [d.denomination for d in inputs],
            [d.from_account_type.value for d in inputs],
            [d.from_account_id for d in inputs],
            [d.to_account_type.value for d in inputs],
            [d.to_account_id for d in inputs],
            [d.valuation_time for d in inputs],
            [d.transfer_time for d in inputs],
            [d.external_id for d in inputs],
            [d.idempotency_key for d in inputs],
            [d.original_amount for d in inputs],
            [d.original_currency for d in inputs],
            [d.is_converted for d in inputs],
        )
        return len(rows)

    async def find_transfers(self, share_class_id: Optional[int] = None) -> list[Transfer]:
        rows = await self._conn.fetch(
            """
            SELECT t.*
            FROM transfers t
            LEFT JOIN hrp_basic_accounts b ON b.id = CASE
                WHEN t.from_account_type = 'BASIC' THEN t.from_account_id
                ELSE t.to_account_id
            END
            WHERE $1::int IS NULL OR b.share_class_id = $1
            ORDER BY t.id
            """,
            share_class_id,
        )
        return [_transfer_from_row(r) for r in rows]


class PostgresLedgerStore:
    """Runs ledger work in bounded transactions on the shared pool."""

    def __init__(self, db: Database):
        self._db = db

    async def run_in_transaction(
        self,
        fn: Callable[[PostgresLedgerSession], Awaitable[R]],
        *,
        max_wait: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> R:
        pool = await self._db.get_pool()
        try:
            conn = await pool.acquire(timeout=max_wait)
        except asyncio.TimeoutError:
            raise TransactionTimeoutError("wait", max_wait or 0.0) from None
        try:
            try:
                async with conn.transaction():
                    return await asyncio.wait_for(fn(PostgresLedgerSession(conn)), timeout=timeout)
            except asyncio.TimeoutError:
                raise TransactionTimeoutError("execution", timeout or 0.0) from None
            except asyncpg.PostgresError as e:
                raise StorageError(f"Ledger transaction failed: {e}") from e
        finally:
            await pool.release(conn)


class PostgresShareClassRepository:
    def __init__(self, db: Database):
        self._db = db

    @staticmethod
    def _from_row(row: Any) -> ShareClass:
        api_keys = row["api_keys"]
        if isinstance(api_keys, str):
            api_keys = json.loads(api_keys)
        return ShareClass(id=row["id"], name=row["name"], denom_ccy=row["denom_ccy"], api_keys=api_keys)

    async def find_with_credentials(self) -> list[ShareClass]:
        rows = await self._db.fetch(
            "SELECT * FROM share_classes WHERE api_keys IS NOT NULL ORDER BY id"
        )
        return [sc for sc in (self._from_row(r) for r in rows) if sc.has_credentials]


class PostgresSpotQuoteRepository:
    def __init__(self, db: Database):
        self._db = db

    async def upsert_quote(
        self,
        *,
        symbol: str,
        exchange: str,
        price_date: date,
        price: Decimal,
        fetched_at: datetime,
        contract: Optional[str] = None,
        original_tm: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> SpotQuote:
        row = await self._db.fetchrow(
            """
            INSERT INTO spot_quotes (
                symbol, exchange, price_date, price, fetched_at,
                contract, original_tm, metadata
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb)
            ON CONFLICT (symbol, exchange, price_date) DO UPDATE SET
                price = EXCLUDED.price,
                fetched_at = EXCLUDED.fetched_at,
                original_tm = EXCLUDED.original_tm,
                metadata = EXCLUDED.metadata
            RETURNING *
            """,
            symbol.lower(),
            exchange,
            price_date,
            price,
            fetched_at,
            contract,
            original_tm,
            json.dumps(metadata) if metadata is not None else None,
        )
        return _quote_from_row(row)

    async def find_by_date(
        self, symbol: str, day: date, exchange: Optional[str] = None
    ) -> Optional[SpotQuote]:
        row = await self._db.fetchrow(
            """
            SELECT * FROM spot_quotes
            WHERE symbol = $1 AND price_date = $2 AND ($3::text IS NULL OR exchange = $3)
            ORDER BY fetched_at DESC, exchange
            LIMIT 1
            """,
            symbol.lower(),
            day,
            exchange,
        )
        return _quote_from_row(row) if row else None

    async def find_latest_on_or_before(
        self, symbol: str, day: date, exchange: Optional[str] = None
    ) -> Optional[SpotQuote]:
        row = await self._db.fetchrow(
            """
            SELECT * FROM spot_quotes
            WHERE symbol = $1 AND price_date <= $2 AND ($3::text IS NULL OR exchange = $3)
            ORDER BY price_date DESC, fetched_at DESC, exchange
            LIMIT 1
            """,
            symbol.lower(),
            day,
            exchange,
        )
        return _quote_from_row(row) if row else None

    async def find_by_symbol(self, symbol: str) -> list[SpotQuote]:
        rows = await self._db.fetch(
            "SELECT * FROM spot_quotes WHERE symbol = $1 ORDER BY price_date DESC",
            symbol.lower(),
        )
        return [_quote_from_row(r) for r in rows]

    async def find_by_date_range(
        self, symbol: str, from_date: date, to_date: date, exchange: Optional[str] = None
    ) -> list[SpotQuote]:
        rows = await self._db.fetch(
            """
            SELECT * FROM spot_quotes
            WHERE symbol = $1 AND price_date BETWEEN $2 AND $3
              AND ($4::text IS NULL OR exchange = $4)
            ORDER BY price_date
            """,
            symbol.lower(),
            from_date,
            to_date,
            exchange,
        )
        return [_quote_from_row(r) for r in rows]

    async def find_dates(self, symbol: str, exchange: str) -> list[date]:
        rows = await self._db.fetch(
            """
            SELECT DISTINCT price_date FROM spot_quotes
            WHERE symbol = $1 AND exchange = $2
            ORDER BY price_date
            """,
            symbol.lower(),
            exchange,
        )
        return [r["price_date"] for r in rows]
