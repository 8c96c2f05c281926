"""Repository interfaces for share classes, the ledger and spot quotes.

Two implementations exist: ``repository_memory`` (dev/tests) and
``repository_postgres`` (asyncpg).
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, AsyncContextManager, Awaitable, Callable, Optional, Protocol, Sequence, TypeVar

from .models import (
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

R = TypeVar("R")


class ShareClassRepository(Protocol):
    async def find_with_credentials(self) -> list[ShareClass]: ...


class LedgerSession(Protocol):
    """Ledger operations bound to one open transaction."""

    def savepoint(self) -> AsyncContextManager[None]:
        """Nested scope; an exception inside rolls back only the scope."""
        ...

    async def find_counterparty_by_name(self, name: str) -> Optional[Counterparty]: ...

    async def upsert_trading_account(
        self,
        name: str,
        account_type: TradingAccountType,
        venue_id: int,
        share_class_id: int,
    ) -> TradingAccount: ...

    async def upsert_basic_account(
        self, name: str, denomination: str, share_class_id: int
    ) -> BasicAccount: ...

    async def upsert_triparty_account(
        self, name: str, denomination: str, owner_id: int, venue_id: int
    ) -> TripartyAccount: ...

    async def find_trading_accounts_with_portfolio(self, share_class_id: int) -> list[TradingAccount]: ...

    async def find_basic_account(self, share_class_id: int) -> Optional[BasicAccount]: ...

    async def create_transfers(
        self, inputs: Sequence[TransferInput], skip_duplicates: bool = True
    ) -> int:
        """Insert a batch; returns the number of rows actually written."""
        ...

    async def find_transfers(self, share_class_id: Optional[int] = None) -> list[Transfer]: ...


class LedgerStore(Protocol):
    async def run_in_transaction(
        self,
        fn: Callable[[LedgerSession], Awaitable[R]],
        *,
        max_wait: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> R:
        """Run ``fn`` in its own transaction.

        Commits when ``fn`` returns and rolls back when it raises. Waiting
        longer than ``max_wait`` for a connection, or running longer than
        ``timeout``, raises TransactionTimeoutError.
        """
        ...


class SpotQuoteRepository(Protocol):
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
        """Insert, or update the record keyed by (symbol, exchange, price_date)."""
        ...

    async def find_by_date(
        self, symbol: str, day: date, exchange: Optional[str] = None
    ) -> Optional[SpotQuote]: ...

    async def find_latest_on_or_before(
        self, symbol: str, day: date, exchange: Optional[str] = None
    ) -> Optional[SpotQuote]: ...

    async def find_by_symbol(self, symbol: str) -> list[SpotQuote]: ...

    async def find_by_date_range(
        self, symbol: str, from_date: date, to_date: date, exchange: Optional[str] = None
    ) -> list[SpotQuote]: ...

    async def find_dates(self, symbol: str, exchange: str) -> list[date]:
        """Sorted distinct price dates on file for a symbol/exchange."""
        ...
