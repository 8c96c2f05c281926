"""In-memory repositories (swap for PostgreSQL in production).

Transactions are emulated with snapshots: the ledger state is copied when a
transaction or savepoint opens and restored if the scope raises. A single
asyncio.Lock stands in for the connection pool, so ``max_wait`` bounds how
long a caller queues behind another open transaction.
"""
from __future__ import annotations

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence, TypeVar

from .exceptions import TransactionTimeoutError
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
from .utils import utc_now

logger = logging.getLogger("pms.repository.memory")

R = TypeVar("R")


@dataclass
class _LedgerState:
    counterparties: dict[int, Counterparty] = field(default_factory=dict)
    trading_accounts: dict[int, TradingAccount] = field(default_factory=dict)
    basic_accounts: dict[int, BasicAccount] = field(default_factory=dict)
    triparty_accounts: dict[int, TripartyAccount] = field(default_factory=dict)
    transfers: dict[int, Transfer] = field(default_factory=dict)
    transfer_share_class: dict[int, int] = field(default_factory=dict)
    next_id: int = 1

    def allocate_id(self) -> int:
        value = self.next_id
        self.next_id += 1
        return value

    def restore(self, snapshot: "_LedgerState") -> None:
        self.__dict__.update(copy.deepcopy(snapshot.__dict__))


class InMemoryLedgerSession:
    """Ledger operations against the shared in-memory state."""

    def __init__(self, state: _LedgerState):
        self._state = state

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        snapshot = copy.deepcopy(self._state)
        try:
            yield
        except BaseException:
            self._state.restore(snapshot)
            raise

    async def find_counterparty_by_name(self, name: str) -> Optional[Counterparty]:
        wanted = name.lower()
        for counterparty in self._state.counterparties.values():
            if counterparty.name.lower() == wanted:
                return counterparty
        return None

    async def upsert_trading_account(
        self,
        name: str,
        account_type: TradingAccountType,
        venue_id: int,
        share_class_id: int,
    ) -> TradingAccount:
        venue = self._state.counterparties.get(venue_id)
        for account in self._state.trading_accounts.values():
            if account.name == name:
                account.type = account_type
                account.venue_id = venue_id
                account.venue_name = venue.name if venue else account.venue_name
                account.share_class_id = share_class_id
                account.updated_at = utc_now()
                return account
        account = TradingAccount(
            id=self._state.allocate_id(),
            name=name,
            type=account_type,
            venue_id=venue_id,
            share_class_id=share_class_id,
            venue_name=venue.name if venue else None,
        )
        self._state.trading_accounts[account.id] = account
        return account

    async def upsert_basic_account(
        self, name: str, denomination: str, share_class_id: int
    ) -> BasicAccount:
        for account in self._state.basic_accounts.values():
            if account.name == name:
                account.updated_at = utc_now()
                return account
        account = BasicAccount(
            id=self._state.allocate_id(),
            name=name,
            denomination=denomination,
            share_class_id=share_class_id,
        )
        self._state.basic_accounts[account.id] = account
        return account

    async def upsert_triparty_account(
        self, name: str, denomination: str, owner_id: int, venue_id: int
    ) -> TripartyAccount:
        for account in self._state.triparty_accounts.values():
            if account.name == name:
                account.venue_id = venue_id
                account.updated_at = utc_now()
                return account
        account = TripartyAccount(
            id=self._state.allocate_id(),
            name=name,
            denomination=denomination,
            owner_id=owner_id,
            venue_id=venue_id,
        )
        self._state.triparty_accounts[account.id] = account
        return account

    async def find_trading_accounts_with_portfolio(self, share_class_id: int) -> list[TradingAccount]:
        return [
            account
            for account in self._state.trading_accounts.values()
            if account.share_class_id == share_class_id and account.portfolio_id is not None
        ]

    async def find_basic_account(self, share_class_id: int) -> Optional[BasicAccount]:
        for account in self._state.basic_accounts.values():
            if account.share_class_id == share_class_id:
                return account
        return None

    def _share_class_of(self, data: TransferInput) -> Optional[int]:
        # The basic side of a transfer identifies its share class
        basic_id = data.from_account_id if data.from_account_type.value == "BASIC" else data.to_account_id
        basic = self._state.basic_accounts.get(basic_id)
        return basic.share_class_id if basic else None

    async def create_transfers(
        self, inputs: Sequence[TransferInput], skip_duplicates: bool = True
    ) -> int:
        existing_keys = {t.idempotency_key for t in self._state.transfers.values()}
        created = 0
        for data in inputs:
            if data.idempotency_key in existing_keys:
                if skip_duplicates:
                    continue
                raise ValueError(f"duplicate transfer: {data.external_id}")
            transfer = Transfer(**data.__dict__, id=self._state.allocate_id())
            self._state.transfers[transfer.id] = transfer
            share_class_id = self._share_class_of(data)
            if share_class_id is not None:
                self._state.transfer_share_class[transfer.id] = share_class_id
            existing_keys.add(data.idempotency_key)
            created += 1
        return created

    async def find_transfers(self, share_class_id: Optional[int] = None) -> list[Transfer]:
        transfers = sorted(self._state.transfers.values(), key=lambda t: t.id)
        if share_class_id is None:
            return transfers
        return [t for t in transfers if self._state.transfer_share_class.get(t.id) == share_class_id]


class InMemoryLedgerStore:
    """In-memory ledger with snapshot transactions."""

    def __init__(self) -> None:
        self._state = _LedgerState()
        self._slot = asyncio.Lock()

    @property
    def session(self) -> InMemoryLedgerSession:
        """A session outside any transaction (setup and assertions)."""
        return InMemoryLedgerSession(self._state)

    def add_counterparty(self, name: str) -> Counterparty:
        counterparty = Counterparty(id=self._state.allocate_id(), name=name)
        self._state.counterparties[counterparty.id] = counterparty
        return counterparty

    def assign_portfolio(self, account_name: str, portfolio_id: int) -> TradingAccount:
        for account in self._state.trading_accounts.values():
            if account.name == account_name:
                account.portfolio_id = portfolio_id
                return account
        raise KeyError(account_name)

    async def run_in_transaction(
        self,
        fn: Callable[[InMemoryLedgerSession], Awaitable[R]],
        *,
        max_wait: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> R:
        try:
            await asyncio.wait_for(self._slot.acquire(), timeout=max_wait)
        except asyncio.TimeoutError:
            raise TransactionTimeoutError("wait", max_wait or 0.0) from None

        snapshot = copy.deepcopy(self._state)
        try:
            return await asyncio.wait_for(fn(InMemoryLedgerSession(self._state)), timeout=timeout)
        except asyncio.TimeoutError:
            self._state.restore(snapshot)
            raise TransactionTimeoutError("execution", timeout or 0.0) from None
        except BaseException:
            self._state.restore(snapshot)
            raise
        finally:
            self._slot.release()


class InMemoryShareClassRepository:
    def __init__(self, share_classes: Optional[Sequence[ShareClass]] = None):
        self._share_classes: dict[str, ShareClass] = {sc.name: sc for sc in share_classes or []}

    def add(self, share_class: ShareClass) -> None:
        self._share_classes[share_class.name] = share_class

    async def find_with_credentials(self) -> list[ShareClass]:
        return [sc for sc in self._share_classes.values() if sc.has_credentials]


class InMemorySpotQuoteRepository:
    def __init__(self) -> None:
        self._quotes: dict[tuple[str, str, date], SpotQuote] = {}
        self._next_id = 1

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
        key = (symbol.lower(), exchange, price_date)
        quote = self._quotes.get(key)
        if quote is not None:
            quote.price = price
            quote.fetched_at = fetched_at
            quote.original_tm = original_tm
            quote.metadata = metadata
            return quote
        quote = SpotQuote(
            id=self._next_id,
            symbol=symbol.lower(),
            exchange=exchange,
            price_date=price_date,
            price=price,
            fetched_at=fetched_at,
            contract=contract,
            original_tm=original_tm,
            metadata=metadata,
        )
        self._next_id += 1
        self._quotes[key] = quote
        return quote

    def _matching(self, symbol: str, exchange: Optional[str]) -> list[SpotQuote]:
        symbol = symbol.lower()
        return [
            q for q in self._quotes.values()
            if q.symbol == symbol and (exchange is None or q.exchange == exchange)
        ]

    @staticmethod
    def _newest(quotes: list[SpotQuote]) -> Optional[SpotQuote]:
        # Latest date, then latest fetch, then exchange name
        ordered = sorted(quotes, key=lambda q: q.exchange)
        ordered.sort(key=lambda q: (q.price_date, q.fetched_at), reverse=True)
        return ordered[0] if ordered else None

    async def find_by_date(
        self, symbol: str, day: date, exchange: Optional[str] = None
    ) -> Optional[SpotQuote]:
        return self._newest([q for q in self._matching(symbol, exchange) if q.price_date == day])

    async def find_latest_on_or_before(
        self, symbol: str, day: date, exchange: Optional[str] = None
    ) -> Optional[SpotQuote]:
        return self._newest([q for q in self._matching(symbol, exchange) if q.price_date <= day])

    async def find_by_symbol(self, symbol: str) -> list[SpotQuote]:
        return sorted(self._matching(symbol, None), key=lambda q: q.price_date, reverse=True)

    async def find_by_date_range(
        self, symbol: str, from_date: date, to_date: date, exchange: Optional[str] = None
    ) -> list[SpotQuote]:
        quotes = [q for q in self._matching(symbol, exchange) if from_date <= q.price_date <= to_date]
        return sorted(quotes, key=lambda q: q.price_date)

    async def find_dates(self, symbol: str, exchange: str) -> list[date]:
        return sorted({q.price_date for q in self._matching(symbol, exchange)})
