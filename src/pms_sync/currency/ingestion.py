"""
Daily spot quote ingestion, gap detection and backfill.

Quotes are stored one per (symbol, exchange, day). Two kinds of holes are
tracked: days missing from the trailing lookback window, and interior gaps
between consecutive stored days. Backfill fetches the union of both, one
day at a time, oldest first.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence

from ..constants import Defaults
from ..models import DateGap, PriceQuote, SpotQuote
from ..repositories import SpotQuoteRepository
from ..utils import iter_days, to_utc_date, utc_now

logger = logging.getLogger("pms.currency.ingestion")


class QuoteSource(Protocol):
    async def get_historical_prices(
        self, symbols: Sequence[str], exchange: str, day: date
    ) -> list[PriceQuote]: ...


def detect_date_gaps(dates: Iterable[date]) -> list[DateGap]:
    """Scan sorted distinct dates for runs of missing days between neighbours."""
    ordered = sorted(set(dates))
    gaps = []
    for previous, current in zip(ordered, ordered[1:]):
        diff = (current - previous).days
        if diff > 1:
            gaps.append(
                DateGap(
                    start_date=previous + timedelta(days=1),
                    end_date=current - timedelta(days=1),
                    missing_days=diff - 1,
                )
            )
    return gaps


def dates_in_gaps(gaps: Iterable[DateGap]) -> set[date]:
    days: set[date] = set()
    for gap in gaps:
        days.update(iter_days(gap.start_date, gap.end_date))
    return days


@dataclass
class SymbolBackfillAnalysis:
    symbol: str
    available_days: int
    missing_recent_days: int
    gaps: list[DateGap] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def needs_backfill(self) -> bool:
        return self.missing_recent_days > 0 or bool(self.gaps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "available_days": self.available_days,
            "missing_recent_days": self.missing_recent_days,
            "gaps": [g.to_dict() for g in self.gaps],
            "needs_backfill": self.needs_backfill,
            "error": self.error,
        }


@dataclass
class BackfillAnalysis:
    lookback_days: int
    symbols: list[SymbolBackfillAnalysis]

    @property
    def needs_backfill(self) -> bool:
        return any(s.needs_backfill for s in self.symbols)


@dataclass
class BackfillSummary:
    date_range: str
    total_days: int
    processed_days: int
    skipped_days: int
    total_rates_stored: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "date_range": self.date_range,
            "total_days": self.total_days,
            "processed_days": self.processed_days,
            "skipped_days": self.skipped_days,
            "total_rates_stored": self.total_rates_stored,
        }


@dataclass
class DailyRatesSummary:
    date: date
    rates_stored: int
    currencies: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_quotes(cls, day: date, quotes: Sequence[SpotQuote]) -> "DailyRatesSummary":
        return cls(
            date=day,
            rates_stored=len(quotes),
            currencies=[{"symbol": q.symbol, "price": str(q.price)} for q in quotes],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "rates_stored": self.rates_stored,
            "currencies": self.currencies,
        }


class SpotQuoteIngestionService:
    """Fetches daily USD quotes, stores them, and fills holes in the history."""

    def __init__(
        self,
        quotes: SpotQuoteRepository,
        source: QuoteSource,
        *,
        symbols: Sequence[str] = Defaults.CURRENCIES,
        exchange: str = Defaults.CURRENCY_EXCHANGE,
        backfill_days: int = Defaults.BACKFILL_DAYS,
        request_delay: float = Defaults.BACKFILL_REQUEST_DELAY,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._quotes = quotes
        self._source = source
        self.symbols = list(symbols)
        self.exchange = exchange
        self.backfill_days = backfill_days
        self._request_delay = request_delay
        self._clock = clock

    def today(self) -> date:
        return to_utc_date(self._clock())

    # ------------------------------------------------------------------
    # Fetch + store
    # ------------------------------------------------------------------

    async def fetch_and_store_daily_rates(
        self,
        day: date | datetime,
        symbols: Optional[Sequence[str]] = None,
        exchange: Optional[str] = None,
    ) -> list[SpotQuote]:
        """Fetch one UTC day of quotes and upsert each symbol.

        API errors propagate to the caller; a failed write for one symbol is
        logged and skipped.
        """
        day = to_utc_date(day)
        symbols = list(symbols or self.symbols)
        exchange = exchange or self.exchange
        logger.info(
            f"Fetching historical rates for {day.isoformat()}",
            extra={"symbols": symbols, "exchange": exchange},
        )

        prices = await self._source.get_historical_prices(symbols, exchange, day)
        if not prices:
            logger.warning(f"No price data returned for {day.isoformat()}")
            return []

        stored: list[SpotQuote] = []
        fetched_at = self._clock()
        for price in prices:
            if not price.symbol:
                logger.warning(f"Could not extract symbol from contract: {price.contract}")
                continue
            try:
                quote = await self._quotes.upsert_quote(
                    symbol=price.symbol.lower(),
                    exchange=exchange,
                    price_date=day,
                    price=price.price,
                    fetched_at=fetched_at,
                    contract=price.contract,
                    original_tm=price.timestamp,
                    metadata=price.raw or None,
                )
            except Exception as e:
                logger.error(f"Failed to store rate for {price.contract}: {e}")
                continue
            stored.append(quote)

        logger.info(f"Stored {len(stored)} historical rates for {day.isoformat()}")
        return stored

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def _window(self, lookback_days: int) -> tuple[date, date]:
        # Today's quote cannot exist yet, so the window ends yesterday
        end = self.today() - timedelta(days=1)
        return end - timedelta(days=lookback_days - 1), end

    async def _available_dates(self, symbol: str, lookback_days: int) -> list[date]:
        start, end = self._window(lookback_days)
        records = await self._quotes.find_by_date_range(symbol.lower(), start, end, self.exchange)
        return sorted({r.price_date for r in records})

    async def get_available_dates(self, symbol: str, lookback_days: Optional[int] = None) -> list[date]:
        """Stored days for ``symbol`` within the trailing window; [] on error."""
        try:
            return await self._available_dates(symbol, lookback_days or self.backfill_days)
        except Exception as e:
            logger.error(f"Failed to get available dates for {symbol}: {e}")
            return []

    async def detect_gaps(self, symbol: str, exchange: Optional[str] = None) -> list[DateGap]:
        dates = await self._quotes.find_dates(symbol.lower(), exchange or self.exchange)
        return detect_date_gaps(dates)

    async def analyze_backfill_requirement(
        self,
        symbols: Optional[Sequence[str]] = None,
        lookback_days: Optional[int] = None,
    ) -> BackfillAnalysis:
        lookback_days = lookback_days or self.backfill_days
        analyses = []
        for symbol in symbols or self.symbols:
            try:
                available = await self._available_dates(symbol, lookback_days)
                gaps = await self.detect_gaps(symbol)
                analysis = SymbolBackfillAnalysis(
                    symbol=symbol,
                    available_days=len(available),
                    missing_recent_days=max(0, lookback_days - len(available)),
                    gaps=gaps,
                )
            except Exception as e:
                logger.warning(f"Error checking backfill for {symbol}, assuming backfill needed: {e}")
                analysis = SymbolBackfillAnalysis(
                    symbol=symbol,
                    available_days=0,
                    missing_recent_days=lookback_days,
                    error=str(e),
                )
            if analysis.gaps:
                total = sum(g.missing_days for g in analysis.gaps)
                logger.info(f"{symbol} has {len(analysis.gaps)} gaps totaling {total} missing days")
            analyses.append(analysis)

        result = BackfillAnalysis(lookback_days=lookback_days, symbols=analyses)
        if result.needs_backfill:
            logger.info("Backfill required: found missing data or gaps")
        else:
            logger.info("All currencies have complete historical data")
        return result

    async def check_backfill_required(
        self,
        symbols: Optional[Sequence[str]] = None,
        lookback_days: Optional[int] = None,
    ) -> bool:
        analysis = await self.analyze_backfill_requirement(symbols, lookback_days)
        return analysis.needs_backfill

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    async def missing_dates(
        self,
        symbols: Optional[Sequence[str]] = None,
        lookback_days: Optional[int] = None,
    ) -> list[date]:
        """Union over symbols of missing window days and interior gap days, ascending."""
        lookback_days = lookback_days or self.backfill_days
        start, end = self._window(lookback_days)
        window = set(iter_days(start, end))

        missing: set[date] = set()
        for symbol in symbols or self.symbols:
            try:
                available = set(await self._available_dates(symbol, lookback_days))
                gaps = await self.detect_gaps(symbol)
            except Exception as e:
                logger.warning(f"Failed to analyze {symbol}, refetching the whole window: {e}")
                missing |= window
                continue
            missing |= window - available
            missing |= dates_in_gaps(gaps)
        return sorted(missing)

    async def backfill_missing_dates(
        self,
        symbols: Optional[Sequence[str]] = None,
        lookback_days: Optional[int] = None,
    ) -> BackfillSummary:
        symbols = list(symbols or self.symbols)
        dates = await self.missing_dates(symbols, lookback_days)
        logger.info(f"Found {len(dates)} missing dates to fetch")

        processed = 0
        stored = 0
        for index, day in enumerate(dates):
            if index and self._request_delay > 0:
                await asyncio.sleep(self._request_delay)
            try:
                quotes = await self.fetch_and_store_daily_rates(day, symbols)
            except Exception as e:
                logger.warning(f"Failed to fetch rates for {day.isoformat()}: {e}")
                continue
            processed += 1
            stored += len(quotes)

        if dates:
            date_range = f"{dates[0].isoformat()} to {dates[-1].isoformat()}"
        else:
            date_range = "No missing dates"
        return BackfillSummary(
            date_range=date_range,
            total_days=len(dates),
            processed_days=processed,
            skipped_days=len(dates) - processed,
            total_rates_stored=stored,
        )
