"""
Currency conversion against stored daily USD spot quotes.

Every stored quote is a ``symbol -> USD`` price, so conversions go through
USD: a single multiply or divide when one side is USD, a cross rate
otherwise. Conversion never raises; a missing rate yields ``None``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from ..constants import Defaults
from ..repositories import SpotQuoteRepository
from ..utils import to_utc_date

logger = logging.getLogger("pms.currency.conversion")


@dataclass
class ConversionRequest:
    amount: Decimal
    source_currency: str
    target_currency: str


@dataclass
class ConversionResult:
    original_amount: Decimal
    source_currency: str
    target_currency: str
    converted_amount: Optional[Decimal]

    @property
    def success(self) -> bool:
        return self.converted_amount is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_amount": str(self.original_amount),
            "source_currency": self.source_currency,
            "target_currency": self.target_currency,
            "converted_amount": str(self.converted_amount) if self.success else None,
            "success": self.success,
        }


class CurrencyConversionService:
    """Converts amounts between currencies using historical USD rates.

    Rate lookup normalizes the timestamp to its UTC day, takes the quote for
    that exact day if one exists, and otherwise the latest quote on or before
    that day. Quotes dated after the day are never used.
    """

    def __init__(self, quotes: SpotQuoteRepository, exchange: Optional[str] = None):
        self._quotes = quotes
        # None accepts a quote from any rate source
        self._exchange = exchange

    @property
    def exchange(self) -> Optional[str]:
        return self._exchange

    async def convert(
        self,
        amount: Decimal,
        source_currency: str,
        target_currency: str,
        timestamp: datetime,
    ) -> Optional[Decimal]:
        """Convert ``amount``; returns None when a needed rate is unavailable."""
        source = source_currency.lower()
        target = target_currency.lower()

        if source == target:
            return amount

        try:
            if source == Defaults.USD:
                return await self._from_usd(amount, target, timestamp)
            if target == Defaults.USD:
                return await self._to_usd(amount, source, timestamp)
            return await self._cross(amount, source, target, timestamp)
        except Exception as e:
            logger.error(
                f"Currency conversion error ({source_currency} -> {target_currency}): {e}",
                exc_info=True,
            )
            return None

    async def _to_usd(self, amount: Decimal, currency: str, timestamp: datetime) -> Optional[Decimal]:
        rate = await self._get_rate(currency, timestamp)
        if rate is None:
            return None
        return amount * rate

    async def _from_usd(self, amount: Decimal, currency: str, timestamp: datetime) -> Optional[Decimal]:
        rate = await self._get_rate(currency, timestamp)
        if rate is None or rate == 0:
            return None
        return amount / rate

    async def _cross(
        self, amount: Decimal, source: str, target: str, timestamp: datetime
    ) -> Optional[Decimal]:
        source_rate = await self._get_rate(source, timestamp)
        if source_rate is None:
            return None
        target_rate = await self._get_rate(target, timestamp)
        if target_rate is None or target_rate == 0:
            return None
        return amount * (source_rate / target_rate)

    async def _get_rate(self, symbol: str, timestamp: datetime) -> Optional[Decimal]:
        day = to_utc_date(timestamp)
        try:
            quote = await self._quotes.find_by_date(symbol, day, self._exchange)
            if quote is None:
                quote = await self._quotes.find_latest_on_or_before(symbol, day, self._exchange)
        except Exception as e:
            logger.error(f"Failed to get rate for {symbol} on {day.isoformat()}: {e}")
            return None

        if quote is None:
            logger.warning(f"No rate found for {symbol} on {day.isoformat()}")
            return None
        return quote.price

    async def get_exchange_rate(
        self, source_currency: str, target_currency: str, timestamp: datetime
    ) -> Optional[Decimal]:
        """Units of target per one unit of source."""
        return await self.convert(Decimal(1), source_currency, target_currency, timestamp)

    async def convert_to_usd(
        self, amount: Decimal, source_currency: str, timestamp: datetime
    ) -> Optional[Decimal]:
        return await self.convert(amount, source_currency, Defaults.USD, timestamp)

    async def convert_from_usd(
        self, amount: Decimal, target_currency: str, timestamp: datetime
    ) -> Optional[Decimal]:
        return await self.convert(amount, Defaults.USD, target_currency, timestamp)

    async def convert_multiple(
        self, requests: Sequence[ConversionRequest], timestamp: datetime
    ) -> list[ConversionResult]:
        results = []
        for request in requests:
            converted = await self.convert(
                request.amount, request.source_currency, request.target_currency, timestamp
            )
            results.append(
                ConversionResult(
                    original_amount=request.amount,
                    source_currency=request.source_currency,
                    target_currency=request.target_currency,
                    converted_amount=converted,
                )
            )
        return results

    @staticmethod
    def is_conversion_supported(source_currency: str, target_currency: str) -> bool:
        """Whether a pair can be routed at all; rate availability is checked at convert time."""
        return bool(source_currency.strip()) and bool(target_currency.strip())
