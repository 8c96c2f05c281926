"""Tests for currency conversion against stored daily USD quotes."""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from pms_sync.currency.conversion import ConversionRequest, CurrencyConversionService
from sync_helpers import seed_quote, utc


class TestSameCurrency:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("source,target", [("BTC", "BTC"), ("usd", "USD"), ("Eth", "eTH")])
    async def test_identity(self, conversion, source, target):
        """Same currency, any case, returns the amount untouched even with no rates stored."""
        result = await conversion.convert(Decimal("12.34"), source, target, utc(2024, 3, 10))
        assert result == Decimal("12.34")


class TestUsdLegs:
    @pytest.mark.asyncio
    async def test_to_usd_multiplies(self, conversion, quotes):
        """BTC -> USD multiplies by the BTC price."""
        await seed_quote(quotes, "btc", date(2024, 3, 10), "45000")
        result = await conversion.convert(Decimal("1.5"), "BTC", "USD", utc(2024, 3, 10, 15))
        assert result == Decimal("67500")

    @pytest.mark.asyncio
    async def test_from_usd_divides(self, conversion, quotes):
        """USD -> ETH divides by the ETH price."""
        await seed_quote(quotes, "eth", date(2024, 3, 10), "2500")
        result = await conversion.convert(Decimal("5000"), "USD", "ETH", utc(2024, 3, 10))
        assert result == Decimal("2")

    @pytest.mark.asyncio
    async def test_zero_rate_from_usd_fails(self, conversion, quotes):
        """A zero price cannot be divided by and yields None."""
        await seed_quote(quotes, "eth", date(2024, 3, 10), "0")
        assert await conversion.convert(Decimal("1"), "USD", "ETH", utc(2024, 3, 10)) is None


class TestCrossRate:
    @pytest.mark.asyncio
    async def test_cross_rate(self, conversion, quotes):
        """BTC -> ETH uses rate(BTC) / rate(ETH)."""
        await seed_quote(quotes, "btc", date(2024, 3, 10), "45000")
        await seed_quote(quotes, "eth", date(2024, 3, 10), "2500")
        result = await conversion.convert(Decimal("2"), "BTC", "ETH", utc(2024, 3, 10))
        assert result == Decimal("36")

    @pytest.mark.asyncio
    async def test_missing_source_leg(self, conversion, quotes):
        """No rate for the source leg means no conversion."""
        await seed_quote(quotes, "eth", date(2024, 3, 10), "2500")
        assert await conversion.convert(Decimal("2"), "SOL", "ETH", utc(2024, 3, 10)) is None

    @pytest.mark.asyncio
    async def test_missing_target_leg(self, conversion, quotes):
        """No rate for the target leg means no conversion."""
        await seed_quote(quotes, "btc", date(2024, 3, 10), "45000")
        assert await conversion.convert(Decimal("2"), "BTC", "SOL", utc(2024, 3, 10)) is None


class TestRateLookup:
    @pytest.mark.asyncio
    async def test_falls_back_to_latest_earlier_quote(self, conversion, quotes):
        """Without a quote for the day, the most recent earlier one is used."""
        await seed_quote(quotes, "btc", date(2024, 3, 1), "40000")
        await seed_quote(quotes, "btc", date(2024, 3, 5), "42000")
        result = await conversion.convert(Decimal("1"), "BTC", "USD", utc(2024, 3, 8))
        assert result == Decimal("42000")

    @pytest.mark.asyncio
    async def test_never_uses_future_quote(self, conversion, quotes):
        """Quotes dated after the transfer day are ignored."""
        await seed_quote(quotes, "btc", date(2024, 3, 11), "50000")
        assert await conversion.convert(Decimal("1"), "BTC", "USD", utc(2024, 3, 10, 23)) is None

    @pytest.mark.asyncio
    async def test_exact_day_preferred(self, conversion, quotes):
        """An exact-day quote wins over earlier ones."""
        await seed_quote(quotes, "btc", date(2024, 3, 9), "40000")
        await seed_quote(quotes, "btc", date(2024, 3, 10), "45000")
        assert await conversion.convert(Decimal("1"), "BTC", "USD", utc(2024, 3, 10, 6)) == Decimal("45000")

    @pytest.mark.asyncio
    async def test_exchange_filter(self, quotes):
        """A service pinned to one rate source ignores quotes from others."""
        await seed_quote(quotes, "btc", date(2024, 3, 10), "45000", exchange="index")
        service = CurrencyConversionService(quotes, exchange="cmc")
        assert await service.convert(Decimal("1"), "BTC", "USD", utc(2024, 3, 10)) is None

    @pytest.mark.asyncio
    async def test_pinned_exchange_ignores_other_sources(self, quotes):
        """Quotes from a second source on the same day do not leak into conversions."""
        await seed_quote(quotes, "btc", date(2024, 3, 10), "45000", exchange="cmc")
        await seed_quote(quotes, "btc", date(2024, 3, 10), "10", exchange="index")
        service = CurrencyConversionService(quotes, exchange="cmc")
        assert await service.convert(Decimal("2"), "BTC", "USD", utc(2024, 3, 10)) == Decimal("90000")

    @pytest.mark.asyncio
    async def test_repository_error_returns_none(self):
        """Storage errors during lookup are swallowed into None."""
        repo = AsyncMock()
        repo.find_by_date.side_effect = RuntimeError("connection reset")
        service = CurrencyConversionService(repo)
        assert await service.convert(Decimal("1"), "BTC", "USD", utc(2024, 3, 10)) is None


class TestHelpers:
    @pytest.mark.asyncio
    async def test_get_exchange_rate(self, conversion, quotes):
        """The exchange rate is the conversion of one unit."""
        await seed_quote(quotes, "btc", date(2024, 3, 10), "45000")
        assert await conversion.get_exchange_rate("BTC", "USD", utc(2024, 3, 10)) == Decimal("45000")

    @pytest.mark.asyncio
    async def test_convert_to_and_from_usd(self, conversion, quotes):
        """USD shortcuts route through convert."""
        await seed_quote(quotes, "eth", date(2024, 3, 10), "2500")
        assert await conversion.convert_to_usd(Decimal("2"), "ETH", utc(2024, 3, 10)) == Decimal("5000")
        assert await conversion.convert_from_usd(Decimal("5000"), "ETH", utc(2024, 3, 10)) == Decimal("2")

    @pytest.mark.asyncio
    async def test_convert_multiple(self, conversion, quotes):
        """Each request gets a result; failures are flagged, not raised."""
        await seed_quote(quotes, "btc", date(2024, 3, 10), "45000")
        results = await conversion.convert_multiple(
            [
                ConversionRequest(Decimal("1"), "BTC", "USD"),
                ConversionRequest(Decimal("1"), "DOGE", "USD"),
            ],
            utc(2024, 3, 10),
        )
        assert [r.success for r in results] == [True, False]
        assert results[0].to_dict()["converted_amount"] == "45000"
        assert results[1].to_dict()["converted_amount"] is None

    def test_is_conversion_supported(self):
        """Any pair of non-empty codes is routable."""
        assert CurrencyConversionService.is_conversion_supported("BTC", "EUR")
        assert not CurrencyConversionService.is_conversion_supported("", "USD")
