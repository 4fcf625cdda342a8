"""
Tests for the price conversion service.

These tests verify:
  - Each supported direct pair computes from its spot rates
  - Identical currencies pass through unchanged
  - Unsupported pairs fail fast (no chained inference)
  - Rate source failures surface as FeedUnavailableError
"""

from decimal import Decimal

import pytest

from settlement_engine.exceptions import ConversionError, FeedUnavailableError, UnsupportedPairError
from settlement_engine.services.pricing import (
    ETH_USD,
    NGN_USD,
    PriceConversionService,
    StaticRateSource,
)


class BrokenRateSource:
    """A rate source whose upstream call blows up."""

    async def get_rate(self, name):
        raise RuntimeError("rpc timeout")


@pytest.fixture
def prices(rate_source) -> PriceConversionService:
    return PriceConversionService(rate_source)


class TestSupportedPairs:
    async def test_ngn_to_usd(self, prices):
        assert await prices.convert("NGN", "USD", Decimal("15000")) == Decimal("10")

    async def test_usd_to_ngn(self, prices):
        assert await prices.convert("USD", "NGN", "2.5") == Decimal("3750")

    async def test_ngn_to_usdt(self, prices):
        assert await prices.convert("NGN", "USDT", Decimal("7500")) == Decimal("5")

    async def test_usdt_to_ngn(self, prices):
        assert await prices.convert("USDT", "NGN", Decimal("5")) == Decimal("7500")

    async def test_usd_to_eth(self, prices):
        assert await prices.convert("USD", "ETH", Decimal("1500")) == Decimal("0.5")

    async def test_ngn_to_eth(self, prices):
        assert await prices.convert("NGN", "ETH", Decimal("4500000")) == Decimal("1")

    async def test_currency_codes_are_case_insensitive(self, prices):
        assert await prices.convert("ngn", "usd", Decimal("1500")) == Decimal("1")


class TestPassThroughAndRejection:
    async def test_identical_currency_returns_amount(self):
        """No rate is read for an identity conversion, even from an empty source."""
        prices = PriceConversionService(StaticRateSource())
        assert await prices.convert("NGN", "ngn", Decimal("12.34")) == Decimal("12.34")

    async def test_unsupported_pair(self, prices):
        with pytest.raises(UnsupportedPairError) as exc_info:
            await prices.convert("ETH", "NGN", Decimal("1"))
        assert exc_info.value.detail == "Unsupported pair: ETH/NGN"

    async def test_no_chained_inference(self, prices):
        """EUR -> USDT would need EUR -> USD -> USDT; it is refused."""
        with pytest.raises(UnsupportedPairError):
            await prices.convert("EUR", "USDT", Decimal("1"))

    def test_supports(self):
        assert PriceConversionService.supports("NGN", "USDT")
        assert PriceConversionService.supports("EUR", "EUR")
        assert not PriceConversionService.supports("ETH", "NGN")


class TestFeedFailures:
    async def test_missing_rate(self):
        prices = PriceConversionService(StaticRateSource({ETH_USD: Decimal("3000")}))
        with pytest.raises(FeedUnavailableError):
            await prices.convert("NGN", "USD", Decimal("1500"))

    async def test_unexpected_source_error_is_wrapped(self):
        prices = PriceConversionService(BrokenRateSource())
        with pytest.raises(FeedUnavailableError) as exc_info:
            await prices.convert("USD", "ETH", Decimal("1"))
        assert "rpc timeout" in exc_info.value.detail
        assert isinstance(exc_info.value, ConversionError)

    async def test_non_positive_rate(self):
        prices = PriceConversionService(StaticRateSource({NGN_USD: Decimal("0")}))
        with pytest.raises(FeedUnavailableError):
            await prices.convert("USD", "NGN", Decimal("1"))
