"""
Price conversion service — fiat <-> fiat and fiat <-> token amounts.

Only an explicit set of direct pairs is supported. Each pair is computed
from the live spot rates it needs (oracle ETH/USD, configured NGN/USD,
USDT pegged to USD); there is no chained inference through intermediate
currencies, so an unsupported pair fails fast with UnsupportedPairError
instead of silently compounding rate error.

Rates are read point-in-time on every call (no caching). A rate source
that cannot answer raises FeedUnavailableError; callers decide per call
whether to fall back to the original currency.

All arithmetic is decimal.Decimal.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Protocol

from settlement_engine.exceptions import ConversionError, FeedUnavailableError, UnsupportedPairError
from settlement_engine.services.units import to_decimal

logger = logging.getLogger(__name__)

# Rate names. NGN_USD is quoted as naira per dollar.
ETH_USD = "ETH_USD"
USDT_USD = "USDT_USD"
NGN_USD = "NGN_USD"

RateFn = Callable[[Decimal, dict[str, Decimal]], Decimal]

SUPPORTED_PAIRS: dict[tuple[str, str], tuple[tuple[str, ...], RateFn]] = {
    ("NGN", "USD"): ((NGN_USD,), lambda amt, r: amt / r[NGN_USD]),
    ("USD", "NGN"): ((NGN_USD,), lambda amt, r: amt * r[NGN_USD]),
    ("USD", "ETH"): ((ETH_USD,), lambda amt, r: amt / r[ETH_USD]),
    ("NGN", "ETH"): ((NGN_USD, ETH_USD), lambda amt, r: (amt / r[NGN_USD]) / r[ETH_USD]),
    ("NGN", "USDT"): ((NGN_USD, USDT_USD), lambda amt, r: (amt / r[NGN_USD]) / r[USDT_USD]),
    ("USD", "USDT"): ((USDT_USD,), lambda amt, r: amt / r[USDT_USD]),
    ("USDT", "USD"): ((USDT_USD,), lambda amt, r: amt * r[USDT_USD]),
    ("USDT", "NGN"): ((USDT_USD, NGN_USD), lambda amt, r: amt * r[USDT_USD] * r[NGN_USD]),
}


class RateSource(Protocol):
    """Anything that can quote a named spot rate (e.g. "ETH_USD")."""

    async def get_rate(self, name: str) -> Decimal: ...


@dataclass
class StaticRateSource:
    """
    Rate source backed by fixed values.

    Used for configured fiat/fiat rates, local runs and tests. A rate that
    was never configured behaves like an unavailable feed.
    """

    rates: dict[str, Decimal] = field(default_factory=dict)

    async def get_rate(self, name: str) -> Decimal:
        rate = self.rates.get(name)
        if rate is None:
            raise FeedUnavailableError(f"No rate configured for {name}")
        return Decimal(rate)


class PriceConversionService:
    """Converts amounts between supported currency pairs using a RateSource."""

    def __init__(self, rate_source: RateSource):
        self._rate_source = rate_source

    @staticmethod
    def supports(from_currency: str, to_currency: str) -> bool:
        from_upper, to_upper = from_currency.upper(), to_currency.upper()
        return from_upper == to_upper or (from_upper, to_upper) in SUPPORTED_PAIRS

    async def convert(self, from_currency: str, to_currency: str, amount) -> Decimal:
        """
        Convert `amount` from one currency to another.

        Raises:
            UnsupportedPairError: No direct pair exists.
            FeedUnavailableError: A required rate could not be read.
        """
        from_upper, to_upper = from_currency.upper(), to_currency.upper()
        value = to_decimal(amount)

        if from_upper == to_upper:
            return value

        pair = SUPPORTED_PAIRS.get((from_upper, to_upper))
        if pair is None:
            raise UnsupportedPairError(from_upper, to_upper)

        rate_names, compute = pair
        rates = {name: await self._read_rate(name) for name in rate_names}
        converted = compute(value, rates)

        logger.debug(
            "Converted %s %s -> %s %s (rates=%s)",
            value, from_upper, converted, to_upper, rates,
        )
        return converted

    async def _read_rate(self, name: str) -> Decimal:
        try:
            rate = await self._rate_source.get_rate(name)
        except ConversionError:
            raise
        except Exception as exc:
            raise FeedUnavailableError(f"Failed to read price feed {name}: {exc}") from exc
        if rate is None or rate <= 0:
            raise FeedUnavailableError(f"Price feed {name} returned a non-positive rate: {rate}")
        return rate
