"""
Live rate source for the price conversion service.

  ETH_USD   Chainlink aggregator latestRoundData / 10**decimals
  USDT_USD  pegged at 1
  NGN_USD   configured (naira per dollar), no on-chain feed exists
"""

import logging
from decimal import Decimal

from web3 import AsyncHTTPProvider, AsyncWeb3

from settlement_engine.clients.abi import AGGREGATOR_V3_ABI
from settlement_engine.exceptions import FeedUnavailableError
from settlement_engine.services.pricing import ETH_USD, NGN_USD, USDT_USD

logger = logging.getLogger(__name__)


class ChainlinkRateSource:
    def __init__(self, w3: AsyncWeb3 | None, eth_usd_feed: str | None, ngn_usd_rate: Decimal | None):
        self._w3 = w3
        self._eth_usd_feed = eth_usd_feed
        self._ngn_usd_rate = ngn_usd_rate

    @classmethod
    def from_settings(cls, price_rpc_url: str, eth_usd_feed: str, ngn_usd_rate: Decimal | None):
        w3 = AsyncWeb3(AsyncHTTPProvider(price_rpc_url)) if price_rpc_url else None
        return cls(w3, eth_usd_feed or None, ngn_usd_rate)

    async def get_rate(self, name: str) -> Decimal:
        if name == USDT_USD:
            return Decimal("1")
        if name == NGN_USD:
            if self._ngn_usd_rate is None:
                raise FeedUnavailableError("NGN_USD_RATE is not configured")
            return Decimal(self._ngn_usd_rate)
        if name == ETH_USD:
            return await self._read_aggregator(self._eth_usd_feed)
        raise FeedUnavailableError(f"No feed for {name}")

    async def _read_aggregator(self, feed_address: str | None) -> Decimal:
        if self._w3 is None or not feed_address:
            raise FeedUnavailableError("Price feed RPC or feed address not configured")
        feed = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(feed_address),
            abi=AGGREGATOR_V3_ABI,
        )
        try:
            decimals = await feed.functions.decimals().call()
            round_data = await feed.functions.latestRoundData().call()
        except Exception as exc:
            raise FeedUnavailableError(f"Failed to read price feed {feed_address}: {exc}") from exc

        answer = round_data[1]
        logger.debug("Feed %s answered %s (%s decimals)", feed_address, answer, decimals)
        return Decimal(answer).scaleb(-int(decimals))
