"""
Sentiment providers.

CoinMarketCapSentimentProvider derives the index from the 1h price change of
the top listings. Any failure (network, auth, malformed payload) degrades to
MarketSentiment.neutral() and is logged; it never raises into the trading
path.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import aiohttp

from ..config import SentimentConfig
from .schema import MarketSentiment, calculate_index

logger = logging.getLogger(__name__)


class SentimentProvider(ABC):
    """Source of market sentiment readings."""

    @abstractmethod
    async def get_sentiment(self) -> MarketSentiment:
        pass

    async def close(self) -> None:
        return None


class FixedSentimentProvider(SentimentProvider):
    """Always returns the same index. For paper runs and tests."""

    def __init__(self, index: int = 50, permissive: bool = False):
        self.index = index
        self.permissive = permissive

    async def get_sentiment(self) -> MarketSentiment:
        if self.permissive:
            return MarketSentiment.neutral()
        return MarketSentiment.from_index(self.index)


class CoinMarketCapSentimentProvider(SentimentProvider):
    """
    Breadth/magnitude index over CoinMarketCap's latest listings.

    Usage:
        provider = CoinMarketCapSentimentProvider(api_key=os.getenv("CMC_API_KEY"))
        sentiment = await provider.get_sentiment()
        if sentiment.can_open_long: ...
    """

    API_URL = "https://pro-api.coinmarketcap.com/v1/cryptocurrency/listings/latest"

    def __init__(
        self,
        api_key: str,
        api_url: str = API_URL,
        limit: int = 100,
        timeout_s: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.limit = limit
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.session = session
        self._own_session = False

        if not api_key:
            logger.warning("[SENTIMENT] CMC_API_KEY not set - every reading will fall back to neutral")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
            self._own_session = True
        return self.session

    async def close(self) -> None:
        if self._own_session and self.session and not self.session.closed:
            await self.session.close()

    async def fetch_percent_changes(self) -> List[float]:
        """1h percent change for each of the top `limit` listings."""
        session = await self._get_session()
        headers = {"X-CMC_PRO_API_KEY": self.api_key, "Accept": "application/json"}
        params = {"limit": str(self.limit), "convert": "USD"}

        async with session.get(self.api_url, headers=headers, params=params) as response:
            if response.status >= 400:
                text = await response.text()
                raise RuntimeError(f"CoinMarketCap error {response.status}: {text[:200]}")
            payload = await response.json()

        return [
            coin["quote"]["USD"]["percent_change_1h"]
            for coin in payload.get("data", [])
            if coin.get("quote", {}).get("USD", {}).get("percent_change_1h") is not None
        ]

    async def get_sentiment(self) -> MarketSentiment:
        if not self.api_key:
            return MarketSentiment.neutral()
        try:
            changes = await self.fetch_percent_changes()
        except (aiohttp.ClientError, asyncio.TimeoutError, RuntimeError,
                KeyError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"[SENTIMENT] Provider unavailable, using neutral default: {e!r}")
            return MarketSentiment.neutral()

        if not changes:
            logger.warning("[SENTIMENT] Provider returned no listings, using neutral default")
            return MarketSentiment.neutral()

        sentiment = MarketSentiment.from_index(calculate_index(changes))
        logger.info(
            f"[SENTIMENT] index={sentiment.index} ({sentiment.category.value}) "
            f"long={sentiment.can_open_long} short={sentiment.can_open_short}"
        )
        return sentiment


def create_sentiment_provider(config: SentimentConfig) -> SentimentProvider:
    """Build the provider selected in config.yaml."""
    if config.provider == "fixed":
        return FixedSentimentProvider(index=config.fixed_index)
    return CoinMarketCapSentimentProvider(
        api_key=config.api_key,
        api_url=config.api_url,
        limit=config.limit,
        timeout_s=config.timeout_s,
    )
