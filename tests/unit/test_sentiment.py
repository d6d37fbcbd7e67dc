"""
Sentiment index, classification, and provider fallback.
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock

import aiohttp
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from trailguard.config import SentimentConfig
from trailguard.execution.schema import Direction
from trailguard.sentiment import (
    CoinMarketCapSentimentProvider,
    FixedSentimentProvider,
    MarketSentiment,
    SentimentCategory,
    calculate_index,
    classify_index,
    create_sentiment_provider,
)


class TestIndex:

    def test_mixed_basket(self):
        # breadth 50, magnitude 1.5 / 2.5 = 60 -> 35 + 18
        assert calculate_index([1.0, 2.0, -1.0, -1.0]) == 53

    def test_all_up(self):
        assert calculate_index([0.5, 1.0, 3.0]) == 100

    def test_all_down(self):
        assert calculate_index([-0.5, -1.0]) == 0

    def test_empty_basket_is_neutral(self):
        assert calculate_index([]) == 50

    def test_unchanged_basket_counts_as_not_up(self):
        # breadth 0, magnitude 50 -> 15
        assert calculate_index([0.0, 0.0]) == 15

    def test_missing_values_ignored(self):
        assert calculate_index([None, 1.0]) == 100

    @pytest.mark.parametrize("index,category", [
        (100, SentimentCategory.EXTREME_GREED),
        (80, SentimentCategory.EXTREME_GREED),
        (79, SentimentCategory.GREED),
        (65, SentimentCategory.GREED),
        (64, SentimentCategory.NEUTRAL),
        (45, SentimentCategory.NEUTRAL),
        (44, SentimentCategory.FEAR),
        (35, SentimentCategory.FEAR),
        (34, SentimentCategory.EXTREME_FEAR),
        (0, SentimentCategory.EXTREME_FEAR),
    ])
    def test_thresholds(self, index, category):
        assert classify_index(index) == category


class TestMarketSentiment:

    def test_greed_permits_long_only(self):
        s = MarketSentiment.from_index(70)
        assert s.permits(Direction.LONG) is True
        assert s.permits(Direction.SHORT) is False

    def test_fear_permits_short_only(self):
        s = MarketSentiment.from_index(20)
        assert s.permits(Direction.LONG) is False
        assert s.permits(Direction.SHORT) is True

    def test_neutral_reading_permits_neither(self):
        s = MarketSentiment.from_index(50)
        assert s.can_open_long is False
        assert s.can_open_short is False
        assert s.is_fallback is False

    def test_fallback_is_permissive(self):
        s = MarketSentiment.neutral()
        assert s.category == SentimentCategory.NEUTRAL
        assert s.can_open_long and s.can_open_short
        assert s.is_fallback is True

    def test_extremes(self):
        fear = MarketSentiment.from_index(10)
        greed = MarketSentiment.from_index(90)
        assert fear.is_extreme_against(Direction.LONG)
        assert not fear.is_extreme_against(Direction.SHORT)
        assert greed.is_extreme_against(Direction.SHORT)
        assert fear.favors(Direction.SHORT)
        assert greed.favors(Direction.LONG)
        assert not MarketSentiment.from_index(70).favors(Direction.LONG)


class TestProviders:

    @pytest.mark.asyncio
    async def test_fixed_provider(self):
        s = await FixedSentimentProvider(index=85).get_sentiment()
        assert s.category == SentimentCategory.EXTREME_GREED

    @pytest.mark.asyncio
    async def test_missing_key_falls_back(self):
        provider = CoinMarketCapSentimentProvider(api_key="")
        s = await provider.get_sentiment()
        assert s.is_fallback is True

    @pytest.mark.asyncio
    async def test_provider_error_falls_back(self):
        provider = CoinMarketCapSentimentProvider(api_key="key")
        provider.fetch_percent_changes = AsyncMock(side_effect=aiohttp.ClientError("boom"))

        s = await provider.get_sentiment()

        assert s.is_fallback is True
        assert s.can_open_long and s.can_open_short

    @pytest.mark.asyncio
    async def test_empty_listing_falls_back(self):
        provider = CoinMarketCapSentimentProvider(api_key="key")
        provider.fetch_percent_changes = AsyncMock(return_value=[])
        assert (await provider.get_sentiment()).is_fallback is True

    @pytest.mark.asyncio
    async def test_live_reading(self):
        provider = CoinMarketCapSentimentProvider(api_key="key")
        provider.fetch_percent_changes = AsyncMock(return_value=[1.0, 2.0, 0.5, -0.1])

        s = await provider.get_sentiment()

        assert s.is_fallback is False
        assert s.category == SentimentCategory.EXTREME_GREED

    def test_factory(self):
        assert isinstance(create_sentiment_provider(SentimentConfig(provider="fixed")), FixedSentimentProvider)
        assert isinstance(create_sentiment_provider(SentimentConfig()), CoinMarketCapSentimentProvider)
