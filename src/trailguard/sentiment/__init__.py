"""
Sentiment Module - Which Directions May Be Opened

Usage:
    from trailguard.sentiment import CoinMarketCapSentimentProvider

    sentiment = await provider.get_sentiment()
    if sentiment.permits(Direction.LONG):
        ...
"""

from .schema import (
    MarketSentiment,
    SentimentCategory,
    calculate_index,
    classify_index,
)
from .provider import (
    CoinMarketCapSentimentProvider,
    FixedSentimentProvider,
    SentimentProvider,
    create_sentiment_provider,
)

__all__ = [
    "MarketSentiment",
    "SentimentCategory",
    "calculate_index",
    "classify_index",
    "SentimentProvider",
    "FixedSentimentProvider",
    "CoinMarketCapSentimentProvider",
    "create_sentiment_provider",
]
