"""
Market sentiment classification.

The index (0..100) is bucketed into five categories. Only Greed readings
allow new longs and only Fear readings allow new shorts; a Neutral market
allows neither. The one exception is the fallback reading used when the
provider is unavailable: Neutral, but permissive in both directions, so an
outage of a third-party API never freezes the service.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List

from ..execution.schema import Direction


class SentimentCategory(Enum):
    EXTREME_FEAR = "Extreme Fear"
    FEAR = "Fear"
    NEUTRAL = "Neutral"
    GREED = "Greed"
    EXTREME_GREED = "Extreme Greed"

    @property
    def is_greed(self) -> bool:
        return self in (SentimentCategory.GREED, SentimentCategory.EXTREME_GREED)

    @property
    def is_fear(self) -> bool:
        return self in (SentimentCategory.FEAR, SentimentCategory.EXTREME_FEAR)


# (lower bound inclusive, category), checked top-down
CATEGORY_THRESHOLDS = (
    (80, SentimentCategory.EXTREME_GREED),
    (65, SentimentCategory.GREED),
    (45, SentimentCategory.NEUTRAL),
    (35, SentimentCategory.FEAR),
)

BREADTH_WEIGHT = 0.7
MAGNITUDE_WEIGHT = 0.3
NEUTRAL_INDEX = 50


def classify_index(index: float) -> SentimentCategory:
    for lower, category in CATEGORY_THRESHOLDS:
        if index >= lower:
            return category
    return SentimentCategory.EXTREME_FEAR


def calculate_index(percent_changes: List[float]) -> int:
    """
    Sentiment index from a basket of percentage price changes.

    index = round(0.7 * breadth + 0.3 * magnitude), clamped to 0..100

    breadth:   share of coins that are up, in percent
    magnitude: avg_gain / (avg_gain + avg_loss) * 100 (50 when both are 0)
    """
    changes = [float(x) for x in percent_changes if x is not None]
    if not changes:
        return NEUTRAL_INDEX

    gains = [x for x in changes if x > 0]
    losses = [x for x in changes if x < 0]

    breadth = len(gains) / len(changes) * 100
    avg_gain = sum(gains) / len(gains) if gains else 0.0
    avg_loss = abs(sum(losses) / len(losses)) if losses else 0.0

    if avg_gain == 0 and avg_loss == 0:
        magnitude = 50.0
    else:
        magnitude = avg_gain / (avg_gain + avg_loss) * 100

    index = round(breadth * BREADTH_WEIGHT + magnitude * MAGNITUDE_WEIGHT)
    return int(min(100, max(0, index)))


@dataclass
class MarketSentiment:
    """A single sentiment reading. Never cached beyond one decision."""
    index: int
    category: SentimentCategory
    can_open_long: bool
    can_open_short: bool
    timestamp: datetime = field(default_factory=datetime.utcnow)
    is_fallback: bool = False

    @classmethod
    def from_index(cls, index: float) -> "MarketSentiment":
        category = classify_index(index)
        return cls(
            index=int(index),
            category=category,
            can_open_long=category.is_greed,
            can_open_short=category.is_fear,
        )

    @classmethod
    def neutral(cls) -> "MarketSentiment":
        """Permissive default used when the provider is unavailable."""
        return cls(
            index=NEUTRAL_INDEX,
            category=SentimentCategory.NEUTRAL,
            can_open_long=True,
            can_open_short=True,
            is_fallback=True,
        )

    def permits(self, direction: Direction) -> bool:
        if direction == Direction.LONG:
            return self.can_open_long
        return self.can_open_short

    def is_extreme_against(self, held: Direction) -> bool:
        """True for ExtremeFear while long, or ExtremeGreed while short."""
        if held == Direction.LONG:
            return self.category == SentimentCategory.EXTREME_FEAR
        return self.category == SentimentCategory.EXTREME_GREED

    def favors(self, direction: Direction) -> bool:
        """True when an extreme reading points the same way as `direction`."""
        if direction == Direction.LONG:
            return self.category == SentimentCategory.EXTREME_GREED
        return self.category == SentimentCategory.EXTREME_FEAR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "category": self.category.value,
            "can_open_long": self.can_open_long,
            "can_open_short": self.can_open_short,
            "timestamp": self.timestamp.isoformat(),
            "is_fallback": self.is_fallback,
        }
