"""
Signal types and the bounded, order-preserving signal queue.

Freshness over completeness: when the queue is full the OLDEST signal is
dropped to admit the newest. A stale signal is worse than a missing one.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, Optional

from ..execution.schema import Direction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Signal:
    """
    An inbound directional suggestion.

    direction: -1 short, 0 no actionable signal, 1 long
    channel: stream subscription it arrived on ("long"/"short"), logging only
    """
    symbol: str
    direction: int
    received_at: datetime = field(default_factory=datetime.utcnow)
    channel: Optional[str] = None

    @property
    def is_actionable(self) -> bool:
        return self.direction != 0

    @property
    def side(self) -> Optional[Direction]:
        return Direction.from_signal(self.direction)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "direction": self.direction,
            "received_at": self.received_at.isoformat(),
            "channel": self.channel,
        }


class SignalQueue:
    """
    Bounded FIFO with a single async consumer.

    put() never blocks: on overflow the oldest entry is evicted.
    get() waits until a signal is available.
    """

    def __init__(self, maxsize: int = 1000):
        if maxsize < 1:
            raise ValueError(f"maxsize must be >= 1, got {maxsize}")
        self.maxsize = maxsize
        self._items: Deque[Signal] = deque()
        self._available = asyncio.Event()
        self.dropped = 0

    def put(self, signal: Signal) -> Optional[Signal]:
        """
        Enqueue a signal.

        Returns:
            The evicted (oldest) signal if the queue was full, else None
        """
        evicted = None
        if len(self._items) >= self.maxsize:
            evicted = self._items.popleft()
            self.dropped += 1
            logger.warning(
                f"[QUEUE] Full ({self.maxsize}), dropped oldest signal "
                f"{evicted.symbol} {evicted.direction} from {evicted.received_at.isoformat()}"
            )
        self._items.append(signal)
        self._available.set()
        return evicted

    async def get(self) -> Signal:
        while not self._items:
            self._available.clear()
            await self._available.wait()
        return self._items.popleft()

    def get_nowait(self) -> Optional[Signal]:
        return self._items.popleft() if self._items else None

    def __len__(self) -> int:
        return len(self._items)

    def empty(self) -> bool:
        return not self._items
