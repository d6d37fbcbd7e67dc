"""
Execution Schema - What the Venue Tells Us

The venue is the source of truth. Position and AccountState are snapshots
of venue state at query time; nothing in here is ever mutated locally to
"predict" what an action did. Re-query instead.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union


class ExecutionMode(Enum):
    """
    Execution mode - IMMUTABLE after initialization.

    You cannot switch from PAPER to LIVE at runtime.
    """
    PAPER = "paper"
    LIVE = "live"


class Direction(Enum):
    """Position direction. Values match the signal stream (-1 short, 1 long)."""
    LONG = 1
    SHORT = -1

    @property
    def label(self) -> str:
        return self.name.lower()

    @property
    def opposite(self) -> "Direction":
        return Direction.SHORT if self is Direction.LONG else Direction.LONG

    @classmethod
    def from_signal(cls, value: int) -> Optional["Direction"]:
        """Map a signal value to a direction. 0 means no actionable signal."""
        if value == 1:
            return cls.LONG
        if value == -1:
            return cls.SHORT
        return None

    @classmethod
    def parse(cls, value: Union[str, int, "Direction"]) -> "Direction":
        """
        Parse user input ("long", "short", "1", "-1", 1, -1).

        Raises:
            ValueError: If the value is not a direction
        """
        if isinstance(value, Direction):
            return value
        text = str(value).strip().lower()
        if text in ("long", "1", "+1", "buy"):
            return cls.LONG
        if text in ("short", "-1", "sell"):
            return cls.SHORT
        raise ValueError(f"Not a direction: {value!r} (expected long/short or 1/-1)")


@dataclass
class Position:
    """
    An open position as reported by the venue.

    size is signed the way the venue reports it; use abs_size for P&L math.
    """
    symbol: str
    direction: Direction
    size: float
    entry_price: float
    mark_price: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.size != 0

    @property
    def abs_size(self) -> float:
        return abs(self.size)

    @property
    def cost_of_trades(self) -> float:
        """Notional paid at entry."""
        return self.abs_size * self.entry_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "direction": self.direction.label,
            "size": self.size,
            "entry_price": self.entry_price,
            "mark_price": self.mark_price,
        }


@dataclass
class AccountState:
    """Account equity (includes unrealized P&L of open positions)."""
    balance: float
    as_of: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {"balance": self.balance, "as_of": self.as_of.isoformat()}
