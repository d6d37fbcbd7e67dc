"""
Per-symbol risk state.

One RiskState per symbol, owned and mutated exclusively by that symbol's
SymbolPositionManager. Nothing else writes to it.
"""

from dataclasses import dataclass, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..config import SymbolSettings
from ..execution.schema import Direction


class Phase(Enum):
    FLAT = "flat"
    OPENING = "opening"
    MONITORING = "monitoring"
    CLOSING = "closing"


@dataclass
class RiskState:
    """
    Lifecycle and protection state of one symbol's position.

    Invariants:
    - is_closing => no second close attempt may start
    - trailing_stop_price only moves in the holder's favor
    - hit counters reset to 0 on any tick their condition did not hold
    """
    phase: Phase = Phase.FLAT
    direction: Optional[Direction] = None
    entry_price: float = 0.0
    size: float = 0.0
    entry_balance: float = 0.0
    highest_progress_pct: float = 0.0
    lowest_progress_pct: float = 0.0
    take_profit_hits: int = 0
    stop_loss_hits: int = 0
    trailing_stop_hits: int = 0
    trailing_stop_price: Optional[float] = None
    trailing_activated: bool = False
    is_closing: bool = False
    opened_at: Optional[datetime] = None
    last_progress_pct: Optional[float] = None
    last_mark_price: Optional[float] = None
    last_dollar_pnl: Optional[float] = None
    settings: Optional[SymbolSettings] = None
    position_id: Optional[str] = None
    trade_id: Optional[str] = None

    @property
    def has_position(self) -> bool:
        return self.phase in (Phase.MONITORING, Phase.CLOSING)

    def reset(self) -> None:
        """Back to FLAT with every field at its default."""
        for f in fields(self):
            setattr(self, f.name, f.default)

    def reset_counters(self) -> None:
        self.take_profit_hits = 0
        self.stop_loss_hits = 0
        self.trailing_stop_hits = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "direction": self.direction.label if self.direction else None,
            "entry_price": self.entry_price,
            "size": self.size,
            "entry_balance": self.entry_balance,
            "highest_progress_pct": self.highest_progress_pct,
            "lowest_progress_pct": self.lowest_progress_pct,
            "take_profit_hits": self.take_profit_hits,
            "stop_loss_hits": self.stop_loss_hits,
            "trailing_stop_hits": self.trailing_stop_hits,
            "trailing_stop_price": self.trailing_stop_price,
            "trailing_activated": self.trailing_activated,
            "is_closing": self.is_closing,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "last_progress_pct": self.last_progress_pct,
            "last_mark_price": self.last_mark_price,
        }
