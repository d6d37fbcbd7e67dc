"""
Risk Algorithm - Balance-Impact Progress, Trailing Stop, Debounced Exits

Progress is measured as BALANCE IMPACT, not raw price delta, so leverage
and position size are accounted for implicitly:

    price_diff    = mark - entry        (LONG)   |  entry - mark  (SHORT)
    dollar_pnl    = price_diff * |size|
    entry_balance = balance - dollar_pnl          (balance at entry, inferred)
    progress_pct  = dollar_pnl / entry_balance * 100

Trailing stop (all levels in progress percent):
- before activation the stop sits at   highest - activation_pct
- once progress >= activation_pct     highest - trail_pct
- a level converts to a price with     entry +/- level * entry_balance / (|size| * 100)
- the price only ever moves in the holder's favor (up for LONG, down for SHORT)

Exit conditions, in priority order, each with its own consecutive-hit
counter:
    1. stop-loss      progress <= -stop_loss_pct
    2. take-profit    progress >= take_profit_pct
    3. trailing stop  LONG mark <= stop | SHORT mark >= stop

Per tick the first condition that holds is the ACTIVE one: its counter
increments and every other counter resets to 0. If none holds, all reset.
A counter reaching confirmation_hit_count yields the close reason.

Everything here is pure (no I/O) so it can be tested tick by tick.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from ..config import SymbolSettings
from ..execution.schema import Direction, Position
from .state import Phase, RiskState


class RiskCondition(Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"

    @property
    def reason(self) -> str:
        return CLOSE_REASONS[self]


CLOSE_REASONS = {
    RiskCondition.STOP_LOSS: "Stop loss hit",
    RiskCondition.TAKE_PROFIT: "Take profit hit",
    RiskCondition.TRAILING_STOP: "Trailing stop hit",
}


@dataclass
class Progress:
    """Balance-impact view of an open position at one mark price."""
    price_diff: float
    dollar_pnl: float
    entry_balance: float
    progress_pct: float


@dataclass
class TickResult:
    """Outcome of one monitoring tick."""
    progress: Progress
    mark_price: float
    active_condition: Optional[RiskCondition]
    hits: int
    close_reason: Optional[str]
    trailing_stop_price: Optional[float]
    activated_now: bool = False
    stop_moved: bool = False


def price_diff(direction: Direction, entry_price: float, mark_price: float) -> float:
    if direction == Direction.LONG:
        return mark_price - entry_price
    return entry_price - mark_price


def compute_progress(
    direction: Direction,
    entry_price: float,
    mark_price: float,
    size: float,
    balance: float,
) -> Progress:
    """
    Balance-impact progress of a position.

    Raises:
        ValueError: If the inferred entry balance is not positive
    """
    diff = price_diff(direction, entry_price, mark_price)
    dollar_pnl = diff * abs(size)
    entry_balance = balance - dollar_pnl
    if entry_balance <= 0:
        raise ValueError(
            f"Inferred entry balance must be > 0 (balance={balance}, pnl={dollar_pnl})"
        )
    return Progress(
        price_diff=diff,
        dollar_pnl=dollar_pnl,
        entry_balance=entry_balance,
        progress_pct=dollar_pnl / entry_balance * 100,
    )


def calculate_tp_sl_prices(
    direction: Direction,
    price: float,
    take_profit_pct: float,
    stop_loss_pct: float,
) -> Tuple[float, float]:
    """
    Plain price-percentage take-profit and stop-loss levels.

    LONG 100 with 3.6 / 1.8 -> (103.6, 98.2). SHORT is mirrored.
    """
    tp = take_profit_pct / 100
    sl = stop_loss_pct / 100
    if direction == Direction.LONG:
        return price * (1 + tp), price * (1 - sl)
    return price * (1 - tp), price * (1 + sl)


def level_to_price(
    direction: Direction,
    entry_price: float,
    level_pct: float,
    entry_balance: float,
    size: float,
) -> float:
    """Mark price at which progress would equal `level_pct`."""
    offset = level_pct * entry_balance / (abs(size) * 100)
    if direction == Direction.LONG:
        return entry_price + offset
    return entry_price - offset


def ratchet(direction: Direction, current: Optional[float], candidate: float) -> float:
    """Keep whichever stop locks in more for the holder."""
    if current is None:
        return candidate
    if direction == Direction.LONG:
        return max(current, candidate)
    return min(current, candidate)


def stop_level_pct(state: RiskState) -> float:
    trailing = state.settings.trailing
    if state.trailing_activated:
        return state.highest_progress_pct - trailing.trail_pct
    return state.highest_progress_pct - trailing.activation_pct


def update_trailing_stop(state: RiskState) -> bool:
    """
    Recompute the candidate stop and ratchet it in.

    Returns:
        True if the stop price moved
    """
    candidate = level_to_price(
        state.direction,
        state.entry_price,
        stop_level_pct(state),
        state.entry_balance,
        state.size,
    )
    previous = state.trailing_stop_price
    state.trailing_stop_price = ratchet(state.direction, previous, candidate)
    return state.trailing_stop_price != previous


def trailing_breached(direction: Direction, mark_price: float, stop_price: Optional[float]) -> bool:
    if stop_price is None:
        return False
    if direction == Direction.LONG:
        return mark_price <= stop_price
    return mark_price >= stop_price


def seed_risk_state(
    state: RiskState,
    position: Position,
    mark_price: float,
    balance: float,
    settings: SymbolSettings,
    opened_at: Optional[datetime] = None,
) -> None:
    """
    Initialize a RiskState for a freshly confirmed (or reconciled) position.

    The entry balance is inferred from the current balance and the open P&L
    at `mark_price`. Settings are snapshotted so later config changes cannot
    touch this position. The seed mark counts as the first observation, so a
    reconciled position already past activation starts with an active stop.
    """
    progress = compute_progress(
        position.direction, position.entry_price, mark_price, position.size, balance
    )
    state.reset()
    state.phase = Phase.MONITORING
    state.direction = position.direction
    state.entry_price = position.entry_price
    state.size = position.abs_size
    state.entry_balance = progress.entry_balance
    state.settings = settings
    state.opened_at = opened_at or datetime.utcnow()
    state.last_mark_price = mark_price
    state.last_progress_pct = progress.progress_pct
    state.last_dollar_pnl = progress.dollar_pnl
    state.highest_progress_pct = max(0.0, progress.progress_pct)
    state.lowest_progress_pct = min(0.0, progress.progress_pct)
    state.trailing_activated = progress.progress_pct >= settings.trailing.activation_pct
    update_trailing_stop(state)


def _active_condition(state: RiskState, progress_pct: float, mark_price: float) -> Optional[RiskCondition]:
    settings = state.settings
    if progress_pct <= -settings.stop_loss_pct:
        return RiskCondition.STOP_LOSS
    if progress_pct >= settings.take_profit_pct:
        return RiskCondition.TAKE_PROFIT
    if trailing_breached(state.direction, mark_price, state.trailing_stop_price):
        return RiskCondition.TRAILING_STOP
    return None


def _apply_hit(state: RiskState, condition: Optional[RiskCondition]) -> int:
    """Increment the active counter, zero the rest. Returns the active count."""
    state.stop_loss_hits = state.stop_loss_hits + 1 if condition == RiskCondition.STOP_LOSS else 0
    state.take_profit_hits = state.take_profit_hits + 1 if condition == RiskCondition.TAKE_PROFIT else 0
    state.trailing_stop_hits = state.trailing_stop_hits + 1 if condition == RiskCondition.TRAILING_STOP else 0

    if condition == RiskCondition.STOP_LOSS:
        return state.stop_loss_hits
    if condition == RiskCondition.TAKE_PROFIT:
        return state.take_profit_hits
    if condition == RiskCondition.TRAILING_STOP:
        return state.trailing_stop_hits
    return 0


def evaluate_tick(state: RiskState, mark_price: float, balance: float) -> TickResult:
    """
    Run one monitoring tick against a MONITORING state (mutates `state`).

    Args:
        state: Seeded RiskState
        mark_price: Current mark price
        balance: Current account equity

    Returns:
        TickResult; close_reason is set once a condition is confirmed
    """
    progress = compute_progress(state.direction, state.entry_price, mark_price, state.size, balance)
    pct = progress.progress_pct

    state.highest_progress_pct = max(state.highest_progress_pct, pct)
    state.lowest_progress_pct = min(state.lowest_progress_pct, pct)
    state.last_progress_pct = pct
    state.last_mark_price = mark_price
    state.last_dollar_pnl = progress.dollar_pnl

    activated_now = False
    if not state.trailing_activated and pct >= state.settings.trailing.activation_pct:
        state.trailing_activated = True
        activated_now = True

    stop_moved = update_trailing_stop(state)

    condition = _active_condition(state, pct, mark_price)
    hits = _apply_hit(state, condition)

    close_reason = None
    if condition is not None and hits >= state.settings.confirmation_hit_count:
        close_reason = condition.reason

    return TickResult(
        progress=progress,
        mark_price=mark_price,
        active_condition=condition,
        hits=hits,
        close_reason=close_reason,
        trailing_stop_price=state.trailing_stop_price,
        activated_now=activated_now,
        stop_moved=stop_moved,
    )
