"""
Position Module - Risk State, Risk Algorithm, Per-Symbol Manager

Usage:
    from trailguard.position import SymbolPositionManager

    manager = SymbolPositionManager(settings, gateway, sentiment)
    await manager.process_signal(signal)
"""

from .state import Phase, RiskState
from .risk import (
    Progress,
    RiskCondition,
    TickResult,
    calculate_tp_sl_prices,
    compute_progress,
    evaluate_tick,
    level_to_price,
    ratchet,
    seed_risk_state,
)
from .manager import FORCED_CLOSE_REASON, SymbolPositionManager

__all__ = [
    "Phase",
    "RiskState",
    "Progress",
    "RiskCondition",
    "TickResult",
    "calculate_tp_sl_prices",
    "compute_progress",
    "evaluate_tick",
    "level_to_price",
    "ratchet",
    "seed_risk_state",
    "FORCED_CLOSE_REASON",
    "SymbolPositionManager",
]
