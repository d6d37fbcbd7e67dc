"""
Position Snapshot - Observability File for Dashboards

A JSON file mapping position ids to what the guard currently believes:

    {
      "3f9a0c1b2d4e": {
        "id": "3f9a0c1b2d4e",
        "symbol": "SOL",
        "direction": "long",
        "opened_at": "2026-01-01T12:00:00",
        "initial_data": {"size", "cost_of_trades", "account_balance", "open_price"},
        "state": {...RiskState.to_dict()...}
      }
    }

PRINCIPLE: Write-only from the guard's point of view. The state machine
never reads this file back as truth; on restart RiskState is rebuilt from
the venue. A missing or corrupt file is logged and replaced.
"""

import hashlib
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def make_position_id(symbol: str, size: float, cost_of_trades: float, entry_price: float) -> str:
    """12-hex-char id, stable for the same venue position."""
    key = "-".join([symbol, repr(float(size)), repr(float(cost_of_trades)), f"{entry_price:.4f}"])
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]


class PositionSnapshotStore:
    """
    Usage:
        store = PositionSnapshotStore("runtime/position-snapshot.json")
        pid = store.record("SOL", "long", size=10, cost_of_trades=1500,
                           entry_price=150, account_balance=10000, state={...})
        store.update_state(pid, {...})
        store.remove(pid)
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._positions: Dict[str, Dict[str, Any]] = {}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            if isinstance(data, dict):
                self._positions = data
                logger.info(f"[SNAPSHOT] Loaded {len(data)} entries from {self.path}")
            else:
                logger.warning(f"[SNAPSHOT] Ignoring malformed snapshot {self.path}")
        except (OSError, ValueError) as e:
            logger.error(f"[SNAPSHOT] Failed to load {self.path}, starting empty: {e}")
            self._positions = {}

    def _save(self) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with open(tmp, "w") as f:
                json.dump(self._positions, f, indent=2, default=str)
            tmp.replace(self.path)
        except OSError as e:
            logger.error(f"[SNAPSHOT] Failed to write {self.path}: {e}")

    def record(
        self,
        symbol: str,
        direction: str,
        size: float,
        cost_of_trades: float,
        entry_price: float,
        account_balance: float,
        state: Dict[str, Any],
        opened_at: Optional[datetime] = None,
    ) -> str:
        """Create (or refresh) the entry for a position. Returns its id."""
        position_id = make_position_id(symbol, size, cost_of_trades, entry_price)
        entry = self._positions.get(position_id)
        if entry is None:
            entry = {
                "id": position_id,
                "symbol": symbol,
                "direction": direction,
                "opened_at": (opened_at or datetime.utcnow()).isoformat(),
                "initial_data": {
                    "size": size,
                    "cost_of_trades": cost_of_trades,
                    "account_balance": account_balance,
                    "open_price": entry_price,
                },
                "state": {},
            }
            self._positions[position_id] = entry
            logger.info(f"[SNAPSHOT] New entry {position_id} for {symbol} {direction}")

        # Only one live entry per symbol
        for stale_id in [
            pid for pid, e in self._positions.items()
            if e.get("symbol") == symbol and pid != position_id
        ]:
            del self._positions[stale_id]

        entry["state"] = dict(state)
        self._save()
        return position_id

    def update_state(self, position_id: str, state: Dict[str, Any]) -> bool:
        entry = self._positions.get(position_id)
        if entry is None:
            return False
        entry["state"] = {**entry.get("state", {}), **state}
        self._save()
        return True

    def remove(self, position_id: str) -> bool:
        if self._positions.pop(position_id, None) is None:
            return False
        self._save()
        logger.info(f"[SNAPSHOT] Removed entry {position_id}")
        return True

    def get(self, position_id: str) -> Optional[Dict[str, Any]]:
        return self._positions.get(position_id)

    def all(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._positions)
