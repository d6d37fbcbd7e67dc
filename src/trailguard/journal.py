"""
Trade Journal - Every Position, Every Exit Reason

Records each guarded position from the moment it is confirmed open until
its close is confirmed, with the exit reason and realized P&L.

PRINCIPLE: If it's not journaled, nobody can audit why it closed.
But the journal never blocks trading: callers log and continue on failure.

Usage:
    journal = TradeJournal("runtime/trailguard.db")
    await journal.initialize()

    trade_id = await journal.open_trade(
        symbol="SOL", direction="long", size=10.0, entry_price=150.0,
        entry_balance=10000.0, take_profit_price=156.0, stop_loss_price=144.0,
        source="open",
    )
    await journal.close_trade(trade_id, exit_price=152.0, realized_pnl=20.0,
                              realized_pnl_pct=0.2, exit_reason="Trailing stop hit")
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

logger = logging.getLogger(__name__)


SQL_SCHEMA = """
CREATE TABLE IF NOT EXISTS trades (
    trade_id TEXT PRIMARY KEY,
    symbol TEXT NOT NULL,
    direction TEXT NOT NULL,
    size REAL NOT NULL,
    entry_price REAL NOT NULL,
    entry_balance REAL NOT NULL,
    take_profit_price REAL,
    stop_loss_price REAL,
    source TEXT NOT NULL,
    opened_at TEXT NOT NULL,
    closed_at TEXT,
    exit_price REAL,
    exit_reason TEXT,
    realized_pnl REAL,
    realized_pnl_pct REAL,
    highest_progress_pct REAL,
    lowest_progress_pct REAL,
    is_open INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_trades_symbol ON trades(symbol);
CREATE INDEX IF NOT EXISTS idx_trades_open ON trades(is_open);
"""


class TradeJournal:
    """Asynchronous aiosqlite journal of guarded positions."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def _get_connection(self):
        """Async context manager for database connections"""
        async with aiosqlite.connect(str(self.db_path)) as db:
            db.row_factory = aiosqlite.Row
            try:
                yield db
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error(f"Journal database error: {e}")
                raise

    async def initialize(self) -> None:
        """Create tables and enable WAL mode. Safe to call multiple times."""
        async with self._get_connection() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")
            await db.executescript(SQL_SCHEMA)
        logger.info(f"Trade journal initialized (WAL mode) at {self.db_path}")

    # =========================================================================
    # WRITES
    # =========================================================================

    async def open_trade(
        self,
        symbol: str,
        direction: str,
        size: float,
        entry_price: float,
        entry_balance: float,
        take_profit_price: Optional[float] = None,
        stop_loss_price: Optional[float] = None,
        source: str = "open",
        opened_at: Optional[datetime] = None,
    ) -> str:
        """Record a confirmed open (or a position adopted by reconciliation)."""
        trade_id = f"trade_{uuid.uuid4().hex[:16]}"
        async with self._get_connection() as db:
            await db.execute(
                """
                INSERT INTO trades (
                    trade_id, symbol, direction, size, entry_price, entry_balance,
                    take_profit_price, stop_loss_price, source, opened_at, is_open
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                """,
                (
                    trade_id, symbol, direction, size, entry_price, entry_balance,
                    take_profit_price, stop_loss_price, source,
                    (opened_at or datetime.utcnow()).isoformat(),
                ),
            )
        logger.debug(f"Journal: opened {trade_id} {symbol} {direction}")
        return trade_id

    async def close_trade(
        self,
        trade_id: str,
        exit_price: float,
        realized_pnl: float,
        realized_pnl_pct: float,
        exit_reason: str,
        highest_progress_pct: Optional[float] = None,
        lowest_progress_pct: Optional[float] = None,
    ) -> bool:
        """Record a confirmed close. Returns False if the trade is unknown."""
        async with self._get_connection() as db:
            cursor = await db.execute(
                """
                UPDATE trades SET
                    closed_at = ?, exit_price = ?, exit_reason = ?,
                    realized_pnl = ?, realized_pnl_pct = ?,
                    highest_progress_pct = ?, lowest_progress_pct = ?,
                    is_open = 0
                WHERE trade_id = ? AND is_open = 1
                """,
                (
                    datetime.utcnow().isoformat(), exit_price, exit_reason,
                    realized_pnl, realized_pnl_pct,
                    highest_progress_pct, lowest_progress_pct, trade_id,
                ),
            )
            updated = cursor.rowcount > 0
        if not updated:
            logger.warning(f"Journal: close for unknown or already closed trade {trade_id}")
        return updated

    # =========================================================================
    # READS
    # =========================================================================

    async def get_trade(self, trade_id: str) -> Optional[Dict[str, Any]]:
        async with self._get_connection() as db:
            async with db.execute("SELECT * FROM trades WHERE trade_id = ?", (trade_id,)) as cursor:
                row = await cursor.fetchone()
        return dict(row) if row else None

    async def get_open_trades(self) -> List[Dict[str, Any]]:
        async with self._get_connection() as db:
            async with db.execute(
                "SELECT * FROM trades WHERE is_open = 1 ORDER BY opened_at"
            ) as cursor:
                rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def get_closed_trades(self, limit: int = 50) -> List[Dict[str, Any]]:
        async with self._get_connection() as db:
            async with db.execute(
                "SELECT * FROM trades WHERE is_open = 0 ORDER BY closed_at DESC LIMIT ?",
                (limit,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def get_performance_summary(self) -> Dict[str, Any]:
        """Totals per exit reason plus overall win rate."""
        async with self._get_connection() as db:
            async with db.execute(
                """
                SELECT exit_reason, COUNT(*) AS trades,
                       SUM(realized_pnl) AS pnl,
                       SUM(CASE WHEN realized_pnl > 0 THEN 1 ELSE 0 END) AS wins
                FROM trades WHERE is_open = 0
                GROUP BY exit_reason
                """
            ) as cursor:
                rows = [dict(r) for r in await cursor.fetchall()]

        total = sum(r["trades"] for r in rows)
        wins = sum(r["wins"] or 0 for r in rows)
        return {
            "total_trades": total,
            "total_pnl": sum(r["pnl"] or 0 for r in rows),
            "win_rate": (wins / total * 100) if total else 0.0,
            "by_reason": {r["exit_reason"]: r for r in rows},
        }
