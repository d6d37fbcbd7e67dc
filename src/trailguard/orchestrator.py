"""
Trading Orchestrator - Central Coordinator for Guarded Positions

Coordinates:
- Startup reconciliation (restart mid-position without losing protection)
- The single signal-queue consumer (in-order, non-overlapping dispatch)
- Per-symbol isolation (one symbol's failure never stalls the others)
- Health checks (stream liveness, queue depth, reconnects, re-adoption)
- Hourly status reports

Each SymbolPositionManager runs its own monitoring loop; the orchestrator
never touches their RiskState directly.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .config import AppConfig, SettingsResolver
from .execution.base import ExecutionGateway
from .execution.schema import Position
from .journal import TradeJournal
from .notifier import DiscordNotifier
from .position.manager import SymbolPositionManager
from .sentiment.provider import SentimentProvider
from .signals.queue import Signal, SignalQueue
from .signals.stream import SignalStream
from .snapshot import PositionSnapshotStore


logger = logging.getLogger(__name__)


@dataclass
class OrchestratorConfig:
    """Timers for the orchestrator."""
    health_check_interval_s: float = 300.0
    status_update_interval_s: float = 3600.0
    send_startup_status: bool = True

    @classmethod
    def from_app_config(cls, config: AppConfig) -> "OrchestratorConfig":
        return cls(
            health_check_interval_s=config.intervals.health_check_ms / 1000,
            status_update_interval_s=config.intervals.status_update_ms / 1000,
        )


class TradingOrchestrator:
    """
    Owns one SymbolPositionManager per configured symbol.

    Usage:
        orchestrator = TradingOrchestrator(config, resolver, gateway, sentiment, queue, stream)
        await orchestrator.run()          # until shutdown()
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        resolver: SettingsResolver,
        gateway: ExecutionGateway,
        sentiment: SentimentProvider,
        queue: SignalQueue,
        stream: Optional[SignalStream] = None,
        journal: Optional[TradeJournal] = None,
        snapshots: Optional[PositionSnapshotStore] = None,
        notifier: Optional[DiscordNotifier] = None,
    ):
        self.config = config
        self.resolver = resolver
        self.gateway = gateway
        self.sentiment = sentiment
        self.queue = queue
        self.stream = stream
        self.journal = journal
        self.notifier = notifier

        self.managers: Dict[str, SymbolPositionManager] = {
            settings.symbol: SymbolPositionManager(
                settings,
                gateway,
                sentiment,
                journal=journal,
                snapshots=snapshots,
                notifier=notifier,
            )
            for settings in resolver
        }

        self._shutdown = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._dispatched = 0
        self._dispatch_errors = 0
        self._health_checks = 0
        self._stream_alerted = False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def run(self) -> None:
        """
        Main entry point. Runs until shutdown() is called.
        """
        logger.info(f"Orchestrator starting for {list(self.managers)}...")

        if self.journal:
            await self.journal.initialize()

        await self.reconcile()

        if self.config.send_startup_status:
            await self.send_status_report(startup=True)

        if self.stream:
            await self.stream.start()

        self._tasks = [
            asyncio.create_task(self._consume_loop(), name="signal-consumer"),
            asyncio.create_task(self._timer_loop(self.config.health_check_interval_s, self.health_check),
                                name="health-check"),
            asyncio.create_task(self._timer_loop(self.config.status_update_interval_s, self.send_status_report),
                                name="status-report"),
        ]

        await self._notify("send_system_alert", "TrailGuard started", f"Guarding {', '.join(self.managers)}")
        await self._shutdown.wait()
        await self.stop()
        logger.info("Orchestrator shutdown complete")

    def shutdown(self) -> None:
        """Signal graceful shutdown."""
        logger.info("Shutdown requested")
        self._shutdown.set()

    async def stop(self) -> None:
        """
        Stop timers, the consumer, the stream and every monitoring loop.

        In-flight open/close actions are not flushed; the next startup's
        reconciliation recovers true venue state.
        """
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.stream:
            await self.stream.stop()

        await asyncio.gather(*(m.stop() for m in self.managers.values()), return_exceptions=True)
        await self.gateway.close()
        await self.sentiment.close()

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def reconcile(self) -> Dict[str, Optional[Position]]:
        """
        Query the venue once per symbol and seed MONITORING for every open
        position. A failing symbol is logged and skipped.
        """
        found: Dict[str, Optional[Position]] = {}
        for symbol, manager in self.managers.items():
            try:
                found[symbol] = await manager.reconcile()
            except Exception as e:
                logger.error(f"[RECONCILE] {symbol}: failed: {e}", exc_info=True)
                found[symbol] = None

        open_symbols = [s for s, p in found.items() if p is not None]
        logger.info(f"[RECONCILE] Complete: {len(open_symbols)} open position(s) {open_symbols}")
        return found

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def _consume_loop(self) -> None:
        """Single consumer: strictly in-order, one dispatch at a time."""
        while not self._shutdown.is_set():
            signal = await self.queue.get()
            await self.dispatch(signal)

    async def dispatch(self, signal: Signal) -> bool:
        """
        Route a signal to its manager.

        Returns:
            True if the manager handled it without raising
        """
        manager = self.managers.get(signal.symbol)
        if manager is None:
            logger.debug(f"Dropping signal for unknown symbol {signal.symbol}")
            return False

        self._dispatched += 1
        try:
            await manager.process_signal(signal)
            return True
        except Exception as e:
            self._dispatch_errors += 1
            logger.error(f"Error processing {signal.symbol} signal {signal.direction}: {e}", exc_info=True)
            return False

    # =========================================================================
    # TIMERS
    # =========================================================================

    async def _timer_loop(self, interval_s: float, callback) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                pass
            if self._shutdown.is_set():
                break
            try:
                await callback()
            except Exception as e:
                logger.error(f"Timer callback {callback.__name__} failed: {e}", exc_info=True)

    async def health_check(self) -> Dict[str, Any]:
        """
        Report stream liveness and queue depth; reconnect a dead stream;
        re-adopt venue positions a FLAT manager is not tracking.
        """
        self._health_checks += 1
        health = {
            "ws_connected": self.stream.connected if self.stream else None,
            "stream_gave_up": self.stream.gave_up if self.stream else None,
            "reconnect_attempts": self.stream.reconnect_attempts if self.stream else 0,
            "queue_length": len(self.queue),
            "queue_dropped": self.queue.dropped,
            "positions": {s: m.phase.value for s, m in self.managers.items()},
        }
        logger.info(
            f"[HEALTH] ws_connected={health['ws_connected']} queue={health['queue_length']} "
            f"dropped={health['queue_dropped']} reconnect_attempts={health['reconnect_attempts']}"
        )

        if self.stream and not self.stream.connected:
            if self.stream.gave_up and not self._stream_alerted:
                self._stream_alerted = True
                await self._notify(
                    "send_risk_alert",
                    "Signal stream gave up reconnecting. Open positions are still monitored; "
                    "no new signals until the stream recovers.",
                    "critical",
                )
            logger.warning("[HEALTH] Signal stream down, reconnecting")
            await self.stream.reconnect()
        elif self.stream and self.stream.connected:
            self._stream_alerted = False

        for symbol, manager in self.managers.items():
            try:
                await manager.reconcile()
            except Exception as e:
                logger.warning(f"[HEALTH] {symbol}: reconciliation check failed: {e}")

        return health

    async def send_status_report(self, startup: bool = False) -> bool:
        """Positions summary to Discord (and the log)."""
        positions = [m.get_status() for m in self.managers.values()]
        for p in positions:
            logger.info(
                f"[STATUS] {p['symbol']}: {p['phase']} "
                f"progress={p['last_progress_pct']} stop={p['trailing_stop_price']}"
            )
        title = "TrailGuard started - position status" if startup else "TrailGuard hourly status"
        return await self._notify("send_status_report", title, positions)

    # =========================================================================
    # OBSERVABILITY
    # =========================================================================

    async def _notify(self, method: str, *args: Any) -> bool:
        """Send notification if notifier is configured."""
        if not self.notifier:
            return False
        try:
            return bool(await asyncio.to_thread(getattr(self.notifier, method), *args))
        except Exception as e:
            logger.error(f"Notification failed: {e}")
            return False

    def get_status(self) -> Dict[str, Any]:
        """Get current orchestrator status."""
        return {
            "running": not self._shutdown.is_set(),
            "symbols": list(self.managers),
            "dispatched": self._dispatched,
            "dispatch_errors": self._dispatch_errors,
            "health_checks": self._health_checks,
            "queue_length": len(self.queue),
            "queue_dropped": self.queue.dropped,
            "stream": {
                "connected": self.stream.connected,
                "gave_up": self.stream.gave_up,
                "reconnect_attempts": self.stream.reconnect_attempts,
            } if self.stream else None,
            "positions": {s: m.get_status() for s, m in self.managers.items()},
        }
