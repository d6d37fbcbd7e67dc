"""
Symbol Position Manager - One State Machine per Tradable Symbol

    FLAT --signal + sentiment permits--> OPENING --verified open--> MONITORING
      ^                                     |                          |
      |<----------- still flat -------------+                          |
      |                                                      confirmed exit
      |<------------- verified flat ------ CLOSING <-------------------+
                                              |
                          still open / failed +--> MONITORING

Principles:
- The venue is the source of truth. Every action is attempt -> settle ->
  re-query; a submission is never mistaken for an outcome.
- is_closing is the only lock. It is checked and set with no await in
  between, so two close attempts can never both proceed.
- No cancellation. Once an action is issued it is always verified.
- Collaborator failures (journal, snapshot, Discord) are logged and never
  block protection of an open position.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import aiosqlite

from ..config import SymbolSettings
from ..execution.base import ExecutionGateway, GatewayError, NonRetryableGatewayError
from ..execution.retry import call_with_retry, verify_position_state
from ..execution.schema import Direction, Position
from ..journal import TradeJournal
from ..notifier import DiscordNotifier
from ..sentiment.provider import SentimentProvider
from ..sentiment.schema import MarketSentiment
from ..signals.queue import Signal
from ..snapshot import PositionSnapshotStore
from .risk import TickResult, calculate_tp_sl_prices, evaluate_tick, price_diff, seed_risk_state
from .state import Phase, RiskState


FORCED_CLOSE_REASON = "Extreme opposite market sentiment"
EXTERNAL_CLOSE_REASON = "Closed outside the guard"


class SymbolPositionManager:
    """
    Owns the RiskState and monitoring loop of a single symbol.

    Usage:
        manager = SymbolPositionManager(settings, gateway, sentiment)
        await manager.reconcile()            # adopt an existing position
        await manager.process_signal(signal) # maybe open / force close
        ...
        await manager.stop()
    """

    def __init__(
        self,
        settings: SymbolSettings,
        gateway: ExecutionGateway,
        sentiment: SentimentProvider,
        journal: Optional[TradeJournal] = None,
        snapshots: Optional[PositionSnapshotStore] = None,
        notifier: Optional[DiscordNotifier] = None,
    ):
        self.settings = settings
        self.symbol = settings.symbol
        self.gateway = gateway
        self.sentiment = sentiment
        self.journal = journal
        self.snapshots = snapshots
        self.notifier = notifier

        self.state = RiskState()
        self.logger = logging.getLogger(f"{__name__}.{self.symbol}")

        self.closed_trades = 0
        self.realized_pnl_total = 0.0

        self._stop_event = asyncio.Event()
        self._monitor_task: Optional[asyncio.Task] = None

    @property
    def phase(self) -> Phase:
        return self.state.phase

    # =========================================================================
    # SIGNALS
    # =========================================================================

    async def process_signal(self, signal: Signal) -> None:
        """
        React to one signal for this symbol.

        FLAT: open if sentiment permits the direction.
        MONITORING: force close on an extreme opposite sentiment reading,
        then reverse if the signal agrees with that extreme.
        OPENING / CLOSING: ignored.
        """
        direction = signal.side
        if direction is None:
            self.logger.debug(f"[{self.symbol}] Signal 0, nothing to do")
            return

        phase = self.state.phase
        if phase in (Phase.OPENING, Phase.CLOSING):
            self.logger.info(f"[{self.symbol}] Ignoring {direction.label} signal while {phase.value}")
            return

        if phase == Phase.MONITORING:
            await self._handle_signal_while_open(direction)
            return

        # FLAT: never assume flat is still true, ask the venue
        position = await self.gateway.get_position(self.symbol)
        if position is not None and position.is_open:
            self.logger.warning(
                f"[RECONCILE] {self.symbol}: venue reports an untracked "
                f"{position.direction.label} position, adopting instead of opening"
            )
            await self.adopt(position)
            return

        sentiment = await self.sentiment.get_sentiment()
        if not sentiment.permits(direction):
            self.logger.info(
                f"[SENTIMENT] {self.symbol}: {direction.label} signal dropped, "
                f"market is {sentiment.category.value} ({sentiment.index})"
            )
            return

        await self.open_position(direction, sentiment)

    async def _handle_signal_while_open(self, direction: Direction) -> None:
        held = self.state.direction
        sentiment = await self.sentiment.get_sentiment()

        if not sentiment.is_extreme_against(held):
            self.logger.debug(
                f"[{self.symbol}] Holding {held.label}, {direction.label} signal ignored "
                f"({sentiment.category.value})"
            )
            return

        self.logger.warning(
            f"[SENTIMENT] {self.symbol}: {sentiment.category.value} ({sentiment.index}) "
            f"while holding {held.label}, forcing close"
        )
        closed = await self.close_position(FORCED_CLOSE_REASON)

        if closed and direction == held.opposite and sentiment.favors(direction):
            self.logger.info(
                f"[SENTIMENT] {self.symbol}: signal agrees with {sentiment.category.value}, "
                f"opening {direction.label}"
            )
            await self.open_position(direction, sentiment)

    # =========================================================================
    # OPEN
    # =========================================================================

    async def open_position(self, direction: Direction, sentiment: Optional[MarketSentiment] = None) -> bool:
        """
        OPENING: submit, settle, verify.

        Returns:
            True if the venue confirmed a position and monitoring started
        """
        if self.state.phase != Phase.FLAT:
            self.logger.warning(f"[OPEN] {self.symbol}: refusing to open while {self.state.phase.value}")
            return False

        s = self.settings
        self.state.phase = Phase.OPENING
        context = f" ({sentiment.category.value} {sentiment.index})" if sentiment else ""
        self.logger.info(f"[OPEN] {self.symbol}: opening {direction.label} at {s.leverage_multiplier}x{context}")

        error: Optional[GatewayError] = None
        try:
            tx_id = await call_with_retry(
                "open",
                self.symbol,
                lambda: self.gateway.open_position(direction, self.symbol, s.leverage_multiplier),
                attempts=s.max_action_attempts,
                backoff_s=s.retry_backoff_s,
                backoff_max_s=s.retry_backoff_max_s,
            )
        except NonRetryableGatewayError as e:
            error = e
            self.logger.error(f"[OPEN] {self.symbol}: rejected, not retrying: {e}. Checking venue")
        except GatewayError as e:
            error = e
            self.logger.error(
                f"[OPEN] {self.symbol}: failed after {s.max_action_attempts} attempts: {e}. Checking venue"
            )
        else:
            self.logger.info(f"[OPEN] {self.symbol}: submitted tx={tx_id}, settling {s.settle_delay_s:.1f}s")

        # an errored call may still have landed
        await asyncio.sleep(s.settle_delay_s)
        confirmed, position = await self._verify(expect_open=True)

        if not confirmed:
            self.state.phase = Phase.FLAT
            if error is None:
                self.logger.error(
                    f"[OPEN] {self.symbol}: verification failed, venue still flat "
                    f"after {s.verify_attempts} checks"
                )
            elif isinstance(error, NonRetryableGatewayError):
                await self._alert(f"{self.symbol}: open {direction.label} rejected: {error}", "critical")
            else:
                await self._alert(f"{self.symbol}: open {direction.label} failed: {error}", "warning")
            return False

        if error is not None:
            self.logger.warning(
                f"[OPEN] {self.symbol}: open reported an error but the venue holds a "
                f"{position.direction.label} position, protecting it"
            )

        if not await self._seed(position, source="open"):
            self.state.phase = Phase.FLAT
            return False
        return True

    # =========================================================================
    # CLOSE
    # =========================================================================

    async def close_position(self, reason: str) -> bool:
        """
        CLOSING: submit, settle, verify. Guarded by is_closing.

        Returns:
            True if the venue confirmed the position is gone
        """
        if self.state.is_closing:
            self.logger.info(f"[CLOSE] {self.symbol}: close already in progress, skipping ({reason})")
            return False
        if self.state.phase != Phase.MONITORING:
            self.logger.warning(f"[CLOSE] {self.symbol}: nothing to close while {self.state.phase.value}")
            return False

        self.state.is_closing = True
        self.state.phase = Phase.CLOSING
        s = self.settings
        direction = self.state.direction

        try:
            self.logger.warning(
                f"[CLOSE] {self.symbol}: closing {direction.label} - {reason} "
                f"(progress {self._fmt_pct(self.state.last_progress_pct)})"
            )
            error: Optional[GatewayError] = None
            try:
                tx_id = await call_with_retry(
                    "close",
                    self.symbol,
                    lambda: self.gateway.close_position(direction, self.symbol),
                    attempts=s.max_action_attempts,
                    backoff_s=s.retry_backoff_s,
                    backoff_max_s=s.retry_backoff_max_s,
                )
            except GatewayError as e:
                error = e
                retryable = not isinstance(e, NonRetryableGatewayError)
                self.logger.error(
                    f"[CLOSE] {self.symbol}: close failed "
                    f"({'retries exhausted' if retryable else 'rejected'}): {e}. Checking venue"
                )
            else:
                self.logger.info(f"[CLOSE] {self.symbol}: submitted tx={tx_id}, settling {s.settle_delay_s:.1f}s")

            # an errored call may still have landed
            await asyncio.sleep(s.settle_delay_s)
            confirmed, _ = await self._verify(expect_open=False)

            if not confirmed:
                self.state.phase = Phase.MONITORING
                if error is not None:
                    self.logger.error(f"[CLOSE] {self.symbol}: venue still open, resuming monitoring")
                    await self._alert(
                        f"{self.symbol}: close {direction.label} failed ({reason}): {error}. Position still open.",
                        "critical",
                    )
                else:
                    self.logger.error(
                        f"[CLOSE] {self.symbol}: verification failed, position still open "
                        f"after {s.verify_attempts} checks, resuming monitoring"
                    )
                    await self._alert(f"{self.symbol}: close not confirmed ({reason}), still monitoring", "warning")
                return False

            if error is not None:
                self.logger.warning(f"[CLOSE] {self.symbol}: close reported an error but the venue is flat")

            await self._finalize_close(reason)
            return True
        finally:
            self.state.is_closing = False

    async def _finalize_close(self, reason: str) -> None:
        """Record realized P&L and reset to FLAT."""
        state = self.state
        exit_price = state.last_mark_price
        try:
            exit_price = await self.gateway.get_mark_price(self.symbol)
        except GatewayError as e:
            self.logger.warning(f"[CLOSE] {self.symbol}: mark price unavailable, using last seen: {e}")
        if exit_price is None:
            exit_price = state.entry_price

        pnl = price_diff(state.direction, state.entry_price, exit_price) * state.size
        pnl_pct = pnl / state.entry_balance * 100 if state.entry_balance else 0.0

        self.closed_trades += 1
        self.realized_pnl_total += pnl
        self.logger.info(
            f"[CLOSE] {self.symbol}: confirmed flat - {reason}. "
            f"Realized ${pnl:,.2f} ({pnl_pct:+.2f}%), high {state.highest_progress_pct:+.2f}%, "
            f"low {state.lowest_progress_pct:+.2f}%"
        )

        if self.journal and state.trade_id:
            try:
                await self.journal.close_trade(
                    state.trade_id,
                    exit_price=exit_price,
                    realized_pnl=pnl,
                    realized_pnl_pct=pnl_pct,
                    exit_reason=reason,
                    highest_progress_pct=state.highest_progress_pct,
                    lowest_progress_pct=state.lowest_progress_pct,
                )
            except (aiosqlite.Error, OSError) as e:
                self.logger.error(f"[JOURNAL] {self.symbol}: failed to record close: {e}")

        if self.snapshots and state.position_id:
            self.snapshots.remove(state.position_id)

        await self._notify(
            "send_exit_alert",
            self.symbol,
            state.direction.label,
            state.entry_price,
            exit_price,
            pnl,
            pnl_pct,
            reason,
        )
        state.reset()

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def reconcile(self) -> Optional[Position]:
        """
        Adopt a venue position this manager is not tracking yet.

        Used at startup and by the health check. No-op unless FLAT.
        """
        if self.state.phase != Phase.FLAT:
            return None
        position = await self.gateway.get_position(self.symbol)
        if position is None or not position.is_open:
            self.logger.debug(f"[RECONCILE] {self.symbol}: flat at venue")
            return None
        self.logger.info(
            f"[RECONCILE] {self.symbol}: found {position.direction.label} "
            f"{position.abs_size} @ {position.entry_price}, resuming monitoring"
        )
        if await self.adopt(position):
            return position
        return None

    async def adopt(self, position: Position) -> bool:
        return await self._seed(position, source="reconcile")

    async def _seed(self, position: Position, source: str) -> bool:
        """Seed RiskState from a confirmed venue position and start monitoring."""
        s = self.settings
        try:
            account = await call_with_retry(
                "account", self.symbol, self.gateway.account_state,
                attempts=s.max_action_attempts,
                backoff_s=s.retry_backoff_s, backoff_max_s=s.retry_backoff_max_s,
            )
            mark = position.mark_price
            if mark is None:
                mark = await call_with_retry(
                    "mark", self.symbol, lambda: self.gateway.get_mark_price(self.symbol),
                    attempts=s.max_action_attempts,
                    backoff_s=s.retry_backoff_s, backoff_max_s=s.retry_backoff_max_s,
                )
            seed_risk_state(self.state, position, mark, account.balance, s)
        except (GatewayError, ValueError) as e:
            self.logger.critical(
                f"[{source.upper()}] {self.symbol}: position is open but could not be seeded: {e}. "
                f"The next reconciliation will retry."
            )
            await self._alert(f"{self.symbol}: open position is UNGUARDED ({e})", "critical")
            return False

        state = self.state
        tp_price, sl_price = calculate_tp_sl_prices(
            state.direction, state.entry_price, s.take_profit_pct, s.stop_loss_pct
        )
        self.logger.info(
            f"[{source.upper()}] {self.symbol}: MONITORING {state.direction.label} "
            f"{state.size} @ {state.entry_price:.4f}, entry balance ${state.entry_balance:,.2f}, "
            f"TP {tp_price:.4f}, SL {sl_price:.4f}, trailing stop {state.trailing_stop_price:.4f}"
        )

        if self.snapshots:
            state.position_id = self.snapshots.record(
                self.symbol,
                state.direction.label,
                size=position.size,
                cost_of_trades=position.cost_of_trades,
                entry_price=state.entry_price,
                account_balance=state.entry_balance,
                state=state.to_dict(),
                opened_at=state.opened_at,
            )

        if self.journal:
            try:
                state.trade_id = await self.journal.open_trade(
                    symbol=self.symbol,
                    direction=state.direction.label,
                    size=state.size,
                    entry_price=state.entry_price,
                    entry_balance=state.entry_balance,
                    take_profit_price=tp_price,
                    stop_loss_price=sl_price,
                    source=source,
                    opened_at=state.opened_at,
                )
            except (aiosqlite.Error, OSError) as e:
                self.logger.error(f"[JOURNAL] {self.symbol}: failed to record open: {e}")

        await self._notify(
            "send_trade_alert",
            self.symbol,
            state.direction.label,
            state.entry_price,
            state.size,
            sl_price,
            tp_price,
            state.trailing_stop_price,
        )
        self.start_monitoring()
        return True

    async def _verify(self, expect_open: bool) -> Tuple[bool, Optional[Position]]:
        return await verify_position_state(
            self.gateway,
            self.symbol,
            expect_open,
            attempts=self.settings.verify_attempts,
            interval_s=self.settings.verify_interval_s,
        )

    # =========================================================================
    # MONITORING
    # =========================================================================

    def start_monitoring(self) -> None:
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._stop_event.clear()
        self._monitor_task = asyncio.create_task(self._monitor_loop())

    async def stop(self) -> None:
        """Stop the monitoring loop. Does not touch the venue position."""
        self._stop_event.set()
        if self._monitor_task is not None:
            await self._monitor_task
            self._monitor_task = None

    async def _monitor_loop(self) -> None:
        interval = self.state.settings.monitor_interval_s if self.state.settings else self.settings.monitor_interval_s
        self.logger.info(f"[MONITOR] {self.symbol}: loop started ({interval:.1f}s)")
        while not self._stop_event.is_set() and self.state.has_position:
            try:
                await self.tick()
            except GatewayError as e:
                self.logger.warning(f"[MONITOR] {self.symbol}: tick failed: {e}")
            except Exception as e:
                self.logger.error(f"[MONITOR] {self.symbol}: tick error: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        self.logger.info(f"[MONITOR] {self.symbol}: loop stopped ({self.state.phase.value})")

    async def tick(self) -> Optional[TickResult]:
        """
        One monitoring evaluation. Closes the position when a condition
        is confirmed.

        Returns:
            TickResult, or None if nothing was evaluated
        """
        if self.state.phase != Phase.MONITORING or self.state.is_closing:
            return None

        position = await self.gateway.get_position(self.symbol)
        if self.state.phase != Phase.MONITORING:
            return None
        if position is None or not position.is_open:
            if self.state.is_closing:
                return None
            self.logger.warning(f"[MONITOR] {self.symbol}: venue reports flat, position closed outside the guard")
            self.state.is_closing = True
            self.state.phase = Phase.CLOSING
            try:
                await self._finalize_close(EXTERNAL_CLOSE_REASON)
            finally:
                self.state.is_closing = False
            return None

        mark = await self.gateway.get_mark_price(self.symbol)
        account = await self.gateway.account_state()
        if self.state.phase != Phase.MONITORING:
            return None

        result = evaluate_tick(self.state, mark, account.balance)
        state = self.state

        if result.activated_now:
            self.logger.info(
                f"[TRAIL] {self.symbol}: trailing stop activated at {result.progress.progress_pct:+.2f}% "
                f"(threshold {state.settings.trailing.activation_pct}%), stop {state.trailing_stop_price:.4f}"
            )
        elif result.stop_moved:
            self.logger.debug(f"[TRAIL] {self.symbol}: stop ratcheted to {state.trailing_stop_price:.4f}")

        if result.active_condition is not None:
            self.logger.info(
                f"[RISK] {self.symbol}: {result.active_condition.value} hit "
                f"{result.hits}/{state.settings.confirmation_hit_count} "
                f"(progress {result.progress.progress_pct:+.2f}%, mark {mark:.4f})"
            )

        if self.snapshots and state.position_id:
            self.snapshots.update_state(state.position_id, state.to_dict())

        if result.close_reason:
            await self.close_position(result.close_reason)
        return result

    # =========================================================================
    # OBSERVABILITY
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        status = {"symbol": self.symbol, **self.state.to_dict()}
        status["closed_trades"] = self.closed_trades
        status["realized_pnl_total"] = self.realized_pnl_total
        status["monitoring"] = self._monitor_task is not None and not self._monitor_task.done()
        return status

    async def _notify(self, method: str, *args: Any) -> None:
        if not self.notifier:
            return
        try:
            await asyncio.to_thread(getattr(self.notifier, method), *args)
        except Exception as e:
            self.logger.error(f"Notification failed: {e}")

    async def _alert(self, message: str, severity: str) -> None:
        await self._notify("send_risk_alert", message, severity)

    @staticmethod
    def _fmt_pct(value: Optional[float]) -> str:
        return f"{value:+.2f}%" if value is not None else "n/a"
