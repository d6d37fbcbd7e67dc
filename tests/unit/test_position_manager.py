"""
SymbolPositionManager against the paper gateway.

Every delay is zeroed so the attempt -> settle -> verify path runs
instantly. The background monitoring loop is replaced by a Mock; ticks are
driven explicitly so hit counts are deterministic.
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from trailguard.config import SymbolSettings
from trailguard.execution import (
    Direction,
    NonRetryableGatewayError,
    PaperExecutionGateway,
    TransientGatewayError,
)
from trailguard.position import FORCED_CLOSE_REASON, Phase, SymbolPositionManager
from trailguard.position.manager import EXTERNAL_CLOSE_REASON
from trailguard.sentiment import FixedSentimentProvider
from trailguard.signals import Signal


GREED = 70
NEUTRAL = 50
EXTREME_FEAR = 10
EXTREME_GREED = 90


def fast_settings(**overrides) -> SymbolSettings:
    values = dict(
        symbol="SOL",
        post_action_settle_ms=0,
        verify_interval_ms=0,
        retry_backoff_ms=0,
        retry_backoff_max_ms=0,
    )
    values.update(overrides)
    return SymbolSettings(**values)


@pytest.fixture
def gateway():
    return PaperExecutionGateway(
        starting_balance=1000.0,
        prices={"SOL": 100.0},
        volatility_pct=0.0,
        fee_rate=0.0,
    )


class LostResponseGateway(PaperExecutionGateway):
    """Executes the action at the venue, then the response times out."""

    def __init__(self, *args, lose=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.lose = set(lose)

    async def open_position(self, direction, symbol, leverage=None):
        tx_id = await super().open_position(direction, symbol, leverage)
        if "open" in self.lose:
            raise TransientGatewayError("RPC timed out")
        return tx_id

    async def close_position(self, direction, symbol):
        tx_id = await super().close_position(direction, symbol)
        if "close" in self.lose:
            raise TransientGatewayError("RPC timed out")
        return tx_id


@pytest.fixture
def lossy_gateway():
    return LostResponseGateway(
        starting_balance=1000.0,
        prices={"SOL": 100.0},
        volatility_pct=0.0,
        fee_rate=0.0,
    )


@pytest.fixture
def lossy_manager(lossy_gateway, sentiment, notifier):
    m = SymbolPositionManager(fast_settings(), lossy_gateway, sentiment, notifier=notifier)
    m.start_monitoring = Mock()
    return m


@pytest.fixture
def sentiment():
    return FixedSentimentProvider(index=GREED)


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def manager(gateway, sentiment, notifier):
    m = SymbolPositionManager(fast_settings(), gateway, sentiment, notifier=notifier)
    m.start_monitoring = Mock()
    return m


class TestOpening:

    @pytest.mark.asyncio
    async def test_signal_opens_when_sentiment_permits(self, manager, gateway):
        await manager.process_signal(Signal(symbol="SOL", direction=1))

        assert manager.phase == Phase.MONITORING
        assert manager.state.direction == Direction.LONG
        assert manager.state.entry_price == 100.0
        # 1000 equity x 4.8 leverage / 100
        assert manager.state.size == pytest.approx(48.0)
        assert manager.state.entry_balance == pytest.approx(1000.0)
        assert gateway.calls["open"] == 1
        manager.start_monitoring.assert_called_once()

    @pytest.mark.asyncio
    async def test_sentiment_blocks_direction(self, manager, gateway, sentiment):
        sentiment.index = NEUTRAL
        await manager.process_signal(Signal(symbol="SOL", direction=1))
        await manager.process_signal(Signal(symbol="SOL", direction=-1))

        assert manager.phase == Phase.FLAT
        assert gateway.calls["open"] == 0

    @pytest.mark.asyncio
    async def test_greed_blocks_short(self, manager, gateway):
        await manager.process_signal(Signal(symbol="SOL", direction=-1))
        assert gateway.calls["open"] == 0

    @pytest.mark.asyncio
    async def test_zero_signal_is_ignored(self, manager, gateway):
        await manager.process_signal(Signal(symbol="SOL", direction=0))
        assert gateway.calls["get_position"] == 0
        assert manager.phase == Phase.FLAT

    @pytest.mark.asyncio
    async def test_unconfirmed_open_falls_back_to_flat(self, manager, gateway):
        gateway.open_position = AsyncMock(return_value="tx_lost")

        opened = await manager.open_position(Direction.LONG)

        assert opened is False
        assert manager.phase == Phase.FLAT
        assert gateway.calls["get_position"] == manager.settings.verify_attempts
        manager.start_monitoring.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_retryable_is_not_retried(self, manager, gateway, notifier):
        gateway.inject_failure("open", NonRetryableGatewayError("Order size too small"))

        opened = await manager.open_position(Direction.LONG)

        assert opened is False
        assert gateway.calls["open"] == 1
        assert manager.phase == Phase.FLAT
        notifier.send_risk_alert.assert_called_once()
        assert notifier.send_risk_alert.call_args[0][1] == "critical"

    @pytest.mark.asyncio
    async def test_transient_retried_up_to_bound(self, manager, gateway):
        for _ in range(3):
            gateway.inject_failure("open", TransientGatewayError("rpc timeout"))

        opened = await manager.open_position(Direction.LONG)

        assert opened is False
        assert gateway.calls["open"] == 3
        assert manager.phase == Phase.FLAT

    @pytest.mark.asyncio
    async def test_transient_then_success(self, manager, gateway):
        gateway.inject_failure("open", TransientGatewayError("spread too wide"))
        gateway.inject_failure("open", TransientGatewayError("spread too wide"))

        opened = await manager.open_position(Direction.LONG)

        assert opened is True
        assert gateway.calls["open"] == 3
        assert manager.phase == Phase.MONITORING

    @pytest.mark.asyncio
    async def test_open_that_landed_despite_error_is_protected(self, lossy_manager, lossy_gateway, notifier):
        lossy_gateway.lose.add("open")

        await lossy_manager.process_signal(Signal(symbol="SOL", direction=1))

        assert (await lossy_gateway.get_position("SOL")).is_open
        assert lossy_manager.phase == Phase.MONITORING
        assert lossy_manager.state.direction == Direction.LONG
        assert lossy_manager.state.trailing_stop_price is not None
        lossy_manager.start_monitoring.assert_called_once()
        notifier.send_risk_alert.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_open_checks_venue_before_giving_up(self, manager, gateway):
        gateway.inject_failure("open", NonRetryableGatewayError("Insufficient margin"))

        assert await manager.open_position(Direction.LONG) is False
        assert gateway.calls["get_position"] == manager.settings.verify_attempts

    @pytest.mark.asyncio
    async def test_signal_while_flat_adopts_untracked_position(self, manager, gateway):
        await gateway.open_position(Direction.SHORT, "SOL", 2.0)

        await manager.process_signal(Signal(symbol="SOL", direction=1))

        assert manager.phase == Phase.MONITORING
        assert manager.state.direction == Direction.SHORT
        assert gateway.calls["open"] == 1


class TestClosing:

    @pytest.mark.asyncio
    async def test_close_confirms_flat_and_resets(self, manager, gateway, notifier):
        await manager.open_position(Direction.LONG)
        gateway.set_mark_price("SOL", 101.0)

        closed = await manager.close_position("Take profit hit")

        assert closed is True
        assert manager.phase == Phase.FLAT
        assert manager.state.direction is None
        assert manager.state.is_closing is False
        assert await gateway.get_position("SOL") is None
        assert manager.closed_trades == 1
        assert manager.realized_pnl_total == pytest.approx(48.0)
        args = notifier.send_exit_alert.call_args[0]
        assert args[0] == "SOL"
        assert args[-1] == "Take profit hit"

    @pytest.mark.asyncio
    async def test_unconfirmed_close_resumes_monitoring(self, manager, gateway, notifier):
        await manager.open_position(Direction.LONG)
        gateway.close_position = AsyncMock(return_value="tx_lost")

        closed = await manager.close_position("Stop loss hit")

        assert closed is False
        assert manager.phase == Phase.MONITORING
        assert manager.state.is_closing is False
        assert notifier.send_risk_alert.called

    @pytest.mark.asyncio
    async def test_failed_close_resumes_monitoring(self, manager, gateway):
        await manager.open_position(Direction.LONG)
        for _ in range(3):
            gateway.inject_failure("close", TransientGatewayError("connection reset"))

        closed = await manager.close_position("Stop loss hit")

        assert closed is False
        assert gateway.calls["close"] == 3
        assert manager.phase == Phase.MONITORING
        assert (await gateway.get_position("SOL")).is_open

    @pytest.mark.asyncio
    async def test_close_that_landed_despite_error_keeps_reason(self, lossy_manager, lossy_gateway, notifier):
        await lossy_manager.open_position(Direction.LONG)
        lossy_gateway.set_mark_price("SOL", 98.0)
        lossy_gateway.lose.add("close")

        closed = await lossy_manager.close_position("Stop loss hit")

        assert closed is True
        assert lossy_manager.phase == Phase.FLAT
        assert await lossy_gateway.get_position("SOL") is None
        assert lossy_manager.realized_pnl_total == pytest.approx(-96.0)
        assert notifier.send_exit_alert.call_args[0][-1] == "Stop loss hit"
        notifier.send_risk_alert.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_closes_issue_one_action(self, manager, gateway):
        await manager.open_position(Direction.LONG)

        results = await asyncio.gather(
            manager.close_position("Trailing stop hit"),
            manager.close_position("Take profit hit"),
        )

        assert sorted(results) == [False, True]
        assert gateway.calls["close"] == 1
        assert manager.phase == Phase.FLAT

    @pytest.mark.asyncio
    async def test_close_while_flat_does_nothing(self, manager, gateway):
        assert await manager.close_position("Stop loss hit") is False
        assert gateway.calls["close"] == 0


class TestForcedClose:

    @pytest.mark.asyncio
    async def test_extreme_fear_force_closes_long_and_reverses(self, manager, gateway, sentiment):
        await manager.open_position(Direction.LONG)
        sentiment.index = EXTREME_FEAR

        await manager.process_signal(Signal(symbol="SOL", direction=-1))

        assert gateway.calls["close"] == 1
        assert manager.phase == Phase.MONITORING
        assert manager.state.direction == Direction.SHORT
        assert (await gateway.get_position("SOL")).direction == Direction.SHORT

    @pytest.mark.asyncio
    async def test_extreme_fear_force_closes_regardless_of_progress(self, manager, gateway, sentiment, notifier):
        await manager.open_position(Direction.LONG)
        gateway.set_mark_price("SOL", 100.5)
        sentiment.index = EXTREME_FEAR

        await manager.process_signal(Signal(symbol="SOL", direction=1))

        assert manager.phase == Phase.FLAT
        assert gateway.calls["open"] == 1
        assert notifier.send_exit_alert.call_args[0][-1] == FORCED_CLOSE_REASON

    @pytest.mark.asyncio
    async def test_extreme_greed_force_closes_short(self, manager, gateway, sentiment):
        sentiment.index = 20
        await manager.open_position(Direction.SHORT)
        sentiment.index = EXTREME_GREED

        await manager.process_signal(Signal(symbol="SOL", direction=1))

        assert gateway.calls["close"] == 1
        assert manager.state.direction == Direction.LONG

    @pytest.mark.asyncio
    async def test_non_extreme_reading_keeps_position(self, manager, gateway, sentiment):
        await manager.open_position(Direction.LONG)
        sentiment.index = 40

        await manager.process_signal(Signal(symbol="SOL", direction=-1))

        assert gateway.calls["close"] == 0
        assert manager.state.direction == Direction.LONG


class TestMonitoring:

    @pytest.mark.asyncio
    async def test_stop_loss_closes_after_confirmation(self, manager, gateway, notifier):
        await manager.open_position(Direction.LONG)
        gateway.set_mark_price("SOL", 98.0)

        first = await manager.tick()
        assert first.hits == 1
        assert manager.phase == Phase.MONITORING

        second = await manager.tick()
        assert second.close_reason == "Stop loss hit"
        assert manager.phase == Phase.FLAT
        assert manager.realized_pnl_total == pytest.approx(-96.0)
        assert notifier.send_exit_alert.call_args[0][-1] == "Stop loss hit"

    @pytest.mark.asyncio
    async def test_external_close_is_detected(self, manager, gateway):
        await manager.open_position(Direction.LONG)
        await gateway.close_position(Direction.LONG, "SOL")

        assert await manager.tick() is None
        assert manager.phase == Phase.FLAT
        assert manager.closed_trades == 1

    @pytest.mark.asyncio
    async def test_external_close_holds_lock_while_finalizing(self, manager, gateway, sentiment, notifier):
        await manager.open_position(Direction.LONG)
        await gateway.close_position(Direction.LONG, "SOL")
        release = asyncio.Event()

        async def slow_mark_price(symbol):
            await release.wait()
            return 100.0

        gateway.get_mark_price = slow_mark_price
        sentiment.index = EXTREME_FEAR

        finalizing = asyncio.create_task(manager.tick())
        for _ in range(5):
            await asyncio.sleep(0)
        assert manager.phase == Phase.CLOSING
        assert manager.state.is_closing is True

        await manager.process_signal(Signal(symbol="SOL", direction=-1))
        release.set()
        await finalizing

        assert gateway.calls["close"] == 1
        assert manager.phase == Phase.FLAT
        assert manager.state.is_closing is False
        assert manager.closed_trades == 1
        assert notifier.send_exit_alert.call_args[0][-1] == EXTERNAL_CLOSE_REASON
        notifier.send_risk_alert.assert_not_called()

    @pytest.mark.asyncio
    async def test_tick_when_flat_does_nothing(self, manager, gateway):
        assert await manager.tick() is None
        assert gateway.calls["get_position"] == 0

    @pytest.mark.asyncio
    async def test_monitor_loop_runs_and_stops(self, gateway, sentiment):
        manager = SymbolPositionManager(fast_settings(monitor_interval_ms=10), gateway, sentiment)
        await manager.open_position(Direction.LONG)
        await asyncio.sleep(0.05)

        assert manager.get_status()["monitoring"] is True
        assert gateway.calls["account_state"] > 1

        await manager.stop()
        assert manager.get_status()["monitoring"] is False
        assert manager.phase == Phase.MONITORING


class TestReconcile:

    @pytest.mark.asyncio
    async def test_reconcile_seeds_monitoring(self, manager, gateway):
        await gateway.open_position(Direction.SHORT, "SOL", 2.0)

        position = await manager.reconcile()

        assert position is not None
        assert manager.phase == Phase.MONITORING
        assert manager.state.direction == Direction.SHORT
        assert manager.state.size == pytest.approx(20.0)
        assert manager.state.trailing_stop_price is not None
        manager.start_monitoring.assert_called_once()

    @pytest.mark.asyncio
    async def test_reconcile_when_flat_at_venue(self, manager):
        assert await manager.reconcile() is None
        assert manager.phase == Phase.FLAT

    @pytest.mark.asyncio
    async def test_reconcile_skips_tracked_position(self, manager, gateway):
        await manager.open_position(Direction.LONG)
        calls = gateway.calls["get_position"]

        assert await manager.reconcile() is None
        assert gateway.calls["get_position"] == calls

    @pytest.mark.asyncio
    async def test_unseedable_position_stays_flat_and_alerts(self, manager, gateway, notifier):
        await gateway.open_position(Direction.LONG, "SOL", 2.0)
        for _ in range(3):
            gateway.inject_failure("account_state", TransientGatewayError("rpc timeout"))

        assert await manager.reconcile() is None
        assert manager.phase == Phase.FLAT
        assert notifier.send_risk_alert.call_args[0][1] == "critical"
