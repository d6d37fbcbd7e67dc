"""
Manual open/close entry point: exit code 0 only on verified success.
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from trailguard import cli
from trailguard.config import SymbolSettings
from trailguard.execution import Direction, NonRetryableGatewayError, PaperExecutionGateway, TransientGatewayError


@pytest.fixture
def settings():
    return SymbolSettings(
        symbol="SOL",
        post_action_settle_ms=0,
        verify_interval_ms=0,
        retry_backoff_ms=0,
        retry_backoff_max_ms=0,
    )


@pytest.fixture
def gateway():
    return PaperExecutionGateway(starting_balance=1000.0, prices={"SOL": 100.0}, volatility_pct=0.0)


class TestExecute:

    @pytest.mark.asyncio
    async def test_open_then_close(self, gateway, settings):
        assert await cli.execute("open", gateway, settings, Direction.LONG) is True
        assert (await gateway.get_position("SOL")).direction == Direction.LONG

        assert await cli.execute("close", gateway, settings, Direction.LONG) is True
        assert await gateway.get_position("SOL") is None

    @pytest.mark.asyncio
    async def test_open_refuses_when_already_open(self, gateway, settings):
        await gateway.open_position(Direction.SHORT, "SOL")
        assert await cli.execute("open", gateway, settings, Direction.LONG) is False
        assert gateway.calls["open"] == 1

    @pytest.mark.asyncio
    async def test_close_when_flat_succeeds(self, gateway, settings):
        assert await cli.execute("close", gateway, settings, Direction.SHORT) is True
        assert gateway.calls["close"] == 0

    @pytest.mark.asyncio
    async def test_close_wrong_direction_fails(self, gateway, settings):
        await gateway.open_position(Direction.SHORT, "SOL")
        assert await cli.execute("close", gateway, settings, Direction.LONG) is False
        assert (await gateway.get_position("SOL")).is_open

    @pytest.mark.asyncio
    async def test_unverified_open_fails(self, gateway, settings):
        gateway.open_position = AsyncMock(return_value="tx_lost")
        assert await cli.execute("open", gateway, settings, Direction.LONG) is False

    @pytest.mark.asyncio
    async def test_open_that_landed_despite_timeout_succeeds(self, gateway, settings):
        submit = gateway.open_position

        async def open_then_time_out(direction, symbol, leverage=None):
            await submit(direction, symbol, leverage)
            raise TransientGatewayError("RPC timed out")

        gateway.open_position = open_then_time_out
        assert await cli.execute("open", gateway, settings, Direction.SHORT) is True
        assert (await gateway.get_position("SOL")).direction == Direction.SHORT

    @pytest.mark.asyncio
    async def test_rejected_open_fails(self, gateway, settings):
        gateway.inject_failure("open", NonRetryableGatewayError("Order size too small"))
        assert await cli.execute("open", gateway, settings, Direction.LONG) is False
        assert gateway.calls["open"] == 1


class TestRun:

    CONFIG = """
position:
  post_action_settle_ms: 0
  verify_interval_ms: 0
  retry_backoff_ms: 0
  retry_backoff_max_ms: 0
symbols: [SOL]
execution:
  mode: paper
  paper_volatility_pct: 0
  paper_prices:
    SOL: 100.0
"""

    @pytest.fixture
    def config_path(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(self.CONFIG)
        return str(path)

    @pytest.mark.asyncio
    async def test_open_exit_code(self, config_path):
        args = cli.parse_args(["open", "SOL", "long", "--config", config_path, "--paper"])
        assert await cli.run(args) == 0

    @pytest.mark.asyncio
    async def test_bad_direction(self, config_path):
        args = cli.parse_args(["open", "SOL", "sideways", "--config", config_path])
        assert await cli.run(args) == 1

    @pytest.mark.asyncio
    async def test_unknown_symbol(self, config_path):
        args = cli.parse_args(["close", "DOGE", "-1", "--config", config_path])
        assert await cli.run(args) == 1

    @pytest.mark.asyncio
    async def test_missing_config(self, tmp_path):
        args = cli.parse_args(["open", "SOL", "1", "--config", str(tmp_path / "missing.yaml")])
        assert await cli.run(args) == 1

    def test_direction_parsing(self):
        assert Direction.parse("long") is Direction.LONG
        assert Direction.parse("-1") is Direction.SHORT
        assert Direction.parse(1) is Direction.LONG
        with pytest.raises(ValueError):
            Direction.parse("0")
