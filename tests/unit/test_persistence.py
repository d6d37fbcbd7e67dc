"""
Position snapshot file and trade journal.
"""

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from trailguard.journal import TradeJournal
from trailguard.snapshot import PositionSnapshotStore, make_position_id


class TestPositionSnapshotStore:

    @pytest.fixture
    def path(self, tmp_path):
        return tmp_path / "runtime" / "position-snapshot.json"

    def record(self, store, size=10.0, entry=150.0, symbol="SOL"):
        return store.record(
            symbol, "long",
            size=size, cost_of_trades=size * entry, entry_price=entry,
            account_balance=10000.0, state={"phase": "monitoring"},
        )

    def test_id_is_stable(self):
        a = make_position_id("SOL", 10.0, 1500.0, 150.0)
        assert a == make_position_id("SOL", 10.0, 1500.0, 150.0)
        assert a != make_position_id("ETH", 10.0, 1500.0, 150.0)
        assert len(a) == 12

    def test_record_writes_file(self, path):
        store = PositionSnapshotStore(str(path))
        pid = self.record(store)

        data = json.loads(path.read_text())
        entry = data[pid]
        assert entry["symbol"] == "SOL"
        assert entry["direction"] == "long"
        assert entry["initial_data"]["open_price"] == 150.0
        assert entry["initial_data"]["account_balance"] == 10000.0
        assert entry["state"] == {"phase": "monitoring"}

    def test_one_entry_per_symbol(self, path):
        store = PositionSnapshotStore(str(path))
        old = self.record(store, size=10.0)
        new = self.record(store, size=12.0)
        self.record(store, symbol="ETH", entry=3000.0)

        assert old != new
        assert store.get(old) is None
        assert len(store.all()) == 2

    def test_update_and_remove(self, path):
        store = PositionSnapshotStore(str(path))
        pid = self.record(store)

        assert store.update_state(pid, {"trailing_stop_price": 149.1}) is True
        assert store.get(pid)["state"] == {"phase": "monitoring", "trailing_stop_price": 149.1}

        assert store.remove(pid) is True
        assert store.remove(pid) is False
        assert json.loads(path.read_text()) == {}

    def test_survives_restart(self, path):
        pid = self.record(PositionSnapshotStore(str(path)))
        assert PositionSnapshotStore(str(path)).get(pid)["symbol"] == "SOL"

    def test_corrupt_file_is_replaced(self, path):
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        store = PositionSnapshotStore(str(path))
        assert store.all() == {}
        self.record(store)
        assert len(json.loads(path.read_text())) == 1


class TestTradeJournal:

    @pytest.fixture
    def journal(self, tmp_path):
        return TradeJournal(str(tmp_path / "trailguard.db"))

    @pytest.mark.asyncio
    async def test_open_then_close(self, journal):
        await journal.initialize()
        trade_id = await journal.open_trade(
            symbol="SOL", direction="long", size=10.0, entry_price=150.0,
            entry_balance=10000.0, take_profit_price=156.0, stop_loss_price=144.0,
        )

        open_trades = await journal.get_open_trades()
        assert [t["trade_id"] for t in open_trades] == [trade_id]

        closed = await journal.close_trade(
            trade_id, exit_price=152.0, realized_pnl=20.0, realized_pnl_pct=0.2,
            exit_reason="Trailing stop hit", highest_progress_pct=0.5, lowest_progress_pct=-0.1,
        )
        assert closed is True

        trade = await journal.get_trade(trade_id)
        assert trade["is_open"] == 0
        assert trade["exit_reason"] == "Trailing stop hit"
        assert trade["realized_pnl"] == 20.0
        assert await journal.get_open_trades() == []

    @pytest.mark.asyncio
    async def test_close_twice_is_rejected(self, journal):
        await journal.initialize()
        trade_id = await journal.open_trade(
            symbol="ETH", direction="short", size=1.0, entry_price=3000.0, entry_balance=10000.0,
        )
        await journal.close_trade(trade_id, 2990.0, 10.0, 0.1, "Take profit hit")

        assert await journal.close_trade(trade_id, 2980.0, 20.0, 0.2, "Take profit hit") is False
        assert await journal.close_trade("trade_missing", 1.0, 0.0, 0.0, "Stop loss hit") is False

    @pytest.mark.asyncio
    async def test_performance_summary(self, journal):
        await journal.initialize()
        for pnl, reason in ((20.0, "Take profit hit"), (-10.0, "Stop loss hit"), (5.0, "Take profit hit")):
            trade_id = await journal.open_trade(
                symbol="SOL", direction="long", size=1.0, entry_price=100.0, entry_balance=1000.0,
            )
            await journal.close_trade(trade_id, 100.0 + pnl, pnl, pnl / 10, reason)

        summary = await journal.get_performance_summary()

        assert summary["total_trades"] == 3
        assert summary["total_pnl"] == pytest.approx(15.0)
        assert summary["win_rate"] == pytest.approx(200 / 3)
        assert summary["by_reason"]["Take profit hit"]["trades"] == 2
        assert len(await journal.get_closed_trades(limit=2)) == 2
