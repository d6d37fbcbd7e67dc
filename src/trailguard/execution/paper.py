"""
Paper Execution Gateway - In-Process Venue Simulation

Used for dry runs (`trailguard --paper`) and tests. Behaves like a
cross-margined perpetuals venue with a single USD wallet:

- open_position sizes the order as equity x leverage / mark price
- balance reported by account_state() is equity (cash + unrealized P&L)
- mark prices follow a random walk per query (volatility_pct = 0 freezes them)
- a fee is charged on open and on close notional

Failures can be injected per action to exercise retry and verification paths.
"""

import random
import uuid
from collections import defaultdict, deque
from typing import Deque, Dict, Optional

from .base import ExecutionGateway, GatewayError, NonRetryableGatewayError
from .schema import AccountState, Direction, ExecutionMode, Position


class PaperExecutionGateway(ExecutionGateway):
    """
    Simulated venue.

    Usage:
        gateway = PaperExecutionGateway(
            starting_balance=10000.0,
            prices={"SOL": 150.0},
            volatility_pct=0.0,
        )
        await gateway.open_position(Direction.LONG, "SOL", leverage=2.0)
        gateway.set_mark_price("SOL", 153.0)
        position = await gateway.get_position("SOL")
    """

    def __init__(
        self,
        starting_balance: float = 10000.0,
        prices: Optional[Dict[str, float]] = None,
        volatility_pct: float = 0.05,
        fee_rate: float = 0.0005,
        default_leverage: float = 1.0,
        rng: Optional[random.Random] = None,
    ):
        super().__init__(mode=ExecutionMode.PAPER)

        self._cash = float(starting_balance)
        self._prices: Dict[str, float] = {k: float(v) for k, v in (prices or {}).items()}
        self._positions: Dict[str, Position] = {}
        self.volatility_pct = volatility_pct
        self.fee_rate = fee_rate
        self.default_leverage = default_leverage
        self._rng = rng or random.Random()
        self._failures: Dict[str, Deque[GatewayError]] = defaultdict(deque)
        self.calls: Dict[str, int] = defaultdict(int)

        self.logger.info(
            f"Paper gateway initialized: balance=${starting_balance:,.2f}, "
            f"symbols={sorted(self._prices)}, volatility={volatility_pct}%"
        )

    # =========================================================================
    # TEST / SIMULATION CONTROLS
    # =========================================================================

    def set_mark_price(self, symbol: str, price: float) -> None:
        self._prices[symbol] = float(price)
        if symbol in self._positions:
            self._positions[symbol].mark_price = float(price)

    def inject_failure(self, action: str, error: GatewayError) -> None:
        """Make the next call of `action` ("open", "close", ...) raise `error`."""
        self._failures[action].append(error)

    def _maybe_fail(self, action: str) -> None:
        self.calls[action] += 1
        if self._failures[action]:
            raise self._failures[action].popleft()

    # =========================================================================
    # GATEWAY CONTRACT
    # =========================================================================

    async def get_position(self, symbol: str) -> Optional[Position]:
        self._maybe_fail("get_position")
        position = self._positions.get(symbol)
        if position is None:
            return None
        mark = self._prices.get(symbol, position.entry_price)
        return Position(
            symbol=position.symbol,
            direction=position.direction,
            size=position.size,
            entry_price=position.entry_price,
            mark_price=mark,
        )

    async def get_mark_price(self, symbol: str) -> float:
        self._maybe_fail("get_mark_price")
        if symbol not in self._prices:
            raise NonRetryableGatewayError(f"Unknown market {symbol}", symbol=symbol, action="mark_price")
        if self.volatility_pct:
            drift = self._rng.gauss(0, self.volatility_pct / 100)
            self._prices[symbol] *= 1 + drift
        return self._prices[symbol]

    async def account_state(self) -> AccountState:
        self._maybe_fail("account_state")
        return AccountState(balance=self._equity())

    async def open_position(
        self,
        direction: Direction,
        symbol: str,
        leverage: Optional[float] = None,
    ) -> str:
        self._maybe_fail("open")
        if symbol not in self._prices:
            raise NonRetryableGatewayError(f"Unknown market {symbol}", symbol=symbol, action="open")
        if symbol in self._positions:
            raise NonRetryableGatewayError(
                f"Position already open for {symbol}", symbol=symbol, action="open"
            )

        price = self._prices[symbol]
        leverage = leverage or self.default_leverage
        equity = self._equity()
        size = round(equity * leverage / price, 6)
        if size <= 0:
            raise NonRetryableGatewayError("Order size too small", symbol=symbol, action="open")

        self._cash -= size * price * self.fee_rate
        self._positions[symbol] = Position(
            symbol=symbol,
            direction=direction,
            size=size if direction == Direction.LONG else -size,
            entry_price=price,
            mark_price=price,
        )
        tx_id = f"paper_{uuid.uuid4().hex[:12]}"
        self.logger.info(
            f"Paper open: {direction.label.upper()} {size} {symbol} @ {price:.4f} "
            f"(leverage {leverage}x, tx {tx_id})"
        )
        return tx_id

    async def close_position(self, direction: Direction, symbol: str) -> str:
        self._maybe_fail("close")
        position = self._positions.get(symbol)
        if position is None:
            raise NonRetryableGatewayError(f"No open position for {symbol}", symbol=symbol, action="close")

        price = self._prices.get(symbol, position.entry_price)
        pnl = self._unrealized(position, price)
        self._cash += pnl - position.abs_size * price * self.fee_rate
        del self._positions[symbol]

        tx_id = f"paper_{uuid.uuid4().hex[:12]}"
        self.logger.info(
            f"Paper close: {position.direction.label.upper()} {position.abs_size} {symbol} "
            f"@ {price:.4f}, P&L ${pnl:,.2f} (tx {tx_id})"
        )
        return tx_id

    # =========================================================================
    # ACCOUNTING
    # =========================================================================

    @staticmethod
    def _unrealized(position: Position, price: float) -> float:
        diff = price - position.entry_price
        if position.direction == Direction.SHORT:
            diff = -diff
        return diff * position.abs_size

    def _equity(self) -> float:
        unrealized = sum(
            self._unrealized(p, self._prices.get(s, p.entry_price))
            for s, p in self._positions.items()
        )
        return self._cash + unrealized
