"""
Execution Gateway Base Class - The Contract With the Venue

The execution mode (PAPER vs LIVE) is set ONCE at initialization
and cannot be changed. No runtime switch can flip real money on.

Error taxonomy (every gateway call may raise one of these):
- TransientGatewayError: network/RPC hiccups, timeouts, rate limits,
  temporary spread/liquidity unavailability. Safe to retry with backoff.
- NonRetryableGatewayError: structural rejections (order size rounds to
  zero, margin requirement not met). Retrying burns budget and alerts
  nobody, so callers abort immediately and page the operator.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Type

from .schema import AccountState, Direction, ExecutionMode, Position


class ExecutionModeImmutableError(Exception):
    """Raised when attempting to change execution mode after initialization."""
    pass


class GatewayError(Exception):
    """Base class for all Execution Gateway failures."""

    retryable = False

    def __init__(self, message: str, symbol: Optional[str] = None, action: Optional[str] = None):
        super().__init__(message)
        self.symbol = symbol
        self.action = action


class TransientGatewayError(GatewayError):
    """Temporary failure - retry with jittered backoff."""

    retryable = True


class NonRetryableGatewayError(GatewayError):
    """Structural rejection - abort, do not retry."""

    retryable = False


# Venue messages that identify structural rejections.
NON_RETRYABLE_MARKERS = (
    "order size too small",
    "size rounds to zero",
    "zero size",
    "insufficient margin",
    "margin requirement",
    "margin check failed",
    "insufficient funds",
    "unknown market",
)

# Venue messages that are temporary even when reported as a client error.
TRANSIENT_MARKERS = (
    "spread",
    "liquidity",
    "timeout",
    "timed out",
    "rate limit",
    "too many requests",
    "blockhash",
    "connection",
    "unavailable",
)


def classify_error(
    message: str,
    default: Type[GatewayError] = TransientGatewayError,
    symbol: Optional[str] = None,
    action: Optional[str] = None,
) -> GatewayError:
    """
    Map a venue error message to the right GatewayError subclass.

    Non-retryable markers win over transient ones: a margin rejection that
    also mentions a timeout is still a margin rejection.
    """
    text = (message or "").lower()
    if any(marker in text for marker in NON_RETRYABLE_MARKERS):
        cls: Type[GatewayError] = NonRetryableGatewayError
    elif any(marker in text for marker in TRANSIENT_MARKERS):
        cls = TransientGatewayError
    else:
        cls = default
    return cls(message, symbol=symbol, action=action)


class ExecutionGateway(ABC):
    """
    Abstract base class for execution venues.

    The Safety Lock:
    - ExecutionMode is set ONCE at __init__ and is IMMUTABLE
    - Attempting to change mode raises ExecutionModeImmutableError

    Implementations:
    - PaperExecutionGateway: In-process simulation (dry runs, tests)
    - LiveExecutionGateway: REST client to the signing/execution service
    """

    def __init__(self, mode: ExecutionMode):
        if not isinstance(mode, ExecutionMode):
            raise ValueError(f"mode must be ExecutionMode, got {type(mode)}")

        self._mode = mode
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

        self.logger.info(f"Execution gateway initialized in {mode.value.upper()} mode")
        if mode == ExecutionMode.LIVE:
            self.logger.warning(
                "LIVE EXECUTION MODE - Real money at risk! "
                "Double-check all configurations before proceeding."
            )

    @property
    def mode(self) -> ExecutionMode:
        return self._mode

    @mode.setter
    def mode(self, value):
        raise ExecutionModeImmutableError(
            f"Execution mode is IMMUTABLE. "
            f"Current mode: {self._mode.value}. "
            f"Create a new gateway instance to change modes."
        )

    @property
    def is_paper(self) -> bool:
        return self._mode == ExecutionMode.PAPER

    @property
    def is_live(self) -> bool:
        return self._mode == ExecutionMode.LIVE

    @abstractmethod
    async def get_position(self, symbol: str) -> Optional[Position]:
        """
        Current position for a symbol.

        Returns:
            Position, or None if the symbol is flat
        """
        pass

    @abstractmethod
    async def get_mark_price(self, symbol: str) -> float:
        """Current mark price for a symbol."""
        pass

    @abstractmethod
    async def account_state(self) -> AccountState:
        """Account equity, including unrealized P&L."""
        pass

    @abstractmethod
    async def open_position(
        self,
        direction: Direction,
        symbol: str,
        leverage: Optional[float] = None,
    ) -> str:
        """
        Submit a market open. Sizing is the venue's job (balance x leverage).

        Returns:
            Transaction / order id. Submission is NOT confirmation - re-query.
        """
        pass

    @abstractmethod
    async def close_position(self, direction: Direction, symbol: str) -> str:
        """
        Submit a reduce-only close of the whole position.

        Returns:
            Transaction / order id. Submission is NOT confirmation - re-query.
        """
        pass

    async def close(self) -> None:
        """Release network resources. Default: nothing to release."""
        return None
