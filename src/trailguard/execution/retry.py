"""
Retry and verification boundaries for state-changing gateway calls.

Transient errors are retried with jittered exponential backoff up to a
bounded attempt count. Non-retryable errors propagate on the first attempt.
Verification polls the venue; a submission is never taken as an outcome.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from .base import ExecutionGateway, GatewayError, TransientGatewayError
from .schema import Position

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retry(
    action: str,
    symbol: str,
    func: Callable[[], Awaitable[T]],
    attempts: int = 3,
    backoff_s: float = 1.0,
    backoff_max_s: float = 30.0,
) -> T:
    """
    Run an async gateway call, retrying only TransientGatewayError.

    Args:
        action: "open" / "close" (for logs)
        symbol: Acting symbol (for logs)
        func: Zero-arg coroutine factory, called once per attempt
        attempts: Maximum number of attempts (>= 1)
        backoff_s: Base of the randomized exponential wait
        backoff_max_s: Upper bound of any single wait

    Raises:
        TransientGatewayError: Once the attempt budget is exhausted
        NonRetryableGatewayError: Immediately, without retrying
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_random_exponential(multiplier=backoff_s, max=backoff_max_s),
        retry=retry_if_exception_type(TransientGatewayError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            number = attempt.retry_state.attempt_number
            if number > 1:
                logger.info(f"[{symbol}] {action} attempt {number}/{attempts}")
            return await func()
    # AsyncRetrying with reraise=True always returns or raises above
    raise RuntimeError(f"[{symbol}] {action}: retry loop exited without result")


async def verify_position_state(
    gateway: ExecutionGateway,
    symbol: str,
    expect_open: bool,
    attempts: int = 3,
    interval_s: float = 5.0,
) -> Tuple[bool, Optional[Position]]:
    """
    Poll the venue until it agrees with `expect_open`, bounded.

    Query errors count as "not confirmed" for that check; they never count
    as success.

    Returns:
        (confirmed, last position seen)
    """
    position: Optional[Position] = None
    for check in range(1, attempts + 1):
        try:
            position = await gateway.get_position(symbol)
        except GatewayError as e:
            logger.warning(f"[VERIFY] {symbol}: query failed (check {check}/{attempts}): {e}")
        else:
            is_open = position is not None and position.is_open
            if is_open == expect_open:
                return True, position
            logger.info(
                f"[VERIFY] {symbol}: expected {'open' if expect_open else 'flat'}, "
                f"venue says {'open' if is_open else 'flat'} (check {check}/{attempts})"
            )
        if check < attempts:
            await asyncio.sleep(interval_s)
    return False, position
