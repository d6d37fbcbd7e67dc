"""
Manual position actions.

    trailguard-position open SOL long
    trailguard-position close SOL short --paper

Same path as the guard itself: submit (with transient retry), settle,
then verify against the venue. Exit code 0 only on confirmed success,
1 on failure or verification timeout. Does not consult sentiment and does
not start monitoring; a running guard adopts the position on its next
reconciliation.
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .config import ConfigError, SymbolSettings, load_config
from .execution import (
    Direction,
    ExecutionGateway,
    GatewayError,
    NonRetryableGatewayError,
    call_with_retry,
    create_gateway,
    verify_position_state,
)

logger = logging.getLogger("trailguard.cli")


async def _verify(gateway: ExecutionGateway, settings: SymbolSettings, expect_open: bool) -> bool:
    confirmed, position = await verify_position_state(
        gateway,
        settings.symbol,
        expect_open,
        attempts=settings.verify_attempts,
        interval_s=settings.verify_interval_s,
    )
    if confirmed and position is not None:
        logger.info(
            f"Confirmed {position.direction.label} {position.abs_size} "
            f"{settings.symbol} @ {position.entry_price}"
        )
    return confirmed


async def open_position(gateway: ExecutionGateway, settings: SymbolSettings, direction: Direction) -> bool:
    symbol = settings.symbol
    existing = await gateway.get_position(symbol)
    if existing is not None and existing.is_open:
        logger.error(f"{symbol} already has an open {existing.direction.label} position")
        return False

    try:
        tx_id = await call_with_retry(
            "open", symbol,
            lambda: gateway.open_position(direction, symbol, settings.leverage_multiplier),
            attempts=settings.max_action_attempts,
            backoff_s=settings.retry_backoff_s,
            backoff_max_s=settings.retry_backoff_max_s,
        )
    except NonRetryableGatewayError as e:
        logger.error(f"Open rejected: {e}. Checking venue")
    except GatewayError as e:
        logger.error(f"Open failed after {settings.max_action_attempts} attempts: {e}. Checking venue")
    else:
        logger.info(f"Open submitted (tx {tx_id}), waiting {settings.settle_delay_s:.1f}s")

    await asyncio.sleep(settings.settle_delay_s)
    if await _verify(gateway, settings, expect_open=True):
        return True
    logger.error(f"Open of {symbol} {direction.label} not confirmed")
    return False


async def close_position(gateway: ExecutionGateway, settings: SymbolSettings, direction: Direction) -> bool:
    symbol = settings.symbol
    existing = await gateway.get_position(symbol)
    if existing is None or not existing.is_open:
        logger.info(f"{symbol} is already flat")
        return True
    if existing.direction != direction:
        logger.error(f"{symbol} position is {existing.direction.label}, not {direction.label}")
        return False

    try:
        tx_id = await call_with_retry(
            "close", symbol,
            lambda: gateway.close_position(direction, symbol),
            attempts=settings.max_action_attempts,
            backoff_s=settings.retry_backoff_s,
            backoff_max_s=settings.retry_backoff_max_s,
        )
    except NonRetryableGatewayError as e:
        logger.error(f"Close rejected: {e}. Checking venue")
    except GatewayError as e:
        logger.error(f"Close failed after {settings.max_action_attempts} attempts: {e}. Checking venue")
    else:
        logger.info(f"Close submitted (tx {tx_id}), waiting {settings.settle_delay_s:.1f}s")

    await asyncio.sleep(settings.settle_delay_s)
    if await _verify(gateway, settings, expect_open=False):
        logger.info(f"{symbol} confirmed flat")
        return True
    logger.error(f"Close of {symbol} {direction.label} not confirmed, position may still be open")
    return False


async def execute(action: str, gateway: ExecutionGateway, settings: SymbolSettings, direction: Direction) -> bool:
    if action == "open":
        return await open_position(gateway, settings, direction)
    if action == "close":
        return await close_position(gateway, settings, direction)
    raise ValueError(f"Unknown action {action!r}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Open or close a position and verify the result")
    parser.add_argument("action", choices=["open", "close"])
    parser.add_argument("symbol", type=str)
    parser.add_argument("direction", type=str, help="long / short (or 1 / -1)")
    parser.add_argument("--config", type=str, default=None)
    parser.add_argument("--paper", action="store_true", help="Use the paper gateway")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    try:
        direction = Direction.parse(args.direction)
    except ValueError as e:
        logger.error(str(e))
        return 1

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    settings = config.symbols.get(args.symbol)
    if settings is None:
        logger.error(f"Symbol {args.symbol} is not configured")
        return 1

    gateway = create_gateway(config.execution, force_paper=args.paper)
    try:
        ok = await execute(args.action, gateway, settings, direction)
    except GatewayError as e:
        logger.error(f"{args.action} {args.symbol} failed: {e}")
        ok = False
    finally:
        await gateway.close()
    return 0 if ok else 1


def main(argv: Optional[List[str]] = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    sys.exit(asyncio.run(run(parse_args(argv))))


if __name__ == "__main__":
    main()
