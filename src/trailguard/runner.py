"""
═══════════════════════════════════════════════════════════════════════════════
TrailGuard Runner - Long-Running Signal-Driven Position Guard
═══════════════════════════════════════════════════════════════════════════════

Wires config -> gateway, sentiment, stream, queue, journal, snapshot,
notifier -> TradingOrchestrator, and runs it until SIGINT/SIGTERM.

Usage:
    # Live (mode from config.yaml)
    trailguard --config config.yaml

    # Dry run against the paper gateway
    trailguard --paper

    # Subset of configured symbols
    trailguard --symbols SOL,ETH

Environment Variables:
    SIGNAL_STREAM_URL, EXECUTION_API_URL, EXECUTION_API_TOKEN,
    CMC_API_KEY, DISCORD_WEBHOOK_URL, TRAILGUARD_CONFIG

State: runtime/position-snapshot.json (observability only)
Logs:  runtime/trailguard.log
═══════════════════════════════════════════════════════════════════════════════
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from .config import AppConfig, ConfigError, SettingsResolver, load_config
from .execution import create_gateway
from .journal import TradeJournal
from .notifier import DiscordNotifier
from .orchestrator import OrchestratorConfig, TradingOrchestrator
from .sentiment import create_sentiment_provider
from .signals import SignalQueue, SignalStream
from .snapshot import PositionSnapshotStore

logger = logging.getLogger("trailguard")


def setup_logging(level: str, log_file: Optional[str]) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )


def build_orchestrator(config: AppConfig, paper: bool = False,
                       symbols: Optional[List[str]] = None) -> TradingOrchestrator:
    """Construct every collaborator from a validated config."""
    settings = config.symbols
    if symbols:
        unknown = [s for s in symbols if s not in settings]
        if unknown:
            raise ConfigError(f"Symbols not in config: {', '.join(unknown)}")
        settings = {s: settings[s] for s in symbols}

    resolver = SettingsResolver(settings)
    queue = SignalQueue(maxsize=config.stream.message_queue_size)

    stream = None
    if config.stream.url:
        stream = SignalStream(
            url=config.stream.url,
            symbols=resolver.symbols,
            queue=queue,
            channels=config.stream.channels,
            max_reconnect_attempts=config.stream.max_reconnect_attempts,
            reconnect_delay_s=config.stream.reconnect_delay_s,
            receive_timeout_s=config.stream.receive_timeout_s,
        )
    else:
        logger.warning("SIGNAL_STREAM_URL not set - guarding existing positions only, no new signals")

    return TradingOrchestrator(
        config=OrchestratorConfig.from_app_config(config),
        resolver=resolver,
        gateway=create_gateway(config.execution, force_paper=paper),
        sentiment=create_sentiment_provider(config.sentiment),
        queue=queue,
        stream=stream,
        journal=TradeJournal(config.paths.journal),
        snapshots=PositionSnapshotStore(config.paths.snapshot),
        notifier=DiscordNotifier(config.discord_webhook_url),
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="TrailGuard signal-driven position guard")
    parser.add_argument("--config", type=str, default=None,
                        help="Path to config.yaml (default: $TRAILGUARD_CONFIG or ./config.yaml)")
    parser.add_argument("--paper", action="store_true",
                        help="Use the paper gateway regardless of execution.mode")
    parser.add_argument("--symbols", type=str, default=None,
                        help="Comma-separated subset of configured symbols")
    parser.add_argument("--log-level", type=str, default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Configuration error: {e}")
        return 1

    setup_logging(args.log_level, config.paths.log_file)
    symbols = [s.strip() for s in args.symbols.split(",")] if args.symbols else None

    try:
        orchestrator = build_orchestrator(config, paper=args.paper, symbols=symbols)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.shutdown)
        except NotImplementedError:
            # Windows event loops
            signal.signal(sig, lambda *_: orchestrator.shutdown())

    logger.info(
        f"TrailGuard starting: symbols={list(orchestrator.managers)} "
        f"mode={orchestrator.gateway.mode.value}"
    )
    await orchestrator.run()
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    sys.exit(asyncio.run(run(parse_args(argv))))


if __name__ == "__main__":
    main()
