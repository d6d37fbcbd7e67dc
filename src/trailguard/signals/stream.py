"""
Signal Stream - Persistent Subscription to the Signal Server

Protocol:
- on connect the client sends {"type": "subscribe", "symbol", "direction"}
  for every configured symbol x channel pair
- the server answers once with {"type": "connection", "symbols": [...]}
- then pushes {"symbol", "direction", "signal"} events, signal in {-1, 0, 1}

Principles:
- Reconnect with a fixed delay; a successful connection resets the budget.
- After max_reconnect_attempts consecutive failures, stop and report
  gave_up=True. The orchestrator's health check surfaces it and may call
  reconnect() to start over with a fresh budget.
- Invalid or unknown-symbol messages are dropped silently.
"""

import asyncio
import json
import logging
from typing import Iterable, List, Optional, Sequence

import websockets
from websockets.exceptions import WebSocketException

from .queue import Signal, SignalQueue

logger = logging.getLogger(__name__)

VALID_SIGNALS = (-1, 0, 1)


class SignalStream:
    """
    Feeds validated signals from the stream into a SignalQueue.

    Usage:
        queue = SignalQueue(maxsize=1000)
        stream = SignalStream(url, ["SOL", "ETH"], queue)
        await stream.start()
        ...
        await stream.stop()
    """

    def __init__(
        self,
        url: str,
        symbols: Iterable[str],
        queue: SignalQueue,
        channels: Sequence[str] = ("long", "short"),
        max_reconnect_attempts: int = 5,
        reconnect_delay_s: float = 5.0,
        receive_timeout_s: float = 5.0,
    ):
        self.url = url
        self.symbols: List[str] = list(symbols)
        self.queue = queue
        self.channels = tuple(channels)
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay_s = reconnect_delay_s
        self.receive_timeout_s = receive_timeout_s

        self.reconnect_attempts = 0
        self.gave_up = False
        self.messages_received = 0
        self.signals_accepted = 0
        self._known = set(self.symbols)
        self._connected = False
        self._stop_event = asyncio.Event()
        self._running_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def running(self) -> bool:
        return self._running_task is not None and not self._running_task.done()

    async def start(self) -> None:
        """Start the listener task."""
        if self.running:
            return
        self._stop_event.clear()
        self.gave_up = False
        self._running_task = asyncio.create_task(self._run_loop())
        logger.info(f"[STREAM] Started for {self.symbols} via {self.url}")

    async def stop(self) -> None:
        """Stop the listener task and close the subscription."""
        self._stop_event.set()
        if self._running_task:
            await self._running_task
            self._running_task = None
        logger.info("[STREAM] Stopped")

    async def reconnect(self) -> None:
        """Restart a stopped or given-up stream with a fresh attempt budget."""
        if self.running:
            return
        self._running_task = None
        self.reconnect_attempts = 0
        logger.info("[STREAM] Reconnect requested")
        await self.start()

    # =========================================================================
    # CONNECTION LOOP
    # =========================================================================

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                async with websockets.connect(self.url) as ws:
                    self._connected = True
                    self.reconnect_attempts = 0
                    await self._subscribe(ws)
                    await self._receive_loop(ws)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                if not self._stop_event.is_set():
                    logger.warning(f"[STREAM] Connection lost ({e!r})")
            finally:
                self._connected = False

            if self._stop_event.is_set():
                break

            self.reconnect_attempts += 1
            if self.reconnect_attempts > self.max_reconnect_attempts:
                self.gave_up = True
                logger.critical(
                    f"[STREAM] Giving up after {self.max_reconnect_attempts} reconnect attempts"
                )
                break

            logger.info(
                f"[STREAM] Reconnecting in {self.reconnect_delay_s:.1f}s "
                f"(attempt {self.reconnect_attempts}/{self.max_reconnect_attempts})"
            )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.reconnect_delay_s)
            except asyncio.TimeoutError:
                pass

    async def _subscribe(self, ws) -> None:
        for symbol in self.symbols:
            for channel in self.channels:
                await ws.send(json.dumps({"type": "subscribe", "symbol": symbol, "direction": channel}))
        logger.info(f"[STREAM] Subscribed to {self.symbols} x {list(self.channels)}")

    async def _receive_loop(self, ws) -> None:
        while not self._stop_event.is_set():
            try:
                # Timeout lets the loop notice stop requests
                raw = await asyncio.wait_for(ws.recv(), timeout=self.receive_timeout_s)
            except asyncio.TimeoutError:
                continue
            self.handle_message(raw)

    # =========================================================================
    # MESSAGE HANDLING
    # =========================================================================

    def handle_message(self, raw) -> Optional[Signal]:
        """
        Validate one raw message and enqueue it if it is a signal.

        Returns:
            The enqueued Signal, or None if the message was not a valid signal
        """
        self.messages_received += 1
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug(f"[STREAM] Dropping non-JSON message: {raw!r:.120}")
            return None

        if not isinstance(message, dict):
            return None

        if message.get("type") == "connection":
            logger.info(f"[STREAM] Server confirmed symbols: {message.get('symbols')}")
            return None

        symbol = message.get("symbol")
        channel = message.get("direction")
        value = message.get("signal")

        if symbol not in self._known or channel is None:
            logger.debug(f"[STREAM] Dropping unmatched message: {message}")
            return None
        if isinstance(value, bool) or value not in VALID_SIGNALS:
            logger.debug(f"[STREAM] Dropping message with invalid signal: {message}")
            return None

        signal = Signal(symbol=symbol, direction=int(value), channel=str(channel))
        self.queue.put(signal)
        self.signals_accepted += 1
        logger.debug(f"[STREAM] Queued {symbol} signal={value} ({channel})")
        return signal
