"""
Live Execution Gateway - REST Client to the Execution Service

Order construction, transaction signing and margin bookkeeping live in a
separate execution service next to the wallet. This gateway speaks its
small REST API over a pooled aiohttp session:

    GET  /positions/{symbol}         -> {"symbol", "size", "entry_price", "mark_price"} | 404
    GET  /markets/{symbol}/mark      -> {"mark_price"}
    GET  /account                    -> {"balance"}
    POST /positions/open             {"symbol", "direction", "leverage"} -> {"tx_id"}
    POST /positions/close            {"symbol", "direction"}             -> {"tx_id"}

CRITICAL: This places REAL orders with REAL money.

Retry boundary:
- Reads are retried here (tenacity, jittered backoff) on transient errors.
- Writes are NOT retried here. The position manager owns the write retry
  budget so every attempt is followed by settle + verification.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from .base import (
    ExecutionGateway,
    NonRetryableGatewayError,
    TransientGatewayError,
    classify_error,
)
from .schema import AccountState, Direction, ExecutionMode, Position

logger = logging.getLogger(__name__)


class LiveExecutionGateway(ExecutionGateway):
    """
    Executes real actions via the execution service (Async).

    WARNING: This gateway places REAL orders with REAL money.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str = "",
        timeout_s: float = 15.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize live gateway.

        Args:
            base_url: Execution service root, e.g. http://127.0.0.1:8700
            api_token: Bearer token (EXECUTION_API_TOKEN)
            timeout_s: Total timeout per HTTP request
            session: Optional shared aiohttp session
        """
        super().__init__(mode=ExecutionMode.LIVE)

        if not base_url:
            raise ValueError("base_url is required for the live gateway")

        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.session = session
        self._own_session = False

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
            self._own_session = True
        return self.session

    async def close(self) -> None:
        if self._own_session and self.session and not self.session.closed:
            await self.session.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        allow_404: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """
        Single HTTP round trip with error classification.

        Raises:
            TransientGatewayError: connection errors, timeouts, 429, 5xx
            NonRetryableGatewayError: other 4xx (unless the message is transient)
        """
        session = await self._get_session()
        url = f"{self.base_url}/{path.lstrip('/')}"

        try:
            async with session.request(method, url, json=data, headers=self._headers()) as response:
                if allow_404 and response.status == 404:
                    return None
                if response.status == 429 or response.status >= 500:
                    text = await response.text()
                    raise TransientGatewayError(
                        f"Execution service error {response.status}: {text}", action=path
                    )
                if response.status >= 400:
                    text = await response.text()
                    raise classify_error(
                        f"Execution service error {response.status}: {text}",
                        default=NonRetryableGatewayError,
                        action=path,
                    )
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientGatewayError(f"Execution service unreachable: {e!r}", action=path) from e

    @retry(
        stop=stop_after_attempt(4),
        wait=wait_random_exponential(multiplier=0.5, max=8),
        retry=retry_if_exception_type(TransientGatewayError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _read(self, path: str, allow_404: bool = False) -> Optional[Dict[str, Any]]:
        """GET with automatic retries on transient errors."""
        return await self._request("GET", path, allow_404=allow_404)

    # =========================================================================
    # GATEWAY CONTRACT
    # =========================================================================

    async def get_position(self, symbol: str) -> Optional[Position]:
        payload = await self._read(f"positions/{symbol}", allow_404=True)
        if not payload:
            return None
        size = float(payload.get("size") or 0)
        if size == 0:
            return None
        return Position(
            symbol=symbol,
            direction=Direction.LONG if size > 0 else Direction.SHORT,
            size=size,
            entry_price=float(payload["entry_price"]),
            mark_price=float(payload["mark_price"]) if payload.get("mark_price") is not None else None,
        )

    async def get_mark_price(self, symbol: str) -> float:
        payload = await self._read(f"markets/{symbol}/mark")
        return float(payload["mark_price"])

    async def account_state(self) -> AccountState:
        payload = await self._read("account")
        return AccountState(balance=float(payload["balance"]))

    async def open_position(
        self,
        direction: Direction,
        symbol: str,
        leverage: Optional[float] = None,
    ) -> str:
        self.logger.warning(f"LIVE OPEN: {direction.label.upper()} {symbol} (leverage {leverage})")
        body: Dict[str, Any] = {"symbol": symbol, "direction": direction.label}
        if leverage is not None:
            body["leverage"] = leverage
        payload = await self._request("POST", "positions/open", body)
        tx_id = str((payload or {}).get("tx_id", ""))
        self.logger.info(f"LIVE OPEN submitted: {symbol} tx={tx_id}")
        return tx_id

    async def close_position(self, direction: Direction, symbol: str) -> str:
        self.logger.warning(f"LIVE CLOSE: {direction.label.upper()} {symbol}")
        payload = await self._request(
            "POST", "positions/close", {"symbol": symbol, "direction": direction.label}
        )
        tx_id = str((payload or {}).get("tx_id", ""))
        self.logger.info(f"LIVE CLOSE submitted: {symbol} tx={tx_id}")
        return tx_id
