"""
Execution Module - The Venue Contract

Key Types:
- ExecutionMode: PAPER or LIVE (immutable after init)
- Direction: LONG (1) / SHORT (-1)
- Position, AccountState: venue snapshots (never mutated locally)

Gateways:
- PaperExecutionGateway: In-process simulation
- LiveExecutionGateway: REST client to the execution service

Errors:
- TransientGatewayError: retry with jittered backoff
- NonRetryableGatewayError: abort and alert
"""

from .schema import AccountState, Direction, ExecutionMode, Position
from .base import (
    ExecutionGateway,
    ExecutionModeImmutableError,
    GatewayError,
    NonRetryableGatewayError,
    TransientGatewayError,
    classify_error,
)
from .retry import call_with_retry, verify_position_state
from .paper import PaperExecutionGateway
from .live import LiveExecutionGateway
from .factory import create_gateway

__all__ = [
    # Schema
    "AccountState",
    "Direction",
    "ExecutionMode",
    "Position",
    # Base
    "ExecutionGateway",
    "ExecutionModeImmutableError",
    "GatewayError",
    "NonRetryableGatewayError",
    "TransientGatewayError",
    "classify_error",
    "call_with_retry",
    "verify_position_state",
    # Implementations
    "PaperExecutionGateway",
    "LiveExecutionGateway",
    "create_gateway",
]
