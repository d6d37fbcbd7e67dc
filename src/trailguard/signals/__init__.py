"""
Signals Module - Stream Subscription and Bounded Queue
"""

from .queue import Signal, SignalQueue
from .stream import SignalStream

__all__ = ["Signal", "SignalQueue", "SignalStream"]
