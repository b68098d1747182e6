"""Utility modules for Mixerex."""

from mixerex.utils.clock import Clock, utcnow
from mixerex.utils.locks import LockTimeoutError, get_order_lock, order_lock

__all__ = ["Clock", "LockTimeoutError", "get_order_lock", "order_lock", "utcnow"]
