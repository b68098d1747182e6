"""Per-order concurrency helpers.

The database compare-and-set is what keeps transitions correct. These locks
only collapse duplicate work inside one process, e.g. ten browser tabs polling
the same order should cause one RPC balance query, not ten.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

logger = logging.getLogger(__name__)

# Global lock registry: order_id -> asyncio.Lock
_order_locks: dict[str, asyncio.Lock] = {}


def get_order_lock(order_id: str) -> asyncio.Lock:
    """Get or create the lock for an order."""
    lock = _order_locks.get(order_id)
    if lock is None:
        lock = _order_locks.setdefault(order_id, asyncio.Lock())
    return lock


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


@asynccontextmanager
async def order_lock(
    order_id: str,
    timeout: Optional[float] = 30.0,
    operation: str = "order_operation",
):
    """Serialize work on one order within this process.

    Args:
        order_id: Client-facing order id
        timeout: Maximum time to wait for lock (None = wait forever)
        operation: Description for logging

    Example:
        async with order_lock(order_id, operation="check_deposit"):
            ...
    """
    lock = get_order_lock(order_id)

    try:
        if timeout:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        else:
            await lock.acquire()
    except asyncio.TimeoutError:
        logger.warning(f"Lock timeout for order {order_id}: {operation}")
        raise LockTimeoutError(
            f"Could not acquire lock for order {order_id} within {timeout}s"
        ) from None

    logger.debug(f"Lock acquired for order {order_id}: {operation}")
    try:
        yield
    finally:
        lock.release()
        logger.debug(f"Lock released for order {order_id}: {operation}")


def discard_order_lock(order_id: str) -> None:
    """Drop the lock of an order that reached a terminal state."""
    lock = _order_locks.get(order_id)
    if lock is not None and not lock.locked():
        _order_locks.pop(order_id, None)


def clear_order_locks() -> None:
    """Clear all order locks (useful for testing)."""
    _order_locks.clear()
