"""Expiry Sweeper - closes pending orders that outlived their window."""

import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mixerex.errors import MixerError
from mixerex.ledger.database import get_db
from mixerex.ledger.repository import MixerOrderRepository
from mixerex.services.order_manager import OrderManager
from mixerex.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Expires stale pending orders.

    Safe to run in several processes: each expiry is a compare-and-set on
    status, so a sweep that races a deposit or another sweep is a no-op.
    """

    def __init__(
        self,
        manager: OrderManager,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Clock = utcnow,
        interval: float = 30,
        batch_size: int = 100,
    ):
        self.manager = manager
        self.session_factory = session_factory
        self.clock = clock
        self.interval = interval
        self.batch_size = batch_size

    async def sweep_once(self) -> int:
        """Expire every pending order past its deadline.

        Returns:
            Number of orders this sweep expired
        """
        async with get_db(self.session_factory) as session:
            order_ids = await MixerOrderRepository(session).list_expired_pending(
                self.clock(), limit=self.batch_size
            )

        expired = 0
        for order_id in order_ids:
            try:
                if await self.manager.expire_order(order_id):
                    expired += 1
            except MixerError as e:
                logger.error(f"Failed to expire order {order_id}: {e}")

        if expired:
            logger.info(f"Expiry sweep closed {expired} order(s)")
        return expired

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Sweep every `interval` seconds until stopped."""
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Expiry sweeper started (interval: {self.interval}s)")

        while not stop_event.is_set():
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Expiry sweep error: {e}")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Expiry sweeper stopped")
