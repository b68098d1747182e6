"""Background worker driving the order lifecycle.

Three independent loops replace any client-side timers: deposit polling,
payout execution and expiry sweeping. Each loop survives errors in a single
tick and stops promptly when asked.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from mixerex.services.registry import MixerServices

logger = logging.getLogger(__name__)


class MixerWorker:
    """Runs the periodic mixer jobs."""

    def __init__(self, services: MixerServices):
        self.services = services
        self.settings = services.settings
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def deposit_tick(self) -> int:
        return await self.services.monitor.poll_pending()

    async def payout_tick(self) -> int:
        """Recover stalled hand-offs, then run every due payout."""
        await self.services.scheduler.schedule_stalled()
        results = await self.services.executor.run_due_payouts()
        return sum(1 for r in results if r.success and not r.skipped)

    async def expiry_tick(self) -> int:
        return await self.services.sweeper.sweep_once()

    async def _loop(self, name: str, tick: Callable[[], Awaitable[int]], interval: float) -> None:
        logger.info(f"Worker loop '{name}' started (interval: {interval}s)")
        while not self._stop_event.is_set():
            try:
                await tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Worker loop '{name}' error: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"Worker loop '{name}' stopped")

    def start(self) -> list[asyncio.Task]:
        """Start all loops on the running event loop."""
        if self.running:
            return self._tasks

        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(
                self._loop("deposits", self.deposit_tick, self.settings.deposit_poll_interval)
            ),
            asyncio.create_task(
                self._loop("payouts", self.payout_tick, self.settings.payout_tick_interval)
            ),
            asyncio.create_task(
                self._loop("expiry", self.expiry_tick, self.settings.expiry_sweep_interval)
            ),
        ]
        return self._tasks

    async def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Signal the loops and wait for them to finish their current tick."""
        self._stop_event.set()
        if not self._tasks:
            return

        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Mixer worker stopped")
