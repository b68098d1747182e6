"""Deposit Monitor - detects the sender's deposit for pending orders.

check_deposit is safe to call from any number of browser tabs and from the
background worker at once. The pending -> deposited compare-and-set decides
the single winner, and only the winner hands the order to the scheduler.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mixerex.chain.base import DepositSource
from mixerex.errors import (
    InsufficientDepositError,
    LedgerUnavailableError,
    MixerError,
    NotFoundError,
)
from mixerex.ledger.database import get_db
from mixerex.ledger.models import MixerOrder, MixerOrderStatus
from mixerex.ledger.repository import MixerOrderRepository
from mixerex.services.payouts import PayoutScheduler
from mixerex.utils.clock import Clock, utcnow
from mixerex.utils.locks import LockTimeoutError, discard_order_lock, order_lock

logger = logging.getLogger(__name__)


@dataclass
class DepositResult:
    """Deposit state of an order as reported to clients."""

    deposited: bool
    status: str
    amount: Optional[int] = None
    deposited_at: Optional[datetime] = None
    signature: Optional[str] = None
    payout_eta: Optional[datetime] = None
    payout_scheduled_in_minutes: Optional[int] = None

    @classmethod
    def from_order(cls, order: MixerOrder, now: datetime) -> "DepositResult":
        eta = order.payout_scheduled_at
        minutes = None
        if eta is not None:
            minutes = max(0, math.ceil((eta - now).total_seconds() / 60))
        return cls(
            deposited=order.deposited_amount is not None,
            status=order.status,
            amount=order.deposited_amount,
            deposited_at=order.deposited_at,
            signature=order.deposit_tx_signature,
            payout_eta=eta,
            payout_scheduled_in_minutes=minutes,
        )


class DepositMonitor:
    """Checks deposit addresses and records confirmed deposits."""

    def __init__(
        self,
        source: DepositSource,
        scheduler: PayoutScheduler,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Clock = utcnow,
        lock_timeout: float = 30.0,
    ):
        self.source = source
        self.scheduler = scheduler
        self.session_factory = session_factory
        self.clock = clock
        self.lock_timeout = lock_timeout

    async def _load(self, order_id: str) -> MixerOrder:
        async with get_db(self.session_factory) as session:
            order = await MixerOrderRepository(session).get_order(order_id)
        if order is None:
            raise NotFoundError(order_id)
        return order

    @staticmethod
    def _settled(order: MixerOrder) -> bool:
        """Nothing left to observe: deposit recorded or order closed."""
        return order.deposited_amount is not None or order.is_terminal

    async def check_deposit(self, order_id: str) -> DepositResult:
        """Check whether an order's deposit has arrived.

        Raises:
            NotFoundError: If no such order exists
        """
        order = await self._load(order_id)
        if self._settled(order):
            return DepositResult.from_order(order, self.clock())

        # Concurrent callers in this process share one ledger query
        try:
            async with order_lock(order_id, timeout=self.lock_timeout, operation="check_deposit"):
                await self._observe_and_record(order_id)
        except LockTimeoutError:
            logger.warning(f"Deposit check for order {order_id} skipped: lock busy")

        order = await self._load(order_id)
        if order.is_terminal:
            discard_order_lock(order_id)
        return DepositResult.from_order(order, self.clock())

    async def _observe_and_record(self, order_id: str) -> None:
        order = await self._load(order_id)
        if self._settled(order):
            return
        if await self._expire_if_overdue(order):
            return

        try:
            observation = await self.source.observe(order.deposit_address, order.token_mint)
        except LedgerUnavailableError as e:
            logger.warning(f"Deposit check for order {order_id} deferred: {e}")
            return

        if observation.balance < order.amount:
            logger.debug(
                f"Order {order_id} deposit not yet complete: {observation.balance}/{order.amount}"
            )
            return

        signature = observation.signature or await self.source.resolve_signature(
            order.deposit_address, order.token_mint
        )
        deposited_at = observation.observed_at or self.clock()

        async with get_db(self.session_factory) as session:
            try:
                won = await MixerOrderRepository(session).mark_deposited(
                    order, observation.balance, deposited_at, signature, now=self.clock()
                )
            except InsufficientDepositError:
                won = False

        if not won:
            # Deadline may have passed while the ledger was queried
            await self._expire_if_overdue(order)
        else:
            logger.info(
                f"Deposit confirmed for order {order_id}: {observation.balance} "
                f"(tx {signature or 'unknown'})"
            )
            await self.scheduler.schedule_payout(order_id)

    async def _expire_if_overdue(self, order: MixerOrder) -> bool:
        """Expire a pending order past its deadline instead of accepting funds.

        Returns:
            True if the order is past its deadline, whoever closed it
        """
        now = self.clock()
        if order.expires_at >= now:
            return False

        async with get_db(self.session_factory) as session:
            won = await MixerOrderRepository(session).close_order(
                order.order_id,
                MixerOrderStatus.PENDING,
                MixerOrderStatus.EXPIRED,
                closed_at=now,
            )
        if won:
            logger.warning(
                f"Mixer order {order.order_id} expired at its deposit check; "
                f"late funds at {order.deposit_address} are not accepted"
            )
        return True

    async def poll_pending(self) -> int:
        """Check every live pending order once.

        Returns:
            Number of orders that moved to deposited
        """
        async with get_db(self.session_factory) as session:
            order_ids = await MixerOrderRepository(session).list_live_pending(self.clock())

        detected = 0
        for order_id in order_ids:
            try:
                result = await self.check_deposit(order_id)
            except MixerError as e:
                logger.error(f"Deposit poll failed for order {order_id}: {e}")
                continue
            if result.deposited:
                detected += 1

        if order_ids:
            logger.debug(f"Deposit poll: {len(order_ids)} pending, {detected} deposited")
        return detected
