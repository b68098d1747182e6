"""Repository for mixer order persistence.

Every state change is a compare-and-set: one UPDATE guarded by the expected
current status, whose rowcount tells the caller whether it won. No method
performs network I/O.
"""

import logging
from datetime import datetime
from typing import Any, Iterable, Optional, Union

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mixerex.errors import InsufficientDepositError
from mixerex.ledger.models import (
    TERMINAL_STATUSES,
    MixerOrder,
    MixerOrderStatus,
    can_transition,
)

logger = logging.getLogger(__name__)

StatusArg = Union[MixerOrderStatus, Iterable[MixerOrderStatus]]


class InvalidTransitionError(ValueError):
    """Transition is not an edge of the order state graph."""


def _as_status_list(expected: StatusArg) -> list[MixerOrderStatus]:
    if isinstance(expected, MixerOrderStatus):
        return [expected]
    return [MixerOrderStatus(s) for s in expected]


class MixerOrderRepository:
    """Repository for all mixer order database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Creation and lookup
    async def create_order(
        self,
        order_id: str,
        token_mint: str,
        amount: int,
        sender_address: str,
        recipient_address: str,
        deposit_address: str,
        deposit_secret_encrypted: str,
        key_id: str,
        expires_at: datetime,
        session_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
    ) -> MixerOrder:
        """Persist a new order in pending state."""
        order = MixerOrder(
            order_id=order_id,
            token_mint=token_mint,
            amount=amount,
            sender_address=sender_address,
            recipient_address=recipient_address,
            deposit_address=deposit_address,
            deposit_secret_encrypted=deposit_secret_encrypted,
            key_id=key_id,
            status=MixerOrderStatus.PENDING,
            expires_at=expires_at,
            session_id=session_id,
            wallet_address=wallet_address,
        )
        self.session.add(order)
        await self.session.flush()
        await self.session.refresh(order)
        return order

    async def get_order(self, order_id: str) -> Optional[MixerOrder]:
        """Get order by its client-facing id."""
        stmt = select(MixerOrder).where(MixerOrder.order_id == order_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def deposit_address_exists(self, address: str) -> bool:
        stmt = select(MixerOrder.id).where(MixerOrder.deposit_address == address)
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def get_active_order_by_session(self, session_id: str) -> Optional[MixerOrder]:
        """Most recent non-terminal order for a browser session."""
        stmt = (
            select(MixerOrder)
            .where(
                MixerOrder.session_id == session_id,
                MixerOrder.status.not_in([s.value for s in TERMINAL_STATUSES]),
            )
            .order_by(MixerOrder.id.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_orders_by_wallet(self, wallet_address: str, now: datetime) -> list[MixerOrder]:
        """Orders for a wallet, hiding pending orders already past expiry."""
        stmt = (
            select(MixerOrder)
            .where(
                MixerOrder.wallet_address == wallet_address,
                or_(
                    MixerOrder.status != MixerOrderStatus.PENDING.value,
                    MixerOrder.expires_at >= now,
                ),
            )
            .order_by(MixerOrder.id.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Worker selections
    async def list_expired_pending(self, now: datetime, limit: int = 100) -> list[str]:
        """Order ids still pending after their deadline."""
        stmt = (
            select(MixerOrder.order_id)
            .where(
                MixerOrder.status == MixerOrderStatus.PENDING.value,
                MixerOrder.expires_at < now,
            )
            .order_by(MixerOrder.expires_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_live_pending(self, now: datetime, limit: int = 200) -> list[str]:
        """Order ids waiting for a deposit and not yet expired."""
        stmt = (
            select(MixerOrder.order_id)
            .where(
                MixerOrder.status == MixerOrderStatus.PENDING.value,
                MixerOrder.expires_at >= now,
            )
            .order_by(MixerOrder.id)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_stalled_deposited(self, limit: int = 100) -> list[str]:
        """Orders that recorded a deposit but never got a payout time."""
        stmt = (
            select(MixerOrder.order_id)
            .where(
                MixerOrder.status == MixerOrderStatus.DEPOSITED.value,
                MixerOrder.payout_scheduled_at.is_(None),
            )
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_due_payouts(self, now: datetime, limit: int = 50) -> list[str]:
        """Processing orders whose payout time (and retry time) has come."""
        stmt = (
            select(MixerOrder.order_id)
            .where(
                MixerOrder.status == MixerOrderStatus.PROCESSING.value,
                MixerOrder.payout_tx_signature.is_(None),
                MixerOrder.payout_failed_at.is_(None),
                MixerOrder.payout_scheduled_at <= now,
                or_(
                    MixerOrder.payout_next_attempt_at.is_(None),
                    MixerOrder.payout_next_attempt_at <= now,
                ),
                or_(
                    MixerOrder.payout_lease_until.is_(None),
                    MixerOrder.payout_lease_until < now,
                ),
            )
            .order_by(MixerOrder.payout_scheduled_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_failed_payouts(self) -> list[MixerOrder]:
        """Orders flagged for manual payout resolution."""
        stmt = (
            select(MixerOrder)
            .where(
                MixerOrder.status == MixerOrderStatus.PROCESSING.value,
                MixerOrder.payout_failed_at.is_not(None),
            )
            .order_by(MixerOrder.payout_failed_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Compare-and-set transitions
    async def transition(
        self,
        order_id: str,
        expected: StatusArg,
        target: MixerOrderStatus,
        conditions: Iterable[Any] = (),
        **values: Any,
    ) -> bool:
        """Move an order to `target` only if it is currently in `expected`.

        Args:
            order_id: Client-facing order id
            expected: Status or statuses the order must currently have
            target: New status
            conditions: Extra WHERE clauses that must also hold
            **values: Columns written together with the status

        Returns:
            True if this caller won the transition

        Raises:
            InvalidTransitionError: If any expected -> target edge is not allowed
        """
        expected_list = _as_status_list(expected)
        for current in expected_list:
            if not can_transition(current, target):
                raise InvalidTransitionError(f"{current.value} -> {target.value} is not allowed")

        return await self._guarded_update(
            order_id,
            [MixerOrder.status.in_([s.value for s in expected_list]), *conditions],
            status=target.value,
            **values,
        )

    async def _guarded_update(self, order_id: str, conditions: list[Any], **values: Any) -> bool:
        stmt = (
            update(MixerOrder)
            .where(MixerOrder.order_id == order_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def mark_deposited(
        self,
        order: MixerOrder,
        deposited_amount: int,
        deposited_at: datetime,
        signature: Optional[str],
        now: Optional[datetime] = None,
    ) -> bool:
        """pending -> deposited, recording the immutable deposit fields.

        With `now` given, an order already past its deadline is not matched.

        Raises:
            InsufficientDepositError: If the observed amount is below the order amount
        """
        if deposited_amount < order.amount:
            raise InsufficientDepositError(order.amount, deposited_amount)

        conditions = [MixerOrder.deposited_amount.is_(None)]
        if now is not None:
            conditions.append(MixerOrder.expires_at >= now)
        return await self.transition(
            order.order_id,
            MixerOrderStatus.PENDING,
            MixerOrderStatus.DEPOSITED,
            conditions=conditions,
            deposited_amount=deposited_amount,
            deposited_at=deposited_at,
            deposit_tx_signature=signature,
        )

    async def mark_processing(self, order_id: str, scheduled_at: datetime) -> bool:
        """deposited -> processing; payout_scheduled_at is written only here."""
        return await self.transition(
            order_id,
            MixerOrderStatus.DEPOSITED,
            MixerOrderStatus.PROCESSING,
            conditions=[MixerOrder.payout_scheduled_at.is_(None)],
            payout_scheduled_at=scheduled_at,
        )

    @staticmethod
    def holds_lease(owner: Optional[str]) -> Any:
        """Condition: the lease still belongs to the attempt with this token."""
        return MixerOrder.payout_lease_owner == owner

    async def claim_payout(
        self,
        order_id: str,
        now: datetime,
        lease_until: datetime,
        owner: Optional[str] = None,
    ) -> bool:
        """Take the payout lease for one execution attempt.

        Args:
            order_id: Client-facing order id
            now: Current time; the payout must be due and any old lease expired
            lease_until: End of the new lease
            owner: Token of the attempt; later writes of the attempt must match it
        """
        return await self._guarded_update(
            order_id,
            [
                MixerOrder.status == MixerOrderStatus.PROCESSING.value,
                MixerOrder.payout_tx_signature.is_(None),
                MixerOrder.payout_failed_at.is_(None),
                MixerOrder.payout_scheduled_at <= now,
                or_(
                    MixerOrder.payout_next_attempt_at.is_(None),
                    MixerOrder.payout_next_attempt_at <= now,
                ),
                or_(
                    MixerOrder.payout_lease_until.is_(None),
                    MixerOrder.payout_lease_until < now,
                ),
            ],
            payout_lease_until=lease_until,
            payout_lease_owner=owner,
        )

    async def record_submitted_payout(
        self, order_id: str, signature: str, owner: Optional[str] = None
    ) -> bool:
        """Remember a broadcast signature before it is sent.

        Returns:
            False if the order left processing or the lease moved to another
            attempt; the caller must not broadcast then
        """
        return await self._guarded_update(
            order_id,
            [
                MixerOrder.status == MixerOrderStatus.PROCESSING.value,
                MixerOrder.payout_tx_signature.is_(None),
                self.holds_lease(owner),
            ],
            payout_submitted_signature=signature,
        )

    async def clear_submitted_payout(
        self, order_id: str, signature: str, owner: Optional[str] = None
    ) -> bool:
        """Forget a broadcast that failed or never landed, keeping the lease."""
        return await self._guarded_update(
            order_id,
            [
                MixerOrder.status == MixerOrderStatus.PROCESSING.value,
                MixerOrder.payout_submitted_signature == signature,
                self.holds_lease(owner),
            ],
            payout_submitted_signature=None,
        )

    async def mark_completed(self, order_id: str, signature: str, executed_at: datetime) -> bool:
        """processing -> completed. The deposit secret is discarded with it.

        Not tied to a lease: a confirmed transfer is final whichever attempt
        observes it, and the payout signature guard keeps completion single.
        """
        return await self.transition(
            order_id,
            MixerOrderStatus.PROCESSING,
            MixerOrderStatus.COMPLETED,
            conditions=[MixerOrder.payout_tx_signature.is_(None)],
            payout_tx_signature=signature,
            payout_executed_at=executed_at,
            payout_submitted_signature=None,
            payout_lease_until=None,
            payout_lease_owner=None,
            payout_last_error=None,
            completed_at=executed_at,
            deposit_secret_encrypted=None,
        )

    async def record_payout_failure(
        self,
        order_id: str,
        error: str,
        attempts: int,
        next_attempt_at: Optional[datetime],
        failed_at: Optional[datetime] = None,
        clear_submitted: bool = False,
        owner: Optional[str] = None,
    ) -> bool:
        """Release the lease after a failed attempt and book the retry.

        Matches only while `owner` still holds the lease, so a stale attempt
        cannot release or overwrite the bookkeeping of a newer one.
        """
        values: dict[str, Any] = dict(
            payout_attempts=attempts,
            payout_next_attempt_at=next_attempt_at,
            payout_last_error=error,
            payout_lease_until=None,
            payout_lease_owner=None,
            payout_failed_at=failed_at,
        )
        if clear_submitted:
            values["payout_submitted_signature"] = None
        return await self._guarded_update(
            order_id,
            [
                MixerOrder.status == MixerOrderStatus.PROCESSING.value,
                MixerOrder.payout_tx_signature.is_(None),
                self.holds_lease(owner),
            ],
            **values,
        )

    async def reset_failed_payout(self, order_id: str, now: datetime) -> bool:
        """Operator action: put a flagged payout back into automatic retries."""
        return await self._guarded_update(
            order_id,
            [
                MixerOrder.status == MixerOrderStatus.PROCESSING.value,
                MixerOrder.payout_failed_at.is_not(None),
            ],
            payout_failed_at=None,
            payout_attempts=0,
            payout_next_attempt_at=now,
            payout_lease_until=None,
            payout_lease_owner=None,
        )

    async def close_order(
        self,
        order_id: str,
        expected: StatusArg,
        target: MixerOrderStatus,
        closed_at: datetime,
        conditions: Iterable[Any] = (),
    ) -> bool:
        """Move to expired/cancelled and scrub the deposit secret."""
        return await self.transition(
            order_id,
            expected,
            target,
            conditions=conditions,
            closed_at=closed_at,
            deposit_secret_encrypted=None,
            payout_lease_until=None,
            payout_lease_owner=None,
        )

    @staticmethod
    def no_live_payout_lease(now: datetime) -> Any:
        """Condition: no executor currently owns the payout."""
        return and_(
            MixerOrder.payout_submitted_signature.is_(None),
            or_(
                MixerOrder.payout_lease_until.is_(None),
                MixerOrder.payout_lease_until < now,
            ),
        )

    # Housekeeping
    async def purge_terminal_orders(self, older_than: datetime) -> int:
        """Physically delete closed orders whose secret is already gone."""
        stmt = (
            delete(MixerOrder)
            .where(
                MixerOrder.status.in_([s.value for s in TERMINAL_STATUSES]),
                MixerOrder.deposit_secret_encrypted.is_(None),
                func.coalesce(MixerOrder.closed_at, MixerOrder.completed_at) < older_than,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        count = result.rowcount or 0
        if count:
            logger.info(f"Purged {count} closed mixer orders")
        return count
