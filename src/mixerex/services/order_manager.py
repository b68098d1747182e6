"""Order Manager - creates mixing orders and closes them.

Owns the client-facing side of the order lifecycle: a new order gets a fresh
custodial deposit keypair and a deadline; cancel, expire and auto-close are
compare-and-set transitions that scrub the deposit secret with them.
"""

import logging
import secrets
import string
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mixerex.chain.solana import validate_address
from mixerex.config import Settings, get_settings
from mixerex.crypto import KeyVault
from mixerex.errors import (
    AlreadyTerminalError,
    MixerError,
    NotFoundError,
    PayoutInFlightError,
    ValidationError,
)
from mixerex.ledger.database import get_db
from mixerex.ledger.models import MixerOrder, MixerOrderStatus
from mixerex.ledger.repository import MixerOrderRepository
from mixerex.utils.clock import Clock, utcnow
from mixerex.utils.locks import discard_order_lock

logger = logging.getLogger(__name__)

ORDER_ID_PREFIX = "MIX"
ORDER_ID_ALPHABET = string.ascii_uppercase + string.digits
ORDER_ID_SUFFIX_LENGTH = 8

# SPL token amounts are u64
MAX_TOKEN_AMOUNT = 2**64 - 1

# Retries when a status changes between read and compare-and-set
CLOSE_RETRIES = 3

OPEN_STATUSES = (
    MixerOrderStatus.PENDING,
    MixerOrderStatus.DEPOSITED,
    MixerOrderStatus.PROCESSING,
)


def generate_order_id(now: datetime) -> str:
    """Client-facing order id: MIX-<epoch ms>-<8 random upper alnum>."""
    suffix = "".join(secrets.choice(ORDER_ID_ALPHABET) for _ in range(ORDER_ID_SUFFIX_LENGTH))
    return f"{ORDER_ID_PREFIX}-{int(now.timestamp() * 1000)}-{suffix}"


@dataclass
class OrderSummary:
    """Public view of an order. Never carries key material."""

    order_id: str
    status: str
    token_mint: str
    amount: int
    sender_address: str
    recipient_address: str
    deposit_address: str
    expires_at: datetime
    created_at: Optional[datetime] = None
    deposited_amount: Optional[int] = None
    deposited_at: Optional[datetime] = None
    deposit_tx_signature: Optional[str] = None
    payout_scheduled_at: Optional[datetime] = None
    payout_executed_at: Optional[datetime] = None
    payout_tx_signature: Optional[str] = None
    completed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: MixerOrder) -> "OrderSummary":
        return cls(
            order_id=order.order_id,
            status=order.order_status.value,
            token_mint=order.token_mint,
            amount=order.amount,
            sender_address=order.sender_address,
            recipient_address=order.recipient_address,
            deposit_address=order.deposit_address,
            expires_at=order.expires_at,
            created_at=order.created_at,
            deposited_amount=order.deposited_amount,
            deposited_at=order.deposited_at,
            deposit_tx_signature=order.deposit_tx_signature,
            payout_scheduled_at=order.payout_scheduled_at,
            payout_executed_at=order.payout_executed_at,
            payout_tx_signature=order.payout_tx_signature,
            completed_at=order.completed_at,
            closed_at=order.closed_at,
        )

    def to_dict(self) -> dict:
        return asdict(self)


class OrderManager:
    """Creates, reads and closes mixer orders."""

    def __init__(
        self,
        vault: KeyVault,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        """Initialize the manager.

        Args:
            vault: Key vault generating and encrypting deposit keypairs
            session_factory: Session factory (defaults to the process database)
            settings: Lifecycle settings (defaults to get_settings())
            clock: Source of the current UTC time
        """
        self.vault = vault
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock

    @property
    def order_window(self) -> timedelta:
        return timedelta(minutes=self.settings.order_window_minutes)

    async def create_order(
        self,
        token_mint: str,
        amount: int,
        recipient_address: str,
        sender_address: str,
        session_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
    ) -> MixerOrder:
        """Create a pending order with a fresh custodial deposit address.

        Args:
            token_mint: SPL token mint to mix
            amount: Quantity in base units
            recipient_address: Wallet that receives the payout
            sender_address: Wallet the deposit is expected from
            session_id: Browser session, for correlation only
            wallet_address: Connected wallet, for correlation only

        Returns:
            The persisted order

        Raises:
            ValidationError: If the amount or an address is invalid
        """
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("Amount must be an integer number of base units")
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        if amount > MAX_TOKEN_AMOUNT:
            raise ValidationError("Amount exceeds the token maximum")

        token_mint = validate_address(token_mint, "token mint")
        recipient_address = validate_address(recipient_address, "recipient address")
        sender_address = validate_address(sender_address, "sender address")
        if wallet_address:
            wallet_address = validate_address(wallet_address, "wallet address")

        now = self.clock()
        expires_at = now + self.order_window

        async with get_db(self.session_factory) as session:
            repo = MixerOrderRepository(session)

            generated = self.vault.generate_deposit_keypair()
            # Keypairs are random; a collision means the RNG is broken
            if await repo.deposit_address_exists(generated.address):
                raise MixerError("Deposit address collision; refusing to reuse an address")

            order = await repo.create_order(
                order_id=generate_order_id(now),
                token_mint=token_mint,
                amount=amount,
                sender_address=sender_address,
                recipient_address=recipient_address,
                deposit_address=generated.address,
                deposit_secret_encrypted=generated.encrypted_secret,
                key_id=generated.key_id,
                expires_at=expires_at,
                session_id=session_id,
                wallet_address=wallet_address,
            )

        logger.info(
            f"Mixer order {order.order_id} created: {amount} of {token_mint}, "
            f"deposit to {order.deposit_address}, expires {expires_at.isoformat()}"
        )
        return order

    async def get_order(self, order_id: str) -> MixerOrder:
        """Load an order.

        Raises:
            NotFoundError: If no such order exists
        """
        async with get_db(self.session_factory) as session:
            order = await MixerOrderRepository(session).get_order(order_id)
        if order is None:
            raise NotFoundError(order_id)
        return order

    async def get_active_order_by_session(self, session_id: str) -> Optional[MixerOrder]:
        async with get_db(self.session_factory) as session:
            return await MixerOrderRepository(session).get_active_order_by_session(session_id)

    async def list_orders_by_wallet(self, wallet_address: str) -> list[MixerOrder]:
        async with get_db(self.session_factory) as session:
            return await MixerOrderRepository(session).list_orders_by_wallet(
                wallet_address, self.clock()
            )

    async def cancel_order(self, order_id: str) -> MixerOrder:
        """Cancel a non-terminal order and scrub its deposit secret.

        Raises:
            NotFoundError: If no such order exists
            AlreadyTerminalError: If the order is already closed
            PayoutInFlightError: If an executor currently owns the payout
        """
        for _ in range(CLOSE_RETRIES):
            async with get_db(self.session_factory) as session:
                repo = MixerOrderRepository(session)
                order = await repo.get_order(order_id)
                if order is None:
                    raise NotFoundError(order_id)
                if order.is_terminal:
                    raise AlreadyTerminalError(order_id, order.status)

                now = self.clock()
                won = await repo.close_order(
                    order_id,
                    OPEN_STATUSES,
                    MixerOrderStatus.CANCELLED,
                    closed_at=now,
                    conditions=[repo.no_live_payout_lease(now)],
                )
                if not won:
                    await session.refresh(order)
                    if order.is_terminal:
                        raise AlreadyTerminalError(order_id, order.status)
                    if order.payout_submitted_signature or (
                        order.payout_lease_until is not None and order.payout_lease_until >= now
                    ):
                        raise PayoutInFlightError(order_id)
                    # Status moved forward under us; try again from the new state
                    continue

                previous_status = order.order_status
                deposited_amount = order.deposited_amount
                await session.refresh(order)

            if previous_status != MixerOrderStatus.PENDING:
                logger.warning(
                    f"Mixer order {order_id} cancelled in {previous_status.value} with "
                    f"{deposited_amount} custodied at {order.deposit_address}; "
                    f"deposit key discarded"
                )
            else:
                logger.info(f"Mixer order {order_id} cancelled")
            discard_order_lock(order_id)
            return order

        raise MixerError(f"Order {order_id} changed state during cancel", http_status=409)

    async def expire_order(self, order_id: str) -> bool:
        """Expire a pending order and scrub its deposit secret.

        Returns:
            True if this call expired the order; False if it was no longer pending

        Raises:
            NotFoundError: If no such order exists
        """
        async with get_db(self.session_factory) as session:
            repo = MixerOrderRepository(session)
            won = await repo.close_order(
                order_id,
                MixerOrderStatus.PENDING,
                MixerOrderStatus.EXPIRED,
                closed_at=self.clock(),
            )
            if not won and await repo.get_order(order_id) is None:
                raise NotFoundError(order_id)

        if won:
            logger.info(f"Mixer order {order_id} expired without deposit")
            discard_order_lock(order_id)
        return won

    async def auto_close(self, order_id: str) -> MixerOrder:
        """Close an order from the client's timer.

        Expires a pending order past its deadline, cancels anything else
        still open, and succeeds quietly on an order that is already closed.

        Raises:
            NotFoundError: If no such order exists
            PayoutInFlightError: If an executor currently owns the payout
        """
        order = await self.get_order(order_id)
        if order.is_terminal:
            return order

        if order.order_status == MixerOrderStatus.PENDING and order.expires_at < self.clock():
            await self.expire_order(order_id)
            return await self.get_order(order_id)

        try:
            return await self.cancel_order(order_id)
        except AlreadyTerminalError:
            return await self.get_order(order_id)

    async def purge_closed_orders(self, older_than_days: int) -> int:
        """Delete closed orders whose deposit secret is already scrubbed.

        Returns:
            Number of rows deleted
        """
        if older_than_days < 0:
            raise ValidationError("Retention must not be negative")
        cutoff = self.clock() - timedelta(days=older_than_days)
        async with get_db(self.session_factory) as session:
            return await MixerOrderRepository(session).purge_terminal_orders(cutoff)
