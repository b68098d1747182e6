"""SQLAlchemy models for mixer orders."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Index, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class BaseUnits(TypeDecorator):
    """Integer token amount stored as a decimal string.

    SPL amounts are u64 and overflow signed BIGINT; SQLite has no exact
    wide numeric type, so the digits are kept as text.
    """

    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamp on every backend.

    SQLite drops tzinfo, so values are stored as naive UTC there and
    re-tagged on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class MixerOrderStatus(str, Enum):
    """Status of a mixer order."""

    PENDING = "pending"          # Waiting for the sender's deposit
    DEPOSITED = "deposited"      # Deposit confirmed on-chain
    PROCESSING = "processing"    # Payout scheduled or being executed
    COMPLETED = "completed"      # Payout confirmed
    EXPIRED = "expired"          # No deposit before expires_at
    CANCELLED = "cancelled"      # Closed by the client

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {MixerOrderStatus.COMPLETED, MixerOrderStatus.EXPIRED, MixerOrderStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: dict[MixerOrderStatus, frozenset[MixerOrderStatus]] = {
    MixerOrderStatus.PENDING: frozenset(
        {MixerOrderStatus.DEPOSITED, MixerOrderStatus.EXPIRED, MixerOrderStatus.CANCELLED}
    ),
    MixerOrderStatus.DEPOSITED: frozenset(
        {MixerOrderStatus.PROCESSING, MixerOrderStatus.CANCELLED}
    ),
    MixerOrderStatus.PROCESSING: frozenset(
        {MixerOrderStatus.COMPLETED, MixerOrderStatus.CANCELLED}
    ),
    MixerOrderStatus.COMPLETED: frozenset(),
    MixerOrderStatus.EXPIRED: frozenset(),
    MixerOrderStatus.CANCELLED: frozenset(),
}


def can_transition(current: MixerOrderStatus, target: MixerOrderStatus) -> bool:
    """Check the order state graph."""
    return target in ALLOWED_TRANSITIONS[MixerOrderStatus(current)]


class MixerOrder(Base):
    """Custodial mixing order.

    The deposit secret is stored only as Fernet ciphertext and is scrubbed
    when the order closes without a payout.
    """

    __tablename__ = "mixer_orders"
    __table_args__ = (
        Index("ix_mixer_orders_status_expires", "status", "expires_at"),
        Index("ix_mixer_orders_status_payout", "status", "payout_scheduled_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    token_mint: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(BaseUnits, nullable=False)
    sender_address: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_address: Mapped[str] = mapped_column(String(64), nullable=False)

    # Custodial deposit address
    deposit_address: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True
    )
    deposit_secret_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    key_id: Mapped[str] = mapped_column(String(32), nullable=False)

    status: Mapped[MixerOrderStatus] = mapped_column(
        String(20), default=MixerOrderStatus.PENDING, nullable=False
    )

    # Deposit tracking
    deposited_amount: Mapped[Optional[int]] = mapped_column(BaseUnits, nullable=True)
    deposited_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    deposit_tx_signature: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Payout tracking
    payout_scheduled_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    payout_executed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    payout_tx_signature: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True, index=True
    )
    # Broadcast but not yet confirmed; checked before any resubmission
    payout_submitted_signature: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True
    )
    payout_attempts: Mapped[int] = mapped_column(default=0)
    payout_next_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    payout_lease_until: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    # Token of the executor attempt holding the lease
    payout_lease_owner: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    payout_last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payout_failed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )

    @property
    def order_status(self) -> MixerOrderStatus:
        return MixerOrderStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.order_status.is_terminal

    @property
    def secret_discarded(self) -> bool:
        return not self.deposit_secret_encrypted

    @property
    def needs_attention(self) -> bool:
        """Payout gave up after its retry budget or could not decrypt."""
        return self.payout_failed_at is not None

    def __repr__(self) -> str:
        return f"MixerOrder(order_id={self.order_id!r}, status={self.status!r})"
