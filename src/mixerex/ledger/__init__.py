"""Ledger module for mixer order persistence."""

from mixerex.ledger.database import get_db, init_db
from mixerex.ledger.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    MixerOrder,
    MixerOrderStatus,
)
from mixerex.ledger.repository import MixerOrderRepository

__all__ = [
    # Models
    "MixerOrder",
    # Enums
    "MixerOrderStatus",
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    # Database
    "get_db",
    "init_db",
    "MixerOrderRepository",
]
