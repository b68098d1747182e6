"""Ledger access for deposit detection and payouts."""

from mixerex.chain.base import (
    ChainReader,
    ChainWriter,
    DepositObservation,
    DepositSource,
    LedgerClient,
    PollingDepositSource,
    TransactionStatus,
)
from mixerex.chain.factory import get_ledger

__all__ = [
    "ChainReader",
    "ChainWriter",
    "DepositObservation",
    "DepositSource",
    "LedgerClient",
    "PollingDepositSource",
    "TransactionStatus",
    "get_ledger",
]
