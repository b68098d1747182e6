"""Ledger collaborator contracts.

The mixer never runs a node; it consumes a small read/write surface of the
ledger. Implementations raise LedgerUnavailableError for transient transport
failures and PayoutError when the ledger rejects a transaction.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class TransactionStatus(str, Enum):
    """Confirmation state of a submitted transaction."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ChainReader(ABC):
    """Read-only ledger queries."""

    @abstractmethod
    async def get_token_balance(self, owner: str, mint: str) -> Optional[int]:
        """Balance of the owner's token account for a mint.

        Args:
            owner: Wallet address owning the token account
            mint: Token mint address

        Returns:
            Balance in base units, or None if the account does not exist yet
        """
        pass

    @abstractmethod
    async def get_mint_decimals(self, mint: str) -> int:
        """Decimal precision of a token mint."""
        pass

    @abstractmethod
    async def get_native_balance(self, address: str) -> int:
        """Native (fee currency) balance in base units; 0 if unknown."""
        pass

    @abstractmethod
    async def account_exists(self, address: str) -> bool:
        """Check whether an account exists on the ledger."""
        pass

    @abstractmethod
    async def find_deposit_signature(self, owner: str, mint: str) -> Optional[str]:
        """Best-effort signature of the transaction that funded the account."""
        pass

    @abstractmethod
    async def get_transaction_status(self, signature: str) -> TransactionStatus:
        """Confirmation state of a transaction."""
        pass


class ChainWriter(ABC):
    """Transaction submission."""

    @abstractmethod
    async def get_latest_blockhash(self) -> str:
        """Recent blockhash to anchor a new transaction."""
        pass

    @abstractmethod
    async def submit_signed_transfer(self, signed_tx: bytes) -> str:
        """Broadcast a fully signed transaction.

        Returns:
            Transaction signature
        """
        pass


class LedgerClient(ChainReader, ChainWriter):
    """Full ledger surface used by the mixer."""

    name: str = "ledger"

    async def close(self) -> None:
        """Release network resources."""
        return None

    async def health_check(self) -> bool:
        return True

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name})"


@dataclass
class DepositObservation:
    """What the ledger says about an order's deposit address."""

    balance: int
    signature: Optional[str] = None
    observed_at: Optional[datetime] = None


class DepositSource(ABC):
    """Poll-or-push seam for deposit detection.

    The Deposit Monitor only asks "what is there now?". A polling source
    queries the ledger on every call; a subscription-backed source can answer
    from notifications instead without changing the monitor.
    """

    @abstractmethod
    async def observe(self, owner: str, mint: str) -> DepositObservation:
        """Current deposit balance (0 when the account does not exist)."""
        pass

    async def resolve_signature(self, owner: str, mint: str) -> Optional[str]:
        """Signature of the funding transaction, if one can be found."""
        return None


class PollingDepositSource(DepositSource):
    """Deposit source that queries the ledger on every observation."""

    def __init__(self, reader: ChainReader):
        self.reader = reader

    async def observe(self, owner: str, mint: str) -> DepositObservation:
        balance = await self.reader.get_token_balance(owner, mint)
        return DepositObservation(balance=balance or 0)

    async def resolve_signature(self, owner: str, mint: str) -> Optional[str]:
        try:
            return await self.reader.find_deposit_signature(owner, mint)
        except Exception as e:
            # Signature is informational only; the balance is what counts
            logger.warning(f"Could not resolve deposit signature for {owner}: {e}")
            return None
