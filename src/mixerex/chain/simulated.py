"""In-memory ledger for tests and local development (no real RPC)."""

import logging
import secrets
from dataclasses import dataclass, field
from typing import Optional

from solders.hash import Hash
from solders.transaction import Transaction
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

from mixerex.chain.base import LedgerClient, TransactionStatus
from mixerex.chain.solana import associated_token_address
from mixerex.errors import LedgerUnavailableError, PayoutError

logger = logging.getLogger(__name__)

# SPL token instruction tags
_TRANSFER_CHECKED = 12


@dataclass
class SubmittedTransaction:
    """A transaction accepted by the simulated ledger."""

    signature: str
    raw: bytes
    transfers: list[tuple[str, str, int]] = field(default_factory=list)


class SimulatedLedger(LedgerClient):
    """Simulated ledger keyed by token account address.

    Balances are kept per associated token account so a payout built by the
    real transaction builder moves funds exactly as it would on-chain.
    """

    name = "simulated"

    def __init__(self, default_decimals: int = 6):
        self.default_decimals = default_decimals
        self.token_balances: dict[str, int] = {}
        self.native_balances: dict[str, int] = {}
        self.mint_decimals: dict[str, int] = {}
        self.accounts: set[str] = set()
        self.deposit_signatures: dict[str, str] = {}
        self.submitted: list[SubmittedTransaction] = []
        self.statuses: dict[str, TransactionStatus] = {}

        # Fault injection
        self.unavailable = False
        self.fail_submissions = 0
        self.reject_submissions = 0
        self.pending_polls = 0
        self.fail_confirmations = False
        self.balance_queries = 0

    def _check_available(self) -> None:
        if self.unavailable:
            raise LedgerUnavailableError("Simulated ledger unavailable")

    # Test helpers
    def add_deposit(
        self, owner: str, mint: str, amount: int, signature: Optional[str] = None
    ) -> str:
        """Credit a token account as if someone sent tokens to `owner`."""
        ata = associated_token_address(owner, mint)
        self.token_balances[ata] = self.token_balances.get(ata, 0) + amount
        self.accounts.add(ata)
        sig = signature or f"sim_dep_{secrets.token_hex(16)}"
        self.deposit_signatures[ata] = sig
        return sig

    def fund_native(self, address: str, lamports: int) -> None:
        self.native_balances[address] = self.native_balances.get(address, 0) + lamports
        self.accounts.add(address)

    def balance_of(self, owner: str, mint: str) -> int:
        return self.token_balances.get(associated_token_address(owner, mint), 0)

    # Reader
    async def get_token_balance(self, owner: str, mint: str) -> Optional[int]:
        self._check_available()
        self.balance_queries += 1
        ata = associated_token_address(owner, mint)
        if ata not in self.accounts:
            return None
        return self.token_balances.get(ata, 0)

    async def get_mint_decimals(self, mint: str) -> int:
        self._check_available()
        return self.mint_decimals.get(mint, self.default_decimals)

    async def get_native_balance(self, address: str) -> int:
        self._check_available()
        return self.native_balances.get(address, 0)

    async def account_exists(self, address: str) -> bool:
        self._check_available()
        return address in self.accounts

    async def find_deposit_signature(self, owner: str, mint: str) -> Optional[str]:
        self._check_available()
        return self.deposit_signatures.get(associated_token_address(owner, mint))

    async def get_transaction_status(self, signature: str) -> TransactionStatus:
        self._check_available()
        if signature not in self.statuses:
            return TransactionStatus.PENDING
        if self.pending_polls > 0:
            self.pending_polls -= 1
            return TransactionStatus.PENDING
        return self.statuses[signature]

    # Writer
    async def get_latest_blockhash(self) -> str:
        self._check_available()
        return str(Hash.new_unique())

    async def submit_signed_transfer(self, signed_tx: bytes) -> str:
        self._check_available()
        if self.fail_submissions > 0:
            self.fail_submissions -= 1
            raise LedgerUnavailableError("Simulated submission timeout")
        if self.reject_submissions > 0:
            self.reject_submissions -= 1
            raise PayoutError("Transaction rejected: simulated preflight failure")

        tx = Transaction.from_bytes(signed_tx)
        if not all(tx.verify_with_results()):
            raise PayoutError("Transaction rejected: invalid signature")

        signature = str(tx.signatures[0])
        if self.fail_confirmations:
            # Lands but fails on-chain: fees burnt, no token movement
            transfers = []
            self.statuses[signature] = TransactionStatus.FAILED
        else:
            transfers = self._apply(tx)
            self.statuses[signature] = TransactionStatus.CONFIRMED
        self.submitted.append(SubmittedTransaction(signature, signed_tx, transfers))
        return signature

    def _apply(self, tx: Transaction) -> list[tuple[str, str, int]]:
        """Execute ATA creation and TransferChecked instructions atomically."""
        keys = [str(k) for k in tx.message.account_keys]
        balances = dict(self.token_balances)
        accounts_after = set(self.accounts)
        transfers = []

        for ix in tx.message.instructions:
            program = keys[ix.program_id_index]
            accounts = list(ix.accounts)
            data = bytes(ix.data)

            if program == str(ASSOCIATED_TOKEN_PROGRAM_ID):
                accounts_after.add(keys[accounts[1]])
            elif program == str(TOKEN_PROGRAM_ID) and data and data[0] == _TRANSFER_CHECKED:
                amount = int.from_bytes(data[1:9], "little")
                source, destination = keys[accounts[0]], keys[accounts[2]]
                if destination not in accounts_after:
                    raise PayoutError("Transaction rejected: destination account missing")
                if balances.get(source, 0) < amount:
                    raise PayoutError("Transaction rejected: insufficient funds")
                balances[source] = balances.get(source, 0) - amount
                balances[destination] = balances.get(destination, 0) + amount
                transfers.append((source, destination, amount))

        self.token_balances = balances
        self.accounts = accounts_after
        return transfers
