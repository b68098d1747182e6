"""Solana ledger client and SPL payout transaction builder.

Reads go through JSON-RPC over httpx; transactions are assembled and signed
locally with solders and the spl-token instruction helpers.
"""

import asyncio
import base64
import logging
from typing import Any, Optional

import base58
import httpx
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    create_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)
from spl.token.models import TransferCheckedParams

from mixerex.chain.base import LedgerClient, TransactionStatus
from mixerex.errors import LedgerUnavailableError, PayoutError, ValidationError

logger = logging.getLogger(__name__)

# Base fee per signature, in lamports
SIGNATURE_FEE_LAMPORTS = 5000
# Rent-exempt minimum of a 165-byte SPL token account
TOKEN_ACCOUNT_RENT_LAMPORTS = 2039280

RPC_RETRIES = 3


def validate_address(address: str, field: str = "address") -> str:
    """Check that a string is a base58-encoded 32-byte public key.

    Raises:
        ValidationError: If the address is malformed
    """
    address = (address or "").strip()
    if not 32 <= len(address) <= 44:
        raise ValidationError(f"Invalid {field}: wrong length")
    try:
        decoded = base58.b58decode(address)
    except ValueError:
        raise ValidationError(f"Invalid {field}: not base58") from None
    if len(decoded) != 32:
        raise ValidationError(f"Invalid {field}: not a 32-byte public key")
    return address


def associated_token_address(owner: str, mint: str) -> str:
    """Derive the associated token account of an owner for a mint."""
    return str(get_associated_token_address(Pubkey.from_string(owner), Pubkey.from_string(mint)))


def estimate_payout_fee(create_recipient_account: bool, signers: int = 1) -> int:
    """Lamports the fee payer needs for a payout transaction."""
    fee = SIGNATURE_FEE_LAMPORTS * signers
    if create_recipient_account:
        fee += TOKEN_ACCOUNT_RENT_LAMPORTS
    return fee


def build_token_payout(
    deposit_keypair: Keypair,
    mint: str,
    recipient: str,
    amount: int,
    decimals: int,
    recent_blockhash: str,
    create_recipient_account: bool,
    fee_payer: Optional[Keypair] = None,
) -> Transaction:
    """Build and sign the payout from a deposit address to a recipient.

    Args:
        deposit_keypair: Custodial key owning the deposit token account
        mint: Token mint address
        recipient: Recipient wallet address (not its token account)
        amount: Base units to move
        decimals: Mint decimal precision, checked on-chain by TransferChecked
        recent_blockhash: Blockhash anchoring the transaction
        create_recipient_account: Prepend creation of the recipient's ATA
        fee_payer: Sponsor paying fees and rent; the deposit key pays if None

    Returns:
        Fully signed transaction
    """
    mint_key = Pubkey.from_string(mint)
    recipient_key = Pubkey.from_string(recipient)
    owner_key = deposit_keypair.pubkey()
    payer = fee_payer or deposit_keypair

    source_ata = get_associated_token_address(owner_key, mint_key)
    destination_ata = get_associated_token_address(recipient_key, mint_key)

    instructions = []
    if create_recipient_account:
        instructions.append(
            create_associated_token_account(
                payer=payer.pubkey(), owner=recipient_key, mint=mint_key
            )
        )
    instructions.append(
        transfer_checked(
            TransferCheckedParams(
                program_id=TOKEN_PROGRAM_ID,
                source=source_ata,
                mint=mint_key,
                dest=destination_ata,
                owner=owner_key,
                amount=amount,
                decimals=decimals,
                signers=[],
            )
        )
    )

    blockhash = Hash.from_string(recent_blockhash)
    message = Message.new_with_blockhash(instructions, payer.pubkey(), blockhash)
    signers = [payer] if fee_payer is None else [fee_payer, deposit_keypair]
    return Transaction(signers, message, blockhash)


class SolanaLedgerClient(LedgerClient):
    """Solana JSON-RPC implementation of the ledger contract."""

    name = "solana"

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        commitment: str = "confirmed",
        retry_delay: float = 0.5,
    ):
        """Initialize the client.

        Args:
            rpc_url: Solana JSON-RPC endpoint
            timeout: Per-request timeout in seconds
            client: Pre-built httpx client (tests inject a MockTransport here)
            commitment: Commitment level for reads
            retry_delay: Base delay between retries of a failed request
        """
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.retry_delay = retry_delay
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._request_id = 0

    async def close(self) -> None:
        await self._client.aclose()

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        """Call a JSON-RPC method.

        Returns:
            The "result" member of the response

        Raises:
            LedgerUnavailableError: Transport failure, rate limit or server error
            RpcError: The node answered with a JSON-RPC error
        """
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        for attempt in range(RPC_RETRIES):
            try:
                response = await self._client.post(self.rpc_url, json=payload)
            except httpx.HTTPError as e:
                logger.warning(f"Solana RPC {method} transport error: {e}")
                if attempt == RPC_RETRIES - 1:
                    raise LedgerUnavailableError(f"RPC {method} unavailable") from e
                await asyncio.sleep(self.retry_delay * (attempt + 1))
                continue

            if response.status_code == 429 or response.status_code >= 500:
                logger.warning(f"Solana RPC {method} returned HTTP {response.status_code}")
                if attempt == RPC_RETRIES - 1:
                    raise LedgerUnavailableError(f"RPC {method} returned {response.status_code}")
                await asyncio.sleep(2 * self.retry_delay * (attempt + 1))
                continue

            data = response.json()
            if data.get("error"):
                error = data["error"]
                message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                code = error.get("code") if isinstance(error, dict) else None
                raise RpcError(method, message, code)
            return data.get("result")

        raise LedgerUnavailableError(f"RPC {method} unavailable")

    async def get_token_balance(self, owner: str, mint: str) -> Optional[int]:
        ata = associated_token_address(owner, mint)
        try:
            result = await self._rpc(
                "getTokenAccountBalance", [ata, {"commitment": self.commitment}]
            )
        except RpcError as e:
            if e.is_missing_account:
                return None
            raise LedgerUnavailableError(f"Balance query failed: {e.message}") from e
        return int(result["value"]["amount"])

    async def get_mint_decimals(self, mint: str) -> int:
        try:
            result = await self._rpc("getTokenSupply", [mint, {"commitment": self.commitment}])
        except RpcError as e:
            raise LedgerUnavailableError(f"Mint query failed: {e.message}") from e
        return int(result["value"]["decimals"])

    async def get_native_balance(self, address: str) -> int:
        try:
            result = await self._rpc("getBalance", [address, {"commitment": self.commitment}])
        except RpcError as e:
            raise LedgerUnavailableError(f"Balance query failed: {e.message}") from e
        return int(result["value"])

    async def account_exists(self, address: str) -> bool:
        try:
            result = await self._rpc(
                "getAccountInfo",
                [address, {"encoding": "base64", "commitment": self.commitment}],
            )
        except RpcError as e:
            raise LedgerUnavailableError(f"Account query failed: {e.message}") from e
        return result is not None and result.get("value") is not None

    async def find_deposit_signature(self, owner: str, mint: str) -> Optional[str]:
        ata = associated_token_address(owner, mint)
        try:
            result = await self._rpc(
                "getSignaturesForAddress", [ata, {"limit": 1, "commitment": self.commitment}]
            )
        except RpcError:
            return None
        if not result:
            return None
        return result[0].get("signature")

    async def get_transaction_status(self, signature: str) -> TransactionStatus:
        try:
            result = await self._rpc(
                "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
            )
        except RpcError as e:
            raise LedgerUnavailableError(f"Status query failed: {e.message}") from e

        statuses = (result or {}).get("value") or [None]
        status = statuses[0]
        if status is None:
            return TransactionStatus.PENDING
        if status.get("err") is not None:
            return TransactionStatus.FAILED
        if status.get("confirmationStatus") in ("confirmed", "finalized"):
            return TransactionStatus.CONFIRMED
        return TransactionStatus.PENDING

    async def get_latest_blockhash(self) -> str:
        try:
            result = await self._rpc("getLatestBlockhash", [{"commitment": self.commitment}])
        except RpcError as e:
            raise LedgerUnavailableError(f"Blockhash query failed: {e.message}") from e
        return result["value"]["blockhash"]

    async def submit_signed_transfer(self, signed_tx: bytes) -> str:
        encoded = base64.b64encode(signed_tx).decode()
        try:
            signature = await self._rpc(
                "sendTransaction",
                [
                    encoded,
                    {
                        "encoding": "base64",
                        "skipPreflight": False,
                        "preflightCommitment": self.commitment,
                    },
                ],
            )
        except RpcError as e:
            # Preflight rejection: the ledger refused this transaction
            raise PayoutError(f"Transaction rejected: {e.message}") from e
        logger.info(f"Solana tx broadcast: {signature}")
        return signature

    async def health_check(self) -> bool:
        try:
            return await self._rpc("getHealth", []) == "ok"
        except (LedgerUnavailableError, RpcError):
            return False


class RpcError(Exception):
    """JSON-RPC error answered by the node."""

    # Node answer to getTokenAccountBalance on an account that does not exist
    INVALID_PARAMS = -32602

    def __init__(self, method: str, message: str, code: Optional[int] = None):
        self.method = method
        self.message = message
        self.code = code
        super().__init__(f"{method}: {message}")

    @property
    def is_missing_account(self) -> bool:
        return self.code == self.INVALID_PARAMS
