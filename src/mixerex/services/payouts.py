"""Payout scheduling and execution.

A confirmed deposit gets a payout time drawn uniformly from the configured
delay window. When that time comes the executor claims a short lease on the
order, unlocks the deposit key only for signing, submits the transfer and
waits for confirmation. No database session is open across a ledger call.

Every payout moves the full deposited amount out of the deposit account, so
a stale transaction landing after a resubmission cannot pay twice: the
second transfer fails on-chain for lack of funds.
"""

import asyncio
import logging
import secrets
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mixerex.chain.base import LedgerClient, TransactionStatus
from mixerex.chain.solana import associated_token_address, build_token_payout, estimate_payout_fee
from mixerex.config import Settings, get_settings
from mixerex.crypto import KeyVault
from mixerex.errors import (
    ConfigurationError,
    DecryptionError,
    LedgerUnavailableError,
    NotFoundError,
    PayoutError,
)
from mixerex.ledger.database import get_db
from mixerex.ledger.models import MixerOrder, MixerOrderStatus
from mixerex.ledger.repository import MixerOrderRepository
from mixerex.utils.clock import Clock, utcnow
from mixerex.utils.locks import discard_order_lock

logger = logging.getLogger(__name__)

_rng = secrets.SystemRandom()


@dataclass
class PayoutResult:
    """Outcome of one execute_payout call."""

    order_id: str
    success: bool
    status: str
    signature: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False
    attempts: int = 0
    needs_attention: bool = False


class PayoutScheduler:
    """Assigns the randomized payout time to deposited orders."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock

        low = self.settings.payout_delay_min_minutes
        high = self.settings.payout_delay_max_minutes
        if low < 0 or high < low:
            raise ConfigurationError(f"Invalid payout delay window: [{low}, {high}] minutes")

    def draw_delay(self) -> timedelta:
        """Uniform delay in [min, max] minutes from the system CSPRNG."""
        seconds = _rng.uniform(
            self.settings.payout_delay_min_minutes * 60,
            self.settings.payout_delay_max_minutes * 60,
        )
        return timedelta(seconds=seconds)

    async def schedule_payout(self, order_id: str) -> Optional[datetime]:
        """Move a deposited order to processing with a payout time.

        Only the first caller sets the time; later callers get the time that
        was already stored.

        Returns:
            The payout time, or None if the order is not schedulable
        """
        scheduled_at = self.clock() + self.draw_delay()

        async with get_db(self.session_factory) as session:
            repo = MixerOrderRepository(session)
            won = await repo.mark_processing(order_id, scheduled_at)
            if not won:
                order = await repo.get_order(order_id)
                if order is None:
                    raise NotFoundError(order_id)
                return order.payout_scheduled_at

        minutes = (scheduled_at - self.clock()).total_seconds() / 60
        logger.info(f"Payout for order {order_id} scheduled in {minutes:.1f} minutes")
        return scheduled_at

    async def schedule_stalled(self) -> int:
        """Schedule orders left in deposited by an interrupted hand-off."""
        async with get_db(self.session_factory) as session:
            order_ids = await MixerOrderRepository(session).list_stalled_deposited()

        scheduled = 0
        for order_id in order_ids:
            logger.warning(f"Order {order_id} deposited without a payout time; scheduling")
            if await self.schedule_payout(order_id) is not None:
                scheduled += 1
        return scheduled


class PayoutExecutor:
    """Executes due payouts with at-most-once submission."""

    def __init__(
        self,
        chain: LedgerClient,
        vault: KeyVault,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        """Initialize the executor.

        Args:
            chain: Ledger reader and writer
            vault: Key vault holding the deposit secrets
            session_factory: Session factory (defaults to the process database)
            settings: Payout settings (defaults to get_settings())
            clock: Source of the current UTC time

        Raises:
            ConfigurationError: If a fee sponsor is configured but cannot be decrypted
        """
        self.chain = chain
        self.vault = vault
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock

        self._sponsor_secret = self.settings.fee_payer_secret
        self.sponsor_address: Optional[str] = None
        if self._sponsor_secret:
            try:
                with self.vault.unlocked_keypair(self._sponsor_secret) as sponsor:
                    self.sponsor_address = str(sponsor.pubkey())
            except DecryptionError as e:
                raise ConfigurationError(f"FEE_PAYER_SECRET cannot be decrypted: {e}") from None
            logger.info(f"Payout fees sponsored by {self.sponsor_address}")

    def backoff(self, attempts: int) -> timedelta:
        """Exponential retry delay after `attempts` failures, capped."""
        seconds = self.settings.payout_backoff_base_seconds * (2 ** max(attempts - 1, 0))
        return timedelta(seconds=min(seconds, self.settings.payout_backoff_max_seconds))

    async def list_failed_payouts(self) -> list[MixerOrder]:
        async with get_db(self.session_factory) as session:
            return await MixerOrderRepository(session).list_failed_payouts()

    async def retry_failed_payout(self, order_id: str) -> bool:
        """Operator reset: return a flagged payout to automatic retries.

        Raises:
            NotFoundError: If no such order exists
        """
        async with get_db(self.session_factory) as session:
            repo = MixerOrderRepository(session)
            won = await repo.reset_failed_payout(order_id, self.clock())
            if not won and await repo.get_order(order_id) is None:
                raise NotFoundError(order_id)

        if won:
            logger.info(f"Payout for order {order_id} reset for retry by operator")
        return won

    async def run_due_payouts(self) -> list[PayoutResult]:
        """Execute every payout whose time has come."""
        async with get_db(self.session_factory) as session:
            order_ids = await MixerOrderRepository(session).list_due_payouts(self.clock())

        results = []
        for order_id in order_ids:
            try:
                results.append(await self.execute_payout(order_id))
            except Exception as e:
                logger.error(f"Payout for order {order_id} crashed: {e}")
        return results

    async def execute_payout(self, order_id: str) -> PayoutResult:
        """Attempt the payout of one order.

        Returns:
            PayoutResult; `skipped` is set when another executor owns the
            order or it is not due

        Raises:
            NotFoundError: If no such order exists
        """
        now = self.clock()
        lease_until = now + timedelta(seconds=self.settings.payout_lease_seconds)

        async with get_db(self.session_factory) as session:
            repo = MixerOrderRepository(session)
            order = await repo.get_order(order_id)
            if order is None:
                raise NotFoundError(order_id)

            if order.order_status == MixerOrderStatus.COMPLETED:
                return PayoutResult(
                    order_id, True, order.status, signature=order.payout_tx_signature, skipped=True
                )
            if order.order_status != MixerOrderStatus.PROCESSING:
                return self._skip(order, f"order is {order.status}")
            if order.payout_scheduled_at is None or order.payout_scheduled_at > now:
                return self._skip(order, "payout not due yet")
            if order.needs_attention:
                return self._skip(order, "payout flagged for manual review")
            if order.payout_next_attempt_at is not None and order.payout_next_attempt_at > now:
                return self._skip(order, "waiting for retry backoff")

            lease = secrets.token_hex(8)
            if not await repo.claim_payout(order_id, now, lease_until, owner=lease):
                return self._skip(order, "payout claimed by another executor")
            await session.refresh(order)

        logger.info(f"Executing payout for order {order_id} (attempt {order.payout_attempts + 1})")

        try:
            return await self._execute_claimed(order, lease)
        except DecryptionError as e:
            logger.error(f"Payout for order {order_id} cannot decrypt deposit key: {e}")
            return await self._record_failure(
                order, f"decryption failed: {e}", flag=True, lease=lease
            )
        except (LedgerUnavailableError, PayoutError) as e:
            logger.warning(f"Payout for order {order_id} failed: {e}")
            return await self._record_failure(
                order, str(e), clear_submitted=isinstance(e, PayoutError), lease=lease
            )
        except Exception as e:
            logger.error(f"Unexpected payout error for order {order_id}: {e}")
            await self._record_failure(order, f"unexpected error: {e}", lease=lease)
            raise

    async def _execute_claimed(self, order: MixerOrder, lease: str) -> PayoutResult:
        if order.payout_submitted_signature:
            # A previous attempt broadcast this; settle it before building a new one
            signature = order.payout_submitted_signature
            status = await self._wait_for_confirmation(signature)
            if status == TransactionStatus.CONFIRMED:
                return await self._complete(order, signature)
            logger.warning(
                f"Earlier payout {signature} for order {order.order_id} is {status.value}; "
                f"resubmitting"
            )
            async with get_db(self.session_factory) as session:
                cleared = await MixerOrderRepository(session).clear_submitted_payout(
                    order.order_id, signature, owner=lease
                )
            if not cleared:
                return self._skip(order, "payout lease lost before resubmission")

        amount = order.deposited_amount or order.amount
        recipient_ata = associated_token_address(order.recipient_address, order.token_mint)
        create_recipient_account = not await self.chain.account_exists(recipient_ata)

        payer_address = self.sponsor_address or order.deposit_address
        signers = 2 if self.sponsor_address else 1
        fee = estimate_payout_fee(create_recipient_account, signers=signers)
        payer_balance = await self.chain.get_native_balance(payer_address)
        if payer_balance < fee:
            raise PayoutError(
                f"Fee payer {payer_address} holds {payer_balance} lamports, needs {fee}"
            )

        decimals = await self.chain.get_mint_decimals(order.token_mint)
        blockhash = await self.chain.get_latest_blockhash()

        if not await self._still_processing(order.order_id):
            return self._skip(order, "order left processing before submission")

        with ExitStack() as stack:
            deposit_keypair = stack.enter_context(
                self.vault.unlocked_keypair(order.deposit_secret_encrypted, order.key_id)
            )
            fee_payer = None
            if self._sponsor_secret:
                fee_payer = stack.enter_context(self.vault.unlocked_keypair(self._sponsor_secret))
            tx = build_token_payout(
                deposit_keypair,
                mint=order.token_mint,
                recipient=order.recipient_address,
                amount=amount,
                decimals=decimals,
                recent_blockhash=blockhash,
                create_recipient_account=create_recipient_account,
                fee_payer=fee_payer,
            )
        signature = str(tx.signatures[0])
        raw = bytes(tx)

        # Stored before broadcast so a lost response is settled by signature
        async with get_db(self.session_factory) as session:
            recorded = await MixerOrderRepository(session).record_submitted_payout(
                order.order_id, signature, owner=lease
            )
        if not recorded:
            return self._skip(order, "order left processing before submission")

        submitted = await self.chain.submit_signed_transfer(raw)
        if submitted != signature:
            logger.warning(f"Ledger returned signature {submitted}, expected {signature}")
            signature = submitted

        status = await self._wait_for_confirmation(signature)
        if status == TransactionStatus.CONFIRMED:
            return await self._complete(order, signature)
        if status == TransactionStatus.FAILED:
            raise PayoutError(f"Payout transaction {signature} failed on-chain")

        # Still unconfirmed: keep the signature so the next attempt checks it first
        return await self._record_failure(
            order, f"Payout transaction {signature} not confirmed", lease=lease
        )

    async def _wait_for_confirmation(self, signature: str) -> TransactionStatus:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.confirmation_timeout_seconds
        while True:
            status = await self.chain.get_transaction_status(signature)
            if status != TransactionStatus.PENDING:
                return status
            if loop.time() >= deadline:
                return status
            await asyncio.sleep(self.settings.confirmation_poll_seconds)

    async def _still_processing(self, order_id: str) -> bool:
        async with get_db(self.session_factory) as session:
            order = await MixerOrderRepository(session).get_order(order_id)
            return order is not None and order.order_status == MixerOrderStatus.PROCESSING

    async def _complete(self, order: MixerOrder, signature: str) -> PayoutResult:
        executed_at = self.clock()
        async with get_db(self.session_factory) as session:
            won = await MixerOrderRepository(session).mark_completed(
                order.order_id, signature, executed_at
            )
        if not won:
            logger.error(
                f"Payout {signature} confirmed but order {order.order_id} left processing"
            )
            return PayoutResult(
                order.order_id,
                False,
                MixerOrderStatus.PROCESSING.value,
                signature=signature,
                error="order changed state during payout",
                attempts=order.payout_attempts,
            )

        logger.info(f"Payout for order {order.order_id} completed: {signature}")
        discard_order_lock(order.order_id)
        return PayoutResult(
            order.order_id,
            True,
            MixerOrderStatus.COMPLETED.value,
            signature=signature,
            attempts=order.payout_attempts + 1,
        )

    async def _record_failure(
        self,
        order: MixerOrder,
        error: str,
        flag: bool = False,
        clear_submitted: bool = False,
        lease: Optional[str] = None,
    ) -> PayoutResult:
        now = self.clock()
        attempts = order.payout_attempts + 1
        give_up = flag or attempts >= self.settings.payout_max_attempts
        next_attempt_at = None if give_up else now + self.backoff(attempts)

        async with get_db(self.session_factory) as session:
            recorded = await MixerOrderRepository(session).record_payout_failure(
                order.order_id,
                error=error,
                attempts=attempts,
                next_attempt_at=next_attempt_at,
                failed_at=now if give_up else None,
                clear_submitted=clear_submitted,
                owner=lease,
            )

        if not recorded:
            logger.warning(
                f"Payout for order {order.order_id} failed after its lease moved on: {error}"
            )
            return PayoutResult(
                order.order_id,
                False,
                MixerOrderStatus.PROCESSING.value,
                error=error,
                skipped=True,
                attempts=order.payout_attempts,
            )

        if give_up:
            logger.error(
                f"Payout for order {order.order_id} flagged for manual review "
                f"after {attempts} attempt(s): {error}"
            )
        else:
            logger.info(
                f"Payout for order {order.order_id} will retry at {next_attempt_at.isoformat()}"
            )
        return PayoutResult(
            order.order_id,
            False,
            MixerOrderStatus.PROCESSING.value,
            error=error,
            attempts=attempts,
            needs_attention=give_up,
        )

    @staticmethod
    def _skip(order: MixerOrder, reason: str) -> PayoutResult:
        logger.debug(f"Payout for order {order.order_id} skipped: {reason}")
        return PayoutResult(
            order.order_id,
            False,
            order.status,
            error=reason,
            skipped=True,
            attempts=order.payout_attempts,
        )
