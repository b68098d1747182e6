"""Tests for order creation and closing."""

import re
from datetime import timedelta

import pytest

from mixerex.errors import (
    AlreadyTerminalError,
    DecryptionError,
    NotFoundError,
    PayoutInFlightError,
    ValidationError,
)
from mixerex.ledger.database import get_db
from mixerex.ledger.models import MixerOrderStatus
from mixerex.ledger.repository import MixerOrderRepository
from mixerex.services.order_manager import OrderSummary, generate_order_id

from conftest import new_address


class TestCreateOrder:
    """Tests for create_order."""

    @pytest.mark.asyncio
    async def test_creates_pending_order(self, services, order_factory, clock, vault):
        order = await order_factory(session_id="sess-1")

        assert re.fullmatch(r"MIX-\d{13}-[A-Z0-9]{8}", order.order_id)
        assert order.order_status == MixerOrderStatus.PENDING
        assert order.amount == 1_000_000
        assert order.expires_at == clock.now + timedelta(minutes=20)
        assert order.key_id == vault.key_id
        assert order.deposit_secret_encrypted

    @pytest.mark.asyncio
    async def test_each_order_gets_fresh_deposit_address(self, order_factory):
        orders = [await order_factory() for _ in range(5)]
        assert len({o.deposit_address for o in orders}) == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 1.5, "100", True, 2**64])
    async def test_rejects_bad_amounts(self, order_factory, amount):
        with pytest.raises(ValidationError):
            await order_factory(amount=amount)

    @pytest.mark.asyncio
    async def test_rejects_bad_addresses(self, order_factory):
        with pytest.raises(ValidationError):
            await order_factory(recipient_address="not-a-solana-address")
        with pytest.raises(ValidationError):
            await order_factory(token_mint="0x" + "ab" * 20)

    @pytest.mark.asyncio
    async def test_nothing_persisted_on_validation_error(self, services, order_factory, repo):
        with pytest.raises(ValidationError):
            await order_factory(sender_address="bad")
        assert await repo.list_live_pending(services.orders.clock()) == []

    def test_summary_has_no_secret(self):
        fields = OrderSummary.__dataclass_fields__
        assert "deposit_secret_encrypted" not in fields
        assert "key_id" not in fields

    def test_order_id_format(self, clock):
        order_id = generate_order_id(clock.now)
        assert order_id.startswith(f"MIX-{int(clock.now.timestamp() * 1000)}-")


class TestCancelAndExpire:
    """Tests for closing orders."""

    @pytest.mark.asyncio
    async def test_cancel_pending(self, services, order_factory):
        order = await order_factory()

        cancelled = await services.orders.cancel_order(order.order_id)

        assert cancelled.order_status == MixerOrderStatus.CANCELLED
        assert cancelled.secret_discarded
        assert cancelled.closed_at is not None

    @pytest.mark.asyncio
    async def test_cancel_twice_is_rejected(self, services, order_factory):
        order = await order_factory()
        await services.orders.cancel_order(order.order_id)

        with pytest.raises(AlreadyTerminalError):
            await services.orders.cancel_order(order.order_id)

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, services):
        with pytest.raises(NotFoundError):
            await services.orders.cancel_order("MIX-0-MISSING0")

    @pytest.mark.asyncio
    async def test_cancel_refused_while_payout_leased(
        self, services, order_factory, session_factory, clock
    ):
        order = await order_factory()
        async with get_db(session_factory) as session:
            repo = MixerOrderRepository(session)
            await repo.mark_deposited(order, order.amount, clock.now, None)
            await repo.mark_processing(order.order_id, clock.now)
            await repo.claim_payout(order.order_id, clock.now, clock.now + timedelta(minutes=3))

        with pytest.raises(PayoutInFlightError):
            await services.orders.cancel_order(order.order_id)

        # Once the lease lapses the order can be cancelled
        clock.advance(minutes=4)
        cancelled = await services.orders.cancel_order(order.order_id)
        assert cancelled.order_status == MixerOrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_expire_only_pending(self, services, order_factory):
        order = await order_factory()

        assert await services.orders.expire_order(order.order_id)
        assert not await services.orders.expire_order(order.order_id)

        expired = await services.orders.get_order(order.order_id)
        assert expired.order_status == MixerOrderStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_expired_secret_is_unusable(self, services, order_factory, vault):
        order = await order_factory()
        await services.orders.expire_order(order.order_id)

        expired = await services.orders.get_order(order.order_id)
        with pytest.raises(DecryptionError):
            vault.decrypt(expired.deposit_secret_encrypted, expired.key_id)

    @pytest.mark.asyncio
    async def test_expire_unknown(self, services):
        with pytest.raises(NotFoundError):
            await services.orders.expire_order("MIX-0-MISSING0")


class TestAutoClose:
    """Tests for the client auto-close endpoint logic."""

    @pytest.mark.asyncio
    async def test_expires_stale_pending(self, services, order_factory, clock):
        order = await order_factory()
        clock.advance(minutes=21)

        closed = await services.orders.auto_close(order.order_id)
        assert closed.order_status == MixerOrderStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_cancels_live_pending(self, services, order_factory):
        order = await order_factory()

        closed = await services.orders.auto_close(order.order_id)
        assert closed.order_status == MixerOrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_idempotent_on_closed(self, services, order_factory):
        order = await order_factory()
        await services.orders.cancel_order(order.order_id)

        closed = await services.orders.auto_close(order.order_id)
        assert closed.order_status == MixerOrderStatus.CANCELLED


class TestLookups:
    """Tests for session and wallet lookups."""

    @pytest.mark.asyncio
    async def test_active_order_by_session(self, services, order_factory):
        order = await order_factory(session_id="browser-1")

        active = await services.orders.get_active_order_by_session("browser-1")
        assert active.order_id == order.order_id

        await services.orders.cancel_order(order.order_id)
        assert await services.orders.get_active_order_by_session("browser-1") is None

    @pytest.mark.asyncio
    async def test_orders_by_wallet(self, services, order_factory, clock):
        wallet = new_address()
        first = await order_factory(wallet_address=wallet)
        await services.orders.cancel_order(first.order_id)
        second = await order_factory(wallet_address=wallet)

        orders = await services.orders.list_orders_by_wallet(wallet)
        assert [o.order_id for o in orders] == [second.order_id, first.order_id]

        # A pending order past its deadline disappears from history
        clock.advance(minutes=30)
        orders = await services.orders.list_orders_by_wallet(wallet)
        assert [o.order_id for o in orders] == [first.order_id]

    @pytest.mark.asyncio
    async def test_purge_closed_orders(self, services, order_factory, clock):
        order = await order_factory()
        await services.orders.cancel_order(order.order_id)

        # Rows younger than the cutoff survive
        assert await services.orders.purge_closed_orders(older_than_days=30) == 0

        clock.advance(days=31)
        assert await services.orders.purge_closed_orders(older_than_days=30) == 1
        with pytest.raises(NotFoundError):
            await services.orders.get_order(order.order_id)
