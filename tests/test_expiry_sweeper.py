"""Tests for the expiry sweeper and the background worker."""

import asyncio

import pytest

from conftest import FEE_FUNDING
from mixerex.ledger.models import MixerOrderStatus
from mixerex.services.worker import MixerWorker


class TestExpirySweeper:
    """Tests for ExpirySweeper."""

    @pytest.mark.asyncio
    async def test_nothing_to_expire(self, services, order_factory):
        await order_factory()

        assert await services.sweeper.sweep_once() == 0

    @pytest.mark.asyncio
    async def test_expires_only_overdue_pending(
        self, services, order_factory, ledger, token_mint, clock
    ):
        stale = await order_factory()
        funded = await order_factory()
        ledger.add_deposit(funded.deposit_address, token_mint, 1_000_000)
        await services.monitor.check_deposit(funded.order_id)
        clock.advance(minutes=15)
        fresh = await order_factory()
        clock.advance(minutes=6)

        assert await services.sweeper.sweep_once() == 1

        stale = await services.orders.get_order(stale.order_id)
        assert stale.order_status == MixerOrderStatus.EXPIRED
        assert stale.closed_at == clock.now
        assert stale.deposit_secret_encrypted is None
        assert (await services.orders.get_order(funded.order_id)).order_status == (
            MixerOrderStatus.PROCESSING
        )
        assert (await services.orders.get_order(fresh.order_id)).order_status == (
            MixerOrderStatus.PENDING
        )

    @pytest.mark.asyncio
    async def test_boundary_is_exclusive(self, services, order_factory, clock):
        order = await order_factory()
        clock.now = order.expires_at

        assert await services.sweeper.sweep_once() == 0

        clock.advance(seconds=1)
        assert await services.sweeper.sweep_once() == 1

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_expire_once(self, services, order_factory, clock):
        for _ in range(5):
            await order_factory()
        clock.advance(minutes=21)

        counts = await asyncio.gather(*(services.sweeper.sweep_once() for _ in range(3)))

        assert sum(counts) == 5

    @pytest.mark.asyncio
    async def test_run_stops_on_event(self, services, order_factory, clock):
        await order_factory()
        clock.advance(minutes=21)
        services.sweeper.interval = 0.01
        stop = asyncio.Event()

        task = asyncio.create_task(services.sweeper.run(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert await services.sweeper.sweep_once() == 0


class TestMixerWorker:
    """Tests for the worker ticks and loops."""

    @pytest.mark.asyncio
    async def test_ticks_drive_full_lifecycle(
        self, services, order_factory, ledger, token_mint, recipient, clock
    ):
        worker = MixerWorker(services)
        order = await order_factory()
        ledger.add_deposit(order.deposit_address, token_mint, 1_000_000)
        ledger.fund_native(order.deposit_address, FEE_FUNDING)

        assert await worker.deposit_tick() == 1
        assert await worker.payout_tick() == 0

        clock.advance(minutes=31)
        assert await worker.payout_tick() == 1
        assert ledger.balance_of(recipient, token_mint) == 1_000_000
        assert await worker.expiry_tick() == 0

    @pytest.mark.asyncio
    async def test_payout_tick_recovers_stalled_order(
        self, services, order_factory, repo, db_session, clock
    ):
        worker = MixerWorker(services)
        order = await order_factory()
        await repo.mark_deposited(order, 1_000_000, clock(), None)
        await db_session.commit()

        await worker.payout_tick()

        order = await services.orders.get_order(order.order_id)
        assert order.order_status == MixerOrderStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_start_and_stop(self, services, settings):
        fast = settings.model_copy(
            update={
                "deposit_poll_interval": 0.01,
                "payout_tick_interval": 0.01,
                "expiry_sweep_interval": 0.01,
            }
        )
        services.settings = fast
        worker = MixerWorker(services)

        tasks = worker.start()
        assert len(tasks) == 3
        assert worker.start() is tasks
        await asyncio.sleep(0.05)
        assert worker.running

        await worker.stop(timeout=1)

        assert not worker.running
        assert all(task.done() for task in tasks)

    @pytest.mark.asyncio
    async def test_loop_survives_tick_errors(self, services, settings, monkeypatch):
        services.settings = settings.model_copy(
            update={
                "deposit_poll_interval": 0.01,
                "payout_tick_interval": 10,
                "expiry_sweep_interval": 10,
            }
        )
        worker = MixerWorker(services)
        calls = []

        async def flaky():
            calls.append(1)
            raise RuntimeError("boom")

        monkeypatch.setattr(worker, "deposit_tick", flaky)

        worker.start()
        await asyncio.sleep(0.1)
        await worker.stop(timeout=1)

        assert len(calls) > 1
