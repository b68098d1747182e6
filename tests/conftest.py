"""Pytest configuration and fixtures."""

import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set test environment
TEST_MASTER_KEY = Fernet.generate_key().decode()
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["MIXER_ENCRYPTION_KEY"] = TEST_MASTER_KEY
os.environ["CHAIN_BACKEND"] = "simulated"
os.environ["WORKER_ENABLED"] = "false"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["DEBUG"] = "true"

from mixerex.chain.simulated import SimulatedLedger
from mixerex.config import Settings
from mixerex.crypto import KeyVault
from mixerex.ledger.models import Base
from mixerex.ledger.repository import MixerOrderRepository
from mixerex.services.registry import MixerServices, build_services, set_services
from mixerex.utils.locks import clear_order_locks

# Fees for a payout that creates the recipient's token account
FEE_FUNDING = 10_000_000


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def new_address() -> str:
    return str(Keypair().pubkey())


@pytest.fixture(autouse=True)
def reset_locks():
    clear_order_locks()
    yield
    clear_order_locks()
    set_services(None)


@pytest.fixture
def master_key() -> str:
    return TEST_MASTER_KEY


@pytest.fixture
def vault(master_key) -> KeyVault:
    return KeyVault(master_key)


@pytest.fixture
def settings(master_key) -> Settings:
    return Settings(
        _env_file=None,
        environment="test",
        mixer_encryption_key=master_key,
        chain_backend="simulated",
        order_window_minutes=20,
        payout_delay_min_minutes=5,
        payout_delay_max_minutes=30,
        payout_max_attempts=3,
        payout_backoff_base_seconds=30,
        payout_backoff_max_seconds=600,
        payout_lease_seconds=180,
        confirmation_timeout_seconds=0.2,
        confirmation_poll_seconds=0.01,
        worker_enabled=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger() -> SimulatedLedger:
    return SimulatedLedger(default_decimals=6)


@pytest.fixture
def token_mint() -> str:
    return str(Pubkey.new_unique())


@pytest.fixture
def recipient() -> str:
    return new_address()


@pytest.fixture
def sender() -> str:
    return new_address()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """File-backed SQLite so concurrent sessions get their own connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'mixer.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for testing."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def repo(db_session: AsyncSession) -> MixerOrderRepository:
    return MixerOrderRepository(db_session)


@pytest.fixture
def services(settings, ledger, vault, session_factory, clock) -> MixerServices:
    return build_services(
        settings=settings,
        chain=ledger,
        vault=vault,
        session_factory=session_factory,
        clock=clock,
    )


@pytest.fixture
def order_factory(services, token_mint, recipient, sender):
    """Create orders with sensible defaults."""

    async def create(amount: int = 1_000_000, **kwargs):
        params = dict(
            token_mint=token_mint,
            amount=amount,
            recipient_address=recipient,
            sender_address=sender,
        )
        params.update(kwargs)
        return await services.orders.create_order(**params)

    return create
