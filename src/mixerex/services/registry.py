"""Wiring of the mixer services.

Every service receives its collaborators explicitly; this module is the one
place that reads the process-wide settings, database, ledger and key vault.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mixerex.chain.base import DepositSource, LedgerClient, PollingDepositSource
from mixerex.chain.factory import get_ledger
from mixerex.config import Settings, get_settings
from mixerex.crypto import KeyVault, get_key_vault
from mixerex.ledger.database import get_session_factory
from mixerex.services.deposit_monitor import DepositMonitor
from mixerex.services.expiry_sweeper import ExpirySweeper
from mixerex.services.order_manager import OrderManager
from mixerex.services.payouts import PayoutExecutor, PayoutScheduler
from mixerex.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class MixerServices:
    """The mixer components sharing one database, ledger and vault."""

    settings: Settings
    chain: LedgerClient
    vault: KeyVault
    orders: OrderManager
    monitor: DepositMonitor
    scheduler: PayoutScheduler
    executor: PayoutExecutor
    sweeper: ExpirySweeper


def build_services(
    settings: Optional[Settings] = None,
    chain: Optional[LedgerClient] = None,
    vault: Optional[KeyVault] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    source: Optional[DepositSource] = None,
    clock: Clock = utcnow,
) -> MixerServices:
    """Assemble the services; unset collaborators come from the process config.

    Raises:
        ConfigurationError: If the encryption key is missing or invalid
    """
    settings = settings or get_settings()
    vault = vault or get_key_vault()
    chain = chain or get_ledger()
    session_factory = session_factory or get_session_factory()
    source = source or PollingDepositSource(chain)

    orders = OrderManager(vault, session_factory, settings, clock)
    scheduler = PayoutScheduler(session_factory, settings, clock)
    return MixerServices(
        settings=settings,
        chain=chain,
        vault=vault,
        orders=orders,
        monitor=DepositMonitor(source, scheduler, session_factory, clock),
        scheduler=scheduler,
        executor=PayoutExecutor(chain, vault, session_factory, settings, clock),
        sweeper=ExpirySweeper(
            orders, session_factory, clock, interval=settings.expiry_sweep_interval
        ),
    )


# Process-wide services
_services: Optional[MixerServices] = None


def get_services() -> MixerServices:
    """Get the process services, building them on first use."""
    global _services
    if _services is None:
        _services = build_services()
        logger.info(f"Mixer services ready (ledger: {_services.chain.name})")
    return _services


def set_services(services: Optional[MixerServices]) -> None:
    """Install prebuilt services (tests, scripts)."""
    global _services
    _services = services
