"""Factory for the ledger client.

Supported backends:
- solana: Solana JSON-RPC (SOL_RPC_URL)
- simulated: in-memory ledger for development and tests
"""

import logging
from typing import Optional

from mixerex.chain.base import LedgerClient
from mixerex.config import get_settings
from mixerex.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Process-wide ledger client
_ledger: Optional[LedgerClient] = None


def get_ledger() -> LedgerClient:
    """Get the configured ledger client (cached)."""
    global _ledger
    if _ledger is not None:
        return _ledger

    settings = get_settings()
    backend = settings.chain_backend.lower()

    if backend == "simulated":
        if settings.is_production:
            raise ConfigurationError("Simulated ledger is not allowed in production")
        from mixerex.chain.simulated import SimulatedLedger

        _ledger = SimulatedLedger()
    elif backend == "solana":
        from mixerex.chain.solana import SolanaLedgerClient

        _ledger = SolanaLedgerClient(settings.sol_rpc_url, timeout=settings.rpc_timeout)
    else:
        raise ConfigurationError(f"Unknown chain backend: {settings.chain_backend}")

    logger.info(f"Ledger backend: {_ledger.name}")
    return _ledger


def set_ledger(ledger: Optional[LedgerClient]) -> None:
    """Replace the process ledger client (tests, scripts)."""
    global _ledger
    _ledger = ledger


async def close_ledger() -> None:
    """Close the process ledger client."""
    global _ledger
    if _ledger is not None:
        await _ledger.close()
        _ledger = None
