"""Health check endpoints."""

from fastapi import APIRouter

from mixerex import __version__
from mixerex.config import get_settings
from mixerex.errors import ConfigurationError
from mixerex.services.registry import get_services

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "mixerex"}


@router.get("/health/detailed")
async def detailed_health():
    """Detailed health check with configuration and ledger info."""
    settings = get_settings()

    try:
        services = get_services()
    except ConfigurationError:
        return {
            "status": "misconfigured",
            "service": "mixerex",
            "version": __version__,
            "config": settings.get_safe_dict(),
        }

    ledger_ok = await services.chain.health_check()
    return {
        "status": "healthy" if ledger_ok else "degraded",
        "service": "mixerex",
        "version": __version__,
        "ledger": {"backend": services.chain.name, "healthy": ledger_ok},
        "config": settings.get_safe_dict(),
    }
