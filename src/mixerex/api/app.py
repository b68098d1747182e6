"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mixerex import __version__
from mixerex.chain.factory import close_ledger
from mixerex.config import get_settings
from mixerex.errors import LedgerUnavailableError, MixerError
from mixerex.ledger.database import close_db, init_db
from mixerex.services.registry import get_services
from mixerex.services.worker import MixerWorker

logger = logging.getLogger(__name__)

# Client-safe text for server-side failures; ledger responses stay in the logs
GENERIC_DETAILS = {
    LedgerUnavailableError: "Ledger temporarily unavailable, try again shortly",
}


def _lifespan(run_worker: bool):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        # Startup
        await init_db()
        services = get_services()
        worker = MixerWorker(services) if run_worker else None
        if worker:
            worker.start()
            logger.info("Mixer worker started")
        yield
        # Shutdown
        if worker:
            await worker.stop()
        await close_ledger()
        await close_db()

    return lifespan


async def mixer_error_handler(request: Request, exc: MixerError) -> JSONResponse:
    """Map mixer errors to their HTTP status."""
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        detail = GENERIC_DETAILS.get(type(exc), "Internal error")
    else:
        detail = exc.message
    return JSONResponse(status_code=exc.http_status, content={"detail": detail})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Reject malformed requests with 400 and a readable message."""
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())[1:])
        messages.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    return JSONResponse(status_code=400, content={"detail": "; ".join(messages)})


def create_app(run_worker: Optional[bool] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        run_worker: Run the background worker inside the app lifespan
            (defaults to WORKER_ENABLED)
    """
    settings = get_settings()
    if run_worker is None:
        run_worker = settings.worker_enabled

    app = FastAPI(
        title="Mixerex API",
        description="Custodial mixing order backend",
        version=__version__,
        lifespan=_lifespan(run_worker),
        debug=settings.debug,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(MixerError, mixer_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Register routes
    from mixerex.api.routers import admin
    from mixerex.api.routes import health, mixer

    app.include_router(health.router, tags=["Health"])
    app.include_router(mixer.router, prefix="/api/mixer", tags=["Mixer"])
    app.include_router(admin.router, tags=["Admin"])

    return app


# Default app instance
app = create_app()
