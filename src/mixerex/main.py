"""Main entry point - runs the API and the background worker."""

import asyncio
import logging
import signal
import sys

import uvicorn

from mixerex.api.app import create_app
from mixerex.chain.factory import close_ledger
from mixerex.config import get_settings
from mixerex.errors import ConfigurationError
from mixerex.ledger.database import close_db, init_db
from mixerex.services.registry import get_services
from mixerex.services.worker import MixerWorker

logger = logging.getLogger(__name__)


class Application:
    """Main application that runs both the API and the mixer worker."""

    def __init__(self):
        self.settings = get_settings()
        self.worker = None
        self._shutdown_event = asyncio.Event()

    async def start(self):
        """Start all services."""
        # Configure logging
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        logger.info("Starting Mixerex...")
        logger.info(f"Environment: {self.settings.environment}")

        # Refuse to custody keys without the encryption key
        services = get_services()
        logger.info(f"Ledger backend: {services.chain.name}")

        # Initialize database
        await init_db()
        logger.info("Database initialized")

        tasks = []

        if self.settings.worker_enabled:
            self.worker = MixerWorker(services)
            tasks.extend(self.worker.start())
            logger.info("Worker tasks created")
        else:
            logger.warning("WORKER_ENABLED is false - deposits and payouts will not progress")

        # Start API server
        tasks.append(asyncio.create_task(self._run_api()))
        logger.info("API task created")

        # Wait for shutdown signal
        await self._shutdown_event.wait()

        if self.worker:
            await self.worker.stop()

        # Cancel remaining tasks
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self._cleanup()

    async def _run_api(self):
        """Run the FastAPI server."""
        try:
            app = create_app(run_worker=False)
            config = uvicorn.Config(
                app,
                host=self.settings.api_host,
                port=self.settings.api_port,
                log_level="debug" if self.settings.debug else "info",
            )
            server = uvicorn.Server(config)
            logger.info(f"Starting API server on {self.settings.api_host}:{self.settings.api_port}")
            await server.serve()
        except asyncio.CancelledError:
            logger.info("API server cancelled")
        except Exception as e:
            logger.error(f"API error: {e}")
            raise
        finally:
            self.shutdown()

    async def _cleanup(self):
        """Cleanup resources."""
        logger.info("Cleaning up...")
        await close_ledger()
        await close_db()
        logger.info("Cleanup complete")

    def shutdown(self):
        """Signal shutdown."""
        if not self._shutdown_event.is_set():
            logger.info("Shutdown requested")
            self._shutdown_event.set()


def main():
    """Main entry point."""
    app = Application()

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e.message}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
