"""
Dispatcher worker process for HookRelay.

Runs the delivery and monitor loops until SIGINT/SIGTERM, then drains
within the configured grace period.

Usage:
    python -m hookrelay.worker
"""
import asyncio
import signal

import httpx
import structlog

from hookrelay.config import settings
from hookrelay.database import AsyncSessionLocal, engine
from hookrelay.dispatcher import create_dispatcher
from hookrelay.logging_config import configure_logging
from hookrelay.sentry_config import configure_sentry
from hookrelay.services.metrics import get_metrics_emitter

logger = structlog.get_logger()


async def main():
    """Start the dispatcher and block until a shutdown signal arrives."""
    configure_logging()
    configure_sentry()

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    async with httpx.AsyncClient(timeout=settings.DELIVERY_TIMEOUT_SECONDS) as delivery_client, \
            httpx.AsyncClient(timeout=settings.MONITOR_TIMEOUT_SECONDS) as probe_client:
        dispatcher = create_dispatcher(
            settings,
            session_factory=AsyncSessionLocal,
            delivery_client=delivery_client,
            probe_client=probe_client,
            metrics=get_metrics_emitter(),
        )
        await dispatcher.start()
        logger.info("worker_started", app=settings.APP_NAME, version=settings.APP_VERSION)

        await shutdown.wait()
        logger.info("worker_shutdown_requested")
        await dispatcher.stop()

    await engine.dispose()
    logger.info("worker_stopped")


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
