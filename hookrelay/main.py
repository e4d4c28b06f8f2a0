"""
HookRelay Dispatcher - ops HTTP surface

FastAPI application that runs the dispatcher in its lifespan and serves
/metrics and /health. Uvicorn's signal handling triggers the lifespan
shutdown, which drains the dispatcher within the grace period.
"""
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from hookrelay.config import settings
from hookrelay.database import AsyncSessionLocal, engine
from hookrelay.dispatcher import DispatcherState, create_dispatcher
from hookrelay.logging_config import configure_logging
from hookrelay.routes.metrics import router as metrics_router
from hookrelay.sentry_config import configure_sentry
from hookrelay.services.metrics import get_metrics_emitter

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
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
        app.state.dispatcher = dispatcher
        try:
            yield
        finally:
            await dispatcher.stop()
    await engine.dispose()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Webhook event delivery and endpoint monitoring dispatcher",
    lifespan=lifespan,
)

# Include metrics endpoint
app.include_router(metrics_router)


@app.get("/")
async def root():
    """Service info."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Dispatcher lifecycle state."""
    dispatcher = getattr(app.state, "dispatcher", None)
    state = dispatcher.state if dispatcher else DispatcherState.STOPPED
    return {
        "status": "healthy" if state is DispatcherState.RUNNING else "unavailable",
        "dispatcher": state.value
    }
