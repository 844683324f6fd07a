"""Copilot usage FastAPI service: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from copilot_usage import config
from copilot_usage.errors import StorageRootsUnavailableError
from copilot_usage.observability import initialize as initialize_observability, shutdown as shutdown_observability
from copilot_usage.routers.analytics import analytics_router
from copilot_usage.services.dashboard import usage_dashboard

logging.basicConfig(level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger("copilot_usage")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Copilot usage service starting up")
    initialize_observability(app)

    # Initial scan + watchers. Without storage roots the service stays up
    # and reports 503 from explicit scans.
    try:
        await usage_dashboard.start()
    except StorageRootsUnavailableError as exc:
        logger.warning("Initial scan skipped: %s", exc)

    yield

    logger.info("Copilot usage service shutting down")
    await usage_dashboard.stop()
    shutdown_observability(app)


app = FastAPI(
    title="Copilot Usage API",
    description="Usage analytics over local Copilot Chat sessions, edit timelines and request logs",
    version=config.EXTENSION_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(analytics_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    unified = usage_dashboard.unified
    return {
        "status": "ok",
        "initialized": unified.is_initialized,
        "events": usage_dashboard.analytics.event_count,
        "watchers": {name: status["mode"] for name, status in unified.get_watcher_status().items()},
    }
