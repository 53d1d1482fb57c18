"""loopcore FastAPI application."""

import asyncio
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from loopcore import __version__
from loopcore.config import settings
from loopcore.core.migrations import run_migrations
from loopcore.database import close_database
from loopcore.logging_config import get_logger, setup_logging
from loopcore.middleware import CorrelationIdMiddleware
from loopcore.routers import health, loop
from loopcore.services.loop_service import build_loop_service
from loopcore.services.scheduler import start_scheduler, stop_scheduler

setup_logging(
    log_format=settings.log_format,
    log_level=settings.log_level,
    service_name=settings.service_name,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    if settings.run_migrations_on_startup:
        # Alembic drives its own event loop, keep it off ours
        await asyncio.to_thread(run_migrations)

    service = build_loop_service()
    await service.start()
    app.state.loop_service = service

    start_scheduler(service)
    logger.info("loopcore started")

    yield

    # Shutdown
    logger.info("Shutting down loopcore...")
    stop_scheduler()
    await service.stop()
    app.state.loop_service = None
    await close_database()
    logger.info("loopcore shutdown complete")


app = FastAPI(
    title="loopcore",
    description="Automated insulin-delivery control loop",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(CorrelationIdMiddleware)

app.include_router(health.router)
app.include_router(loop.router)


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint."""
    return {
        "name": "loopcore",
        "version": __version__,
        "docs": "/docs",
    }


def run() -> None:
    """Serve the application with uvicorn."""
    uvicorn.run(
        "loopcore.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,
    )
