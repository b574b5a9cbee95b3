"""FastAPI application for CareHooks."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import __version__
from .core.logging_config import setup_logging
from .core.settings import get_settings
from .webhooks.router import router as webhooks_router
from .webhooks.runtime import get_runtime

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start embedded dispatcher workers when configured to."""
    settings = get_runtime().settings
    stop = asyncio.Event()
    worker = None

    if settings.run_workers_in_api:
        dispatcher = get_runtime().create_dispatcher()
        worker = asyncio.create_task(dispatcher.run(stop))
        logger.info("Started embedded dispatcher workers")

    yield

    if worker is not None:
        stop.set()
        await worker
        await dispatcher.aclose()
    logger.info("CareHooks API stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="CareHooks",
        description="Webhook dispatch for hospital domain events",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(webhooks_router)

    @app.get("/")
    def root():
        return {"status": "ok", "message": "CareHooks webhook dispatcher"}

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    return app


def build_app() -> FastAPI:
    """Entry point for uvicorn's factory mode; configures logging first."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file)
    return create_app()
