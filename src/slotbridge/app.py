"""Application factory for the slotbridge API."""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .availability import AvailabilityResolver
from .booking import BookingOrchestrator
from .catalog import CatalogService
from .client import SimplyBookClient
from .config import Settings, get_settings
from .errors import register_error_handlers
from .monitoring import init_sentry
from .payments import MollieClient
from .routes import router

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    client: SimplyBookClient | None = None,
    payments: MollieClient | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper())
    init_sentry(settings)

    client = client or SimplyBookClient(settings)
    payments = payments or MollieClient(settings)
    catalog = CatalogService(client, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("slotbridge_started", extra={"environment": settings.environment})
        try:
            yield
        finally:
            await client.aclose()
            await payments.aclose()

    app = FastAPI(title="slotbridge", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.client = client
    app.state.payments = payments
    app.state.catalog = catalog
    app.state.resolver = AvailabilityResolver(client, catalog, settings)
    app.state.orchestrator = BookingOrchestrator(client, payments, catalog, settings)

    register_error_handlers(app)
    app.include_router(router)
    return app
