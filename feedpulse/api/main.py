"""FeedPulse FastAPI application — entry point for the API server."""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.settings import get_settings
from feedpulse.api.container import ServiceContainer, create_container
from feedpulse.api.errors import register_error_handlers
from feedpulse.core.logging import get_logger
from feedpulse.data.db import close_engine

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup/shutdown lifecycle — build services, run the usage dispatcher."""
    log.info("api_starting")
    container: ServiceContainer | None = getattr(app.state, "container", None)
    if container is None:
        container = await create_container(get_settings())
        app.state.container = container

    await container.dispatcher.start()
    yield
    await container.dispatcher.stop()
    if container.settings.storage_backend == "postgres":
        await close_engine()
    log.info("api_shutdown")


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """Build and return the FastAPI application.

    A prebuilt ``container`` is used as-is; otherwise one is created from
    settings at startup.
    """
    settings = container.settings if container is not None else get_settings()

    app = FastAPI(
        title="FeedPulse API",
        description="Multi-tenant accounts, teams, plans and usage — REST API",
        version="0.1.0",
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    # Register routers
    from feedpulse.api.routes.auth import router as auth_router
    from feedpulse.api.routes.health import router as health_router
    from feedpulse.api.routes.subscription import router as subscription_router
    from feedpulse.api.routes.team import router as team_router

    app.include_router(health_router, prefix="/api")
    app.include_router(auth_router, prefix="/api")
    app.include_router(team_router, prefix="/api")
    app.include_router(subscription_router, prefix="/api")

    return app


app = create_app()
