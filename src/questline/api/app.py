"""Web API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- the standard error envelope (see :mod:`questline.api.middleware`)
- health endpoint at GET /api/health
- the schedule-session router, wired to the daemon's :class:`FlowServices`
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from questline import __version__
from questline.api.deps import FlowServices
from questline.api.middleware import register_error_handlers
from questline.api.routers import schedule_session

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle; the daemon owns every external connection."""
    logger.info("Web API started")
    yield
    services: FlowServices | None = getattr(app.state, "flow_services", None)
    if services is not None:
        services.shutdown_event.set()
    logger.info("Web API stopped")


def wire_dependencies(app: FastAPI, services: FlowServices) -> None:
    """Override the routers' dependency stubs with *services*."""
    app.state.flow_services = services
    app.dependency_overrides[schedule_session._get_flow_services] = lambda: services


def create_app(services: FlowServices | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    services:
        Collaborators for the schedule-session endpoints. When omitted, the
        endpoints fail until :func:`wire_dependencies` is called.
    """
    app = FastAPI(
        title="Questline API",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False

    register_error_handlers(app)
    app.include_router(schedule_session.router)

    if services is not None:
        wire_dependencies(app, services)

    @app.get("/api/health")
    async def health():
        services: FlowServices | None = getattr(app.state, "flow_services", None)
        if services is not None and services.shutdown_event.is_set():
            return {"status": "shutting_down"}
        return {"status": "ok"}

    return app
