"""Operator API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- Lifespan handler that connects the routing engine (unless one is injected)
- Error envelope handlers (see ``threadline.api.middleware``)
- Routers for ingest, decisions, the manual queue, retries and identities
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from threadline.api.deps import wire_engine
from threadline.api.middleware import register_error_handlers
from threadline.api.routers.dead_letters import router as dead_letters_router
from threadline.api.routers.decisions import router as decisions_router
from threadline.api.routers.health import router as health_router
from threadline.api.routers.identity import router as identity_router
from threadline.api.routers.ingest import router as ingest_router
from threadline.api.routers.unassigned import router as unassigned_router
from threadline.config import ThreadlineConfig
from threadline.engine import RoutingEngine, connect_engine

logger = logging.getLogger(__name__)


def create_app(
    engine: RoutingEngine | None = None,
    config: ThreadlineConfig | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    engine:
        Pre-built engine to serve. Its lifetime stays with the caller.
    config:
        Used to connect a postgres-backed engine on startup when *engine* is
        not given. The engine is closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned: RoutingEngine | None = None
        if engine is None:
            owned = await connect_engine(config or ThreadlineConfig())
            wire_engine(app, owned)
            logger.info("Operator API connected its routing engine")
        try:
            yield
        finally:
            if owned is not None:
                await owned.close()

    app = FastAPI(title="Threadline Routing API", version="0.1.0", lifespan=lifespan)
    app.router.redirect_slashes = False
    if engine is not None:
        wire_engine(app, engine)

    register_error_handlers(app)

    app.include_router(health_router)
    app.include_router(ingest_router)
    app.include_router(decisions_router)
    app.include_router(unassigned_router)
    app.include_router(dead_letters_router)
    app.include_router(identity_router)

    return app


__all__ = ["create_app"]
