"""
FastAPI application entry point for the user accounts service.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from userstore.config import Settings, get_settings
from userstore.db import PersistenceError
from userstore.dependencies import AppContext, build_context
from userstore.keepalive import KeepAliveJob
from userstore.routes import router
from userstore.sessions import SessionStoreError

logger = logging.getLogger(__name__)


def _shutdown(app: FastAPI) -> None:
    context: AppContext = app.state.context
    keepalive: KeepAliveJob | None = app.state.keepalive
    if keepalive is not None:
        keepalive.stop()

    try:
        context.sessions.close()
    except SessionStoreError as exc:
        logger.error("Error closing session store: %s", exc)

    try:
        context.repository.close(timeout=context.settings.db_drain_timeout)
    except PersistenceError as exc:
        logger.error("Error draining connection pool: %s", exc)
        app.state.clean_shutdown = False
    else:
        app.state.clean_shutdown = True


@asynccontextmanager
async def lifespan(app: FastAPI):
    context: AppContext = app.state.context
    if context.settings.keepalive_enabled:
        keepalive = KeepAliveJob(context.repository, at=context.settings.keepalive_at)
        keepalive.start()
        app.state.keepalive = keepalive
    try:
        yield
    finally:
        logger.info("Terminating")
        _shutdown(app)


def create_app(
    settings: Settings | None = None, *, context: AppContext | None = None
) -> FastAPI:
    """Build the app; backends come from ``context`` or are created from settings."""
    if context is None:
        context = build_context(settings or get_settings())
    app = FastAPI(title="User Store", version="0.1.0", lifespan=lifespan)
    app.state.context = context
    app.state.keepalive = None
    app.state.clean_shutdown = None
    app.include_router(router, prefix=context.settings.api_prefix)
    return app
