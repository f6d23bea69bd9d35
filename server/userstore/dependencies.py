"""
Dependency wiring for the FastAPI app.

Backends are built once per application (see ``userstore.app``) and handed
to route handlers from ``app.state.context``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status

from userstore.config import Settings, load_session_secret
from userstore.db import InMemoryUserRepository, SqlUserRepository, UserRepository
from userstore.sessions import (
    InMemorySessionStore,
    RedisSessionStore,
    SessionCookieSigner,
    SessionData,
    SessionStore,
    SessionStoreError,
)

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    repository: UserRepository
    sessions: SessionStore
    signer: SessionCookieSigner


@dataclass
class ActiveSession:
    session_id: str
    data: SessionData


def build_context(settings: Settings) -> AppContext:
    """
    Construct the repository, session store and cookie signer.

    Connection failures propagate so that startup aborts.
    """
    if settings.use_in_memory_backends or not settings.has_database:
        logger.info("Using in-memory user repository")
        repository: UserRepository = InMemoryUserRepository()
    else:
        repository = SqlUserRepository.from_settings(settings)
        repository.ping()

    if settings.use_in_memory_backends or not settings.redis_url:
        logger.info("Using in-memory session store")
        sessions: SessionStore = InMemorySessionStore(ttl_seconds=settings.session_ttl_seconds)
    else:
        sessions = RedisSessionStore(
            url=settings.redis_url,
            key_prefix=settings.session_key_prefix,
            ttl_seconds=settings.session_ttl_seconds,
        )
        sessions.ping()

    signer = SessionCookieSigner(
        load_session_secret(settings.session_secret_file),
        max_age=settings.session_ttl_seconds,
    )
    return AppContext(
        settings=settings, repository=repository, sessions=sessions, signer=signer
    )


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_user_repository(context: AppContext = Depends(get_context)) -> UserRepository:
    return context.repository


def get_session_store(context: AppContext = Depends(get_context)) -> SessionStore:
    return context.sessions


def current_session_id(request: Request, context: AppContext) -> str | None:
    token = request.cookies.get(context.settings.session_cookie_name)
    return context.signer.unsign(token)


def require_session(
    request: Request, context: AppContext = Depends(get_context)
) -> ActiveSession:
    """Resolve the caller's session or fail with 401."""
    session_id = current_session_id(request, context)
    if session_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required."
        )
    try:
        data = context.sessions.get(session_id)
    except SessionStoreError:
        logger.exception("Session lookup failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Session store unavailable.",
        )
    if data is None or not data.user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required."
        )
    return ActiveSession(session_id=session_id, data=data)
