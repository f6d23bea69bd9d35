"""
HTTP routes for user accounts, sessions and per-user JSON storage.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response, status
from sqlalchemy.exc import SQLAlchemyError

from userstore.db import PersistenceError, UserRepository
from userstore.dependencies import (
    ActiveSession,
    AppContext,
    current_session_id,
    get_context,
    get_session_store,
    get_user_repository,
    require_session,
)
from userstore.passwords import verify_password
from userstore.schemas import (
    AddUserRequest,
    LoginRequest,
    MessageResponse,
    StorageResponse,
    UserInfoResponse,
)
from userstore.sessions import SessionData, SessionStore, SessionStoreError

logger = logging.getLogger(__name__)

router = APIRouter()

_DB_ERRORS = (SQLAlchemyError, PersistenceError)


def _server_error(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=message)


def _refresh_cached_storage(context: AppContext, active: ActiveSession, storage: dict) -> None:
    # The persisted document is authoritative; a stale cache is tolerated.
    try:
        context.sessions.update(active.session_id, storage=storage)
    except SessionStoreError:
        logger.warning("Could not refresh cached storage for user %s", active.data.user_id)


@router.post("/users/add", response_model=MessageResponse, status_code=201)
def add_user(
    payload: AddUserRequest,
    repository: UserRepository = Depends(get_user_repository),
):
    try:
        added = repository.add_user(payload.username, payload.password, payload.email)
    except _DB_ERRORS:
        logger.exception("Error adding user %s", payload.email)
        raise _server_error("Failed to add user.")
    if not added:
        raise _server_error("Failed to add user.")
    return MessageResponse(message="User added successfully!")


@router.post("/users/login", response_model=MessageResponse)
def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    context: AppContext = Depends(get_context),
):
    """
    Check credentials and start a session.

    Unknown emails and wrong passwords get the same 401 so callers cannot
    probe which addresses are registered.
    """
    try:
        user = context.repository.get_user_by_email(payload.email)
    except _DB_ERRORS:
        logger.exception("Error looking up user %s", payload.email)
        raise _server_error("Login failed.")

    if user is None or not verify_password(payload.password, user.password_hash, user.salt):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials."
        )

    previous = current_session_id(request, context)
    try:
        if previous:
            context.sessions.destroy(previous)
        session_id = context.sessions.create(
            SessionData(
                user_id=user.id,
                username=user.username,
                email=user.email,
                storage=user.storage,
            )
        )
    except SessionStoreError:
        logger.exception("Could not create session for user %s", user.id)
        raise _server_error("Login failed.")

    settings = context.settings
    response.set_cookie(
        settings.session_cookie_name,
        context.signer.sign(session_id),
        max_age=settings.session_ttl_seconds,
        path=settings.session_cookie_path,
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite="lax",
    )
    return MessageResponse(message="Login successful!")


@router.get("/users/info", response_model=UserInfoResponse)
def user_info(active: ActiveSession = Depends(require_session)):
    return UserInfoResponse(
        userId=active.data.user_id,
        username=active.data.username,
        email=active.data.email,
    )


@router.post("/users/logout", response_model=MessageResponse)
def logout(
    response: Response,
    active: ActiveSession = Depends(require_session),
    sessions: SessionStore = Depends(get_session_store),
    context: AppContext = Depends(get_context),
):
    try:
        sessions.destroy(active.session_id)
    except SessionStoreError:
        logger.exception("Error destroying session")
        raise _server_error("Could not log out.")
    response.delete_cookie(
        context.settings.session_cookie_name,
        path=context.settings.session_cookie_path,
    )
    return MessageResponse(message="Logged out successfully.")


@router.post("/users/storage", response_model=MessageResponse)
def save_storage(
    payload: Any = Body(None),
    active: ActiveSession = Depends(require_session),
    context: AppContext = Depends(get_context),
):
    """Merge-patch the caller's JSON document with the request body."""
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON data provided."
        )

    user_id = active.data.user_id
    try:
        applied = context.repository.update_json_storage(user_id, payload)
        storage = context.repository.get_json_storage(user_id) if applied else None
    except _DB_ERRORS:
        logger.exception("Error saving storage for user %s", user_id)
        raise _server_error("Failed to save storage.")
    if not applied:
        raise _server_error("Failed to update storage.")

    _refresh_cached_storage(context, active, storage or {})
    return MessageResponse(message="Storage updated successfully!")


@router.get("/users/storage", response_model=StorageResponse)
def get_storage(
    active: ActiveSession = Depends(require_session),
    context: AppContext = Depends(get_context),
):
    user_id = active.data.user_id
    try:
        storage = context.repository.get_json_storage(user_id)
    except _DB_ERRORS:
        logger.exception("Error retrieving storage for user %s", user_id)
        raise _server_error("Failed to retrieve storage.")
    if storage is None:
        return StorageResponse(storage={})

    _refresh_cached_storage(context, active, storage)
    return StorageResponse(storage=storage)
