"""
Server-side session storage.

Sessions live in Redis in production with an in-memory fallback for
tests/local runs. The browser only ever holds the session id, signed with
the service secret.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis
from itsdangerous import BadSignature, URLSafeTimedSerializer
from pydantic import BaseModel, Field, ValidationError
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)

COOKIE_SALT = "userstore.session.v1"


class SessionStoreError(Exception):
    """The session store could not be reached or rejected an operation."""


class SessionData(BaseModel):
    """Fields cached for an authenticated client."""

    user_id: int
    username: str
    email: str
    storage: dict = Field(default_factory=dict)


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


def _decode(session_id: str, raw: str | bytes | None) -> Optional[SessionData]:
    if raw is None:
        return None
    try:
        return SessionData.model_validate_json(raw)
    except ValidationError as exc:
        logger.warning("Discarding malformed session %s: %s", session_id[:8], exc)
        return None


class SessionStore(Protocol):
    """Keyed session records with TTL-based expiry."""

    def create(self, data: SessionData) -> str:
        ...

    def get(self, session_id: str) -> Optional[SessionData]:
        ...

    def update(self, session_id: str, **fields) -> None:
        ...

    def destroy(self, session_id: str) -> None:
        ...

    def ping(self) -> None:
        ...

    def close(self) -> None:
        ...


@dataclass
class InMemorySessionStore:
    """Dictionary-backed store honouring the TTL, for testing/dev."""

    ttl_seconds: int = 86400
    clock: Callable[[], float] = time.monotonic
    records: Dict[str, Tuple[str, float]] = field(default_factory=dict)

    def create(self, data: SessionData) -> str:
        session_id = new_session_id()
        self.records[session_id] = (data.model_dump_json(), self.clock() + self.ttl_seconds)
        return session_id

    def get(self, session_id: str) -> Optional[SessionData]:
        entry = self.records.get(session_id)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at <= self.clock():
            self.records.pop(session_id, None)
            return None
        return _decode(session_id, raw)

    def update(self, session_id: str, **fields) -> None:
        current = self.get(session_id)
        if current is None:
            return
        updated = current.model_copy(update=fields)
        self.records[session_id] = (updated.model_dump_json(), self.clock() + self.ttl_seconds)

    def destroy(self, session_id: str) -> None:
        self.records.pop(session_id, None)

    def ping(self) -> None:
        return None

    def close(self) -> None:
        self.records.clear()


@dataclass
class RedisSessionStore:
    """Redis-backed store; each session is one JSON string with an expiry."""

    url: str
    key_prefix: str = "sess:"
    ttl_seconds: int = 86400

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def _key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    def create(self, data: SessionData) -> str:
        session_id = new_session_id()
        try:
            self.client.set(self._key(session_id), data.model_dump_json(), ex=self.ttl_seconds)
        except redis_exceptions.RedisError as exc:
            raise SessionStoreError("Could not create session") from exc
        return session_id

    def get(self, session_id: str) -> Optional[SessionData]:
        try:
            raw = self.client.get(self._key(session_id))
        except redis_exceptions.RedisError as exc:
            raise SessionStoreError("Could not read session") from exc
        return _decode(session_id, raw)

    def update(self, session_id: str, **fields) -> None:
        current = self.get(session_id)
        if current is None:
            return
        updated = current.model_copy(update=fields)
        try:
            self.client.set(self._key(session_id), updated.model_dump_json(), ex=self.ttl_seconds)
        except redis_exceptions.RedisError as exc:
            raise SessionStoreError("Could not update session") from exc

    def destroy(self, session_id: str) -> None:
        try:
            self.client.delete(self._key(session_id))
        except redis_exceptions.RedisError as exc:
            raise SessionStoreError("Could not destroy session") from exc

    def ping(self) -> None:
        try:
            self.client.ping()
        except redis_exceptions.RedisError as exc:
            raise SessionStoreError(f"Redis unreachable at {self.url}") from exc

    def close(self) -> None:
        try:
            self.client.close()
        except redis_exceptions.RedisError as exc:
            raise SessionStoreError("Could not close Redis client") from exc


class SessionCookieSigner:
    """Signs session ids for the cookie and checks them on the way back."""

    def __init__(self, secret: bytes | str, *, max_age: int):
        self._serializer = URLSafeTimedSerializer(secret_key=secret, salt=COOKIE_SALT)
        self.max_age = max_age

    def sign(self, session_id: str) -> str:
        return self._serializer.dumps(session_id)

    def unsign(self, token: str | None) -> Optional[str]:
        if not token:
            return None
        try:
            session_id = self._serializer.loads(token, max_age=self.max_age)
        except BadSignature:
            return None
        if not isinstance(session_id, str) or not session_id:
            return None
        return session_id
