"""
User persistence over SQLAlchemy plus an in-memory test implementation.
"""

from __future__ import annotations

import copy
import itertools
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Protocol

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    String,
    create_engine,
    insert,
    literal,
    select,
    update,
)
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from userstore.config import Settings, read_secret
from userstore.merge_patch import apply_merge_patch
from userstore.passwords import hash_password

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PersistenceError(Exception):
    """Base class for failures of the persistence layer itself."""


class RollbackError(PersistenceError):
    """
    A failed transaction could not be rolled back.

    The connection and transaction state are unknown after this, so it is
    never absorbed by callers. ``original`` holds the error that triggered
    the rollback.
    """

    def __init__(self, message: str, original: BaseException | None = None):
        super().__init__(message)
        self.original = original


class ConnectionReleaseError(PersistenceError):
    """A pooled connection could not be returned to the pool."""


class PoolDrainError(PersistenceError):
    """Checked-out connections did not return within the drain timeout."""


class UserRepository(Protocol):
    """Interface for user and storage access."""

    def add_user(self, username: str, password: str, email: str) -> bool:
        ...

    def get_user_by_email(self, email: str) -> Optional["UserRecord"]:
        ...

    def update_json_storage(self, user_id: int, patch: dict) -> bool:
        ...

    def get_json_storage(self, user_id: int) -> Optional[dict]:
        ...

    def touch_keepalive(self) -> None:
        ...

    def ping(self) -> None:
        ...

    def close(self, timeout: float = 1.0) -> None:
        ...


@dataclass
class UserRecord:
    id: int
    username: str
    password_hash: str
    salt: str
    email: str
    registration_date: datetime = field(default_factory=_utcnow)
    storage: dict = field(default_factory=dict)


class InMemoryUserRepository:
    """Simple in-memory user store for development and tests."""

    def __init__(self):
        self.users: Dict[int, UserRecord] = {}
        self.keepalive_writes: List[datetime] = []
        self._ids = itertools.count(1)

    def add_user(self, username: str, password: str, email: str) -> bool:
        hashed = hash_password(password)
        user_id = next(self._ids)
        self.users[user_id] = UserRecord(
            id=user_id,
            username=username,
            password_hash=hashed.password_hash,
            salt=hashed.salt,
            email=email,
        )
        return True

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        for user_id in sorted(self.users):
            user = self.users[user_id]
            if user.email == email:
                return copy.deepcopy(user)
        return None

    def update_json_storage(self, user_id: int, patch: dict) -> bool:
        user = self.users.get(user_id)
        if not user:
            return False
        user.storage = apply_merge_patch(user.storage, patch)
        return True

    def get_json_storage(self, user_id: int) -> Optional[dict]:
        user = self.users.get(user_id)
        if not user:
            return None
        return copy.deepcopy(user.storage)

    def touch_keepalive(self) -> None:
        self.keepalive_writes.append(_utcnow())

    def ping(self) -> None:
        return None

    def close(self, timeout: float = 1.0) -> None:
        return None

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.users.clear()
        self.keepalive_writes.clear()
        self._ids = itertools.count(1)


class SqlUserRepository:
    """
    SQLAlchemy-backed implementation. Accepts any engine whose dialect
    supports a JSON column (Postgres, Oracle, SQLite for tests).

    Every call holds one pooled session for its duration and always hands
    it back, surfacing failures to release it.
    """

    def __init__(self, engine: Engine, *, log: logging.Logger | None = None):
        self.engine = engine
        self.logger = log or logger
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    @classmethod
    def from_settings(
        cls, settings: Settings, *, log: logging.Logger | None = None
    ) -> "SqlUserRepository":
        connect_args: dict = {}
        if settings.database_url:
            url = make_url(settings.database_url)
        else:
            url = URL.create(
                settings.db_dialect,
                username=read_secret(settings.db_user_file),
                password=read_secret(settings.db_password_file),
                host=settings.db_connect_string,
            )
        if settings.db_wallet_dir:
            connect_args.update(
                config_dir=settings.db_wallet_dir,
                wallet_location=settings.db_wallet_dir,
                wallet_password=read_secret(settings.db_wallet_password_file),
            )

        engine_options: dict = {}
        if url.get_backend_name() != "sqlite":
            engine_options.update(
                pool_size=settings.db_pool_size,
                pool_timeout=settings.db_pool_timeout,
            )
        engine = create_engine(
            url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
            connect_args=connect_args,
            **engine_options,
        )
        return cls(engine, log=log)

    @contextmanager
    def _session_scope(self, *, transactional: bool = False) -> Iterator[Session]:
        session = self.Session()
        rollback_failed = False
        try:
            yield session
            if transactional:
                session.commit()
        except SQLAlchemyError as exc:
            self.logger.error("Error executing query: %s", exc)
            if transactional:
                try:
                    session.rollback()
                except SQLAlchemyError as rollback_exc:
                    self.logger.critical("Error during rollback: %s", rollback_exc)
                    rollback_failed = True
                    raise RollbackError(
                        "Rollback failed; transaction state is unknown", original=exc
                    ) from rollback_exc
            raise
        finally:
            try:
                session.close()
            except SQLAlchemyError as close_exc:
                self.logger.error("Error releasing connection: %s", close_exc)
                # A pending RollbackError outranks the release failure.
                if not rollback_failed:
                    raise ConnectionReleaseError(
                        "Failed to return connection to the pool"
                    ) from close_exc

    def _to_user_record(self, row: "UserRow") -> UserRecord:
        return UserRecord(
            id=row.id,
            username=row.username,
            password_hash=row.password_hash,
            salt=row.salt,
            email=row.email,
            registration_date=row.registration_date,
            storage=row.storage or {},
        )

    def add_user(self, username: str, password: str, email: str) -> bool:
        hashed = hash_password(password)
        try:
            with self._session_scope(transactional=True) as session:
                session.add(
                    UserRow(
                        username=username,
                        password_hash=hashed.password_hash,
                        salt=hashed.salt,
                        email=email,
                        storage={},
                    )
                )
        except SQLAlchemyError:
            self.logger.warning("Failed to add user %s", email)
            return False
        self.logger.info("User added successfully")
        return True

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self._session_scope() as session:
            stmt = (
                select(UserRow)
                .where(UserRow.email == email)
                .order_by(UserRow.id.asc())
                .limit(1)
            )
            row = session.execute(stmt).scalars().first()
            if not row:
                return None
            return self._to_user_record(row)

    def update_json_storage(self, user_id: int, patch: dict) -> bool:
        with self._session_scope(transactional=True) as session:
            current = session.execute(
                select(UserRow.storage).where(UserRow.id == user_id).with_for_update()
            ).first()
            if current is None:
                return False
            merged = apply_merge_patch(current.storage or {}, patch)
            result = session.execute(
                update(UserRow)
                .where(UserRow.id == user_id)
                .values(storage=merged)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def get_json_storage(self, user_id: int) -> Optional[dict]:
        with self._session_scope() as session:
            row = session.execute(
                select(UserRow.storage).where(UserRow.id == user_id)
            ).first()
            if row is None:
                return None
            return row.storage or {}

    def touch_keepalive(self) -> None:
        with self._session_scope(transactional=True) as session:
            session.execute(insert(MiscRow.__table__))

    def ping(self) -> None:
        with self._session_scope() as session:
            session.execute(select(literal(1)))

    def close(self, timeout: float = 1.0) -> None:
        """Wait up to ``timeout`` seconds for checked-out connections, then dispose."""
        checkedout = getattr(self.engine.pool, "checkedout", None)
        try:
            if callable(checkedout):
                deadline = time.monotonic() + timeout
                while checkedout() > 0 and time.monotonic() < deadline:
                    time.sleep(0.05)
                remaining = checkedout()
                if remaining > 0:
                    raise PoolDrainError(
                        f"{remaining} connection(s) still checked out after {timeout}s"
                    )
        finally:
            self.engine.dispose()


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), nullable=False)
    password_hash = Column(String(128), nullable=False)
    salt = Column(String(32), nullable=False)
    # Login key; uniqueness is not enforced and lookups take the lowest id.
    email = Column(String(320), nullable=False, index=True)
    registration_date = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    storage = Column(JSON, nullable=False, default=dict)


class MiscRow(Base):
    __tablename__ = "misc"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
