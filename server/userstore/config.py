"""
Configuration and settings for the user accounts service.
"""

from __future__ import annotations

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

SESSION_SECRET_BYTES = 32


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_prefix="USERSTORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_prefix: str = Field(default="/api")

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    # Database. Either a full SQLAlchemy URL, or a dialect + connect string
    # whose credentials are read from key files.
    database_url: Optional[str] = Field(default=None)
    db_dialect: str = Field(default="oracle+oracledb")
    db_connect_string: Optional[str] = Field(default=None)
    db_user_file: str = Field(default="keys/db_user")
    db_password_file: str = Field(default="keys/db_password")
    db_wallet_dir: Optional[str] = Field(default=None)
    db_wallet_password_file: str = Field(default="keys/wallet_pass")
    db_pool_size: int = Field(default=5, ge=1)
    db_pool_timeout: float = Field(default=30.0, gt=0)
    db_drain_timeout: float = Field(default=1.0, ge=0)

    # Sessions (Redis)
    redis_url: Optional[str] = Field(default=None)
    session_key_prefix: str = Field(default="sess:")
    session_ttl_seconds: int = Field(default=86400, ge=1)
    session_cookie_name: str = Field(default="sid")
    session_cookie_path: str = Field(default="/api")
    session_cookie_secure: bool = Field(default=False)
    session_secret_file: str = Field(default="keys/session_secret")

    # Keep-alive insert, daily at HH:MM local time
    keepalive_enabled: bool = Field(default=True)
    keepalive_at: str = Field(default="06:39", pattern=r"^\d{2}:\d{2}$")

    @property
    def has_database(self) -> bool:
        return bool(self.database_url or self.db_connect_string)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()


def read_secret(path: str | Path) -> str:
    """Read a UTF-8 secret file, dropping surrounding whitespace."""
    return Path(path).read_text(encoding="utf-8").strip()


def load_session_secret(path: str | Path) -> bytes:
    """
    Return the session signing secret stored at ``path``.

    A fresh random secret is generated and persisted when the file does not
    exist yet, so cookies stay valid across restarts.
    """
    secret_path = Path(path)
    try:
        return secret_path.read_bytes()
    except FileNotFoundError:
        secret = secrets.token_bytes(SESSION_SECRET_BYTES)
        secret_path.parent.mkdir(parents=True, exist_ok=True)
        secret_path.write_bytes(secret)
        logger.info("Generated new session secret at %s", secret_path)
        return secret
