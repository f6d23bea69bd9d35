"""
Password hashing with scrypt.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass

SALT_BYTES = 16
HASH_BYTES = 64
SCRYPT_N = 1024
SCRYPT_R = 8
SCRYPT_P = 1


@dataclass(frozen=True)
class PasswordHash:
    salt: str
    password_hash: str


def _derive(password: str, salt: str) -> str:
    # The hex salt is fed to scrypt as text, matching hashes already stored.
    digest = hashlib.scrypt(
        password.encode("utf-8"),
        salt=salt.encode("utf-8"),
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
        dklen=HASH_BYTES,
    )
    return digest.hex()


def hash_password(password: str) -> PasswordHash:
    """Return a fresh hex salt and the hex scrypt hash of ``password``."""
    salt = secrets.token_hex(SALT_BYTES)
    return PasswordHash(salt=salt, password_hash=_derive(password, salt))


def verify_password(password: str, password_hash: str, salt: str) -> bool:
    if not password_hash or not salt:
        return False
    attempt = _derive(password, salt)
    return hmac.compare_digest(attempt, password_hash)
