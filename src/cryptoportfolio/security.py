# security.py
"""
Password hashing, bearer tokens and exchange-secret encryption.

- Passwords: bcrypt.
- Tokens: JWT (HS256), subject = user email.
- Exchange API secrets: Fernet (AES-128-CBC + HMAC). Plain base64 is NOT
  encryption; anything that can read the DB could read the secrets.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import bcrypt
import jwt
from cryptography.fernet import Fernet, InvalidToken

from .config import settings

logger = logging.getLogger(__name__)


class TokenError(Exception):
    """Raised when a bearer token cannot be trusted."""


# ---------- Passwords ----------

def hash_password(password: str, rounds: int | None = None) -> str:
    salt = bcrypt.gensalt(rounds=rounds or settings.bcrypt_rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # not a bcrypt hash at all
        return False


# ---------- Tokens ----------

def create_access_token(subject: str, expires_minutes: int | None = None, secret: str | None = None) -> str:
    now = datetime.now(timezone.utc)
    minutes = settings.jwt_expires_minutes if expires_minutes is None else expires_minutes
    payload = {"sub": subject, "iat": now, "exp": now + timedelta(minutes=minutes)}
    return jwt.encode(payload, secret or settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, secret: str | None = None) -> dict[str, Any]:
    """Return the token claims or raise TokenError (bad signature, expired, malformed)."""
    try:
        claims = jwt.decode(token, secret or settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as e:
        raise TokenError(str(e)) from e
    if not claims.get("sub"):
        raise TokenError("token has no subject")
    return claims


# ---------- Exchange secrets ----------

def _derived_key(secret: str) -> bytes:
    # Fernet wants 32 url-safe base64 encoded bytes
    return base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())


@lru_cache(maxsize=1)
def get_cipher() -> Fernet:
    if settings.encryption_key:
        return Fernet(settings.encryption_key.encode())
    logger.warning("CRYPTO_PORTFOLIO_ENCRYPTION_KEY not set; deriving one from the JWT secret (dev only)")
    return Fernet(_derived_key(settings.jwt_secret))


def encrypt_secret(text: str, cipher: Fernet | None = None) -> str:
    cipher = cipher or get_cipher()
    return cipher.encrypt(text.encode("utf-8")).decode("utf-8")


def decrypt_secret(token: str, cipher: Fernet | None = None) -> str:
    cipher = cipher or get_cipher()
    try:
        return cipher.decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        raise ValueError("stored secret cannot be decrypted with the configured key") from e


def mask_secret(secret: str, visible: int = 4) -> str:
    """'abcdef123456' -> '****3456'"""
    return "****" + secret[-visible:] if secret else "****"
