"""
Classify API Backend — Password Hashing & JWT
=============================================

What:  argon2 password hashing and HS256 access tokens.
Who:   AuthService issues tokens; dependencies.get_current_user decodes them.
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from classify_api.config import DEFAULT_JWT_SECRET, settings

_ph = PasswordHasher()


def hash_password(password: str) -> str:
    return _ph.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return _ph.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


def token_lifetime_seconds() -> int:
    return settings.jwt_access_token_expire_minutes * 60


def signing_key() -> str:
    """The HS256 secret. The shipped placeholder is public and never accepted."""
    secret = settings.jwt_secret_key
    if not secret or secret == DEFAULT_JWT_SECRET:
        raise jwt.InvalidKeyError("JWT_SECRET_KEY is not configured")
    return secret


def create_access_token(user_id: uuid.UUID, email: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "email": email,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(seconds=token_lifetime_seconds()),
    }
    return jwt.encode(payload, signing_key(), algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, signing_key(), algorithms=[settings.jwt_algorithm])
