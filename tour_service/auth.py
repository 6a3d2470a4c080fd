"""Authentication utilities for password hashing, reset tokens and JWT session tokens."""

import hashlib
import math
import secrets
import time
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from .config import settings


# ==================== Password Hashing ====================

def hash_password(password: str) -> str:
    """Hash a plain text password using bcrypt for secure storage."""
    password_bytes = password.encode('utf-8')
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    hashed = bcrypt.hashpw(password_bytes, salt)
    # Return as string for database storage
    return hashed.decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plain text password against a hashed password."""
    password_bytes = plain_password.encode('utf-8')
    hashed_bytes = hashed_password.encode('utf-8')
    return bcrypt.checkpw(password_bytes, hashed_bytes)


# ==================== Password Reset Tokens ====================

def hash_reset_token(token: str) -> str:
    """Fast unsalted fingerprint of a reset token, used only for lookup.

    Reset tokens are random 256-bit values with a 10 minute lifetime, so a
    plain sha256 is enough to keep the raw token out of the database. Never
    use this for passwords.
    """
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def create_password_reset_token() -> tuple[str, str, datetime]:
    """Generate a reset token.

    Returns:
        tuple: (raw token to e-mail, hash to persist, expiry timestamp)
    """
    raw_token = secrets.token_hex(32)
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.PASSWORD_RESET_EXPIRES_MINUTES)
    return raw_token, hash_reset_token(raw_token), expires_at


# ==================== JWT Token Management ====================

def create_access_token(user_id: str, expires_delta: timedelta | None = None) -> str:
    """Create a signed session token carrying the user id and issue time.

    ``iat`` keeps sub-second precision so a token issued just before a
    password change is still recognized as older than the change.
    """
    issued_at = time.time()
    if expires_delta is None:
        expires_delta = timedelta(days=settings.JWT_EXPIRES_IN_DAYS)

    to_encode = {
        "id": str(user_id),
        "iat": math.floor(issued_at * 1000) / 1000,  # millisecond precision, like BSON dates
        "exp": int(issued_at + expires_delta.total_seconds()),
    }
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT token. Returns payload dict if valid, None if invalid or expired."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
    if not payload.get("id") or "iat" not in payload:
        return None
    return payload


def _as_utc(value: datetime) -> datetime:
    # Mongo hands back naive UTC datetimes unless the client is tz-aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def password_changed_timestamp() -> datetime:
    """Current UTC time truncated to milliseconds, the precision Mongo stores."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def changed_password_after(password_changed_at: datetime | None, issued_at: float) -> bool:
    """True when the password was changed after the token was issued."""
    if password_changed_at is None:
        return False
    issued = datetime.fromtimestamp(float(issued_at), tz=timezone.utc)
    return issued < _as_utc(password_changed_at)
