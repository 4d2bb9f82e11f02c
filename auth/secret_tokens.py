"""
auth/secret_tokens.py -- Opaque single-use tokens and their expiry windows.

Used for password-reset, email-verification, refresh and session tokens, and
for the OAuth state parameter. secrets.token_hex(32) gives 256 bits of
entropy -- brute-force is computationally infeasible.

Expiry checks fail closed: a missing expiry counts as expired.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

DEFAULT_TOKEN_BYTES = 32


def generate_token(byte_length: int = DEFAULT_TOKEN_BYTES) -> str:
    """Return a cryptographically random hex token (2 chars per byte)."""
    if byte_length < 1:
        raise ValueError("byte_length must be at least 1")
    return secrets.token_hex(byte_length)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def expiry_from_now(hours: float) -> datetime:
    return utcnow() + timedelta(hours=hours)


def expiry_in_seconds(seconds: int) -> datetime:
    return utcnow() + timedelta(seconds=seconds)


def is_expired(expiry: datetime | None) -> bool:
    """Return True if expiry is in the past or missing."""
    if expiry is None:
        return True
    return utcnow() >= as_utc(expiry)
