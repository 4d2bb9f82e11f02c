"""
auth/passwords.py -- Credential hashing (bcrypt, direct usage, no passlib wrapper).

Bcrypt is the right choice for low-entropy secrets (passwords) because its
cost factor makes brute-force expensive. The cost factor is fixed per
deployment (AuthConfig.password_cost, default 10).

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

The _DUMMY_HASH constant enables timing equalization in the sign-in flow so
response time does not reveal whether an email is registered [C1].
"""

from __future__ import annotations

import bcrypt

DEFAULT_COST = 10

# bcrypt only looks at the first 72 bytes of input; newer releases refuse
# anything longer instead of truncating. The engine rejects such passwords.
MAX_PASSWORD_BYTES = 72


def hash_password(plain: str, rounds: int = DEFAULT_COST) -> str:
    """Return a salted bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Never raises: a malformed or empty hash is a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("warden_timing_dummy")


def burn_verification(plain: str) -> None:
    """Run a full bcrypt check against the dummy hash and discard the result.

    Called when there is no real hash to check (unknown email, OAuth-only
    user) so that path costs the same as a wrong password.
    """
    verify_password(plain, _DUMMY_HASH)


def exceeds_bcrypt_limit(plain: str) -> bool:
    return len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES
