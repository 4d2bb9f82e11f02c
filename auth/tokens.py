"""
auth/tokens.py -- Signed token codec (compact JWS via python-jose).

Security design decisions:
  Wire format: header.claims.signature, base64url segments. Default HS256.

  encode() injects iat/exp (integer seconds) and optional iss/aud. The caller's
       claims are copied, never mutated.

  decode() returns None on ANY verification failure -- bad signature, wrong
       algorithm, expired, wrong issuer or audience, malformed token. Callers
       treat None uniformly as "not authenticated". The real cause is logged
       at DEBUG so operators can still diagnose rejected tokens.

  Algorithm allow-list: only the names in SUPPORTED_ALGORITHMS are ever
       passed to python-jose. "none" and unknown names are dropped before
       verification, which closes the "alg: none" and algorithm-confusion
       attacks even if a caller misconfigures the list.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JOSEError, JWTClaimsError

from auth.secret_tokens import utcnow

logger = logging.getLogger("warden.auth.tokens")

DEFAULT_ALGORITHM = "HS256"

SUPPORTED_ALGORITHMS: frozenset[str] = frozenset({"HS256", "HS384", "HS512", "RS256", "RS384", "RS512"})


def encode(
    claims: Mapping[str, Any],
    secret: str,
    max_age: int,
    algorithm: str = DEFAULT_ALGORITHM,
    issuer: str | None = None,
    audience: str | None = None,
) -> str:
    """Sign claims into a compact token valid for max_age seconds.

    Args:
        claims:    Payload to sign. sub/email/name plus any custom claims.
        secret:    HMAC secret, or PEM private key for the RS* algorithms.
        max_age:   Lifetime in seconds; exp = iat + max_age.
        algorithm: One of SUPPORTED_ALGORITHMS.
        issuer:    Optional iss claim.
        audience:  Optional aud claim.
    """
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported signing algorithm: {algorithm!r}")
    now = int(utcnow().timestamp())
    payload = dict(claims)
    payload["iat"] = now
    payload["exp"] = now + max_age
    if issuer:
        payload["iss"] = issuer
    if audience:
        payload["aud"] = audience
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode(
    token: str,
    secret: str,
    algorithms: Iterable[str] = (DEFAULT_ALGORITHM,),
    issuer: str | None = None,
    audience: str | None = None,
) -> dict[str, Any] | None:
    """Verify a token and return its claims, or None on any failure."""
    allowed = [alg for alg in algorithms if alg in SUPPORTED_ALGORITHMS]
    if not token or not allowed:
        return None
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=allowed,
            issuer=issuer or None,
            audience=audience or None,
        )
    except ExpiredSignatureError:
        logger.debug("Token rejected: expired")
    except JWTClaimsError as exc:
        logger.debug("Token rejected: claims check failed (%s)", exc)
    except JOSEError as exc:
        logger.debug("Token rejected: %s", exc)
    return None
