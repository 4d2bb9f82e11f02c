"""
auth/models.py -- Domain dataclasses for authentication entities and results.

Pattern: Data class (pure data container, zero logic). Stores own
persistence, the engine owns the state transitions.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

CREDENTIALS_PROVIDER = "credentials"


class AccountKind(str, Enum):
    credentials = "credentials"
    oauth = "oauth"


class TokenPurpose(str, Enum):
    """Which single-use token on the User record an operation targets."""

    reset = "reset"
    verification = "verification"


@dataclass
class User:
    """An identity in the user directory.

    email is stored stripped and lower-cased; the engine normalizes before
    every lookup. The reset/verification token pairs are None when no flow is
    pending and are cleared in the same operation that redeems them.
    """

    email: str
    id: str | None = None
    name: str | None = None
    email_verified: datetime | None = None
    image: str | None = None
    reset_token: str | None = None
    reset_token_expiry: datetime | None = None
    verification_token: str | None = None
    verification_token_expiry: datetime | None = None
    created_at: datetime | None = None


@dataclass
class Account:
    """A link between a User and one authentication method.

    (provider, provider_account_id) is unique system-wide. For the credential
    account provider is "credentials", provider_account_id is the user id and
    password_hash holds the bcrypt hash; OAuth accounts leave it None.
    """

    user_id: str
    kind: AccountKind
    provider: str
    provider_account_id: str
    id: str | None = None
    password_hash: str | None = None
    created_at: datetime | None = None


@dataclass
class Session:
    """A persisted unit of authenticated access (database strategy or refresh)."""

    session_token: str
    user_id: str
    expires: datetime
    refresh_token: str | None = None
    refresh_token_expires: datetime | None = None


@dataclass(frozen=True)
class OAuthProfile:
    """Provider profile normalized by an identity provider adapter."""

    external_id: str
    email: str
    name: str | None = None
    avatar_url: str | None = None


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass
class AuthResult:
    """A successful authentication: the user and a freshly signed token.

    session is set when a Session row was created (database strategy or
    refresh tokens enabled); its refresh_token is the one to hand the client.
    """

    user: User
    token: str
    session: Session | None = None


@dataclass
class RegisterResult(AuthResult):
    verification_token: str = ""


@dataclass
class OAuthResult(AuthResult):
    is_new_user: bool = False


@dataclass
class RefreshResult:
    user: User
    token: str
    refresh_token: str
    session: Session


@dataclass
class PasswordResetRequest:
    user: User
    reset_token: str


@dataclass
class VerificationRequest:
    user: User
    verification_token: str


@dataclass
class AuthorizationRequest:
    """Where to send the browser, and the state the caller must persist."""

    url: str
    state: str


@dataclass
class AuthSession:
    """The session view handed back to callers by get_session().

    The session callback may return a modified copy; extra carries any
    caller-defined additions.
    """

    user: User
    expires: datetime
    claims: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
