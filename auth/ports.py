"""
auth/ports.py -- The engine's contracts with persistence and identity providers.

Pattern: Ports (hexagonal architecture). The engine depends only on these
Protocols; concrete adapters (auth/memory.py, auth/store.py, auth/oauth.py)
are injected at construction time.

Storage contract notes:
  - Every get_user_by_*_token / get_session_by_refresh_token lookup excludes
    rows whose expiry has passed. The engine re-checks expiry as well.
  - consume_token, reset_credentials and rotate_refresh_token are
    compare-and-swap operations: they only apply when the stored token still
    equals the presented one. This is what gives "at most one redemption per
    token value" under concurrent requests.
  - create_user_with_account and reset_credentials write two entities in
    one transaction. Either both writes land or neither does.
  - update_* methods return the updated entity, or None if it does not exist.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Protocol, Union

from auth.models import CREDENTIALS_PROVIDER, Account, OAuthProfile, Session, TokenPurpose, User


class StoragePort(Protocol):
    # -- users ---------------------------------------------------------

    async def create_user(self, user: User) -> User:
        """Persist a new user; the returned copy carries the assigned id."""
        ...

    async def get_user(self, user_id: str) -> User | None: ...

    async def get_user_by_email(self, email: str) -> User | None: ...

    async def get_user_by_reset_token(self, token: str) -> User | None: ...

    async def get_user_by_verification_token(self, token: str) -> User | None: ...

    async def update_user(self, user_id: str, **fields: Any) -> User | None: ...

    async def delete_user(self, user_id: str) -> User | None:
        """Remove the user with its accounts and sessions."""
        ...

    async def consume_token(
        self, user_id: str, purpose: TokenPurpose, token: str, **fields: Any
    ) -> User | None:
        """Clear the user's reset/verification token if it still equals token.

        Applies fields in the same atomic write. Returns the updated user, or
        None when the token was already consumed, replaced or expired.
        """
        ...

    async def reset_credentials(
        self, user_id: str, reset_token: str, account_id: str, password_hash: str
    ) -> User | None:
        """Clear the reset token and store the account's new password hash.

        Both writes share one transaction. Returns None, with nothing
        written, when the token is no longer current or the account does
        not belong to the user.
        """
        ...

    # -- accounts ------------------------------------------------------

    async def link_account(self, account: Account) -> Account:
        """Persist an account link. Raises DuplicateAccountError on collision."""
        ...

    async def create_user_with_account(self, user: User, account: Account) -> tuple[User, Account]:
        """Insert a user and its first account in one transaction.

        account.user_id is set to the stored user's id. Raises
        DuplicateUserError or DuplicateAccountError, with nothing written,
        on collision.
        """
        ...

    async def get_user_by_account(self, provider: str, provider_account_id: str) -> User | None: ...

    async def get_account_by_provider(self, user_id: str, provider: str) -> Account | None: ...

    async def update_account(self, account_id: str, **fields: Any) -> Account | None: ...

    async def unlink_account(self, provider: str, provider_account_id: str) -> Account | None: ...

    # -- sessions ------------------------------------------------------

    async def create_session(self, session: Session) -> Session: ...

    async def get_session_and_user(self, session_token: str) -> tuple[Session, User] | None: ...

    async def get_session_by_refresh_token(self, refresh_token: str) -> Session | None: ...

    async def update_session(self, session_token: str, **fields: Any) -> Session | None: ...

    async def rotate_refresh_token(
        self,
        session_token: str,
        current_refresh_token: str,
        new_refresh_token: str,
        new_expires: datetime,
    ) -> Session | None:
        """Swap the refresh token only if it still equals current_refresh_token."""
        ...

    async def delete_session(self, session_token: str) -> Session | None: ...

    async def delete_user_sessions(self, user_id: str) -> int: ...


class IdentityProviderPort(Protocol):
    """A third-party OAuth2 provider."""

    id: str
    type: Literal["oauth"]

    async def get_authorization_url(self, state: str) -> str: ...

    async def exchange_code_for_profile(self, code: str) -> OAuthProfile: ...


@dataclass(frozen=True)
class CredentialsProvider:
    """Marks email/password sign-in as enabled in the provider list."""

    id: str = CREDENTIALS_PROVIDER
    type: Literal["credentials"] = "credentials"
    label: str = "Email"


Provider = Union[IdentityProviderPort, CredentialsProvider]
