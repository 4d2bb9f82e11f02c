"""
auth/memory.py -- In-memory StoragePort for tests and prototyping.

Every mutation runs under one asyncio.Lock, which makes the compare-and-swap
operations (consume_token, reset_credentials, rotate_refresh_token) and the
two-entity writes atomic within an event loop.
Entities are copied on the way in and out so callers cannot mutate stored
state behind the store's back.

Not shared across processes and not persistent -- use auth.store.SQLStore for
anything real.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import fields as dc_fields
from dataclasses import replace
from datetime import datetime
from typing import Any

from auth.errors import DuplicateAccountError, DuplicateUserError
from auth.models import Account, Session, TokenPurpose, User
from auth.secret_tokens import is_expired, utcnow

_USER_FIELDS = {f.name for f in dc_fields(User)} - {"id"}
_ACCOUNT_FIELDS = {f.name for f in dc_fields(Account)} - {"id"}
_SESSION_FIELDS = {f.name for f in dc_fields(Session)} - {"session_token"}


def _check_fields(allowed: set[str], updates: dict[str, Any]) -> None:
    unknown = set(updates) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {sorted(unknown)!r}")


class MemoryStore:
    """Dict-backed StoragePort.

    Usage:
        store = MemoryStore()
        engine = AuthEngine(config, store)
    """

    def __init__(self) -> None:
        self.users: dict[str, User] = {}
        self.accounts: dict[str, Account] = {}
        self.sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def create_user(self, user: User) -> User:
        async with self._lock:
            if self._find_user_by_email(user.email) is not None:
                raise DuplicateUserError()
            stored = replace(user, id=user.id or uuid.uuid4().hex, created_at=user.created_at or utcnow())
            self.users[stored.id] = stored
            return replace(stored)

    async def get_user(self, user_id: str) -> User | None:
        user = self.users.get(user_id)
        return replace(user) if user else None

    async def get_user_by_email(self, email: str) -> User | None:
        user = self._find_user_by_email(email)
        return replace(user) if user else None

    async def get_user_by_reset_token(self, token: str) -> User | None:
        for user in self.users.values():
            if user.reset_token == token and not is_expired(user.reset_token_expiry):
                return replace(user)
        return None

    async def get_user_by_verification_token(self, token: str) -> User | None:
        for user in self.users.values():
            if user.verification_token == token and not is_expired(user.verification_token_expiry):
                return replace(user)
        return None

    async def update_user(self, user_id: str, **fields: Any) -> User | None:
        _check_fields(_USER_FIELDS, fields)
        async with self._lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            if "email" in fields:
                other = self._find_user_by_email(fields["email"])
                if other is not None and other.id != user_id:
                    raise DuplicateUserError()
            self.users[user_id] = replace(user, **fields)
            return replace(self.users[user_id])

    async def delete_user(self, user_id: str) -> User | None:
        async with self._lock:
            user = self.users.pop(user_id, None)
            if user is None:
                return None
            self.accounts = {k: a for k, a in self.accounts.items() if a.user_id != user_id}
            self.sessions = {k: s for k, s in self.sessions.items() if s.user_id != user_id}
            return user

    async def consume_token(self, user_id: str, purpose: TokenPurpose, token: str, **fields: Any) -> User | None:
        _check_fields(_USER_FIELDS, fields)
        token_field = f"{purpose.value}_token"
        expiry_field = f"{purpose.value}_token_expiry"
        async with self._lock:
            user = self.users.get(user_id)
            if user is None or getattr(user, token_field) != token or is_expired(getattr(user, expiry_field)):
                return None
            self.users[user_id] = replace(user, **{token_field: None, expiry_field: None}, **fields)
            return replace(self.users[user_id])

    async def reset_credentials(
        self, user_id: str, reset_token: str, account_id: str, password_hash: str
    ) -> User | None:
        async with self._lock:
            user = self.users.get(user_id)
            account = self.accounts.get(account_id)
            if user is None or user.reset_token != reset_token or is_expired(user.reset_token_expiry):
                return None
            if account is None or account.user_id != user_id:
                return None
            self.accounts[account_id] = replace(account, password_hash=password_hash)
            self.users[user_id] = replace(user, reset_token=None, reset_token_expiry=None)
            return replace(self.users[user_id])

    def _find_user_by_email(self, email: str) -> User | None:
        for user in self.users.values():
            if user.email == email:
                return user
        return None

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def link_account(self, account: Account) -> Account:
        async with self._lock:
            self._check_account_pair(account)
            stored = replace(account, id=account.id or uuid.uuid4().hex, created_at=account.created_at or utcnow())
            self.accounts[stored.id] = stored
            return replace(stored)

    async def create_user_with_account(self, user: User, account: Account) -> tuple[User, Account]:
        async with self._lock:
            # Check both before writing either.
            if self._find_user_by_email(user.email) is not None:
                raise DuplicateUserError()
            self._check_account_pair(account)
            now = utcnow()
            stored_user = replace(user, id=user.id or uuid.uuid4().hex, created_at=user.created_at or now)
            stored_account = replace(
                account,
                id=account.id or uuid.uuid4().hex,
                user_id=stored_user.id,
                created_at=account.created_at or now,
            )
            self.users[stored_user.id] = stored_user
            self.accounts[stored_account.id] = stored_account
            return replace(stored_user), replace(stored_account)

    def _check_account_pair(self, account: Account) -> None:
        for existing in self.accounts.values():
            if (existing.provider, existing.provider_account_id) == (account.provider, account.provider_account_id):
                raise DuplicateAccountError()

    async def get_user_by_account(self, provider: str, provider_account_id: str) -> User | None:
        for account in self.accounts.values():
            if account.provider == provider and account.provider_account_id == provider_account_id:
                return await self.get_user(account.user_id)
        return None

    async def get_account_by_provider(self, user_id: str, provider: str) -> Account | None:
        for account in self.accounts.values():
            if account.user_id == user_id and account.provider == provider:
                return replace(account)
        return None

    async def update_account(self, account_id: str, **fields: Any) -> Account | None:
        _check_fields(_ACCOUNT_FIELDS, fields)
        async with self._lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            self.accounts[account_id] = replace(account, **fields)
            return replace(self.accounts[account_id])

    async def unlink_account(self, provider: str, provider_account_id: str) -> Account | None:
        async with self._lock:
            for key, account in self.accounts.items():
                if account.provider == provider and account.provider_account_id == provider_account_id:
                    return self.accounts.pop(key)
            return None

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, session: Session) -> Session:
        async with self._lock:
            if session.session_token in self.sessions:
                raise ValueError("Session token already exists")
            self.sessions[session.session_token] = replace(session)
            return replace(session)

    async def get_session_and_user(self, session_token: str) -> tuple[Session, User] | None:
        session = self.sessions.get(session_token)
        if session is None:
            return None
        user = self.users.get(session.user_id)
        if user is None:
            return None
        return replace(session), replace(user)

    async def get_session_by_refresh_token(self, refresh_token: str) -> Session | None:
        for session in self.sessions.values():
            if session.refresh_token == refresh_token and not is_expired(session.refresh_token_expires):
                return replace(session)
        return None

    async def update_session(self, session_token: str, **fields: Any) -> Session | None:
        _check_fields(_SESSION_FIELDS, fields)
        async with self._lock:
            session = self.sessions.get(session_token)
            if session is None:
                return None
            self.sessions[session_token] = replace(session, **fields)
            return replace(self.sessions[session_token])

    async def rotate_refresh_token(
        self,
        session_token: str,
        current_refresh_token: str,
        new_refresh_token: str,
        new_expires: datetime,
    ) -> Session | None:
        async with self._lock:
            session = self.sessions.get(session_token)
            if session is None or session.refresh_token != current_refresh_token:
                return None
            self.sessions[session_token] = replace(
                session, refresh_token=new_refresh_token, refresh_token_expires=new_expires
            )
            return replace(self.sessions[session_token])

    async def delete_session(self, session_token: str) -> Session | None:
        async with self._lock:
            return self.sessions.pop(session_token, None)

    async def delete_user_sessions(self, user_id: str) -> int:
        async with self._lock:
            doomed = [token for token, s in self.sessions.items() if s.user_id == user_id]
            for token in doomed:
                del self.sessions[token]
            return len(doomed)
