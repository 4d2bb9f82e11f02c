"""
auth/store.py -- SQLAlchemy Core StoragePort.

Pattern: Repository + Data Mapper. SQLStore is the repository; _row_to_user /
_row_to_account / _row_to_session are the mappers. The engine never touches
SQL directly.

Async bridge:
  SQLAlchemy Core runs on a synchronous engine. Every public method is a
  coroutine that hands its unit of work to a worker thread (asyncio.to_thread)
  so blocking I/O never stalls the event loop. Each unit of work runs inside
  one engine.begin() transaction.

Security:
  All queries use bound parameters. No f-strings in SQL.

  consume_token, reset_credentials and rotate_refresh_token are conditional
  UPDATEs (WHERE token = :presented). The database applies them atomically,
  so of two concurrent redemptions of the same token exactly one sees
  rowcount == 1. reset_credentials and create_user_with_account write both
  rows inside the same transaction and roll back together.

  Token lookups exclude expired rows in the WHERE clause (the engine checks
  again).

Timestamps are stored as DateTime(timezone=True). SQLite drops the offset,
so the mappers re-attach UTC on the way out.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from auth.errors import DuplicateAccountError, DuplicateUserError
from auth.models import Account, AccountKind, Session, TokenPurpose, User
from auth.secret_tokens import as_utc, utcnow

logger = logging.getLogger("warden.auth.store")

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("name", String(255)),
    Column("email_verified", DateTime(timezone=True)),
    Column("image", Text),
    Column("reset_token", String(128), unique=True),
    Column("reset_token_expiry", DateTime(timezone=True)),
    Column("verification_token", String(128), unique=True),
    Column("verification_token_expiry", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("kind", String(20), nullable=False),
    Column("provider", String(64), nullable=False),
    Column("provider_account_id", String(255), nullable=False),
    Column("password_hash", Text),  # NULL for OAuth accounts
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("provider", "provider_account_id", name="uq_accounts_provider_account"),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("session_token", String(128), primary_key=True),
    Column("user_id", String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("expires", DateTime(timezone=True), nullable=False),
    Column("refresh_token", String(128), unique=True),
    Column("refresh_token_expires", DateTime(timezone=True)),
)

_USER_COLUMNS = {c.name for c in _users.columns} - {"id"}
_ACCOUNT_COLUMNS = {c.name for c in _accounts.columns} - {"id"}
_SESSION_COLUMNS = {c.name for c in _sessions.columns} - {"session_token"}

_TOKEN_COLUMNS = {
    TokenPurpose.reset: (_users.c.reset_token, _users.c.reset_token_expiry),
    TokenPurpose.verification: (_users.c.verification_token, _users.c.verification_token_expiry),
}


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys on every new SQLite connection.

    WAL lets readers proceed while a write is in progress. SQLite leaves
    foreign-key enforcement off unless asked, per connection, so the
    ON DELETE CASCADE clauses depend on this pragma.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _check_fields(allowed: set[str], updates: dict[str, Any]) -> None:
    """Reject unknown column names before they reach a statement."""
    unknown = set(updates) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {sorted(unknown)!r}")


class _NothingToApply(Exception):
    """Raised inside a unit of work to roll back a conditional write that lost."""


def _user_values(user: User) -> dict[str, Any]:
    return {
        "id": user.id or uuid.uuid4().hex,
        "email": user.email,
        "name": user.name,
        "email_verified": user.email_verified,
        "image": user.image,
        "reset_token": user.reset_token,
        "reset_token_expiry": user.reset_token_expiry,
        "verification_token": user.verification_token,
        "verification_token_expiry": user.verification_token_expiry,
        "created_at": user.created_at or utcnow(),
    }


def _account_values(account: Account) -> dict[str, Any]:
    return {
        "id": account.id or uuid.uuid4().hex,
        "user_id": account.user_id,
        "kind": account.kind.value,
        "provider": account.provider,
        "provider_account_id": account.provider_account_id,
        "password_hash": account.password_hash,
        "created_at": account.created_at or utcnow(),
    }


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SQLStore:
    """StoragePort backed by any SQLAlchemy-supported database.

    Usage:
        store = SQLStore("sqlite:///warden_auth.db")
        engine = AuthEngine(config, store)
        ...
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        engine_kwargs: dict = {}
        is_sqlite = db_url.startswith("sqlite")
        if is_sqlite:
            connect_args["check_same_thread"] = False
            if db_url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise each worker thread would
                # see its own empty in-memory database.
                engine_kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if is_sqlite:
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    async def _run(self, work: Callable[[Connection], T]) -> T:
        def _in_transaction() -> T:
            with self.engine.begin() as conn:
                return work(conn)

        return await asyncio.to_thread(_in_transaction)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def create_user(self, user: User) -> User:
        """Insert a new user. Raises DuplicateUserError if the email is taken."""
        values = _user_values(user)

        def work(conn: Connection) -> User:
            conn.execute(_users.insert().values(**values))
            return _row_to_user(conn.execute(_users.select().where(_users.c.id == values["id"])).one())

        try:
            return await self._run(work)
        except IntegrityError as exc:
            raise DuplicateUserError() from exc

    async def get_user(self, user_id: str) -> User | None:
        return await self._fetch_user(_users.c.id == user_id)

    async def get_user_by_email(self, email: str) -> User | None:
        return await self._fetch_user(_users.c.email == email)

    async def get_user_by_reset_token(self, token: str) -> User | None:
        return await self._fetch_user((_users.c.reset_token == token) & (_users.c.reset_token_expiry > utcnow()))

    async def get_user_by_verification_token(self, token: str) -> User | None:
        return await self._fetch_user(
            (_users.c.verification_token == token) & (_users.c.verification_token_expiry > utcnow())
        )

    async def update_user(self, user_id: str, **fields: Any) -> User | None:
        """Update mutable user columns. Returns None if user_id was not found."""
        _check_fields(_USER_COLUMNS, fields)

        def work(conn: Connection) -> User | None:
            if fields:
                result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
                if result.rowcount == 0:
                    return None
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            return _row_to_user(row) if row is not None else None

        try:
            return await self._run(work)
        except IntegrityError as exc:
            raise DuplicateUserError() from exc

    async def delete_user(self, user_id: str) -> User | None:
        """Permanently delete a user together with its accounts and sessions."""

        def work(conn: Connection) -> User | None:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            if row is None:
                return None
            conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            conn.execute(_accounts.delete().where(_accounts.c.user_id == user_id))
            conn.execute(_users.delete().where(_users.c.id == user_id))
            return _row_to_user(row)

        return await self._run(work)

    async def consume_token(self, user_id: str, purpose: TokenPurpose, token: str, **fields: Any) -> User | None:
        """Clear a reset/verification token only if it is still the current one."""
        _check_fields(_USER_COLUMNS, fields)
        token_col, expiry_col = _TOKEN_COLUMNS[purpose]
        values = {token_col.name: None, expiry_col.name: None, **fields}

        def work(conn: Connection) -> User | None:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (token_col == token) & (expiry_col > utcnow()))
                .values(**values)
            )
            if result.rowcount != 1:
                return None
            return _row_to_user(conn.execute(_users.select().where(_users.c.id == user_id)).one())

        return await self._run(work)

    async def reset_credentials(
        self, user_id: str, reset_token: str, account_id: str, password_hash: str
    ) -> User | None:
        """Consume the reset token and replace the password hash in one transaction."""

        def work(conn: Connection) -> User:
            consumed = conn.execute(
                _users.update()
                .where(
                    (_users.c.id == user_id)
                    & (_users.c.reset_token == reset_token)
                    & (_users.c.reset_token_expiry > utcnow())
                )
                .values(reset_token=None, reset_token_expiry=None)
            )
            if consumed.rowcount != 1:
                raise _NothingToApply()
            updated = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & (_accounts.c.user_id == user_id))
                .values(password_hash=password_hash)
            )
            if updated.rowcount != 1:
                # Raising rolls back the token consumption above.
                raise _NothingToApply()
            return _row_to_user(conn.execute(_users.select().where(_users.c.id == user_id)).one())

        try:
            return await self._run(work)
        except _NothingToApply:
            return None

    async def _fetch_user(self, clause) -> User | None:
        def work(conn: Connection) -> User | None:
            row = conn.execute(_users.select().where(clause)).fetchone()
            return _row_to_user(row) if row is not None else None

        return await self._run(work)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def link_account(self, account: Account) -> Account:
        """Insert an account link. Raises DuplicateAccountError on a taken (provider, id) pair."""
        values = _account_values(account)

        def work(conn: Connection) -> Account:
            conn.execute(_accounts.insert().values(**values))
            return _row_to_account(conn.execute(_accounts.select().where(_accounts.c.id == values["id"])).one())

        try:
            return await self._run(work)
        except IntegrityError as exc:
            raise DuplicateAccountError() from exc

    async def create_user_with_account(self, user: User, account: Account) -> tuple[User, Account]:
        """Insert a user and its first account. A collision on either rolls back both."""
        user_values = _user_values(user)
        account_values = _account_values(account)
        account_values["user_id"] = user_values["id"]

        def work(conn: Connection) -> tuple[User, Account]:
            try:
                conn.execute(_users.insert().values(**user_values))
            except IntegrityError as exc:
                raise DuplicateUserError() from exc
            try:
                conn.execute(_accounts.insert().values(**account_values))
            except IntegrityError as exc:
                raise DuplicateAccountError() from exc
            return (
                _row_to_user(conn.execute(_users.select().where(_users.c.id == user_values["id"])).one()),
                _row_to_account(conn.execute(_accounts.select().where(_accounts.c.id == account_values["id"])).one()),
            )

        return await self._run(work)

    async def get_user_by_account(self, provider: str, provider_account_id: str) -> User | None:
        def work(conn: Connection) -> User | None:
            row = conn.execute(
                _users.select()
                .select_from(_users.join(_accounts, _accounts.c.user_id == _users.c.id))
                .where((_accounts.c.provider == provider) & (_accounts.c.provider_account_id == provider_account_id))
            ).fetchone()
            return _row_to_user(row) if row is not None else None

        return await self._run(work)

    async def get_account_by_provider(self, user_id: str, provider: str) -> Account | None:
        def work(conn: Connection) -> Account | None:
            row = conn.execute(
                _accounts.select()
                .where((_accounts.c.user_id == user_id) & (_accounts.c.provider == provider))
                .order_by(_accounts.c.created_at)
            ).fetchone()
            return _row_to_account(row) if row is not None else None

        return await self._run(work)

    async def update_account(self, account_id: str, **fields: Any) -> Account | None:
        _check_fields(_ACCOUNT_COLUMNS, fields)
        if isinstance(fields.get("kind"), AccountKind):
            fields["kind"] = fields["kind"].value

        def work(conn: Connection) -> Account | None:
            if fields:
                conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
            return _row_to_account(row) if row is not None else None

        return await self._run(work)

    async def unlink_account(self, provider: str, provider_account_id: str) -> Account | None:
        clause = (_accounts.c.provider == provider) & (_accounts.c.provider_account_id == provider_account_id)

        def work(conn: Connection) -> Account | None:
            row = conn.execute(_accounts.select().where(clause)).fetchone()
            if row is None:
                return None
            conn.execute(_accounts.delete().where(clause))
            return _row_to_account(row)

        return await self._run(work)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, session: Session) -> Session:
        def work(conn: Connection) -> Session:
            conn.execute(
                _sessions.insert().values(
                    session_token=session.session_token,
                    user_id=session.user_id,
                    expires=session.expires,
                    refresh_token=session.refresh_token,
                    refresh_token_expires=session.refresh_token_expires,
                )
            )
            return _row_to_session(
                conn.execute(_sessions.select().where(_sessions.c.session_token == session.session_token)).one()
            )

        return await self._run(work)

    async def get_session_and_user(self, session_token: str) -> tuple[Session, User] | None:
        def work(conn: Connection) -> tuple[Session, User] | None:
            session_row = conn.execute(_sessions.select().where(_sessions.c.session_token == session_token)).fetchone()
            if session_row is None:
                return None
            user_row = conn.execute(_users.select().where(_users.c.id == session_row.user_id)).fetchone()
            if user_row is None:
                return None
            return _row_to_session(session_row), _row_to_user(user_row)

        return await self._run(work)

    async def get_session_by_refresh_token(self, refresh_token: str) -> Session | None:
        def work(conn: Connection) -> Session | None:
            row = conn.execute(
                _sessions.select().where(
                    (_sessions.c.refresh_token == refresh_token) & (_sessions.c.refresh_token_expires > utcnow())
                )
            ).fetchone()
            return _row_to_session(row) if row is not None else None

        return await self._run(work)

    async def update_session(self, session_token: str, **fields: Any) -> Session | None:
        _check_fields(_SESSION_COLUMNS, fields)

        def work(conn: Connection) -> Session | None:
            if fields:
                conn.execute(_sessions.update().where(_sessions.c.session_token == session_token).values(**fields))
            row = conn.execute(_sessions.select().where(_sessions.c.session_token == session_token)).fetchone()
            return _row_to_session(row) if row is not None else None

        return await self._run(work)

    async def rotate_refresh_token(
        self,
        session_token: str,
        current_refresh_token: str,
        new_refresh_token: str,
        new_expires: datetime,
    ) -> Session | None:
        """Compare-and-swap the refresh token. None if another caller got there first."""

        def work(conn: Connection) -> Session | None:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.session_token == session_token)
                    & (_sessions.c.refresh_token == current_refresh_token)
                )
                .values(refresh_token=new_refresh_token, refresh_token_expires=new_expires)
            )
            if result.rowcount != 1:
                return None
            return _row_to_session(
                conn.execute(_sessions.select().where(_sessions.c.session_token == session_token)).one()
            )

        return await self._run(work)

    async def delete_session(self, session_token: str) -> Session | None:
        """Delete a session and return it. Of two concurrent deletes only one gets the row."""
        clause = _sessions.c.session_token == session_token

        def work(conn: Connection) -> Session | None:
            if conn.dialect.delete_returning:
                row = conn.execute(_sessions.delete().where(clause).returning(*_sessions.c)).first()
                return _row_to_session(row) if row is not None else None
            row = conn.execute(_sessions.select().where(clause)).fetchone()
            if row is None:
                return None
            if conn.execute(_sessions.delete().where(clause)).rowcount != 1:
                return None
            return _row_to_session(row)

        return await self._run(work)

    async def delete_user_sessions(self, user_id: str) -> int:
        def work(conn: Connection) -> int:
            return conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id)).rowcount

        return await self._run(work)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _aware(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        email_verified=_aware(row.email_verified),
        image=row.image,
        reset_token=row.reset_token,
        reset_token_expiry=_aware(row.reset_token_expiry),
        verification_token=row.verification_token,
        verification_token_expiry=_aware(row.verification_token_expiry),
        created_at=_aware(row.created_at),
    )


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        user_id=row.user_id,
        kind=AccountKind(row.kind),
        provider=row.provider,
        provider_account_id=row.provider_account_id,
        password_hash=row.password_hash,
        created_at=_aware(row.created_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        session_token=row.session_token,
        user_id=row.user_id,
        expires=_aware(row.expires),
        refresh_token=row.refresh_token,
        refresh_token_expires=_aware(row.refresh_token_expires),
    )
