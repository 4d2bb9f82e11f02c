"""
tests/test_engine_sessions.py -- Refresh rotation, sign-out and session lookup.

Covers:
  - Refresh rotates the token; the old one stops working
  - Two concurrent redemptions of one refresh token: exactly one succeeds
  - Refresh disabled, unknown and expired tokens
  - sign_out / sign_out_all_devices; concurrent sign-outs fire one event
  - get_session rejects tokens for deleted users and foreign signatures
  - Database strategy: session rows, expiry deletes the row
"""

from __future__ import annotations

import asyncio

import pytest

from auth import tokens
from auth.errors import InvalidOrExpiredTokenError, RefreshTokensDisabledError, SessionNotFoundError, ValidationError
from auth.hooks import Events
from auth.secret_tokens import expiry_in_seconds

# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


def test_refresh_rotates_and_invalidates_old_token(make_engine):
    async def scenario():
        engine = make_engine(refresh_token_enabled=True)
        registered = await engine.register("alice@example.com", "Passw0rd!")
        old = registered.session.refresh_token
        refreshed = await engine.refresh_access_token(old)
        with pytest.raises(InvalidOrExpiredTokenError):
            await engine.refresh_access_token(old)
        session = await engine.get_session(refreshed.token)
        again = await engine.refresh_access_token(refreshed.refresh_token)
        return registered, refreshed, session, again

    registered, refreshed, session, again = asyncio.run(scenario())
    assert refreshed.refresh_token != registered.session.refresh_token
    assert refreshed.session.session_token == registered.session.session_token
    assert refreshed.session.refresh_token == refreshed.refresh_token
    assert session.user.id == registered.user.id
    assert again.refresh_token != refreshed.refresh_token


def test_concurrent_refresh_succeeds_exactly_once(make_engine):
    async def scenario():
        engine = make_engine(refresh_token_enabled=True)
        registered = await engine.register("alice@example.com", "Passw0rd!")
        token = registered.session.refresh_token
        return await asyncio.gather(
            *(engine.refresh_access_token(token) for _ in range(5)),
            return_exceptions=True,
        )

    outcomes = asyncio.run(scenario())
    successes = [o for o in outcomes if not isinstance(o, Exception)]
    failures = [o for o in outcomes if isinstance(o, Exception)]
    assert len(successes) == 1
    assert all(isinstance(f, InvalidOrExpiredTokenError) for f in failures)


def test_refresh_disabled(make_engine):
    async def scenario():
        await make_engine().refresh_access_token("anything")

    with pytest.raises(RefreshTokensDisabledError):
        asyncio.run(scenario())


def test_refresh_requires_token(make_engine):
    async def scenario():
        await make_engine(refresh_token_enabled=True).refresh_access_token("")

    with pytest.raises(ValidationError):
        asyncio.run(scenario())


def test_refresh_unknown_token(make_engine):
    async def scenario():
        await make_engine(refresh_token_enabled=True).refresh_access_token("f" * 64)

    with pytest.raises(InvalidOrExpiredTokenError):
        asyncio.run(scenario())


def test_refresh_expired_token(make_engine):
    async def scenario():
        engine = make_engine(refresh_token_enabled=True)
        registered = await engine.register("alice@example.com", "Passw0rd!")
        await engine.store.update_session(
            registered.session.session_token, refresh_token_expires=expiry_in_seconds(-1)
        )
        await engine.refresh_access_token(registered.session.refresh_token)

    with pytest.raises(InvalidOrExpiredTokenError):
        asyncio.run(scenario())


def test_refresh_for_deleted_user(make_engine):
    async def scenario():
        engine = make_engine(refresh_token_enabled=True)
        registered = await engine.register("alice@example.com", "Passw0rd!")
        token = registered.session.refresh_token
        # Leave the session row behind so the engine sees an orphan.
        engine.store.users.clear()
        await engine.refresh_access_token(token)

    with pytest.raises(InvalidOrExpiredTokenError):
        asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Sign-out
# ---------------------------------------------------------------------------


def test_sign_out_deletes_session_and_fires_event(make_engine):
    signed_out = []

    async def scenario():
        engine = make_engine(session_strategy="database", events=Events(sign_out=signed_out.append))
        registered = await engine.register("alice@example.com", "Passw0rd!")
        token = registered.session.session_token
        removed = await engine.sign_out(token)
        with pytest.raises(SessionNotFoundError):
            await engine.sign_out(token)
        return engine, removed

    engine, removed = asyncio.run(scenario())
    assert engine.store.sessions == {}
    assert signed_out == [removed]


def test_concurrent_sign_outs_fire_the_event_once(make_engine):
    signed_out = []

    async def scenario():
        engine = make_engine(session_strategy="database", events=Events(sign_out=signed_out.append))
        registered = await engine.register("alice@example.com", "Passw0rd!")
        token = registered.session.session_token
        return await asyncio.gather(engine.sign_out(token), engine.sign_out(token), return_exceptions=True)

    outcomes = asyncio.run(scenario())
    assert sum(isinstance(o, SessionNotFoundError) for o in outcomes) == 1
    assert len(signed_out) == 1


def test_sign_out_all_devices_only_touches_that_user(make_engine):
    async def scenario():
        engine = make_engine(session_strategy="database")
        alice = await engine.register("alice@example.com", "Passw0rd!")
        await engine.sign_in("alice@example.com", "Passw0rd!")
        await engine.sign_in("alice@example.com", "Passw0rd!")
        bob = await engine.register("bob@example.com", "Passw0rd!")
        deleted = await engine.sign_out_all_devices(alice.user.id)
        return engine, bob, deleted

    engine, bob, deleted = asyncio.run(scenario())
    assert deleted == 3
    assert list(engine.store.sessions) == [bob.session.session_token]


def test_sign_out_all_devices_with_no_sessions(make_engine):
    async def scenario():
        engine = make_engine()
        registered = await engine.register("alice@example.com", "Passw0rd!")
        return await engine.sign_out_all_devices(registered.user.id)

    assert asyncio.run(scenario()) == 0


# ---------------------------------------------------------------------------
# Session lookup
# ---------------------------------------------------------------------------


def test_get_session_for_deleted_user_is_none(make_engine):
    async def scenario():
        engine = make_engine()
        registered = await engine.register("alice@example.com", "Passw0rd!")
        await engine.store.delete_user(registered.user.id)
        return await engine.get_session(registered.token)

    assert asyncio.run(scenario()) is None


def test_get_session_rejects_foreign_and_empty_tokens(make_engine):
    forged = tokens.encode({"sub": "someone"}, "a-completely-different-secret-value!!", 60)

    async def scenario():
        engine = make_engine()
        return await engine.get_session(forged), await engine.get_session("")

    assert asyncio.run(scenario()) == (None, None)


def test_get_session_reports_token_expiry(make_engine):
    async def scenario():
        engine = make_engine(session_max_age=3600)
        registered = await engine.register("alice@example.com", "Passw0rd!")
        return await engine.get_session(registered.token)

    session = asyncio.run(scenario())
    assert session.expires.timestamp() == session.claims["exp"]
    assert session.claims["exp"] - session.claims["iat"] == 3600


def test_database_strategy_persists_sessions(make_engine):
    async def scenario():
        engine = make_engine(session_strategy="database")
        registered = await engine.register("alice@example.com", "Passw0rd!")
        view = await engine.get_database_session(registered.session.session_token)
        return registered, view

    registered, view = asyncio.run(scenario())
    assert registered.session is not None
    # No refresh token unless refresh tokens are enabled.
    assert registered.session.refresh_token is None
    assert view.user.id == registered.user.id


def test_expired_database_session_is_deleted(make_engine):
    async def scenario():
        engine = make_engine(session_strategy="database")
        registered = await engine.register("alice@example.com", "Passw0rd!")
        token = registered.session.session_token
        await engine.store.update_session(token, expires=expiry_in_seconds(-1))
        view = await engine.get_database_session(token)
        return engine, token, view

    engine, token, view = asyncio.run(scenario())
    assert view is None
    assert token not in engine.store.sessions


def test_unknown_database_session_is_none(make_engine):
    async def scenario():
        return await make_engine(session_strategy="database").get_database_session("nope")

    assert asyncio.run(scenario()) is None
