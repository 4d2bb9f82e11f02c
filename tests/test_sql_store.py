"""
tests/test_sql_store.py -- SQLStore against a real SQLite file.

A file database (not :memory:) under tmp_path lets the worker threads used
by asyncio.to_thread open independent connections, which is what the
compare-and-swap tests need to exercise real concurrent UPDATEs.

Covers:
  - User uniqueness, timestamps come back timezone-aware
  - Account uniqueness on (provider, provider_account_id)
  - consume_token: single use, expired tokens neither found nor consumed
  - rotate_refresh_token: concurrent rotations, exactly one winner
  - reset_credentials and create_user_with_account roll back both rows together
  - delete_session: concurrent deletes, exactly one gets the row
  - delete_user removes accounts and sessions
  - Full engine flow over SQLStore
"""

from __future__ import annotations

import asyncio

import pytest

from auth.config import AuthConfig
from auth.engine import AuthEngine
from auth.errors import DuplicateAccountError, DuplicateUserError
from auth.models import Account, AccountKind, Session, TokenPurpose, User
from auth.secret_tokens import expiry_from_now, expiry_in_seconds, generate_token
from auth.store import SQLStore


@pytest.fixture
def store(tmp_path):
    s = SQLStore(f"sqlite:///{tmp_path / 'auth.db'}")
    yield s
    s.close()


def test_create_and_fetch_user(store):
    async def scenario():
        created = await store.create_user(User(email="alice@example.com", name="Alice"))
        return created, await store.get_user(created.id), await store.get_user_by_email("alice@example.com")

    created, by_id, by_email = asyncio.run(scenario())
    assert created.id
    assert by_id == created
    assert by_email.id == created.id
    assert created.created_at.tzinfo is not None


def test_duplicate_email_rejected(store):
    async def scenario():
        await store.create_user(User(email="alice@example.com"))
        await store.create_user(User(email="alice@example.com"))

    with pytest.raises(DuplicateUserError):
        asyncio.run(scenario())


def test_update_unknown_user_and_unknown_field(store):
    async def scenario():
        assert await store.update_user("missing", name="x") is None
        user = await store.create_user(User(email="alice@example.com"))
        with pytest.raises(ValueError):
            await store.update_user(user.id, role="admin")

    asyncio.run(scenario())


def test_account_pair_is_unique(store):
    async def scenario():
        alice = await store.create_user(User(email="alice@example.com"))
        bob = await store.create_user(User(email="bob@example.com"))
        await store.link_account(Account(user_id=alice.id, kind=AccountKind.oauth, provider="github", provider_account_id="42"))
        found = await store.get_user_by_account("github", "42")
        with pytest.raises(DuplicateAccountError):
            await store.link_account(
                Account(user_id=bob.id, kind=AccountKind.oauth, provider="github", provider_account_id="42")
            )
        return alice, found

    alice, found = asyncio.run(scenario())
    assert found.id == alice.id


def test_consume_token_is_single_use(store):
    async def scenario():
        token = generate_token()
        user = await store.create_user(
            User(email="alice@example.com", reset_token=token, reset_token_expiry=expiry_from_now(1))
        )
        found = await store.get_user_by_reset_token(token)
        first = await store.consume_token(user.id, TokenPurpose.reset, token)
        second = await store.consume_token(user.id, TokenPurpose.reset, token)
        after = await store.get_user_by_reset_token(token)
        return user, found, first, second, after

    user, found, first, second, after = asyncio.run(scenario())
    assert found.id == user.id
    assert first.reset_token is None and first.reset_token_expiry is None
    assert second is None
    assert after is None


def test_consume_token_applies_extra_fields(store):
    async def scenario():
        token = generate_token()
        user = await store.create_user(
            User(email="alice@example.com", verification_token=token, verification_token_expiry=expiry_from_now(24))
        )
        stamp = expiry_in_seconds(0)
        return stamp, await store.consume_token(user.id, TokenPurpose.verification, token, email_verified=stamp)

    stamp, verified = asyncio.run(scenario())
    assert verified.verification_token is None
    assert verified.email_verified == stamp


def test_expired_tokens_are_invisible(store):
    async def scenario():
        token = generate_token()
        user = await store.create_user(
            User(email="alice@example.com", reset_token=token, reset_token_expiry=expiry_in_seconds(-5))
        )
        return (
            await store.get_user_by_reset_token(token),
            await store.consume_token(user.id, TokenPurpose.reset, token),
        )

    assert asyncio.run(scenario()) == (None, None)


def test_concurrent_rotation_has_one_winner(store):
    async def scenario():
        user = await store.create_user(User(email="alice@example.com"))
        current = generate_token()
        session = await store.create_session(
            Session(
                session_token=generate_token(),
                user_id=user.id,
                expires=expiry_from_now(1),
                refresh_token=current,
                refresh_token_expires=expiry_from_now(1),
            )
        )
        candidates = [generate_token() for _ in range(6)]
        results = await asyncio.gather(
            *(
                store.rotate_refresh_token(session.session_token, current, new, expiry_from_now(1))
                for new in candidates
            )
        )
        return candidates, results, await store.get_session_by_refresh_token(current)

    candidates, results, stale = asyncio.run(scenario())
    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0].refresh_token in candidates
    assert stale is None


def _credential_account(user_id: str, password_hash: str = "old-hash") -> Account:
    return Account(
        user_id=user_id,
        kind=AccountKind.credentials,
        provider="credentials",
        provider_account_id=user_id,
        password_hash=password_hash,
    )


def test_reset_credentials_writes_token_and_hash_together(store):
    async def scenario():
        token = generate_token()
        user = await store.create_user(
            User(email="alice.com", reset_token=token, reset_token_expiry=expiry_from_now(1))
        )
        account = await store.link_account(_credential_account(user.id))
        reset = await store.reset_credentials(user.id, token, account.id, "new-hash")
        replay = await store.reset_credentials(user.id, token, account.id, "other-hash")
        return reset, replay, await store.get_account_by_provider(user.id, "credentials")

    reset, replay, account = asyncio.run(scenario())
    assert reset.reset_token is None and reset.reset_token_expiry is None
    assert replay is None
    assert account.password_hash == "new-hash"


def test_reset_credentials_rolls_back_when_account_is_missing(store):
    async def scenario():
        token = generate_token()
        alice = await store.create_user(
            User(email="alice.com", reset_token=token, reset_token_expiry=expiry_from_now(1))
        )
        bob = await store.create_user(User(email="bob.com"))
        bobs_account = await store.link_account(_credential_account(bob.id))
        # An account that belongs to someone else does not match either.
        outcome = await store.reset_credentials(alice.id, token, bobs_account.id, "new-hash")
        return (
            outcome,
            await store.get_user_by_reset_token(token),
            await store.get_account_by_provider(bob.id, "credentials"),
        )

    outcome, still_pending, bobs_account = asyncio.run(scenario())
    assert outcome is None
    assert still_pending.email == "alice.com"
    assert bobs_account.password_hash == "old-hash"


def test_create_user_with_account(store):
    async def scenario():
        user, account = await store.create_user_with_account(
            User(id="u1", email="alice.com"), _credential_account("u1")
        )
        return user, account, await store.get_user_by_account("credentials", "u1")

    user, account, found = asyncio.run(scenario())
    assert account.user_id == user.id == "u1"
    assert account.id
    assert found == user


def test_create_user_with_account_rolls_back_on_account_collision(store):
    async def scenario():
        taken = await store.create_user(User(email="taken.com"))
        await store.link_account(
            Account(user_id=taken.id, kind=AccountKind.oauth, provider="github", provider_account_id="42")
        )
        with pytest.raises(DuplicateAccountError):
            await store.create_user_with_account(
                User(email="alice.com"),
                Account(user_id="", kind=AccountKind.oauth, provider="github", provider_account_id="42"),
            )
        return await store.get_user_by_email("alice.com")

    assert asyncio.run(scenario()) is None


def test_create_user_with_account_rejects_taken_email(store):
    async def scenario():
        await store.create_user(User(email="alice.com"))
        with pytest.raises(DuplicateUserError):
            await store.create_user_with_account(User(id="u2", email="alice.com"), _credential_account("u2"))
        return await store.get_user_by_account("credentials", "u2")

    assert asyncio.run(scenario()) is None


def test_concurrent_session_deletes_have_one_winner(store):
    async def scenario():
        user = await store.create_user(User(email="alice.com"))
        token = generate_token()
        await store.create_session(Session(session_token=token, user_id=user.id, expires=expiry_from_now(1)))
        results = await asyncio.gather(*(store.delete_session(token) for _ in range(4)))
        return token, results, await store.delete_session(token)

    token, results, again = asyncio.run(scenario())
    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0].session_token == token
    assert again is None


def test_delete_user_removes_accounts_and_sessions(store):
    async def scenario():
        user = await store.create_user(User(email="alice@example.com"))
        await store.link_account(
            Account(user_id=user.id, kind=AccountKind.credentials, provider="credentials", provider_account_id=user.id)
        )
        token = generate_token()
        await store.create_session(Session(session_token=token, user_id=user.id, expires=expiry_from_now(1)))
        deleted = await store.delete_user(user.id)
        return (
            deleted,
            await store.get_user_by_account("credentials", user.id),
            await store.get_session_and_user(token),
            await store.delete_user(user.id),
        )

    deleted, account_user, session, again = asyncio.run(scenario())
    assert deleted.email == "alice@example.com"
    assert account_user is None
    assert session is None
    assert again is None


def test_delete_user_sessions_counts_rows(store):
    async def scenario():
        user = await store.create_user(User(email="alice@example.com"))
        for _ in range(3):
            await store.create_session(Session(session_token=generate_token(), user_id=user.id, expires=expiry_from_now(1)))
        return await store.delete_user_sessions(user.id), await store.delete_user_sessions(user.id)

    assert asyncio.run(scenario()) == (3, 0)


def test_engine_flow_over_sql_store(store):
    async def scenario():
        engine = AuthEngine(AuthConfig(secret="s" * 32, password_cost=4, refresh_token_enabled=True), store)
        registered = await engine.register("alice@example.com", "Passw0rd!")
        verified = await engine.verify_email(registered.verification_token)
        reset = await engine.request_password_reset("alice@example.com")
        await engine.reset_password(reset.reset_token, "N3wPassw0rd!")
        signed_in = await engine.sign_in("alice@example.com", "N3wPassw0rd!")
        refreshed = await engine.refresh_access_token(signed_in.session.refresh_token)
        return verified, signed_in, refreshed

    verified, signed_in, refreshed = asyncio.run(scenario())
    assert verified.email_verified is not None
    assert refreshed.session.session_token == signed_in.session.session_token
    assert refreshed.refresh_token != signed_in.session.refresh_token
