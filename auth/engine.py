"""
auth/engine.py -- The authentication orchestration engine.

AuthEngine composes the primitives (auth.secret_tokens, auth.passwords,
auth.tokens) with the injected ports into the stateful flows: registration,
credential sign-in, password reset, email verification, refresh-token
rotation, session invalidation and OAuth2 sign-in.

The engine holds no mutable state of its own; every operation is a short,
request-scoped sequence of StoragePort calls and is safe to run concurrently
from any number of callers.

Failure policy:
  - Missing/malformed input raises ValidationError before any I/O.
  - Storage and provider exceptions propagate unchanged; nothing is retried.
  - Credential and reset flows never reveal WHICH check failed. Unknown email
    and wrong password both raise InvalidCredentialsError, and both pay for a
    full bcrypt verification [C1].
  - Single-use tokens are consumed through compare-and-swap port operations,
    so two concurrent redemptions of one token cannot both succeed.
  - Writes that must land together (user plus first account, reset token plus
    new password hash) go through a single port operation, so a storage
    failure leaves nothing half-applied.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import uuid
from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from auth import passwords, tokens
from auth.config import AuthConfig
from auth.errors import (
    CsrfStateMismatchError,
    DuplicateUserError,
    EmailAlreadyVerifiedError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    OAuthProfileError,
    ProviderNotFoundError,
    RefreshTokensDisabledError,
    SessionNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from auth.hooks import fire, shape
from auth.models import (
    CREDENTIALS_PROVIDER,
    Account,
    AccountKind,
    AuthorizationRequest,
    AuthResult,
    AuthSession,
    OAuthResult,
    PasswordResetRequest,
    RefreshResult,
    RegisterResult,
    Session,
    TokenPurpose,
    User,
    VerificationRequest,
)
from auth.ports import IdentityProviderPort, Provider, StoragePort
from auth.secret_tokens import as_utc, expiry_from_now, expiry_in_seconds, generate_token, is_expired, utcnow

logger = logging.getLogger("warden.auth.engine")

RESET_TOKEN_HOURS = 1
VERIFICATION_TOKEN_HOURS = 24


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _require(**values: Any) -> None:
    """Raise ValidationError naming every empty argument."""
    missing = [name.replace("_", " ") for name, value in values.items() if not value]
    if missing:
        label = " and ".join(missing)
        verb = "is" if len(missing) == 1 else "are"
        raise ValidationError(f"{label[0].upper()}{label[1:]} {verb} required")


def _check_email(email: str) -> None:
    local, sep, domain = email.partition("@")
    if not sep or not local or not domain:
        raise ValidationError("Email address is malformed")


def _check_password(password: str) -> None:
    if passwords.exceeds_bcrypt_limit(password):
        raise ValidationError(f"Password must be at most {passwords.MAX_PASSWORD_BYTES} bytes")


class AuthEngine:
    """Stateless orchestration over a StoragePort and a set of providers.

    Usage:
        engine = AuthEngine(AuthConfig(secret=...), SQLStore(), providers=[CredentialsProvider()])
        result = await engine.register("alice@example.com", "Passw0rd!")
        session = await engine.get_session(result.token)
    """

    def __init__(self, config: AuthConfig, store: StoragePort, providers: Sequence[Provider] = ()) -> None:
        self.config = config
        self.store = store
        self._providers: dict[str, Provider] = {}
        for provider in providers:
            if provider.id in self._providers:
                raise ValueError(f"Duplicate provider id: {provider.id!r}")
            self._providers[provider.id] = provider

    @property
    def providers(self) -> list[Provider]:
        return list(self._providers.values())

    # ------------------------------------------------------------------
    # Primitives bound to this deployment's configuration
    # ------------------------------------------------------------------

    async def hash_password(self, plain: str) -> str:
        # bcrypt is CPU-bound; keep it off the event loop.
        return await asyncio.to_thread(passwords.hash_password, plain, self.config.password_cost)

    async def verify_password(self, plain: str, hashed: str) -> bool:
        return await asyncio.to_thread(passwords.verify_password, plain, hashed)

    async def issue_token(self, user: User) -> str:
        """Sign a token for user after running the jwt callback over its claims."""
        claims: dict[str, Any] = {"sub": user.id, "email": user.email}
        if user.name:
            claims["name"] = user.name
        claims = await shape(self.config.callbacks, "jwt", claims, user)
        return tokens.encode(
            claims,
            self.config.secret,
            self.config.session_max_age,
            algorithm=self.config.algorithm,
            issuer=self.config.issuer,
            audience=self.config.audience,
        )

    def verify_token(self, token: str) -> dict[str, Any] | None:
        return tokens.decode(
            token,
            self.config.verification_key,
            algorithms=(self.config.algorithm,),
            issuer=self.config.issuer,
            audience=self.config.audience,
        )

    async def _start_session(self, user: User) -> Session | None:
        if not self.config.issues_sessions:
            return None
        session = Session(
            session_token=generate_token(),
            user_id=user.id,
            expires=expiry_in_seconds(self.config.session_max_age),
        )
        if self.config.refresh_token_enabled:
            session.refresh_token = generate_token()
            session.refresh_token_expires = expiry_in_seconds(self.config.refresh_token_max_age)
        return await self.store.create_session(session)

    async def _authenticate(self, user: User) -> tuple[str, Session | None]:
        session = await self._start_session(user)
        token = await self.issue_token(user)
        return token, session

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def register(self, email: str, password: str, name: str | None = None) -> RegisterResult:
        """Create a user with a credential account and sign them in.

        The verification token is returned, not sent; delivery belongs to the
        caller.
        """
        _require(email=email, password=password)
        email = normalize_email(email)
        _check_email(email)
        _check_password(password)

        if await self.store.get_user_by_email(email) is not None:
            raise DuplicateUserError()

        hashed = await self.hash_password(password)
        verification_token = generate_token()
        # The credential account is keyed by the user id, so assign it up front.
        user_id = uuid.uuid4().hex
        user, _account = await self.store.create_user_with_account(
            User(
                id=user_id,
                email=email,
                name=name or None,
                verification_token=verification_token,
                verification_token_expiry=expiry_from_now(VERIFICATION_TOKEN_HOURS),
            ),
            Account(
                user_id=user_id,
                kind=AccountKind.credentials,
                provider=CREDENTIALS_PROVIDER,
                provider_account_id=user_id,
                password_hash=hashed,
            ),
        )
        logger.info("Registered user %s", user.id)
        await fire(self.config.events, "create_user", user)

        token, session = await self._authenticate(user)
        return RegisterResult(user=user, token=token, session=session, verification_token=verification_token)

    async def sign_in(self, email: str, password: str) -> AuthResult:
        _require(email=email, password=password)
        user = await self.store.get_user_by_email(normalize_email(email))
        account = None
        if user is not None:
            account = await self.store.get_account_by_provider(user.id, CREDENTIALS_PROVIDER)

        if account is None or not account.password_hash:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            await asyncio.to_thread(passwords.burn_verification, password)
            logger.info("Credential sign-in failed (no credential account)")
            raise InvalidCredentialsError()
        if not await self.verify_password(password, account.password_hash):
            logger.info("Credential sign-in failed for user %s (password mismatch)", user.id)
            raise InvalidCredentialsError()

        await fire(self.config.events, "sign_in", user, account)
        token, session = await self._authenticate(user)
        return AuthResult(user=user, token=token, session=session)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    async def request_password_reset(self, email: str) -> PasswordResetRequest:
        """Issue a one-hour reset token.

        An unknown email raises UserNotFoundError whose message reads like
        success; callers must answer identically in both cases.
        """
        _require(email=email)
        user = await self.store.get_user_by_email(normalize_email(email))
        if user is None:
            raise UserNotFoundError()

        reset_token = generate_token()
        updated = await self.store.update_user(
            user.id,
            reset_token=reset_token,
            reset_token_expiry=expiry_from_now(RESET_TOKEN_HOURS),
        )
        return PasswordResetRequest(user=updated or user, reset_token=reset_token)

    async def verify_reset_token(self, reset_token: str) -> User:
        _require(reset_token=reset_token)
        user = await self.store.get_user_by_reset_token(reset_token)
        # The store filters expired rows; check again here.
        if user is None or is_expired(user.reset_token_expiry):
            raise InvalidOrExpiredTokenError()
        return user

    async def reset_password(self, reset_token: str, new_password: str) -> AuthResult:
        """Redeem a reset token, replace the password hash and sign the user in."""
        _require(reset_token=reset_token, new_password=new_password)
        _check_password(new_password)

        user = await self.verify_reset_token(reset_token)
        account = await self.store.get_account_by_provider(user.id, CREDENTIALS_PROVIDER)
        if account is None:
            logger.warning("Reset token redeemed for user %s without a credential account", user.id)
            raise InvalidOrExpiredTokenError()

        hashed = await self.hash_password(new_password)
        user = await self.store.reset_credentials(user.id, reset_token, account.id, hashed)
        if user is None:
            raise InvalidOrExpiredTokenError()
        logger.info("Password reset for user %s", user.id)

        if self.config.revoke_sessions_on_password_reset:
            revoked = await self.store.delete_user_sessions(user.id)
            logger.info("Revoked %d session(s) for user %s after password reset", revoked, user.id)

        token, session = await self._authenticate(user)
        return AuthResult(user=user, token=token, session=session)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    async def send_verification_email(self, email: str) -> VerificationRequest:
        _require(email=email)
        user = await self.store.get_user_by_email(normalize_email(email))
        if user is None:
            raise UserNotFoundError("If the email exists, a verification link will be sent.")
        if user.email_verified is not None:
            raise EmailAlreadyVerifiedError()

        verification_token = generate_token()
        updated = await self.store.update_user(
            user.id,
            verification_token=verification_token,
            verification_token_expiry=expiry_from_now(VERIFICATION_TOKEN_HOURS),
        )
        return VerificationRequest(user=updated or user, verification_token=verification_token)

    async def verify_email(self, verification_token: str) -> User:
        _require(verification_token=verification_token)
        user = await self.store.get_user_by_verification_token(verification_token)
        if user is None or is_expired(user.verification_token_expiry):
            raise InvalidOrExpiredTokenError()

        verified = await self.store.consume_token(
            user.id,
            TokenPurpose.verification,
            verification_token,
            email_verified=utcnow(),
        )
        if verified is None:
            raise InvalidOrExpiredTokenError()
        logger.info("Email verified for user %s", verified.id)
        return verified

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def refresh_access_token(self, refresh_token: str) -> RefreshResult:
        """Redeem a refresh token for a new signed token and a rotated refresh token.

        Rotation happens on every redemption, so a replayed copy of a stolen
        refresh token stops working once either party redeems it.
        """
        if not self.config.refresh_token_enabled:
            raise RefreshTokensDisabledError()
        _require(refresh_token=refresh_token)

        session = await self.store.get_session_by_refresh_token(refresh_token)
        if session is None or is_expired(session.refresh_token_expires):
            raise InvalidOrExpiredTokenError()
        user = await self.store.get_user(session.user_id)
        if user is None:
            raise InvalidOrExpiredTokenError()

        new_refresh_token = generate_token()
        rotated = await self.store.rotate_refresh_token(
            session.session_token,
            refresh_token,
            new_refresh_token,
            expiry_in_seconds(self.config.refresh_token_max_age),
        )
        if rotated is None:
            logger.warning("Refresh token for user %s lost a concurrent rotation", user.id)
            raise InvalidOrExpiredTokenError()

        token = await self.issue_token(user)
        return RefreshResult(user=user, token=token, refresh_token=new_refresh_token, session=rotated)

    async def sign_out(self, session_token: str) -> Session:
        _require(session_token=session_token)
        session = await self.store.delete_session(session_token)
        if session is None:
            raise SessionNotFoundError()
        await fire(self.config.events, "sign_out", session)
        return session

    async def sign_out_all_devices(self, user_id: str) -> int:
        """Delete every session the user owns. Returns how many were removed."""
        _require(user_id=user_id)
        deleted = await self.store.delete_user_sessions(user_id)
        logger.info("Signed out user %s from %d session(s)", user_id, deleted)
        return deleted

    async def get_session(self, token: str) -> AuthSession | None:
        """Resolve a signed token to the current user, or None.

        The user is re-fetched on every call so a deleted user cannot keep
        using a token that is still cryptographically valid.
        """
        if not token:
            return None
        claims = self.verify_token(token)
        if not claims or not claims.get("sub"):
            return None
        user = await self.store.get_user(claims["sub"])
        if user is None:
            logger.info("Valid token for missing user %s rejected", claims["sub"])
            return None
        session = AuthSession(
            user=user,
            expires=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            claims=claims,
        )
        return await shape(self.config.callbacks, "session", session, claims)

    async def get_database_session(self, session_token: str) -> AuthSession | None:
        """Resolve a persisted session token, deleting it if it has expired."""
        if not session_token:
            return None
        found = await self.store.get_session_and_user(session_token)
        if found is None:
            return None
        session, user = found
        if is_expired(session.expires):
            await self.store.delete_session(session_token)
            return None
        claims = {"sub": user.id, "email": user.email}
        view = AuthSession(user=user, expires=as_utc(session.expires), claims=claims)
        return await shape(self.config.callbacks, "session", view, claims)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def _oauth_provider(self, provider_id: str) -> IdentityProviderPort:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ProviderNotFoundError(f"Provider '{provider_id}' not found")
        if provider.type != "oauth":
            raise ProviderNotFoundError(f"Provider '{provider_id}' is not an OAuth provider")
        return provider

    async def get_authorization_url(self, provider_id: str) -> AuthorizationRequest:
        """Build the provider redirect URL. The caller must persist state."""
        provider = self._oauth_provider(provider_id)
        state = generate_token()
        url = await provider.get_authorization_url(state)
        return AuthorizationRequest(url=url, state=state)

    async def handle_oauth_callback(
        self,
        provider_id: str,
        code: str,
        expected_state: str | None = None,
        received_state: str | None = None,
    ) -> OAuthResult:
        """Exchange the code, find or create the user, link the account, sign in."""
        # CSRF check first, before provider lookup or any network exchange.
        if expected_state and not hmac.compare_digest(
            expected_state.encode("utf-8"), (received_state or "").encode("utf-8")
        ):
            logger.warning("OAuth callback for %r rejected: state mismatch", provider_id)
            raise CsrfStateMismatchError()
        _require(code=code)
        provider = self._oauth_provider(provider_id)

        profile = await provider.exchange_code_for_profile(code)
        if not profile.external_id or not profile.email:
            raise OAuthProfileError(f"{provider_id} OAuth: profile is missing id or email")
        email = normalize_email(profile.email)

        user = await self.store.get_user_by_account(provider_id, profile.external_id)
        is_new_user = False
        if user is None:
            link = Account(
                user_id="",
                kind=AccountKind.oauth,
                provider=provider_id,
                provider_account_id=profile.external_id,
            )
            user = await self.store.get_user_by_email(email)
            if user is None:
                user, account = await self.store.create_user_with_account(
                    User(
                        email=email,
                        name=profile.name,
                        # The provider has verified the address.
                        email_verified=utcnow(),
                        image=profile.avatar_url,
                    ),
                    link,
                )
                is_new_user = True
                logger.info("Created user %s from %s OAuth sign-in", user.id, provider_id)
                await fire(self.config.events, "create_user", user)
            else:
                account = await self.store.link_account(replace(link, user_id=user.id))
                if user.email_verified is None:
                    # The provider vouches for the address; a pending
                    # verification link is no longer needed.
                    user = await self.store.update_user(
                        user.id,
                        email_verified=utcnow(),
                        verification_token=None,
                        verification_token_expiry=None,
                    ) or user
                logger.info("Linked %s account to existing user %s", provider_id, user.id)
            await fire(self.config.events, "link_account", user, account)
        else:
            account = await self.store.get_account_by_provider(user.id, provider_id)

        await fire(self.config.events, "sign_in", user, account)
        token, session = await self._authenticate(user)
        return OAuthResult(user=user, token=token, session=session, is_new_user=is_new_user)
