"""
auth/errors.py -- Typed failures raised by the engine and its adapters.

Every engine operation either returns a result or raises exactly one
AuthError subclass. Storage and provider exceptions are NOT wrapped; they
propagate unchanged.

Each class carries a stable machine-readable code. The HTTP adapter maps codes
to status codes; the messages are safe to show to end users and deliberately
vague where precision would leak account existence.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all engine failures."""

    code = "auth_error"
    default_message = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AuthError):
    """Missing or malformed input, rejected before any I/O."""

    code = "validation_error"
    default_message = "Invalid input."


class DuplicateUserError(AuthError):
    code = "duplicate_user"
    default_message = "User with this email already exists."


class InvalidCredentialsError(AuthError):
    """Unknown email and wrong password are deliberately indistinguishable."""

    code = "invalid_credentials"
    default_message = "Invalid email or password."


class UserNotFoundError(AuthError):
    """Raised by the reset request; the message mirrors the success wording."""

    code = "user_not_found"
    default_message = "If the email exists, a reset link will be sent."


class InvalidOrExpiredTokenError(AuthError):
    """Used uniformly for reset, verification and refresh tokens."""

    code = "invalid_token"
    default_message = "Invalid or expired token."


class CsrfStateMismatchError(AuthError):
    code = "csrf_state_mismatch"
    default_message = "Invalid state parameter - possible CSRF attack."


class RefreshTokensDisabledError(AuthError):
    code = "refresh_disabled"
    default_message = "Refresh tokens are not enabled."


class ProviderNotFoundError(AuthError):
    code = "provider_not_found"
    default_message = "Provider not found."


class SessionNotFoundError(AuthError):
    code = "session_not_found"
    default_message = "Session not found."


class EmailAlreadyVerifiedError(AuthError):
    code = "email_already_verified"
    default_message = "Email is already verified."


class DuplicateAccountError(AuthError):
    """Raised by stores when (provider, provider_account_id) is already linked."""

    code = "duplicate_account"
    default_message = "This account is already linked."


class OAuthProfileError(ValueError):
    """The provider response cannot be trusted as a verified identity [H1].

    Raised by identity provider adapters. A ValueError rather than an
    AuthError: it is a provider failure and propagates through the engine
    unchanged.
    """
