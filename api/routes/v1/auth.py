"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register                  -- create user + credential account; signs in
  POST /api/v1/auth/signin                    -- email/password sign-in; sets cookies
  POST /api/v1/auth/signout                   -- delete the current session; clears cookies
  POST /api/v1/auth/signout-all               -- delete every session of the current user
  POST /api/v1/auth/password/forgot           -- mint a reset token; always 202
  GET  /api/v1/auth/password/reset/{token}    -- check a reset token without consuming it
  POST /api/v1/auth/password/reset            -- consume a reset token; set new password
  POST /api/v1/auth/email/send-verification   -- mint a new verification token; always 202
  POST /api/v1/auth/email/verify              -- consume a verification token
  POST /api/v1/auth/refresh                   -- rotate a refresh token
  GET  /api/v1/auth/session                   -- current session (requires auth)
  GET  /api/v1/auth/providers                 -- list enabled OAuth providers (public)
  GET  /api/v1/auth/oauth/{provider}/authorize -- redirect to the provider
  GET  /api/v1/auth/oauth/{provider}/callback  -- finish the OAuth sign-in

Engine errors (auth.errors.AuthError) are not caught here; the handler in
api/main.py maps each error code to an HTTP status.

Secret tokens minted for out-of-band delivery (reset, verification) are
handed to app.state.token_delivery and never echoed in a response.

Security:
  [H2] signin, register, password/forgot and email/send-verification are rate-limited.
  [C1] sign_in() equalizes timing between unknown email and wrong password.
  [M5] Cache-Control: no-store on every response that carries a token.
  [M8] The forgot/resend endpoints answer identically whether or not the
       email exists.
"""

from __future__ import annotations

import inspect
import logging

import httpx
from authlib.integrations.base_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import credential_rate_limit, limiter
from api.models import (
    AuthResponse,
    EmailRequest,
    MessageResponse,
    OAuthProviderInfo,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    ResetPasswordRequest,
    SessionResponse,
    SignInRequest,
    SignOutAllResponse,
    SignOutRequest,
    TokenRequest,
    UserResponse,
)
from auth.dependencies import ACCESS_TOKEN_COOKIE, SESSION_TOKEN_COOKIE, get_current_session, get_engine
from auth.engine import AuthEngine
from auth.errors import CsrfStateMismatchError, EmailAlreadyVerifiedError, OAuthProfileError, UserNotFoundError
from auth.models import AuthResult, AuthSession, User
from auth.oauth import provider_info
from core.config import get_settings

logger = logging.getLogger("warden.api.auth")

# Auth policy:
# - everything under /auth is public except GET /auth/session and
#   POST /auth/signout-all, which require get_current_session.
router = APIRouter()

_RESET_SENT = "If the email exists, a reset link will be sent."
_VERIFICATION_SENT = "If the email exists, a verification link will be sent."


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _oauth_state_key(provider: str) -> str:
    return f"oauth_state:{provider}"


def _set_auth_cookies(resp: Response, engine: AuthEngine, result: AuthResult) -> None:
    """Set the access token cookie, plus the session cookie when one exists.

    httponly keeps the tokens away from page scripts; samesite=lax blocks
    cross-site POSTs while allowing the OAuth redirect back to us.
    """
    secure = get_settings().secure_cookies
    resp.set_cookie(
        key=ACCESS_TOKEN_COOKIE,
        value=result.token,
        max_age=engine.config.session_max_age,
        httponly=True,
        samesite="lax",
        secure=secure,
    )
    if result.session is not None:
        resp.set_cookie(
            key=SESSION_TOKEN_COOKIE,
            value=result.session.session_token,
            max_age=engine.config.session_max_age,
            httponly=True,
            samesite="lax",
            secure=secure,
        )


def _clear_auth_cookies(resp: Response) -> None:
    resp.delete_cookie(ACCESS_TOKEN_COOKIE)
    resp.delete_cookie(SESSION_TOKEN_COOKIE)


def _auth_response(engine: AuthEngine, result: AuthResult, status_code: int = 200, **extra) -> JSONResponse:
    session = result.session
    body = AuthResponse(
        access_token=result.token,
        expires_in=engine.config.session_max_age,
        user=UserResponse.from_user(result.user),
        session_token=session.session_token if session else None,
        refresh_token=session.refresh_token if session else None,
        **extra,
    )
    # Omit only the top-level optionals; the nested user keeps its null fields.
    omitted = {name for name in ("session_token", "refresh_token", "is_new_user") if getattr(body, name) is None}
    resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json", exclude=omitted))
    _set_auth_cookies(resp, engine, result)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


async def _deliver(request: Request, purpose: str, user: User, token: str) -> None:
    """Hand a secret token to the configured delivery hook (mailer, queue, ...)."""
    outcome = request.app.state.token_delivery(purpose, user, token)
    if inspect.isawaitable(outcome):
        await outcome


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@limiter.limit(credential_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=AuthResponse, status_code=201)
async def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a user with a credential account and sign them in.

    The verification token is delivered out of band, not returned.
    """
    engine = get_engine(request)
    result = await engine.register(body.email, body.password, body.name)
    await _deliver(request, "verification", result.user, result.verification_token)
    return _auth_response(engine, result, status_code=201)


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/signin", response_model=AuthResponse)
async def signin(request: Request, body: SignInRequest) -> JSONResponse:
    """Authenticate with email and password.

    Wrong password and unknown email both surface as invalid_credentials [C1].
    """
    engine = get_engine(request)
    result = await engine.sign_in(body.email, body.password)
    return _auth_response(engine, result)


@router.post("/auth/signout", response_model=MessageResponse)
async def signout(request: Request, body: SignOutRequest | None = None) -> JSONResponse:
    """End the current session.

    With the jwt strategy there is no server-side session; the cookies are
    cleared and the signed token simply ages out.
    """
    session_token = (body.session_token if body else None) or request.cookies.get(SESSION_TOKEN_COOKIE)
    if session_token:
        await get_engine(request).sign_out(session_token)
    resp = JSONResponse(content={"message": "Signed out."})
    _clear_auth_cookies(resp)
    return resp


@router.post("/auth/signout-all", response_model=SignOutAllResponse)
async def signout_all(request: Request, session: AuthSession = Depends(get_current_session)) -> JSONResponse:
    """Delete every session the current user owns, on every device."""
    deleted = await get_engine(request).sign_out_all_devices(session.user.id)
    resp = JSONResponse(content=SignOutAllResponse(sessions_deleted=deleted).model_dump())
    _clear_auth_cookies(resp)
    return resp


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/password/forgot", response_model=MessageResponse, status_code=202)
async def forgot_password(request: Request, body: EmailRequest) -> MessageResponse:
    """Mint a reset token for the email, if it belongs to a user [M8]."""
    engine = get_engine(request)
    try:
        reset = await engine.request_password_reset(body.email)
    except UserNotFoundError:
        logger.info("Password reset requested for unknown email")
    else:
        await _deliver(request, "reset", reset.user, reset.reset_token)
    return MessageResponse(message=_RESET_SENT)


@router.get("/auth/password/reset/{token}", response_model=MessageResponse)
async def check_reset_token(request: Request, token: str) -> MessageResponse:
    """Report whether a reset token is still redeemable. Does not consume it."""
    await get_engine(request).verify_reset_token(token)
    return MessageResponse(message="Reset token is valid.")


@router.post("/auth/password/reset", response_model=AuthResponse)
async def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Consume a reset token, store the new password and sign the user in."""
    engine = get_engine(request)
    result = await engine.reset_password(body.token, body.password)
    return _auth_response(engine, result)


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/email/send-verification", response_model=MessageResponse, status_code=202)
async def send_verification(request: Request, body: EmailRequest) -> MessageResponse:
    engine = get_engine(request)
    try:
        pending = await engine.send_verification_email(body.email)
    except (UserNotFoundError, EmailAlreadyVerifiedError) as exc:
        logger.info("Verification email not sent: %s", exc.code)
    else:
        await _deliver(request, "verification", pending.user, pending.verification_token)
    return MessageResponse(message=_VERIFICATION_SENT)


@router.post("/auth/email/verify", response_model=UserResponse)
async def verify_email(request: Request, body: TokenRequest) -> UserResponse:
    user = await get_engine(request).verify_email(body.token)
    return UserResponse.from_user(user)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/auth/refresh", response_model=RefreshResponse)
async def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Trade a refresh token for a new access token and a rotated refresh token."""
    engine = get_engine(request)
    result = await engine.refresh_access_token(body.refresh_token)
    resp = JSONResponse(
        content=RefreshResponse(
            access_token=result.token,
            expires_in=engine.config.session_max_age,
            refresh_token=result.refresh_token,
        ).model_dump()
    )
    resp.set_cookie(
        key=ACCESS_TOKEN_COOKIE,
        value=result.token,
        max_age=engine.config.session_max_age,
        httponly=True,
        samesite="lax",
        secure=get_settings().secure_cookies,
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/auth/session", response_model=SessionResponse)
async def current_session(session: AuthSession = Depends(get_current_session)) -> SessionResponse:
    """Return the authenticated user and when the session expires."""
    return SessionResponse(user=UserResponse.from_user(session.user), expires=session.expires)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Empty when no OAuth credentials are configured.
    """
    return [OAuthProviderInfo(**p) for p in provider_info(get_engine(request).providers)]


@router.get("/auth/oauth/{provider}/authorize")
async def oauth_authorize(request: Request, provider: str) -> RedirectResponse:
    """Store a fresh state in the signed session cookie and redirect to the provider."""
    authorization = await get_engine(request).get_authorization_url(provider)
    request.session[_oauth_state_key(provider)] = authorization.state
    return RedirectResponse(authorization.url, status_code=302)


@router.get("/auth/oauth/{provider}/callback", response_model=AuthResponse)
async def oauth_callback(request: Request, provider: str, code: str = "", state: str = "") -> JSONResponse:
    """Finish the authorization-code flow.

    The stored state is popped before comparison so it can never be replayed.
    A callback with no stored state is rejected outright.
    """
    expected = request.session.pop(_oauth_state_key(provider), None)
    if not expected:
        logger.warning("OAuth callback for %r without a stored state", provider)
        raise CsrfStateMismatchError()

    engine = get_engine(request)
    try:
        result = await engine.handle_oauth_callback(provider, code, expected_state=expected, received_state=state)
    except OAuthProfileError as exc:
        logger.warning("OAuth profile rejected for %r: %s", provider, exc)
        raise HTTPException(
            status_code=401,
            detail={"code": "oauth_failed", "message": "The provider did not return a usable identity."},
        ) from exc
    except (OAuthError, httpx.HTTPError) as exc:
        logger.warning("OAuth exchange with %r failed: %s", provider, exc)
        raise HTTPException(
            status_code=502,
            detail={"code": "provider_error", "message": "The identity provider request failed."},
        ) from exc

    return _auth_response(engine, result, is_new_user=result.is_new_user)
