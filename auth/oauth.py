"""
auth/oauth.py -- Authlib-backed OAuth2 identity providers.

Each provider implements IdentityProviderPort: it builds the authorization
redirect URL for a given state, and exchanges an authorization code for a
normalized OAuthProfile. The engine owns state generation and the CSRF check;
providers never see the expected state.

HTTP goes through authlib's AsyncOAuth2Client (an httpx.AsyncClient), which
performs the authorization-code grant and attaches the bearer token to the
profile requests. The request timeout is owned here, not by the engine.

Security notes:
  [H1] Email verification is mandatory. A profile is only returned when the
       provider vouches for the email address. An unverified email from a
       provider could belong to an attacker who added a victim's address
       without confirming it, and the engine links accounts by email.
       Violations raise OAuthProfileError.

Supported presets:
  github    -- static endpoints; email from /user/emails (primary + verified).
  google    -- OpenID Connect userinfo (email_verified claim).
  microsoft -- Microsoft identity platform v2 (OIDC userinfo).
  facebook  -- Graph API /me.

build_providers() registers only providers whose client ID and secret are
configured, mirroring how the login page decides which buttons to render.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Literal

from authlib.integrations.httpx_client import AsyncOAuth2Client

from auth.errors import OAuthProfileError
from auth.models import OAuthProfile
from auth.ports import CredentialsProvider, Provider

logger = logging.getLogger("warden.auth.oauth")

DEFAULT_TIMEOUT = 10.0


class OAuth2Provider:
    """Generic authorization-code provider.

    Args:
        id:                Provider id used in routes and account links.
        client_id:         OAuth client ID.
        client_secret:     OAuth client secret.
        authorize_url:     Authorization endpoint.
        token_url:         Token endpoint.
        userinfo_url:      Profile endpoint, called with the bearer token.
        redirect_uri:      Callback URL registered with the provider.
        scope:             Space-separated scopes.
        label:             Display name for login buttons.
        profile_mapper:    Turns the userinfo JSON into an OAuthProfile.
        client_kwargs:     Extra keyword arguments for AsyncOAuth2Client
                           (e.g. an httpx transport in tests).
    """

    type: Literal["oauth"] = "oauth"

    def __init__(
        self,
        id: str,
        *,
        client_id: str,
        client_secret: str,
        authorize_url: str,
        token_url: str,
        userinfo_url: str,
        redirect_uri: str,
        scope: str = "",
        label: str | None = None,
        profile_mapper: Callable[[dict[str, Any]], OAuthProfile] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        client_kwargs: dict[str, Any] | None = None,
    ) -> None:
        self.id = id
        self.label = label or id.title()
        self.client_id = client_id
        self.client_secret = client_secret
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.userinfo_url = userinfo_url
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.timeout = timeout
        self._profile_mapper = profile_mapper or _default_profile
        self._client_kwargs = client_kwargs or {}

    def _client(self) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=self.scope or None,
            redirect_uri=self.redirect_uri,
            timeout=self.timeout,
            **self._client_kwargs,
        )

    async def get_authorization_url(self, state: str) -> str:
        async with self._client() as client:
            url, _ = client.create_authorization_url(self.authorize_url, state=state)
        return url

    async def exchange_code_for_profile(self, code: str) -> OAuthProfile:
        async with self._client() as client:
            await client.fetch_token(self.token_url, code=code)
            return await self._fetch_profile(client)

    async def _fetch_profile(self, client: AsyncOAuth2Client) -> OAuthProfile:
        resp = await client.get(self.userinfo_url)
        resp.raise_for_status()
        return self._profile_mapper(resp.json())


def _default_profile(data: dict[str, Any]) -> OAuthProfile:
    external_id = data.get("sub") or data.get("id")
    email = data.get("email")
    if not external_id or not email:
        raise OAuthProfileError("OAuth: missing id or email in userinfo")
    return OAuthProfile(
        external_id=str(external_id),
        email=email,
        name=data.get("name"),
        avatar_url=data.get("picture") or data.get("avatar_url"),
    )


def _oidc_profile(provider: str) -> Callable[[dict[str, Any]], OAuthProfile]:
    """Map an OIDC userinfo document, requiring email_verified [H1].

    Some OIDC providers omit email_verified entirely -- that counts as
    unverified.
    """

    def mapper(userinfo: dict[str, Any]) -> OAuthProfile:
        if not userinfo.get("email_verified", False):
            raise OAuthProfileError(
                f"{provider} OAuth: email is not verified. "
                "The provider must confirm email ownership before login is allowed."
            )
        email = userinfo.get("email")
        subject_id = userinfo.get("sub")
        if not email or not subject_id:
            raise OAuthProfileError(f"{provider} OAuth: missing email or sub claim in userinfo")
        return OAuthProfile(
            external_id=str(subject_id),
            email=email,
            name=userinfo.get("name"),
            avatar_url=userinfo.get("picture"),
        )

    return mapper


class GitHubProvider(OAuth2Provider):
    """GitHub does not put a verified email in the profile.

    Two API calls are required:
      1. GET /user -- numeric user ID (stable subject), name, avatar.
      2. GET /user/emails -- the primary verified email.
    """

    def __init__(self, *, client_id: str, client_secret: str, redirect_uri: str, **kwargs: Any) -> None:
        super().__init__(
            "github",
            client_id=client_id,
            client_secret=client_secret,
            authorize_url="https://github.com/login/oauth/authorize",
            token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            userinfo_url="https://api.github.com/user",
            redirect_uri=redirect_uri,
            scope="read:user user:email",
            label="GitHub",
            **kwargs,
        )

    async def _fetch_profile(self, client: AsyncOAuth2Client) -> OAuthProfile:
        resp = await client.get(self.userinfo_url)
        resp.raise_for_status()
        profile = resp.json()

        emails_resp = await client.get("https://api.github.com/user/emails")
        emails_resp.raise_for_status()

        # [H1] Only the entry with both primary=true AND verified=true counts.
        email: str | None = None
        for entry in emails_resp.json():
            if entry.get("primary") and entry.get("verified"):
                email = entry["email"]
                break
        if not email:
            raise OAuthProfileError(
                "GitHub OAuth: no primary verified email found. "
                "The user must verify their email address on GitHub before logging in."
            )

        return OAuthProfile(
            external_id=str(profile["id"]),
            email=email,
            name=profile.get("name") or profile.get("login"),
            avatar_url=profile.get("avatar_url"),
        )


def google_provider(*, client_id: str, client_secret: str, redirect_uri: str, **kwargs: Any) -> OAuth2Provider:
    return OAuth2Provider(
        "google",
        client_id=client_id,
        client_secret=client_secret,
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",  # noqa: S106 -- URL, not a password
        userinfo_url="https://openidconnect.googleapis.com/v1/userinfo",
        redirect_uri=redirect_uri,
        scope="openid email profile",
        label="Google",
        profile_mapper=_oidc_profile("google"),
        **kwargs,
    )


def microsoft_provider(
    *, client_id: str, client_secret: str, redirect_uri: str, tenant: str = "common", **kwargs: Any
) -> OAuth2Provider:
    base = f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0"
    return OAuth2Provider(
        "microsoft",
        client_id=client_id,
        client_secret=client_secret,
        authorize_url=f"{base}/authorize",
        token_url=f"{base}/token",
        userinfo_url="https://graph.microsoft.com/oidc/userinfo",
        redirect_uri=redirect_uri,
        scope="openid email profile",
        label="Microsoft",
        profile_mapper=_microsoft_profile,
        **kwargs,
    )


def _microsoft_profile(userinfo: dict[str, Any]) -> OAuthProfile:
    # Graph's OIDC userinfo has no email_verified claim; the address is taken
    # as returned.
    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise OAuthProfileError("microsoft OAuth: missing email or sub claim in userinfo")
    return OAuthProfile(
        external_id=str(subject_id),
        email=email,
        name=userinfo.get("name"),
        avatar_url=None,
    )


def facebook_provider(*, client_id: str, client_secret: str, redirect_uri: str, **kwargs: Any) -> OAuth2Provider:
    return OAuth2Provider(
        "facebook",
        client_id=client_id,
        client_secret=client_secret,
        authorize_url="https://www.facebook.com/v18.0/dialog/oauth",
        token_url="https://graph.facebook.com/v18.0/oauth/access_token",  # noqa: S106 -- URL, not a password
        userinfo_url="https://graph.facebook.com/me?fields=id,name,email,picture",
        redirect_uri=redirect_uri,
        scope="email public_profile",
        label="Facebook",
        profile_mapper=_facebook_profile,
        **kwargs,
    )


def _facebook_profile(data: dict[str, Any]) -> OAuthProfile:
    if not data.get("id") or not data.get("email"):
        raise OAuthProfileError("facebook OAuth: missing id or email in profile")
    picture = (data.get("picture") or {}).get("data") or {}
    return OAuthProfile(
        external_id=str(data["id"]),
        email=data["email"],
        name=data.get("name"),
        avatar_url=picture.get("url"),
    )


# ---------------------------------------------------------------------------
# Provider registry from settings
# ---------------------------------------------------------------------------


def build_providers(settings) -> list[Provider]:
    """Return the credentials provider plus every configured OAuth provider."""
    base = settings.oauth_redirect_base_url.rstrip("/")

    def callback(provider_id: str) -> str:
        return f"{base}/api/v1/auth/oauth/{provider_id}/callback"

    providers: list[Provider] = [CredentialsProvider()]

    if settings.github_client_id and settings.github_client_secret:
        providers.append(
            GitHubProvider(
                client_id=settings.github_client_id,
                client_secret=settings.github_client_secret,
                redirect_uri=callback("github"),
            )
        )
        logger.info("GitHub OAuth provider registered")

    if settings.google_client_id and settings.google_client_secret:
        providers.append(
            google_provider(
                client_id=settings.google_client_id,
                client_secret=settings.google_client_secret,
                redirect_uri=callback("google"),
            )
        )
        logger.info("Google OAuth provider registered")

    if settings.microsoft_client_id and settings.microsoft_client_secret:
        providers.append(
            microsoft_provider(
                client_id=settings.microsoft_client_id,
                client_secret=settings.microsoft_client_secret,
                redirect_uri=callback("microsoft"),
                tenant=settings.microsoft_tenant,
            )
        )
        logger.info("Microsoft OAuth provider registered")

    if settings.facebook_client_id and settings.facebook_client_secret:
        providers.append(
            facebook_provider(
                client_id=settings.facebook_client_id,
                client_secret=settings.facebook_client_secret,
                redirect_uri=callback("facebook"),
            )
        )
        logger.info("Facebook OAuth provider registered")

    return providers


def provider_info(providers: list[Provider]) -> list[dict]:
    """Return {"name", "label"} metadata for every OAuth provider."""
    return [{"name": p.id, "label": getattr(p, "label", p.id)} for p in providers if p.type == "oauth"]
