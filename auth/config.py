"""
auth/config.py -- Engine configuration, validated once at construction.

AuthConfig is a frozen dataclass: it is built at startup (usually via
AuthConfig.from_settings(get_settings())) and passed to AuthEngine. Nothing
mutates it afterwards. __post_init__ rejects invalid combinations with
ValueError so a misconfigured deployment fails at boot, not on first login.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from auth.hooks import Callbacks, Events
from auth.tokens import DEFAULT_ALGORITHM, SUPPORTED_ALGORITHMS

if TYPE_CHECKING:
    from core.config import Settings

THIRTY_DAYS = 30 * 24 * 60 * 60

_SESSION_STRATEGIES = ("jwt", "database")


@dataclass(frozen=True)
class AuthConfig:
    """Recognized engine options.

    secret is the HMAC key, or the PEM private key for RS* algorithms, in
    which case public_key is used to verify.
    """

    secret: str
    public_key: str | None = None
    session_strategy: str = "jwt"
    session_max_age: int = THIRTY_DAYS
    refresh_token_enabled: bool = False
    refresh_token_max_age: int = THIRTY_DAYS
    algorithm: str = DEFAULT_ALGORITHM
    issuer: str | None = None
    audience: str | None = None
    password_cost: int = 10
    revoke_sessions_on_password_reset: bool = False
    events: Events = field(default_factory=Events)
    callbacks: Callbacks = field(default_factory=Callbacks)

    def __post_init__(self) -> None:
        if not self.secret:
            raise ValueError("A secret is required for signing tokens.")
        if self.session_strategy not in _SESSION_STRATEGIES:
            raise ValueError(f"session_strategy must be one of {_SESSION_STRATEGIES}")
        if self.session_max_age <= 0 or self.refresh_token_max_age <= 0:
            raise ValueError("session_max_age and refresh_token_max_age must be positive")
        if self.algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"algorithm must be one of {sorted(SUPPORTED_ALGORITHMS)}")
        if self.algorithm.startswith("RS") and not self.public_key:
            raise ValueError("public_key is required for RS* algorithms")
        if not 4 <= self.password_cost <= 31:
            raise ValueError("password_cost must be between 4 and 31")

    @property
    def verification_key(self) -> str:
        return self.public_key or self.secret

    @property
    def issues_sessions(self) -> bool:
        """True when successful authentication persists a Session row."""
        return self.session_strategy == "database" or self.refresh_token_enabled

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        events: Events | None = None,
        callbacks: Callbacks | None = None,
    ) -> AuthConfig:
        """Build the engine config from core.config.Settings."""
        return cls(
            secret=settings.secret_key,
            public_key=settings.public_key or None,
            session_strategy=settings.session_strategy,
            session_max_age=settings.session_max_age,
            refresh_token_enabled=settings.refresh_token_enabled,
            refresh_token_max_age=settings.refresh_token_max_age,
            algorithm=settings.jwt_algorithm,
            issuer=settings.jwt_issuer or None,
            audience=settings.jwt_audience or None,
            password_cost=settings.password_cost,
            revoke_sessions_on_password_reset=settings.revoke_sessions_on_password_reset,
            events=events or Events(),
            callbacks=callbacks or Callbacks(),
        )
