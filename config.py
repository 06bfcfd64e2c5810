"""
Centralized configuration for the tournament registration site.

All configurable values are loaded from environment variables once, at import
time. Nothing here is re-read or rotated while the process is running.
"""

import os
from datetime import datetime, timezone


def _require_env(name: str, test_default: str) -> str:
    """
    Get a required environment variable.

    In testing mode, returns a test default. In production, raises an error if not set.
    """
    value = os.getenv(name)
    if value:
        return value

    # Allow test defaults only in testing mode
    if os.getenv("TESTING"):
        return test_default

    raise ValueError(
        f"Required environment variable {name} is not set. "
        f"Set {name} in your environment or deployment secrets."
    )


def parse_instant(value: str) -> datetime:
    """Parse an ISO-8601 instant. Naive values are taken to be UTC."""
    instant = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant


class Config:
    """Application configuration loaded from environment variables."""

    SITE_NAME: str = os.getenv("SITE_NAME", "Atomic Chess World Championship")

    # Public base URL; the OAuth redirect URI is derived from it
    APP_BASE_URL: str = os.getenv("APP_BASE_URL", "http://localhost:8000").rstrip("/")

    # OAuth client registration
    OAUTH_CLIENT_ID: str = _require_env("OAUTH_CLIENT_ID", "test-client-id")
    OAUTH_CLIENT_SECRET: str = os.getenv("OAUTH_CLIENT_SECRET", "")
    # pkce or secret - never both in one exchange
    OAUTH_FLOW: str = os.getenv("OAUTH_FLOW", "pkce").lower()
    OAUTH_SCOPE: str = os.getenv("OAUTH_SCOPE", "")

    # Identity provider endpoints
    OAUTH_AUTHORIZE_URL: str = os.getenv("OAUTH_AUTHORIZE_URL", "https://lichess.org/oauth")
    OAUTH_TOKEN_URL: str = os.getenv("OAUTH_TOKEN_URL", "https://lichess.org/api/token")
    OAUTH_ACCOUNT_URL: str = os.getenv("OAUTH_ACCOUNT_URL", "https://lichess.org/api/account")
    PROVIDER_TIMEOUT_SECONDS: float = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "15"))

    # Provider-assigned id of the tournament director (the single administrator)
    TOURNAMENT_DIRECTOR: str = _require_env("TOURNAMENT_DIRECTOR", "director")

    # Registration window
    REGISTRATION_OPENS_AT: datetime = parse_instant(
        os.getenv("REGISTRATION_OPENS_AT", "2021-08-01T00:00:00+00:00")
    )
    REGISTRATION_CLOSES_AT: datetime = parse_instant(
        os.getenv("REGISTRATION_CLOSES_AT", "2021-09-01T00:00:00+00:00")
    )

    # Sealed cookie key material - required in production, unique per deployment
    SESSION_SECRET: str = _require_env("SESSION_SECRET", "test-session-secret")
    SESSION_SALT: str = _require_env("SESSION_SALT", "test-session-salt")

    # Cookies
    SESSION_COOKIE_NAME: str = "acwc_session"
    HANDSHAKE_COOKIE_NAME: str = "acwc_oauth"
    SESSION_DURATION_DAYS: int = int(os.getenv("SESSION_DURATION_DAYS", "30"))
    HANDSHAKE_MAX_AGE_SECONDS: int = int(os.getenv("HANDSHAKE_MAX_AGE_SECONDS", "600"))
    # Set to False for local development (HTTP), True in production (HTTPS)
    # Defaults to False in testing mode (TestClient uses HTTP)
    SECURE_COOKIES: bool = os.getenv(
        "SECURE_COOKIES",
        "false" if os.getenv("TESTING") else "true"
    ).lower() in ("true", "1", "yes")

    # Database
    DATABASE_PATH: str = os.getenv("DATABASE_PATH", "registrations.db")
    DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "5"))
    DB_POOL_TIMEOUT_SECONDS: float = float(os.getenv("DB_POOL_TIMEOUT_SECONDS", "10"))

    # Rate limiting
    RATE_LIMIT_AUTH: str = os.getenv("RATE_LIMIT_AUTH", "20/minute")

    # Testing mode
    TESTING: bool = bool(os.getenv("TESTING", ""))

    @property
    def redirect_uri(self) -> str:
        return f"{self.APP_BASE_URL}/oauth_redirect"

    @property
    def use_pkce(self) -> bool:
        return self.OAUTH_FLOW == "pkce"

    def validate(self) -> None:
        """Check cross-field invariants. Called once at startup."""
        if self.OAUTH_FLOW not in ("pkce", "secret"):
            raise ValueError(f"OAUTH_FLOW must be 'pkce' or 'secret', got {self.OAUTH_FLOW!r}")
        if self.OAUTH_FLOW == "secret" and not self.OAUTH_CLIENT_SECRET:
            raise ValueError("OAUTH_FLOW=secret requires OAUTH_CLIENT_SECRET")
        if self.REGISTRATION_OPENS_AT >= self.REGISTRATION_CLOSES_AT:
            raise ValueError("REGISTRATION_OPENS_AT must be earlier than REGISTRATION_CLOSES_AT")


# Global config instance
config = Config()
