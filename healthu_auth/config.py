"""
Configuration module for the HealthU authentication backend.

This module uses Pydantic Settings to load and validate environment variables
for the university IdP (OIDC), session token signing, institutional policy
toggles, and server options.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from healthu_auth.exceptions import ConfigurationError


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Everything the login flow needs to talk to the IdP, sign sessions and
    enforce policy is defined here. Required values have no default, so a
    missing one fails validation at startup.
    """

    # =========================================================================
    # Session Signing
    # =========================================================================

    APP_SESSION_SECRET: str = Field(
        ...,
        description="Secret key for signing session tokens (HS256)",
        min_length=32,
    )

    APP_BASE_URL: Optional[str] = Field(
        None,
        description="Public base URL, used as the session token issuer",
    )

    SESSION_AUDIENCE: str = Field(
        default="healthu-mobile",
        description="Audience claim stamped into session tokens",
    )

    SESSION_TTL_SECONDS: int = Field(
        default=60 * 60 * 8,
        description="Session token lifetime in seconds",
        ge=60,
    )

    # =========================================================================
    # University IdP (OIDC)
    # =========================================================================

    UCI_ISSUER: str = Field(..., description="Expected ID token issuer", min_length=1)

    UCI_AUTHORIZATION_ENDPOINT: str = Field(
        ...,
        description="IdP authorization endpoint the browser is sent to",
        min_length=1,
    )

    UCI_TOKEN_ENDPOINT: str = Field(
        ...,
        description="IdP token endpoint used for the code exchange",
        min_length=1,
    )

    UCI_JWKS_URI: str = Field(
        ...,
        description="IdP published signing key set",
        min_length=1,
    )

    UCI_CLIENT_ID: str = Field(..., description="OAuth client id", min_length=1)

    UCI_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Client secret (only for confidential clients)",
    )

    UCI_REDIRECT_URI: str = Field(
        ...,
        description="Redirect URI registered with the IdP",
        min_length=1,
    )

    UCI_SCOPES: str = Field(
        default="openid profile email",
        description="Space separated scopes requested at login",
    )

    IDP_PROVIDER_NAME: str = Field(
        default="uci",
        description="Provider segment accepted in /auth/{provider}/... routes",
    )

    CALLBACK_SCHEME: str = Field(
        ...,
        description="URL scheme the mobile browser session returns through",
        min_length=1,
    )

    ID_TOKEN_ALGORITHMS: str = Field(
        default="RS256",
        description="Comma-separated list of accepted ID token algorithms",
    )

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache IdP signing keys in seconds",
        ge=60,
        le=86400,
    )

    IDP_HTTP_TIMEOUT_SECONDS: float = Field(
        default=5.0,
        description="Timeout for calls to the IdP (token exchange, key set)",
        gt=0,
        le=60,
    )

    # =========================================================================
    # Institutional Policy
    # =========================================================================

    ALLOWED_EMAIL_DOMAIN: str = Field(
        default="uci.edu",
        description="Email domain every account must belong to",
    )

    REQUIRE_STUDENT_CLAIM: bool = Field(
        default=True,
        description="Reject logins without a student affiliation claim",
    )

    REQUIRE_MFA: bool = Field(
        default=True,
        description="Reject logins without a multi-factor amr indicator",
    )

    # =========================================================================
    # Login Flow State
    # =========================================================================

    AUTH_FLOW_TTL_SECONDS: int = Field(
        default=600,
        description="How long a started login may be completed",
        ge=30,
    )

    AUTH_FLOW_RETENTION_SECONDS: int = Field(
        default=1800,
        description="Age after which abandoned login flows are reaped",
        ge=60,
    )

    FLOW_REAPER_INTERVAL_SECONDS: float = Field(
        default=60.0,
        description="How often the abandoned-flow reaper runs",
        gt=0,
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    HOST: str = Field(default="0.0.0.0", description="Host to bind the server")

    PORT: int = Field(default=4000, description="Port to bind the server", ge=1, le=65535)

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (empty allows all)",
    )

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def session_issuer(self) -> str:
        """Issuer claim for session tokens, defaulting to the local base URL."""
        return self.APP_BASE_URL or f"http://localhost:{self.PORT}"

    @property
    def id_token_algorithms_list(self) -> List[str]:
        return [alg.strip() for alg in self.ID_TOKEN_ALGORITHMS.split(",") if alg.strip()]

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origin URLs, or ["*"] if not configured.
        """
        if not self.ALLOWED_ORIGINS:
            return ["*"]

        return [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("ALLOWED_EMAIL_DOMAIN")
    @classmethod
    def validate_email_domain(cls, v: str) -> str:
        """
        Normalize the required email domain.

        Args:
            v: Raw domain, optionally with a leading "@"

        Returns:
            Lower-cased domain without "@"

        Raises:
            ValueError: If the value is not a plausible domain
        """
        domain = v.strip().lower().lstrip("@")

        if not domain or "." not in domain or " " in domain or "@" in domain:
            raise ValueError(
                f"Invalid domain format: '{v}'. Expected format: 'example.edu'"
            )

        return domain

    @field_validator("ID_TOKEN_ALGORITHMS")
    @classmethod
    def validate_id_token_algorithms(cls, v: str) -> str:
        allowed = {"RS256", "RS384", "RS512", "ES256", "ES384", "ES512", "PS256"}
        algorithms = [alg.strip() for alg in v.split(",") if alg.strip()]

        if not algorithms:
            raise ValueError("ID_TOKEN_ALGORITHMS must name at least one algorithm")

        unsupported = [alg for alg in algorithms if alg not in allowed]
        if unsupported:
            raise ValueError(
                f"ID token algorithms must be asymmetric, got: {', '.join(unsupported)}"
            )

        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


# =============================================================================
# Loading
# =============================================================================

def load_settings(**overrides) -> Settings:
    """
    Build a Settings instance, turning validation failures into a
    ConfigurationError that names every missing or invalid variable.

    Args:
        **overrides: Explicit values that take precedence over the environment

    Returns:
        Validated Settings

    Raises:
        ConfigurationError: If a required variable is missing or invalid
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        problems = []
        for error in e.errors():
            name = ".".join(str(part) for part in error["loc"]) or "<settings>"
            problems.append(f"{name}: {error['msg']}")
        raise ConfigurationError(
            "Invalid configuration: " + "; ".join(problems)
        ) from e


@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    The settings are loaded only once during the application lifecycle.

    Raises:
        ConfigurationError: If required environment variables are missing
                            or invalid.
    """
    return load_settings()
