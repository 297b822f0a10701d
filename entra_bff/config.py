"""
Configuration module for the Entra ID Backend-for-Frontend.

This module uses Pydantic Settings to load and validate environment variables
for the identity provider (tenant, client, secret), the externally visible
base URL, server-side session management and the optional Redis store.

Environment variables are loaded from .env file or system environment.
Missing secrets never stop the service from starting, but every weakened
guarantee is reported by validate_configuration() and logged at startup.
"""

import secrets
from functools import lru_cache
from typing import Any, List, Optional

from pydantic import Field, PrivateAttr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


PLACEHOLDER_TENANT_ID = "YOUR_TENANT_ID_HERE"
PLACEHOLDER_CLIENT_ID = "YOUR_CLIENT_ID_HERE"
PLACEHOLDER_CLIENT_SECRET = "YOUR_CLIENT_SECRET_HERE"

CALLBACK_PATH = "/auth/callback"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All configuration for the OIDC client registration, the session cookie,
    the session store and the HTTP server is defined here.
    """

    # =========================================================================
    # Identity Provider (Microsoft Entra ID)
    # =========================================================================

    TENANT_ID: str = Field(
        default=PLACEHOLDER_TENANT_ID,
        description="Entra ID tenant identifier (GUID or verified domain)",
        min_length=1,
    )

    CLIENT_ID: str = Field(
        default=PLACEHOLDER_CLIENT_ID,
        description="Application (client) ID registered for this BFF",
        min_length=1,
    )

    CLIENT_SECRET: str = Field(
        default=PLACEHOLDER_CLIENT_SECRET,
        description="Client secret used at the token endpoint",
    )

    AUTHORITY_HOST: str = Field(
        default="https://login.microsoftonline.com",
        description="Identity provider host, without trailing slash",
    )

    OIDC_SCOPES: str = Field(
        default="openid profile email User.Read",
        description="Space-separated scopes requested during login",
    )

    PROVIDER_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Request timeout for discovery, JWKS and token calls",
        gt=0,
        le=120,
    )

    # =========================================================================
    # Public URL
    # =========================================================================

    BASE_URL: str = Field(
        default="http://localhost:8080",
        description="Externally visible base URL (drives redirect URI and Secure cookies)",
        min_length=1,
    )

    # =========================================================================
    # Session Management
    # =========================================================================

    SESSION_SECRET: Optional[str] = Field(
        None,
        description="Secret used to sign the session cookie (generated per process if unset)",
    )

    SESSION_COOKIE_NAME: str = Field(
        default="session",
        description="Name of the HttpOnly session cookie",
    )

    SESSION_MAX_AGE_SECONDS: int = Field(
        default=24 * 60 * 60,
        description="Session cookie max age and server-side TTL in seconds",
        ge=60,
        le=7 * 24 * 60 * 60,
    )

    REDIS_URL: Optional[str] = Field(
        None,
        description="Redis connection string; enables the networked session store",
    )

    REDIS_CONNECT_TIMEOUT_SECONDS: float = Field(
        default=5.0,
        description="Bounded timeout for the initial Redis connection",
        gt=0,
        le=60,
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    HOST: str = Field(default="0.0.0.0", description="Host to bind the server")

    PORT: int = Field(default=8080, description="Port to bind the server", ge=1, le=65535)

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    LOG_LEVEL: str = Field(default="INFO", description="Root logging level")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    _session_secret_generated: bool = PrivateAttr(default=False)

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def issuer_url(self) -> str:
        """Issuer identifier the ID token must carry, e.g. .../{tenant}/v2.0."""
        return f"{self.AUTHORITY_HOST}/{self.TENANT_ID}/v2.0"

    @property
    def discovery_url(self) -> str:
        return f"{self.issuer_url}/.well-known/openid-configuration"

    @property
    def redirect_uri(self) -> str:
        return f"{self.BASE_URL}{CALLBACK_PATH}"

    @property
    def logout_endpoint(self) -> str:
        return f"{self.AUTHORITY_HOST}/{self.TENANT_ID}/oauth2/v2.0/logout"

    @property
    def cookie_secure(self) -> bool:
        """Secure cookies are only sent when the public URL is HTTPS."""
        return self.BASE_URL.lower().startswith("https://")

    @property
    def scopes_list(self) -> List[str]:
        return [scope for scope in self.OIDC_SCOPES.split() if scope]

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origin URLs, or empty list if not configured.
        """
        if not self.ALLOWED_ORIGINS:
            return []

        return [
            origin.strip()
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    @property
    def session_secret_generated(self) -> bool:
        return self._session_secret_generated

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("BASE_URL", "AUTHORITY_HOST")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        """
        Validate that URL settings use http(s) and strip trailing slashes.

        Args:
            v: Raw URL string

        Returns:
            URL without trailing slash

        Raises:
            ValueError: If the scheme is not http or https
        """
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError(
                f"Invalid URL: '{v}'. Expected an http:// or https:// URL"
            )
        return v.rstrip("/")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        level = v.upper()
        if level not in allowed_levels:
            raise ValueError(f"LOG_LEVEL must be one of {allowed_levels}, got: {v}")
        return level

    @field_validator("SESSION_SECRET", "REDIS_URL", "ALLOWED_ORIGINS")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    def model_post_init(self, __context: Any) -> None:
        # Per-process key: sessions do not survive a restart or span instances.
        if not self.SESSION_SECRET:
            self.SESSION_SECRET = secrets.token_hex(32)
            self._session_secret_generated = True


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings (and a generated session
    secret, if any) are created only once during the process lifetime.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If an environment variable is present but invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate security-relevant settings and return a status report.

    Placeholder credentials and generated secrets are warnings, not errors:
    the service still starts, but the report makes the weakened guarantees
    visible so startup can log them loudly.

    Args:
        settings: Loaded settings instance

    Returns:
        Dictionary with validation status, errors and warnings.

    Example:
        >>> status = validate_configuration(get_settings())
        >>> for warning in status["warnings"]:
        ...     print(warning)
    """
    errors = []
    warnings = []

    placeholders = [
        name
        for name, value, placeholder in (
            ("TENANT_ID", settings.TENANT_ID, PLACEHOLDER_TENANT_ID),
            ("CLIENT_ID", settings.CLIENT_ID, PLACEHOLDER_CLIENT_ID),
            ("CLIENT_SECRET", settings.CLIENT_SECRET, PLACEHOLDER_CLIENT_SECRET),
        )
        if value == placeholder
    ]
    if placeholders:
        warnings.append(
            f"Using placeholder values for auth configuration: {', '.join(placeholders)}. "
            "Set TENANT_ID, CLIENT_ID, and CLIENT_SECRET environment variables."
        )

    if not settings.CLIENT_SECRET:
        warnings.append("CLIENT_SECRET is empty (the token endpoint will reject confidential-client requests)")

    if settings.session_secret_generated:
        warnings.append(
            "SESSION_SECRET is not set; generated a random per-process secret. "
            "Sessions will not survive restarts or be shared across instances."
        )
    elif len(settings.SESSION_SECRET) < 32:
        warnings.append("SESSION_SECRET is shorter than recommended (32+ chars)")

    if not settings.cookie_secure and not _is_local_url(settings.BASE_URL):
        warnings.append("BASE_URL is not HTTPS; session cookies will be sent without the Secure flag")

    if not settings.scopes_list or "openid" not in settings.scopes_list:
        errors.append("OIDC_SCOPES must include 'openid'")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
    }


def _is_local_url(url: str) -> bool:
    return "://localhost" in url or "://127.0.0.1" in url
