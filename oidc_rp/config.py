"""
Configuration module for the OIDC relying-party middleware.

This module uses Pydantic Settings to load and validate environment variables
for the identity provider, the session cookie, state/nonce handling and the
HTTP server.

Environment variables are loaded from .env file or system environment.
"""

import re
from functools import lru_cache
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_SCOPE_SPLIT = re.compile(r"[,\s]+")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All configuration for the identity provider (OIDC), session cookies,
    the login state machine and the server are defined here.
    """

    # =========================================================================
    # Identity Provider (OIDC)
    # =========================================================================

    OIDC_ISSUER_URL: str = Field(
        ...,
        description="Issuer identifier of the IdP (e.g., https://login.example.com/realms/main)",
        min_length=1,
    )

    OIDC_DISCOVERY_URL: Optional[str] = Field(
        None,
        description="Discovery document URL (defaults to <issuer>/.well-known/openid-configuration)",
    )

    OIDC_CLIENT_ID: str = Field(
        ...,
        description="Client ID registered with the IdP",
        min_length=1,
    )

    OIDC_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Client secret (optional for public clients using PKCE)",
    )

    OIDC_REDIRECT_URI: str = Field(
        ...,
        description="Redirect URI registered with the IdP (e.g., https://app.example.com/auth/callback)",
        min_length=1,
    )

    OIDC_SCOPES: str = Field(
        default="openid profile email",
        description="Requested scopes, comma or space separated; must include 'openid'",
    )

    OIDC_USE_PKCE: bool = Field(
        default=True,
        description="Send a PKCE S256 code challenge with the authorization request",
    )

    OIDC_FETCH_USERINFO: bool = Field(
        default=False,
        description="Merge userinfo endpoint claims into the identity after login",
    )

    # =========================================================================
    # Middleware Routing
    # =========================================================================

    LOGIN_PATH: str = Field(default="/login", description="Path that starts a login explicitly")
    LOGOUT_PATH: str = Field(default="/logout", description="Path that ends the local session")
    LANDING_PATH: str = Field(default="/", description="Destination after an explicit login")
    LOGOUT_REDIRECT_PATH: str = Field(default="/", description="Destination after logout")

    LOGIN_FAILED_PATH: Optional[str] = Field(
        None,
        description="Redirect here on authentication failure instead of rendering a 401 page",
    )

    PUBLIC_PATHS: str = Field(
        default="/health",
        description="Comma-separated paths that bypass authentication ('/static/*' matches a prefix)",
    )

    # =========================================================================
    # Session Cookie / Store
    # =========================================================================

    SESSION_COOKIE_NAME: str = Field(default="oidc_session", min_length=1)

    SESSION_COOKIE_SECURE: bool = Field(
        default=True,
        description="Mark the session cookie Secure",
    )

    ALLOW_INSECURE_CALLBACK: bool = Field(
        default=False,
        description="Accept the callback over plain HTTP. Local development only: "
        "the session id then travels unencrypted",
    )

    SESSION_COOKIE_SAMESITE: str = Field(default="lax")

    SESSION_MAX_AGE_SECONDS: int = Field(
        default=8 * 3600,
        description="Lifetime of a session record in the store and of the cookie",
        ge=60,
        le=30 * 86400,
    )

    # =========================================================================
    # State / Nonce Handling
    # =========================================================================

    STATE_TTL_SECONDS: int = Field(
        default=600,
        description="How long a pending login (state + nonce) stays valid",
        ge=30,
        le=3600,
    )

    STATE_SWEEP_INTERVAL_SECONDS: int = Field(
        default=60,
        description="Interval of the background sweep of expired pending logins (0 disables)",
        ge=0,
    )

    STATE_MAX_PENDING: int = Field(
        default=10000,
        description="Upper bound on concurrently pending logins",
        ge=1,
    )

    # =========================================================================
    # IdP Network / Token Validation
    # =========================================================================

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache the IdP JWKS in seconds",
        ge=0,
        le=86400,
    )

    IDP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for every call to the IdP",
        gt=0,
        le=120,
    )

    TOKEN_LEEWAY_SECONDS: int = Field(
        default=10,
        description="Clock skew tolerance for token expiry checks",
        ge=0,
        le=300,
    )

    # =========================================================================
    # Server
    # =========================================================================

    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8080, ge=1, le=65535)
    LOG_LEVEL: str = Field(default="INFO")

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
    def scopes_list(self) -> List[str]:
        """Requested scopes as a de-duplicated list, order preserved."""
        scopes: List[str] = []
        for scope in _SCOPE_SPLIT.split(self.OIDC_SCOPES):
            if scope and scope not in scopes:
                scopes.append(scope)
        return scopes

    @property
    def public_paths_list(self) -> List[str]:
        return [
            path.strip()
            for path in self.PUBLIC_PATHS.split(",")
            if path.strip()
        ]

    @property
    def callback_path(self) -> str:
        """Path component of the redirect URI; the middleware routes it to the callback handler."""
        return urlparse(self.OIDC_REDIRECT_URI).path or "/"

    @property
    def discovery_url(self) -> str:
        if self.OIDC_DISCOVERY_URL:
            return self.OIDC_DISCOVERY_URL
        return f"{self.OIDC_ISSUER_URL.rstrip('/')}/.well-known/openid-configuration"

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("OIDC_ISSUER_URL", "OIDC_REDIRECT_URI", "OIDC_DISCOVERY_URL")
    @classmethod
    def validate_absolute_url(cls, v: Optional[str]) -> Optional[str]:
        """
        Require an absolute http(s) URL.

        Raises:
            ValueError: If the URL has no scheme or host
        """
        if v is None:
            return v

        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(
                f"Invalid URL: '{v}'. Expected an absolute http(s) URL"
            )

        return v

    @field_validator("OIDC_SCOPES")
    @classmethod
    def validate_scopes(cls, v: str) -> str:
        scopes = [s for s in _SCOPE_SPLIT.split(v) if s]
        if "openid" not in scopes:
            raise ValueError("OIDC_SCOPES must include 'openid'")
        return v

    @field_validator(
        "LOGIN_PATH",
        "LOGOUT_PATH",
        "LANDING_PATH",
        "LOGOUT_REDIRECT_PATH",
        "LOGIN_FAILED_PATH",
    )
    @classmethod
    def validate_local_path(cls, v: Optional[str]) -> Optional[str]:
        """
        Require a local absolute path such as '/login'.

        Raises:
            ValueError: If the value is not a path on this host
        """
        if v is None:
            return v

        if not v.startswith("/") or v.startswith("//") or "\\" in v:
            raise ValueError(f"Invalid path: '{v}'. Expected a local path like '/login'")

        return v

    @field_validator("SESSION_COOKIE_SAMESITE")
    @classmethod
    def validate_samesite(cls, v: str) -> str:
        allowed = ["lax", "strict", "none"]

        if v.lower() not in allowed:
            raise ValueError(
                f"SESSION_COOKIE_SAMESITE must be one of {allowed}, got: {v}"
            )

        return v.lower()

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}, got: {v}")

        return v.upper()


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> Dict[str, Any]:
    """
    Validate critical configuration settings and return a status report.

    Called during application startup; errors abort the startup.

    Returns:
        Dictionary with validation status, errors and warnings.
    """
    errors = []
    warnings = []

    redirect = urlparse(settings.OIDC_REDIRECT_URI)

    if settings.callback_path in (settings.LOGIN_PATH, settings.LOGOUT_PATH):
        errors.append("OIDC_REDIRECT_URI path collides with LOGIN_PATH or LOGOUT_PATH")

    if settings.callback_path in settings.public_paths_list:
        errors.append("OIDC_REDIRECT_URI path must not be listed in PUBLIC_PATHS")

    if not settings.OIDC_CLIENT_SECRET and not settings.OIDC_USE_PKCE:
        errors.append("Public clients (no OIDC_CLIENT_SECRET) must enable OIDC_USE_PKCE")

    if settings.SESSION_COOKIE_SAMESITE == "none" and not settings.SESSION_COOKIE_SECURE:
        errors.append("SESSION_COOKIE_SAMESITE=none requires SESSION_COOKIE_SECURE")

    if redirect.scheme != "https":
        if settings.SESSION_COOKIE_SECURE:
            errors.append(
                "OIDC_REDIRECT_URI is not https but SESSION_COOKIE_SECURE is set; "
                "no session cookie could ever be issued"
            )
        elif not settings.ALLOW_INSECURE_CALLBACK:
            errors.append(
                "OIDC_REDIRECT_URI is not https; set ALLOW_INSECURE_CALLBACK "
                "to accept plain HTTP callbacks during local development"
            )
        else:
            warnings.append("OIDC_REDIRECT_URI is not https (acceptable for local development only)")

    if settings.ALLOW_INSECURE_CALLBACK:
        warnings.append("ALLOW_INSECURE_CALLBACK is set; session ids may be issued over plain HTTP")

    if not settings.OIDC_CLIENT_SECRET:
        warnings.append("OIDC_CLIENT_SECRET is not set (public client)")

    if settings.STATE_SWEEP_INTERVAL_SECONDS == 0:
        warnings.append("Background state sweep disabled; expired logins are purged lazily")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "callback_path": settings.callback_path,
        "scopes": settings.scopes_list,
    }
