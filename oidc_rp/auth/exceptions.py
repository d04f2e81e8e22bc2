"""
Authentication Error Taxonomy
=============================

Every failure the relying party can hit while authenticating a request.

Per-request failures derive from ``AuthenticationError``. They carry an
internal ``reason`` that is logged but never sent to the client: the
HTTP layer always answers with the same generic rejection so that a
caller cannot learn which validation step failed.

``ConfigurationError`` is raised at startup only and is fatal.
"""

from typing import Optional


class OidcError(Exception):
    """Base exception for the OIDC relying party."""

    def __init__(self, reason: str = "") -> None:
        super().__init__(reason)
        self.reason = reason


class ConfigurationError(OidcError):
    """Startup-time misconfiguration (bad settings, unusable discovery document)."""
    pass


# =============================================================================
# Per-request failures
# =============================================================================

class AuthenticationError(OidcError):
    """Base class for failures that reject a single request."""

    status_code: int = 401


class MalformedCallback(AuthenticationError):
    """The callback request is missing ``code`` or ``state``."""
    pass


class InvalidOrExpiredState(AuthenticationError):
    """The ``state`` is unknown, expired or already consumed."""
    pass


class IdpError(AuthenticationError):
    """The IdP redirected back with an explicit ``error`` parameter."""

    def __init__(
        self,
        error: str,
        error_description: Optional[str] = None,
    ) -> None:
        reason = f"IdP returned error '{error}'"
        if error_description:
            reason = f"{reason}: {error_description}"
        super().__init__(reason)
        self.error = error
        self.error_description = error_description


class TokenExchangeFailed(AuthenticationError):
    """The token endpoint rejected the grant or returned an unusable response."""
    pass


class IdpUnreachable(TokenExchangeFailed):
    """The IdP could not be reached within the configured timeout."""
    pass


class TokenValidationFailed(AuthenticationError):
    """The ID token failed signature, issuer, audience, expiry or nonce checks."""
    pass


class InsecureTransport(AuthenticationError):
    """A secure session cookie would have been issued over plain HTTP."""

    status_code = 403


class SessionStoreUnavailable(OidcError):
    """The external session store failed. Fatal for the request, not the process."""

    status_code: int = 503


__all__ = [
    "OidcError",
    "ConfigurationError",
    "AuthenticationError",
    "MalformedCallback",
    "InvalidOrExpiredState",
    "IdpError",
    "TokenExchangeFailed",
    "IdpUnreachable",
    "TokenValidationFailed",
    "InsecureTransport",
    "SessionStoreUnavailable",
]
