"""
Auth Package
============

OpenID Connect relying-party core.

Main Components:
----------------
- nonce_store.py: pending logins keyed by state (single use, TTL)
- client.py: IdP capability interface and the httpx implementation
- session.py: session store interface, identity binding, cookie helpers
- middleware.py: per-request authentication state machine
- callback.py: redirect URI handling
- routes.py: /auth/me profile endpoint

Usage:
------
    from oidc_rp.auth import OidcAuthMiddleware, get_current_identity
"""

from .callback import CallbackHandler
from .client import HttpxOidcClient, OidcClient, ProviderMetadata
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    IdpError,
    IdpUnreachable,
    InsecureTransport,
    InvalidOrExpiredState,
    MalformedCallback,
    OidcError,
    SessionStoreUnavailable,
    TokenExchangeFailed,
    TokenValidationFailed,
)
from .middleware import OidcAuthMiddleware
from .nonce_store import NonceStore
from .routes import auth_router
from .session import (
    InMemorySessionStore,
    SessionBinding,
    SessionStore,
    get_current_identity,
    get_optional_identity,
)

__all__ = [
    "CallbackHandler",
    "HttpxOidcClient",
    "OidcClient",
    "ProviderMetadata",
    "OidcAuthMiddleware",
    "NonceStore",
    "auth_router",
    "InMemorySessionStore",
    "SessionBinding",
    "SessionStore",
    "get_current_identity",
    "get_optional_identity",
    "AuthenticationError",
    "ConfigurationError",
    "IdpError",
    "IdpUnreachable",
    "InsecureTransport",
    "InvalidOrExpiredState",
    "MalformedCallback",
    "OidcError",
    "SessionStoreUnavailable",
    "TokenExchangeFailed",
    "TokenValidationFailed",
]
