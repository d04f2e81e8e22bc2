"""
OIDC Relying Party
==================

OpenID Connect authentication middleware for FastAPI/Starlette services.

Intercepts unauthenticated requests, drives the authorization code flow
against an external identity provider, and attaches the verified
identity to ``request.state`` for downstream handlers.

Modules:
- config: environment-driven settings
- models: pending logins, token sets, identities
- auth: nonce store, IdP client, session binding, middleware, callback
- main: application factory
"""

from .config import Settings, get_settings
from .models import Identity, PendingAuth, TokenSet, UserProfile

__all__ = [
    "Settings",
    "get_settings",
    "Identity",
    "PendingAuth",
    "TokenSet",
    "UserProfile",
]
