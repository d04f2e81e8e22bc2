"""
Authentication utilities shared by the middleware, the callback handler
and the IdP client.

This module handles:
- Generating state, nonce and PKCE values
- Selecting the JWKS key that signed an ID token
- Nonce and expiry checks on verified claims
- Building the authorization URL and sanitizing post-login destinations
"""

import base64
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from jose import JWTError, jwt
from starlette.requests import Request

from ..models import TokenSet


# =============================================================================
# Random Values
# =============================================================================

def generate_token() -> str:
    """Return an unguessable URL-safe token with 256 bits of entropy."""
    return secrets.token_urlsafe(32)


def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43 characters)
    """
    verifier_bytes = secrets.token_bytes(32)
    return base64.urlsafe_b64encode(verifier_bytes).decode('utf-8').rstrip('=')


def generate_code_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Returns:
        Base64-URL-encoded SHA256 hash of verifier
    """
    digest = hashlib.sha256(verifier.encode('utf-8')).digest()
    return base64.urlsafe_b64encode(digest).decode('utf-8').rstrip('=')


# =============================================================================
# JWKS Key Selection
# =============================================================================

def get_signing_key(token: str, jwks: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Extract the public key from JWKS that matches the token's kid.

    A JWKS holding a single key matches tokens without a kid.

    Returns:
        Matching key from JWKS, or None if not found

    Raises:
        JWTError: If token header is malformed
    """
    try:
        unverified_header = jwt.get_unverified_header(token)
    except JWTError as e:
        raise JWTError(f"Failed to decode token header: {e}")

    keys = jwks.get("keys", [])
    kid = unverified_header.get("kid")

    if not kid:
        return keys[0] if len(keys) == 1 else None

    for key in keys:
        if key.get("kid") == kid:
            return key

    return None


# =============================================================================
# Claim Checks
# =============================================================================

def validate_nonce(claims: Mapping[str, Any], expected_nonce: Optional[str]) -> bool:
    """
    Compare the token's nonce with the one stored for this login.

    Both values must be present; the comparison is constant time.
    """
    token_nonce = claims.get("nonce")

    if not expected_nonce or not isinstance(token_nonce, str):
        return False

    return hmac.compare_digest(token_nonce.encode("utf-8"), expected_nonce.encode("utf-8"))


def get_token_expiry(claims: Mapping[str, Any]) -> Optional[datetime]:
    """
    Extract expiry datetime from token claims.

    Returns:
        Expiry datetime in UTC, or None if not present
    """
    exp = claims.get("exp")
    if isinstance(exp, (int, float)):
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    return None


def compute_expires_at(
    tokens: TokenSet,
    claims: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
    min_lifetime_seconds: int = 0,
) -> datetime:
    """
    Work out when a freshly issued token set stops being usable.

    ``expires_in`` from the token endpoint wins, raised to at least
    ``min_lifetime_seconds``; otherwise the ID token's ``exp``; otherwise
    the tokens are treated as already expired so that the next request
    refreshes them.
    """
    now = now or datetime.now(timezone.utc)

    if tokens.expires_in is not None:
        return now + timedelta(seconds=max(tokens.expires_in, min_lifetime_seconds, 0))

    if claims:
        expiry = get_token_expiry(claims)
        if expiry is not None:
            return expiry

    return now


# =============================================================================
# URLs
# =============================================================================

def build_authorization_url(endpoint: str, params: Mapping[str, str]) -> str:
    """Append OIDC parameters to the authorization endpoint, keeping any query it already has."""
    parsed = urlparse(endpoint)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunparse(parsed._replace(query=urlencode(query)))


def is_safe_destination(destination: Optional[str]) -> bool:
    """
    Accept only local absolute paths as post-login destinations.

    Rejects absolute URLs, scheme-relative '//host' forms and backslash
    tricks that browsers normalize into another host.
    """
    if not destination or not destination.startswith("/"):
        return False

    if destination.startswith("//") or "\\" in destination:
        return False

    if any(ord(ch) < 0x20 for ch in destination):
        return False

    parsed = urlparse(destination)
    return not parsed.scheme and not parsed.netloc


def request_destination(request: Request) -> str:
    """The local path and query of a request, used as the post-login destination."""
    path = request.url.path or "/"
    query = request.url.query
    destination = f"{path}?{query}" if query else path
    return destination if is_safe_destination(destination) else "/"
