"""
Shared fixtures for the OIDC relying-party tests.

Provides:
- An RSA key pair and helpers to mint signed ID tokens / JWKS documents
- Settings for a confidential client on https
- ``FakeOidcClient``: an in-process IdP with programmable codes, tokens
  and refresh outcomes
- An application built with ``create_app`` around those collaborators
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import parse_qs, urlparse

import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import Request
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm

from oidc_rp.auth.client import OidcClient
from oidc_rp.auth.exceptions import TokenExchangeFailed, TokenValidationFailed
from oidc_rp.auth.nonce_store import NonceStore
from oidc_rp.auth.session import InMemorySessionStore, SessionBinding
from oidc_rp.config import Settings
from oidc_rp.main import create_app
from oidc_rp.models import Identity, TokenSet

ISSUER = "https://idp.example.com"
CLIENT_ID = "test-client-id"
REDIRECT_URI = "https://app.example.com/auth/callback"
AUTHORIZATION_ENDPOINT = f"{ISSUER}/authorize"
TEST_KID = "test-key-id-2024"


# Test RSA key pair generation for mocking JWKS
def generate_test_keys():
    """Generate RSA key pair for testing"""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend()
    )

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )

    return private_pem.decode(), private_key.public_key()


TEST_PRIVATE_KEY, TEST_PUBLIC_KEY = generate_test_keys()


def make_claims(nonce: Optional[str] = None, **overrides: Any) -> Dict[str, Any]:
    """Standard ID token claims for the test user, valid for one hour."""
    now = int(time.time())
    claims = {
        "iss": ISSUER,
        "sub": "user-123",
        "aud": CLIENT_ID,
        "exp": now + 3600,
        "iat": now,
        "email": "Test.User@Example.com",
        "name": "Test User",
    }
    if nonce is not None:
        claims["nonce"] = nonce
    claims.update(overrides)
    return {k: v for k, v in claims.items() if v is not None}


def create_mock_id_token(
    claims: Dict[str, Any],
    kid: Optional[str] = TEST_KID,
    private_key: str = TEST_PRIVATE_KEY,
) -> str:
    """Sign ``claims`` with the test private key (RS256)."""
    headers = {"kid": kid} if kid else {}
    return jwt.encode(claims, private_key, algorithm="RS256", headers=headers)


def create_mock_jwks(kid: str = TEST_KID, public_key=TEST_PUBLIC_KEY) -> Dict[str, Any]:
    """JWKS document publishing the test public key."""
    key = RSAAlgorithm.to_jwk(public_key, as_dict=True)
    key["kid"] = kid
    key["use"] = "sig"
    key["alg"] = "RS256"
    return {"keys": [key]}


def redirect_params(location: str) -> Dict[str, str]:
    """Query parameters of an authorization redirect, flattened."""
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


def make_identity(expires_in: int = 3600, **overrides: Any) -> Identity:
    values = {
        "subject": "user-123",
        "issuer": ISSUER,
        "claims": {"sub": "user-123", "iss": ISSUER, "email": "user@example.com"},
        "access_token": "access-0",
        "refresh_token": "refresh-0",
        "expires_at": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    values.update(overrides)
    return Identity(**values)


# =============================================================================
# Fake IdP
# =============================================================================

class FakeOidcClient(OidcClient):
    """
    In-process stand-in for an IdP.

    Authorization codes and refresh tokens are registered up front; any
    ID token not issued through ``issue_code``/``issue_refresh`` fails
    verification.
    """

    authorization_endpoint = AUTHORIZATION_ENDPOINT

    def __init__(self) -> None:
        self.codes: Dict[str, TokenSet] = {}
        self.id_tokens: Dict[str, Dict[str, Any]] = {}
        self.refresh_results: Dict[str, Union[TokenSet, Exception]] = {}
        self.userinfo: Dict[str, Any] = {}
        self.exchange_calls: List[Tuple[str, str, Optional[str]]] = []
        self.refresh_calls: List[str] = []

    def issue_code(
        self,
        claims: Dict[str, Any],
        code: str = "auth-code",
        refresh_token: Optional[str] = "refresh-1",
        expires_in: Optional[int] = 3600,
        with_id_token: bool = True,
    ) -> str:
        id_token = f"id-token-{code}" if with_id_token else None
        if id_token:
            self.id_tokens[id_token] = claims
        self.codes[code] = TokenSet(
            access_token=f"access-{code}",
            id_token=id_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
        )
        return code

    def issue_refresh(
        self,
        refresh_token: str,
        access_token: str = "access-refreshed",
        expires_in: Optional[int] = 3600,
        claims: Optional[Dict[str, Any]] = None,
        new_refresh_token: Optional[str] = None,
    ) -> None:
        id_token = None
        if claims is not None:
            id_token = f"id-token-{access_token}"
            self.id_tokens[id_token] = claims
        self.refresh_results[refresh_token] = TokenSet(
            access_token=access_token,
            id_token=id_token,
            refresh_token=new_refresh_token,
            expires_in=expires_in,
        )

    async def exchange_code(self, code, redirect_uri, code_verifier=None):
        self.exchange_calls.append((code, redirect_uri, code_verifier))
        tokens = self.codes.pop(code, None)
        if tokens is None:
            raise TokenExchangeFailed("invalid_grant")
        return tokens

    async def refresh(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        result = self.refresh_results.get(refresh_token)
        if result is None:
            raise TokenExchangeFailed("invalid_grant")
        if isinstance(result, Exception):
            raise result
        return result

    async def verify_id_token(self, id_token, access_token=None):
        claims = self.id_tokens.get(id_token)
        if claims is None:
            raise TokenValidationFailed("Signature verification failed")
        return dict(claims)

    async def fetch_userinfo(self, access_token):
        return dict(self.userinfo)


class FailingSessionStore(InMemorySessionStore):
    """Session backend that is down."""

    async def get(self, session_id):
        raise ConnectionError("store down")

    async def set(self, session_id, data, ttl_seconds=None):
        raise ConnectionError("store down")

    async def delete(self, session_id):
        raise ConnectionError("store down")


# =============================================================================
# Fixtures
# =============================================================================

def build_settings(**overrides: Any) -> Settings:
    values = {
        "OIDC_ISSUER_URL": ISSUER,
        "OIDC_CLIENT_ID": CLIENT_ID,
        "OIDC_CLIENT_SECRET": "test-client-secret",
        "OIDC_REDIRECT_URI": REDIRECT_URI,
        "PUBLIC_PATHS": "/health,/static/*",
        "STATE_SWEEP_INTERVAL_SECONDS": 0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return build_settings()


@pytest.fixture
def fake_idp():
    return FakeOidcClient()


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def nonce_store():
    return NonceStore(ttl_seconds=600)


@pytest.fixture
def app(settings, fake_idp, session_store, nonce_store):
    application = create_app(
        settings=settings,
        oidc_client=fake_idp,
        session_store=session_store,
        nonce_store=nonce_store,
    )

    @application.get("/reports")
    async def reports(request: Request):
        return {"user_id": request.state.user_id, "email": request.state.identity.email}

    @application.post("/reports")
    async def create_report(request: Request):
        return {"created_by": request.state.user_id}

    @application.get("/static/app.js")
    async def static_asset(request: Request):
        return {"authenticated": request.state.is_authenticated}

    return application


@pytest.fixture
def client(app):
    return TestClient(app, base_url="https://testserver", follow_redirects=False)


@pytest.fixture
def binding(session_store, settings):
    return SessionBinding(session_store, ttl_seconds=settings.SESSION_MAX_AGE_SECONDS)


@pytest.fixture
def login(client, fake_idp):
    """
    Drive a full login through the middleware and return the callback response.

    The browser asks for ``path``, follows the IdP redirect, and the fake
    IdP answers with a code whose ID token echoes the nonce.
    """

    def _login(path: str = "/reports", code: str = "auth-code", **claim_overrides: Any):
        challenge = client.get(path)
        assert challenge.status_code == 302
        params = redirect_params(challenge.headers["location"])

        fake_idp.issue_code(make_claims(nonce=params["nonce"], **claim_overrides), code=code)
        return client.get("/auth/callback", params={"code": code, "state": params["state"]})

    return _login
