"""
OpenID Connect client capability.

``OidcClient`` is the narrow interface the middleware and callback handler
depend on. ``HttpxOidcClient`` implements it against a real IdP:
- Discovery document loading (startup)
- Authorization code and refresh token grants
- JWKS fetching with caching and forced refresh on key rotation
- ID token signature and claim verification (python-jose)
- Userinfo lookups

Every network call is bounded by a timeout. Timeouts and transport
failures surface as ``IdpUnreachable``; IdP rejections as
``TokenExchangeFailed``; bad tokens as ``TokenValidationFailed``.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
from jose import JWTError, jwk, jwt
from jose.exceptions import ExpiredSignatureError, JWKError, JWTClaimsError

from ..config import Settings
from ..models import TokenSet
from .exceptions import (
    ConfigurationError,
    IdpUnreachable,
    TokenExchangeFailed,
    TokenValidationFailed,
)
from .utils import get_signing_key

logger = logging.getLogger(__name__)


# =============================================================================
# Provider Metadata
# =============================================================================

class ProviderMetadata:
    """
    Proxy class for a remote OpenID Connect discovery document.
    """

    REQUIRED_FIELDS = ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri")

    def __init__(self, data: Dict[str, Any]) -> None:
        missing = [name for name in self.REQUIRED_FIELDS if not data.get(name)]
        if missing:
            raise ConfigurationError(
                f"Discovery document missing required fields: {', '.join(missing)}"
            )
        self._data = data

    @property
    def issuer(self) -> str:
        return self._data["issuer"]

    @property
    def authorization_endpoint(self) -> str:
        return self._data["authorization_endpoint"]

    @property
    def token_endpoint(self) -> str:
        return self._data["token_endpoint"]

    @property
    def jwks_uri(self) -> str:
        return self._data["jwks_uri"]

    @property
    def userinfo_endpoint(self) -> Optional[str]:
        return self._data.get("userinfo_endpoint")

    @property
    def signing_algorithms(self) -> list:
        return self._data.get("id_token_signing_alg_values_supported") or ["RS256"]


# =============================================================================
# Capability Interface
# =============================================================================

class OidcClient(ABC):
    """What the relying party needs from an OpenID Connect provider."""

    async def discover(self) -> None:
        """Load provider metadata. Raises ConfigurationError when unusable."""
        return None

    @property
    @abstractmethod
    def authorization_endpoint(self) -> str:
        """URL the browser is redirected to for login."""

    @abstractmethod
    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenSet:
        """Redeem an authorization code at the token endpoint."""

    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenSet:
        """Obtain a fresh token set with a refresh token."""

    @abstractmethod
    async def verify_id_token(
        self,
        id_token: str,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Verify signature, issuer, audience and expiry; return the claims."""

    @abstractmethod
    async def fetch_userinfo(self, access_token: str) -> Dict[str, Any]:
        """Return the userinfo claims for an access token."""


# =============================================================================
# Network Implementation
# =============================================================================

class HttpxOidcClient(OidcClient):
    """
    OidcClient backed by httpx and python-jose.

    Args:
        settings: Application settings (issuer, client credentials, timeouts)
        transport: Optional httpx transport, used by tests to stand in for the IdP
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._metadata: Optional[ProviderMetadata] = None
        self._jwks_cache: Optional[Dict[str, Any]] = None
        self._jwks_cache_time: float = 0.0

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self._settings.IDP_TIMEOUT_SECONDS,
        )

    @property
    def metadata(self) -> ProviderMetadata:
        if self._metadata is None:
            raise ConfigurationError("Provider metadata not loaded; call discover() at startup")
        return self._metadata

    @property
    def authorization_endpoint(self) -> str:
        return self.metadata.authorization_endpoint

    # =========================================================================
    # Discovery
    # =========================================================================

    async def discover(self) -> None:
        """
        Fetch and validate the discovery document.

        Raises:
            ConfigurationError: If the document is unreachable, malformed,
                                or names a different issuer
        """
        url = self._settings.discovery_url

        try:
            async with self._http_client() as client:
                response = await client.get(url)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise ConfigurationError(f"Unable to load discovery document from {url}: {e}") from e
        except ValueError as e:
            raise ConfigurationError(f"Discovery document at {url} is not JSON") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Discovery document at {url} is not a JSON object")

        metadata = ProviderMetadata(data)

        if metadata.issuer.rstrip("/") != self._settings.OIDC_ISSUER_URL.rstrip("/"):
            raise ConfigurationError(
                f"Discovery issuer '{metadata.issuer}' does not match "
                f"configured issuer '{self._settings.OIDC_ISSUER_URL}'"
            )

        self._metadata = metadata
        logger.info(
            "Loaded OpenID provider metadata",
            extra={"issuer": metadata.issuer, "jwks_uri": metadata.jwks_uri},
        )

    # =========================================================================
    # Token Endpoint
    # =========================================================================

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenSet:
        """
        Exchange authorization code for access and ID tokens.

        Args:
            code: Authorization code from callback
            redirect_uri: Redirect URI (must match the one used in login)
            code_verifier: PKCE code verifier

        Raises:
            TokenExchangeFailed: If the IdP rejects the grant
            IdpUnreachable: If the IdP cannot be reached in time
        """
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }

        if code_verifier:
            payload["code_verifier"] = code_verifier

        tokens = await self._token_request(payload)

        if not tokens.id_token:
            raise TokenExchangeFailed("Token response missing id_token")

        return tokens

    async def refresh(self, refresh_token: str) -> TokenSet:
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "scope": " ".join(self._settings.scopes_list),
        }
        return await self._token_request(payload)

    async def _token_request(self, payload: Dict[str, str]) -> TokenSet:
        payload = dict(payload, client_id=self._settings.OIDC_CLIENT_ID)

        # client_secret_post
        if self._settings.OIDC_CLIENT_SECRET:
            payload["client_secret"] = self._settings.OIDC_CLIENT_SECRET

        try:
            async with self._http_client() as client:
                response = await client.post(
                    self.metadata.token_endpoint,
                    data=payload,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as e:
            raise IdpUnreachable(f"Token endpoint timed out: {e}") from e
        except httpx.HTTPError as e:
            raise IdpUnreachable(f"Token endpoint unreachable: {e}") from e

        if not response.is_success:
            error_msg = _error_from_response(response)
            raise TokenExchangeFailed(
                f"Token endpoint returned {response.status_code}: {error_msg}"
            )

        try:
            return TokenSet.model_validate(response.json())
        except ValueError as e:
            raise TokenExchangeFailed(f"Invalid token endpoint response: {e}") from e

    # =========================================================================
    # JWKS
    # =========================================================================

    async def fetch_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the IdP JWKS with caching.

        Results are cached based on the JWKS_CACHE_SECONDS setting.

        Raises:
            IdpUnreachable: If the JWKS endpoint is unreachable
            TokenValidationFailed: If the response is not a key set
        """
        current_time = time.monotonic()
        cache_ttl = self._settings.JWKS_CACHE_SECONDS

        if (
            not force_refresh
            and self._jwks_cache is not None
            and (current_time - self._jwks_cache_time) < cache_ttl
        ):
            return self._jwks_cache

        try:
            async with self._http_client() as client:
                response = await client.get(self.metadata.jwks_uri)
                response.raise_for_status()
                jwks_data = response.json()
        except httpx.HTTPError as e:
            raise IdpUnreachable(f"JWKS endpoint unreachable: {e}") from e
        except ValueError as e:
            raise TokenValidationFailed("JWKS response is not JSON") from e

        if not isinstance(jwks_data, dict) or "keys" not in jwks_data:
            raise TokenValidationFailed("Invalid JWKS response: missing 'keys' field")

        self._jwks_cache = jwks_data
        self._jwks_cache_time = current_time

        return jwks_data

    # =========================================================================
    # ID Token Verification
    # =========================================================================

    async def verify_id_token(
        self,
        id_token: str,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Verify and decode an ID token.

        Checks signature against the IdP keys, 'iss' against the configured
        issuer, 'aud' against the client id, and 'exp'/'iat'/'nbf' with the
        configured leeway. The nonce is checked by the caller.

        Raises:
            TokenValidationFailed: If the token is invalid in any way
            IdpUnreachable: If the JWKS endpoint is unreachable
        """
        try:
            header = jwt.get_unverified_header(id_token)
            jwks = await self.fetch_jwks()
            signing_key = get_signing_key(id_token, jwks)

            if not signing_key:
                # Keys may have rotated since the cache was filled
                jwks = await self.fetch_jwks(force_refresh=True)
                signing_key = get_signing_key(id_token, jwks)

                if not signing_key:
                    raise TokenValidationFailed(
                        "Unable to find matching signing key in JWKS"
                    )
        except JWTError as e:
            raise TokenValidationFailed(f"Malformed ID token: {e}") from e

        algorithm = header.get("alg")
        if algorithm not in self.metadata.signing_algorithms or algorithm in (None, "none"):
            raise TokenValidationFailed(f"Unexpected ID token algorithm: {algorithm}")

        try:
            public_key = jwk.construct(signing_key, algorithm=algorithm)
        except JWKError as e:
            raise TokenValidationFailed(f"Failed to construct public key from JWK: {e}") from e

        try:
            claims = jwt.decode(
                id_token,
                public_key,
                algorithms=[algorithm],
                audience=self._settings.OIDC_CLIENT_ID,
                issuer=self.metadata.issuer,
                access_token=access_token,
                options={
                    "verify_signature": True,
                    "verify_aud": True,
                    "verify_iat": True,
                    "verify_exp": True,
                    "verify_nbf": True,
                    "verify_iss": True,
                    "verify_sub": True,
                    "verify_at_hash": access_token is not None,
                    "require_aud": True,
                    "require_iss": True,
                    "require_exp": True,
                    "require_iat": True,
                    "require_sub": True,
                    "leeway": self._settings.TOKEN_LEEWAY_SECONDS,
                },
            )
        except ExpiredSignatureError as e:
            raise TokenValidationFailed("ID token has expired") from e
        except JWTClaimsError as e:
            raise TokenValidationFailed(f"Invalid token claims: {e}") from e
        except JWTError as e:
            raise TokenValidationFailed(f"Token verification failed: {e}") from e

        # Multi-audience tokens must name us as authorized party
        audience = claims.get("aud")
        if isinstance(audience, list) and len(audience) > 1:
            if claims.get("azp") != self._settings.OIDC_CLIENT_ID:
                raise TokenValidationFailed("Multi-audience ID token without matching 'azp'")

        return claims

    # =========================================================================
    # Userinfo
    # =========================================================================

    async def fetch_userinfo(self, access_token: str) -> Dict[str, Any]:
        endpoint = self.metadata.userinfo_endpoint
        if not endpoint:
            raise TokenExchangeFailed("IdP does not publish a userinfo endpoint")

        try:
            async with self._http_client() as client:
                response = await client.get(
                    endpoint,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                )
        except httpx.HTTPError as e:
            raise IdpUnreachable(f"Userinfo endpoint unreachable: {e}") from e

        if not response.is_success:
            raise TokenExchangeFailed(f"Userinfo endpoint returned {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise TokenExchangeFailed("Userinfo response is not JSON") from e

        if not isinstance(data, dict):
            raise TokenExchangeFailed("Userinfo response is not a JSON object")

        return data


def _error_from_response(response: httpx.Response) -> str:
    """Pull the OAuth error code/description from a failed token response."""
    if response.headers.get("content-type", "").startswith("application/json"):
        try:
            error_data = response.json()
        except ValueError:
            error_data = {}
        if isinstance(error_data, dict):
            return (
                error_data.get("error_description")
                or error_data.get("error")
                or "Token exchange failed"
            )
    return "Token exchange failed"
