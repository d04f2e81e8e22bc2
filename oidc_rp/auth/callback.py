"""
Callback handling for the OIDC authorization code flow.

The IdP redirects the browser to the registered redirect URI with either
``code`` + ``state`` or ``error``. This module:
1. Redeems the state against the nonce store (once only)
2. Exchanges the authorization code for tokens
3. Verifies the ID token and its nonce
4. Binds the identity to a fresh session id
5. Redirects to the destination recorded when the login started

Every terminal outcome is either that redirect or a generic rejection;
downstream application handlers are never invoked from here.
"""

import logging
from typing import Any, Dict, Optional

from starlette.requests import Request
from starlette.responses import Response

from ..config import Settings
from ..models import Identity, PendingAuth, TokenSet
from .client import OidcClient
from .exceptions import (
    AuthenticationError,
    IdpError,
    InsecureTransport,
    InvalidOrExpiredState,
    MalformedCallback,
    SessionStoreUnavailable,
    TokenExchangeFailed,
    TokenValidationFailed,
)
from .nonce_store import NonceStore
from .responses import failure_response, redirect
from .session import (
    SessionBinding,
    get_session_id,
    new_session_id,
    set_session_cookie,
)
from .utils import compute_expires_at, validate_nonce

logger = logging.getLogger(__name__)


def build_identity(
    claims: Dict[str, Any],
    tokens: TokenSet,
    refresh_token: Optional[str] = None,
    leeway_seconds: int = 0,
) -> Identity:
    """
    Construct an Identity from verified claims and the token set.

    Args:
        claims: Verified ID token claims (plus userinfo, if merged)
        tokens: Token endpoint response
        refresh_token: Fallback refresh token when the response carries none
        leeway_seconds: Expiry leeway; an ``expires_in`` shorter than twice
            this is raised so the identity is not born expired
    """
    min_lifetime = 2 * leeway_seconds
    if tokens.expires_in is not None and tokens.expires_in < min_lifetime:
        logger.warning(
            f"Token lifetime {tokens.expires_in}s is within the expiry leeway, using {min_lifetime}s",
            extra={"user_id": claims["sub"]},
        )

    return Identity(
        subject=claims["sub"],
        issuer=claims["iss"],
        claims=claims,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token or refresh_token,
        expires_at=compute_expires_at(tokens, claims, min_lifetime_seconds=min_lifetime),
    )


class CallbackHandler:
    """
    Handles requests to the redirect URI.

    Args:
        settings: Application settings
        nonce_store: Store of pending logins
        session_binding: Identity persistence
        client: IdP capability
    """

    def __init__(
        self,
        settings: Settings,
        nonce_store: NonceStore,
        session_binding: SessionBinding,
        client: OidcClient,
    ) -> None:
        self._settings = settings
        self._nonce_store = nonce_store
        self._sessions = session_binding
        self._client = client

    async def handle(self, request: Request) -> Response:
        """Run the callback and convert any failure into a generic rejection."""
        try:
            return await self._complete_login(request)
        except AuthenticationError as exc:
            logger.warning(
                f"Login callback rejected: {exc.reason}",
                extra={
                    "path": request.url.path,
                    "failure": type(exc).__name__,
                },
            )
            return failure_response(exc, self._settings)
        except SessionStoreUnavailable as exc:
            logger.error(
                f"Login callback failed, session store unavailable: {exc.reason}",
                extra={"path": request.url.path},
            )
            return failure_response(exc, self._settings)

    async def _complete_login(self, request: Request) -> Response:
        if request.method != "GET":
            raise MalformedCallback(f"Unsupported callback method {request.method}")

        params = request.query_params
        state = params.get("state")
        code = params.get("code")
        error = params.get("error")

        # Handle errors reported by the IdP
        if error:
            if state:
                self._nonce_store.consume(state)
            raise IdpError(error, params.get("error_description"))

        # Validate required parameters
        if not state or not code:
            raise MalformedCallback("Missing required parameters (code or state)")

        # Validate state parameter (CSRF protection, single use)
        pending = self._nonce_store.consume(state)
        if pending is None:
            raise InvalidOrExpiredState("Unknown, expired or replayed state")

        # Never hand out a session id over plain HTTP unless development opted in
        if request.url.scheme != "https" and not self._settings.ALLOW_INSECURE_CALLBACK:
            raise InsecureTransport("Callback received over plain HTTP")

        tokens = await self._client.exchange_code(
            code=code,
            redirect_uri=self._settings.OIDC_REDIRECT_URI,
            code_verifier=pending.code_verifier,
        )
        if not tokens.id_token:
            raise TokenExchangeFailed("No ID token received from identity provider")

        claims = await self._verify(tokens, pending)

        if self._settings.OIDC_FETCH_USERINFO:
            claims = await self._merge_userinfo(claims, tokens.access_token)

        identity = build_identity(claims, tokens, leeway_seconds=self._settings.TOKEN_LEEWAY_SECONDS)

        # Rotate the session id on every login
        previous_session_id = get_session_id(request, self._settings)
        if previous_session_id:
            await self._sessions.invalidate(previous_session_id)

        session_id = new_session_id()
        await self._sessions.store(session_id, identity)

        logger.info(
            "Login completed",
            extra={"user_id": identity.subject, "issuer": identity.issuer},
        )

        response = redirect(pending.destination_url)
        set_session_cookie(response, session_id, self._settings)
        return response

    async def _verify(self, tokens: TokenSet, pending: PendingAuth) -> Dict[str, Any]:
        claims = await self._client.verify_id_token(
            tokens.id_token,
            access_token=tokens.access_token,
        )

        # Ties this token to this login attempt
        if not validate_nonce(claims, pending.nonce):
            raise TokenValidationFailed("Nonce mismatch")

        if not claims.get("sub") or not claims.get("iss"):
            raise TokenValidationFailed("ID token missing 'sub' or 'iss'")

        return claims

    async def _merge_userinfo(self, claims: Dict[str, Any], access_token: str) -> Dict[str, Any]:
        userinfo = await self._client.fetch_userinfo(access_token)

        if userinfo.get("sub") != claims["sub"]:
            raise TokenValidationFailed("Userinfo 'sub' does not match ID token")

        # ID token claims are authoritative
        return {**userinfo, **claims}
