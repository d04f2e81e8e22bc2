"""
OpenID Connect Authentication Middleware
========================================

Intercepts every request and decides, per request, whether to pass it
through with a verified identity, redirect the browser to the IdP, or
reject it.

Routing, in order:
    callback path  -> CallbackHandler
    LOGIN_PATH     -> start a login explicitly (GET)
    LOGOUT_PATH    -> drop the local session (GET or POST)
    PUBLIC_PATHS   -> pass through anonymously
    anything else  -> session state machine

Session states:
    ValidSession    identity attached to request.state, downstream runs
    ExpiredSession  synchronous refresh; success -> ValidSession,
                    failure -> session invalidated, NoSession
    NoSession       GET -> redirect to the IdP; other methods -> 401

Downstream handlers read ``request.state.identity``,
``request.state.user_id`` and ``request.state.is_authenticated``.
"""

import asyncio
import logging
import weakref
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from ..config import Settings
from ..models import Identity
from .callback import CallbackHandler, build_identity
from .client import OidcClient
from .exceptions import (
    AuthenticationError,
    SessionStoreUnavailable,
    TokenExchangeFailed,
    TokenValidationFailed,
)
from .nonce_store import NonceStore
from .responses import json_rejection, redirect
from .session import SessionBinding, clear_session_cookie, get_session_id
from .utils import (
    build_authorization_url,
    generate_code_challenge,
    generate_code_verifier,
    is_safe_destination,
    request_destination,
)

logger = logging.getLogger(__name__)


class OidcAuthMiddleware(BaseHTTPMiddleware):
    """
    Starlette middleware enforcing OIDC login.

    Usage:
        app.add_middleware(
            OidcAuthMiddleware,
            settings=settings,
            nonce_store=NonceStore(ttl_seconds=settings.STATE_TTL_SECONDS),
            session_binding=SessionBinding(InMemorySessionStore()),
            client=HttpxOidcClient(settings),
        )
    """

    def __init__(
        self,
        app: ASGIApp,
        settings: Settings,
        nonce_store: NonceStore,
        session_binding: SessionBinding,
        client: OidcClient,
    ) -> None:
        super().__init__(app)
        self._settings = settings
        self._nonce_store = nonce_store
        self._sessions = session_binding
        self._client = client
        self._callback = CallbackHandler(settings, nonce_store, session_binding, client)
        self._refresh_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        method = request.method

        if path == self._settings.callback_path:
            return await self._callback.handle(request)

        if path == self._settings.LOGIN_PATH and method == "GET":
            destination = request.query_params.get("next")
            if not is_safe_destination(destination):
                destination = self._settings.LANDING_PATH
            return self._redirect_to_idp(destination)

        if path == self._settings.LOGOUT_PATH and method in ("GET", "POST"):
            return await self._logout(request)

        if self._is_public(path):
            self._attach(request, None)
            return await call_next(request)

        try:
            identity = await self._resolve_identity(request)
        except SessionStoreUnavailable as exc:
            logger.error(
                f"Session store unavailable, denying request: {exc.reason}",
                extra={"path": path, "method": method},
            )
            return json_rejection(503, "service_unavailable", "Please try again shortly")

        if identity is not None:
            self._attach(request, identity)
            return await call_next(request)

        # Replaying a non-GET request after the IdP round trip is unsafe
        if method != "GET":
            logger.info(
                "Rejected unauthenticated request",
                extra={"path": path, "method": method},
            )
            return json_rejection(401, "unauthenticated", "Authentication required")

        response = self._redirect_to_idp(request_destination(request))
        if get_session_id(request, self._settings):
            clear_session_cookie(response, self._settings)
        return response

    # =========================================================================
    # Session State
    # =========================================================================

    async def _resolve_identity(self, request: Request) -> Optional[Identity]:
        session_id = get_session_id(request, self._settings)
        if not session_id:
            return None

        identity = await self._sessions.load(session_id)
        if identity is None:
            return None

        if not identity.is_expired(leeway_seconds=self._settings.TOKEN_LEEWAY_SECONDS):
            return identity

        return await self._refresh(session_id)

    async def _refresh(self, session_id: str) -> Optional[Identity]:
        """
        Refresh an expired session in the request path.

        Concurrent requests of one session share a lock so the refresh
        token is redeemed once; the others pick up the stored result.
        Logout takes the same lock.
        """
        async with self._session_lock(session_id):
            current = await self._sessions.load(session_id)
            if current is None:
                return None

            if not current.is_expired(leeway_seconds=self._settings.TOKEN_LEEWAY_SECONDS):
                return current

            if not current.refresh_token:
                logger.info("Session expired without refresh token", extra={"user_id": current.subject})
                await self._sessions.invalidate(session_id)
                return None

            try:
                refreshed = await self._refresh_identity(current)
            except AuthenticationError as exc:
                logger.warning(
                    f"Session refresh failed: {exc.reason}",
                    extra={"user_id": current.subject, "failure": type(exc).__name__},
                )
                await self._sessions.invalidate(session_id)
                return None

            await self._sessions.store(session_id, refreshed)
            logger.info("Session refreshed", extra={"user_id": refreshed.subject})
            return refreshed

    async def _refresh_identity(self, current: Identity) -> Identity:
        tokens = await self._client.refresh(current.refresh_token)

        claims = dict(current.claims)
        if tokens.id_token:
            new_claims = await self._client.verify_id_token(
                tokens.id_token,
                access_token=tokens.access_token,
            )
            if new_claims.get("sub") != current.subject or new_claims.get("iss") != current.issuer:
                raise TokenValidationFailed("Refreshed ID token names a different subject")
            claims.update(new_claims)

        refreshed = build_identity(
            claims,
            tokens,
            refresh_token=current.refresh_token,
            leeway_seconds=self._settings.TOKEN_LEEWAY_SECONDS,
        )

        if refreshed.expires_at <= current.expires_at:
            raise TokenExchangeFailed("Refreshed tokens carry no later expiry")

        return refreshed

    # =========================================================================
    # Login / Logout
    # =========================================================================

    def _redirect_to_idp(self, destination: str) -> Response:
        code_verifier = generate_code_verifier() if self._settings.OIDC_USE_PKCE else None
        state, nonce = self._nonce_store.create(destination, code_verifier=code_verifier)

        params = {
            "response_type": "code",
            "client_id": self._settings.OIDC_CLIENT_ID,
            "redirect_uri": self._settings.OIDC_REDIRECT_URI,
            "scope": " ".join(self._settings.scopes_list),
            "state": state,
            "nonce": nonce,
        }

        if code_verifier:
            params["code_challenge"] = generate_code_challenge(code_verifier)
            params["code_challenge_method"] = "S256"

        authorization_url = build_authorization_url(self._client.authorization_endpoint, params)
        return redirect(authorization_url)

    async def _logout(self, request: Request) -> Response:
        session_id = get_session_id(request, self._settings)

        response = redirect(self._settings.LOGOUT_REDIRECT_PATH, status_code=303)
        clear_session_cookie(response, self._settings)

        if session_id:
            try:
                # Waits out an in-flight refresh so it cannot store the session again
                async with self._session_lock(session_id):
                    await self._sessions.invalidate(session_id)
            except SessionStoreUnavailable as exc:
                logger.error(
                    f"Logout could not remove the session record: {exc.reason}",
                    extra={"path": request.url.path},
                )
                return json_rejection(503, "service_unavailable", "Please try again shortly")

        logger.info("Logged out", extra={"had_session": session_id is not None})
        return response

    # =========================================================================
    # Helpers
    # =========================================================================

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._refresh_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[session_id] = lock
        return lock

    def _is_public(self, path: str) -> bool:
        for public_path in self._settings.public_paths_list:
            if public_path.endswith("*"):
                if path.startswith(public_path[:-1]):
                    return True
            elif path == public_path:
                return True
        return False

    @staticmethod
    def _attach(request: Request, identity: Optional[Identity]) -> None:
        request.state.identity = identity
        request.state.user_id = identity.subject if identity else None
        request.state.is_authenticated = identity is not None
