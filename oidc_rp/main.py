"""
FastAPI Application Factory
===========================

Builds a service protected by the OIDC relying-party middleware.

Architecture:
    Browser -> OidcAuthMiddleware -> application routes
                      |
                      +-> IdP (authorization, token, JWKS, userinfo)

Routes:
    - /health        : Health check (public)
    - /auth/me       : Profile of the signed-in user
    - /              : Example protected endpoint
    - LOGIN_PATH, LOGOUT_PATH and the redirect URI path are handled by the middleware

Running the Service:
    Development:
        uvicorn oidc_rp.main:create_app --factory --reload --port 8080

    Production:
        uvicorn oidc_rp.main:create_app --factory --host 0.0.0.0 --port 8080 --proxy-headers
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .auth.client import HttpxOidcClient, OidcClient
from .auth.exceptions import ConfigurationError
from .auth.middleware import OidcAuthMiddleware
from .auth.nonce_store import NonceStore
from .auth.routes import auth_router
from .auth.session import InMemorySessionStore, SessionBinding, SessionStore
from .config import Settings, get_settings, validate_configuration

SERVICE_NAME = "oidc-rp"
SERVICE_VERSION = "1.0.0"


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def _load_settings() -> Settings:
    try:
        return get_settings()
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Validate configuration (errors abort startup)
        - Load the IdP discovery document (failure aborts startup)
        - Start the periodic sweep of expired pending logins

    Shutdown tasks:
        - Stop the sweep
    """
    settings: Settings = app.state.settings
    logger = logging.getLogger("oidc_rp.main")

    report = validate_configuration(settings)
    for warning in report["warnings"]:
        logger.warning(f"Configuration warning: {warning}")
    if not report["valid"]:
        raise ConfigurationError("; ".join(report["errors"]))

    await app.state.oidc_client.discover()

    nonce_store: NonceStore = app.state.nonce_store
    if settings.STATE_SWEEP_INTERVAL_SECONDS > 0:
        nonce_store.start_sweeper(settings.STATE_SWEEP_INTERVAL_SECONDS)

    logger.info(
        "OIDC relying party started",
        extra={
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "issuer": settings.OIDC_ISSUER_URL,
            "callback_path": settings.callback_path,
        }
    )

    yield

    logger.info("Shutting down OIDC relying party")
    await nonce_store.stop_sweeper()


def create_app(
    settings: Optional[Settings] = None,
    oidc_client: Optional[OidcClient] = None,
    session_store: Optional[SessionStore] = None,
    nonce_store: Optional[NonceStore] = None,
) -> FastAPI:
    """
    Application factory function.

    Every collaborator can be injected; defaults are built from settings.

    Returns:
        FastAPI: Configured application instance

    Raises:
        ConfigurationError: If settings cannot be loaded
    """
    settings = settings if settings is not None else _load_settings()
    setup_logging(settings.LOG_LEVEL)

    oidc_client = oidc_client if oidc_client is not None else HttpxOidcClient(settings)
    # Stores define __len__, so an injected empty store is falsy
    if session_store is None:
        session_store = InMemorySessionStore()
    session_binding = SessionBinding(session_store, ttl_seconds=settings.SESSION_MAX_AGE_SECONDS)
    if nonce_store is None:
        nonce_store = NonceStore(
            ttl_seconds=settings.STATE_TTL_SECONDS,
            max_entries=settings.STATE_MAX_PENDING,
        )

    app = FastAPI(
        title="OIDC Relying Party",
        description="OpenID Connect authentication middleware",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.oidc_client = oidc_client
    app.state.session_binding = session_binding
    app.state.nonce_store = nonce_store

    app.add_middleware(
        OidcAuthMiddleware,
        settings=settings,
        nonce_store=nonce_store,
        session_binding=session_binding,
        client=oidc_client,
    )

    app.include_router(auth_router)

    @app.get("/health", tags=["System"])
    async def health_check() -> Dict[str, str]:
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
        }

    @app.get("/", tags=["System"])
    async def root(request: Request) -> Dict[str, str]:
        """Example protected endpoint; the middleware has already authenticated the caller."""
        return {
            "service": SERVICE_NAME,
            "user_id": request.state.user_id,
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger = logging.getLogger("oidc_rp.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            }
        )

    return app


if __name__ == "__main__":
    settings = _load_settings()

    uvicorn.run(
        "oidc_rp.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
