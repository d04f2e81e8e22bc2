"""
Session Binding Module
======================

Maps the opaque session id held in the browser cookie to the verified
Identity stored in an external session store.

- ``SessionStore`` is the backend interface (in-memory here; a distributed
  cache or database plugs in the same way)
- ``SessionBinding`` owns the Identity encoding and translates backend
  failures into ``SessionStoreUnavailable``; it never retries
- Cookie helpers issue and clear the session cookie
- FastAPI dependencies expose the identity to route handlers
"""

import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

from fastapi import HTTPException, Request, status
from pydantic import ValidationError
from starlette.responses import Response

from ..config import Settings
from ..models import Identity
from .exceptions import SessionStoreUnavailable

logger = logging.getLogger(__name__)

SESSION_RECORD_VERSION = 1


# =============================================================================
# Session Store Backends
# =============================================================================

class SessionStore(ABC):
    """Opaque key-value persistence keyed by session id."""

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored record, or None."""

    @abstractmethod
    async def set(
        self,
        session_id: str,
        data: Dict[str, Any],
        ttl_seconds: Optional[int] = None,
    ) -> None:
        """Insert or replace the record."""

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        """Remove the record if present."""


class InMemorySessionStore(SessionStore):
    """
    Process-local session store with per-entry expiry.

    Suitable for a single worker and for tests. Multi-worker deployments
    need a shared backend.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._records: Dict[str, Tuple[Dict[str, Any], Optional[float]]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._records.get(session_id)
            if entry is None:
                return None

            data, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._records[session_id]
                return None

            return dict(data)

    async def set(
        self,
        session_id: str,
        data: Dict[str, Any],
        ttl_seconds: Optional[int] = None,
    ) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._records[session_id] = (dict(data), expires_at)

    async def delete(self, session_id: str) -> None:
        with self._lock:
            self._records.pop(session_id, None)


# =============================================================================
# Session Binding
# =============================================================================

class SessionBinding:
    """
    Load, store and invalidate the Identity bound to a session id.

    Args:
        store: Backend holding the records
        ttl_seconds: Lifetime of a stored record
    """

    def __init__(self, store: SessionStore, ttl_seconds: Optional[int] = None) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def encode(identity: Identity) -> Dict[str, Any]:
        return {
            "v": SESSION_RECORD_VERSION,
            "identity": identity.model_dump(mode="json"),
        }

    @staticmethod
    def decode(record: Dict[str, Any]) -> Optional[Identity]:
        """Decode a stored record; None for unknown versions or malformed data."""
        if not isinstance(record, dict) or record.get("v") != SESSION_RECORD_VERSION:
            return None
        try:
            return Identity.model_validate(record.get("identity"))
        except ValidationError:
            return None

    async def load(self, session_id: str) -> Optional[Identity]:
        """
        Return the Identity for ``session_id``, or None.

        Raises:
            SessionStoreUnavailable: If the backend fails
        """
        try:
            record = await self._store.get(session_id)
        except Exception as e:
            raise SessionStoreUnavailable(f"Session store read failed: {e}") from e

        if record is None:
            return None

        identity = self.decode(record)
        if identity is None:
            logger.warning("Discarding unreadable session record")
        return identity

    async def store(self, session_id: str, identity: Identity) -> None:
        """
        Bind ``identity`` to ``session_id``, replacing any previous one.

        Raises:
            SessionStoreUnavailable: If the backend fails
        """
        try:
            await self._store.set(session_id, self.encode(identity), self._ttl_seconds)
        except Exception as e:
            raise SessionStoreUnavailable(f"Session store write failed: {e}") from e

        logger.debug("Stored session identity", extra={"user_id": identity.subject})

    async def invalidate(self, session_id: str) -> None:
        """
        Remove whatever is bound to ``session_id``.

        Raises:
            SessionStoreUnavailable: If the backend fails
        """
        try:
            await self._store.delete(session_id)
        except Exception as e:
            raise SessionStoreUnavailable(f"Session store delete failed: {e}") from e


# =============================================================================
# Session Cookie
# =============================================================================

def new_session_id() -> str:
    return secrets.token_urlsafe(32)


def get_session_id(request: Request, settings: Settings) -> Optional[str]:
    session_id = request.cookies.get(settings.SESSION_COOKIE_NAME)
    return session_id or None


def set_session_cookie(response: Response, session_id: str, settings: Settings) -> None:
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=session_id,
        max_age=settings.SESSION_MAX_AGE_SECONDS,
        path="/",
        secure=settings.SESSION_COOKIE_SECURE,
        httponly=True,
        samesite=settings.SESSION_COOKIE_SAMESITE,
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.SESSION_COOKIE_NAME,
        path="/",
        secure=settings.SESSION_COOKIE_SECURE,
        httponly=True,
        samesite=settings.SESSION_COOKIE_SAMESITE,
    )


# =============================================================================
# FastAPI Dependencies
# =============================================================================

async def get_current_identity(request: Request) -> Identity:
    """
    FastAPI dependency returning the verified identity of the request.

    Usage in routes:
        @app.get("/protected")
        async def protected_route(identity: Identity = Depends(get_current_identity)):
            return {"sub": identity.subject}

    Raises:
        HTTPException: 401 if the request was not authenticated by the middleware
    """
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return identity


async def get_optional_identity(request: Request) -> Optional[Identity]:
    """Like get_current_identity, but None for anonymous requests on public paths."""
    return getattr(request.state, "identity", None)


__all__ = [
    "SessionStore",
    "InMemorySessionStore",
    "SessionBinding",
    "new_session_id",
    "get_session_id",
    "set_session_cookie",
    "clear_session_cookie",
    "get_current_identity",
    "get_optional_identity",
]
