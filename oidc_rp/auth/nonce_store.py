"""
Pending Login Store
===================

Process-wide table of logins in flight, keyed by the OAuth ``state``.

Each entry remembers the nonce sent to the IdP, the PKCE verifier and the
local destination to return to. ``consume`` is the only way to read an
entry and removes it in the same critical section, so a state can be
redeemed at most once even when two callbacks race.

The table is guarded by a ``threading.Lock`` rather than an
``asyncio.Lock``: every operation is a short in-memory update, and the
store must stay consistent when used from worker threads too.
"""

import asyncio
import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from ..models import PendingAuth
from .utils import generate_token

logger = logging.getLogger(__name__)


class NonceStore:
    """
    In-memory TTL store for pending logins.

    Expired entries are treated as absent by ``consume`` whether or not a
    sweep has run yet.
    """

    def __init__(
        self,
        ttl_seconds: float = 600,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the store.

        Args:
            ttl_seconds: Lifetime of a pending login
            max_entries: Upper bound on concurrently pending logins
            clock: Monotonic time source, injectable for tests
        """
        self._entries: Dict[str, PendingAuth] = {}
        self._lock = threading.Lock()
        self._ttl_seconds = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def create(
        self,
        destination_url: str,
        code_verifier: Optional[str] = None,
    ) -> Tuple[str, str]:
        """
        Register a new pending login.

        Args:
            destination_url: Local path to return to after the callback
            code_verifier: PKCE verifier to replay at the token endpoint

        Returns:
            Tuple of (state, nonce)
        """
        nonce = generate_token()

        with self._lock:
            state = generate_token()
            while state in self._entries:
                state = generate_token()

            now = self._clock()
            if len(self._entries) >= self._max_entries:
                self._evict(now)

            self._entries[state] = PendingAuth(
                state=state,
                nonce=nonce,
                destination_url=destination_url,
                created_at=now,
                ttl_seconds=self._ttl_seconds,
                code_verifier=code_verifier,
            )

        logger.debug("Created pending login", extra={"destination": destination_url})
        return state, nonce

    def consume(self, state: str) -> Optional[PendingAuth]:
        """
        Atomically look up and remove the pending login for ``state``.

        Returns:
            The PendingAuth, or None if the state is unknown, expired or
            already consumed
        """
        if not state:
            return None

        with self._lock:
            pending = self._entries.pop(state, None)
            now = self._clock()

        if pending is None:
            return None

        if pending.is_expired(now):
            logger.debug("Pending login expired before callback")
            return None

        return pending

    def sweep(self) -> int:
        """
        Remove expired entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock()
            expired = [s for s, p in self._entries.items() if p.is_expired(now)]
            for state in expired:
                del self._entries[state]

        if expired:
            logger.debug(f"Swept {len(expired)} expired pending logins")
        return len(expired)

    def _evict(self, now: float) -> None:
        # Caller holds the lock.
        expired = [s for s, p in self._entries.items() if p.is_expired(now)]
        for state in expired:
            del self._entries[state]

        while len(self._entries) >= self._max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            logger.warning("Pending login table full, evicted the oldest entry")

    # =========================================================================
    # Background Sweep
    # =========================================================================

    async def _sweep_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep()

    def start_sweeper(self, interval_seconds: float) -> None:
        """Start the periodic sweep on the running event loop (no-op if running)."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_forever(interval_seconds)
        )
        logger.info(f"Started pending login sweep every {interval_seconds}s")

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        logger.info("Stopped pending login sweep")
