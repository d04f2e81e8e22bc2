"""
Tests for session binding: identity persistence, store failures and the
in-memory backend.
"""

import pytest
from pydantic import ValidationError

from conftest import FailingSessionStore, make_identity
from oidc_rp.auth.exceptions import SessionStoreUnavailable
from oidc_rp.auth.session import InMemorySessionStore, SessionBinding


@pytest.mark.asyncio
async def test_store_and_load_round_trip(binding):
    identity = make_identity()

    await binding.store("session-1", identity)
    loaded = await binding.load("session-1")

    assert loaded == identity
    assert loaded.subject == "user-123"
    assert loaded.expires_at == identity.expires_at


@pytest.mark.asyncio
async def test_load_unknown_session_returns_none(binding):
    assert await binding.load("missing") is None


@pytest.mark.asyncio
async def test_store_replaces_previous_identity(binding):
    await binding.store("session-1", make_identity(access_token="access-old"))
    await binding.store("session-1", make_identity(access_token="access-new"))

    loaded = await binding.load("session-1")
    assert loaded.access_token == "access-new"


@pytest.mark.asyncio
async def test_invalidate_removes_identity(binding):
    await binding.store("session-1", make_identity())

    await binding.invalidate("session-1")

    assert await binding.load("session-1") is None
    # Idempotent
    await binding.invalidate("session-1")


@pytest.mark.asyncio
async def test_unreadable_record_is_treated_as_absent(session_store, binding):
    await session_store.set("bad-version", {"v": 99, "identity": {}})
    await session_store.set("bad-identity", {"v": 1, "identity": {"subject": ""}})

    assert await binding.load("bad-version") is None
    assert await binding.load("bad-identity") is None


@pytest.mark.asyncio
async def test_backend_failures_raise_store_unavailable():
    binding = SessionBinding(FailingSessionStore())

    with pytest.raises(SessionStoreUnavailable):
        await binding.load("session-1")

    with pytest.raises(SessionStoreUnavailable):
        await binding.store("session-1", make_identity())

    with pytest.raises(SessionStoreUnavailable):
        await binding.invalidate("session-1")


@pytest.mark.asyncio
async def test_in_memory_store_expires_records():
    now = [0.0]
    store = InMemorySessionStore(clock=lambda: now[0])

    await store.set("session-1", {"v": 1}, ttl_seconds=60)
    assert await store.get("session-1") == {"v": 1}

    now[0] = 60.0
    assert await store.get("session-1") is None
    assert len(store) == 0


@pytest.mark.asyncio
async def test_in_memory_store_returns_copies():
    store = InMemorySessionStore()
    await store.set("session-1", {"v": 1})

    record = await store.get("session-1")
    record["v"] = 2

    assert await store.get("session-1") == {"v": 1}


def test_identity_is_immutable():
    identity = make_identity()

    with pytest.raises(ValidationError):
        identity.access_token = "other"


def test_identity_expiry_honours_leeway():
    identity = make_identity(expires_in=5)

    assert not identity.is_expired()
    assert identity.is_expired(leeway_seconds=10)


def test_identity_display_fields():
    identity = make_identity(claims={"sub": "user-123", "email": " Jane.Doe@Example.com "})

    assert identity.email == "jane.doe@example.com"
    assert identity.display_name == "Jane.Doe"
