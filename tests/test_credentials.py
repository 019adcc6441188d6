from datetime import datetime, timedelta, timezone

import pytest

from provisioner.credentials import SessionStore, StaticCredentialProvider, StoredCredentialProvider


@pytest.mark.asyncio
async def test_session_store_returns_latest_unexpired(db_path):
    store = SessionStore(db_path)
    assert await store.current() is None

    expires_at = await store.save("claysession=one")
    assert expires_at.endswith("Z")
    assert await store.current() == "claysession=one"

    await store.save("claysession=two")
    assert await store.current() == "claysession=two"


@pytest.mark.asyncio
async def test_expired_session_is_ignored(db_path):
    store = SessionStore(db_path)
    past = (datetime.now(timezone.utc) - timedelta(minutes=5)).isoformat()
    await store.save("claysession=stale", expires_at=past)
    assert await store.current() is None


@pytest.mark.asyncio
async def test_naive_expiry_is_treated_as_utc(db_path):
    store = SessionStore(db_path)
    future = (datetime.now(timezone.utc) + timedelta(hours=1)).replace(microsecond=0, tzinfo=None).isoformat()
    stored = await store.save("claysession=naive", expires_at=future)
    assert stored == f"{future}.000000Z"
    assert await store.current() == "claysession=naive"


@pytest.mark.asyncio
async def test_stored_provider_falls_back_to_configured_credential(db_path):
    store = SessionStore(db_path)
    provider = StoredCredentialProvider(store, fallback="claysession=config")
    assert await provider.get() == "claysession=config"
    await store.save("claysession=fresh")
    assert await provider.get() == "claysession=fresh"
    assert await StoredCredentialProvider(SessionStore(db_path)).get() == "claysession=fresh"


@pytest.mark.asyncio
async def test_static_provider():
    assert await StaticCredentialProvider("abc").get() == "abc"
    assert await StaticCredentialProvider(None).get() is None
