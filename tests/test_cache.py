"""Tests for the persistent response cache."""
import sqlite3

import pytest

from echospeak.adapters import CacheEntry, CacheStore, ProviderType
from echospeak.adapters.types import now_ms


@pytest.fixture
def store(tmp_path):
    return CacheStore(tmp_path / "cache" / "ai_cache.db")


def _entry(key="v1:definition:abc:v1.0", expires_in_ms=60_000, data=None):
    now = now_ms()
    return CacheEntry(
        id=key,
        data=data if data is not None else {"word": "ubiquitous", "grammarPoints": ["adj"]},
        prompt_version="v1.0",
        provider_used=ProviderType.GEMINI,
        created_at=now,
        updated_at=now,
        expires_at=now + expires_in_ms,
    )


@pytest.mark.asyncio
async def test_set_then_get(store):
    entry = _entry()
    await store.set(entry)

    loaded = await store.get(entry.id)

    assert loaded == entry
    assert store.db_path.exists()


@pytest.mark.asyncio
async def test_miss_returns_none(store):
    assert await store.get("v1:definition:missing:v1.0") is None


@pytest.mark.asyncio
async def test_expired_entry_is_never_returned(store):
    await store.set(_entry(expires_in_ms=-1))
    assert await store.get("v1:definition:abc:v1.0") is None


@pytest.mark.asyncio
async def test_set_overwrites(store):
    await store.set(_entry(data="first"))
    await store.set(_entry(data="second"))

    assert (await store.get("v1:definition:abc:v1.0")).data == "second"


@pytest.mark.asyncio
async def test_corrupt_database_degrades_to_miss(tmp_path):
    db_path = tmp_path / "ai_cache.db"
    db_path.write_bytes(b"this is not a sqlite database" * 100)
    store = CacheStore(db_path)

    assert await store.get("any") is None
    await store.set(_entry())  # must not raise


@pytest.mark.asyncio
async def test_unserialisable_row_degrades_to_miss(store):
    await store.set(_entry())
    with sqlite3.connect(store.db_path) as conn:
        conn.execute("UPDATE ai_cache SET data = '{not json'")

    assert await store.get("v1:definition:abc:v1.0") is None


@pytest.mark.asyncio
async def test_unwritable_location_is_ignored(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory")
    store = CacheStore(blocker / "ai_cache.db")

    await store.set(_entry())
    assert await store.get("v1:definition:abc:v1.0") is None


@pytest.mark.asyncio
async def test_purge_expired(store):
    await store.set(_entry(key="old", expires_in_ms=-1000))
    await store.set(_entry(key="fresh"))

    assert await store.purge_expired() == 1
    assert await store.get("fresh") is not None
    with sqlite3.connect(store.db_path) as conn:
        assert conn.execute("SELECT COUNT(*) FROM ai_cache").fetchone()[0] == 1
