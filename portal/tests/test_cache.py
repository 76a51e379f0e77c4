"""Local cache tests: TTL, durability, quota."""

from __future__ import annotations

import json

import pytest

from portal.cache import FileKeyValueStorage, LocalCache, QuotaExceededError


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(tmp_path, clock):
    storage = FileKeyValueStorage(tmp_path / "cache.json")
    return LocalCache(storage, prefix="portal_cache_", default_ttl=60, clock=clock)


def test_entry_layout_on_disk(cache, tmp_path):
    cache.set("leads", [{"id": "a"}], ttl=60)

    raw = json.loads((tmp_path / "cache.json").read_text())
    entry = json.loads(raw["portal_cache_leads"])
    assert entry == {"data": [{"id": "a"}], "expiry": 1_060_000}


def test_hit_before_expiry(cache, clock):
    cache.set("k", {"v": 1}, ttl=60)
    clock.now += 59
    assert cache.get("k") == {"v": 1}


def test_expired_read_is_a_miss_and_removes_durable_entry(cache, clock, tmp_path):
    cache.set("k", "v", ttl=1)
    clock.now += 2

    assert cache.get("k", "missing") == "missing"
    assert "portal_cache_k" not in json.loads((tmp_path / "cache.json").read_text())


def test_values_survive_a_new_storage_instance(cache, tmp_path, clock):
    cache.set("k", "v")
    reopened = LocalCache(FileKeyValueStorage(tmp_path / "cache.json"), clock=clock)
    assert reopened.get("k") == "v"


def test_corrupt_entry_is_a_miss(cache):
    cache.storage.set_item("portal_cache_bad", "{not json")
    assert cache.get("bad") is None
    assert "portal_cache_bad" not in cache.storage.keys()


def test_clear_expired_and_clear(cache, clock):
    cache.set("old", 1, ttl=1)
    cache.set("new", 2, ttl=100)
    cache.storage.set_item("portal_cache_junk", "???")
    cache.storage.set_item("other_app", "keep")
    clock.now += 5

    assert cache.clear_expired() == 2
    assert cache.get("new") == 2

    assert cache.clear() == 1
    assert cache.storage.keys() == ["other_app"]


def test_quota_exceeded_clears_expired_without_retry(tmp_path, clock):
    storage = FileKeyValueStorage(tmp_path / "cache.json", quota_bytes=200)
    cache = LocalCache(storage, default_ttl=1, clock=clock)
    cache.set("a", "x")
    clock.now += 5

    cache.set("big", "y" * 500)

    assert cache.get("big") is None
    assert storage.keys() == []


def test_storage_raises_on_quota(tmp_path):
    storage = FileKeyValueStorage(tmp_path / "cache.json", quota_bytes=10)
    with pytest.raises(QuotaExceededError):
        storage.set_item("key", "value-too-long")


@pytest.mark.asyncio
async def test_cached_fetch_calls_producer_once_until_expiry(cache, clock):
    calls = []

    async def producer():
        calls.append(1)
        return {"n": len(calls)}

    assert await cache.cached_fetch("stats", producer, ttl=10) == {"n": 1}
    assert await cache.cached_fetch("stats", producer, ttl=10) == {"n": 1}
    clock.now += 11
    assert await cache.cached_fetch("stats", producer, ttl=10) == {"n": 2}
    assert len(calls) == 2
