from __future__ import annotations

import asyncio
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Any

import pytest

from asin_importer.storage.cache import GROUP_PRODUCTS, GROUP_SEARCHES, Cache, CacheConfig, make_key
from asin_importer.storage.kv import MemoryKeyValueStore, SqliteKeyValueStore
from asin_importer.storage.lock import AdvisoryLock


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _BrokenStore:
    def get(self, key: str) -> Any:
        raise RuntimeError("store offline")

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        raise RuntimeError("store offline")

    def add(self, key: str, value: Any, ttl: float | None = None) -> bool:
        raise RuntimeError("store offline")

    def delete(self, key: str) -> bool:
        raise RuntimeError("store offline")

    def scan(self, prefix: str) -> list[tuple[str, Any]]:
        raise RuntimeError("store offline")

    def replace(self, key: str, expected: Any, value: Any, ttl: float | None = None) -> bool:
        raise RuntimeError("store offline")

    def purge_expired(self) -> int:
        raise RuntimeError("store offline")


def _cache(clock: _Clock, **config: Any) -> Cache:
    return Cache(MemoryKeyValueStore(clock=clock), CacheConfig(**config), clock=clock)


def test_memory_store_expires_keys_and_copies_values() -> None:
    clock = _Clock()
    store = MemoryKeyValueStore(clock=clock)
    value = {"nested": [1, 2]}
    store.set("a", value, ttl=10)
    value["nested"].append(3)

    assert store.get("a") == {"nested": [1, 2]}
    clock.advance(10)
    assert store.get("a") is None


def test_memory_store_add_is_set_if_absent() -> None:
    clock = _Clock()
    store = MemoryKeyValueStore(clock=clock)
    assert store.add("lock", {"owner": "a"}, ttl=5)
    assert not store.add("lock", {"owner": "b"}, ttl=5)
    clock.advance(6)
    assert store.add("lock", {"owner": "b"}, ttl=5)
    assert store.get("lock") == {"owner": "b"}


def test_sqlite_store_roundtrip_scan_and_ttl(tmp_path: Path) -> None:
    clock = _Clock()
    store = SqliteKeyValueStore(str(tmp_path / "state.sqlite"), clock=clock)
    store.set("batch:job:1", {"status": "running"})
    store.set("batch:job:2", {"status": "completed"}, ttl=5)
    store.set("other:1", 1)

    assert [key for key, _value in store.scan("batch:job:")] == ["batch:job:1", "batch:job:2"]
    assert store.add("batch:job:2", {"status": "new"}) is False

    clock.advance(5)
    assert store.get("batch:job:2") is None
    assert store.add("batch:job:2", {"status": "new"}) is True
    assert store.get("batch:job:2") == {"status": "new"}
    assert store.delete("other:1") is True
    assert store.delete("other:1") is False


def test_sqlite_store_is_shared_between_instances(tmp_path: Path) -> None:
    path = str(tmp_path / "state.sqlite")
    SqliteKeyValueStore(path).set("k", {"v": 1})
    assert SqliteKeyValueStore(path).get("k") == {"v": 1}


def _row_count(path: Path) -> int:
    with closing(sqlite3.connect(path)) as conn:
        return conn.execute("SELECT COUNT(*) FROM kv").fetchone()[0]


def test_sqlite_purge_expired_deletes_rows(tmp_path: Path) -> None:
    clock = _Clock()
    path = tmp_path / "state.sqlite"
    store = SqliteKeyValueStore(str(path), clock=clock)
    store.set("cache:products:a", {"v": 1}, ttl=5)
    store.set("batch:control:b1", {"action": "cancel"}, ttl=5)
    store.set("batch:job:b1", {"status": "running"})

    clock.advance(6)
    assert store.get("cache:products:a") is None
    assert _row_count(path) == 3

    assert store.purge_expired() == 2
    assert _row_count(path) == 1
    assert store.purge_expired() == 0


def test_memory_purge_expired_deletes_entries() -> None:
    clock = _Clock()
    store = MemoryKeyValueStore(clock=clock)
    store.set("a", 1, ttl=5)
    store.set("b", 2)
    clock.advance(5)
    assert store.purge_expired() == 1
    assert store.get("b") == 2


@pytest.mark.parametrize("backend", ["memory", "sqlite"])
def test_replace_only_swaps_expected_value(backend: str, tmp_path: Path) -> None:
    store: Any = MemoryKeyValueStore() if backend == "memory" else SqliteKeyValueStore(str(tmp_path / "s.sqlite"))
    store.set("lock", {"owner": "a"}, ttl=30)

    assert store.replace("lock", {"owner": "a"}, {"owner": "a", "n": 1}, ttl=30)
    assert not store.replace("lock", {"owner": "a"}, {"owner": "a", "n": 2}, ttl=30)
    assert store.get("lock") == {"owner": "a", "n": 1}
    assert not store.replace("missing", None, {"owner": "a"})


def test_cache_returns_value_within_ttl_and_misses_after() -> None:
    clock = _Clock()
    cache = _cache(clock)
    assert cache.set("B000000001", {"title": "x"}, GROUP_SEARCHES)

    clock.advance(1799)
    assert cache.get("B000000001", GROUP_SEARCHES) == {"title": "x"}
    clock.advance(1)
    assert cache.get("B000000001", GROUP_SEARCHES) is None


def test_cache_ttl_override_and_group_isolation() -> None:
    clock = _Clock()
    cache = _cache(clock)
    cache.set("key", "products-value", GROUP_PRODUCTS, ttl_override=5)
    cache.set("key", "searches-value", GROUP_SEARCHES)

    clock.advance(5)
    assert cache.get("key", GROUP_PRODUCTS) is None
    assert cache.get("key", GROUP_SEARCHES) == "searches-value"


def test_cache_keys_are_content_addressed() -> None:
    assert make_key("search", {"a": 1, "b": 2}) == make_key("search", {"b": 2, "a": 1})
    assert make_key("search", {"a": 1}) != make_key("search", {"a": 2})


def test_cache_evicts_least_recently_accessed_quarter() -> None:
    clock = _Clock()
    cache = _cache(clock, max_items=8)
    for idx in range(8):
        cache.set(f"k{idx}", idx, GROUP_PRODUCTS)
        clock.advance(1)
    # Touch the two oldest right before the insert that triggers eviction.
    assert cache.get("k0", GROUP_PRODUCTS) == 0
    assert cache.get("k1", GROUP_PRODUCTS) == 1
    clock.advance(1)

    cache.set("k8", 8, GROUP_PRODUCTS)

    survivors = {f"k{idx}" for idx in range(9) if cache.get(f"k{idx}", GROUP_PRODUCTS) is not None}
    assert survivors == {"k0", "k1", "k4", "k5", "k6", "k7", "k8"}
    assert cache.statistics()["evictions"] == 2


def test_cache_eviction_is_per_group() -> None:
    clock = _Clock()
    cache = _cache(clock, max_items=2)
    cache.set("a", 1, GROUP_PRODUCTS)
    cache.set("b", 2, GROUP_PRODUCTS)
    cache.set("c", 3, GROUP_SEARCHES)

    assert cache.statistics()["size_by_group"][GROUP_PRODUCTS] == 2
    assert cache.statistics()["size_by_group"][GROUP_SEARCHES] == 1


def test_cache_statistics_and_clear() -> None:
    clock = _Clock()
    cache = _cache(clock)
    cache.set("a", 1, GROUP_PRODUCTS)
    cache.set("b", 2, GROUP_SEARCHES)
    cache.get("a", GROUP_PRODUCTS)
    cache.get("missing", GROUP_PRODUCTS)
    cache.delete("a", GROUP_PRODUCTS)

    stats = cache.statistics()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["sets"] == 2
    assert stats["deletes"] == 1
    assert stats["hit_ratio"] == 0.5
    assert cache.clear_all() == 1
    assert cache.statistics()["size_by_group"][GROUP_SEARCHES] == 0


def test_cache_swallows_store_failures() -> None:
    cache = Cache(_BrokenStore())  # type: ignore[arg-type]
    assert cache.get("a", GROUP_PRODUCTS) is None
    assert cache.set("a", 1, GROUP_PRODUCTS) is False
    assert cache.delete("a", GROUP_PRODUCTS) is False
    assert cache.clear_group(GROUP_PRODUCTS) == 0
    assert cache.statistics()["misses"] == 1


def test_disabled_cache_always_misses() -> None:
    clock = _Clock()
    cache = _cache(clock, enabled=False)
    assert cache.set("a", 1, GROUP_PRODUCTS) is False
    assert cache.get("a", GROUP_PRODUCTS) is None


def test_cache_get_or_set_calls_factory_once() -> None:
    clock = _Clock()
    cache = _cache(clock)
    calls: list[int] = []

    async def factory() -> dict[str, int]:
        calls.append(1)
        return {"value": 42}

    async def scenario() -> None:
        assert await cache.get_or_set("k", GROUP_SEARCHES, factory) == {"value": 42}
        assert await cache.get_or_set("k", GROUP_SEARCHES, factory) == {"value": 42}

    asyncio.run(scenario())
    assert len(calls) == 1


def test_advisory_lock_single_holder_and_liveness_timeout() -> None:
    clock = _Clock()
    store = MemoryKeyValueStore(clock=clock)
    lock = AdvisoryLock(store, "batch:import", ttl_sec=30)

    assert lock.acquire("worker-a", batch_id="b1")
    assert not lock.acquire("worker-b")
    assert lock.holder()["batch_id"] == "b1"  # type: ignore[index]
    assert not lock.release("worker-b")

    clock.advance(20)
    assert lock.refresh("worker-a")
    clock.advance(20)
    assert lock.is_held_by("worker-a")

    clock.advance(31)
    assert lock.holder() is None
    assert lock.acquire("worker-b")
    assert not lock.refresh("worker-a")
    assert lock.release("worker-b")
    assert lock.holder() is None


@pytest.mark.parametrize("ttl", [0, -5])
def test_advisory_lock_ttl_has_floor(ttl: int) -> None:
    lock = AdvisoryLock(MemoryKeyValueStore(), "x", ttl_sec=ttl)
    assert lock.ttl_sec == 1


class _RacingStore(MemoryKeyValueStore):
    """Hands out the old holder once, then lets another worker take the lock."""

    def __init__(self, key: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.race_key = key
        self.raced = False

    def get(self, key: str) -> Any | None:
        value = super().get(key)
        if key == self.race_key and not self.raced:
            self.raced = True
            self.set(key, {"owner": "worker-b", "batch_id": "b2"}, ttl=30)
        return value


def test_advisory_lock_refresh_does_not_overwrite_new_holder() -> None:
    store = _RacingStore("lock:batch:import")
    lock = AdvisoryLock(store, "batch:import", ttl_sec=30)
    store.set(lock.key, {"owner": "worker-a", "batch_id": "b1"}, ttl=30)

    assert not lock.refresh("worker-a")
    assert lock.holder() == {"owner": "worker-b", "batch_id": "b2"}
