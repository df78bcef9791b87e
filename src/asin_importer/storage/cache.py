from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from ..utils import content_hash
from .kv import KeyValueStore


LOGGER = logging.getLogger(__name__)

GROUP_PRODUCTS = "products"
GROUP_SEARCHES = "searches"
GROUP_VARIATIONS = "variations"
GROUP_CATEGORIES = "categories"
GROUP_API_RESPONSES = "api_responses"
GROUP_IMAGES = "images"

DEFAULT_GROUP_TTLS: dict[str, int] = {
    GROUP_PRODUCTS: 3600,
    GROUP_SEARCHES: 1800,
    GROUP_VARIATIONS: 3600,
    GROUP_CATEGORIES: 86400,
    GROUP_API_RESPONSES: 3600,
    GROUP_IMAGES: 7 * 86400,
}
FALLBACK_TTL_SEC = 3600


@dataclass(slots=True)
class CacheConfig:
    enabled: bool = True
    max_items: int = 1000
    key_prefix: str = "cache"
    ttls: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_GROUP_TTLS))

    def ttl_for(self, group: str) -> int:
        return int(self.ttls.get(group, FALLBACK_TTL_SEC))


def make_key(*parts: Any) -> str:
    return content_hash(*parts)


class Cache:
    """Grouped TTL cache over a key-value store with quarter-LRU eviction.

    Every store failure is logged and reported as a miss or a failed write,
    never raised.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config or CacheConfig()
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._deletes = 0
        self._evictions = 0

    def _group_prefix(self, group: str) -> str:
        return f"{self.config.key_prefix}:{group}:"

    def _storage_key(self, key: Any, group: str) -> str:
        return self._group_prefix(group) + make_key(key)

    def _entries(self, group: str) -> list[tuple[str, dict[str, Any]]]:
        return [
            (storage_key, entry)
            for storage_key, entry in self.store.scan(self._group_prefix(group))
            if isinstance(entry, dict)
        ]

    def get(self, key: Any, group: str) -> Any | None:
        if not self.config.enabled:
            return None
        storage_key = self._storage_key(key, group)
        try:
            entry = self.store.get(storage_key)
            now = self._clock()
            if not isinstance(entry, dict) or float(entry.get("expires_at", 0)) <= now:
                self._misses += 1
                return None
            entry["last_access_at"] = now
            self.store.set(storage_key, entry, ttl=float(entry["expires_at"]) - now)
        except Exception as exc:
            LOGGER.warning("Cache get failed: group=%s key=%s error=%s", group, storage_key, exc)
            self._misses += 1
            return None
        self._hits += 1
        return entry.get("payload")

    def set(self, key: Any, value: Any, group: str, ttl_override: int | None = None) -> bool:
        if not self.config.enabled or value is None:
            return False
        storage_key = self._storage_key(key, group)
        ttl = int(ttl_override) if ttl_override is not None else self.config.ttl_for(group)
        now = self._clock()
        try:
            if self.store.get(storage_key) is None:
                self._evict_if_full(group)
            entry = {
                "key": storage_key,
                "group": group,
                "payload": value,
                "stored_at": now,
                "expires_at": now + ttl,
                "last_access_at": now,
            }
            self.store.set(storage_key, entry, ttl=ttl)
        except Exception as exc:
            LOGGER.warning("Cache set failed: group=%s key=%s error=%s", group, storage_key, exc)
            return False
        self._sets += 1
        return True

    def _evict_if_full(self, group: str) -> int:
        entries = self._entries(group)
        count = len(entries)
        if count < max(1, self.config.max_items):
            return 0
        victims = max(1, math.ceil(count / 4))
        entries.sort(key=lambda row: float(row[1].get("last_access_at", 0)))
        for storage_key, _entry in entries[:victims]:
            self.store.delete(storage_key)
        self._evictions += victims
        LOGGER.debug("Cache eviction: group=%s size=%s evicted=%s", group, count, victims)
        return victims

    def delete(self, key: Any, group: str) -> bool:
        storage_key = self._storage_key(key, group)
        try:
            removed = self.store.delete(storage_key)
        except Exception as exc:
            LOGGER.warning("Cache delete failed: group=%s key=%s error=%s", group, storage_key, exc)
            return False
        if removed:
            self._deletes += 1
        return removed

    def clear_group(self, group: str) -> int:
        try:
            keys = [storage_key for storage_key, _entry in self._entries(group)]
            for storage_key in keys:
                self.store.delete(storage_key)
        except Exception as exc:
            LOGGER.warning("Cache clear failed: group=%s error=%s", group, exc)
            return 0
        self._deletes += len(keys)
        return len(keys)

    def clear_all(self) -> int:
        return sum(self.clear_group(group) for group in self._known_groups())

    def purge_expired(self) -> int:
        """Drop entries past their logical expiry for stores without native TTL."""
        removed = 0
        now = self._clock()
        for group in self._known_groups():
            try:
                for storage_key, entry in self._entries(group):
                    if float(entry.get("expires_at", 0)) <= now:
                        self.store.delete(storage_key)
                        removed += 1
            except Exception as exc:
                LOGGER.warning("Cache purge failed: group=%s error=%s", group, exc)
        return removed

    async def get_or_set(
        self,
        key: Any,
        group: str,
        factory: Callable[[], Awaitable[Any]],
        *,
        ttl_override: int | None = None,
    ) -> Any:
        cached = self.get(key, group)
        if cached is not None:
            return cached
        value = await factory()
        self.set(key, value, group, ttl_override)
        return value

    def _known_groups(self) -> list[str]:
        return list(dict.fromkeys([*DEFAULT_GROUP_TTLS, *self.config.ttls]))

    def statistics(self) -> dict[str, Any]:
        size_by_group: dict[str, int] = {}
        for group in self._known_groups():
            try:
                size_by_group[group] = len(self._entries(group))
            except Exception as exc:
                LOGGER.warning("Cache size lookup failed: group=%s error=%s", group, exc)
                size_by_group[group] = 0
        lookups = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "sets": self._sets,
            "deletes": self._deletes,
            "evictions": self._evictions,
            "hit_ratio": round(self._hits / lookups, 4) if lookups else 0.0,
            "size_by_group": size_by_group,
        }
