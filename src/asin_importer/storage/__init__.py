from .cache import (
    DEFAULT_GROUP_TTLS,
    GROUP_API_RESPONSES,
    GROUP_CATEGORIES,
    GROUP_IMAGES,
    GROUP_PRODUCTS,
    GROUP_SEARCHES,
    GROUP_VARIATIONS,
    Cache,
    CacheConfig,
    make_key,
)
from .kv import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore
from .lock import AdvisoryLock

__all__ = [
    "AdvisoryLock",
    "Cache",
    "CacheConfig",
    "DEFAULT_GROUP_TTLS",
    "GROUP_API_RESPONSES",
    "GROUP_CATEGORIES",
    "GROUP_IMAGES",
    "GROUP_PRODUCTS",
    "GROUP_SEARCHES",
    "GROUP_VARIATIONS",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SqliteKeyValueStore",
    "make_key",
]
