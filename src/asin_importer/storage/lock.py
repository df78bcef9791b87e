from __future__ import annotations

import logging
from typing import Any

from ..utils import utc_now_iso
from .kv import KeyValueStore


LOGGER = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SEC = 300


class AdvisoryLock:
    """Installation-wide single-flight lock stored in the key-value store.

    The TTL is the liveness timeout: a holder must ``refresh`` before it
    lapses, otherwise the next ``acquire`` wins.
    """

    def __init__(self, store: KeyValueStore, name: str, *, ttl_sec: int = DEFAULT_LOCK_TTL_SEC):
        self.store = store
        self.name = name
        self.key = f"lock:{name}"
        self.ttl_sec = max(1, int(ttl_sec))

    def acquire(self, owner: str, **metadata: Any) -> bool:
        payload = {"owner": owner, "acquired_at": utc_now_iso()} | metadata
        acquired = self.store.add(self.key, payload, ttl=self.ttl_sec)
        if acquired:
            LOGGER.debug("Lock acquired: name=%s owner=%s", self.name, owner)
        else:
            LOGGER.debug("Lock busy: name=%s holder=%s", self.name, self.holder())
        return acquired

    def holder(self) -> dict[str, Any] | None:
        value = self.store.get(self.key)
        return value if isinstance(value, dict) else None

    def is_held_by(self, owner: str) -> bool:
        current = self.holder()
        return current is not None and current.get("owner") == owner

    def refresh(self, owner: str) -> bool:
        current = self.holder()
        if current is None or current.get("owner") != owner:
            return False
        refreshed = current | {"refreshed_at": utc_now_iso()}
        return self.store.replace(self.key, current, refreshed, ttl=self.ttl_sec)

    def release(self, owner: str) -> bool:
        if not self.is_held_by(owner):
            return False
        self.store.delete(self.key)
        LOGGER.debug("Lock released: name=%s owner=%s", self.name, owner)
        return True
