from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Protocol

from .api.records import ProductRecord
from .codes import validate_code
from .storage.kv import KeyValueStore
from .utils import utc_now_iso


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class UpsertResult:
    id: int
    created: bool


class CatalogStore(Protocol):
    """Host catalog the pipeline writes canonical records into."""

    def exists(self, item_code: str) -> bool: ...

    def upsert(self, record: ProductRecord) -> UpsertResult: ...

    def get_id_by_code(self, item_code: str) -> int | None: ...


class KeyValueCatalogStore:
    """Catalog kept in the key-value store; ids come from a counter key."""

    def __init__(self, store: KeyValueStore, *, prefix: str = "catalog"):
        self.store = store
        self.prefix = prefix
        self._lock = threading.Lock()

    def _item_key(self, item_code: str) -> str:
        return f"{self.prefix}:item:{item_code}"

    def _next_id(self) -> int:
        key = f"{self.prefix}:seq"
        current = self.store.get(key)
        next_id = (int(current) if isinstance(current, int) else 0) + 1
        self.store.set(key, next_id)
        return next_id

    def exists(self, item_code: str) -> bool:
        return self.store.get(self._item_key(validate_code(item_code))) is not None

    def get_id_by_code(self, item_code: str) -> int | None:
        row = self.store.get(self._item_key(validate_code(item_code)))
        if not isinstance(row, dict):
            return None
        return int(row["id"])

    def get_record(self, item_code: str) -> ProductRecord | None:
        row = self.store.get(self._item_key(validate_code(item_code)))
        if not isinstance(row, dict):
            return None
        return ProductRecord.model_validate(row["record"])

    def upsert(self, record: ProductRecord) -> UpsertResult:
        code = validate_code(record.item_code)
        key = self._item_key(code)
        with self._lock:
            existing = self.store.get(key)
            created = not isinstance(existing, dict)
            item_id = self._next_id() if created else int(existing["id"])
            now = utc_now_iso()
            row: dict[str, Any] = {
                "id": item_id,
                "item_code": code,
                "record": record.model_dump(mode="json"),
                "created_at": now if created else existing.get("created_at", now),
                "updated_at": now,
            }
            self.store.set(key, row)
        LOGGER.debug("Catalog upsert: code=%s id=%s created=%s", code, item_id, created)
        return UpsertResult(id=item_id, created=created)

    def item_codes(self) -> list[str]:
        prefix = f"{self.prefix}:item:"
        return [key.removeprefix(prefix) for key, _row in self.store.scan(prefix)]
