from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable

from ..api.client import ProductApiClient
from ..api.mapper import ProductMapper
from ..api.records import ProductRecord, VariationSet
from ..catalog import CatalogStore
from ..codes import validate_code
from ..errors import NotFoundError, ValidationError
from ..storage.cache import GROUP_PRODUCTS, GROUP_VARIATIONS, Cache
from .models import ITEM_SKIPPED, ITEM_SUCCESS


LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ItemOutcome:
    item_code: str
    status: str
    id: int | None = None
    created: bool = False
    updated: bool = False
    message: str = ""
    error: dict[str, Any] | None = None

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


class ProductImporter:
    """Fetches, normalizes and stores one item code at a time."""

    def __init__(
        self,
        client: ProductApiClient,
        catalog: CatalogStore,
        *,
        mapper: ProductMapper | None = None,
        cache: Cache | None = None,
    ):
        self.client = client
        self.catalog = catalog
        self.mapper = mapper or ProductMapper(default_currency=client.marketplace.currency)
        self.cache = cache

    @staticmethod
    def _not_found_message(code: str, errors: list[dict[str, Any]]) -> str:
        for error in errors:
            message = str(error.get("Message") or "")
            if code in message:
                return message
        return f"Item {code} was not returned by the product API."

    async def fetch_variation_set(
        self,
        parent_code: str,
        *,
        force_refresh: bool = False,
        abort: Callable[[], bool] | None = None,
    ) -> VariationSet:
        if self.cache is not None and not force_refresh:
            cached = self.cache.get(parent_code, GROUP_VARIATIONS)
            if cached is not None:
                return VariationSet.model_validate(cached)
        payload = await self.client.fetch_variations(parent_code, abort=abort, force_refresh=force_refresh)
        variation_set = self.mapper.parse(payload, "variations", parent_code=parent_code)
        if self.cache is not None:
            self.cache.set(parent_code, variation_set.model_dump(mode="json"), GROUP_VARIATIONS)
        return variation_set

    async def fetch_record(
        self,
        item_code: str,
        *,
        force_refresh: bool = False,
        abort: Callable[[], bool] | None = None,
    ) -> ProductRecord:
        code = validate_code(item_code)
        if self.cache is not None and not force_refresh:
            cached = self.cache.get(code, GROUP_PRODUCTS)
            if cached is not None:
                return ProductRecord.model_validate(cached)

        result = await self.client.fetch_items([code], abort=abort, force_refresh=force_refresh)
        raw_item = next((item for item in result.items if str(item.get("ASIN", "")).upper() == code), None)
        if raw_item is None:
            raise NotFoundError(self._not_found_message(code, result.errors))

        records = self.mapper.parse({"ItemsResult": {"Items": [raw_item]}}, "items")
        if not records:
            raise ValidationError(f"Item {code} could not be normalized.")
        record = records[0]
        if isinstance(raw_item.get("VariationSummary"), dict):
            variation_set = await self.fetch_variation_set(code, force_refresh=force_refresh, abort=abort)
            record = record.with_variations(variation_set)

        if self.cache is not None:
            self.cache.set(code, record.model_dump(mode="json"), GROUP_PRODUCTS)
        return record

    async def import_one(
        self,
        item_code: str,
        *,
        force_update: bool = False,
        abort: Callable[[], bool] | None = None,
    ) -> ItemOutcome:
        code = validate_code(item_code)
        existing_id = self.catalog.get_id_by_code(code)
        if existing_id is not None and not force_update:
            return ItemOutcome(
                item_code=code,
                status=ITEM_SKIPPED,
                id=existing_id,
                message="Item already imported.",
            )

        record = await self.fetch_record(code, force_refresh=force_update, abort=abort)
        stored = self.catalog.upsert(record)
        LOGGER.info(
            "Item imported: code=%s id=%s created=%s variations=%s",
            code,
            stored.id,
            stored.created,
            len(record.variations),
        )
        return ItemOutcome(
            item_code=code,
            status=ITEM_SUCCESS,
            id=stored.id,
            created=stored.created,
            updated=not stored.created,
            message="Item created." if stored.created else "Item updated.",
        )
