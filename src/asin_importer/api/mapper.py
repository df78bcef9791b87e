from __future__ import annotations

import html
import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Literal, Mapping, TypeVar

from pydantic import BaseModel

from ..codes import is_valid_code, normalize_code
from ..errors import ValidationError
from .records import (
    AvailabilityStatus,
    CategoryNode,
    Price,
    ProductRecord,
    SearchHit,
    SearchPage,
    VariationDimension,
    VariationRecord,
    VariationSet,
)
from .types import CURRENCY_EXPONENTS, MAX_SEARCH_PAGES


M = TypeVar("M", bound=BaseModel)
PayloadKind = Literal["items", "variations", "search", "browse_nodes"]

DEFAULT_MAX_CATEGORY_DEPTH = 3
SHORT_DESCRIPTION_FEATURES = 5
IN_STOCK_TYPES = {"now"}
BACKORDER_TYPES = {"backorder", "preorder", "delayed", "unknown"}
ATTRIBUTE_SOURCES: tuple[tuple[str, tuple[str, str]], ...] = (
    ("manufacturer", ("ByLineInfo", "Manufacturer")),
    ("model", ("ManufactureInfo", "Model")),
    ("color", ("ProductInfo", "Color")),
    ("size", ("ProductInfo", "Size")),
    ("material", ("ProductInfo", "Material")),
)


class ProductMapper:
    """Pure mapping from vendor response payloads to canonical records."""

    def __init__(
        self,
        *,
        max_category_depth: int = DEFAULT_MAX_CATEGORY_DEPTH,
        default_currency: str = "USD",
        strict_validation: bool = True,
    ):
        self.max_category_depth = max(1, int(max_category_depth))
        self.default_currency = default_currency
        self.strict_validation = strict_validation

    def _build(self, model_cls: type[M], payload: dict[str, Any]) -> M:
        if self.strict_validation:
            return model_cls.model_validate(payload)
        return model_cls.model_construct(**payload)

    @staticmethod
    def _safe_str(value: Any) -> str | None:
        if not isinstance(value, str):
            return None
        token = value.strip()
        return token or None

    @staticmethod
    def _safe_int(value: Any) -> int | None:
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                return None
        return None

    @staticmethod
    def _section(payload: Any, *path: str) -> Any:
        current = payload
        for key in path:
            if not isinstance(current, Mapping):
                return None
            current = current.get(key)
        return current

    @classmethod
    def _display_value(cls, payload: Any, *path: str) -> str | None:
        node = cls._section(payload, *path)
        if isinstance(node, Mapping):
            return cls._safe_str(node.get("DisplayValue"))
        return cls._safe_str(node)

    def parse(
        self,
        payload: dict[str, Any],
        kind: PayloadKind,
        *,
        parent_code: str | None = None,
        page: int = 1,
        item_count: int = 10,
    ) -> list[ProductRecord] | VariationSet | SearchPage | list[CategoryNode]:
        if not isinstance(payload, Mapping):
            raise ValidationError("Response payload must be a JSON object.")
        if kind == "items":
            items = self._section(payload, "ItemsResult", "Items") or []
            return [self.map_item(item) for item in items if isinstance(item, Mapping)]
        if kind == "variations":
            return self.map_variations(payload, parent_code=parent_code)
        if kind == "search":
            return self.map_search(payload, page=page, item_count=item_count)
        if kind == "browse_nodes":
            nodes = self._section(payload, "BrowseNodesResult", "BrowseNodes") or []
            return [self.map_browse_node(node) for node in nodes if isinstance(node, Mapping)]
        raise ValidationError(f"Unknown payload kind: {kind!r}")

    def to_minor_units(self, amount: Any, currency: str) -> int | None:
        """Integers are already minor units; decimals are major units."""
        if amount is None or isinstance(amount, bool):
            return None
        if isinstance(amount, int):
            return amount
        try:
            value = Decimal(str(amount).strip())
        except InvalidOperation:
            return None
        if not value.is_finite():
            return None
        exponent = CURRENCY_EXPONENTS.get(currency.upper(), 2)
        return int((value * (Decimal(10) ** exponent)).quantize(Decimal(1), rounding=ROUND_HALF_UP))

    def map_price(self, listing: Any) -> Price | None:
        price_node = self._section(listing, "Price")
        if not isinstance(price_node, Mapping):
            return None
        currency = self._safe_str(price_node.get("Currency")) or self.default_currency
        current = self.to_minor_units(price_node.get("Amount"), currency)
        if current is None:
            return None
        was_node = self._section(listing, "SavingBasis")
        was = None
        if isinstance(was_node, Mapping):
            was = self.to_minor_units(was_node.get("Amount"), currency)
        payload: dict[str, Any] = {
            "currency": currency,
            "regular": current,
            "sale": None,
            "display": self._safe_str(price_node.get("DisplayAmount")),
        }
        if was is not None and was != current:
            payload["regular"] = was
            payload["sale"] = current
        return self._build(Price, payload)

    def map_availability(self, listing: Any) -> tuple[AvailabilityStatus, str | None]:
        node = self._section(listing, "Availability")
        if not isinstance(node, Mapping):
            return "in_stock", None
        message = self._safe_str(node.get("Message"))
        raw_type = self._safe_str(node.get("Type"))
        if raw_type is None:
            return "in_stock", message
        normalized = raw_type.lower()
        if normalized in IN_STOCK_TYPES:
            return "in_stock", message
        if normalized in BACKORDER_TYPES:
            return "on_backorder", message
        return "out_of_stock", message

    def _first_listing(self, item: Mapping[str, Any]) -> Any:
        listings = self._section(item, "Offers", "Listings")
        if isinstance(listings, list) and listings:
            return listings[0]
        return None

    def _features(self, item: Mapping[str, Any]) -> list[str]:
        values = self._section(item, "ItemInfo", "Features", "DisplayValues")
        if not isinstance(values, list):
            return []
        return [token for token in (self._safe_str(value) for value in values) if token]

    @staticmethod
    def _feature_list_html(features: list[str]) -> str | None:
        if not features:
            return None
        rows = "".join(f"<li>{html.escape(feature)}</li>" for feature in features)
        return f"<ul>{rows}</ul>"

    def _brand(self, item: Mapping[str, Any]) -> str | None:
        for path in (
            ("ItemInfo", "ByLineInfo", "Brand"),
            ("ItemInfo", "ManufactureInfo", "Brand"),
            ("ItemInfo", "ProductInfo", "Brand"),
        ):
            brand = self._display_value(item, *path)
            if brand:
                return brand
        return None

    def _images(self, item: Mapping[str, Any]) -> tuple[str | None, list[str]]:
        primary = None
        for size in ("Large", "Medium", "Small"):
            primary = self._safe_str(self._section(item, "Images", "Primary", size, "URL"))
            if primary:
                break
        gallery: list[str] = []
        variants = self._section(item, "Images", "Variants")
        if isinstance(variants, list):
            for variant in variants:
                url = self._safe_str(self._section(variant, "Large", "URL"))
                if url and url != primary and url not in gallery:
                    gallery.append(url)
        return primary, gallery

    def _attributes(self, item: Mapping[str, Any]) -> dict[str, str]:
        attributes: dict[str, str] = {}
        for name, (section, field_name) in ATTRIBUTE_SOURCES:
            value = self._display_value(item, "ItemInfo", section, field_name)
            if value:
                attributes[name] = value
        return attributes

    def category_path(self, item: Mapping[str, Any]) -> list[CategoryNode]:
        """Root-to-leaf path of the first browse node.

        ``max_category_depth`` caps how deep the catalog tree grows, so the
        root side is kept and nodes below the cap are dropped.
        """
        nodes = self._section(item, "BrowseNodeInfo", "BrowseNodes")
        if not isinstance(nodes, list) or not nodes or not isinstance(nodes[0], Mapping):
            return []
        chain: list[Mapping[str, Any]] = [nodes[0]]
        ancestors = nodes[0].get("Ancestors")
        if isinstance(ancestors, list):
            chain.extend(node for node in ancestors if isinstance(node, Mapping))
        else:
            current = nodes[0].get("Ancestor")
            while isinstance(current, Mapping):
                chain.append(current)
                current = current.get("Ancestor")

        path: list[CategoryNode] = []
        for node in reversed(chain):
            mapped = self._category_node(node)
            if mapped is not None:
                path.append(mapped)
        return path[: self.max_category_depth]

    def _category_node(self, node: Mapping[str, Any]) -> CategoryNode | None:
        node_id = node.get("Id")
        if node_id is None or isinstance(node_id, bool):
            return None
        name = self._safe_str(node.get("DisplayName")) or self._safe_str(node.get("ContextFreeName")) or str(node_id)
        return self._build(
            CategoryNode,
            {
                "node_id": str(node_id),
                "name": name,
                "context_name": self._safe_str(node.get("ContextFreeName")),
                "children": [],
            },
        )

    def map_browse_node(self, node: Mapping[str, Any]) -> CategoryNode:
        mapped = self._category_node(node)
        if mapped is None:
            raise ValidationError("Browse node without an id.")
        children = node.get("Children")
        if isinstance(children, list):
            mapped.children = [
                child_node
                for child_node in (self._category_node(child) for child in children if isinstance(child, Mapping))
                if child_node is not None
            ]
        return mapped

    def map_item(self, item: Mapping[str, Any]) -> ProductRecord:
        code = normalize_code(item.get("ASIN"))
        if not is_valid_code(code):
            raise ValidationError(f"Item without a valid code: {item.get('ASIN')!r}")
        parent_code = normalize_code(item.get("ParentASIN")) or None
        if parent_code == code or (parent_code and not is_valid_code(parent_code)):
            parent_code = None

        features = self._features(item)
        listing = self._first_listing(item)
        availability, availability_message = self.map_availability(listing)
        image_url, gallery = self._images(item)
        description = self._display_value(item, "ItemInfo", "ProductInfo", "ProductDescription")
        return self._build(
            ProductRecord,
            {
                "item_code": code,
                "parent_code": parent_code,
                "title": self._display_value(item, "ItemInfo", "Title"),
                "description": description or self._feature_list_html(features),
                "short_description": self._feature_list_html(features[:SHORT_DESCRIPTION_FEATURES]),
                "brand": self._brand(item),
                "features": features,
                "price": self.map_price(listing),
                "availability": availability,
                "availability_message": availability_message,
                "image_url": image_url,
                "gallery_urls": gallery,
                "category_path": self.category_path(item),
                "attributes": self._attributes(item),
                "detail_url": self._safe_str(item.get("DetailPageURL")),
                "dimensions": [],
                "variations": [],
            },
        )

    def _variation_attributes(self, item: Mapping[str, Any]) -> dict[str, str]:
        attributes: dict[str, str] = {}
        raw = item.get("VariationAttributes")
        if not isinstance(raw, list):
            return attributes
        for entry in raw:
            if not isinstance(entry, Mapping):
                continue
            name = self._safe_str(entry.get("Name"))
            value = self._safe_str(entry.get("Value"))
            if name and value:
                attributes[name] = value
        return attributes

    def map_variation(self, item: Mapping[str, Any], parent_code: str) -> VariationRecord:
        code = normalize_code(item.get("ASIN"))
        if not is_valid_code(code):
            raise ValidationError(f"Variation of {parent_code} without a valid code: {item.get('ASIN')!r}")
        if code == parent_code:
            raise ValidationError(f"Variation code equals its parent code: {code}")
        attributes = self._variation_attributes(item)
        if not attributes:
            raise ValidationError(f"Variation {code} of {parent_code} has no attributes.")
        listing = self._first_listing(item)
        availability, _message = self.map_availability(listing)
        image_url, _gallery = self._images(item)
        return self._build(
            VariationRecord,
            {
                "item_code": code,
                "parent_code": parent_code,
                "title": self._display_value(item, "ItemInfo", "Title"),
                "attributes": attributes,
                "price": self.map_price(listing),
                "availability": availability,
                "image_url": image_url,
            },
        )

    def _dimensions(self, summary: Any, variations: list[VariationRecord]) -> list[VariationDimension]:
        values_by_name: dict[str, list[str]] = {}
        for variation in variations:
            for name, value in variation.attributes.items():
                bucket = values_by_name.setdefault(name, [])
                if value not in bucket:
                    bucket.append(value)

        declared = self._section(summary, "VariationDimensions")
        dimensions: list[VariationDimension] = []
        if isinstance(declared, list) and declared:
            for entry in declared:
                name = self._safe_str(self._section(entry, "Name"))
                if not name:
                    continue
                raw_values = self._section(entry, "Values")
                if not isinstance(raw_values, list):
                    raw_values = []
                values = [token for token in map(self._safe_str, raw_values) if token]
                if not values:
                    values = values_by_name.get(name, [])
                dimensions.append(
                    self._build(
                        VariationDimension,
                        {
                            "name": name,
                            "display_name": self._safe_str(self._section(entry, "DisplayName")),
                            "values": values,
                        },
                    )
                )
            return dimensions

        for name, values in values_by_name.items():
            dimensions.append(
                self._build(VariationDimension, {"name": name, "display_name": None, "values": values})
            )
        return dimensions

    def map_variations(self, payload: Mapping[str, Any], *, parent_code: str | None = None) -> VariationSet:
        section = self._section(payload, "VariationsResult") or {}
        items = [item for item in self._section(section, "Items") or [] if isinstance(item, Mapping)]
        parent = normalize_code(parent_code) if parent_code else None
        if parent is None and items:
            parent = normalize_code(items[0].get("ParentASIN")) or None
        if parent is None or not is_valid_code(parent):
            raise ValidationError("Variation payload without a valid parent code.")

        variations = [self.map_variation(item, parent) for item in items]
        return self._build(
            VariationSet,
            {
                "parent_code": parent,
                "dimensions": self._dimensions(self._section(section, "VariationSummary"), variations),
                "variations": variations,
            },
        )

    def map_search(self, payload: Mapping[str, Any], *, page: int = 1, item_count: int = 10) -> SearchPage:
        section = self._section(payload, "SearchResult") or {}
        hits: list[SearchHit] = []
        for item in self._section(section, "Items") or []:
            if not isinstance(item, Mapping):
                continue
            code = normalize_code(item.get("ASIN"))
            if not is_valid_code(code):
                continue
            image_url, _gallery = self._images(item)
            hits.append(
                self._build(
                    SearchHit,
                    {
                        "item_code": code,
                        "title": self._display_value(item, "ItemInfo", "Title"),
                        "image_url": image_url,
                        "price_display": self._safe_str(
                            self._section(self._first_listing(item), "Price", "DisplayAmount")
                        ),
                        "detail_url": self._safe_str(item.get("DetailPageURL")),
                    },
                )
            )
        total_results = self._safe_int(self._section(section, "TotalResultCount")) or 0
        per_page = max(1, int(item_count))
        total_pages = min(math.ceil(total_results / per_page), MAX_SEARCH_PAGES) if total_results else 0
        return self._build(
            SearchPage,
            {
                "items": hits,
                "page": max(1, int(page)),
                "total_pages": total_pages,
                "total_results": total_results,
            },
        )
