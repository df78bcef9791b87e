from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


AvailabilityStatus = Literal["in_stock", "out_of_stock", "on_backorder"]


class RecordModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class Price(RecordModel):
    """Amounts are integer minor units of ``currency``."""

    currency: str
    regular: int | None = None
    sale: int | None = None
    display: str | None = None

    @property
    def current(self) -> int | None:
        return self.sale if self.sale is not None else self.regular


class CategoryNode(RecordModel):
    node_id: str
    name: str
    context_name: str | None = None
    children: list["CategoryNode"] = Field(default_factory=list)


class VariationDimension(RecordModel):
    name: str
    display_name: str | None = None
    values: list[str] = Field(default_factory=list)


class VariationRecord(RecordModel):
    item_code: str
    parent_code: str
    title: str | None = None
    attributes: dict[str, str]
    price: Price | None = None
    availability: AvailabilityStatus = "in_stock"
    image_url: str | None = None


class VariationSet(RecordModel):
    parent_code: str
    dimensions: list[VariationDimension] = Field(default_factory=list)
    variations: list[VariationRecord] = Field(default_factory=list)


class ProductRecord(RecordModel):
    item_code: str
    parent_code: str | None = None
    title: str | None = None
    description: str | None = None
    short_description: str | None = None
    brand: str | None = None
    features: list[str] = Field(default_factory=list)
    price: Price | None = None
    availability: AvailabilityStatus = "in_stock"
    availability_message: str | None = None
    image_url: str | None = None
    gallery_urls: list[str] = Field(default_factory=list)
    category_path: list[CategoryNode] = Field(default_factory=list)
    attributes: dict[str, str] = Field(default_factory=dict)
    detail_url: str | None = None
    dimensions: list[VariationDimension] = Field(default_factory=list)
    variations: list[VariationRecord] = Field(default_factory=list)

    @property
    def is_variable(self) -> bool:
        return bool(self.variations)

    def with_variations(self, variation_set: VariationSet) -> "ProductRecord":
        return self.model_copy(
            update={
                "dimensions": list(variation_set.dimensions),
                "variations": list(variation_set.variations),
            }
        )


class SearchHit(RecordModel):
    item_code: str
    title: str | None = None
    image_url: str | None = None
    price_display: str | None = None
    detail_url: str | None = None


class SearchPage(RecordModel):
    items: list[SearchHit] = Field(default_factory=list)
    page: int = 1
    total_pages: int = 0
    total_results: int = 0
