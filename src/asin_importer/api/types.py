from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Protocol

from ..errors import AuthError, ImporterError, ValidationError


SERVICE_NAME = "ProductAdvertisingAPI"
PARTNER_TYPE = "Associates"
TARGET_PREFIX = "com.amazon.paapi5.v1.ProductAdvertisingAPIv1"
MAX_ITEMS_PER_REQUEST = 10
MAX_SEARCH_PAGES = 10
_PARTNER_TAG_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(frozen=True, slots=True)
class Marketplace:
    domain: str
    host: str
    region: str
    currency: str
    language: str


def _marketplace(domain: str, region: str, currency: str, language: str) -> Marketplace:
    return Marketplace(
        domain=domain,
        host="webservices." + domain.removeprefix("www."),
        region=region,
        currency=currency,
        language=language,
    )


MARKETPLACES: Mapping[str, Marketplace] = MappingProxyType(
    {
        item.domain: item
        for item in (
            _marketplace("www.amazon.com", "us-east-1", "USD", "en_US"),
            _marketplace("www.amazon.ca", "us-east-1", "CAD", "en_CA"),
            _marketplace("www.amazon.com.mx", "us-east-1", "MXN", "es_MX"),
            _marketplace("www.amazon.co.uk", "eu-west-1", "GBP", "en_GB"),
            _marketplace("www.amazon.de", "eu-west-1", "EUR", "de_DE"),
            _marketplace("www.amazon.fr", "eu-west-1", "EUR", "fr_FR"),
            _marketplace("www.amazon.it", "eu-west-1", "EUR", "it_IT"),
            _marketplace("www.amazon.es", "eu-west-1", "EUR", "es_ES"),
            _marketplace("www.amazon.nl", "eu-west-1", "EUR", "nl_NL"),
            _marketplace("www.amazon.co.jp", "ap-northeast-1", "JPY", "ja_JP"),
            _marketplace("www.amazon.com.au", "ap-southeast-2", "AUD", "en_AU"),
            _marketplace("www.amazon.sg", "ap-southeast-1", "SGD", "en_SG"),
            _marketplace("www.amazon.in", "ap-south-1", "INR", "en_IN"),
            _marketplace("www.amazon.com.br", "sa-east-1", "BRL", "pt_BR"),
            _marketplace("www.amazon.ae", "me-south-1", "AED", "en_AE"),
            _marketplace("www.amazon.sa", "me-south-1", "SAR", "ar_SA"),
        )
    }
)
DEFAULT_MARKETPLACE = "www.amazon.com"

# Minor-unit exponent per currency; anything missing uses 2.
CURRENCY_EXPONENTS: Mapping[str, int] = MappingProxyType({"JPY": 0})


def resolve_marketplace(
    domain: str,
    table: Mapping[str, Marketplace] = MARKETPLACES,
) -> Marketplace:
    token = domain.strip().lower()
    if token and not token.startswith("www."):
        token = "www." + token
    marketplace = table.get(token)
    if marketplace is None:
        raise ValidationError(f"Unsupported marketplace: {domain!r}")
    return marketplace


@dataclass(frozen=True, slots=True)
class Credentials:
    access_key: str
    secret_key: str = field(repr=False)
    partner_tag: str
    marketplace: str = DEFAULT_MARKETPLACE

    def validate(self, *, strict: bool = True) -> "Credentials":
        if not self.access_key or not self.secret_key:
            raise AuthError("Access key and secret key are required.")
        if strict and not 16 <= len(self.access_key) <= 32:
            raise AuthError("Access key must be 16-32 characters long.")
        if strict and len(self.secret_key) < 32:
            raise AuthError("Secret key must be at least 32 characters long.")
        if not _PARTNER_TAG_RE.match(self.partner_tag or ""):
            raise AuthError("Partner tag must contain only letters, digits, '-' or '_'.")
        return self


class CredentialSource(Protocol):
    def get(self) -> Credentials: ...


@dataclass(frozen=True, slots=True)
class StaticCredentialSource:
    credentials: Credentials

    def get(self) -> Credentials:
        return self.credentials


@dataclass(frozen=True, slots=True)
class EnvCredentialSource:
    prefix: str = "PAAPI_"

    def get(self) -> Credentials:
        env = os.environ
        return Credentials(
            access_key=env.get(f"{self.prefix}ACCESS_KEY", "").strip(),
            secret_key=env.get(f"{self.prefix}SECRET_KEY", "").strip(),
            partner_tag=env.get(f"{self.prefix}PARTNER_TAG", "").strip(),
            marketplace=env.get(f"{self.prefix}MARKETPLACE", DEFAULT_MARKETPLACE).strip()
            or DEFAULT_MARKETPLACE,
        )


@dataclass(frozen=True, slots=True)
class Operation:
    name: str
    cache_ttl_sec: int

    @property
    def path(self) -> str:
        return f"/paapi5/{self.name.lower()}"

    @property
    def target(self) -> str:
        return f"{TARGET_PREFIX}.{self.name}"


OPERATIONS: Mapping[str, Operation] = MappingProxyType(
    {
        "GetItems": Operation("GetItems", 1800),
        "SearchItems": Operation("SearchItems", 3600),
        "GetVariations": Operation("GetVariations", 1800),
        "GetBrowseNodes": Operation("GetBrowseNodes", 7200),
    }
)

ITEM_RESOURCES: tuple[str, ...] = (
    "BrowseNodeInfo.BrowseNodes",
    "BrowseNodeInfo.BrowseNodes.Ancestor",
    "Images.Primary.Large",
    "Images.Primary.Medium",
    "Images.Primary.Small",
    "Images.Variants.Large",
    "ItemInfo.ByLineInfo",
    "ItemInfo.Features",
    "ItemInfo.ManufactureInfo",
    "ItemInfo.ProductInfo",
    "ItemInfo.Title",
    "Offers.Listings.Availability.Message",
    "Offers.Listings.Availability.Type",
    "Offers.Listings.Price",
    "Offers.Listings.SavingBasis",
    "ParentASIN",
    "VariationSummary.PageCount",
    "VariationSummary.VariationDimension",
)
SEARCH_RESOURCES: tuple[str, ...] = (
    "Images.Primary.Medium",
    "ItemInfo.Title",
    "ItemInfo.ByLineInfo",
    "Offers.Listings.Price",
)
VARIATION_RESOURCES: tuple[str, ...] = (
    "Images.Primary.Large",
    "ItemInfo.Title",
    "Offers.Listings.Availability.Type",
    "Offers.Listings.Price",
    "Offers.Listings.SavingBasis",
    "VariationSummary.PageCount",
    "VariationSummary.VariationDimension",
)
BROWSE_NODE_RESOURCES: tuple[str, ...] = (
    "BrowseNodes.Ancestor",
    "BrowseNodes.Children",
)


@dataclass(slots=True)
class ApiClientConfig:
    timeout_sec: float = 30.0
    max_attempts: int = 4
    backoff_base_sec: float = 1.0
    backoff_max_sec: float = 30.0
    requests_per_second: float = 1.0
    abort_poll_interval_sec: float = 0.1
    items_per_request: int = MAX_ITEMS_PER_REQUEST
    max_variation_pages: int = 10
    user_agent: str = "asin-importer/0.1"


@dataclass(slots=True)
class ChunkFailure:
    codes: list[str]
    error: ImporterError

    def to_payload(self) -> dict[str, Any]:
        return {"codes": list(self.codes), "error": self.error.to_dict()}


@dataclass(slots=True)
class ItemsResult:
    """Merged GetItems outcome. ``items`` follows request order."""

    items: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    failures: list[ChunkFailure] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    def failure_for(self, code: str) -> ImporterError | None:
        for failure in self.failures:
            if code in failure.codes:
                return failure.error
        return None

    def as_payload(self) -> dict[str, Any]:
        """Vendor-shaped payload accepted by the response mapper."""
        payload: dict[str, Any] = {"ItemsResult": {"Items": list(self.items)}}
        if self.errors:
            payload["Errors"] = list(self.errors)
        return payload
