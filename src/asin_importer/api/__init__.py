from .client import ProductApiClient
from .mapper import ProductMapper
from .records import (
    CategoryNode,
    Price,
    ProductRecord,
    SearchHit,
    SearchPage,
    VariationDimension,
    VariationRecord,
    VariationSet,
)
from .signing import RequestSigner
from .types import (
    MARKETPLACES,
    ApiClientConfig,
    CredentialSource,
    Credentials,
    EnvCredentialSource,
    ItemsResult,
    Marketplace,
    StaticCredentialSource,
    resolve_marketplace,
)

__all__ = [
    "ApiClientConfig",
    "CategoryNode",
    "CredentialSource",
    "Credentials",
    "EnvCredentialSource",
    "ItemsResult",
    "MARKETPLACES",
    "Marketplace",
    "Price",
    "ProductApiClient",
    "ProductMapper",
    "ProductRecord",
    "RequestSigner",
    "SearchHit",
    "SearchPage",
    "StaticCredentialSource",
    "VariationDimension",
    "VariationRecord",
    "VariationSet",
    "resolve_marketplace",
]
