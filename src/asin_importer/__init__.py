__version__ = "0.1.0"

from .catalog import CatalogStore, KeyValueCatalogStore, UpsertResult
from .codes import dedupe_codes, is_valid_code, normalize_code, validate_code
from .errors import (
    AlreadyRunningError,
    AuthError,
    BatchNotFoundError,
    ExhaustedRetriesError,
    ImporterError,
    InvalidTransitionError,
    NotFoundError,
    RequestAbortedError,
    ThrottleError,
    TransientNetworkError,
    ValidationError,
)

__all__ = [
    "AlreadyRunningError",
    "AuthError",
    "BatchNotFoundError",
    "CatalogStore",
    "ExhaustedRetriesError",
    "ImporterError",
    "InvalidTransitionError",
    "KeyValueCatalogStore",
    "NotFoundError",
    "RequestAbortedError",
    "ThrottleError",
    "TransientNetworkError",
    "UpsertResult",
    "ValidationError",
    "__version__",
    "dedupe_codes",
    "is_valid_code",
    "normalize_code",
    "validate_code",
]
