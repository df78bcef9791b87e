from __future__ import annotations

from typing import Any


class ImporterError(Exception):
    """Base class for every typed failure raised by the import pipeline."""

    kind = "internal"
    retryable = False

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.code = code

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.code:
            payload["code"] = self.code
        return payload


class AuthError(ImporterError):
    kind = "auth"


class ThrottleError(ImporterError):
    kind = "throttle"
    retryable = True


class TransientNetworkError(ImporterError):
    kind = "transient_network"
    retryable = True


class ValidationError(ImporterError):
    kind = "validation"


class NotFoundError(ImporterError):
    kind = "not_found"


class ExhaustedRetriesError(ImporterError):
    kind = "exhausted_retries"
    # Another pass may succeed once the vendor recovers.
    retryable = True

    def __init__(self, message: str = "", *, cause: ImporterError):
        super().__init__(message or f"Retry budget exhausted: {cause.message}", code=cause.code)
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["cause"] = self.cause.to_dict()
        return payload


class RequestAbortedError(ImporterError):
    """Backoff wait interrupted because the caller asked to stop."""

    kind = "aborted"


class AlreadyRunningError(ImporterError):
    kind = "already_running"


class BatchNotFoundError(ImporterError):
    kind = "batch_not_found"


class InvalidTransitionError(ImporterError):
    kind = "invalid_transition"


def error_to_dict(exc: BaseException) -> dict[str, Any]:
    if isinstance(exc, ImporterError):
        return exc.to_dict()
    return {"kind": "internal", "message": str(exc) or exc.__class__.__name__}
