from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from ..errors import InvalidTransitionError


class BatchStatus:
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATUSES = {BatchStatus.COMPLETED, BatchStatus.CANCELLED, BatchStatus.FAILED}
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    BatchStatus.IDLE: {BatchStatus.RUNNING, BatchStatus.CANCELLED},
    BatchStatus.RUNNING: {
        BatchStatus.PAUSED,
        BatchStatus.COMPLETED,
        BatchStatus.CANCELLED,
        BatchStatus.FAILED,
    },
    BatchStatus.PAUSED: {BatchStatus.RUNNING, BatchStatus.CANCELLED},
    BatchStatus.COMPLETED: set(),
    BatchStatus.CANCELLED: set(),
    BatchStatus.FAILED: set(),
}

ITEM_SUCCESS = "success"
ITEM_FAILED = "failed"
ITEM_SKIPPED = "skipped"


def coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off", ""}:
            return False
    return bool(value)


def _optional_str(value: Any) -> str | None:
    if value in (None, ""):
        return None
    return str(value)


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(slots=True)
class ImportDefaults:
    force_update: bool = False
    max_item_retries: int = 2
    error_log_limit: int = 100
    max_consecutive_auth_failures: int = 3


@dataclass(slots=True)
class BatchJob:
    """Externally persisted state of one batch.

    ``processed`` counts final per-item outcomes only; an item waiting for a
    retry at the tail of ``queue`` is not processed yet.
    """

    batch_id: str
    item_codes: list[str]
    batch_type: str = "import"
    status: str = BatchStatus.IDLE
    queue: list[str] = field(default_factory=list)
    processed: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    current_code: str | None = None
    force_update: bool = False
    created_at: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    updated_at: str | None = None
    elapsed_sec: float = 0.0
    eta_sec: float | None = None
    per_item_results: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    retry_counts: dict[str, int] = field(default_factory=dict)
    consecutive_auth_failures: int = 0
    worker_token: str | None = None
    failure_reason: dict[str, Any] | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "BatchJob":
        item_codes = [str(code) for code in payload.get("item_codes") or []]
        return cls(
            batch_id=str(payload["batch_id"]),
            item_codes=item_codes,
            batch_type=str(payload.get("batch_type") or "import"),
            status=str(payload.get("status") or BatchStatus.IDLE),
            queue=[str(code) for code in payload.get("queue") or []],
            processed=int(payload.get("processed", 0)),
            success=int(payload.get("success", 0)),
            failed=int(payload.get("failed", 0)),
            skipped=int(payload.get("skipped", 0)),
            current_code=_optional_str(payload.get("current_code")),
            force_update=coerce_bool(payload.get("force_update", False)),
            created_at=_optional_str(payload.get("created_at")),
            started_at=_optional_str(payload.get("started_at")),
            finished_at=_optional_str(payload.get("finished_at")),
            updated_at=_optional_str(payload.get("updated_at")),
            elapsed_sec=float(payload.get("elapsed_sec") or 0.0),
            eta_sec=_optional_float(payload.get("eta_sec")),
            per_item_results=list(payload.get("per_item_results") or []),
            errors=list(payload.get("errors") or []),
            retry_counts={str(k): int(v) for k, v in (payload.get("retry_counts") or {}).items()},
            consecutive_auth_failures=int(payload.get("consecutive_auth_failures", 0)),
            worker_token=_optional_str(payload.get("worker_token")),
            failure_reason=payload.get("failure_reason"),
        )

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def total(self) -> int:
        return len(self.item_codes)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition(self, target: str) -> bool:
        return target in ALLOWED_TRANSITIONS.get(self.status, set())

    def transition(self, target: str) -> None:
        if not self.can_transition(target):
            raise InvalidTransitionError(
                f"Batch {self.batch_id} cannot move from {self.status} to {target}."
            )
        self.status = target

    def record_outcome(self, outcome: dict[str, Any]) -> None:
        status = outcome["status"]
        if status == ITEM_SUCCESS:
            self.success += 1
        elif status == ITEM_SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
        self.processed = self.success + self.failed + self.skipped
        self.per_item_results.append(outcome)

    def record_error(self, entry: dict[str, Any], *, limit: int) -> None:
        self.errors.append(entry)
        overflow = len(self.errors) - max(1, limit)
        if overflow > 0:
            del self.errors[:overflow]

    def update_progress(self, elapsed_sec: float) -> None:
        self.elapsed_sec = round(max(0.0, elapsed_sec), 3)
        remaining = len(self.queue)
        if self.processed <= 0:
            self.eta_sec = None
            return
        average = self.elapsed_sec / self.processed
        self.eta_sec = round(average * remaining, 3)

    def snapshot(self) -> dict[str, Any]:
        payload = self.to_payload()
        payload.pop("worker_token", None)
        payload["total"] = self.total
        payload["remaining"] = len(self.queue)
        payload["percent"] = round(100.0 * self.processed / self.total, 2) if self.total else 100.0
        return payload
