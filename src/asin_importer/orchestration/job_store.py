from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from ..errors import BatchNotFoundError
from ..storage.kv import KeyValueStore
from ..utils import parse_iso, utc_now_iso
from .models import TERMINAL_STATUSES, BatchJob


LOGGER = logging.getLogger(__name__)

CONTROL_ACTIONS = {"pause", "resume", "cancel"}


class BatchJobStore:
    """Batch snapshots and control requests kept in the key-value store.

    The worker owns the job record while it runs; other callers talk to it
    through the control key only.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_history: int = 1000,
        retention_seconds: int = 7 * 86400,
        prefix: str = "batch",
    ) -> None:
        self.store = store
        self.max_history = max(1, max_history)
        self.retention_seconds = max(60, retention_seconds)
        self.prefix = prefix

    def _job_key(self, batch_id: str) -> str:
        return f"{self.prefix}:job:{batch_id}"

    def _control_key(self, batch_id: str) -> str:
        return f"{self.prefix}:control:{batch_id}"

    def save(self, job: BatchJob) -> None:
        job.updated_at = utc_now_iso()
        self.store.set(self._job_key(job.batch_id), job.to_payload())

    def load(self, batch_id: str) -> BatchJob | None:
        payload = self.store.get(self._job_key(batch_id))
        if not isinstance(payload, dict):
            return None
        return BatchJob.from_payload(payload)

    def require(self, batch_id: str) -> BatchJob:
        job = self.load(batch_id)
        if job is None:
            raise BatchNotFoundError(f"Batch not found: {batch_id}")
        return job

    def delete(self, batch_id: str) -> bool:
        removed = self.store.delete(self._job_key(batch_id))
        self.store.delete(self._control_key(batch_id))
        return removed

    def list_jobs(self) -> list[BatchJob]:
        jobs = [
            BatchJob.from_payload(payload)
            for _key, payload in self.store.scan(f"{self.prefix}:job:")
            if isinstance(payload, dict)
        ]
        return sorted(jobs, key=lambda job: job.created_at or "")

    def request_control(self, batch_id: str, action: str) -> None:
        if action not in CONTROL_ACTIONS:
            raise ValueError(f"Unsupported control action: {action}")
        self.store.set(
            self._control_key(batch_id),
            {"action": action, "requested_at": utc_now_iso()},
            ttl=self.retention_seconds,
        )

    def read_control(self, batch_id: str) -> str | None:
        payload = self.store.get(self._control_key(batch_id))
        if not isinstance(payload, dict):
            return None
        action = payload.get("action")
        return action if action in CONTROL_ACTIONS else None

    def clear_control(self, batch_id: str) -> None:
        self.store.delete(self._control_key(batch_id))

    def purge_expired(self) -> int:
        """Delete rows whose TTL lapsed; reads already skip them."""
        return self.store.purge_expired()

    def summary(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        jobs = self.list_jobs()
        for job in jobs:
            counts[job.status] = counts.get(job.status, 0) + 1
        return {"jobs_total": len(jobs), "jobs_by_status": counts}

    def prune(self) -> int:
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.retention_seconds)
        to_delete: set[str] = set()

        terminal: list[tuple[str, datetime]] = []
        for job in self.list_jobs():
            if job.status not in TERMINAL_STATUSES:
                continue
            candidate_ts = (
                parse_iso(job.finished_at)
                or parse_iso(job.started_at)
                or parse_iso(job.created_at)
            )
            if candidate_ts is not None and candidate_ts < cutoff:
                to_delete.add(job.batch_id)
                continue
            terminal.append((job.batch_id, candidate_ts or now))

        if len(terminal) > self.max_history:
            overflow = len(terminal) - self.max_history
            for batch_id, _ts in sorted(terminal, key=lambda item: item[1])[:overflow]:
                to_delete.add(batch_id)

        for batch_id in to_delete:
            self.delete(batch_id)
        if to_delete:
            LOGGER.debug("Pruned batches from history: %s", len(to_delete))
        return len(to_delete)
