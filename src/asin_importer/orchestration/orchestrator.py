from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Sequence
from uuid import uuid4

from ..codes import dedupe_codes
from ..errors import (
    AlreadyRunningError,
    AuthError,
    ImporterError,
    InvalidTransitionError,
    RequestAbortedError,
    ValidationError,
)
from ..storage.lock import DEFAULT_LOCK_TTL_SEC, AdvisoryLock
from ..utils import ContextLogger, reset_log_context, set_log_context, span_context, utc_now_iso
from .importer import ItemOutcome, ProductImporter
from .job_store import BatchJobStore
from .models import ITEM_FAILED, BatchJob, BatchStatus, ImportDefaults


LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class OrchestratorConfig:
    defaults: ImportDefaults = field(default_factory=ImportDefaults)
    lock_ttl_sec: int = DEFAULT_LOCK_TTL_SEC
    pause_poll_interval_sec: float = 0.5
    scheduled_batch_type: str = "sync"


@dataclass(slots=True)
class ProgressEvent:
    batch_id: str
    status: str
    total: int
    processed: int
    success: int
    failed: int
    skipped: int
    current_code: str | None
    elapsed_sec: float
    eta_sec: float | None

    @classmethod
    def from_job(cls, job: BatchJob) -> "ProgressEvent":
        return cls(
            batch_id=job.batch_id,
            status=job.status,
            total=job.total,
            processed=job.processed,
            success=job.success,
            failed=job.failed,
            skipped=job.skipped,
            current_code=job.current_code,
            elapsed_sec=job.elapsed_sec,
            eta_sec=job.eta_sec,
        )

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


ProgressCallback = Callable[[ProgressEvent], Any]


class _BatchStopped(Exception):
    """Internal signal: the run loop observed a terminal control request."""


class _BatchSuperseded(Exception):
    """Internal signal: the persisted record no longer belongs to this worker."""


class BatchOrchestrator:
    """Drives batches of item codes through the importer, one worker per batch type.

    All state a caller may observe lives in the job store, so status queries
    and control requests work from any process sharing that store.
    """

    def __init__(
        self,
        importer: ProductImporter,
        job_store: BatchJobStore,
        *,
        config: OrchestratorConfig | None = None,
        on_progress: ProgressCallback | None = None,
        scheduled_source: Callable[[], Sequence[str]] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.importer = importer
        self.job_store = job_store
        self.config = config or OrchestratorConfig()
        self.on_progress = on_progress
        self.scheduled_source = scheduled_source
        self._clock = clock
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task[BatchJob | None]] = {}

    def _lock(self, batch_type: str) -> AdvisoryLock:
        return AdvisoryLock(
            self.job_store.store,
            f"batch:{batch_type}",
            ttl_sec=self.config.lock_ttl_sec,
        )

    def _worker_alive(self, job: BatchJob) -> bool:
        holder = self._lock(job.batch_type).holder()
        return holder is not None and holder.get("batch_id") == job.batch_id

    def _spawn(self, job: BatchJob) -> None:
        token = str(job.worker_token)
        task = asyncio.create_task(self._run_guarded(job.batch_id, token), name=f"batch-{job.batch_id}")
        self._tasks[job.batch_id] = task

        def _forget(done: asyncio.Task[BatchJob | None]) -> None:
            if self._tasks.get(job.batch_id) is done:
                self._tasks.pop(job.batch_id, None)

        task.add_done_callback(_forget)

    def _claim(self, job: BatchJob) -> None:
        """Take the single-flight lock for ``job`` and mark it running."""
        token = uuid4().hex
        lock = self._lock(job.batch_type)
        if not lock.acquire(token, batch_id=job.batch_id):
            holder = lock.holder() or {}
            raise AlreadyRunningError(
                f"A {job.batch_type} batch is already running: {holder.get('batch_id', 'unknown')}"
            )
        try:
            if job.status != BatchStatus.RUNNING:
                job.transition(BatchStatus.RUNNING)
            job.worker_token = token
            job.started_at = job.started_at or utc_now_iso()
            # Retry budgets are scoped to one worker run.
            job.retry_counts = {}
            job.consecutive_auth_failures = 0
            self.job_store.clear_control(job.batch_id)
            self.job_store.save(job)
        except Exception:
            lock.release(token)
            raise

    async def start(
        self,
        codes: Sequence[str],
        *,
        force_update: bool | None = None,
        batch_type: str = "import",
    ) -> BatchJob:
        unique = dedupe_codes(codes)
        if not unique:
            raise ValidationError("A batch needs at least one item code.")
        job = BatchJob(
            batch_id=uuid4().hex,
            item_codes=unique,
            batch_type=batch_type,
            queue=list(unique),
            force_update=self.config.defaults.force_update if force_update is None else force_update,
            created_at=utc_now_iso(),
        )
        self._claim(job)
        LOGGER.info(
            "Batch started: batch_id=%s type=%s items=%s force_update=%s",
            job.batch_id,
            batch_type,
            job.total,
            job.force_update,
        )
        self._spawn(job)
        return job

    async def wait(self, batch_id: str) -> BatchJob:
        task = self._tasks.get(batch_id)
        if task is not None:
            await asyncio.shield(task)
        return self.job_store.require(batch_id)

    def get_status(self, batch_id: str) -> BatchJob:
        return self.job_store.require(batch_id)

    def list_jobs(self) -> list[BatchJob]:
        return self.job_store.list_jobs()

    def clear(self, batch_id: str) -> bool:
        job = self.job_store.require(batch_id)
        if not job.is_terminal:
            raise InvalidTransitionError(f"Batch {batch_id} is {job.status}; only finished batches can be cleared.")
        return self.job_store.delete(batch_id)

    def pause(self, batch_id: str) -> BatchJob:
        job = self.job_store.require(batch_id)
        if not job.can_transition(BatchStatus.PAUSED):
            raise InvalidTransitionError(f"Batch {batch_id} cannot be paused from {job.status}.")
        if self._worker_alive(job):
            self.job_store.request_control(batch_id, "pause")
            LOGGER.info("Pause requested: batch_id=%s", batch_id)
            return job
        job.transition(BatchStatus.PAUSED)
        job.current_code = None
        self.job_store.save(job)
        # A worker whose lock lapsed mid-item still sees the request.
        self.job_store.request_control(batch_id, "pause")
        LOGGER.info("Orphaned batch paused directly: batch_id=%s", batch_id)
        return job

    def resume(self, batch_id: str) -> BatchJob:
        job = self.job_store.require(batch_id)
        if job.status != BatchStatus.PAUSED:
            raise InvalidTransitionError(f"Batch {batch_id} cannot be resumed from {job.status}.")
        if self._worker_alive(job):
            self.job_store.request_control(batch_id, "resume")
            LOGGER.info("Resume requested: batch_id=%s", batch_id)
            return job
        self._claim(job)
        self._spawn(job)
        LOGGER.info("Batch resumed with a new worker: batch_id=%s remaining=%s", batch_id, len(job.queue))
        return job

    def cancel(self, batch_id: str) -> BatchJob:
        job = self.job_store.require(batch_id)
        if not job.can_transition(BatchStatus.CANCELLED):
            raise InvalidTransitionError(f"Batch {batch_id} cannot be cancelled from {job.status}.")
        if self._worker_alive(job):
            self.job_store.request_control(batch_id, "cancel")
            LOGGER.info("Cancel requested: batch_id=%s", batch_id)
            return job
        job.transition(BatchStatus.CANCELLED)
        job.current_code = None
        job.finished_at = utc_now_iso()
        self.job_store.save(job)
        self.job_store.request_control(batch_id, "cancel")
        LOGGER.info("Batch cancelled without a live worker: batch_id=%s", batch_id)
        return job

    async def run_scheduled(self) -> BatchJob | None:
        """Periodic entry point: adopt an orphaned batch or start a sync pass."""
        self.job_store.prune()
        self.job_store.purge_expired()
        for job in self.job_store.list_jobs():
            if job.status != BatchStatus.RUNNING or job.batch_id in self._tasks:
                continue
            if self._worker_alive(job):
                continue
            try:
                self._claim(job)
            except AlreadyRunningError:
                continue
            LOGGER.warning("Adopting orphaned batch: batch_id=%s remaining=%s", job.batch_id, len(job.queue))
            self._spawn(job)
            return job

        if self.scheduled_source is None:
            return None
        codes = list(self.scheduled_source())
        if not codes:
            LOGGER.debug("Scheduled run skipped: no item codes to sync")
            return None
        try:
            return await self.start(codes, force_update=True, batch_type=self.config.scheduled_batch_type)
        except AlreadyRunningError as exc:
            LOGGER.info("Scheduled run skipped: %s", exc.message)
            return None

    async def aclose(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _emit(self, job: BatchJob) -> None:
        if self.on_progress is None:
            return
        try:
            result = self.on_progress(ProgressEvent.from_job(job))
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.exception("Progress callback failed: batch_id=%s", job.batch_id)

    async def _run_guarded(self, batch_id: str, token: str) -> BatchJob | None:
        try:
            return await self.run_batch(batch_id, token)
        except asyncio.CancelledError:
            LOGGER.warning("Batch worker cancelled; batch stays resumable: batch_id=%s", batch_id)
            raise
        except Exception as exc:
            LOGGER.exception("Batch worker crashed: batch_id=%s", batch_id)
            job = self.job_store.load(batch_id)
            if job is not None and job.can_transition(BatchStatus.FAILED):
                job.transition(BatchStatus.FAILED)
                job.failure_reason = {"kind": "internal", "message": str(exc)}
                job.finished_at = utc_now_iso()
                self.job_store.save(job)
            return job

    async def _heartbeat(self, lock: AdvisoryLock, token: str, logger: ContextLogger) -> None:
        """Keep the lock alive while a single item runs longer than its TTL."""
        interval = max(0.05, lock.ttl_sec / 3)
        held = True
        while True:
            await asyncio.sleep(interval)
            refreshed = lock.refresh(token)
            if held and not refreshed:
                logger.warning("Batch lock lost; ownership is re-checked before the next save")
            held = refreshed

    def _persist(self, job: BatchJob, lock: AdvisoryLock, token: str) -> None:
        """Save ``job`` unless another caller finished it or another worker took it over."""
        stored = self.job_store.load(job.batch_id)
        if stored is None:
            raise _BatchSuperseded("record deleted")
        if stored.is_terminal:
            raise _BatchSuperseded(f"record is already {stored.status}")
        if stored.worker_token != token:
            raise _BatchSuperseded("record claimed by another worker")
        if not job.is_terminal and not lock.is_held_by(token):
            if not lock.acquire(token, batch_id=job.batch_id):
                raise _BatchSuperseded("lock held by another worker")
            LOGGER.warning("Batch lock lapsed and was re-acquired: batch_id=%s", job.batch_id)
        self.job_store.save(job)

    async def _wait_while_paused(self, job: BatchJob, lock: AdvisoryLock, token: str, logger: ContextLogger) -> None:
        job.transition(BatchStatus.PAUSED)
        job.current_code = None
        self.job_store.clear_control(job.batch_id)
        self._persist(job, lock, token)
        logger.info("Batch paused: processed=%s remaining=%s", job.processed, len(job.queue))
        await self._emit(job)
        while True:
            await self._sleep(self.config.pause_poll_interval_sec)
            control = self.job_store.read_control(job.batch_id)
            if control == "cancel":
                raise _BatchStopped()
            if control == "resume":
                self.job_store.clear_control(job.batch_id)
                job.transition(BatchStatus.RUNNING)
                self._persist(job, lock, token)
                logger.info("Batch resumed: remaining=%s", len(job.queue))
                await self._emit(job)
                return

    def _all_failed_on_auth(self, job: BatchJob) -> bool:
        if job.processed == 0 or job.failed != job.processed:
            return False
        return all(
            (result.get("error") or {}).get("kind") == AuthError.kind
            for result in job.per_item_results
        )

    def _finish(self, job: BatchJob, status: str, logger: ContextLogger) -> None:
        job.transition(status)
        job.current_code = None
        job.finished_at = utc_now_iso()
        logger.info(
            "Batch finished: status=%s processed=%s success=%s failed=%s skipped=%s",
            status,
            job.processed,
            job.success,
            job.failed,
            job.skipped,
        )

    async def _process_item(self, job: BatchJob, code: str, logger: ContextLogger) -> None:
        def abort() -> bool:
            return self.job_store.read_control(job.batch_id) == "cancel"

        item_logger = logger.child(item_code=code)
        started = self._clock()
        log_token = set_log_context(item_code=code)
        try:
            with span_context("batch.import_item", attributes={"batch.id": job.batch_id, "item.code": code}):
                outcome: ItemOutcome = await self.importer.import_one(
                    code,
                    force_update=job.force_update,
                    abort=abort,
                )
        except RequestAbortedError:
            # Not an outcome: the code goes back untouched and the loop sees the cancel.
            job.queue.insert(0, code)
            item_logger.info("Item interrupted by cancellation during backoff")
            return
        except Exception as exc:
            if not isinstance(exc, ImporterError):
                item_logger.exception("Unexpected import error")
            self._handle_item_error(job, code, exc, item_logger)
        else:
            job.consecutive_auth_failures = 0
            payload = outcome.to_payload()
            payload["attempts"] = job.retry_counts.get(code, 0) + 1
            job.record_outcome(payload)
            item_logger.debug("Item outcome: status=%s id=%s", outcome.status, outcome.id)
        finally:
            reset_log_context(log_token)
            job.elapsed_sec = round(job.elapsed_sec + (self._clock() - started), 3)
        job.update_progress(job.elapsed_sec)

    def _handle_item_error(self, job: BatchJob, code: str, exc: Exception, logger: ContextLogger) -> None:
        defaults = self.config.defaults
        error = exc.to_dict() if isinstance(exc, ImporterError) else {"kind": "internal", "message": str(exc)}
        attempts = job.retry_counts.get(code, 0)
        job.record_error(
            {
                "item_code": code,
                "kind": error["kind"],
                "message": error["message"],
                "attempt": attempts + 1,
                "timestamp": utc_now_iso(),
            },
            limit=defaults.error_log_limit,
        )
        if isinstance(exc, AuthError):
            job.consecutive_auth_failures += 1
        else:
            job.consecutive_auth_failures = 0

        retryable = isinstance(exc, ImporterError) and exc.retryable
        if retryable and attempts < defaults.max_item_retries:
            job.retry_counts[code] = attempts + 1
            job.queue.append(code)
            logger.warning(
                "Item failed, re-enqueued (%s/%s): %s",
                attempts + 1,
                defaults.max_item_retries,
                error["message"],
            )
            return
        job.record_outcome(
            {
                "item_code": code,
                "status": ITEM_FAILED,
                "id": None,
                "created": False,
                "updated": False,
                "message": error["message"],
                "error": error,
                "attempts": attempts + 1,
            }
        )
        logger.warning("Item failed permanently: kind=%s message=%s", error["kind"], error["message"])

    async def run_batch(self, batch_id: str, token: str) -> BatchJob:
        """Worker sequence for one batch; returns the final persisted state."""
        job = self.job_store.require(batch_id)
        lock = self._lock(job.batch_type)
        defaults = self.config.defaults
        logger = ContextLogger(LOGGER, batch_id=batch_id, batch_type=job.batch_type)
        log_token = set_log_context(batch_id=batch_id)
        heartbeat = asyncio.create_task(self._heartbeat(lock, token, logger), name=f"batch-lock-{batch_id}")
        superseded = False
        try:
            while True:
                control = self.job_store.read_control(batch_id)
                if control == "cancel":
                    raise _BatchStopped()
                if control == "pause":
                    await self._wait_while_paused(job, lock, token, logger)
                    continue
                if control == "resume":
                    self.job_store.clear_control(batch_id)

                if not job.queue:
                    status = BatchStatus.FAILED if self._all_failed_on_auth(job) else BatchStatus.COMPLETED
                    if status == BatchStatus.FAILED:
                        job.failure_reason = {"kind": AuthError.kind, "message": "Every item failed authentication."}
                    self._finish(job, status, logger)
                    break

                code = job.queue.pop(0)
                job.current_code = code
                self._persist(job, lock, token)
                await self._process_item(job, code, logger)

                if job.consecutive_auth_failures >= max(1, defaults.max_consecutive_auth_failures):
                    job.failure_reason = {
                        "kind": AuthError.kind,
                        "message": f"{job.consecutive_auth_failures} consecutive authentication failures.",
                    }
                    self._finish(job, BatchStatus.FAILED, logger)
                    break

                self._persist(job, lock, token)
                await self._emit(job)
        except _BatchStopped:
            self._finish(job, BatchStatus.CANCELLED, logger)
        except _BatchSuperseded as exc:
            superseded = True
            logger.warning("Worker stopped without saving: %s", exc)
        finally:
            heartbeat.cancel()
            if not superseded:
                if not job.is_terminal:
                    job.current_code = None
                try:
                    self._persist(job, lock, token)
                except _BatchSuperseded as exc:
                    superseded = True
                    logger.warning("Final state not saved: %s", exc)
            if superseded:
                job = self.job_store.load(batch_id) or job
            if job.is_terminal or not superseded:
                self.job_store.clear_control(batch_id)
            lock.release(token)
            reset_log_context(log_token)
        await self._emit(job)
        return job
