"""DurableRetryQueue — background retries for items a batch call could not resolve.

Items still failing after the immediate passes become one ``RetryJob``.  A
background sweep (every ``sweep_interval`` seconds) re-runs each due job
through the ``BatchCoordinator`` in small chunks, drops the items that
resolved and completes the job once nothing is left.

A job is abandoned exactly when its retry budget is spent
(``retry_count >= max_background_retries``) or when it is older than the
give-up horizon.  Abandonment logs every failed ``external_id`` at ERROR on
``inference_dispatch.retry_queue.permanent``, appends a record to the
permanent-failure log and notifies the abandon listeners.

The job map is the source of truth while the process runs; every state
change is mirrored to the JSONL ``RetryJobStore`` so ``recover()`` can
reload pending jobs after a restart.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from inference_dispatch.batch_coordinator import BatchCoordinator, ItemFailure
from inference_dispatch.core.errors import JobNotFoundError, PermanentFailureError
from inference_dispatch.job_store import PermanentFailureLog, PermanentFailureRecord, RetryJobStore
from inference_dispatch.models.schemas import BatchOptions, SearchContext, WorkItem
from inference_dispatch.resilience.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)
_permanent_logger = logging.getLogger("inference_dispatch.retry_queue.permanent")

AbandonListener = Callable[[PermanentFailureError], Awaitable[None] | None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ── Job model ───────────────────────────────────────────────────────────


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


@dataclass
class RetryJob:
    """A set of unresolved work items awaiting background retries.

    Attributes:
        job_id:          Unique identifier, also the key in the durable mirror.
        items:           Items not yet resolved; shrinks after every pass.
        search_context:  Context of the submission the items came from.
        retry_count:     Background passes performed so far.
        status:          Lifecycle state.
        created_at:      When the job was enqueued (give-up horizon anchor).
        last_attempt_at: Start of the most recent pass.
        next_attempt_at: Earliest time the sweep picks the job up again.
        last_errors:     Last error per ``external_id``.
    """

    job_id: str
    items: list[WorkItem]
    search_context: SearchContext | None = None
    retry_count: int = 0
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=_utcnow)
    last_attempt_at: datetime | None = None
    next_attempt_at: datetime | None = None
    last_errors: dict[str, str] = field(default_factory=dict)

    @property
    def external_ids(self) -> list[str]:
        return [item.external_id for item in self.items]

    def summary(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "item_count": len(self.items),
            "retry_count": self.retry_count,
            "created_at": self.created_at.isoformat(),
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.summary()
        data["items"] = [item.model_dump() for item in self.items]
        data["search_context"] = self.search_context.model_dump() if self.search_context else None
        data["last_errors"] = dict(self.last_errors)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryJob:
        ctx = data.get("search_context")
        return cls(
            job_id=data["job_id"],
            items=[WorkItem.model_validate(item) for item in data.get("items", [])],
            search_context=SearchContext.model_validate(ctx) if ctx else None,
            retry_count=int(data.get("retry_count", 0)),
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            created_at=_parse_dt(data.get("created_at")) or _utcnow(),
            last_attempt_at=_parse_dt(data.get("last_attempt_at")),
            next_attempt_at=_parse_dt(data.get("next_attempt_at")),
            last_errors=dict(data.get("last_errors") or {}),
        )


@dataclass
class JobPassResult:
    """Outcome of one background pass over one job."""

    job_id: str
    status: JobStatus
    retry_count: int
    resolved: int = 0
    non_retryable: int = 0
    remaining: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "resolved_items": self.resolved,
            "non_retryable_items": self.non_retryable,
            "remaining_items": self.remaining,
            "error": self.error,
        }


@dataclass
class QueueStats:
    total_items_queued: int = 0
    total_successful_retries: int = 0
    total_abandoned_items: int = 0
    total_non_retryable_items: int = 0
    jobs_completed: int = 0
    jobs_abandoned: int = 0


# ── Queue ───────────────────────────────────────────────────────────────


class DurableRetryQueue:
    """Owns every ``RetryJob`` from enqueue to completion or abandonment.

    Args:
        coordinator:       ``BatchCoordinator`` used for background passes.
        policy:            Background ``RetryPolicy`` (budget, spacing, horizon).
        store:             JSONL mirror of the job map; ``None`` disables it.
        failure_log:       Permanent-failure JSONL log; ``None`` disables it.
        retry_batch_size:  Chunk size for background passes.
        immediate_retries: Immediate passes inside one background pass.
        sweep_interval:    Seconds between background sweeps.
        compact_every:     Sweeps between compactions of the durable mirror.
        clock:             Wall clock returning aware UTC datetimes.
    """

    def __init__(
        self,
        coordinator: BatchCoordinator,
        *,
        policy: RetryPolicy | None = None,
        store: RetryJobStore | None = None,
        failure_log: PermanentFailureLog | None = None,
        retry_batch_size: int = 5,
        immediate_retries: int = 0,
        sweep_interval: float = 60.0,
        compact_every: int = 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._coordinator = coordinator
        self.policy = policy or RetryPolicy(max_attempts=20, base_delay=60.0, max_delay=600.0, give_up_after=86400.0)
        self._store = store
        self._failure_log = failure_log
        self.retry_batch_size = retry_batch_size
        self.immediate_retries = immediate_retries
        self.sweep_interval = sweep_interval
        self.compact_every = compact_every
        self._clock = clock
        self._jobs: dict[str, RetryJob] = {}
        self._lock = asyncio.Lock()
        self._listeners: list[AbandonListener] = []
        self._task: asyncio.Task | None = None
        self.stats = QueueStats()

    # ── Job map ──────────────────────────────────────────────────────

    @property
    def active_jobs(self) -> int:
        return len(self._jobs)

    def get(self, job_id: str) -> RetryJob | None:
        return self._jobs.get(job_id)

    def add_abandon_listener(self, listener: AbandonListener) -> None:
        """Register a callback receiving a ``PermanentFailureError`` per abandoned job."""
        self._listeners.append(listener)

    async def enqueue(
        self,
        items: Sequence[WorkItem],
        context: SearchContext | None = None,
        errors: dict[str, str] | None = None,
    ) -> RetryJob:
        """Create a pending job for *items*; due after the first background delay."""
        now = self._clock()
        job = RetryJob(
            job_id=f"job-{uuid.uuid4().hex[:12]}",
            items=list(items),
            search_context=context,
            created_at=now,
            next_attempt_at=now + timedelta(seconds=self.policy.delay(1)),
            last_errors=dict(errors or {}),
        )
        async with self._lock:
            self._jobs[job.job_id] = job
            self.stats.total_items_queued += len(job.items)
        await self._persist(job, "enqueued")
        logger.info(
            "Queued %d item(s) for background retry as %s",
            len(job.items),
            job.job_id,
            extra={"event": "job_enqueued", "job_id": job.job_id, "item_count": len(job.items)},
        )
        return job

    # ── Sweeping ─────────────────────────────────────────────────────

    async def sweep(self, now: datetime | None = None, force: bool = False) -> list[JobPassResult]:
        """Abandon expired jobs and run one pass over every due job.

        With ``force`` every pending job is processed regardless of
        ``next_attempt_at``.
        """
        now = now or self._clock()
        async with self._lock:
            job_ids = [job.job_id for job in self._jobs.values() if job.status == JobStatus.PENDING]
        if job_ids:
            logger.info("Sweeping %d retry job(s)", len(job_ids))

        results: list[JobPassResult] = []
        for job_id in job_ids:
            if await self._abandon_if_due(job_id, now):
                continue
            job = self._jobs.get(job_id)
            if job is None:
                continue
            if not force and job.next_attempt_at is not None and job.next_attempt_at > now:
                continue
            result = await self.process_job(job_id, now=now)
            if result is not None:
                results.append(result)
        return results

    async def process_job(self, job_id: str, now: datetime | None = None) -> JobPassResult | None:
        """Run one background pass over *job_id*.

        Returns ``None`` if the job is already being processed.

        Raises:
            JobNotFoundError: The job is unknown or already terminal.
        """
        now = now or self._clock()
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status == JobStatus.PROCESSING:
                return None
            job.status = JobStatus.PROCESSING
            job.retry_count += 1
            job.last_attempt_at = now
            items = list(job.items)

        logger.info(
            "Background retry %d for %s (%d items)",
            job.retry_count,
            job_id,
            len(items),
            extra={"event": "job_pass", "job_id": job_id, "retry_count": job.retry_count, "item_count": len(items)},
        )
        options = BatchOptions(batch_size=self.retry_batch_size, max_immediate_retries=self.immediate_retries)
        try:
            await self._persist(job, "processing")
            result = await self._coordinator.process(items, job.search_context, options)
        except asyncio.CancelledError:
            logger.warning(
                "Background retry of %s cancelled, job returned to pending",
                job_id,
                extra={"event": "job_pass_cancelled", "job_id": job_id, "retry_count": job.retry_count},
            )
            await self._reschedule(job, now, "cancelled")
            raise
        except Exception as exc:
            logger.exception("Background retry of %s failed", job_id, extra={"job_id": job_id})
            await self._reschedule(job, now, "error")
            return JobPassResult(
                job_id=job_id,
                status=job.status,
                retry_count=job.retry_count,
                remaining=len(job.items),
                error=str(exc),
            )

        async with self._lock:
            job.items = [p.item for p in result.pending]
            job.last_errors = {p.item.external_id: f"{p.error_code}: {p.detail}" for p in result.pending}
            self.stats.total_successful_retries += len(result.successes)
            self.stats.total_non_retryable_items += len(result.failures)
            if job.items:
                job.status = JobStatus.PENDING
                job.next_attempt_at = now + timedelta(seconds=self.policy.delay(job.retry_count))
            else:
                self._jobs.pop(job_id, None)
                job.status = JobStatus.COMPLETED
                job.next_attempt_at = None
                self.stats.jobs_completed += 1

        if result.failures:
            await self._record_non_retryable(job, result.failures)

        pass_result = JobPassResult(
            job_id=job_id,
            status=job.status,
            retry_count=job.retry_count,
            resolved=len(result.successes) + len(result.duplicates),
            non_retryable=len(result.failures),
            remaining=len(job.items),
        )

        if job.status == JobStatus.COMPLETED:
            await self._persist(job, "completed")
            logger.info(
                "Job %s completed after %d background pass(es)",
                job_id,
                job.retry_count,
                extra={"event": "job_completed", "job_id": job_id, "retry_count": job.retry_count},
            )
        elif await self._abandon_if_due(job_id, now):
            pass_result.status = JobStatus.ABANDONED
        else:
            await self._persist(job, "pass_completed")
            logger.info(
                "Job %s: %d resolved, %d still pending",
                job_id,
                pass_result.resolved,
                pass_result.remaining,
            )
        return pass_result

    async def _reschedule(self, job: RetryJob, now: datetime, event: str) -> None:
        """Put an interrupted job back to PENDING; the interrupted pass still counts."""
        # Mutated before the first await so a second cancellation cannot strand it in PROCESSING
        job.status = JobStatus.PENDING
        job.next_attempt_at = now + timedelta(seconds=self.policy.delay(job.retry_count))
        await self._persist(job, event)

    async def manual_retry(self, job_id: str) -> dict[str, Any]:
        """Run one pass over *job_id* now, bypassing its schedule.

        A job past its retry budget or horizon is abandoned instead.

        Raises:
            JobNotFoundError: The job is unknown or already terminal.
        """
        if job_id not in self._jobs:
            raise JobNotFoundError(job_id)
        remaining = len(self._jobs[job_id].items)
        if await self._abandon_if_due(job_id, self._clock()):
            return {
                "success": False,
                "job_id": job_id,
                "status": JobStatus.ABANDONED.value,
                "remaining_items": remaining,
            }

        result = await self.process_job(job_id)
        if result is None:
            return {
                "success": False,
                "job_id": job_id,
                "status": JobStatus.PROCESSING.value,
                "remaining_items": remaining,
                "detail": "job is already being processed",
            }
        response = result.to_dict()
        response["success"] = result.status == JobStatus.COMPLETED
        return response

    # ── Terminal states ──────────────────────────────────────────────

    async def _abandon_if_due(self, job_id: str, now: datetime) -> bool:
        """Abandon *job_id* if its budget or horizon is spent.  Returns whether it was."""
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return False
            if not self.policy.should_give_up(job.retry_count, job.created_at, now):
                return False
            if self.policy.is_exhausted(job.retry_count):
                reason = f"retry budget exhausted after {job.retry_count} background retries"
            else:
                reason = f"gave up after {self.policy.give_up_after / 3600:g} hours"
            self._jobs.pop(job_id)
            job.status = JobStatus.ABANDONED
            job.next_attempt_at = None
            self.stats.jobs_abandoned += 1
            self.stats.total_abandoned_items += len(job.items)

        await self._persist(job, "abandoned")
        await self._report_permanent(job, job.items, reason)
        return True

    async def _record_non_retryable(self, job: RetryJob, failures: list[ItemFailure]) -> None:
        by_id = {f.external_id: f"{f.error_code}: {f.detail}" for f in failures}
        for failure in failures:
            _permanent_logger.error(
                "Item %s rejected by endpoint (%s), not retried",
                failure.external_id,
                failure.error_code,
                extra={
                    "event": "item_rejected",
                    "job_id": job.job_id,
                    "external_id": failure.external_id,
                    "error_code": failure.error_code,
                    "status_code": failure.status_code,
                },
            )
        if self._failure_log is not None:
            await self._failure_log.record(
                PermanentFailureRecord(
                    job_id=job.job_id,
                    external_ids=list(by_id),
                    reason="non-retryable endpoint response",
                    retry_count=job.retry_count,
                    created_at=job.created_at.isoformat(),
                    search_context=job.search_context.model_dump() if job.search_context else None,
                    last_errors=by_id,
                )
            )

    async def _report_permanent(self, job: RetryJob, items: list[WorkItem], reason: str) -> None:
        external_ids = [item.external_id for item in items]
        for external_id in external_ids:
            _permanent_logger.error(
                "Item %s permanently failed in %s: %s",
                external_id,
                job.job_id,
                reason,
                extra={
                    "event": "item_abandoned",
                    "job_id": job.job_id,
                    "external_id": external_id,
                    "retry_count": job.retry_count,
                },
            )
        _permanent_logger.error(
            "Job %s abandoned with %d item(s): %s",
            job.job_id,
            len(external_ids),
            reason,
            extra={"event": "job_abandoned", "job_id": job.job_id, "external_ids": external_ids},
        )

        if self._failure_log is not None:
            await self._failure_log.record(
                PermanentFailureRecord(
                    job_id=job.job_id,
                    external_ids=external_ids,
                    reason=reason,
                    retry_count=job.retry_count,
                    created_at=job.created_at.isoformat(),
                    search_context=job.search_context.model_dump() if job.search_context else None,
                    last_errors=dict(job.last_errors),
                )
            )

        error = PermanentFailureError(job.job_id, external_ids, reason)
        for listener in self._listeners:
            try:
                maybe = listener(error)
                if inspect.isawaitable(maybe):
                    await maybe
            except Exception:
                logger.exception("Abandon listener failed for %s", job.job_id)

    # ── Durability ───────────────────────────────────────────────────

    async def _persist(self, job: RetryJob, event: str) -> None:
        if self._store is not None:
            await self._store.append(job.to_dict(), event)

    async def recover(self) -> int:
        """Reload pending jobs from the durable mirror.  Returns how many were added.

        Jobs caught mid-pass by a crash come back as pending.
        """
        if self._store is None:
            return 0
        recovered = 0
        for data in await self._store.load_active():
            try:
                job = RetryJob.from_dict(data)
            except (KeyError, ValueError) as exc:
                logger.warning("Skipping unreadable retry job %s: %s", data.get("job_id"), exc)
                continue
            async with self._lock:
                if job.job_id in self._jobs or not job.items:
                    continue
                job.status = JobStatus.PENDING
                self._jobs[job.job_id] = job
            recovered += 1
        if recovered:
            logger.info("Recovered %d retry job(s) from %s", recovered, self._store.path)
        await self.compact()
        return recovered

    async def persist_all(self) -> int:
        """Write a snapshot of every active job, then compact the mirror.

        Returns how many jobs were written.
        """
        async with self._lock:
            jobs = list(self._jobs.values())
        for job in jobs:
            await self._persist(job, "shutdown")
        await self.compact()
        return len(jobs)

    async def compact(self) -> None:
        """Drop finished jobs and superseded snapshots from the durable mirror."""
        if self._store is not None:
            await self._store.compact()

    # ── Background loop ──────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="retry-queue-sweep")
        logger.info("Background retry processor started (every %.0fs)", self.sweep_interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Background retry processor stopped")

    async def _run(self) -> None:
        sweeps = 0
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Background retry sweep failed")
            sweeps += 1
            if self.compact_every > 0 and sweeps % self.compact_every == 0:
                await self.compact()

    # ── Reporting ────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        stats = {
            "total_items_queued": self.stats.total_items_queued,
            "total_successful_retries": self.stats.total_successful_retries,
            "total_abandoned_items": self.stats.total_abandoned_items,
            "total_non_retryable_items": self.stats.total_non_retryable_items,
            "jobs_completed": self.stats.jobs_completed,
            "jobs_abandoned": self.stats.jobs_abandoned,
            "active_jobs": self.active_jobs,
        }
        return {
            "active_jobs": self.active_jobs,
            "jobs": [job.summary() for job in self._jobs.values()],
            "stats": stats,
            "config": {
                "sweep_interval_seconds": self.sweep_interval,
                "max_background_retries": self.policy.max_attempts,
                "retry_batch_size": self.retry_batch_size,
                "give_up_after_hours": (
                    self.policy.give_up_after / 3600 if self.policy.give_up_after is not None else None
                ),
                "running": self.running,
            },
        }
