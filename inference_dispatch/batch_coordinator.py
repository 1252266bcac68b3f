"""BatchCoordinator — bounded-concurrency batches with immediate retry passes.

A submission is de-duplicated by ``external_id``, split into chunks of
``batch_size`` (capped at ``max_batch_size``) and each chunk is dispatched
with at most ``max_concurrency`` outstanding calls.  Items that fail with a
retryable classification get up to ``max_immediate_retries`` further
passes, spaced by the ``RetryPolicy`` backoff.  Every item ends in exactly
one bucket of the ``BatchResult``:

* ``successes``  — inference stored through the ``ResultSink``
* ``duplicates`` — repeated in the submission, or already stored
* ``failures``   — non-retryable (4xx), terminal for that item
* ``pending``    — still failing after the immediate passes; the caller
                   hands these to the durable retry queue
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from inference_dispatch.core.errors import NoEndpointsAvailableError
from inference_dispatch.endpoint_dispatcher import EndpointDispatcher
from inference_dispatch.models.schemas import BatchOptions, SearchContext, WorkItem
from inference_dispatch.resilience.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)


# ── Result sink (boundary to entity storage) ────────────────────────────


class SinkOutcome(str, enum.Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"


class ResultSink(Protocol):
    """Stores an inference result for a work item.

    Implementations return ``DUPLICATE`` when a result for the same
    ``external_id`` already exists.  Raising makes the item retryable.
    """

    async def store(self, item: WorkItem, context: SearchContext, inference: dict[str, Any]) -> SinkOutcome: ...


class InMemoryResultSink:
    """Keeps results in a dict keyed by ``external_id``."""

    def __init__(self) -> None:
        self.results: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def store(self, item: WorkItem, context: SearchContext, inference: dict[str, Any]) -> SinkOutcome:
        async with self._lock:
            if item.external_id in self.results:
                return SinkOutcome.DUPLICATE
            self.results[item.external_id] = inference
            return SinkOutcome.CREATED


# ── Result types ────────────────────────────────────────────────────────


@dataclass
class ItemSuccess:
    external_id: str
    endpoint: str
    attempt: int  # 1-based pass on which the item succeeded
    latency_ms: float
    inference: dict[str, Any]

    def to_dict(self) -> dict:
        return {
            "external_id": self.external_id,
            "endpoint": self.endpoint,
            "attempt": self.attempt,
            "latency_ms": round(self.latency_ms, 2),
            "inference": self.inference,
        }


@dataclass
class ItemFailure:
    external_id: str
    error_code: str
    detail: str
    attempt: int
    status_code: int | None = None
    endpoint: str | None = None

    def to_dict(self) -> dict:
        return {
            "external_id": self.external_id,
            "error_code": self.error_code,
            "detail": self.detail,
            "attempt": self.attempt,
            "status_code": self.status_code,
            "endpoint": self.endpoint,
        }


@dataclass
class PendingItem:
    """An item still failing after the immediate passes."""

    item: WorkItem
    error_code: str
    detail: str
    attempts: int

    def to_dict(self) -> dict:
        return {
            "external_id": self.item.external_id,
            "error_code": self.error_code,
            "detail": self.detail,
            "attempts": self.attempts,
        }


@dataclass
class ProgressUpdate:
    processed: int
    total: int
    current_chunk: int
    total_chunks: int
    pass_number: int

    @property
    def percentage(self) -> int:
        return round(self.processed / self.total * 100) if self.total else 100


ProgressCallback = Callable[[ProgressUpdate], Awaitable[None] | None]


@dataclass
class BatchResult:
    """Outcome of one processing call.  Returned to the caller, never persisted."""

    total_items: int
    successes: list[ItemSuccess] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)
    pending: list[PendingItem] = field(default_factory=list)
    retry_job_id: str | None = None
    passes: int = 0
    endpoint_attempts: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    duration_ms: float = 0.0

    @property
    def permanently_failed_ids(self) -> list[str]:
        return [f.external_id for f in self.failures]

    @property
    def retrying_ids(self) -> list[str]:
        return [p.item.external_id for p in self.pending]

    @property
    def throughput_per_second(self) -> float:
        if self.duration_ms <= 0:
            return 0.0
        return len(self.successes) / (self.duration_ms / 1000)

    @property
    def average_response_ms(self) -> float:
        if not self.successes:
            return 0.0
        return sum(s.latency_ms for s in self.successes) / len(self.successes)

    @property
    def complete(self) -> bool:
        """``True`` when nothing was left for the retry queue."""
        return not self.pending

    def to_dict(self) -> dict:
        return {
            "total_items": self.total_items,
            "created_count": len(self.successes),
            "duplicate_count": len(self.duplicates),
            "failed_count": len(self.failures),
            "retrying_count": len(self.pending),
            "successes": [s.to_dict() for s in self.successes],
            "duplicates": list(self.duplicates),
            "failures": [f.to_dict() for f in self.failures],
            "pending": [p.to_dict() for p in self.pending],
            "permanently_failed_ids": self.permanently_failed_ids,
            "retrying_ids": self.retrying_ids,
            "retry_job_id": self.retry_job_id,
            "performance": {
                "passes": self.passes,
                "endpoint_attempts": self.endpoint_attempts,
                "started_at": self.started_at.isoformat(),
                "duration_ms": round(self.duration_ms, 2),
                "throughput_per_second": round(self.throughput_per_second, 3),
                "average_response_ms": round(self.average_response_ms, 2),
            },
        }


@dataclass(frozen=True)
class ProcessOptions:
    """Options resolved against the coordinator defaults."""

    batch_size: int
    max_concurrency: int
    max_immediate_retries: int
    inter_chunk_delay: float


@dataclass
class _ItemOutcome:
    kind: str  # "success" | "duplicate" | "failed" | "retry"
    item: WorkItem
    success: ItemSuccess | None = None
    error_code: str = ""
    detail: str = ""
    status_code: int | None = None
    endpoint: str | None = None
    attempts: int = 0


# ── Coordinator ─────────────────────────────────────────────────────────


class BatchCoordinator:
    """Processes work sets through the dispatcher with layered retries.

    Args:
        dispatcher:        ``EndpointDispatcher`` used for every item.
        sink:              ``ResultSink`` receiving successful inferences.
        policy:            ``RetryPolicy`` spacing the immediate passes.
        batch_size:        Default chunk size.
        max_batch_size:    Hard cap on any requested chunk size.
        max_concurrency:   Default cap on outstanding calls per chunk.
        inter_chunk_delay: Pause between chunks, in seconds.
        sleep:             Injectable sleep for tests.
    """

    def __init__(
        self,
        dispatcher: EndpointDispatcher,
        sink: ResultSink | None = None,
        *,
        policy: RetryPolicy | None = None,
        batch_size: int = 16,
        max_batch_size: int = 50,
        max_concurrency: int = 16,
        inter_chunk_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._dispatcher = dispatcher
        self.sink: ResultSink = sink or InMemoryResultSink()
        self.policy = policy or RetryPolicy()
        self.batch_size = batch_size
        self.max_batch_size = max_batch_size
        self.max_concurrency = max_concurrency
        self.inter_chunk_delay = inter_chunk_delay
        self._sleep = sleep

    def resolve(self, options: BatchOptions | None = None) -> ProcessOptions:
        opts = options or BatchOptions()
        batch_size = opts.batch_size or self.batch_size
        return ProcessOptions(
            batch_size=max(1, min(batch_size, self.max_batch_size)),
            max_concurrency=opts.max_concurrency or self.max_concurrency,
            max_immediate_retries=(
                self.policy.max_attempts if opts.max_immediate_retries is None else opts.max_immediate_retries
            ),
            inter_chunk_delay=self.inter_chunk_delay if opts.inter_chunk_delay is None else opts.inter_chunk_delay,
        )

    async def process(
        self,
        items: Sequence[WorkItem],
        context: SearchContext | None = None,
        options: BatchOptions | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> BatchResult:
        """Run the initial pass plus immediate retry passes over *items*.

        Per-item errors are collected, never raised.  Only
        ``NoEndpointsAvailableError`` handling is item-local; anything
        unexpected propagates as a batch-level failure.
        """
        opts = self.resolve(options)
        start = time.monotonic()
        result = BatchResult(total_items=len(items))

        pending: list[WorkItem] = []
        seen: set[str] = set()
        for item in items:
            if item.external_id in seen:
                result.duplicates.append(item.external_id)
                continue
            seen.add(item.external_id)
            pending.append(item)

        logger.info(
            "Processing %d items (%d duplicates) in chunks of %d, concurrency %d",
            len(pending),
            len(result.duplicates),
            opts.batch_size,
            opts.max_concurrency,
        )

        last_errors: dict[str, _ItemOutcome] = {}
        pass_number = 0
        while pending and pass_number <= opts.max_immediate_retries:
            pass_number += 1
            if pass_number > 1:
                delay = self.policy.delay(pass_number - 1)
                logger.info(
                    "Immediate retry %d/%d for %d items in %.1fs",
                    pass_number - 1,
                    opts.max_immediate_retries,
                    len(pending),
                    delay,
                )
                await self._sleep(delay)

            retry_outcomes = await self._run_pass(pending, context, opts, result, pass_number, progress_callback)
            last_errors.update({o.item.external_id: o for o in retry_outcomes})
            pending = [o.item for o in retry_outcomes]

        result.passes = pass_number
        for item in pending:
            last = last_errors[item.external_id]
            result.pending.append(
                PendingItem(item=item, error_code=last.error_code, detail=last.detail, attempts=pass_number)
            )

        result.duration_ms = (time.monotonic() - start) * 1000
        logger.info(
            "Batch done in %.0fms: %d created, %d duplicates, %d failed, %d still retrying",
            result.duration_ms,
            len(result.successes),
            len(result.duplicates),
            len(result.failures),
            len(result.pending),
        )
        return result

    async def _run_pass(
        self,
        items: list[WorkItem],
        context: SearchContext | None,
        opts: ProcessOptions,
        result: BatchResult,
        pass_number: int,
        progress_callback: ProgressCallback | None,
    ) -> list[_ItemOutcome]:
        """One pass over *items*; returns the outcomes that should be retried."""
        chunks = [items[i : i + opts.batch_size] for i in range(0, len(items), opts.batch_size)]
        semaphore = asyncio.Semaphore(opts.max_concurrency)
        retry: list[_ItemOutcome] = []
        processed = 0

        async def bounded(item: WorkItem) -> _ItemOutcome:
            async with semaphore:
                return await self._process_item(item, context, pass_number)

        for index, chunk in enumerate(chunks, start=1):
            outcomes = await asyncio.gather(*(bounded(item) for item in chunk))
            for outcome in outcomes:
                result.endpoint_attempts += outcome.attempts
                if outcome.kind == "success":
                    result.successes.append(outcome.success)
                elif outcome.kind == "duplicate":
                    result.duplicates.append(outcome.item.external_id)
                elif outcome.kind == "failed":
                    result.failures.append(
                        ItemFailure(
                            external_id=outcome.item.external_id,
                            error_code=outcome.error_code,
                            detail=outcome.detail,
                            attempt=pass_number,
                            status_code=outcome.status_code,
                            endpoint=outcome.endpoint,
                        )
                    )
                else:
                    retry.append(outcome)
            processed += len(chunk)

            if progress_callback is not None:
                await self._report_progress(
                    progress_callback,
                    ProgressUpdate(
                        processed=processed,
                        total=len(items),
                        current_chunk=index,
                        total_chunks=len(chunks),
                        pass_number=pass_number,
                    ),
                )
            if index < len(chunks) and opts.inter_chunk_delay > 0:
                await self._sleep(opts.inter_chunk_delay)

        return retry

    async def _process_item(self, item: WorkItem, context: SearchContext | None, pass_number: int) -> _ItemOutcome:
        try:
            dispatch = await self._dispatcher.dispatch(item, context)
        except NoEndpointsAvailableError as exc:
            return _ItemOutcome(kind="retry", item=item, error_code=exc.code, detail=str(exc))

        if not dispatch.attempts:
            return _ItemOutcome(kind="retry", item=item, error_code="NO_ENDPOINTS_AVAILABLE", detail="no attempt made")

        final = dispatch.final
        attempts = len(dispatch.attempts)
        if final.ok:
            ctx = item.context_or(context)
            try:
                stored = await self.sink.store(item, ctx, final.body or {})
            except Exception as exc:
                logger.warning("Result sink failed for %s: %s", item.external_id, exc)
                return _ItemOutcome(
                    kind="retry", item=item, error_code="SINK_ERROR", detail=str(exc), attempts=attempts
                )
            if stored == SinkOutcome.DUPLICATE:
                return _ItemOutcome(kind="duplicate", item=item, attempts=attempts)
            return _ItemOutcome(
                kind="success",
                item=item,
                attempts=attempts,
                success=ItemSuccess(
                    external_id=item.external_id,
                    endpoint=final.endpoint,
                    attempt=pass_number,
                    latency_ms=final.latency_ms,
                    inference=final.body or {},
                ),
            )

        return _ItemOutcome(
            kind="retry" if self.policy.is_retryable(final) else "failed",
            item=item,
            error_code=final.error_code or "UNKNOWN",
            detail=final.detail,
            status_code=final.status_code,
            endpoint=final.endpoint,
            attempts=attempts,
        )

    @staticmethod
    async def _report_progress(callback: ProgressCallback, update: ProgressUpdate) -> None:
        try:
            maybe = callback(update)
            if inspect.isawaitable(maybe):
                await maybe
        except Exception:
            logger.exception("Progress callback raised; continuing batch")
