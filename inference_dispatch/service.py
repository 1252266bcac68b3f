"""InferenceDispatchService — the inbound API, wired once per process.

Owns the registry, executor, dispatcher, coordinator, health monitor and
retry queue, and exposes the operations callers use:

    submit_batch        process a work set; unresolved items go to the retry queue
    get_health_status   per-endpoint circuit state, load and statistics
    get_queue_status    active retry jobs and cumulative queue statistics
    manual_retry        run one retry job now
    retry_all_pending   reload jobs from the durable mirror and sweep them now
    test_connection     probe every endpoint and report reachability
    reset_circuit       force one endpoint's circuit CLOSED

The instance is passed by handle (FastAPI keeps it on ``app.state``); there
are no module-level singletons.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from inference_dispatch.batch_coordinator import (
    BatchCoordinator,
    BatchResult,
    InMemoryResultSink,
    ProgressCallback,
    ResultSink,
)
from inference_dispatch.core.config import Settings
from inference_dispatch.endpoint_dispatcher import EndpointDispatcher, EndpointSelector
from inference_dispatch.endpoints.health_monitor import HealthMonitor
from inference_dispatch.endpoints.registry import EndpointRegistry
from inference_dispatch.job_store import PermanentFailureLog, RetryJobStore
from inference_dispatch.models.schemas import BatchOptions, SearchContext, WorkItem
from inference_dispatch.request_executor import RequestExecutor
from inference_dispatch.resilience.circuit_breaker import CircuitState
from inference_dispatch.retry_queue import DurableRetryQueue

logger = logging.getLogger(__name__)


class InferenceDispatchService:
    """Facade over the dispatch pipeline.  Build it with ``from_settings``."""

    def __init__(
        self,
        settings: Settings,
        *,
        registry: EndpointRegistry,
        executor: RequestExecutor,
        dispatcher: EndpointDispatcher,
        coordinator: BatchCoordinator,
        monitor: HealthMonitor,
        retry_queue: DurableRetryQueue,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.executor = executor
        self.dispatcher = dispatcher
        self.coordinator = coordinator
        self.monitor = monitor
        self.retry_queue = retry_queue
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        sink: ResultSink | None = None,
    ) -> InferenceDispatchService:
        """Wire every component from *settings*."""
        s = settings or Settings()
        registry = EndpointRegistry(
            s.ENDPOINT_URLS,
            failure_threshold=s.CIRCUIT_BREAKER_THRESHOLD,
            recovery_timeout=s.CIRCUIT_BREAKER_TIMEOUT_SECONDS,
            half_open_max=s.CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS,
            max_in_flight=s.MAX_CONCURRENT_PER_ENDPOINT,
        )
        executor = RequestExecutor(
            registry,
            timeout=s.REQUEST_TIMEOUT_SECONDS,
            connect_timeout=s.CONNECT_TIMEOUT_SECONDS,
            user_agent=s.USER_AGENT,
            probe_timeout=s.HEALTH_CHECK_TIMEOUT_SECONDS,
            probe_accepted_statuses=s.HEALTH_PROBE_ACCEPTED_STATUSES,
            probe_external_id=s.HEALTH_PROBE_EXTERNAL_ID,
        )
        dispatcher = EndpointDispatcher(
            registry,
            executor,
            max_concurrent=s.MAX_CONCURRENT_REQUESTS,
            min_request_interval=s.MIN_REQUEST_INTERVAL_SECONDS,
            slot_wait_timeout=s.SLOT_WAIT_TIMEOUT_SECONDS,
            selector=EndpointSelector(half_open_max=s.CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS),
        )
        coordinator = BatchCoordinator(
            dispatcher,
            sink or InMemoryResultSink(),
            policy=s.immediate_retry_policy(),
            batch_size=s.BATCH_SIZE,
            max_batch_size=s.MAX_BATCH_SIZE,
            max_concurrency=s.MAX_CONCURRENT_REQUESTS,
            inter_chunk_delay=s.INTER_CHUNK_DELAY_SECONDS,
        )
        monitor = HealthMonitor(
            registry,
            executor,
            circuit_check_interval=s.CIRCUIT_CHECK_INTERVAL_SECONDS,
            probe_interval=s.HEALTH_CHECK_INTERVAL_SECONDS,
            probes_enabled=s.HEALTH_PROBE_ENABLED,
        )
        retry_queue = DurableRetryQueue(
            coordinator,
            policy=s.background_retry_policy(),
            store=RetryJobStore(s.RETRY_JOB_STORE_PATH),
            failure_log=PermanentFailureLog(s.PERMANENT_FAILURE_LOG_PATH),
            retry_batch_size=s.RETRY_BATCH_SIZE,
            immediate_retries=s.BACKGROUND_IMMEDIATE_RETRIES,
            sweep_interval=s.BACKGROUND_RETRY_INTERVAL_SECONDS,
        )
        return cls(
            s,
            registry=registry,
            executor=executor,
            dispatcher=dispatcher,
            coordinator=coordinator,
            monitor=monitor,
            retry_queue=retry_queue,
        )

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the health monitor and the retry sweep; recover persisted jobs."""
        if self._started:
            return
        if self.settings.RECOVER_ON_STARTUP:
            await self.retry_queue.recover()
        self.monitor.start()
        self.retry_queue.start()
        self._started = True
        logger.info("%s started with %d endpoint(s)", self.settings.SERVICE_NAME, len(self.registry.urls))

    async def stop(self) -> None:
        """Cancel the loops, persist active jobs and close the HTTP client."""
        await self.monitor.stop()
        await self.retry_queue.stop()
        persisted = await self.retry_queue.persist_all()
        await self.executor.close()
        self._started = False
        logger.info("%s stopped (%d active retry job(s) persisted)", self.settings.SERVICE_NAME, persisted)

    # ── Operations ───────────────────────────────────────────────────

    async def submit_batch(
        self,
        items: Sequence[WorkItem],
        search_context: SearchContext | None = None,
        options: BatchOptions | None = None,
        progress_callback: ProgressCallback | None = None,
    ) -> BatchResult:
        """Process *items*; hand unresolved ones to the durable retry queue.

        Per-item failures are reported in the result, never raised.
        """
        result = await self.coordinator.process(items, search_context, options, progress_callback)
        if result.pending:
            errors = {p.item.external_id: f"{p.error_code}: {p.detail}" for p in result.pending}
            job = await self.retry_queue.enqueue([p.item for p in result.pending], search_context, errors)
            result.retry_job_id = job.job_id
        return result

    async def get_health_status(self) -> dict[str, Any]:
        snapshots = await self.registry.snapshot()
        available = [s for s in snapshots if s.circuit_state != CircuitState.OPEN]
        return {
            "endpoints": [s.to_dict() for s in snapshots],
            "healthy_count": sum(1 for s in snapshots if s.is_healthy and s.circuit_state == CircuitState.CLOSED),
            "available_count": len(available),
            "total_count": len(snapshots),
            "active_requests": self.dispatcher.active_requests,
            "max_concurrent_requests": self.dispatcher.max_concurrent,
            "max_concurrent_per_endpoint": self.registry.max_in_flight,
            "checked_at": datetime.now(UTC).isoformat(),
        }

    def get_queue_status(self) -> dict[str, Any]:
        return self.retry_queue.status()

    async def manual_retry(self, job_id: str) -> dict[str, Any]:
        """Raises ``JobNotFoundError`` for unknown or finished jobs."""
        return await self.retry_queue.manual_retry(job_id)

    async def retry_all_pending(self) -> dict[str, Any]:
        """Reload pending jobs from the durable mirror and process all of them now."""
        recovered = await self.retry_queue.recover()
        results = await self.retry_queue.sweep(force=True)
        return {
            "success": True,
            "recovered_jobs": recovered,
            "jobs_retried": len(results),
            "results": [r.to_dict() for r in results],
        }

    async def test_connection(self) -> dict[str, Any]:
        """Probe every endpoint once and report reachability."""
        outcomes = await self.monitor.probe_all()
        reachable = sum(1 for o in outcomes if o.ok)
        return {
            "success": reachable > 0,
            "reachable_count": reachable,
            "total_count": len(outcomes),
            "endpoints": [
                {
                    "url": o.endpoint,
                    "reachable": o.ok,
                    "status_code": o.status_code,
                    "latency_ms": round(o.latency_ms, 1),
                    "error": o.detail or None,
                }
                for o in outcomes
            ],
        }

    async def reset_circuit(self, url: str) -> dict[str, Any]:
        """Force *url*'s circuit CLOSED.  Raises ``UnknownEndpointError`` if not configured."""
        await self.registry.reset(url)
        snapshot = await self.registry.get(url)
        logger.warning("Circuit for %s reset by operator", url, extra={"endpoint": url})
        return snapshot.to_dict()
