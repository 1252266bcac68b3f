"""EndpointDispatcher — picks endpoints for a work item and drives the calls.

For each work item the dispatcher:

1. takes a slot on the global semaphore (max concurrent requests),
2. ranks the eligible endpoints with ``EndpointSelector``,
3. claims a per-endpoint slot on the best candidate,
4. waits for the global minimum inter-request interval,
5. calls ``RequestExecutor.execute`` and stops on success or on a
   non-retryable failure, otherwise moves on to the next untried endpoint.

An item is only ever in flight on one endpoint at a time.  When every
untried endpoint is busy the dispatcher waits for capacity (bounded by
``slot_wait_timeout``); when every untried endpoint has an OPEN circuit it
gives up with ``NoEndpointsAvailableError``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from inference_dispatch.core.errors import NoEndpointsAvailableError
from inference_dispatch.endpoints.registry import EndpointRegistry, EndpointSnapshot
from inference_dispatch.models.schemas import SearchContext, WorkItem
from inference_dispatch.request_executor import AttemptOutcome, RequestExecutor
from inference_dispatch.resilience.circuit_breaker import CircuitState

logger = logging.getLogger(__name__)


# ── Selection ───────────────────────────────────────────────────────────


class EndpointSelector:
    """Filters and orders endpoints for the next call.

    Excluded: OPEN circuits, endpoints at their concurrency cap, and
    HALF_OPEN endpoints whose trial slots are taken.  Remaining endpoints
    are ordered by CLOSED before HALF_OPEN, healthy before unhealthy, fewer
    in-flight calls, higher success rate, then lower average latency.
    """

    def __init__(self, half_open_max: int = 1) -> None:
        self.half_open_max = half_open_max

    def is_eligible(self, snapshot: EndpointSnapshot) -> bool:
        if snapshot.circuit_state == CircuitState.OPEN:
            return False
        if snapshot.at_capacity:
            return False
        if snapshot.circuit_state == CircuitState.HALF_OPEN and snapshot.in_flight >= self.half_open_max:
            return False
        return True

    @staticmethod
    def _priority(snapshot: EndpointSnapshot) -> tuple:
        return (
            snapshot.circuit_state != CircuitState.CLOSED,
            not snapshot.is_healthy,
            snapshot.in_flight,
            -snapshot.success_rate,
            snapshot.average_response_ms,
        )

    def rank(self, snapshots: list[EndpointSnapshot]) -> list[EndpointSnapshot]:
        """Eligible endpoints, best candidate first."""
        return sorted((s for s in snapshots if self.is_eligible(s)), key=self._priority)


# ── Pacing ──────────────────────────────────────────────────────────────


class RequestPacer:
    """Enforces a minimum interval between any two outbound requests."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        if self.min_interval <= 0:
            return
        async with self._lock:
            if self._last is not None:
                delay = self._last + self.min_interval - self._clock()
                if delay > 0:
                    logger.debug("Pacing outbound request by %.2fs", delay)
                    await self._sleep(delay)
            self._last = self._clock()


# ── Dispatch ────────────────────────────────────────────────────────────


@dataclass
class DispatchResult:
    """Every attempt made for one item during one dispatch, in order."""

    external_id: str
    attempts: list[AttemptOutcome] = field(default_factory=list)

    @property
    def final(self) -> AttemptOutcome:
        return self.attempts[-1]

    @property
    def ok(self) -> bool:
        return bool(self.attempts) and self.final.ok

    @property
    def endpoints_tried(self) -> list[str]:
        return [a.endpoint for a in self.attempts]


class EndpointDispatcher:
    """Routes work items to endpoints under the global and per-endpoint caps.

    Args:
        registry:             Shared ``EndpointRegistry``.
        executor:             ``RequestExecutor`` performing the calls.
        max_concurrent:       Global cap on outstanding calls.
        min_request_interval: Minimum seconds between two outbound requests.
        slot_wait_timeout:    Max seconds to wait for a free endpoint slot.
        selector:             Optional custom ``EndpointSelector``.
    """

    def __init__(
        self,
        registry: EndpointRegistry,
        executor: RequestExecutor,
        *,
        max_concurrent: int = 16,
        min_request_interval: float = 1.0,
        slot_wait_timeout: float = 300.0,
        selector: EndpointSelector | None = None,
    ) -> None:
        self._registry = registry
        self._executor = executor
        self.max_concurrent = max_concurrent
        self.slot_wait_timeout = slot_wait_timeout
        self._selector = selector or EndpointSelector()
        self._pacer = RequestPacer(min_request_interval)
        self._global = asyncio.Semaphore(max_concurrent)
        self._active = 0

    @property
    def active_requests(self) -> int:
        """Items currently holding a global slot."""
        return self._active

    @property
    def registry(self) -> EndpointRegistry:
        return self._registry

    async def _claim(self, exclude: set[str]) -> str | None:
        """Claim a slot on the best untried endpoint; ``None`` if none is free."""
        snapshots = [s for s in await self._registry.snapshot() if s.url not in exclude]
        for candidate in self._selector.rank(snapshots):
            if await self._registry.try_acquire(candidate.url):
                return candidate.url
        return None

    async def dispatch(self, item: WorkItem, context: SearchContext | None = None) -> DispatchResult:
        """Try endpoints in priority order until one succeeds or all are exhausted.

        Returns:
            A ``DispatchResult`` whose last attempt decides the item's fate.

        Raises:
            NoEndpointsAvailableError: No attempt could be made — every
                untried circuit is OPEN or no slot freed up in time.
        """
        result = DispatchResult(external_id=item.external_id)
        async with self._global:
            self._active += 1
            try:
                await self._dispatch(item, context, result)
            finally:
                self._active -= 1
        return result

    async def _dispatch(self, item: WorkItem, context: SearchContext | None, result: DispatchResult) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.slot_wait_timeout
        tried: set[str] = set()

        while True:
            generation = self._registry.generation
            endpoint = await self._claim(tried)

            if endpoint is None:
                untried = [s for s in await self._registry.snapshot() if s.url not in tried]
                if not untried:
                    return
                if all(s.circuit_state == CircuitState.OPEN for s in untried):
                    if result.attempts:
                        return
                    raise NoEndpointsAvailableError("all circuits open")
                remaining = deadline - loop.time()
                if remaining <= 0 or not await self._registry.wait_for_capacity(generation, remaining):
                    if result.attempts:
                        return
                    raise NoEndpointsAvailableError(f"all endpoints at capacity for {self.slot_wait_timeout}s")
                continue

            try:
                await self._pacer.wait()
            except BaseException:
                await self._registry.release(endpoint)
                raise

            outcome = await self._executor.execute(endpoint, item, context)
            result.attempts.append(outcome)
            tried.add(endpoint)
            if outcome.ok or not outcome.retryable:
                return
            logger.info(
                "Item %s failed on %s (%s), trying next endpoint",
                item.external_id,
                endpoint,
                outcome.error_code,
            )
