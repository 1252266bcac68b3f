"""EndpointRegistry — single source of truth for endpoint liveness and load.

Holds one ``EndpointState`` per configured URL for the lifetime of the
process.  Every read or write of an endpoint's counters, slot count or
circuit goes through that endpoint's ``asyncio.Lock``; nothing outside
this module touches ``EndpointState`` directly.  Callers get immutable
``EndpointSnapshot`` copies.

Slot accounting:
    ``try_acquire`` and ``release`` keep ``in_flight`` inside
    ``[0, max_in_flight]``.  A release without a matching acquire raises
    ``SlotAccountingError`` instead of clamping.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from inference_dispatch.core.errors import SlotAccountingError, UnknownEndpointError
from inference_dispatch.resilience.circuit_breaker import CircuitBreaker, CircuitState

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class EndpointState:
    """Mutable per-endpoint state.  Only touched under the endpoint lock."""

    url: str
    breaker: CircuitBreaker
    in_flight: int = 0
    total_requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    total_client_errors: int = 0
    average_response_ms: float = 0.0
    is_healthy: bool = True
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    circuit_opened_at: datetime | None = None
    last_health_check_at: datetime | None = None
    last_error: str | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


@dataclass(frozen=True)
class EndpointSnapshot:
    """Read-only copy of one endpoint's state."""

    url: str
    circuit_state: CircuitState
    consecutive_failures: int
    in_flight: int
    max_in_flight: int
    total_requests: int
    total_successes: int
    total_failures: int
    total_client_errors: int
    average_response_ms: float
    is_healthy: bool
    last_success_at: datetime | None
    last_failure_at: datetime | None
    circuit_opened_at: datetime | None
    last_health_check_at: datetime | None
    last_error: str | None
    retry_after_seconds: float

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_successes / self.total_requests

    @property
    def at_capacity(self) -> bool:
        return self.in_flight >= self.max_in_flight

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "circuit_state": self.circuit_state.value,
            "is_healthy": self.is_healthy,
            "consecutive_failures": self.consecutive_failures,
            "in_flight": self.in_flight,
            "max_in_flight": self.max_in_flight,
            "total_requests": self.total_requests,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "total_client_errors": self.total_client_errors,
            "success_rate": round(self.success_rate * 100, 1),
            "average_response_ms": round(self.average_response_ms, 1),
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "circuit_opened_at": self.circuit_opened_at.isoformat() if self.circuit_opened_at else None,
            "last_health_check_at": (
                self.last_health_check_at.isoformat() if self.last_health_check_at else None
            ),
            "last_error": self.last_error,
            "retry_after_seconds": round(self.retry_after_seconds, 2),
        }


class EndpointRegistry:
    """Per-endpoint circuit state, counters and slot accounting.

    Args:
        urls:              Configured endpoint URLs (order is preserved).
        failure_threshold: Consecutive failures before a circuit opens.
        recovery_timeout:  Seconds a circuit stays OPEN before HALF_OPEN.
        half_open_max:     Trial calls allowed at once while HALF_OPEN.
        max_in_flight:     Per-endpoint concurrency cap.
        clock:             Monotonic clock handed to each circuit breaker.
    """

    def __init__(
        self,
        urls: Iterable[str],
        *,
        failure_threshold: int = 3,
        recovery_timeout: float = 60.0,
        half_open_max: int = 1,
        max_in_flight: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        self.max_in_flight = max_in_flight
        self._states: dict[str, EndpointState] = {}
        for url in urls:
            if url in self._states:
                continue
            self._states[url] = EndpointState(
                url=url,
                breaker=CircuitBreaker(
                    name=url,
                    failure_threshold=failure_threshold,
                    recovery_timeout=recovery_timeout,
                    half_open_max=half_open_max,
                    clock=clock,
                ),
            )
        if not self._states:
            raise ValueError("at least one endpoint URL is required")

        # Bumped on every event that can free capacity (release, HALF_OPEN, reset)
        self._generation = 0
        self._changed = asyncio.Condition()

    @property
    def urls(self) -> list[str]:
        return list(self._states)

    @property
    def generation(self) -> int:
        return self._generation

    def _get(self, url: str) -> EndpointState:
        try:
            return self._states[url]
        except KeyError:
            raise UnknownEndpointError(url) from None

    # ── Slot accounting ──────────────────────────────────────────────

    async def try_acquire(self, url: str) -> bool:
        """Atomically claim one in-flight slot on *url* if the circuit and cap allow it."""
        state = self._get(url)
        async with state.lock:
            if state.in_flight >= self.max_in_flight:
                return False
            if not state.breaker.admits(state.in_flight):
                return False
            state.in_flight += 1
            return True

    async def release(self, url: str) -> None:
        """Give back a slot claimed with ``try_acquire``."""
        state = self._get(url)
        async with state.lock:
            if state.in_flight <= 0:
                raise SlotAccountingError(f"release() without acquire() on {url}")
            state.in_flight -= 1
        await self._notify()

    async def wait_for_capacity(self, since_generation: int, timeout: float) -> bool:
        """Wait until capacity may have changed since *since_generation*.

        Returns ``False`` if *timeout* expires first.
        """
        async with self._changed:
            try:
                await asyncio.wait_for(
                    self._changed.wait_for(lambda: self._generation != since_generation),
                    timeout=timeout,
                )
            except TimeoutError:
                return False
        return True

    async def _notify(self) -> None:
        async with self._changed:
            self._generation += 1
            self._changed.notify_all()

    # ── Outcome recording ────────────────────────────────────────────

    async def record_success(self, url: str, latency_ms: float) -> None:
        """Reset the failure streak, fold *latency_ms* into the average, close a HALF_OPEN circuit."""
        state = self._get(url)
        async with state.lock:
            state.total_requests += 1
            state.total_successes += 1
            state.last_success_at = _utcnow()
            state.last_error = None
            # Cumulative mean over successful calls
            state.average_response_ms += (latency_ms - state.average_response_ms) / state.total_successes
            if state.breaker.on_success() == CircuitState.CLOSED:
                state.circuit_opened_at = None

    async def record_failure(self, url: str, reason: str) -> None:
        """Extend the failure streak; open the circuit at threshold or on a failed trial."""
        state = self._get(url)
        async with state.lock:
            state.total_requests += 1
            state.total_failures += 1
            state.last_failure_at = _utcnow()
            state.last_error = reason
            if state.breaker.on_failure() == CircuitState.OPEN:
                state.circuit_opened_at = state.last_failure_at

    async def record_client_error(self, url: str, status_code: int) -> None:
        """Count a 4xx answer without touching the failure streak or the circuit."""
        state = self._get(url)
        async with state.lock:
            state.total_requests += 1
            state.total_client_errors += 1
            state.last_error = f"HTTP {status_code}"

    async def record_health(self, url: str, healthy: bool, detail: str | None = None) -> None:
        """Store the result of a health probe (separate from the circuit)."""
        state = self._get(url)
        async with state.lock:
            state.is_healthy = healthy
            state.last_health_check_at = _utcnow()
            if not healthy and detail:
                state.last_error = detail

    # ── Circuit maintenance ──────────────────────────────────────────

    async def evaluate_circuits(self) -> list[tuple[str, CircuitState]]:
        """Move every OPEN circuit whose recovery timeout elapsed to HALF_OPEN."""
        transitions: list[tuple[str, CircuitState]] = []
        for state in self._states.values():
            async with state.lock:
                new_state = state.breaker.evaluate()
            if new_state is not None:
                transitions.append((state.url, new_state))
        if transitions:
            await self._notify()
        return transitions

    async def reset(self, url: str) -> None:
        """Force one circuit CLOSED."""
        state = self._get(url)
        async with state.lock:
            state.breaker.reset()
            state.circuit_opened_at = None
        await self._notify()

    # ── Reporting ────────────────────────────────────────────────────

    async def snapshot(self) -> list[EndpointSnapshot]:
        """Consistent per-endpoint copies, in configuration order."""
        snapshots = []
        for state in self._states.values():
            async with state.lock:
                snapshots.append(self._snapshot(state))
        return snapshots

    async def get(self, url: str) -> EndpointSnapshot:
        state = self._get(url)
        async with state.lock:
            return self._snapshot(state)

    def _snapshot(self, state: EndpointState) -> EndpointSnapshot:
        return EndpointSnapshot(
            url=state.url,
            circuit_state=state.breaker.state,
            consecutive_failures=state.breaker.failure_count,
            in_flight=state.in_flight,
            max_in_flight=self.max_in_flight,
            total_requests=state.total_requests,
            total_successes=state.total_successes,
            total_failures=state.total_failures,
            total_client_errors=state.total_client_errors,
            average_response_ms=state.average_response_ms,
            is_healthy=state.is_healthy,
            last_success_at=state.last_success_at,
            last_failure_at=state.last_failure_at,
            circuit_opened_at=state.circuit_opened_at,
            last_health_check_at=state.last_health_check_at,
            last_error=state.last_error,
            retry_after_seconds=state.breaker.retry_after(),
        )
