"""Per-endpoint circuit breaker — three-state transition logic.

    CLOSED    →  (consecutive failures ≥ threshold)  →  OPEN
    OPEN      →  (recovery timeout elapsed, on evaluate)  →  HALF_OPEN
    HALF_OPEN →  (trial call succeeds)  →  CLOSED
    HALF_OPEN →  (trial call fails)     →  OPEN

OPEN never moves straight to CLOSED: the OPEN → HALF_OPEN step only
happens inside ``evaluate()``, which the health monitor calls on its tick.

The breaker itself holds no lock.  ``EndpointRegistry`` owns one
``asyncio.Lock`` per endpoint and calls into the breaker only while
holding it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Circuit state for a single endpoint.

    Args:
        name:              Endpoint URL (for logging).
        failure_threshold: Consecutive failures before opening the circuit.
        recovery_timeout:  Seconds the circuit stays OPEN before a trial.
        half_open_max:     Max concurrent trial calls in HALF_OPEN state.
        clock:             Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        recovery_timeout: float = 60.0,
        half_open_max: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max = half_open_max
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None

    # ── Public properties ────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def opened_at(self) -> float | None:
        """Monotonic time at which the circuit last opened."""
        return self._opened_at

    def retry_after(self) -> float:
        """Seconds until an OPEN circuit becomes eligible for a trial."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))

    # ── Admission ────────────────────────────────────────────────────

    def admits(self, in_flight: int) -> bool:
        """Whether one more call may start given *in_flight* running calls.

        OPEN admits nothing; HALF_OPEN admits up to ``half_open_max`` trials.
        The per-endpoint concurrency cap is checked by the registry.
        """
        if self._state == CircuitState.OPEN:
            return False
        if self._state == CircuitState.HALF_OPEN:
            return in_flight < self.half_open_max
        return True

    # ── Transitions ──────────────────────────────────────────────────

    def on_success(self) -> CircuitState | None:
        """Record a successful call; return the new state if it changed."""
        self._failure_count = 0
        if self._state == CircuitState.HALF_OPEN:
            return self._transition(CircuitState.CLOSED)
        return None

    def on_failure(self) -> CircuitState | None:
        """Record a failed call; return the new state if it changed."""
        self._failure_count += 1
        if self._state == CircuitState.HALF_OPEN:
            # Trial failed: reopen and restart the recovery window
            return self._open()
        if self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
            return self._open()
        if self._state == CircuitState.OPEN:
            # Late failure from a call admitted before the circuit opened
            self._opened_at = self._clock()
        return None

    def evaluate(self) -> CircuitState | None:
        """Move OPEN → HALF_OPEN once the recovery timeout has elapsed."""
        if self._state == CircuitState.OPEN and self.retry_after() <= 0.0:
            return self._transition(CircuitState.HALF_OPEN)
        return None

    def reset(self) -> CircuitState | None:
        """Force the circuit CLOSED (operator action)."""
        self._failure_count = 0
        if self._state != CircuitState.CLOSED:
            return self._transition(CircuitState.CLOSED)
        return None

    def _open(self) -> CircuitState:
        self._opened_at = self._clock()
        return self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> CircuitState:
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.CLOSED:
            self._opened_at = None
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "Circuit %s → %s for %s (%d consecutive failures)",
            old_state.value,
            new_state.value,
            self.name,
            self._failure_count,
            extra={"endpoint": self.name, "circuit_state": new_state.value, "event": "circuit_transition"},
        )
        return new_state

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot for health reporting."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "retry_after_seconds": round(self.retry_after(), 2),
        }
