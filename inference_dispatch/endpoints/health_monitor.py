"""HealthMonitor — periodic circuit evaluation and endpoint probing.

Runs as one cancellable asyncio task.  Every ``circuit_check_interval``
seconds it moves OPEN circuits whose recovery timeout elapsed to
HALF_OPEN; every ``probe_interval`` seconds it starts a probe round in
its own task, so a slow endpoint never holds up circuit evaluation.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time

from inference_dispatch.endpoints.registry import EndpointRegistry
from inference_dispatch.request_executor import AttemptOutcome, RequestExecutor

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Background loop owning the OPEN → HALF_OPEN transition.

    Args:
        registry:               Shared ``EndpointRegistry``.
        executor:               ``RequestExecutor`` used for probes.
        circuit_check_interval: Seconds between circuit evaluations.
        probe_interval:         Seconds between probe rounds.
        probes_enabled:         Disable to only evaluate circuits.
    """

    def __init__(
        self,
        registry: EndpointRegistry,
        executor: RequestExecutor,
        *,
        circuit_check_interval: float = 5.0,
        probe_interval: float = 120.0,
        probes_enabled: bool = True,
    ) -> None:
        self._registry = registry
        self._executor = executor
        self.circuit_check_interval = circuit_check_interval
        self.probe_interval = probe_interval
        self.probes_enabled = probes_enabled
        self._task: asyncio.Task | None = None
        self._probe_task: asyncio.Task | None = None
        self._last_probe: float | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def probing(self) -> bool:
        return self._probe_task is not None and not self._probe_task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="health-monitor")
        logger.info(
            "Health monitor started (circuit check %.0fs, probes every %.0fs)",
            self.circuit_check_interval,
            self.probe_interval,
        )

    async def stop(self) -> None:
        if self._task is None and self._probe_task is None:
            return
        for task in (self._task, self._probe_task):
            if task is not None:
                task.cancel()
        for task in (self._task, self._probe_task):
            if task is not None:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._task = None
        self._probe_task = None
        logger.info("Health monitor stopped")

    async def wait_for_probes(self) -> None:
        """Wait for the current probe round, if one is running."""
        if self._probe_task is not None:
            await self._probe_task

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Health monitor tick failed")
            await asyncio.sleep(self.circuit_check_interval)

    async def tick(self) -> None:
        """One pass: evaluate circuits, then start a probe round if one is due.

        A round still in flight from an earlier tick is never doubled up.
        """
        for url, state in await self._registry.evaluate_circuits():
            logger.info("Endpoint %s eligible for a trial call (%s)", url, state.value)

        if not self.probes_enabled or self.probing:
            return
        now = time.monotonic()
        if self._last_probe is None or now - self._last_probe >= self.probe_interval:
            self._last_probe = now
            self._probe_task = asyncio.create_task(self._probe_round(), name="health-probes")

    async def _probe_round(self) -> None:
        try:
            await self.probe_all()
        except Exception:
            logger.exception("Health probe round failed")

    async def probe_all(self) -> list[AttemptOutcome]:
        """Probe every endpoint concurrently and log the healthy count."""
        outcomes = await asyncio.gather(*(self._executor.probe(url) for url in self._registry.urls))
        healthy = sum(1 for o in outcomes if o.ok)
        logger.info("Health check complete: %d/%d endpoints reachable", healthy, len(outcomes))
        return list(outcomes)
