"""Test helpers: fake clocks and a MockTransport-backed pipeline."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import httpx

from inference_dispatch.endpoint_dispatcher import EndpointDispatcher
from inference_dispatch.endpoints.registry import EndpointRegistry
from inference_dispatch.request_executor import RequestExecutor

URLS = [
    "http://ep1.test/get_AI_inference",
    "http://ep2.test/get_AI_inference2",
    "http://ep3.test/get_AI_inference3",
    "http://ep4.test/get_AI_inference4",
]


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    """UTC wall clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def json_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"PMID": request.url.params.get("PMID"), "classification": "ICSR"})


def build_pipeline(
    handler: Callable,
    *,
    urls: list[str] | None = None,
    failure_threshold: int = 3,
    recovery_timeout: float = 60.0,
    max_in_flight: int = 1,
    max_concurrent: int = 16,
    slot_wait_timeout: float = 5.0,
    timeout: float = 5.0,
    clock: Callable[[], float] | None = None,
) -> tuple[EndpointRegistry, RequestExecutor, EndpointDispatcher]:
    """Registry, executor and dispatcher wired to an ``httpx.MockTransport``."""
    registry_kwargs = {"clock": clock} if clock is not None else {}
    registry = EndpointRegistry(
        urls or URLS,
        failure_threshold=failure_threshold,
        recovery_timeout=recovery_timeout,
        max_in_flight=max_in_flight,
        **registry_kwargs,
    )
    executor = RequestExecutor(registry, timeout=timeout)
    executor._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    dispatcher = EndpointDispatcher(
        registry,
        executor,
        max_concurrent=max_concurrent,
        min_request_interval=0,
        slot_wait_timeout=slot_wait_timeout,
    )
    return registry, executor, dispatcher
