"""Tests for EndpointSelector, RequestPacer and EndpointDispatcher.

Uses httpx.MockTransport to simulate a pool of four inference endpoints.
"""

from __future__ import annotations

import asyncio
import random
from collections import Counter

import httpx
import pytest

from inference_dispatch.core.errors import NoEndpointsAvailableError
from inference_dispatch.endpoint_dispatcher import DispatchResult, EndpointSelector, RequestPacer
from inference_dispatch.endpoints.registry import EndpointSnapshot
from inference_dispatch.models.schemas import WorkItem
from inference_dispatch.resilience.circuit_breaker import CircuitState
from tests.unit.helpers import URLS, FakeClock, SleepRecorder, build_pipeline, json_ok


def _snap(url: str, **overrides) -> EndpointSnapshot:
    fields = {
        "url": url,
        "circuit_state": CircuitState.CLOSED,
        "consecutive_failures": 0,
        "in_flight": 0,
        "max_in_flight": 1,
        "total_requests": 10,
        "total_successes": 10,
        "total_failures": 0,
        "total_client_errors": 0,
        "average_response_ms": 100.0,
        "is_healthy": True,
        "last_success_at": None,
        "last_failure_at": None,
        "circuit_opened_at": None,
        "last_health_check_at": None,
        "last_error": None,
        "retry_after_seconds": 0.0,
    }
    fields.update(overrides)
    return EndpointSnapshot(**fields)


def _host(request: httpx.Request) -> str:
    return request.url.host


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Selection
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestEndpointSelector:
    def test_excludes_open_circuits(self):
        ranked = EndpointSelector().rank([_snap("a", circuit_state=CircuitState.OPEN), _snap("b")])
        assert [s.url for s in ranked] == ["b"]

    def test_excludes_endpoints_at_capacity(self):
        ranked = EndpointSelector().rank([_snap("a", in_flight=1), _snap("b")])
        assert [s.url for s in ranked] == ["b"]

    def test_excludes_busy_half_open(self):
        selector = EndpointSelector(half_open_max=1)
        busy = _snap("a", circuit_state=CircuitState.HALF_OPEN, in_flight=1, max_in_flight=4)
        idle = _snap("b", circuit_state=CircuitState.HALF_OPEN, in_flight=0, max_in_flight=4)
        assert [s.url for s in selector.rank([busy, idle])] == ["b"]

    def test_closed_before_half_open(self):
        ranked = EndpointSelector().rank([_snap("a", circuit_state=CircuitState.HALF_OPEN), _snap("b")])
        assert [s.url for s in ranked] == ["b", "a"]

    def test_healthy_before_unhealthy(self):
        ranked = EndpointSelector().rank([_snap("a", is_healthy=False), _snap("b")])
        assert [s.url for s in ranked] == ["b", "a"]

    def test_fewer_in_flight_first(self):
        ranked = EndpointSelector().rank(
            [_snap("a", in_flight=2, max_in_flight=4), _snap("b", in_flight=1, max_in_flight=4)]
        )
        assert [s.url for s in ranked] == ["b", "a"]

    def test_higher_success_rate_then_lower_latency(self):
        ranked = EndpointSelector().rank(
            [
                _snap("slow", average_response_ms=900.0),
                _snap("flaky", total_successes=5),
                _snap("fast", average_response_ms=50.0),
            ]
        )
        assert [s.url for s in ranked] == ["fast", "slow", "flaky"]

    def test_ties_keep_configuration_order(self):
        ranked = EndpointSelector().rank([_snap("a"), _snap("b"), _snap("c")])
        assert [s.url for s in ranked] == ["a", "b", "c"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Pacing
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestRequestPacer:
    async def test_first_request_is_not_delayed(self):
        sleeper = SleepRecorder()
        pacer = RequestPacer(1.0, clock=FakeClock(), sleep=sleeper)
        await pacer.wait()
        assert sleeper.delays == []

    async def test_back_to_back_requests_are_spaced(self):
        clock, sleeper = FakeClock(), SleepRecorder()
        pacer = RequestPacer(1.0, clock=clock, sleep=sleeper)
        await pacer.wait()
        clock.advance(0.25)
        await pacer.wait()
        assert sleeper.delays == [0.75]

    async def test_no_delay_once_interval_elapsed(self):
        clock, sleeper = FakeClock(), SleepRecorder()
        pacer = RequestPacer(1.0, clock=clock, sleep=sleeper)
        await pacer.wait()
        clock.advance(2.0)
        await pacer.wait()
        assert sleeper.delays == []

    async def test_zero_interval_disables_pacing(self):
        sleeper = SleepRecorder()
        pacer = RequestPacer(0.0, sleep=sleeper)
        for _ in range(3):
            await pacer.wait()
        assert sleeper.delays == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Dispatch
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestDispatch:
    async def test_success_on_first_endpoint(self):
        _, _, dispatcher = build_pipeline(json_ok)
        result = await dispatcher.dispatch(WorkItem(external_id="1"))
        assert result.ok
        assert result.endpoints_tried == [URLS[0]]

    async def test_fails_over_on_server_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if _host(request) == "ep1.test":
                return httpx.Response(500)
            return json_ok(request)

        _, _, dispatcher = build_pipeline(handler)
        result = await dispatcher.dispatch(WorkItem(external_id="1"))
        assert result.ok
        assert result.endpoints_tried == [URLS[0], URLS[1]]

    async def test_client_error_stops_immediately(self):
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(_host(request))
            return httpx.Response(404)

        _, _, dispatcher = build_pipeline(handler)
        result = await dispatcher.dispatch(WorkItem(external_id="1"))
        assert not result.ok
        assert len(result.attempts) == 1
        assert calls == ["ep1.test"]

    async def test_each_endpoint_tried_at_most_once(self):
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(_host(request))
            return httpx.Response(503)

        _, _, dispatcher = build_pipeline(handler, failure_threshold=10)
        result = await dispatcher.dispatch(WorkItem(external_id="1"))
        assert not result.ok
        assert result.final.retryable
        assert sorted(calls) == ["ep1.test", "ep2.test", "ep3.test", "ep4.test"]

    async def test_all_circuits_open_raises(self):
        registry, _, dispatcher = build_pipeline(json_ok, failure_threshold=1)
        for url in URLS:
            await registry.record_failure(url, "down")
        with pytest.raises(NoEndpointsAvailableError, match="all circuits open"):
            await dispatcher.dispatch(WorkItem(external_id="1"))

    async def test_capacity_timeout_raises(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.5)
            return json_ok(request)

        _, _, dispatcher = build_pipeline(handler, urls=URLS[:1], slot_wait_timeout=0.05)
        first = asyncio.create_task(dispatcher.dispatch(WorkItem(external_id="1")))
        await asyncio.sleep(0.01)
        with pytest.raises(NoEndpointsAvailableError, match="capacity"):
            await dispatcher.dispatch(WorkItem(external_id="2"))
        assert (await first).ok

    async def test_waits_for_capacity_then_proceeds(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.02)
            return json_ok(request)

        registry, _, dispatcher = build_pipeline(handler, urls=URLS[:1], slot_wait_timeout=2.0)
        results = await asyncio.gather(*(dispatcher.dispatch(WorkItem(external_id=str(i))) for i in range(3)))
        assert all(r.ok for r in results)
        assert (await registry.get(URLS[0])).total_successes == 3

    async def test_per_endpoint_and_global_caps_hold(self):
        active: Counter[str] = Counter()
        peak_per_host: Counter[str] = Counter()
        peak_total = 0

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal peak_total
            host = _host(request)
            active[host] += 1
            peak_per_host[host] = max(peak_per_host[host], active[host])
            peak_total = max(peak_total, sum(active.values()))
            await asyncio.sleep(0.01)
            active[host] -= 1
            return json_ok(request)

        registry, _, dispatcher = build_pipeline(handler, max_concurrent=3)
        results = await asyncio.gather(*(dispatcher.dispatch(WorkItem(external_id=str(i))) for i in range(12)))

        assert all(r.ok for r in results)
        assert max(peak_per_host.values()) == 1
        assert peak_total <= 3
        assert dispatcher.active_requests == 0
        for snap in await registry.snapshot():
            assert snap.in_flight == 0

    async def test_failing_endpoint_opens_while_others_serve(self):
        calls: Counter[str] = Counter()

        async def handler(request: httpx.Request) -> httpx.Response:
            host = _host(request)
            calls[host] += 1
            if host == "ep2.test":
                return httpx.Response(500)
            await asyncio.sleep(0.01)
            return json_ok(request)

        registry, _, dispatcher = build_pipeline(handler, failure_threshold=3)
        for round_number in range(5):
            items = [WorkItem(external_id=f"{round_number}-{i}") for i in range(4)]
            results = await asyncio.gather(*(dispatcher.dispatch(item) for item in items))
            assert all(r.ok for r in results)

        assert calls["ep2.test"] == 3
        assert (await registry.get(URLS[1])).circuit_state == CircuitState.OPEN
        assert sum(calls[h] for h in ("ep1.test", "ep3.test", "ep4.test")) == 20


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Slot accounting under mixed outcomes
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestSlotAccountingUnderLoad:
    @pytest.mark.parametrize("seed", [3, 41, 2024, 90210])
    async def test_in_flight_stays_within_cap(self, seed):
        rng = random.Random(seed)
        out_of_bounds: list[tuple[str, int]] = []
        observations = 0

        async def check() -> None:
            nonlocal observations
            for snap in await registry.snapshot():
                observations += 1
                if not 0 <= snap.in_flight <= snap.max_in_flight:
                    out_of_bounds.append((snap.url, snap.in_flight))

        async def handler(request: httpx.Request) -> httpx.Response:
            await check()
            roll = rng.random()
            if roll < 0.25:
                # Past the 50ms call deadline
                await asyncio.sleep(0.2)
            else:
                await asyncio.sleep(rng.uniform(0, 0.01))
            if roll < 0.55:
                return httpx.Response(500)
            return json_ok(request)

        registry, _, dispatcher = build_pipeline(
            handler, failure_threshold=1000, max_in_flight=2, timeout=0.05, slot_wait_timeout=5.0
        )

        async def watch(done: asyncio.Event) -> None:
            while not done.is_set():
                await check()
                await asyncio.sleep(0)

        done = asyncio.Event()
        watcher = asyncio.create_task(watch(done))
        tasks = [asyncio.create_task(dispatcher.dispatch(WorkItem(external_id=str(i)))) for i in range(40)]
        await asyncio.sleep(rng.uniform(0.005, 0.06))
        cancelled = rng.sample(tasks, 12)
        for task in cancelled:
            task.cancel()

        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        done.set()
        await watcher

        for outcome in outcomes:
            assert isinstance(outcome, DispatchResult | NoEndpointsAvailableError | asyncio.CancelledError)
        assert observations > 0
        assert out_of_bounds == []
        assert dispatcher.active_requests == 0
        for snap in await registry.snapshot():
            assert snap.in_flight == 0
            assert snap.total_requests >= snap.total_successes
