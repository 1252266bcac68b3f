"""Tests for HealthMonitor — circuit evaluation ticks and probe rounds."""

from __future__ import annotations

from collections import Counter

import asyncio

import httpx

from inference_dispatch.endpoints.health_monitor import HealthMonitor
from inference_dispatch.resilience.circuit_breaker import CircuitState
from tests.unit.helpers import URLS, build_pipeline


def _monitor(handler, clock=None, **kwargs):
    registry, executor, _ = build_pipeline(handler, failure_threshold=1, recovery_timeout=60.0, clock=clock)
    return registry, HealthMonitor(registry, executor, circuit_check_interval=0.01, **kwargs)


def _counting(code: int):
    calls: Counter[str] = Counter()

    def handler(request: httpx.Request) -> httpx.Response:
        calls[request.url.host] += 1
        return httpx.Response(code, json={})

    handler.calls = calls
    return handler


class TestTick:
    async def test_tick_moves_expired_circuit_to_half_open(self, fake_clock):
        registry, monitor = _monitor(_counting(200), clock=fake_clock, probes_enabled=False)
        await registry.record_failure(URLS[0], "down")
        await monitor.tick()
        assert (await registry.get(URLS[0])).circuit_state == CircuitState.OPEN
        fake_clock.advance(60)
        await monitor.tick()
        assert (await registry.get(URLS[0])).circuit_state == CircuitState.HALF_OPEN

    async def test_first_tick_probes_then_waits_for_interval(self):
        handler = _counting(422)
        _, monitor = _monitor(handler, probe_interval=120.0)
        await monitor.tick()
        await monitor.wait_for_probes()
        await monitor.tick()
        await monitor.wait_for_probes()
        assert sum(handler.calls.values()) == len(URLS)

    async def test_probes_disabled(self):
        handler = _counting(200)
        _, monitor = _monitor(handler, probes_enabled=False)
        await monitor.tick()
        assert not monitor.probing
        assert sum(handler.calls.values()) == 0


class TestProbeAll:
    async def test_reports_each_endpoint(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "ep3.test":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(400)

        registry, monitor = _monitor(handler)
        outcomes = await monitor.probe_all()
        assert [o.endpoint for o in outcomes] == URLS
        assert [o.ok for o in outcomes] == [True, True, False, True]
        assert not (await registry.get(URLS[2])).is_healthy


class TestLifecycle:
    async def test_start_and_stop(self):
        _, monitor = _monitor(_counting(200), probes_enabled=False)
        monitor.start()
        assert monitor.running
        monitor.start()  # idempotent
        await monitor.stop()
        assert not monitor.running
        await monitor.stop()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Slow health-check rounds
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _stalled():
    started = asyncio.Event()
    calls: Counter[str] = Counter()

    async def handler(request: httpx.Request) -> httpx.Response:
        calls[request.url.host] += 1
        started.set()
        await asyncio.sleep(3600)
        return httpx.Response(200, json={})

    handler.started = started
    handler.calls = calls
    return handler


class TestSlowHealthCheckRound:
    async def test_stalled_endpoint_does_not_delay_half_open(self, fake_clock):
        handler = _stalled()
        registry, monitor = _monitor(handler, clock=fake_clock, probe_interval=0.0)
        await registry.record_failure(URLS[0], "down")
        try:
            await asyncio.wait_for(monitor.tick(), timeout=1.0)
            await asyncio.wait_for(handler.started.wait(), timeout=1.0)
            assert monitor.probing

            fake_clock.advance(60)
            await asyncio.wait_for(monitor.tick(), timeout=1.0)
            assert (await registry.get(URLS[0])).circuit_state == CircuitState.HALF_OPEN
        finally:
            await monitor.stop()
        assert not monitor.probing

    async def test_round_in_flight_is_not_doubled(self):
        handler = _stalled()
        _, monitor = _monitor(handler, probe_interval=0.0)
        try:
            await monitor.tick()
            await asyncio.wait_for(handler.started.wait(), timeout=1.0)
            await monitor.tick()
            await asyncio.sleep(0.01)
            assert sum(handler.calls.values()) == len(URLS)
        finally:
            await monitor.stop()
