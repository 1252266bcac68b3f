"""Tests for InferenceDispatchService — wiring and the inbound operations."""

from __future__ import annotations

from collections import Counter

import httpx
import pytest

from inference_dispatch.core.config import Settings
from inference_dispatch.core.errors import JobNotFoundError, UnknownEndpointError
from inference_dispatch.models.schemas import BatchOptions, SearchContext, WorkItem
from inference_dispatch.resilience.circuit_breaker import CircuitState
from inference_dispatch.service import InferenceDispatchService
from tests.unit.helpers import URLS, json_ok


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "ENDPOINT_URLS": URLS[:2],
        "MIN_REQUEST_INTERVAL_SECONDS": 0.0,
        "INTER_CHUNK_DELAY_SECONDS": 0.0,
        "BACKOFF_BASE_SECONDS": 0.0,
        "BACKOFF_JITTER_SECONDS": 0.0,
        "MAX_IMMEDIATE_RETRIES": 1,
        "SLOT_WAIT_TIMEOUT_SECONDS": 5.0,
        "CIRCUIT_BREAKER_THRESHOLD": 100,
        "RETRY_JOB_STORE_PATH": str(tmp_path / "data" / "retry_jobs.jsonl"),
        "PERMANENT_FAILURE_LOG_PATH": str(tmp_path / "logs" / "permanent.jsonl"),
    }
    values.update(overrides)
    return Settings(**values)


def make_service(settings: Settings, handler) -> InferenceDispatchService:
    service = InferenceDispatchService.from_settings(settings)
    service.executor._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return service


def _fail_pmids(*pmids: str):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["PMID"] in pmids:
            return httpx.Response(503)
        return json_ok(request)

    return handler


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Wiring
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestWiring:
    def test_from_settings_applies_configuration(self, tmp_path):
        settings = make_settings(tmp_path, MAX_CONCURRENT_PER_ENDPOINT=2, RETRY_BATCH_SIZE=7)
        service = InferenceDispatchService.from_settings(settings)
        assert service.registry.urls == URLS[:2]
        assert service.registry.max_in_flight == 2
        assert service.dispatcher.max_concurrent == settings.MAX_CONCURRENT_REQUESTS
        assert service.coordinator.batch_size == settings.BATCH_SIZE
        assert service.retry_queue.retry_batch_size == 7
        assert service.retry_queue.policy.max_attempts == settings.MAX_BACKGROUND_RETRIES


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# submit_batch
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestSubmitBatch:
    async def test_resolved_batch_creates_no_retry_job(self, tmp_path):
        service = make_service(make_settings(tmp_path), json_ok)
        result = await service.submit_batch([WorkItem(external_id="1"), WorkItem(external_id="2")])
        assert len(result.successes) == 2
        assert result.retry_job_id is None
        assert service.retry_queue.active_jobs == 0

    async def test_unresolved_items_go_to_retry_queue(self, tmp_path):
        service = make_service(make_settings(tmp_path), _fail_pmids("2"))
        result = await service.submit_batch(
            [WorkItem(external_id="1"), WorkItem(external_id="2")],
            SearchContext(sponsor="Acme"),
        )
        assert result.retrying_ids == ["2"]
        assert result.retry_job_id is not None
        job = service.retry_queue.get(result.retry_job_id)
        assert job.external_ids == ["2"]
        assert job.search_context.sponsor == "Acme"
        assert job.last_errors["2"].startswith("SERVER_ERROR")

    async def test_every_item_accounted_for_without_immediate_retries(self, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            pmid = request.url.params["PMID"]
            if pmid == "bad":
                return httpx.Response(503)
            if pmid == "rejected":
                return httpx.Response(404)
            return json_ok(request)

        service = make_service(make_settings(tmp_path), handler)
        items = [WorkItem(external_id=i) for i in ("ok", "bad", "rejected")]
        result = await service.submit_batch(items, options=BatchOptions(max_immediate_retries=0))

        job = service.retry_queue.get(result.retry_job_id)
        assert job.external_ids == ["bad"]
        assert [s.external_id for s in result.successes] == ["ok"]
        assert result.permanently_failed_ids == ["rejected"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Health & operator actions
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestHealthAndOperations:
    async def test_health_status(self, tmp_path):
        service = make_service(make_settings(tmp_path), json_ok)
        await service.submit_batch([WorkItem(external_id="1")])
        status = await service.get_health_status()
        assert status["total_count"] == 2
        assert status["healthy_count"] == 2
        assert status["available_count"] == 2
        assert status["active_requests"] == 0
        assert sum(e["total_successes"] for e in status["endpoints"]) == 1

    async def test_test_connection(self, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422 if request.url.host == "ep1.test" else 500)

        service = make_service(make_settings(tmp_path), handler)
        report = await service.test_connection()
        assert report["success"] is True
        assert report["reachable_count"] == 1
        assert [e["reachable"] for e in report["endpoints"]] == [True, False]

    async def test_reset_circuit(self, tmp_path):
        service = make_service(make_settings(tmp_path, CIRCUIT_BREAKER_THRESHOLD=1), json_ok)
        await service.registry.record_failure(URLS[0], "down")
        data = await service.reset_circuit(URLS[0])
        assert data["circuit_state"] == "closed"
        assert (await service.registry.get(URLS[0])).circuit_state == CircuitState.CLOSED

    async def test_reset_unknown_endpoint(self, tmp_path):
        service = make_service(make_settings(tmp_path), json_ok)
        with pytest.raises(UnknownEndpointError):
            await service.reset_circuit("http://unknown.test")

    async def test_manual_retry_unknown_job(self, tmp_path):
        service = make_service(make_settings(tmp_path), json_ok)
        with pytest.raises(JobNotFoundError):
            await service.manual_retry("job-nope")

    async def test_manual_retry_completes_job(self, tmp_path):
        calls: Counter[str] = Counter()

        def handler(request: httpx.Request) -> httpx.Response:
            pmid = request.url.params["PMID"]
            calls[pmid] += 1
            # Fails through both immediate passes on both endpoints, then recovers
            if calls[pmid] <= 4:
                return httpx.Response(503)
            return json_ok(request)

        service = make_service(make_settings(tmp_path), handler)
        result = await service.submit_batch([WorkItem(external_id="7")])
        response = await service.manual_retry(result.retry_job_id)
        assert response["success"] is True
        assert service.get_queue_status()["stats"]["jobs_completed"] == 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Recovery & lifecycle
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestRecoveryAndLifecycle:
    async def test_retry_all_pending_after_restart(self, tmp_path):
        settings = make_settings(tmp_path)
        crashed = make_service(settings, _fail_pmids("1", "2"))
        result = await crashed.submit_batch([WorkItem(external_id="1"), WorkItem(external_id="2")])
        assert result.retry_job_id is not None

        restarted = make_service(settings, json_ok)
        report = await restarted.retry_all_pending()
        assert report["recovered_jobs"] == 1
        assert report["jobs_retried"] == 1
        assert report["results"][0]["status"] == "completed"
        assert restarted.get_queue_status()["active_jobs"] == 0

    async def test_start_recovers_and_stop_persists(self, tmp_path):
        settings = make_settings(tmp_path, HEALTH_PROBE_ENABLED=False)
        first = make_service(settings, _fail_pmids("1"))
        await first.submit_batch([WorkItem(external_id="1")])

        second = make_service(settings, json_ok)
        await second.start()
        try:
            assert second.monitor.running
            assert second.retry_queue.running
            assert second.retry_queue.active_jobs == 1
        finally:
            await second.stop()
        assert not second.monitor.running
        assert not second.retry_queue.running
        assert second.executor._client is None

    async def test_queue_status_shape(self, tmp_path):
        service = make_service(make_settings(tmp_path), json_ok)
        status = service.get_queue_status()
        assert set(status) == {"active_jobs", "jobs", "stats", "config"}
        assert status["stats"]["total_items_queued"] == 0
