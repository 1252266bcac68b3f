"""RequestExecutor — one bounded, timed-out call against one endpoint.

``execute()`` sends ``GET {endpoint}?PMID=..&sponsor=..&drugname=..``
under a hard deadline and classifies the result into exactly one
``AttemptStatus``:

    SUCCESS                2xx with a JSON object body
    RETRYABLE_FAILURE      5xx, timeout, connection error
    NON_RETRYABLE_FAILURE  4xx — never retried on any endpoint
    MALFORMED_RESPONSE     2xx with an undecodable body — retryable

Whatever happens (including cancellation) the endpoint slot is released
and the outcome reported to the ``EndpointRegistry``.  Every attempt
emits one structured record on the ``inference_dispatch.attempts`` logger.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import httpx

from inference_dispatch.core.errors import (
    ClientError,
    DecodeError,
    EndpointConnectionError,
    EndpointError,
    EndpointTimeoutError,
    ServerError,
)
from inference_dispatch.endpoints.registry import EndpointRegistry
from inference_dispatch.models.schemas import SearchContext, WorkItem

logger = logging.getLogger(__name__)
_attempt_logger = logging.getLogger("inference_dispatch.attempts")


class AttemptStatus(str, enum.Enum):
    """Classification of a single endpoint call."""

    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    NON_RETRYABLE_FAILURE = "non_retryable_failure"
    MALFORMED_RESPONSE = "malformed_response"


@dataclass
class AttemptOutcome:
    """Result of one call to one endpoint for one work item.

    Attributes:
        status:      Classification of the call.
        endpoint:    URL that was called.
        external_id: Identity of the work item.
        latency_ms:  Wall time of the call in milliseconds.
        status_code: HTTP status, ``None`` if no response arrived.
        body:        Decoded JSON object on success.
        error:       Typed endpoint error on any non-success status.
    """

    status: AttemptStatus
    endpoint: str
    external_id: str
    latency_ms: float
    status_code: int | None = None
    body: dict[str, Any] | None = None
    error: EndpointError | None = None

    @property
    def ok(self) -> bool:
        return self.status == AttemptStatus.SUCCESS

    @property
    def retryable(self) -> bool:
        return self.status in (AttemptStatus.RETRYABLE_FAILURE, AttemptStatus.MALFORMED_RESPONSE)

    @property
    def error_code(self) -> str | None:
        return self.error.code if self.error is not None else None

    @property
    def detail(self) -> str:
        return str(self.error) if self.error is not None else ""


class RequestExecutor:
    """Performs single endpoint calls and keeps the registry informed.

    Args:
        registry:                EndpointRegistry receiving outcomes and slot releases.
        timeout:                 Hard deadline per call in seconds.
        connect_timeout:         TCP connect timeout in seconds.
        user_agent:              Value of the ``User-Agent`` header.
        probe_timeout:           Deadline for health probes.
        probe_accepted_statuses: 4xx codes that still count as "alive" during probes.
        probe_external_id:       ``PMID`` value sent by health probes.
    """

    def __init__(
        self,
        registry: EndpointRegistry,
        *,
        timeout: float = 90.0,
        connect_timeout: float = 15.0,
        user_agent: str = "inference-dispatch/0.1",
        probe_timeout: float = 30.0,
        probe_accepted_statuses: Iterable[int] = (400, 422),
        probe_external_id: str = "test",
    ) -> None:
        self._registry = registry
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.user_agent = user_agent
        self.probe_timeout = probe_timeout
        self.probe_accepted_statuses = frozenset(probe_accepted_statuses)
        self.probe_external_id = probe_external_id
        # Tests inject a client with an ``httpx.MockTransport`` here
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Return the pooled client, creating it on first use."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"Accept": "application/json", "User-Agent": self.user_agent},
                timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
                limits=httpx.Limits(max_keepalive_connections=5, keepalive_expiry=95.0),
            )
        return self._client

    @property
    def headers(self) -> dict[str, str]:
        return {"Accept": "application/json", "User-Agent": self.user_agent}

    # ── Work calls ───────────────────────────────────────────────────

    async def execute(
        self,
        endpoint: str,
        item: WorkItem,
        context: SearchContext | None = None,
    ) -> AttemptOutcome:
        """Call *endpoint* for *item*.  The caller must already hold a slot on *endpoint*.

        The slot is released before this method returns or raises.
        """
        params = item.query_params(context)
        start = time.monotonic()
        outcome: AttemptOutcome | None = None
        try:
            try:
                async with asyncio.timeout(self.timeout):
                    response = await self._get_client().get(endpoint, params=params, headers=self.headers)
                latency_ms = (time.monotonic() - start) * 1000
                outcome = self._classify(endpoint, item.external_id, response, latency_ms)
            except (TimeoutError, httpx.TimeoutException):
                outcome = self._failed(endpoint, item.external_id, start, EndpointTimeoutError(endpoint, self.timeout))
            except httpx.TransportError as exc:
                outcome = self._failed(
                    endpoint, item.external_id, start, EndpointConnectionError(endpoint, type(exc).__name__)
                )
            await self._report(outcome)
            return outcome
        finally:
            if outcome is None:
                # Cancelled or crashed mid-call: the attempt still counts against the endpoint
                await self._registry.record_failure(endpoint, "attempt aborted")
            await self._registry.release(endpoint)

    def _failed(self, endpoint: str, external_id: str, start: float, error: EndpointError) -> AttemptOutcome:
        return AttemptOutcome(
            status=AttemptStatus.RETRYABLE_FAILURE,
            endpoint=endpoint,
            external_id=external_id,
            latency_ms=(time.monotonic() - start) * 1000,
            error=error,
        )

    def _classify(
        self,
        endpoint: str,
        external_id: str,
        response: httpx.Response,
        latency_ms: float,
    ) -> AttemptOutcome:
        """Map an HTTP response to exactly one ``AttemptStatus``."""
        code = response.status_code
        base = {"endpoint": endpoint, "external_id": external_id, "latency_ms": latency_ms, "status_code": code}

        if 200 <= code < 300:
            try:
                body = response.json()
            except ValueError as exc:
                error = DecodeError(endpoint, f"body is not valid JSON: {exc}", code)
                return AttemptOutcome(status=AttemptStatus.MALFORMED_RESPONSE, error=error, **base)
            if not isinstance(body, dict):
                error = DecodeError(endpoint, f"expected a JSON object, got {type(body).__name__}", code)
                return AttemptOutcome(status=AttemptStatus.MALFORMED_RESPONSE, error=error, **base)
            return AttemptOutcome(status=AttemptStatus.SUCCESS, body=body, **base)

        if 400 <= code < 500:
            error = ClientError(endpoint, f"HTTP {code}", code)
            return AttemptOutcome(status=AttemptStatus.NON_RETRYABLE_FAILURE, error=error, **base)

        error = ServerError(endpoint, f"HTTP {code}", code)
        return AttemptOutcome(status=AttemptStatus.RETRYABLE_FAILURE, error=error, **base)

    async def _report(self, outcome: AttemptOutcome) -> None:
        """Feed the outcome to the registry and emit the per-attempt record."""
        if outcome.ok:
            await self._registry.record_success(outcome.endpoint, outcome.latency_ms)
        elif outcome.status == AttemptStatus.NON_RETRYABLE_FAILURE:
            await self._registry.record_client_error(outcome.endpoint, outcome.status_code or 0)
        else:
            await self._registry.record_failure(outcome.endpoint, outcome.detail)

        level = logging.INFO if outcome.ok else logging.WARNING
        _attempt_logger.log(
            level,
            "attempt %s for %s via %s in %.0fms",
            outcome.status.value,
            outcome.external_id,
            outcome.endpoint,
            outcome.latency_ms,
            extra={
                "event": "endpoint_attempt",
                "endpoint": outcome.endpoint,
                "external_id": outcome.external_id,
                "outcome": outcome.status.value,
                "latency_ms": round(outcome.latency_ms, 2),
                "status_code": outcome.status_code,
                "error_code": outcome.error_code,
            },
        )

    # ── Health probes ────────────────────────────────────────────────

    async def probe(self, endpoint: str) -> AttemptOutcome:
        """Reachability check for *endpoint*.

        Does not take a slot and does not touch the circuit; only the
        registry's health flag is updated.  2xx and the configured
        validation-style 4xx codes count as alive.
        """
        params = {"PMID": self.probe_external_id, "sponsor": "HealthCheck", "drugname": "TestDrug"}
        start = time.monotonic()
        try:
            async with asyncio.timeout(self.probe_timeout):
                response = await self._get_client().get(endpoint, params=params, headers=self.headers)
        except (TimeoutError, httpx.TimeoutException):
            outcome = self._failed(
                endpoint, self.probe_external_id, start, EndpointTimeoutError(endpoint, self.probe_timeout)
            )
        except httpx.TransportError as exc:
            outcome = self._failed(
                endpoint, self.probe_external_id, start, EndpointConnectionError(endpoint, type(exc).__name__)
            )
        else:
            latency_ms = (time.monotonic() - start) * 1000
            code = response.status_code
            if 200 <= code < 300 or code in self.probe_accepted_statuses:
                outcome = AttemptOutcome(
                    status=AttemptStatus.SUCCESS,
                    endpoint=endpoint,
                    external_id=self.probe_external_id,
                    latency_ms=latency_ms,
                    status_code=code,
                )
            else:
                outcome = self._classify(endpoint, self.probe_external_id, response, latency_ms)

        await self._registry.record_health(endpoint, outcome.ok, outcome.detail or None)
        if outcome.ok:
            logger.info("Probe %s alive (HTTP %s, %.0fms)", endpoint, outcome.status_code, outcome.latency_ms)
        else:
            logger.warning("Probe %s failed: %s", endpoint, outcome.detail)
        return outcome

    async def close(self) -> None:
        """Close the pooled httpx client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
