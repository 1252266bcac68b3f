"""FastAPI application entrypoint.

``create_app()`` builds the HTTP surface over one ``InferenceDispatchService``:
a ``/health`` liveness route, batch submission, endpoint health and
operator controls, and retry-queue management.  Middleware: request-ID
propagation and Redis-backed rate limiting of POST routes.  Domain errors
are rendered as ``StructuredErrorResponse`` bodies.

Run with ``uvicorn inference_dispatch.main:app``.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from inference_dispatch.core.config import Settings
from inference_dispatch.core.errors import (
    InferenceDispatchError,
    JobNotFoundError,
    NoEndpointsAvailableError,
    StructuredErrorResponse,
    UnknownEndpointError,
)
from inference_dispatch.core.logging_config import configure_logging
from inference_dispatch.models.schemas import HealthResponse, ResetCircuitRequest, SubmitBatchRequest
from inference_dispatch.security.rate_limiter import RateLimitMiddleware
from inference_dispatch.service import InferenceDispatchService

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: dict[type[InferenceDispatchError], int] = {
    JobNotFoundError: 404,
    UnknownEndpointError: 404,
    NoEndpointsAvailableError: 503,
}


def _connect_redis(url: str) -> aioredis.Redis | None:
    try:
        return aioredis.from_url(url)
    except (ValueError, RedisError) as exc:
        logger.warning("Redis client unavailable (%s), rate limiting disabled", exc)
        return None


def get_service(request: Request) -> InferenceDispatchService:
    return request.app.state.service


def create_app(
    settings: Settings | None = None,
    service: InferenceDispatchService | None = None,
    redis_client: Any = None,
) -> FastAPI:
    """Build the FastAPI app.  *service* and *redis_client* are injectable for tests."""
    settings = settings or Settings()
    service = service or InferenceDispatchService.from_settings(settings)
    if redis_client is None:
        redis_client = _connect_redis(settings.REDIS_URL)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(level=settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(
        title=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.settings = settings
    app.state.started_at = time.monotonic()

    # ── Middleware chain ────────────────────────────────────────────
    # Starlette add_middleware prepends, so LAST added = OUTERMOST.

    app.add_middleware(
        RateLimitMiddleware,
        rpm=settings.RATE_LIMIT_RPM,
        redis_client=redis_client,
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next) -> Response:
        """Assign or preserve a unique request ID on every request."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # ── Error rendering ─────────────────────────────────────────────

    @app.exception_handler(InferenceDispatchError)
    async def dispatch_error_handler(request: Request, exc: InferenceDispatchError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "")
        body = StructuredErrorResponse.from_exception(exc, request_id)
        status = _STATUS_BY_ERROR.get(type(exc), 500)
        if status == 500:
            logger.error("Request %s failed: %s", request_id, exc, extra={"request_id": request_id})
        return JSONResponse(status_code=status, content=body.model_dump())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "")
        logger.exception("Unhandled error on %s", request.url.path, extra={"request_id": request_id})
        body = StructuredErrorResponse.from_exception(exc, request_id)
        return JSONResponse(status_code=500, content=body.model_dump())

    # ── Routes ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Return service health with name, version, status, and uptime."""
        return HealthResponse(
            service=settings.SERVICE_NAME,
            version=settings.SERVICE_VERSION,
            status="healthy",
            uptime_seconds=round(time.monotonic() - app.state.started_at, 2),
        )

    @app.post("/v1/batches")
    async def submit_batch(
        body: SubmitBatchRequest,
        svc: InferenceDispatchService = Depends(get_service),
    ) -> dict[str, Any]:
        result = await svc.submit_batch(body.items, body.search_context, body.options)
        return result.to_dict()

    @app.get("/v1/endpoints/health")
    async def endpoint_health(svc: InferenceDispatchService = Depends(get_service)) -> dict[str, Any]:
        return await svc.get_health_status()

    @app.post("/v1/endpoints/test")
    async def test_connection(svc: InferenceDispatchService = Depends(get_service)) -> dict[str, Any]:
        return await svc.test_connection()

    @app.post("/v1/endpoints/reset")
    async def reset_circuit(
        body: ResetCircuitRequest,
        svc: InferenceDispatchService = Depends(get_service),
    ) -> dict[str, Any]:
        return await svc.reset_circuit(body.url)

    @app.get("/v1/retry-queue/status")
    async def queue_status(svc: InferenceDispatchService = Depends(get_service)) -> dict[str, Any]:
        return svc.get_queue_status()

    @app.post("/v1/retry-queue/retry/{job_id}")
    async def manual_retry(job_id: str, svc: InferenceDispatchService = Depends(get_service)) -> dict[str, Any]:
        return await svc.manual_retry(job_id)

    @app.post("/v1/retry-queue/retry-all")
    async def retry_all(svc: InferenceDispatchService = Depends(get_service)) -> dict[str, Any]:
        return await svc.retry_all_pending()

    return app


app = create_app()
