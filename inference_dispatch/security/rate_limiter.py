"""Per-client admission control for batch submissions and operator actions.

Each client gets ``rpm`` mutating requests per fixed one-minute window,
counted in Redis so several app workers share one budget.  Reads are
never counted.  A missing or failing Redis admits the request: losing
the limiter must not stop batches from reaching the endpoints.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Collection
from dataclasses import dataclass
from typing import Any

from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from inference_dispatch.core.errors import RateLimitedError, StructuredErrorResponse

_logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60


@dataclass(frozen=True)
class WindowUsage:
    """A client's request count inside the current window."""

    count: int
    limit: int
    resets_at: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def exceeded(self) -> bool:
        return self.count > self.limit

    def retry_after(self, now: int) -> int:
        return max(1, self.resets_at - now)

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.resets_at),
        }


def window_end(now: int) -> int:
    """Epoch second at which the window containing *now* closes."""
    return now - now % WINDOW_SECONDS + WINDOW_SECONDS


def client_key(request: Request) -> str:
    """``X-Client-ID`` when the caller names itself, else the peer address."""
    named = request.headers.get("X-Client-ID")
    if named:
        return named
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Counts mutating requests per client and answers 429 past the limit.

    Args:
        app:             Wrapped ASGI app.
        rpm:             Requests allowed per client per window.
        redis_client:    ``redis.asyncio`` client; ``None`` disables counting.
        limited_methods: HTTP methods that count against the limit.
        key_prefix:      Namespace for the Redis counters.
    """

    def __init__(
        self,
        app: Any,
        rpm: int = 30,
        redis_client: Any = None,
        *,
        limited_methods: Collection[str] = ("POST",),
        key_prefix: str = "inference-dispatch:ratelimit",
    ) -> None:
        super().__init__(app)
        self.rpm = rpm
        self.redis_client = redis_client
        self.limited_methods = frozenset(m.upper() for m in limited_methods)
        self.key_prefix = key_prefix

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        if request.method not in self.limited_methods:
            return await call_next(request)

        client = client_key(request)
        now = int(time.time())
        resets_at = window_end(now)
        usage = WindowUsage(count=await self._count(client, resets_at), limit=self.rpm, resets_at=resets_at)

        if usage.exceeded:
            return self._reject(request, client, usage, now)

        response = await call_next(request)
        response.headers.update(usage.headers())
        return response

    def _reject(self, request: Request, client: str, usage: WindowUsage, now: int) -> JSONResponse:
        retry_after = usage.retry_after(now)
        _logger.warning(
            "Client %s over %d requests/min on %s",
            client,
            self.rpm,
            request.url.path,
            extra={"event": "rate_limited", "client": client, "retry_after": retry_after},
        )
        body = StructuredErrorResponse.from_exception(
            RateLimitedError(self.rpm, retry_after),
            request.headers.get("X-Request-ID", ""),
        )
        return JSONResponse(
            status_code=429,
            content=body.model_dump(),
            headers={**usage.headers(), "Retry-After": str(retry_after)},
        )

    async def _count(self, client: str, resets_at: int) -> int:
        """Record one request for *client* and return its count this window.

        0 when counting is unavailable, which admits the request.
        """
        if self.redis_client is None:
            return 0
        key = f"{self.key_prefix}:{client}:{resets_at}"
        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, WINDOW_SECONDS + 1)
                hits, _ = await pipe.execute()
        except (RedisError, OSError) as exc:
            _logger.warning("Redis counter unavailable (%s), admitting request from %s", type(exc).__name__, client)
            return 0
        return int(hits)
