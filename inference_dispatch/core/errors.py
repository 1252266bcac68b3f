"""Error taxonomy and structured error responses.

Endpoint-level errors (connection, timeout, 5xx, 4xx, undecodable body)
are converted into attempt outcomes by the request executor and are never
raised to callers of the service.  Only ``NoEndpointsAvailableError`` and
internal errors surface as batch-level failures.
"""

from __future__ import annotations

from pydantic import BaseModel


class InferenceDispatchError(Exception):
    """Base exception for all inference-dispatch errors."""

    code: str = "DISPATCH_ERROR"
    retryable: bool = False


# ── Endpoint-level errors ───────────────────────────────────────────────


class EndpointError(InferenceDispatchError):
    """An attempt against one endpoint did not produce a usable result.

    Attributes:
        endpoint:    URL of the endpoint that was called.
        detail:      Human-readable cause.
        status_code: HTTP status when a response was received, else ``None``.
    """

    def __init__(self, endpoint: str, detail: str = "", status_code: int | None = None) -> None:
        self.endpoint = endpoint
        self.detail = detail
        self.status_code = status_code
        msg = f"{self.__class__.__name__} from {endpoint}"
        if detail:
            msg += f" — {detail}"
        super().__init__(msg)


class EndpointConnectionError(EndpointError):
    """DNS or TCP failure reaching the endpoint."""

    code = "CONNECTION_ERROR"
    retryable = True


class EndpointTimeoutError(EndpointError):
    """The hard per-call deadline expired before a response arrived."""

    code = "TIMEOUT"
    retryable = True

    def __init__(self, endpoint: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(endpoint, f"no response after {timeout_seconds}s")


class ServerError(EndpointError):
    """5xx response — retryable against the same or another endpoint."""

    code = "SERVER_ERROR"
    retryable = True


class ClientError(EndpointError):
    """4xx response — the item is rejected; never retried on any endpoint."""

    code = "CLIENT_ERROR"
    retryable = False


class DecodeError(EndpointError):
    """2xx response whose body is not a JSON object — retryable."""

    code = "DECODE_ERROR"
    retryable = True


# ── Dispatch / pipeline errors ──────────────────────────────────────────


class NoEndpointsAvailableError(InferenceDispatchError):
    """Every circuit is open, or every endpoint stayed at capacity too long.

    Retryable at the batch level after a short delay.
    """

    code = "NO_ENDPOINTS_AVAILABLE"
    retryable = True

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        msg = "No endpoints available"
        if detail:
            msg += f" — {detail}"
        super().__init__(msg)


class PermanentFailureError(InferenceDispatchError):
    """Retry budget or give-up horizon exhausted for a set of items."""

    code = "PERMANENT_FAILURE"

    def __init__(self, job_id: str, external_ids: list[str], reason: str) -> None:
        self.job_id = job_id
        self.external_ids = list(external_ids)
        self.reason = reason
        super().__init__(f"Job '{job_id}' abandoned with {len(self.external_ids)} item(s): {reason}")


class JobNotFoundError(InferenceDispatchError):
    """The retry job is unknown or already reached a terminal state."""

    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Retry job '{job_id}' not found or already completed")


class UnknownEndpointError(InferenceDispatchError):
    """An operation referenced an endpoint URL that is not configured."""

    code = "UNKNOWN_ENDPOINT"

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"Endpoint '{url}' is not configured")


class RateLimitedError(InferenceDispatchError):
    """A client sent more mutating requests than its per-minute allowance."""

    code = "RATE_LIMITED"
    retryable = True

    def __init__(self, limit: int, retry_after: int) -> None:
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(f"Rate limit of {limit} requests per minute exceeded, retry in {retry_after}s")


class SlotAccountingError(InferenceDispatchError):
    """An endpoint slot was released more times than it was acquired.

    Always a bug in the caller; the in-flight counter is never clamped.
    """

    code = "SLOT_ACCOUNTING"


class StructuredErrorResponse(BaseModel):
    """Error body returned by the HTTP surface.

    Returns ``{"error": str, "code": str, "request_id": str}`` — no stack traces.
    """

    error: str
    code: str
    request_id: str

    @classmethod
    def from_exception(cls, exc: Exception, request_id: str) -> StructuredErrorResponse:
        """Create from an exception, mapping to machine-readable codes.

        Never leaks internal details for unhandled exceptions or for
        internal-consistency errors.
        """
        if isinstance(exc, SlotAccountingError) or not isinstance(exc, InferenceDispatchError):
            return cls(
                error="An internal error occurred",
                code="INTERNAL_ERROR",
                request_id=request_id,
            )
        return cls(error=str(exc), code=exc.code, request_id=request_id)
