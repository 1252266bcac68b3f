"""Settings — centralized configuration for the inference dispatch service.

All settings are loaded from environment variables with the
``INFERENCE_DISPATCH_`` prefix.  List-valued settings (``ENDPOINT_URLS``,
``HEALTH_PROBE_ACCEPTED_STATUSES``) are read as JSON arrays.

Defaults are sized for endpoints that answer in 45–60 seconds.
"""

from __future__ import annotations

from pydantic import model_validator
from pydantic_settings import BaseSettings

from inference_dispatch.resilience.retry_policy import RetryPolicy


class Settings(BaseSettings):
    """Inference dispatch configuration.

    All fields can be overridden by environment variables prefixed with
    ``INFERENCE_DISPATCH_``.  For example,
    ``INFERENCE_DISPATCH_MAX_IMMEDIATE_RETRIES=3`` overrides the immediate
    retry budget.
    """

    # ── Service identity ────────────────────────────────────────────
    SERVICE_NAME: str = "inference-dispatch"
    SERVICE_VERSION: str = "0.1.0"

    # ── Inference endpoints ─────────────────────────────────────────
    ENDPOINT_URLS: list[str] = [
        "http://localhost:9001/get_AI_inference",
        "http://localhost:9002/get_AI_inference2",
        "http://localhost:9003/get_AI_inference3",
        "http://localhost:9004/get_AI_inference4",
    ]
    USER_AGENT: str = "inference-dispatch/0.1"
    REQUEST_TIMEOUT_SECONDS: float = 90.0  # Hard deadline per call
    CONNECT_TIMEOUT_SECONDS: float = 15.0

    # ── Concurrency ─────────────────────────────────────────────────
    MAX_CONCURRENT_REQUESTS: int = 16  # Global cap across all endpoints
    MAX_CONCURRENT_PER_ENDPOINT: int = 1
    MIN_REQUEST_INTERVAL_SECONDS: float = 1.0  # Global pacing between requests
    SLOT_WAIT_TIMEOUT_SECONDS: float = 300.0  # Max wait for a free endpoint slot

    # ── Circuit breaker ─────────────────────────────────────────────
    CIRCUIT_BREAKER_THRESHOLD: int = 3  # Consecutive failures before OPEN
    CIRCUIT_BREAKER_TIMEOUT_SECONDS: float = 60.0  # Seconds OPEN before HALF_OPEN
    CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS: int = 1

    # ── Backoff (immediate retry passes) ────────────────────────────
    BACKOFF_BASE_SECONDS: float = 2.0
    BACKOFF_MULTIPLIER: float = 2.0
    BACKOFF_MAX_SECONDS: float = 30.0
    BACKOFF_JITTER_SECONDS: float = 1.0

    # ── Batching ────────────────────────────────────────────────────
    BATCH_SIZE: int = 16
    MAX_BATCH_SIZE: int = 50
    INTER_CHUNK_DELAY_SECONDS: float = 2.0
    MAX_IMMEDIATE_RETRIES: int = 5

    # ── Health monitoring ───────────────────────────────────────────
    HEALTH_CHECK_INTERVAL_SECONDS: float = 120.0
    HEALTH_CHECK_TIMEOUT_SECONDS: float = 30.0
    CIRCUIT_CHECK_INTERVAL_SECONDS: float = 5.0
    HEALTH_PROBE_ENABLED: bool = True
    HEALTH_PROBE_ACCEPTED_STATUSES: list[int] = [400, 422]
    HEALTH_PROBE_EXTERNAL_ID: str = "test"

    # ── Durable retry queue ─────────────────────────────────────────
    BACKGROUND_RETRY_INTERVAL_SECONDS: float = 60.0
    MAX_BACKGROUND_RETRIES: int = 20
    RETRY_BATCH_SIZE: int = 5
    BACKGROUND_IMMEDIATE_RETRIES: int = 0
    BACKGROUND_BACKOFF_MAX_SECONDS: float = 600.0  # Cap on per-job spacing between passes
    GIVE_UP_AFTER_HOURS: float = 24.0
    RETRY_JOB_STORE_PATH: str = "data/retry_jobs.jsonl"
    PERMANENT_FAILURE_LOG_PATH: str = "logs/permanent_failures.jsonl"
    RECOVER_ON_STARTUP: bool = True

    # ── Inbound rate limiting ───────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379"
    RATE_LIMIT_RPM: int = 30  # Mutating requests per minute per client

    # ── Logging ─────────────────────────────────────────────────────
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    model_config = {
        "env_prefix": "INFERENCE_DISPATCH_",
    }

    @model_validator(mode="after")
    def _check_bounds(self) -> Settings:
        if not self.ENDPOINT_URLS:
            raise ValueError("ENDPOINT_URLS must contain at least one endpoint")
        if self.BATCH_SIZE < 1 or self.BATCH_SIZE > self.MAX_BATCH_SIZE:
            raise ValueError(f"BATCH_SIZE must be between 1 and MAX_BATCH_SIZE ({self.MAX_BATCH_SIZE})")
        if self.MAX_CONCURRENT_PER_ENDPOINT < 1:
            raise ValueError("MAX_CONCURRENT_PER_ENDPOINT must be at least 1")
        if self.MAX_CONCURRENT_PER_ENDPOINT > self.MAX_CONCURRENT_REQUESTS:
            raise ValueError("MAX_CONCURRENT_PER_ENDPOINT cannot exceed MAX_CONCURRENT_REQUESTS")
        if self.CIRCUIT_BREAKER_THRESHOLD < 1:
            raise ValueError("CIRCUIT_BREAKER_THRESHOLD must be at least 1")
        return self

    # ── Derived policies ────────────────────────────────────────────

    def immediate_retry_policy(self) -> RetryPolicy:
        """Policy for the synchronous retry passes inside one batch call."""
        return RetryPolicy(
            max_attempts=self.MAX_IMMEDIATE_RETRIES,
            base_delay=self.BACKOFF_BASE_SECONDS,
            multiplier=self.BACKOFF_MULTIPLIER,
            max_delay=self.BACKOFF_MAX_SECONDS,
            max_jitter=self.BACKOFF_JITTER_SECONDS,
        )

    def background_retry_policy(self) -> RetryPolicy:
        """Policy for the durable queue: attempt budget plus give-up horizon."""
        return RetryPolicy(
            max_attempts=self.MAX_BACKGROUND_RETRIES,
            base_delay=self.BACKGROUND_RETRY_INTERVAL_SECONDS,
            multiplier=self.BACKOFF_MULTIPLIER,
            max_delay=self.BACKGROUND_BACKOFF_MAX_SECONDS,
            max_jitter=self.BACKOFF_JITTER_SECONDS,
            give_up_after=self.GIVE_UP_AFTER_HOURS * 3600.0,
        )
