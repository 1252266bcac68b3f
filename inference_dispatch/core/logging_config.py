"""Logging setup with optional JSON lines for the per-attempt records."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

# Structured fields lifted from ``extra={...}`` into the JSON payload.
_STRUCTURED_FIELDS: tuple[str, ...] = (
    "event",
    "endpoint",
    "external_id",
    "outcome",
    "latency_ms",
    "status_code",
    "error_code",
    "attempt",
    "job_id",
    "retry_count",
    "item_count",
    "external_ids",
    "circuit_state",
    "request_id",
    "client",
    "retry_after",
)


class JsonFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        payload: dict[str, Any] = {
            "ts": datetime.now(UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in _STRUCTURED_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_info:
            payload["exc_type"] = record.exc_info[0].__name__ if record.exc_info[0] else "Exception"
            payload["exc"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(*, level: str = "INFO", json_logs: bool = False) -> None:
    """Configure root logging for the service entry point."""
    level_value = getattr(logging, level.strip().upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level_value)

    # Reconfiguring in the same process (tests) must not stack handlers.
    root.handlers[:] = []

    handler = logging.StreamHandler()
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)
