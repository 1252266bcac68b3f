"""Append-only JSONL persistence for retry jobs and permanent failures.

``RetryJobStore`` writes one snapshot line per job state change::

    {"event": "enqueued", "ts": "...", "job": {...RetryJob.to_dict()...}}

``load_active()`` folds the file to the latest snapshot per ``job_id`` and
returns the jobs that were still pending or processing, which is how the
queue survives a restart.  ``PermanentFailureLog`` is a separate JSONL
file with one line per abandoned job.

Writes are best-effort: an I/O error is logged and reported through the
return value, never raised into the processing path.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES: frozenset[str] = frozenset({"pending", "processing"})


def _dumps(data: dict) -> str:
    """Single-line JSON (JSONL-safe)."""
    return json.dumps(data, separators=(",", ":"), default=str)


# ── Retry job mirror ────────────────────────────────────────────────────


class RetryJobStore:
    """Durable mirror of the retry queue's job map."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def append(self, job: dict[str, Any], event: str) -> bool:
        """Append one snapshot of *job*.  Returns ``False`` if the write failed."""
        line = _dumps({"event": event, "ts": datetime.now(UTC).isoformat(), "job": job})
        try:
            async with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(self.path, "a") as f:
                    await f.write(line + "\n")
        except OSError as exc:
            logger.warning("Could not persist retry job %s (%s): %s", job.get("job_id"), event, exc)
            return False
        return True

    async def load_latest(self) -> dict[str, dict[str, Any]]:
        """Latest snapshot per job id, in first-seen order.  Malformed lines are skipped."""
        async with self._lock:
            return await self._read_latest()

    async def load_active(self) -> list[dict[str, Any]]:
        """Jobs whose latest snapshot is still pending or processing."""
        latest = await self.load_latest()
        return _active(latest)

    async def compact(self) -> int:
        """Rewrite the file keeping only the latest snapshot of each active job.

        Reading and replacing happen under one lock so no append is lost.
        Returns the number of jobs kept, or -1 if the rewrite failed.
        """
        tmp = self.path.with_name(self.path.name + ".tmp")
        ts = datetime.now(UTC).isoformat()
        try:
            async with self._lock:
                active = _active(await self._read_latest())
                self.path.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(tmp, "w") as f:
                    for job in active:
                        await f.write(_dumps({"event": "compacted", "ts": ts, "job": job}) + "\n")
                await aiofiles.os.replace(tmp, self.path)
        except OSError as exc:
            logger.warning("Could not compact %s: %s", self.path, exc)
            return -1
        logger.info("Compacted %s to %d active job(s)", self.path, len(active))
        return len(active)

    async def _read_latest(self) -> dict[str, dict[str, Any]]:
        # Caller holds self._lock
        if not self.path.exists():
            return {}
        latest: dict[str, dict[str, Any]] = {}
        async with aiofiles.open(self.path) as f:
            lineno = 0
            async for raw in f:
                lineno += 1
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    job = json.loads(raw)["job"]
                    job_id = job["job_id"]
                except (ValueError, KeyError, TypeError):
                    logger.warning("Skipping malformed line %d in %s", lineno, self.path)
                    continue
                latest[job_id] = job
        return latest


def _active(latest: dict[str, dict[str, Any]]) -> list[dict[str, Any]]:
    return [job for job in latest.values() if job.get("status") in _ACTIVE_STATUSES]


# ── Permanent failure log ───────────────────────────────────────────────


@dataclass
class PermanentFailureRecord:
    """One abandoned retry job, as written to the permanent-failure log."""

    job_id: str
    external_ids: list[str]
    reason: str
    retry_count: int
    created_at: str
    abandoned_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    search_context: dict[str, Any] | None = None
    last_errors: dict[str, str] = field(default_factory=dict)

    def to_json(self) -> str:
        return _dumps(asdict(self))


class PermanentFailureLog:
    """Append-only record of every item the system gave up on."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def record(self, entry: PermanentFailureRecord) -> bool:
        line = entry.to_json()
        try:
            async with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(self.path, "a") as f:
                    await f.write(line + "\n")
        except OSError as exc:
            # The log line is then the only durable trace of the abandonment
            logger.error("Could not write permanent failure record (%s): %s", exc, line)
            return False
        return True

    async def read_all(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        async with aiofiles.open(self.path) as f:
            content = await f.read()
        return [json.loads(line) for line in content.splitlines() if line.strip()]
