"""Request/response Pydantic models for work items and the HTTP surface.

``WorkItem`` and ``SearchContext`` are frozen: once a work item exists its
identity (``external_id``) and payload never change, so results can be
mapped back idempotently.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

_UNKNOWN = "Unknown"


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    service: str
    version: str
    status: str
    uptime_seconds: float


class SearchContext(BaseModel):
    """Search parameters shared by every item of a submission."""

    model_config = ConfigDict(frozen=True)

    sponsor: str = Field(default=_UNKNOWN, max_length=500)
    query: str = Field(default="", max_length=2000)
    extra: dict[str, Any] = Field(default_factory=dict)


class WorkItem(BaseModel):
    """One unit of input requiring one inference result (e.g. one PMID)."""

    model_config = ConfigDict(frozen=True)

    external_id: str = Field(..., min_length=1, max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict)
    search_context: SearchContext | None = None

    @field_validator("external_id", mode="before")
    @classmethod
    def strip_external_id(cls, v: Any) -> Any:
        if isinstance(v, int):
            return str(v)
        if isinstance(v, str):
            return v.strip()
        return v

    def context_or(self, fallback: SearchContext | None) -> SearchContext:
        """The item's own context, else *fallback*, else an empty context."""
        return self.search_context or fallback or SearchContext()

    def drug_name(self, context: SearchContext) -> str:
        """Drug name for the outbound query, formatted ``INN(BrandName)`` when a brand is known."""
        name = self.payload.get("drug_name") or context.query or _UNKNOWN
        brand = self.payload.get("brand_name")
        if brand:
            return f"{name}({brand})"
        return name

    def query_params(self, context: SearchContext | None = None) -> dict[str, str]:
        """Query string for ``GET {endpoint}?PMID=..&sponsor=..&drugname=..``."""
        ctx = self.context_or(context)
        return {
            "PMID": self.external_id,
            "sponsor": ctx.sponsor or _UNKNOWN,
            "drugname": self.drug_name(ctx),
        }


class BatchOptions(BaseModel):
    """Per-call overrides for ``submit_batch``; ``None`` means the configured default.

    Tuning only: whatever the options, unresolved items always end up in a
    retry job.
    """

    model_config = ConfigDict(extra="forbid")

    batch_size: int | None = Field(default=None, ge=1)
    max_concurrency: int | None = Field(default=None, ge=1)
    max_immediate_retries: int | None = Field(default=None, ge=0)
    inter_chunk_delay: float | None = Field(default=None, ge=0.0)


class SubmitBatchRequest(BaseModel):
    """Body of POST /v1/batches."""

    items: list[WorkItem] = Field(..., min_length=1, max_length=5000)
    search_context: SearchContext = Field(default_factory=SearchContext)
    options: BatchOptions = Field(default_factory=BatchOptions)


class ResetCircuitRequest(BaseModel):
    """Body of POST /v1/endpoints/reset."""

    url: str = Field(..., min_length=1)
