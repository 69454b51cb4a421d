"""Handshake wire types exchanged between the orchestrator and workers."""

from __future__ import annotations

import time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from aifactory.data_refs import DataReference
from aifactory.models import generate_id

Priority = Literal["low", "normal", "high", "critical"]


class SkipCondition(BaseModel):
    """Checked against the previous stage's summary before a stage is sent.

    ``field`` is a dotted path into the summary (``metrics.sources_found``);
    the previous stage's output is reachable under ``output.``.
    """

    field: str
    operator: Literal["eq", "ne", "gt", "lt", "gte", "lte", "contains", "not_contains"]
    value: Any = None
    action: Literal["skip", "abort", "continue"] = "skip"

    def matches(self, data: dict[str, Any]) -> bool:
        current: Any = data
        for part in self.field.split("."):
            if not isinstance(current, dict) or part not in current:
                return False
            current = current[part]

        try:
            if self.operator == "eq":
                return current == self.value
            if self.operator == "ne":
                return current != self.value
            if self.operator == "gt":
                return current > self.value
            if self.operator == "lt":
                return current < self.value
            if self.operator == "gte":
                return current >= self.value
            if self.operator == "lte":
                return current <= self.value
            if self.operator == "contains":
                return self.value in current
            return self.value not in current
        except TypeError:
            return False


class ControlBlock(BaseModel):
    action: Literal["continue", "abort", "retry", "skip"] = "continue"
    priority: Priority = "normal"
    checkpoint_enabled: bool = True
    timeout_ms: int = 30000
    retry_count: int = 0
    max_retries: int = 3


class ErrorInfo(BaseModel):
    code: str = "error"
    message: str
    severity: Literal["warning", "error", "critical"] = "error"
    recoverable: bool = True
    timestamp: float | None = None


class ResourceUsageSummary(BaseModel):
    model_config = ConfigDict(extra="allow")

    api_calls: int = 0
    tokens_used: int = 0
    storage_mb: float = 0


class StageSummary(BaseModel):
    """Set by the worker. The counters and ``continue_pipeline`` are required;
    a summary missing any of them is treated as garbled."""

    items_processed: int = Field(ge=0)
    items_total: int | None = None
    quality_score: float
    confidence_level: float
    processing_time_ms: int = Field(ge=0)
    resource_usage: ResourceUsageSummary = Field(default_factory=ResourceUsageSummary)
    errors: list[ErrorInfo] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    # Worker-defined; documented keys: sources_found, articles_fetched, tokens_used
    metrics: dict[str, Any] = Field(default_factory=dict)
    continue_pipeline: bool


class NextStageInstructions(BaseModel):
    worker_name: str
    action: str
    stage_order: int
    params: dict[str, Any] = Field(default_factory=dict)
    required_resources: list[str] = Field(default_factory=list)
    estimated_time_ms: int = 0
    skip_conditions: list[SkipCondition] = Field(default_factory=list)


class HandshakePacket(BaseModel):
    packet_id: str = Field(default_factory=lambda: f"packet_{generate_id()}")
    execution_id: str
    stage_id: str
    stage_order: int
    worker_name: str
    action: str
    timestamp: float = Field(default_factory=time.time)
    control: ControlBlock
    data_ref: DataReference
    summary: StageSummary | None = None
    next: NextStageInstructions | None = None


class UsageItem(BaseModel):
    resource_type: str = "api"
    resource_name: str
    quantity: float = Field(ge=0)
    unit: str = "units"
    cost_usd: float | None = Field(default=None, ge=0)


class WorkerResponse(BaseModel):
    """What a worker's process endpoint returns."""

    success: bool
    output: Any = None
    error: str | None = None
    summary: StageSummary | None = None
    resource_usage: list[UsageItem] = Field(default_factory=list)
    next: NextStageInstructions | None = None

    @model_validator(mode="after")
    def _summary_required_on_success(self) -> "WorkerResponse":
        if self.success and self.summary is None:
            raise ValueError("successful response must carry a stage summary")
        return self


class HandshakeAcknowledgment(BaseModel):
    packet_id: str
    stage_id: str | None = None
    worker_name: str | None = None
    acknowledgment_type: Literal["received", "processing", "completed", "failed"] = "received"
    data_retrieved: bool = False
    processing_started: bool = False
    message: str | None = None
