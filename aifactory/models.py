"""Core data structures for the AI factory orchestrator."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any


def generate_id() -> str:
    return uuid.uuid4().hex[:12]


# ---------------------------------------------------------------------------
# Status vocabularies
# ---------------------------------------------------------------------------

PRIORITIES = ("critical", "high", "normal", "low")
PRIORITY_RANK = {name: rank for rank, name in enumerate(PRIORITIES)}

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})

# Every status edge an execution may take. Retry never mutates a failed
# execution; it creates a new row pointing back at it.
EXECUTION_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "cancelled"}),
    "running": frozenset({"completed", "failed", "cancelled"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}

STAGE_TERMINAL_STATUSES = frozenset({"completed", "failed", "skipped"})


def can_transition(current: str, target: str) -> bool:
    return target in EXECUTION_TRANSITIONS.get(current, frozenset())


# ---------------------------------------------------------------------------
# Execution records
# ---------------------------------------------------------------------------


@dataclass
class Execution:
    """One request to run a template."""

    execution_id: str
    client_id: str
    template_name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    request_id: str | None = None
    status: str = "pending"  # pending | running | completed | failed | cancelled
    priority: str = "normal"  # low | normal | high | critical
    retry_count: int = 0
    retry_of: str | None = None
    total_cost_usd: float = 0.0
    total_time_ms: int = 0
    estimated_cost_usd: float = 0.0
    estimated_time_ms: int = 0
    error_message: str | None = None
    checkpoint_data: dict[str, Any] | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "request_id": self.request_id,
            "client_id": self.client_id,
            "template_name": self.template_name,
            "parameters": self.parameters,
            "status": self.status,
            "priority": self.priority,
            "retry_count": self.retry_count,
            "retry_of": self.retry_of,
            "total_cost_usd": self.total_cost_usd,
            "total_time_ms": self.total_time_ms,
            "estimated_cost_usd": self.estimated_cost_usd,
            "estimated_time_ms": self.estimated_time_ms,
            "error_message": self.error_message,
            "checkpoint_data": self.checkpoint_data,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass
class StageExecution:
    """One stage's run within an execution."""

    stage_id: str
    execution_id: str
    worker_name: str
    stage_order: int
    tier: int = 1
    action: str = "execute"
    status: str = "pending"  # pending | running | completed | failed | skipped
    input_reference: dict[str, Any] | None = None
    output_reference: dict[str, Any] | None = None
    summary_data: dict[str, Any] | None = None
    cost_usd: float = 0.0
    time_ms: int = 0
    retry_count: int = 0
    error_message: str | None = None
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in STAGE_TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "stage_id": self.stage_id,
            "execution_id": self.execution_id,
            "worker_name": self.worker_name,
            "stage_order": self.stage_order,
            "tier": self.tier,
            "action": self.action,
            "status": self.status,
            "input_reference": self.input_reference,
            "output_reference": self.output_reference,
            "summary": self.summary_data,
            "cost_usd": self.cost_usd,
            "time_ms": self.time_ms,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


@dataclass
class ResourceRequirement:
    resource_name: str
    quantity: float = 1
    resource_type: str = "api"  # api | storage | compute | network
    unit: str = "units"


@dataclass
class ResourceDefinition:
    """A finite pool. ``limit == -1`` means unlimited.

    Without a period the limit caps concurrent reservations (worker slots).
    With a period, recorded usage inside the current period also counts
    against the limit (API budgets, storage quotas).
    """

    name: str
    resource_type: str = "api"
    limit: float = -1
    period: str | None = None  # daily | weekly | monthly
    cost_per_unit: float = 0.0
    unit: str = "units"

    @property
    def unlimited(self) -> bool:
        return self.limit == -1

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "resource_type": self.resource_type,
            "limit": self.limit,
            "period": self.period,
            "cost_per_unit": self.cost_per_unit,
            "unit": self.unit,
        }


@dataclass
class ResourceAllocation:
    allocation_id: str
    execution_id: str
    resource_type: str
    resource_name: str
    quantity: float
    allocated_at: float
    expires_at: float
    released_at: float | None = None
    status: str = "reserved"  # reserved | active | released

    def is_held(self, now: float) -> bool:
        return self.status in ("reserved", "active") and self.expires_at > now

    def to_dict(self) -> dict:
        return {
            "allocation_id": self.allocation_id,
            "execution_id": self.execution_id,
            "resource_type": self.resource_type,
            "resource_name": self.resource_name,
            "quantity": self.quantity,
            "allocated_at": self.allocated_at,
            "expires_at": self.expires_at,
            "released_at": self.released_at,
            "status": self.status,
        }


@dataclass
class AllocationSet:
    execution_id: str
    allocations: list[ResourceAllocation] = field(default_factory=list)

    @property
    def ids(self) -> list[str]:
        return [a.allocation_id for a in self.allocations]

    def extend(self, other: "AllocationSet"):
        self.allocations.extend(other.allocations)

    def quantity_by_name(self) -> dict[str, float]:
        totals: dict[str, float] = {}
        for a in self.allocations:
            if a.status != "released":
                totals[a.resource_name] = totals.get(a.resource_name, 0) + a.quantity
        return totals

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "allocations": [a.to_dict() for a in self.allocations],
        }


@dataclass
class UsageRecord:
    execution_id: str
    resource_name: str
    quantity: float
    cost_usd: float
    resource_type: str = "api"
    unit: str = "units"
    stage_id: str | None = None
    ts: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Execution plan (derived from a template, never persisted verbatim)
# ---------------------------------------------------------------------------


@dataclass
class StageDependency:
    stage_from: int
    stage_to: int
    dependency_type: str = "sequence"  # data | sequence


@dataclass
class ParallelGroup:
    group_id: str
    tier: int
    stages: list[int] = field(default_factory=list)

    @property
    def max_parallel(self) -> int:
        return len(self.stages)


@dataclass
class PlannedStage:
    """A template stage placed into an order tier."""

    stage: Any  # templates.TemplateStage
    tier: int

    @property
    def stage_order(self) -> int:
        return self.stage.stage_order

    @property
    def worker_name(self) -> str:
        return self.stage.worker_name


@dataclass
class ExecutionPlan:
    plan_id: str
    template_name: str
    stages: list[PlannedStage] = field(default_factory=list)
    dependencies: list[StageDependency] = field(default_factory=list)
    parallel_groups: list[ParallelGroup] = field(default_factory=list)
    estimated_total_cost_usd: float = 0.0
    estimated_total_time_ms: int = 0

    @property
    def tier_count(self) -> int:
        return max((s.tier for s in self.stages), default=0)

    def tiers(self) -> list[list[PlannedStage]]:
        grouped: list[list[PlannedStage]] = [[] for _ in range(self.tier_count)]
        for s in self.stages:
            grouped[s.tier - 1].append(s)
        return grouped

    def stage(self, stage_order: int) -> PlannedStage | None:
        for s in self.stages:
            if s.stage_order == stage_order:
                return s
        return None

    def next_after(self, stage_order: int) -> PlannedStage | None:
        later = [s for s in self.stages if s.stage_order > stage_order]
        return min(later, key=lambda s: s.stage_order) if later else None

    def to_dict(self) -> dict:
        return {
            "plan_id": self.plan_id,
            "template_name": self.template_name,
            "stages": [
                {
                    "stage_order": s.stage_order,
                    "tier": s.tier,
                    "worker_name": s.worker_name,
                    "action": s.stage.action,
                    "can_parallel": s.stage.can_parallel,
                    "depends_on": list(s.stage.depends_on),
                    "estimated_cost_usd": s.stage.estimated_cost_usd,
                    "estimated_time_ms": s.stage.estimated_time_ms,
                }
                for s in self.stages
            ],
            "dependencies": [
                {"stage_from": d.stage_from, "stage_to": d.stage_to, "dependency_type": d.dependency_type}
                for d in self.dependencies
            ],
            "parallel_groups": [
                {"group_id": g.group_id, "tier": g.tier, "stages": g.stages, "max_parallel": g.max_parallel}
                for g in self.parallel_groups
            ],
            "estimated_total_cost_usd": self.estimated_total_cost_usd,
            "estimated_total_time_ms": self.estimated_total_time_ms,
        }


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


@dataclass
class QueueEntry:
    execution_id: str
    priority: str = "normal"
    submitted_at: float = field(default_factory=time.time)
    seq: int = 0
    status: str = "queued"  # queued | admitted | blocked | cancelled | rejected
    resume: bool = False
    blocked_reason: str | None = None

    @property
    def key(self) -> tuple[int, float, int]:
        return (PRIORITY_RANK.get(self.priority, PRIORITY_RANK["normal"]), self.submitted_at, self.seq)

    def to_dict(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "priority": self.priority,
            "submitted_at": self.submitted_at,
            "status": self.status,
            "resume": self.resume,
            "blocked_reason": self.blocked_reason,
        }


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass
class Event:
    type: str
    execution_id: str
    ts: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type, "execution_id": self.execution_id, "ts": self.ts, "data": self.data}
