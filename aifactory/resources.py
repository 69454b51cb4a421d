"""Resource Ledger: arbitrates API budgets, worker slots and storage quota.

Every allocation is all-or-nothing and happens under one condition lock, so
concurrent executions can never push held capacity past a resource's limit.
Resources with a period also count recorded usage inside the current period.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Iterable

from aifactory.errors import ResourceExhaustedError, ValidationError
from aifactory.models import (
    AllocationSet,
    ResourceAllocation,
    ResourceDefinition,
    ResourceRequirement,
    UsageRecord,
    generate_id,
)

if TYPE_CHECKING:
    from aifactory.events import EventBus

logger = logging.getLogger(__name__)

LIMITED_UTILIZATION = 0.8


def period_bounds(period: str, now: float) -> tuple[float, float]:
    """Start and end (exclusive) of the quota period containing ``now``, in UTC."""
    dt = datetime.fromtimestamp(now, tz=timezone.utc)
    day = dt.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "daily":
        start, end = day, day + timedelta(days=1)
    elif period == "weekly":
        start = day - timedelta(days=day.weekday())
        end = start + timedelta(days=7)
    elif period == "monthly":
        start = day.replace(day=1)
        end = start.replace(year=start.year + 1, month=1) if start.month == 12 else start.replace(month=start.month + 1)
    else:
        raise ValidationError(f"Unknown quota period: {period}")
    return start.timestamp(), end.timestamp()


def wait_estimate_for_utilization(utilization: float) -> int:
    if utilization < 0.8:
        return 0
    if utilization < 0.9:
        return 60_000
    if utilization < 0.95:
        return 300_000
    return 900_000


def aggregate(requirements: Iterable[ResourceRequirement]) -> dict[str, ResourceRequirement]:
    """Merge requirements that name the same resource."""
    merged: dict[str, ResourceRequirement] = {}
    for req in requirements:
        if req.quantity <= 0:
            continue
        if req.resource_name in merged:
            merged[req.resource_name].quantity += req.quantity
        else:
            merged[req.resource_name] = ResourceRequirement(
                resource_name=req.resource_name,
                quantity=req.quantity,
                resource_type=req.resource_type,
                unit=req.unit,
            )
    return merged


class ResourceLedger:
    def __init__(
        self,
        definitions: Iterable[ResourceDefinition] = (),
        allocation_ttl: float = 3600,
        clock: Callable[[], float] = time.time,
        event_bus: "EventBus | None" = None,
    ):
        self._definitions: dict[str, ResourceDefinition] = {d.name: d for d in definitions}
        self._allocations: dict[str, ResourceAllocation] = {}
        self._usage: list[UsageRecord] = []
        self._condition = asyncio.Condition()
        self.allocation_ttl = allocation_ttl
        self._clock = clock
        self._event_bus = event_bus

    # -- definitions -------------------------------------------------------

    def define(self, definition: ResourceDefinition):
        self._definitions[definition.name] = definition

    def definition(self, name: str) -> ResourceDefinition | None:
        return self._definitions.get(name)

    def unknown(self, names: Iterable[str]) -> list[str]:
        return sorted(n for n in set(names) if n not in self._definitions)

    # -- reads ---------------------------------------------------------------

    def held(self, name: str, now: float | None = None) -> float:
        now = self._clock() if now is None else now
        return sum(a.quantity for a in self._allocations.values() if a.resource_name == name and a.is_held(now))

    def period_usage(self, name: str, now: float | None = None) -> float:
        definition = self._definitions.get(name)
        if definition is None or not definition.period:
            return 0.0
        now = self._clock() if now is None else now
        start, _ = period_bounds(definition.period, now)
        return sum(u.quantity for u in self._usage if u.resource_name == name and u.ts >= start)

    def available(self, name: str, now: float | None = None) -> float:
        definition = self._definitions.get(name)
        if definition is None:
            return 0.0
        if definition.unlimited:
            return math.inf
        now = self._clock() if now is None else now
        return max(0.0, definition.limit - self.held(name, now) - self.period_usage(name, now))

    def check_availability(self, requirements: Iterable[ResourceRequirement]) -> dict:
        """Report whether the requirements could be met right now. Never mutates."""
        now = self._clock()
        rows = []
        overall = "available"
        wait_ms = 0

        for name, req in aggregate(requirements).items():
            definition = self._definitions.get(name)
            if definition is None:
                rows.append({"resource_name": name, "requested": req.quantity, "status": "unknown"})
                overall = "unavailable"
                continue
            if definition.unlimited:
                rows.append({
                    "resource_name": name,
                    "requested": req.quantity,
                    "available": None,
                    "limit": -1,
                    "utilization": 0.0,
                    "status": "available",
                })
                continue

            available = self.available(name, now)
            used_after = definition.limit - available + req.quantity
            utilization = used_after / definition.limit if definition.limit > 0 else 1.0
            if req.quantity > available:
                status = "unavailable"
                wait_ms = max(wait_ms, self._wait_estimate(definition, req.quantity, now))
            elif utilization > LIMITED_UTILIZATION:
                status = "limited"
            else:
                status = "available"

            if status == "unavailable" or (status == "limited" and overall == "available"):
                overall = status
            rows.append({
                "resource_name": name,
                "requested": req.quantity,
                "available": available,
                "limit": definition.limit,
                "utilization": round(min(utilization, 1.0), 4),
                "status": status,
            })

        return {"status": overall, "wait_estimate_ms": wait_ms, "resources": rows}

    def _wait_estimate(self, definition: ResourceDefinition, quantity: float, now: float) -> int:
        if definition.period:
            quota_left = definition.limit - self.period_usage(definition.name, now)
            if quota_left < quantity:
                _, reset = period_bounds(definition.period, now)
                return int((reset - now) * 1000)
        if definition.limit <= 0:
            return wait_estimate_for_utilization(1.0)
        return wait_estimate_for_utilization((self.held(definition.name, now) + quantity) / definition.limit)

    # -- allocation ----------------------------------------------------------

    async def allocate(self, execution_id: str, requirements: Iterable[ResourceRequirement]) -> AllocationSet:
        """Reserve every requirement or nothing."""
        async with self._condition:
            return self._allocate_locked(execution_id, requirements)

    async def allocate_wait(
        self,
        execution_id: str,
        requirements: Iterable[ResourceRequirement],
        timeout: float,
        poll_interval: float = 1.0,
    ) -> AllocationSet:
        """Like ``allocate`` but waits up to ``timeout`` seconds for capacity."""
        requirements = list(requirements)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        async with self._condition:
            while True:
                try:
                    return self._allocate_locked(execution_id, requirements)
                except ResourceExhaustedError:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise
                # Expiries never notify, so wake up periodically as well
                try:
                    await asyncio.wait_for(self._condition.wait(), timeout=min(remaining, poll_interval))
                except asyncio.TimeoutError:
                    pass

    def _allocate_locked(self, execution_id: str, requirements: Iterable[ResourceRequirement]) -> AllocationSet:
        merged = aggregate(requirements)
        missing = self.unknown(merged)
        if missing:
            raise ValidationError(f"Unknown resources: {', '.join(missing)}", resources=missing)

        now = self._clock()
        short = []
        wait_ms = 0
        for name, req in merged.items():
            definition = self._definitions[name]
            if req.quantity > self.available(name, now):
                short.append(name)
                wait_ms = max(wait_ms, self._wait_estimate(definition, req.quantity, now))
        if short:
            self._emit("resource.exhausted", execution_id, resources=short, wait_estimate_ms=wait_ms)
            raise ResourceExhaustedError(
                f"Insufficient capacity for {', '.join(short)}",
                wait_estimate_ms=wait_ms,
                resources=short,
            )

        allocation_set = AllocationSet(execution_id=execution_id)
        for name, req in merged.items():
            allocation = ResourceAllocation(
                allocation_id=f"alloc_{generate_id()}",
                execution_id=execution_id,
                resource_type=self._definitions[name].resource_type,
                resource_name=name,
                quantity=req.quantity,
                allocated_at=now,
                expires_at=now + self.allocation_ttl,
            )
            self._allocations[allocation.allocation_id] = allocation
            allocation_set.allocations.append(allocation)

        if allocation_set.allocations:
            self._emit("resource.allocated", execution_id, resources=allocation_set.quantity_by_name())
        return allocation_set

    def activate(self, allocation_set: AllocationSet):
        for allocation in allocation_set.allocations:
            current = self._allocations.get(allocation.allocation_id)
            if current and current.status == "reserved":
                current.status = "active"

    async def release(self, allocations: AllocationSet | Iterable[str]) -> int:
        """Release allocations. Safe to repeat; returns how many were actually released."""
        ids = allocations.ids if isinstance(allocations, AllocationSet) else list(allocations)
        now = self._clock()
        released: dict[str, float] = {}
        count = 0
        execution_id = ""
        async with self._condition:
            for allocation_id in ids:
                # Released and expired allocations are forgotten, so a repeat is a no-op
                allocation = self._allocations.pop(allocation_id, None)
                if allocation is None or allocation.status == "released":
                    continue
                allocation.status = "released"
                allocation.released_at = now
                execution_id = allocation.execution_id
                released[allocation.resource_name] = released.get(allocation.resource_name, 0) + allocation.quantity
                count += 1
            if count:
                self._condition.notify_all()
        if count:
            self._emit("resource.released", execution_id, resources=released)
        return count

    async def release_execution(self, execution_id: str) -> int:
        ids = [a.allocation_id for a in self._allocations.values() if a.execution_id == execution_id and a.status != "released"]
        if not ids:
            return 0
        return await self.release(ids)

    async def expire_stale(self) -> int:
        """Drop allocations past their expiry, prune old usage and wake waiters."""
        now = self._clock()
        async with self._condition:
            stale = [a for a in self._allocations.values() if a.expires_at <= now]
            for allocation in stale:
                del self._allocations[allocation.allocation_id]
                allocation.status = "released"
                allocation.released_at = now
                logger.warning(
                    f"Allocation {allocation.allocation_id} for {allocation.execution_id} expired unreleased"
                )
            if stale:
                self._condition.notify_all()
        self._prune_usage(now)
        return len(stale)

    def allocations_for(self, execution_id: str) -> list[ResourceAllocation]:
        return [a for a in self._allocations.values() if a.execution_id == execution_id]

    @property
    def allocation_count(self) -> int:
        return len(self._allocations)

    def active_total(self, name: str) -> float:
        return sum(a.quantity for a in self._allocations.values() if a.resource_name == name and a.status == "active")

    # -- usage -----------------------------------------------------------------

    def record_usage(
        self,
        execution_id: str,
        resource_name: str,
        quantity: float,
        cost_usd: float | None = None,
        stage_id: str | None = None,
        resource_type: str | None = None,
        unit: str | None = None,
    ) -> UsageRecord:
        if quantity < 0:
            raise ValidationError("Usage quantity must be non-negative")
        definition = self._definitions.get(resource_name)
        if cost_usd is None:
            cost_usd = quantity * definition.cost_per_unit if definition else 0.0
        record = UsageRecord(
            execution_id=execution_id,
            resource_name=resource_name,
            quantity=quantity,
            cost_usd=round(cost_usd, 6),
            resource_type=resource_type or (definition.resource_type if definition else "api"),
            unit=unit or (definition.unit if definition else "units"),
            stage_id=stage_id,
            ts=self._clock(),
        )
        # Only period quotas read usage back; cost_breakdown keeps the full history
        if definition and definition.period:
            self._usage.append(record)

        if definition and definition.period and not definition.unlimited:
            used = self.period_usage(resource_name, record.ts)
            if used > definition.limit:
                logger.warning(f"Quota for {resource_name} exceeded: {used}/{definition.limit} this {definition.period} period")
        return record

    def restore_usage(self, records: Iterable[UsageRecord]):
        """Reload usage recorded before a restart so period quotas stay accurate."""
        restored = list(records)
        self._usage.extend(restored)
        self._prune_usage(self._clock())
        if restored:
            logger.info(f"Restored {len(restored)} usage records")

    def _prune_usage(self, now: float):
        """Forget usage that no longer falls inside its resource's current period."""
        starts = {
            name: period_bounds(d.period, now)[0]
            for name, d in self._definitions.items()
            if d.period
        }
        self._usage = [u for u in self._usage if u.resource_name in starts and u.ts >= starts[u.resource_name]]

    @property
    def usage_count(self) -> int:
        return len(self._usage)

    # -- views -----------------------------------------------------------------

    def status(self) -> list[dict]:
        now = self._clock()
        rows = []
        for name, definition in sorted(self._definitions.items()):
            held = self.held(name, now)
            used = self.period_usage(name, now)
            row = definition.to_dict()
            row.update({
                "held": held,
                "active": self.active_total(name),
                "period_usage": used,
                "available": None if definition.unlimited else self.available(name, now),
                "utilization": 0.0 if definition.unlimited or definition.limit <= 0 else round((held + used) / definition.limit, 4),
            })
            rows.append(row)
        return rows

    def quotas(self) -> list[dict]:
        now = self._clock()
        rows = []
        for name, definition in sorted(self._definitions.items()):
            if not definition.period:
                continue
            used = self.period_usage(name, now)
            _, resets_at = period_bounds(definition.period, now)
            rows.append({
                "resource_name": name,
                "period": definition.period,
                "limit": definition.limit,
                "used": used,
                "remaining": None if definition.unlimited else max(0.0, definition.limit - used),
                "resets_at": resets_at,
            })
        return rows

    def _emit(self, type: str, execution_id: str, **data):
        if self._event_bus:
            self._event_bus.emit_simple(type, execution_id, **data)
