"""Execution Ledger: durable execution and stage records.

The database is authoritative. Status changes go through compare-and-set
updates (``UPDATE ... WHERE status IN (...)``) so two racing operations can
never both move the same record. Progress snapshots and execution summaries
are cached briefly and invalidated on every write.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Iterable

from aifactory.cache import TTLCache
from aifactory.errors import NotFoundError
from aifactory.models import (
    TERMINAL_STATUSES,
    Event,
    Execution,
    ExecutionPlan,
    QueueEntry,
    StageExecution,
    UsageRecord,
    can_transition,
    generate_id,
)
from aifactory.store import Database

if TYPE_CHECKING:
    from aifactory.events import EventBus

logger = logging.getLogger(__name__)

_EXECUTION_COLUMNS = {
    "request_id", "priority", "retry_count", "retry_of", "total_cost_usd", "total_time_ms",
    "estimated_cost_usd", "estimated_time_ms", "error_message", "checkpoint_data",
    "started_at", "completed_at", "parameters",
}
_STAGE_COLUMNS = {
    "worker_name", "input_reference", "output_reference", "summary_data", "cost_usd",
    "time_ms", "retry_count", "error_message", "started_at", "completed_at",
}
_JSON_COLUMNS = {"parameters", "checkpoint_data", "input_reference", "output_reference", "summary_data"}


def _encode(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS and value is not None:
        return json.dumps(value, default=str)
    return value


def _decode(row: dict) -> dict:
    for column in _JSON_COLUMNS:
        if column in row and row[column] is not None:
            row[column] = json.loads(row[column])
    return row


def _execution(row: dict) -> Execution:
    row = _decode(row)
    row["parameters"] = row.get("parameters") or {}
    return Execution(**row)


def _stage(row: dict) -> StageExecution:
    return StageExecution(**_decode(row))


def _assignments(patch: dict[str, Any], allowed: set[str]) -> tuple[list[str], list[Any]]:
    unknown = set(patch) - allowed
    if unknown:
        raise ValueError(f"Cannot update columns: {', '.join(sorted(unknown))}")
    return [f"{column} = ?" for column in patch], [_encode(c, v) for c, v in patch.items()]


class ExecutionLedger:
    def __init__(
        self,
        db: Database,
        cache: TTLCache,
        event_bus: "EventBus | None" = None,
        progress_ttl: float = 30,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.cache = cache
        self.event_bus = event_bus
        self.progress_ttl = progress_ttl
        self._clock = clock

    # -- executions ------------------------------------------------------------

    async def create_execution(self, execution: Execution) -> str:
        now = self._clock()
        execution.created_at = execution.updated_at = now
        await self.db.execute(
            """INSERT INTO executions (execution_id, request_id, client_id, template_name, parameters,
                   status, priority, retry_count, retry_of, estimated_cost_usd, estimated_time_ms,
                   created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                execution.execution_id, execution.request_id, execution.client_id, execution.template_name,
                json.dumps(execution.parameters, default=str), execution.status, execution.priority,
                execution.retry_count, execution.retry_of, execution.estimated_cost_usd,
                execution.estimated_time_ms, now, now,
            ),
        )
        return execution.execution_id

    async def find_by_request(self, client_id: str, request_id: str) -> Execution | None:
        """Latest live-or-completed execution for an idempotency key."""
        row = await self.db.fetchone(
            """SELECT * FROM executions
               WHERE client_id = ? AND request_id = ? AND status NOT IN ('failed', 'cancelled')
               ORDER BY created_at DESC LIMIT 1""",
            (client_id, request_id),
        )
        return _execution(row) if row else None

    async def find_execution(self, execution_id: str) -> Execution | None:
        row = await self.db.fetchone("SELECT * FROM executions WHERE execution_id = ?", (execution_id,))
        return _execution(row) if row else None

    async def get_execution(self, execution_id: str) -> Execution:
        execution = await self.find_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found", execution_id=execution_id)
        return execution

    async def summary(self, execution_id: str) -> dict:
        """Execution record as a dict, served from cache when fresh."""
        key = f"execution:{execution_id}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        data = (await self.get_execution(execution_id)).to_dict()
        self.cache.set(key, data, ttl=self.progress_ttl)
        return data

    async def update_execution(self, execution_id: str, **patch: Any) -> bool:
        """Patch a non-terminal execution. Terminal records are immutable."""
        if not patch:
            return False
        sets, values = _assignments(patch, _EXECUTION_COLUMNS)
        count = await self.db.execute(
            f"UPDATE executions SET {', '.join(sets)}, updated_at = ? "
            f"WHERE execution_id = ? AND status NOT IN ('completed', 'failed', 'cancelled')",
            (*values, self._clock(), execution_id),
        )
        self.invalidate(execution_id)
        return count > 0

    async def transition(
        self,
        execution_id: str,
        from_statuses: Iterable[str],
        to: str,
        via: str | None = None,
        **patch: Any,
    ) -> bool:
        """Compare-and-set status change. Returns False when the current status did not match.

        ``via`` walks through an intermediate status in the same update, e.g.
        a pending execution that can never start goes pending -> running -> failed.
        """
        sources = tuple(from_statuses)
        for source in sources:
            path = (source, via, to) if via else (source, to)
            for current, target in zip(path, path[1:]):
                if not can_transition(current, target):
                    raise ValueError(f"Illegal execution transition {current} -> {target}")

        now = self._clock()
        sets, values = _assignments(patch, _EXECUTION_COLUMNS)
        if "running" in (to, via) and "started_at" not in patch:
            sets.append("started_at = COALESCE(started_at, ?)")
            values.append(now)
        if to in TERMINAL_STATUSES and "completed_at" not in patch:
            sets.append("completed_at = ?")
            values.append(now)
        placeholders = ", ".join("?" for _ in sources)
        count = await self.db.execute(
            f"UPDATE executions SET status = ?, updated_at = ?{''.join(', ' + s for s in sets)} "
            f"WHERE execution_id = ? AND status IN ({placeholders})",
            (to, now, *values, execution_id, *sources),
        )
        self.invalidate(execution_id)
        if count:
            logger.info(f"Execution {execution_id} -> {to}")
        return count > 0

    async def accumulate(self, execution_id: str, cost_usd: float = 0.0, time_ms: int = 0) -> bool:
        """Add cost and time to a running execution. Totals never decrease."""
        count = await self.db.execute(
            """UPDATE executions
               SET total_cost_usd = total_cost_usd + ?, total_time_ms = total_time_ms + ?, updated_at = ?
               WHERE execution_id = ? AND status = 'running'""",
            (max(0.0, cost_usd), max(0, int(time_ms)), self._clock(), execution_id),
        )
        self.invalidate(execution_id)
        return count > 0

    async def list_executions(
        self,
        statuses: Iterable[str] | None = None,
        client_id: str | None = None,
        limit: int = 100,
    ) -> list[Execution]:
        clauses, params = [], []
        if statuses:
            statuses = list(statuses)
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        if client_id:
            clauses.append("client_id = ?")
            params.append(client_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self.db.fetchall(
            f"SELECT * FROM executions {where} ORDER BY created_at ASC LIMIT ?", (*params, limit)
        )
        return [_execution(r) for r in rows]

    # -- stages ----------------------------------------------------------------

    async def create_stages(self, execution_id: str, plan: ExecutionPlan) -> list[StageExecution]:
        """Materialise one stage row per planned stage. Existing rows are kept."""
        now = self._clock()
        for planned in plan.stages:
            await self.db.execute(
                """INSERT OR IGNORE INTO stage_executions
                       (stage_id, execution_id, worker_name, stage_order, tier, action, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, 'pending', ?)""",
                (
                    f"stage_{generate_id()}", execution_id, planned.worker_name, planned.stage_order,
                    planned.tier, planned.stage.action, now,
                ),
            )
        return await self.get_stage_executions(execution_id)

    async def get_stage_executions(self, execution_id: str) -> list[StageExecution]:
        rows = await self.db.fetchall(
            "SELECT * FROM stage_executions WHERE execution_id = ? ORDER BY stage_order", (execution_id,)
        )
        return [_stage(r) for r in rows]

    async def get_stage(self, stage_id: str) -> StageExecution:
        row = await self.db.fetchone("SELECT * FROM stage_executions WHERE stage_id = ?", (stage_id,))
        if row is None:
            raise NotFoundError(f"Stage {stage_id} not found", stage_id=stage_id)
        return _stage(row)

    async def transition_stage(self, stage_id: str, from_statuses: Iterable[str], to: str, **patch: Any) -> bool:
        sources = tuple(from_statuses)
        now = self._clock()
        sets, values = _assignments(patch, _STAGE_COLUMNS)
        if to == "running" and "started_at" not in patch:
            sets.append("started_at = ?")
            values.append(now)
        if to in ("completed", "failed", "skipped") and "completed_at" not in patch:
            sets.append("completed_at = ?")
            values.append(now)
        placeholders = ", ".join("?" for _ in sources)
        count = await self.db.execute(
            f"UPDATE stage_executions SET status = ?{''.join(', ' + s for s in sets)} "
            f"WHERE stage_id = ? AND status IN ({placeholders})",
            (to, *values, stage_id, *sources),
        )
        return count > 0

    async def update_stage(self, stage_id: str, **patch: Any) -> bool:
        if not patch:
            return False
        sets, values = _assignments(patch, _STAGE_COLUMNS)
        count = await self.db.execute(
            f"UPDATE stage_executions SET {', '.join(sets)} WHERE stage_id = ?", (*values, stage_id)
        )
        return count > 0

    async def skip_open_stages(self, execution_id: str, reason: str | None = None) -> int:
        """Move every pending or running stage to skipped."""
        count = await self.db.execute(
            """UPDATE stage_executions SET status = 'skipped', completed_at = ?, error_message = COALESCE(?, error_message)
               WHERE execution_id = ? AND status IN ('pending', 'running')""",
            (self._clock(), reason, execution_id),
        )
        self.invalidate(execution_id)
        return count

    async def reset_interrupted_stages(self, execution_id: str) -> int:
        """Stages caught mid-dispatch by a restart go back to pending."""
        return await self.db.execute(
            "UPDATE stage_executions SET status = 'pending', started_at = NULL "
            "WHERE execution_id = ? AND status = 'running'",
            (execution_id,),
        )

    # -- checkpoints -------------------------------------------------------------

    async def write_checkpoint(self, execution_id: str, data: dict[str, Any]):
        now = self._clock()
        data = {**data, "checkpointed_at": now}
        await self.db.insert(
            "INSERT INTO checkpoints (execution_id, tier, data, created_at) VALUES (?, ?, ?, ?)",
            (execution_id, data.get("tier", 0), json.dumps(data, default=str), now),
        )
        await self.db.execute(
            "UPDATE executions SET checkpoint_data = ?, updated_at = ? WHERE execution_id = ? AND status = 'running'",
            (json.dumps(data, default=str), now, execution_id),
        )
        self.invalidate(execution_id)

    async def latest_checkpoint(self, execution_id: str) -> dict[str, Any] | None:
        row = await self.db.fetchone(
            "SELECT data FROM checkpoints WHERE execution_id = ? ORDER BY id DESC LIMIT 1", (execution_id,)
        )
        return json.loads(row["data"]) if row else None

    # -- events ------------------------------------------------------------------

    async def record_event(self, execution_id: str, type: str, **data: Any) -> Event:
        event = Event(type=type, execution_id=execution_id, ts=self._clock(), data=data)
        await self.db.insert(
            "INSERT INTO execution_events (execution_id, event_type, data, created_at) VALUES (?, ?, ?, ?)",
            (execution_id, type, json.dumps(data, default=str), event.ts),
        )
        if self.event_bus:
            self.event_bus.emit(event)
        return event

    async def recent_events(self, execution_id: str, limit: int = 50) -> list[dict]:
        rows = await self.db.fetchall(
            """SELECT event_type, data, created_at FROM execution_events
               WHERE execution_id = ? ORDER BY id DESC LIMIT ?""",
            (execution_id, limit),
        )
        return [
            {"type": r["event_type"], "execution_id": execution_id, "ts": r["created_at"], "data": json.loads(r["data"])}
            for r in reversed(rows)
        ]

    # -- costs ---------------------------------------------------------------------

    async def record_cost(self, record: UsageRecord):
        await self.db.insert(
            """INSERT INTO cost_breakdown
                   (execution_id, stage_id, resource_type, resource_name, quantity, unit, cost_usd, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.execution_id, record.stage_id, record.resource_type, record.resource_name,
                record.quantity, record.unit, record.cost_usd, record.ts,
            ),
        )

    async def cost_breakdown(self, execution_id: str) -> list[dict]:
        return await self.db.fetchall(
            """SELECT resource_type, resource_name, unit, SUM(quantity) AS quantity, SUM(cost_usd) AS cost_usd
               FROM cost_breakdown WHERE execution_id = ?
               GROUP BY resource_type, resource_name, unit ORDER BY resource_name""",
            (execution_id,),
        )

    async def list_usage(self, since: float) -> list[UsageRecord]:
        rows = await self.db.fetchall("SELECT * FROM cost_breakdown WHERE created_at >= ?", (since,))
        return [
            UsageRecord(
                execution_id=r["execution_id"],
                resource_name=r["resource_name"],
                quantity=r["quantity"],
                cost_usd=r["cost_usd"],
                resource_type=r["resource_type"],
                unit=r["unit"],
                stage_id=r["stage_id"],
                ts=r["created_at"],
            )
            for r in rows
        ]

    # -- metrics -------------------------------------------------------------------

    async def execution_metrics(self, since: float) -> list[dict]:
        """Per-template outcome counts and averages for executions created since ``since``."""
        rows = await self.db.fetchall(
            """SELECT template_name,
                      COUNT(*) AS total,
                      SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                      SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                      SUM(CASE WHEN status = 'cancelled' THEN 1 ELSE 0 END) AS cancelled,
                      SUM(CASE WHEN status = 'running' THEN 1 ELSE 0 END) AS running,
                      SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending,
                      AVG(CASE WHEN status = 'completed' THEN total_cost_usd END) AS avg_cost_usd,
                      AVG(CASE WHEN status = 'completed' THEN total_time_ms END) AS avg_time_ms,
                      MAX(total_cost_usd) AS max_cost_usd
               FROM executions WHERE created_at >= ?
               GROUP BY template_name ORDER BY template_name""",
            (since,),
        )
        for row in rows:
            finished = row["completed"] + row["failed"]
            row["success_rate"] = round(row["completed"] / finished, 4) if finished else None
        return rows

    async def stage_metrics(self, since: float) -> list[dict]:
        return await self.db.fetchall(
            """SELECT worker_name,
                      COUNT(*) AS stages,
                      SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed,
                      AVG(time_ms) AS avg_time_ms,
                      SUM(cost_usd) AS total_cost_usd
               FROM stage_executions WHERE started_at >= ?
               GROUP BY worker_name ORDER BY worker_name""",
            (since,),
        )

    # -- deliverables -----------------------------------------------------------------

    async def add_deliverable(self, execution_id: str, stage_id: str | None, name: str, data_ref: dict) -> str:
        deliverable_id = f"deliv_{generate_id()}"
        await self.db.insert(
            """INSERT INTO deliverables (deliverable_id, execution_id, stage_id, name, data_ref, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (deliverable_id, execution_id, stage_id, name, json.dumps(data_ref, default=str), self._clock()),
        )
        return deliverable_id

    async def deliverables(self, execution_id: str) -> list[dict]:
        rows = await self.db.fetchall(
            "SELECT * FROM deliverables WHERE execution_id = ? ORDER BY created_at", (execution_id,)
        )
        for r in rows:
            r["data_ref"] = json.loads(r["data_ref"])
        return rows

    # -- handshake packets --------------------------------------------------------------

    async def record_packet(self, packet_id: str, execution_id: str, stage_id: str, worker_name: str, packet: dict, status: str = "sent"):
        now = self._clock()
        await self.db.execute(
            """INSERT OR REPLACE INTO handshake_packets
                   (packet_id, execution_id, stage_id, worker_name, packet, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (packet_id, execution_id, stage_id, worker_name, json.dumps(packet, default=str), status, now, now),
        )

    async def update_packet_status(self, packet_id: str, status: str) -> bool:
        count = await self.db.execute(
            "UPDATE handshake_packets SET status = ?, updated_at = ? WHERE packet_id = ?",
            (status, self._clock(), packet_id),
        )
        return count > 0

    async def get_packet(self, packet_id: str) -> dict | None:
        row = await self.db.fetchone("SELECT * FROM handshake_packets WHERE packet_id = ?", (packet_id,))
        if row:
            row["packet"] = json.loads(row["packet"])
        return row

    # -- queue rows -------------------------------------------------------------------

    async def save_queue_entry(self, entry: QueueEntry):
        await self.db.execute(
            """INSERT INTO execution_queue (execution_id, priority, submitted_at, status, blocked_reason, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(execution_id) DO UPDATE SET
                   status = excluded.status, blocked_reason = excluded.blocked_reason, updated_at = excluded.updated_at""",
            (entry.execution_id, entry.priority, entry.submitted_at, entry.status, entry.blocked_reason, self._clock()),
        )

    async def remove_queue_entry(self, execution_id: str):
        await self.db.execute("DELETE FROM execution_queue WHERE execution_id = ?", (execution_id,))

    async def queue_rows(self) -> list[dict]:
        return await self.db.fetchall("SELECT * FROM execution_queue ORDER BY submitted_at")

    # -- progress ------------------------------------------------------------------------

    async def progress(self, execution_id: str) -> dict:
        key = f"progress:{execution_id}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        snapshot = await self._compute_progress(execution_id)
        self.cache.set(key, snapshot, ttl=self.progress_ttl)
        return snapshot

    async def refresh_progress(self, execution_id: str) -> dict:
        self.cache.delete(f"progress:{execution_id}")
        return await self.progress(execution_id)

    def invalidate(self, execution_id: str):
        self.cache.delete(f"progress:{execution_id}")
        self.cache.delete(f"execution:{execution_id}")

    async def _compute_progress(self, execution_id: str) -> dict:
        execution = await self.get_execution(execution_id)
        stages = await self.get_stage_executions(execution_id)
        total = len(stages)
        completed = sum(1 for s in stages if s.status == "completed")
        done = sum(1 for s in stages if s.is_terminal)

        current = next((s for s in stages if s.status == "running"), None)
        if current is None and not execution.is_terminal:
            current = next((s for s in stages if s.status == "pending"), None)

        if execution.status == "completed":
            percent = 100.0
        else:
            percent = round(done / total * 100, 1) if total else 0.0

        if execution.is_terminal:
            remaining = 0
        else:
            fraction_left = 1 - (done / total) if total else 1
            remaining = int(execution.estimated_time_ms * fraction_left)

        return {
            "execution_id": execution_id,
            "status": execution.status,
            "progress_percent": percent,
            "stages_total": total,
            "stages_completed": completed,
            "stages_skipped": sum(1 for s in stages if s.status == "skipped"),
            "current_stage": (
                {"stage_order": current.stage_order, "worker_name": current.worker_name, "status": current.status}
                if current else None
            ),
            "message": _progress_message(execution, current),
            "estimated_remaining_ms": remaining,
            "total_cost_usd": execution.total_cost_usd,
            "total_time_ms": execution.total_time_ms,
            "updated_at": execution.updated_at,
        }


def _progress_message(execution: Execution, current: StageExecution | None) -> str:
    if execution.status == "pending":
        return "Queued, waiting for resources"
    if execution.status == "running" and current:
        return f"Running stage {current.stage_order} ({current.worker_name})"
    if execution.status == "running":
        return "Running"
    if execution.status == "completed":
        return "Completed"
    if execution.status == "cancelled":
        return "Cancelled"
    return f"Failed: {execution.error_message or 'unknown error'}"
