"""Execution Orchestrator: the top-level control loop.

Composes the ledgers, queue and coordinator. For every admitted execution
it walks the plan tier by tier: reserve the tier's resources, evaluate skip
conditions, dispatch the tier's stages concurrently, checkpoint, refresh
progress. It finalizes exactly once and always releases what it holds.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

import httpx

from aifactory.cache import TTLCache
from aifactory.config import Settings
from aifactory.coordinator import StageOutcome, WorkerCoordinator
from aifactory.data_refs import DataReferenceStore
from aifactory.errors import (
    ConflictError,
    OrchestratorError,
    PipelineAborted,
    ResourceExhaustedError,
    TemplateNotFound,
    ValidationError,
    WorkerUnavailableError,
)
from aifactory.events import EventBus
from aifactory.handshake import StageSummary
from aifactory.ledger import ExecutionLedger
from aifactory.models import (
    PRIORITIES,
    AllocationSet,
    Execution,
    ExecutionPlan,
    PlannedStage,
    QueueEntry,
    ResourceRequirement,
    StageExecution,
    generate_id,
)
from aifactory.queue import QueueManager
from aifactory.resources import ResourceLedger, aggregate, period_bounds
from aifactory.store import Database
from aifactory.templates import Template, TemplateRegistry, TemplateResolver

logger = logging.getLogger(__name__)


class ExecutionOrchestrator:
    """Owns every subsystem for one orchestrator process."""

    def __init__(
        self,
        settings: Settings | None = None,
        templates: TemplateRegistry | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or Settings()
        s = self.settings
        self._clock = clock

        self.cache = TTLCache(default_ttl=s.progress_ttl, clock=clock)
        self.event_bus = EventBus(log_file=s.event_log)
        self.db = Database(s.database_path)
        self.ledger = ExecutionLedger(self.db, self.cache, self.event_bus, s.progress_ttl, clock)
        self.resources = ResourceLedger(s.resource_definitions(), s.allocation_ttl, clock, self.event_bus)
        self.templates = templates if templates is not None else TemplateRegistry(s.templates_dir)
        self.resolver = TemplateResolver(self.templates)
        self.data_refs = DataReferenceStore(
            self.cache,
            blob_dir=s.blob_dir,
            inline_threshold=s.inline_threshold_bytes,
            ttl_seconds=s.data_ref_ttl,
            clock=clock,
        )
        self._owns_http = http_client is None
        self.http = http_client or httpx.AsyncClient()
        self.coordinator = WorkerCoordinator(
            s.workers, self.ledger, self.resources, self.data_refs, self.cache, self.http,
            orchestrator_id=s.orchestrator_id, handshake_ttl=s.handshake_ttl, sleep=sleep, clock=clock,
        )
        self.queue = QueueManager(
            self.ledger,
            self.resources,
            requirements_for=self._admission_requirements,
            on_admit=self._on_admit,
            on_reject=self._on_reject,
            max_active=s.max_concurrent_executions,
            tick_interval=s.queue_tick_seconds,
            clock=clock,
        )

        self._tasks: dict[str, asyncio.Task] = {}
        self._held: dict[str, AllocationSet] = {}
        self._plans: dict[str, ExecutionPlan] = {}
        self._submit_lock = asyncio.Lock()
        self.started = False

    # -- lifecycle -------------------------------------------------------------

    async def start(self):
        await self.db.connect()
        await self.recover()
        self.queue.start()
        self.started = True
        logger.info(f"Orchestrator {self.settings.orchestrator_id} started with {len(self.settings.workers)} workers")

    async def stop(self):
        await self.queue.stop()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._owns_http:
            await self.http.aclose()
        await self.db.close()
        self.started = False
        logger.info("Orchestrator stopped")

    async def recover(self):
        """Pick up work left behind by a previous process."""
        since = self._earliest_period_start()
        if since is not None:
            self.resources.restore_usage(await self.ledger.list_usage(since))

        unfinished = await self.ledger.list_executions(("pending", "running"), limit=100000)
        for execution in unfinished:
            if execution.status == "pending":
                await self.queue.enqueue(execution.execution_id, execution.priority, submitted_at=execution.created_at)
                continue
            interrupted = await self.ledger.reset_interrupted_stages(execution.execution_id)
            checkpoint = execution.checkpoint_data or await self.ledger.latest_checkpoint(execution.execution_id)
            await self.ledger.record_event(
                execution.execution_id, "execution.resumed",
                interrupted_stages=interrupted, checkpoint_tier=checkpoint.get("tier") if checkpoint else None,
            )
            await self.queue.enqueue(
                execution.execution_id, execution.priority, resume=True, submitted_at=execution.created_at
            )
        if unfinished:
            logger.info(f"Recovered {len(unfinished)} unfinished executions")

    def _earliest_period_start(self) -> float | None:
        now = self._clock()
        starts = [
            period_bounds(d.period, now)[0]
            for d in self.settings.resource_definitions()
            if d.period
        ]
        return min(starts) if starts else None

    # -- submission ----------------------------------------------------------------

    async def submit(
        self,
        client_id: str,
        template_name: str,
        parameters: dict[str, Any] | None = None,
        priority: str = "normal",
        request_id: str | None = None,
    ) -> dict:
        if priority not in PRIORITIES:
            raise ValidationError(f"Unknown priority: {priority}", priority=priority)
        try:
            template = self.templates.get(template_name)
        except TemplateNotFound as e:
            raise ValidationError(f"Unknown template: {template_name}", template_name=template_name) from e
        plan = self.resolver.plan(template)
        params = template.apply_parameters(parameters)
        self._check_runnable(template, plan)

        async with self._submit_lock:
            if request_id:
                existing = await self.ledger.find_by_request(client_id, request_id)
                if existing:
                    logger.info(f"Duplicate request {request_id} from {client_id} -> {existing.execution_id}")
                    return self._submission(existing, duplicate=True)

            execution = Execution(
                execution_id=f"exec_{generate_id()}",
                client_id=client_id,
                template_name=template_name,
                parameters=params,
                request_id=request_id,
                priority=priority,
                estimated_cost_usd=plan.estimated_total_cost_usd,
                estimated_time_ms=plan.estimated_total_time_ms,
            )
            await self._create(execution, plan)

        await self.ledger.record_event(
            execution.execution_id, "execution.created",
            template_name=template_name, priority=priority, client_id=client_id,
        )
        await self.queue.enqueue(execution.execution_id, priority, submitted_at=execution.created_at)
        return self._submission(execution)

    async def _create(self, execution: Execution, plan: ExecutionPlan):
        await self.ledger.create_execution(execution)
        await self.ledger.create_stages(execution.execution_id, plan)
        self._plans[execution.execution_id] = plan

    def _check_runnable(self, template: Template, plan: ExecutionPlan):
        missing_workers = sorted({s.worker_name for s in plan.stages} - set(self.settings.workers))
        if missing_workers:
            raise ValidationError(
                f"Template {template.name} uses unregistered workers: {', '.join(missing_workers)}",
                workers=missing_workers,
            )
        missing = self.resources.unknown(template.requirement_names())
        if missing:
            raise ValidationError(f"Template {template.name} needs unknown resources: {', '.join(missing)}", resources=missing)

    def _submission(self, execution: Execution, duplicate: bool = False) -> dict:
        status = "queued" if execution.status == "pending" else execution.status
        return {
            "execution_id": execution.execution_id,
            "request_id": execution.request_id,
            "status": status,
            "priority": execution.priority,
            "duplicate": duplicate,
            "estimated_cost_usd": execution.estimated_cost_usd,
            "estimated_time_ms": execution.estimated_time_ms,
            "estimated_completion": execution.created_at + execution.estimated_time_ms / 1000,
            "queue_position": self.queue.position(execution.execution_id),
            "progress_url": f"/progress/{execution.execution_id}",
        }

    async def estimate(self, template_name: str, parameters: dict[str, Any] | None = None) -> dict:
        template = self.templates.get(template_name)
        plan = self.resolver.plan(template)
        if parameters is not None:
            template.apply_parameters(parameters)

        warnings = []
        missing_workers = sorted({s.worker_name for s in plan.stages} - set(self.settings.workers))
        if missing_workers:
            warnings.append(f"Unregistered workers: {', '.join(missing_workers)}")
        requirements = [r for tier in plan.tiers() for r in self._tier_requirements(tier)]
        availability = self.resources.check_availability(requirements)
        for row in availability["resources"]:
            if row["status"] != "available":
                warnings.append(f"Resource {row['resource_name']} is {row['status']}")

        return {
            "template_name": template_name,
            "plan": plan.to_dict(),
            "estimated_cost_usd": plan.estimated_total_cost_usd,
            "estimated_time_ms": plan.estimated_total_time_ms,
            "resources": availability,
            "feasible": not missing_workers and availability["status"] != "unavailable",
            "warnings": warnings,
        }

    # -- control --------------------------------------------------------------------

    async def cancel(self, execution_id: str, reason: str = "Cancelled by request") -> dict:
        execution = await self.ledger.get_execution(execution_id)
        if execution.is_terminal:
            raise ConflictError(f"Execution {execution_id} is already {execution.status}", status=execution.status)
        if not await self.ledger.transition(execution_id, ("pending", "running"), "cancelled", error_message=reason):
            current = await self.ledger.get_execution(execution_id)
            raise ConflictError(f"Execution {execution_id} is already {current.status}", status=current.status)

        skipped = await self.ledger.skip_open_stages(execution_id, "execution cancelled")
        await self.queue.cancel(execution_id)
        await self.resources.release_execution(execution_id)
        self.ledger.invalidate(execution_id)
        for key in self.cache.keys("handshake:"):
            packet = self.cache.get(key)
            if packet and packet.get("execution_id") == execution_id:
                self.cache.delete(key)
        await self.ledger.record_event(
            execution_id, "execution.cancelled", previous_status=execution.status, stages_skipped=skipped
        )
        return {"execution_id": execution_id, "status": "cancelled", "previous_status": execution.status}

    async def retry(self, execution_id: str) -> dict:
        """Start a new execution from a failed one. The original is left untouched."""
        original = await self.ledger.get_execution(execution_id)
        if original.status != "failed":
            raise ConflictError(f"Only failed executions can be retried ({execution_id} is {original.status})")

        # The failed attempt must hold nothing before its retry can be admitted
        await self.resources.release_execution(execution_id)
        if self.resources.allocations_for(execution_id):
            raise ConflictError(f"Execution {execution_id} still holds resources")

        template = self.templates.get(original.template_name)
        plan = self.resolver.plan(template)
        self._check_runnable(template, plan)
        execution = Execution(
            execution_id=f"exec_{generate_id()}",
            client_id=original.client_id,
            template_name=original.template_name,
            parameters=original.parameters,
            request_id=original.request_id,
            priority=original.priority,
            retry_count=original.retry_count + 1,
            retry_of=original.execution_id,
            estimated_cost_usd=plan.estimated_total_cost_usd,
            estimated_time_ms=plan.estimated_total_time_ms,
        )
        await self._create(execution, plan)
        await self.ledger.record_event(execution_id, "execution.retried", new_execution_id=execution.execution_id)
        await self.ledger.record_event(
            execution.execution_id, "execution.created",
            template_name=execution.template_name, priority=execution.priority, retry_of=execution_id,
        )
        await self.queue.enqueue(execution.execution_id, execution.priority, submitted_at=execution.created_at)
        response = self._submission(execution)
        response.update({"retry_of": execution_id, "retry_count": execution.retry_count})
        return response

    async def record_usage(
        self,
        execution_id: str,
        resource_name: str,
        quantity: float,
        cost_usd: float | None = None,
        stage_id: str | None = None,
    ) -> dict:
        await self.ledger.get_execution(execution_id)
        record = self.resources.record_usage(execution_id, resource_name, quantity, cost_usd, stage_id=stage_id)
        await self.ledger.record_cost(record)
        await self.ledger.accumulate(execution_id, cost_usd=record.cost_usd)
        return {
            "execution_id": execution_id,
            "resource_name": resource_name,
            "quantity": record.quantity,
            "cost_usd": record.cost_usd,
        }

    # -- queries --------------------------------------------------------------------------

    async def get_progress(self, execution_id: str) -> dict:
        snapshot = dict(await self.ledger.progress(execution_id))
        snapshot["queue_position"] = self.queue.position(execution_id)
        return snapshot

    async def get_execution_detail(self, execution_id: str) -> dict:
        execution = await self.ledger.get_execution(execution_id)
        stages = await self.ledger.get_stage_executions(execution_id)
        return {
            "execution": execution.to_dict(),
            "stages": [s.to_dict() for s in stages],
            "deliverables": await self.ledger.deliverables(execution_id),
            "cost_breakdown": await self.ledger.cost_breakdown(execution_id),
            "recent_events": await self.ledger.recent_events(execution_id),
            "queue_position": self.queue.position(execution_id),
        }

    def queue_view(self) -> dict:
        return {
            "depth": self.queue.depth,
            "active": sorted(self.queue.active),
            "max_active": self.queue.max_active,
            "entries": self.queue.snapshot(),
        }

    async def metrics(self, window_seconds: float = 86400) -> dict:
        """Execution, queue and worker statistics over the trailing window."""
        now = self._clock()
        since = now - window_seconds
        templates = await self.ledger.execution_metrics(since)
        completed = sum(t["completed"] for t in templates)
        failed = sum(t["failed"] for t in templates)
        entries = self.queue.snapshot()
        return {
            "window_seconds": window_seconds,
            "executions": {
                "total": sum(t["total"] for t in templates),
                "completed": completed,
                "failed": failed,
                "cancelled": sum(t["cancelled"] for t in templates),
                "success_rate": round(completed / (completed + failed), 4) if completed + failed else None,
            },
            "templates": templates,
            "queue": {
                "depth": len(entries),
                "active": len(self.queue.active),
                "blocked": sum(1 for e in entries if e["status"] == "blocked"),
                "high_priority": sum(1 for e in entries if e["priority"] in ("critical", "high")),
            },
            "workers": await self.ledger.stage_metrics(since),
            "timestamp": now,
        }

    def workers_view(self) -> list[dict]:
        metrics = self.coordinator.metrics()
        rows = []
        for name, worker in sorted(self.settings.workers.items()):
            row = worker.to_dict()
            row["slots_held"] = self.resources.held(worker.slot_resource)
            row["metrics"] = metrics.get(name, {})
            rows.append(row)
        return rows

    async def wait_for_terminal(self, execution_id: str, timeout: float = 10.0) -> Execution:
        """Block until the execution reaches a terminal status."""
        q = self.event_bus.subscribe(execution_id)
        try:
            async def _wait() -> Execution:
                while True:
                    execution = await self.ledger.get_execution(execution_id)
                    if execution.is_terminal:
                        return execution
                    try:
                        await asyncio.wait_for(q.get(), timeout=0.1)
                    except asyncio.TimeoutError:
                        pass

            return await asyncio.wait_for(_wait(), timeout=timeout)
        finally:
            self.event_bus.unsubscribe(q)

    # -- admission callbacks ------------------------------------------------------------------

    async def _plan_for(self, execution: Execution) -> ExecutionPlan:
        plan = self._plans.get(execution.execution_id)
        if plan is None:
            plan = self.resolver.resolve(execution.template_name)
            self._plans[execution.execution_id] = plan
        return plan

    async def _admission_requirements(self, entry: QueueEntry) -> list[ResourceRequirement]:
        execution = await self.ledger.get_execution(entry.execution_id)
        plan = await self._plan_for(execution)
        tiers = plan.tiers()
        start = self._start_tier(execution, entry.resume)
        if start > len(tiers):
            return []
        return self._tier_requirements(tiers[start - 1])

    def _start_tier(self, execution: Execution, resume: bool) -> int:
        checkpoint = execution.checkpoint_data if resume else None
        return checkpoint["tier"] + 1 if checkpoint else 1

    def _tier_requirements(self, members: list[PlannedStage]) -> list[ResourceRequirement]:
        requirements: list[ResourceRequirement] = []
        for planned in members:
            requirements.extend(planned.stage.requirements())
            worker = self.settings.workers.get(planned.worker_name)
            if worker:
                requirements.append(ResourceRequirement(worker.slot_resource, 1, "compute", "slots"))
        merged = aggregate(requirements)
        # A tier can never need more slots of one worker than that worker has
        for name, req in merged.items():
            definition = self.resources.definition(name)
            if definition and name.startswith("worker_slots:") and not definition.unlimited:
                req.quantity = min(req.quantity, definition.limit)
        return list(merged.values())

    async def _on_reject(self, entry: QueueEntry, error: OrchestratorError):
        if entry.resume:
            failed = await self.ledger.transition(entry.execution_id, ("running",), "failed", error_message=error.message)
        else:
            failed = await self.ledger.transition(
                entry.execution_id, ("pending",), "failed", via="running", error_message=error.message
            )
        if failed:
            await self.ledger.skip_open_stages(entry.execution_id, "execution failed")
            await self.ledger.record_event(entry.execution_id, "execution.failed", error=error.message)

    async def _on_admit(self, entry: QueueEntry, allocation: AllocationSet):
        execution_id = entry.execution_id
        if entry.resume:
            execution = await self.ledger.get_execution(execution_id)
            admitted = execution.status == "running"
        else:
            admitted = await self.ledger.transition(execution_id, ("pending",), "running")
        if not admitted:
            logger.info(f"Execution {execution_id} left pending before admission, releasing")
            await self.resources.release(allocation)
            self.queue.finished(execution_id)
            return

        self.resources.activate(allocation)
        self._held[execution_id] = allocation
        await self.ledger.record_event(
            execution_id, "execution.admitted",
            priority=entry.priority, resources=allocation.quantity_by_name(), resume=entry.resume,
        )
        if not entry.resume:
            await self.ledger.record_event(execution_id, "execution.started")
        self._tasks[execution_id] = asyncio.create_task(self._run(execution_id))

    # -- execution loop ------------------------------------------------------------------------

    async def _run(self, execution_id: str):
        try:
            execution = await self.ledger.get_execution(execution_id)
            plan = await self._plan_for(execution)
            rows = {s.stage_order: s for s in await self.ledger.get_stage_executions(execution_id)}
            if not rows:
                rows = {s.stage_order: s for s in await self.ledger.create_stages(execution_id, plan)}

            checkpoint = execution.checkpoint_data or await self.ledger.latest_checkpoint(execution_id)
            start_tier = 1
            previous_output: Any = None
            previous_summary: StageSummary | None = None
            next_params: dict[str, dict] = {}
            last_stage_id: str | None = None
            if checkpoint:
                start_tier = checkpoint["tier"] + 1
                if checkpoint.get("output_ref"):
                    previous_output = self.data_refs.resolve(checkpoint["output_ref"])
                if checkpoint.get("summary"):
                    previous_summary = StageSummary.model_validate(checkpoint["summary"])
                next_params = checkpoint.get("next_params", {})
                last_stage_id = checkpoint.get("last_stage_id")
                if checkpoint.get("continue_pipeline") is False:
                    start_tier = plan.tier_count + 1
                logger.info(f"Resuming {execution_id} at tier {start_tier}")

            stopped_early = False
            for tier_index, members in enumerate(plan.tiers(), start=1):
                if tier_index < start_tier:
                    continue
                if await self._cancelled(execution_id):
                    return
                await self._reserve_tier(execution_id, members)

                runnable: list[PlannedStage] = []
                for planned in members:
                    decision = self._skip_decision(planned, previous_summary, previous_output)
                    if decision == "abort":
                        raise PipelineAborted(f"Stage {planned.stage_order} skip condition aborted the pipeline")
                    if decision == "skip":
                        row = rows[planned.stage_order]
                        if await self.ledger.transition_stage(row.stage_id, ("pending",), "skipped", error_message="skip condition matched"):
                            await self.ledger.record_event(
                                execution_id, "stage.skipped", stage_id=row.stage_id,
                                stage_order=planned.stage_order, reason="skip condition matched",
                            )
                        continue
                    runnable.append(planned)

                tier_started = time.monotonic()
                results = await asyncio.gather(
                    *(
                        self._dispatch(execution, rows[p.stage_order], p, plan, previous_output, next_params)
                        for p in runnable
                    ),
                    return_exceptions=True,
                )
                for result in results:
                    if isinstance(result, BaseException):
                        raise result
                outcomes: list[StageOutcome] = list(results)

                if any(o.status == "cancelled" for o in outcomes) or await self._cancelled(execution_id):
                    return
                await self.ledger.accumulate(execution_id, time_ms=int((time.monotonic() - tier_started) * 1000))

                completed = sorted((o for o in outcomes if o.status == "completed"), key=lambda o: o.stage_order)
                if completed:
                    if len(members) == 1:
                        previous_output = completed[0].output
                    else:
                        previous_output = {str(o.stage_order): o.output for o in completed}
                    previous_summary = completed[-1].summary
                    last_stage_id = completed[-1].stage_id
                next_params = {str(o.next.stage_order): o.next.params for o in completed if o.next}
                stopped_early = any(not o.continue_pipeline for o in completed)

                await self._checkpoint(
                    execution_id, tier_index, members, previous_output, previous_summary,
                    next_params, last_stage_id, not stopped_early,
                )
                if stopped_early:
                    break

            if stopped_early:
                skipped = await self.ledger.skip_open_stages(execution_id, "pipeline stopped by worker")
                logger.info(f"Execution {execution_id} stopped early by worker, {skipped} stages skipped")
            await self._finalize(execution_id, "completed", output=previous_output, last_stage_id=last_stage_id)
        except (PipelineAborted, WorkerUnavailableError, ResourceExhaustedError) as e:
            await self._finalize(execution_id, "failed", error=e.message)
        except asyncio.CancelledError:
            logger.info(f"Execution {execution_id} interrupted, will resume on restart")
            raise
        except Exception as e:
            logger.error(f"Execution {execution_id} crashed: {e}", exc_info=True)
            await self._finalize(execution_id, "failed", error=f"Internal error: {e}")
        finally:
            self._held.pop(execution_id, None)
            await self.resources.release_execution(execution_id)
            self.queue.finished(execution_id)
            self._tasks.pop(execution_id, None)
            self._plans.pop(execution_id, None)

    async def _dispatch(
        self,
        execution: Execution,
        row: StageExecution,
        planned: PlannedStage,
        plan: ExecutionPlan,
        previous_output: Any,
        next_params: dict[str, dict],
    ) -> StageOutcome:
        params = {**planned.stage.params, **next_params.get(str(planned.stage_order), {})}
        stage_input = {
            "execution_id": execution.execution_id,
            "template_name": execution.template_name,
            "stage_order": planned.stage_order,
            "parameters": execution.parameters,
            "params": params,
            "previous_output": previous_output,
        }
        return await self.coordinator.dispatch(
            execution,
            row,
            planned,
            stage_input,
            next_stage=plan.next_after(planned.stage_order),
            should_abort=lambda: self._cancelled(execution.execution_id),
        )

    async def _cancelled(self, execution_id: str) -> bool:
        execution = await self.ledger.find_execution(execution_id)
        return execution is None or execution.status != "running"

    @staticmethod
    def _skip_decision(planned: PlannedStage, summary: StageSummary | None, output: Any) -> str:
        if summary is None or not planned.stage.skip_conditions:
            return "run"
        data = summary.model_dump(mode="json")
        data["output"] = output
        for condition in planned.stage.skip_conditions:
            if condition.matches(data):
                return "run" if condition.action == "continue" else condition.action
        return "run"

    async def _reserve_tier(self, execution_id: str, members: list[PlannedStage]):
        """Top up this execution's held resources to what the tier needs."""
        held = self._held.setdefault(execution_id, AllocationSet(execution_id))
        have = held.quantity_by_name()
        shortfall = [
            ResourceRequirement(req.resource_name, req.quantity - have.get(req.resource_name, 0), req.resource_type, req.unit)
            for req in self._tier_requirements(members)
            if req.quantity > have.get(req.resource_name, 0)
        ]
        if not shortfall:
            return
        allocation = await self.resources.allocate_wait(
            execution_id, shortfall, timeout=self.settings.resource_wait_seconds
        )
        self.resources.activate(allocation)
        held.extend(allocation)

    async def _checkpoint(
        self,
        execution_id: str,
        tier: int,
        members: list[PlannedStage],
        output: Any,
        summary: StageSummary | None,
        next_params: dict[str, dict],
        last_stage_id: str | None,
        continue_pipeline: bool,
    ):
        output_ref = self.data_refs.put(output, execution_id, f"tier{tier}", kind="checkpoint", durable=True)
        execution = await self.ledger.get_execution(execution_id)
        held = self._held.get(execution_id)
        await self.ledger.write_checkpoint(execution_id, {
            "tier": tier,
            "stage_orders": [p.stage_order for p in members],
            "output_ref": output_ref.model_dump(mode="json"),
            "summary": summary.model_dump(mode="json") if summary else None,
            "next_params": next_params,
            "last_stage_id": last_stage_id,
            "continue_pipeline": continue_pipeline,
            "total_cost_usd": execution.total_cost_usd,
            "total_time_ms": execution.total_time_ms,
            "allocation_ids": held.ids if held else [],
        })
        await self.ledger.refresh_progress(execution_id)

    async def _finalize(
        self,
        execution_id: str,
        status: str,
        error: str | None = None,
        output: Any = None,
        last_stage_id: str | None = None,
    ):
        patch = {"error_message": error} if error else {}
        if not await self.ledger.transition(execution_id, ("running",), status, **patch):
            logger.info(f"Execution {execution_id} already left running, not marking {status}")
            return

        execution = await self.ledger.get_execution(execution_id)
        if status == "completed":
            ref = self.data_refs.put(output, execution_id, "final", kind="deliverable", durable=True)
            await self.ledger.add_deliverable(
                execution_id, last_stage_id, f"{execution.template_name}-result", ref.model_dump(mode="json")
            )
            await self.ledger.record_event(
                execution_id, "execution.completed",
                total_cost_usd=execution.total_cost_usd, total_time_ms=execution.total_time_ms,
            )
        else:
            await self.ledger.skip_open_stages(execution_id, "execution failed")
            await self.ledger.record_event(execution_id, "execution.failed", error=error)
            logger.warning(f"Execution {execution_id} failed: {error}")
        await self.ledger.refresh_progress(execution_id)
