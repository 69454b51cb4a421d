"""Worker Coordinator: the stage handshake protocol.

For one stage: wrap its input in a data reference, build the packet, POST it
to the worker's process endpoint, validate the response, and retry per the
stage's retry policy. Stage status changes are compare-and-set, so a result
that arrives after the execution was cancelled is discarded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx
from pydantic import ValidationError as PydanticValidationError

from aifactory.errors import NotFoundError, WorkerUnavailableError
from aifactory.handshake import (
    ControlBlock,
    HandshakeAcknowledgment,
    HandshakePacket,
    NextStageInstructions,
    StageSummary,
    WorkerResponse,
)
from aifactory.models import Execution, PlannedStage, StageExecution

if TYPE_CHECKING:
    from aifactory.cache import TTLCache
    from aifactory.config import WorkerDescriptor
    from aifactory.data_refs import DataReferenceStore
    from aifactory.ledger import ExecutionLedger
    from aifactory.resources import ResourceLedger

logger = logging.getLogger(__name__)


@dataclass
class StageOutcome:
    stage_id: str
    stage_order: int
    status: str  # completed | failed | skipped | cancelled
    output: Any = None
    output_ref: dict | None = None
    summary: StageSummary | None = None
    next: NextStageInstructions | None = None
    cost_usd: float = 0.0
    time_ms: int = 0
    attempts: int = 0
    error: str | None = None

    @property
    def continue_pipeline(self) -> bool:
        return self.summary.continue_pipeline if self.summary else True


@dataclass
class WorkerMetrics:
    dispatches: int = 0
    successes: int = 0
    failures: int = 0
    total_latency_ms: float = 0.0
    total_cost_usd: float = 0.0
    last_error: str | None = None
    last_seen: float | None = None

    def to_dict(self) -> dict:
        return {
            "dispatches": self.dispatches,
            "successes": self.successes,
            "failures": self.failures,
            "average_latency_ms": round(self.total_latency_ms / self.dispatches, 1) if self.dispatches else 0.0,
            "total_cost_usd": round(self.total_cost_usd, 6),
            "last_error": self.last_error,
            "last_seen": self.last_seen,
        }


class _AttemptFailed(Exception):
    pass


class WorkerCoordinator:
    def __init__(
        self,
        workers: dict[str, "WorkerDescriptor"],
        ledger: "ExecutionLedger",
        resources: "ResourceLedger",
        data_refs: "DataReferenceStore",
        cache: "TTLCache",
        http_client: httpx.AsyncClient,
        orchestrator_id: str = "aifactory-orchestrator",
        handshake_ttl: float = 300,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.workers = workers
        self._ledger = ledger
        self._resources = resources
        self._data_refs = data_refs
        self._cache = cache
        self._http = http_client
        self.orchestrator_id = orchestrator_id
        self.handshake_ttl = handshake_ttl
        self._sleep = sleep
        self._clock = clock
        self._metrics: dict[str, WorkerMetrics] = {name: WorkerMetrics() for name in workers}

    async def dispatch(
        self,
        execution: Execution,
        stage: StageExecution,
        planned: PlannedStage,
        stage_input: Any,
        next_stage: PlannedStage | None = None,
        should_abort: Callable[[], Awaitable[bool]] | None = None,
    ) -> StageOutcome:
        """Run one stage to a terminal outcome.

        Raises WorkerUnavailableError when a required stage exhausts its
        retries; the stage row is already marked failed by then.
        """
        current = await self._ledger.get_stage(stage.stage_id)
        if current.is_terminal:
            # Never re-send a stage that already finished
            return self._stored_outcome(current)

        worker = self.workers.get(planned.worker_name)
        retry = planned.stage.retry_config
        if worker is None:
            await self._ledger.transition_stage(stage.stage_id, ("pending", "running"), "running")
            return await self._exhausted(execution, stage, planned, f"Unknown worker {planned.worker_name}", 0)

        if not await self._ledger.transition_stage(stage.stage_id, ("pending",), "running"):
            return StageOutcome(stage.stage_id, stage.stage_order, "cancelled", error="stage no longer pending")
        await self._ledger.record_event(
            execution.execution_id, "stage.started", stage_id=stage.stage_id,
            stage_order=stage.stage_order, worker_name=worker.name,
        )

        input_ref = self._data_refs.put(stage_input, execution.execution_id, stage.stage_id, kind="input")
        await self._ledger.update_stage(stage.stage_id, input_reference=input_ref.model_dump(mode="json"))

        packet = HandshakePacket(
            execution_id=execution.execution_id,
            stage_id=stage.stage_id,
            stage_order=stage.stage_order,
            worker_name=worker.name,
            action=planned.stage.action,
            control=ControlBlock(
                priority=execution.priority,
                timeout_ms=planned.stage.timeout_ms,
                max_retries=retry.max_attempts,
            ),
            data_ref=input_ref,
            next=self._next_instructions(next_stage),
        )

        metrics = self._metrics.setdefault(worker.name, WorkerMetrics())
        last_error = ""
        for attempt in range(1, retry.max_attempts + 1):
            if should_abort and await should_abort():
                return StageOutcome(stage.stage_id, stage.stage_order, "cancelled", attempts=attempt - 1)

            packet.control.retry_count = attempt - 1
            packet.timestamp = self._clock()
            body = packet.model_dump(mode="json")
            self._cache.set(f"handshake:{packet.packet_id}", body, ttl=self.handshake_ttl)
            await self._ledger.record_packet(packet.packet_id, execution.execution_id, stage.stage_id, worker.name, body)

            started = time.monotonic()
            metrics.dispatches += 1
            metrics.last_seen = self._clock()
            try:
                response = await self._post(worker, packet, body)
            except _AttemptFailed as e:
                elapsed = (time.monotonic() - started) * 1000
                metrics.failures += 1
                metrics.total_latency_ms += elapsed
                metrics.last_error = last_error = str(e)
                await self._ledger.update_packet_status(packet.packet_id, "failed")
                await self._ledger.update_stage(stage.stage_id, retry_count=attempt, error_message=last_error)
                logger.warning(
                    f"Stage {stage.stage_order} ({worker.name}) attempt {attempt}/{retry.max_attempts} "
                    f"failed for {execution.execution_id}: {last_error}"
                )
                if attempt < retry.max_attempts:
                    delay_ms = retry.delay_ms(attempt)
                    await self._ledger.record_event(
                        execution.execution_id, "stage.retry", stage_id=stage.stage_id,
                        stage_order=stage.stage_order, attempt=attempt, delay_ms=delay_ms, error=last_error,
                    )
                    await self._sleep(delay_ms / 1000)
                continue

            elapsed = (time.monotonic() - started) * 1000
            metrics.total_latency_ms += elapsed
            return await self._completed(execution, stage, worker.name, packet, response, attempt, int(elapsed), metrics)

        return await self._exhausted(execution, stage, planned, last_error, retry.max_attempts)

    async def _post(self, worker: "WorkerDescriptor", packet: HandshakePacket, body: dict) -> WorkerResponse:
        url = f"{worker.endpoint}{worker.process_path}"
        headers = {
            "Authorization": f"Bearer {worker.secret}",
            "X-Worker-ID": self.orchestrator_id,
            "X-Execution-ID": packet.execution_id,
            "X-Stage-ID": packet.stage_id,
        }
        try:
            resp = await self._http.post(url, json=body, headers=headers, timeout=packet.control.timeout_ms / 1000)
        except httpx.TimeoutException as e:
            raise _AttemptFailed(f"Worker {worker.name} timed out after {packet.control.timeout_ms}ms") from e
        except httpx.HTTPError as e:
            raise _AttemptFailed(f"Worker {worker.name} unreachable: {e}") from e

        if not resp.is_success:
            raise _AttemptFailed(f"Worker {worker.name} returned HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            result = WorkerResponse.model_validate(resp.json())
        except (ValueError, PydanticValidationError) as e:
            raise _AttemptFailed(f"Worker {worker.name} returned a malformed response: {e}") from e
        if not result.success:
            raise _AttemptFailed(result.error or f"Worker {worker.name} reported failure")
        return result

    async def _completed(
        self,
        execution: Execution,
        stage: StageExecution,
        worker_name: str,
        packet: HandshakePacket,
        response: WorkerResponse,
        attempt: int,
        elapsed_ms: int,
        metrics: WorkerMetrics,
    ) -> StageOutcome:
        output_ref = self._data_refs.put(
            response.output, execution.execution_id, stage.stage_id, kind="output", durable=True
        )
        output_ref_data = output_ref.model_dump(mode="json")
        summary = response.summary.model_dump(mode="json")

        if not await self._ledger.transition_stage(
            stage.stage_id, ("running",), "completed",
            output_reference=output_ref_data, summary_data=summary,
            time_ms=elapsed_ms, retry_count=attempt - 1, error_message=None,
        ):
            self._data_refs.delete(output_ref)
            await self._ledger.update_packet_status(packet.packet_id, "discarded")
            logger.info(f"Discarded late result from {worker_name} for {execution.execution_id}")
            return StageOutcome(stage.stage_id, stage.stage_order, "cancelled", attempts=attempt)

        cost = 0.0
        for item in response.resource_usage:
            record = self._resources.record_usage(
                execution.execution_id, item.resource_name, item.quantity, item.cost_usd,
                stage_id=stage.stage_id, resource_type=item.resource_type, unit=item.unit,
            )
            await self._ledger.record_cost(record)
            cost += record.cost_usd
        if cost:
            await self._ledger.update_stage(stage.stage_id, cost_usd=round(cost, 6))
            await self._ledger.accumulate(execution.execution_id, cost_usd=cost)

        await self._ledger.update_packet_status(packet.packet_id, "completed")
        metrics.successes += 1
        metrics.total_cost_usd += cost
        await self._ledger.record_event(
            execution.execution_id, "stage.completed", stage_id=stage.stage_id, stage_order=stage.stage_order,
            worker_name=worker_name, attempts=attempt, cost_usd=round(cost, 6), time_ms=elapsed_ms,
            continue_pipeline=response.summary.continue_pipeline,
        )
        return StageOutcome(
            stage_id=stage.stage_id,
            stage_order=stage.stage_order,
            status="completed",
            output=response.output,
            output_ref=output_ref_data,
            summary=response.summary,
            next=response.next,
            cost_usd=cost,
            time_ms=elapsed_ms,
            attempts=attempt,
        )

    async def _exhausted(
        self,
        execution: Execution,
        stage: StageExecution,
        planned: PlannedStage,
        error: str,
        attempts: int,
    ) -> StageOutcome:
        if planned.stage.optional:
            if await self._ledger.transition_stage(stage.stage_id, ("running",), "skipped", error_message=error):
                await self._ledger.record_event(
                    execution.execution_id, "stage.skipped", stage_id=stage.stage_id,
                    stage_order=stage.stage_order, reason=error,
                )
                logger.warning(f"Optional stage {stage.stage_order} skipped for {execution.execution_id}: {error}")
                return StageOutcome(stage.stage_id, stage.stage_order, "skipped", attempts=attempts, error=error)
            return StageOutcome(stage.stage_id, stage.stage_order, "cancelled", attempts=attempts, error=error)

        if not await self._ledger.transition_stage(stage.stage_id, ("running",), "failed", error_message=error):
            return StageOutcome(stage.stage_id, stage.stage_order, "cancelled", attempts=attempts, error=error)
        await self._ledger.record_event(
            execution.execution_id, "stage.failed", stage_id=stage.stage_id,
            stage_order=stage.stage_order, attempts=attempts, error=error,
        )
        raise WorkerUnavailableError(
            error,
            attempts=attempts,
            stage_order=stage.stage_order,
            worker_name=planned.worker_name,
        )

    def _stored_outcome(self, stage: StageExecution) -> StageOutcome:
        output = None
        if stage.status == "completed" and stage.output_reference:
            output = self._data_refs.resolve(stage.output_reference)
        summary = StageSummary.model_validate(stage.summary_data) if stage.summary_data else None
        return StageOutcome(
            stage_id=stage.stage_id,
            stage_order=stage.stage_order,
            status=stage.status,
            output=output,
            output_ref=stage.output_reference,
            summary=summary,
            cost_usd=stage.cost_usd,
            time_ms=stage.time_ms,
            error=stage.error_message,
        )

    @staticmethod
    def _next_instructions(next_stage: PlannedStage | None) -> NextStageInstructions | None:
        if next_stage is None:
            return None
        stage = next_stage.stage
        return NextStageInstructions(
            worker_name=stage.worker_name,
            action=stage.action,
            stage_order=stage.stage_order,
            params=stage.params,
            required_resources=[r.resource_name for r in stage.resource_requirements],
            estimated_time_ms=stage.estimated_time_ms,
            skip_conditions=stage.skip_conditions,
        )

    # -- inbound handshake traffic --------------------------------------------------

    async def receive(self, packet: HandshakePacket, worker_id: str) -> HandshakeAcknowledgment:
        """A worker pushes a packet (e.g. an intermediate summary) to the orchestrator."""
        stage = await self._ledger.get_stage(packet.stage_id)
        if stage.execution_id != packet.execution_id:
            raise NotFoundError(f"Stage {packet.stage_id} does not belong to {packet.execution_id}")
        body = packet.model_dump(mode="json")
        self._cache.set(f"handshake:{packet.packet_id}", body, ttl=self.handshake_ttl)
        await self._ledger.record_packet(packet.packet_id, packet.execution_id, packet.stage_id, worker_id, body, "received")

        retrieved = self._data_refs.stored_checksum(packet.data_ref) == packet.data_ref.checksum
        await self._ledger.record_event(
            packet.execution_id, "handshake.received", packet_id=packet.packet_id,
            stage_id=packet.stage_id, worker_name=worker_id, data_retrieved=retrieved,
        )
        return HandshakeAcknowledgment(
            packet_id=packet.packet_id,
            stage_id=packet.stage_id,
            worker_name=worker_id,
            acknowledgment_type="received",
            data_retrieved=retrieved,
        )

    async def acknowledge(self, ack: HandshakeAcknowledgment, worker_id: str) -> dict:
        """Record a worker's acknowledgement of a packet we sent."""
        cached = self._cache.get(f"handshake:{ack.packet_id}")
        if cached is None and await self._ledger.get_packet(ack.packet_id) is None:
            raise NotFoundError(f"Packet {ack.packet_id} not found", packet_id=ack.packet_id)
        await self._ledger.update_packet_status(ack.packet_id, f"ack_{ack.acknowledgment_type}")
        logger.debug(f"Packet {ack.packet_id} acknowledged by {worker_id}: {ack.acknowledgment_type}")
        return {"packet_id": ack.packet_id, "status": f"ack_{ack.acknowledgment_type}"}

    def metrics(self) -> dict[str, dict]:
        return {name: m.to_dict() for name, m in sorted(self._metrics.items())}
