"""Test the worker coordinator's handshake, retry and late-result handling."""

import asyncio
from contextlib import asynccontextmanager

import httpx
import pytest

from aifactory.cache import TTLCache
from aifactory.coordinator import WorkerCoordinator
from aifactory.data_refs import DataReferenceStore
from aifactory.errors import NotFoundError, WorkerUnavailableError
from aifactory.handshake import HandshakeAcknowledgment
from aifactory.ledger import ExecutionLedger
from aifactory.models import Execution, generate_id
from aifactory.resources import ResourceLedger
from aifactory.store import Database
from aifactory.templates import TemplateResolver

from support import RSS_TEMPLATE, MockWorkers, make_registry, make_settings, ok_response, template


class Harness:
    def __init__(self, db, workers, registry, worker_names=None):
        settings = make_settings()
        self.cache = TTLCache()
        self.ledger = ExecutionLedger(db, self.cache)
        self.resources = ResourceLedger(settings.resource_definitions())
        self.data_refs = DataReferenceStore(self.cache)
        self.sleeps: list[float] = []
        descriptors = settings.workers
        if worker_names is not None:
            descriptors = {name: d for name, d in descriptors.items() if name in worker_names}
        self.coordinator = WorkerCoordinator(
            descriptors,
            self.ledger,
            self.resources,
            self.data_refs,
            self.cache,
            workers.client(),
            sleep=self._sleep,
        )
        self.plan = TemplateResolver(registry).resolve("rss-intelligence")
        self.execution = None
        self.stages = []

    async def _sleep(self, seconds):
        self.sleeps.append(seconds)

    async def setup(self):
        self.execution = Execution(f"exec_{generate_id()}", "client-a", "rss-intelligence")
        await self.ledger.create_execution(self.execution)
        await self.ledger.transition(self.execution.execution_id, ["pending"], "running")
        self.stages = await self.ledger.create_stages(self.execution.execution_id, self.plan)

    async def dispatch(self, order: int, stage_input=None, **kwargs):
        planned = self.plan.stage(order)
        return await self.coordinator.dispatch(
            self.execution,
            self.stages[order - 1],
            planned,
            stage_input,
            next_stage=self.plan.next_after(order),
            **kwargs,
        )

    async def stage_row(self, order: int):
        return await self.ledger.get_stage(self.stages[order - 1].stage_id)


@asynccontextmanager
async def harness(workers, registry=None, worker_names=None):
    async with Database() as db:
        h = Harness(db, workers, registry or make_registry(), worker_names)
        await h.setup()
        yield h


def test_successful_dispatch_sends_packet_and_records_result():
    workers = MockWorkers()
    usage = [{"resource_name": "openai_api", "quantity": 500, "unit": "tokens"}]
    workers.on("topic_researcher", lambda packet: ok_response({"sources": ["a", "b"]}, usage=usage, sources_found=2))

    async def scenario():
        async with harness(workers) as h:
            outcome = await h.dispatch(1, {"topic": "chips"})
            assert outcome.status == "completed"
            assert outcome.output == {"sources": ["a", "b"]}
            assert outcome.summary.metrics["sources_found"] == 2
            assert outcome.cost_usd == pytest.approx(0.01)

            name, packet, headers = workers.calls[0]
            assert headers["authorization"] == "Bearer topic_researcher-secret"
            assert headers["x-execution-id"] == h.execution.execution_id
            assert headers["x-stage-id"] == h.stages[0].stage_id
            assert packet["data_ref"]["inline_data"] == {"topic": "chips"}
            assert packet["action"] == "discover_sources"
            assert packet["next"]["worker_name"] == "feed_fetcher"
            assert packet["control"]["retry_count"] == 0

            row = await h.stage_row(1)
            assert row.status == "completed"
            assert row.summary_data["metrics"]["sources_found"] == 2
            assert h.data_refs.resolve(row.output_reference) == {"sources": ["a", "b"]}

            execution = await h.ledger.get_execution(h.execution.execution_id)
            assert execution.total_cost_usd == pytest.approx(0.01)
            costs = await h.ledger.cost_breakdown(h.execution.execution_id)
            assert costs[0]["resource_name"] == "openai_api"
            assert h.resources.period_usage("openai_api") == 500

            stored = await h.ledger.get_packet(packet["packet_id"])
            assert stored["status"] == "completed"
            assert h.cache.get(f"handshake:{packet['packet_id']}") is not None

    asyncio.run(scenario())


def test_server_error_is_retried_with_backoff():
    workers = MockWorkers()
    attempts = []

    def flaky(packet):
        attempts.append(packet["control"]["retry_count"])
        if len(attempts) < 3:
            return httpx.Response(500, text="overloaded")
        return ok_response({"ok": True})

    workers.on("topic_researcher", flaky)

    async def scenario():
        async with harness(workers) as h:
            outcome = await h.dispatch(1)
            assert outcome.status == "completed"
            assert outcome.attempts == 3
            assert attempts == [0, 1, 2]
            assert h.sleeps == [0.01, 0.02]
            events = [e["type"] for e in await h.ledger.recent_events(h.execution.execution_id)]
            assert events.count("stage.retry") == 2
            assert (await h.stage_row(1)).retry_count == 2

    asyncio.run(scenario())


def test_malformed_summary_counts_as_failed_attempt():
    workers = MockWorkers()
    responses = [
        {"success": True, "output": {}, "summary": {"items_processed": 1}},
        ok_response({"fixed": True}),
    ]
    workers.on("topic_researcher", lambda packet: responses.pop(0))

    async def scenario():
        async with harness(workers) as h:
            outcome = await h.dispatch(1)
            assert outcome.status == "completed"
            assert outcome.attempts == 2
            assert outcome.output == {"fixed": True}

    asyncio.run(scenario())


def test_transport_errors_are_retried():
    workers = MockWorkers()
    failures = [httpx.ConnectError("refused"), httpx.ReadTimeout("slow")]

    def handler(packet):
        if failures:
            raise failures.pop(0)
        return ok_response({})

    workers.on("topic_researcher", handler)

    async def scenario():
        async with harness(workers) as h:
            outcome = await h.dispatch(1)
            assert outcome.status == "completed"
            assert outcome.attempts == 3

    asyncio.run(scenario())


def test_exhausted_retries_fail_the_stage():
    workers = MockWorkers()
    workers.on("topic_researcher", lambda packet: {"success": False, "error": "model refused"})

    async def scenario():
        async with harness(workers) as h:
            with pytest.raises(WorkerUnavailableError) as exc:
                await h.dispatch(1)
            assert exc.value.attempts == 3
            assert "model refused" in exc.value.message
            assert len(workers.calls) == 3
            row = await h.stage_row(1)
            assert row.status == "failed"
            assert row.error_message == "model refused"
            metrics = h.coordinator.metrics()["topic_researcher"]
            assert metrics["failures"] == 3

    asyncio.run(scenario())


def test_optional_stage_is_skipped_after_exhaustion():
    data = template(RSS_TEMPLATE)
    data["stages"][1]["optional"] = True
    registry = make_registry(data)
    workers = MockWorkers()
    workers.on("feed_fetcher", lambda packet: httpx.Response(503))

    async def scenario():
        async with harness(workers, registry) as h:
            outcome = await h.dispatch(2)
            assert outcome.status == "skipped"
            assert (await h.stage_row(2)).status == "skipped"

    asyncio.run(scenario())


def test_unknown_worker_fails_without_sending():
    workers = MockWorkers()

    async def scenario():
        async with harness(workers, worker_names={"feed_fetcher", "report_builder"}) as h:
            with pytest.raises(WorkerUnavailableError):
                await h.dispatch(1)
            assert workers.calls == []
            assert (await h.stage_row(1)).status == "failed"

    asyncio.run(scenario())


def test_completed_stage_is_never_resent():
    workers = MockWorkers()
    workers.on("topic_researcher", lambda packet: ok_response({"sources": [1]}))

    async def scenario():
        async with harness(workers) as h:
            first = await h.dispatch(1)
            again = await h.dispatch(1)
            assert len(workers.calls) == 1
            assert again.status == "completed"
            assert again.output == first.output
            assert again.summary.items_processed == first.summary.items_processed

    asyncio.run(scenario())


def test_result_arriving_after_cancel_is_discarded():
    workers = MockWorkers()
    holder = {}

    async def cancel_mid_flight(packet):
        h = holder["h"]
        await h.ledger.transition(h.execution.execution_id, ["running"], "cancelled")
        await h.ledger.skip_open_stages(h.execution.execution_id, "cancelled")
        usage = [{"resource_name": "openai_api", "quantity": 100}]
        return ok_response({"late": True}, usage=usage)

    workers.on("topic_researcher", cancel_mid_flight)

    async def scenario():
        async with harness(workers) as h:
            holder["h"] = h
            outcome = await h.dispatch(1)
            assert outcome.status == "cancelled"
            row = await h.stage_row(1)
            assert row.status == "skipped"
            assert row.output_reference is None
            assert await h.ledger.cost_breakdown(h.execution.execution_id) == []
            packet_id = workers.calls[0][1]["packet_id"]
            assert (await h.ledger.get_packet(packet_id))["status"] == "discarded"

    asyncio.run(scenario())


def test_abort_check_stops_before_sending():
    workers = MockWorkers()

    async def always():
        return True

    async def scenario():
        async with harness(workers) as h:
            outcome = await h.dispatch(1, should_abort=always)
            assert outcome.status == "cancelled"
            assert workers.calls == []

    asyncio.run(scenario())


def test_acknowledge_unknown_packet():
    workers = MockWorkers()

    async def scenario():
        async with harness(workers) as h:
            with pytest.raises(NotFoundError):
                await h.coordinator.acknowledge(HandshakeAcknowledgment(packet_id="packet_nope"), "topic_researcher")
            await h.dispatch(1)
            packet_id = workers.calls[0][1]["packet_id"]
            result = await h.coordinator.acknowledge(
                HandshakeAcknowledgment(packet_id=packet_id, acknowledgment_type="processing"), "topic_researcher"
            )
            assert result["status"] == "ack_processing"

    asyncio.run(scenario())
