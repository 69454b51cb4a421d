"""End-to-end orchestration against scripted mock workers."""

import asyncio

import httpx
import pytest

from aifactory.errors import ConflictError, ValidationError
from aifactory.orchestrator import ExecutionOrchestrator

from support import (
    PARALLEL_TEMPLATE,
    RSS_TEMPLATE,
    MockWorkers,
    make_registry,
    make_settings,
    no_sleep,
    ok_response,
    running_orchestrator,
    template,
    wait_until,
)

TOPIC = {"topic": "ai chips"}


async def _submit(orch, name="rss-intelligence", client_id="client-a", **kwargs):
    kwargs.setdefault("parameters", TOPIC)
    return await orch.submit(client_id, name, **kwargs)


async def _statuses(orch, execution_id):
    return [s.status for s in await orch.ledger.get_stage_executions(execution_id)]


async def _finish(orch, execution_id):
    """Wait until the execution is terminal and its run loop has wound down."""
    await orch.wait_for_terminal(execution_id)
    await wait_until(lambda: execution_id not in orch.queue.active)
    return await orch.ledger.get_execution(execution_id)


def _all_released(orch) -> bool:
    return all(row["held"] == 0 for row in orch.resources.status())


def test_sequential_pipeline_completes():
    workers = MockWorkers()
    workers.on("topic_researcher", lambda p: ok_response({"sources": ["s1", "s2"]}, sources_found=2))
    workers.on("feed_fetcher", lambda p: ok_response({"articles": 7}))
    workers.on("report_builder", lambda p: ok_response({"report": "done"}, continue_pipeline=False))

    async def scenario():
        async with running_orchestrator(workers) as orch:
            submitted = await _submit(orch)
            assert submitted["status"] == "queued"
            assert submitted["progress_url"] == f"/progress/{submitted['execution_id']}"
            eid = submitted["execution_id"]

            execution = await _finish(orch, eid)
            assert execution.status == "completed"
            assert [name for name, _, _ in workers.calls] == ["topic_researcher", "feed_fetcher", "report_builder"]
            assert await _statuses(orch, eid) == ["completed", "completed", "completed"]

            fetch_input = workers.calls_to("feed_fetcher")[0]["data_ref"]["inline_data"]
            assert fetch_input["previous_output"] == {"sources": ["s1", "s2"]}
            assert fetch_input["parameters"] == TOPIC

            progress = await orch.get_progress(eid)
            assert progress["progress_percent"] == 100.0
            assert progress["stages_completed"] == 3
            assert progress["stages_skipped"] == 0
            assert progress["queue_position"] is None

            detail = await orch.get_execution_detail(eid)
            assert detail["deliverables"][0]["name"] == "rss-intelligence-result"
            assert orch.data_refs.resolve(detail["deliverables"][0]["data_ref"]) == {"report": "done"}
            types = [e["type"] for e in detail["recent_events"]]
            assert types[0] == "execution.created"
            assert types[-1] == "execution.completed"
            assert _all_released(orch)

    asyncio.run(scenario())


def test_worker_failing_every_attempt_fails_execution():
    workers = MockWorkers()
    workers.on("feed_fetcher", lambda p: httpx.Response(500, text="down"))

    async def scenario():
        async with running_orchestrator(workers) as orch:
            eid = (await _submit(orch))["execution_id"]
            execution = await _finish(orch, eid)
            assert execution.status == "failed"
            assert "HTTP 500" in execution.error_message
            assert len(workers.calls_to("feed_fetcher")) == 3
            assert workers.calls_to("report_builder") == []
            assert await _statuses(orch, eid) == ["completed", "failed", "skipped"]
            assert _all_released(orch)

    asyncio.run(scenario())


def test_second_execution_waits_for_worker_slot():
    workers = MockWorkers()
    gate = asyncio.Event()
    first_started = asyncio.Event()

    async def researcher(packet):
        first_started.set()
        await gate.wait()
        return ok_response({"sources": []})

    workers.on("topic_researcher", researcher)

    async def scenario():
        async with running_orchestrator(workers) as orch:
            first = (await _submit(orch, request_id="r1"))["execution_id"]
            await asyncio.wait_for(first_started.wait(), 2)
            second = (await _submit(orch, request_id="r2"))["execution_id"]

            await asyncio.sleep(0.1)
            assert (await orch.ledger.get_execution(second)).status == "pending"
            assert orch.queue.position(second) == 1
            entry = orch.queue_view()["entries"][0]
            assert entry["status"] == "blocked"
            assert "worker_slots:topic_researcher" in entry["blocked_reason"]

            gate.set()
            done_first = await _finish(orch, first)
            done_second = await _finish(orch, second)
            assert done_first.status == done_second.status == "completed"
            assert done_second.started_at >= done_first.completed_at

    asyncio.run(scenario())


def test_cancel_mid_stage_skips_remaining_stages():
    workers = MockWorkers()
    gate = asyncio.Event()
    fetching = asyncio.Event()

    async def fetcher(packet):
        fetching.set()
        await gate.wait()
        return ok_response({"articles": 3})

    workers.on("feed_fetcher", fetcher)

    async def scenario():
        async with running_orchestrator(workers) as orch:
            eid = (await _submit(orch))["execution_id"]
            await asyncio.wait_for(fetching.wait(), 2)

            result = await orch.cancel(eid)
            assert result["previous_status"] == "running"
            assert await _statuses(orch, eid) == ["completed", "skipped", "skipped"]

            gate.set()
            await wait_until(lambda: not orch.queue.active)
            execution = await orch.ledger.get_execution(eid)
            assert execution.status == "cancelled"
            assert await _statuses(orch, eid) == ["completed", "skipped", "skipped"]
            assert workers.calls_to("report_builder") == []
            assert _all_released(orch)

            with pytest.raises(ConflictError):
                await orch.cancel(eid)

    asyncio.run(scenario())


def test_cancel_while_queued():
    workers = MockWorkers()
    gate = asyncio.Event()

    async def researcher(packet):
        await gate.wait()
        return ok_response({})

    workers.on("topic_researcher", researcher)

    async def scenario():
        async with running_orchestrator(workers) as orch:
            first = (await _submit(orch))["execution_id"]
            second = (await _submit(orch))["execution_id"]
            await wait_until(lambda: orch.queue.position(second) == 1)
            await orch.cancel(second)
            assert orch.queue.position(second) is None
            assert (await orch.ledger.get_execution(second)).status == "cancelled"
            gate.set()
            assert (await _finish(orch, first)).status == "completed"
            assert len(workers.calls_to("topic_researcher")) == 1

    asyncio.run(scenario())


def test_retry_creates_new_execution_linked_to_failed_one():
    workers = MockWorkers()
    broken = {"on": True}
    workers.on("report_builder", lambda p: httpx.Response(503) if broken["on"] else ok_response({"report": 1}))

    async def scenario():
        async with running_orchestrator(workers) as orch:
            eid = (await _submit(orch, request_id="job-1"))["execution_id"]
            assert (await _finish(orch, eid)).status == "failed"

            broken["on"] = False
            retried = await orch.retry(eid)
            assert retried["retry_of"] == eid
            assert retried["retry_count"] == 1
            new = await _finish(orch, retried["execution_id"])
            assert new.status == "completed"
            assert new.retry_of == eid
            assert new.request_id == "job-1"
            assert (await orch.ledger.get_execution(eid)).status == "failed"

            with pytest.raises(ConflictError):
                await orch.retry(new.execution_id)

    asyncio.run(scenario())


def test_duplicate_request_id_returns_existing_execution():
    workers = MockWorkers()

    async def scenario():
        async with running_orchestrator(workers) as orch:
            first = await _submit(orch, request_id="same")
            again = await _submit(orch, request_id="same")
            other_client = await _submit(orch, client_id="client-b", request_id="same")
            assert again["execution_id"] == first["execution_id"]
            assert again["duplicate"] is True
            assert other_client["execution_id"] != first["execution_id"]
            executions = await orch.ledger.list_executions()
            assert len(executions) == 2

    asyncio.run(scenario())


def test_submit_validation():
    workers = MockWorkers()
    registry = make_registry(RSS_TEMPLATE, template(RSS_TEMPLATE, name="ghost-worker", stages=[
        {"stage_order": 1, "worker_name": "nobody"},
    ]))

    async def scenario():
        async with running_orchestrator(workers, registry=registry) as orch:
            with pytest.raises(ValidationError):
                await _submit(orch, name="does-not-exist")
            with pytest.raises(ValidationError, match="topic"):
                await _submit(orch, parameters={})
            with pytest.raises(ValidationError):
                await _submit(orch, priority="urgent")
            with pytest.raises(ValidationError, match="nobody"):
                await _submit(orch, name="ghost-worker")
            assert await orch.ledger.list_executions() == []

    asyncio.run(scenario())


def test_abort_skip_condition_fails_execution():
    data = template(RSS_TEMPLATE)
    data["stages"][1]["skip_conditions"] = [
        {"field": "metrics.sources_found", "operator": "eq", "value": 0, "action": "abort"}
    ]
    workers = MockWorkers()
    workers.on("topic_researcher", lambda p: ok_response({"sources": []}, sources_found=0))

    async def scenario():
        async with running_orchestrator(workers, registry=make_registry(data)) as orch:
            eid = (await _submit(orch))["execution_id"]
            execution = await _finish(orch, eid)
            assert execution.status == "failed"
            assert "aborted" in execution.error_message
            assert workers.calls_to("feed_fetcher") == []
            assert await _statuses(orch, eid) == ["completed", "skipped", "skipped"]

    asyncio.run(scenario())


def test_skip_condition_skips_only_that_stage():
    data = template(RSS_TEMPLATE)
    data["stages"][1]["skip_conditions"] = [
        {"field": "output.sources", "operator": "eq", "value": [], "action": "skip"}
    ]
    workers = MockWorkers()
    workers.on("topic_researcher", lambda p: ok_response({"sources": []}))

    async def scenario():
        async with running_orchestrator(workers, registry=make_registry(data)) as orch:
            eid = (await _submit(orch))["execution_id"]
            assert (await _finish(orch, eid)).status == "completed"
            assert await _statuses(orch, eid) == ["completed", "skipped", "completed"]
            report_input = workers.calls_to("report_builder")[0]["data_ref"]["inline_data"]
            assert report_input["previous_output"] == {"sources": []}

    asyncio.run(scenario())


def test_worker_can_stop_pipeline_early():
    workers = MockWorkers()
    workers.on("topic_researcher", lambda p: ok_response({"sources": []}, continue_pipeline=False))

    async def scenario():
        async with running_orchestrator(workers) as orch:
            eid = (await _submit(orch))["execution_id"]
            assert (await _finish(orch, eid)).status == "completed"
            assert await _statuses(orch, eid) == ["completed", "skipped", "skipped"]
            progress = await orch.get_progress(eid)
            assert progress["stages_completed"] == 1
            assert progress["stages_skipped"] == 2

    asyncio.run(scenario())


def test_next_stage_params_reach_the_next_worker():
    workers = MockWorkers()
    hint = {"worker_name": "feed_fetcher", "action": "fetch_articles", "stage_order": 2, "params": {"limit": 5}}
    workers.on("topic_researcher", lambda p: ok_response({"sources": ["a"]}, next=hint))

    async def scenario():
        async with running_orchestrator(workers) as orch:
            eid = (await _submit(orch))["execution_id"]
            await _finish(orch, eid)
            fetch_input = workers.calls_to("feed_fetcher")[0]["data_ref"]["inline_data"]
            assert fetch_input["params"] == {"limit": 5}
            first_packet = workers.calls_to("topic_researcher")[0]
            assert first_packet["next"]["stage_order"] == 2

    asyncio.run(scenario())


def test_parallel_tier_runs_concurrently_and_merges_outputs():
    workers = MockWorkers()
    arrived = []
    both = asyncio.Event()

    def parallel(name):
        async def handler(packet):
            arrived.append(name)
            if len(arrived) == 2:
                both.set()
            await asyncio.wait_for(both.wait(), 2)
            return ok_response({"from": name})
        return handler

    workers.on("content_classifier", parallel("content_classifier"))
    workers.on("topic_researcher", parallel("topic_researcher"))

    async def scenario():
        async with running_orchestrator(workers, registry=make_registry(PARALLEL_TEMPLATE)) as orch:
            eid = (await orch.submit("client-a", "market-scan"))["execution_id"]
            assert (await _finish(orch, eid)).status == "completed"
            final_input = workers.calls_to("report_builder")[0]["data_ref"]["inline_data"]
            assert final_input["previous_output"] == {
                "2": {"from": "content_classifier"},
                "3": {"from": "topic_researcher"},
            }

    asyncio.run(scenario())


def test_usage_accumulates_cost():
    workers = MockWorkers()
    usage = [{"resource_name": "openai_api", "quantity": 1000, "unit": "tokens"}]
    workers.on("topic_researcher", lambda p: ok_response({}, usage=usage))

    async def scenario():
        async with running_orchestrator(workers) as orch:
            eid = (await _submit(orch))["execution_id"]
            execution = await _finish(orch, eid)
            assert execution.total_cost_usd == pytest.approx(0.02)
            assert execution.total_time_ms >= 0
            quota = next(q for q in orch.resources.quotas() if q["resource_name"] == "openai_api")
            assert quota["used"] == 1000

    asyncio.run(scenario())


def test_restart_resumes_from_checkpoint(tmp_path):
    settings = make_settings(database_path=str(tmp_path / "factory.db"), blob_dir=tmp_path / "blobs")
    first_workers = MockWorkers()
    fetching = asyncio.Event()

    async def hang(packet):
        fetching.set()
        await asyncio.Event().wait()

    first_workers.on("topic_researcher", lambda p: ok_response({"sources": ["kept"]}))
    first_workers.on("feed_fetcher", hang)
    second_workers = MockWorkers()

    async def scenario():
        async with running_orchestrator(first_workers, settings) as orch:
            eid = (await _submit(orch))["execution_id"]
            await asyncio.wait_for(fetching.wait(), 2)
        # the process "crashed" mid stage 2

        async with running_orchestrator(second_workers, settings) as orch:
            execution = await _finish(orch, eid)
            assert execution.status == "completed"
            assert second_workers.calls_to("topic_researcher") == []
            fetch_input = second_workers.calls_to("feed_fetcher")[0]["data_ref"]["inline_data"]
            assert fetch_input["previous_output"] == {"sources": ["kept"]}
            assert await _statuses(orch, eid) == ["completed", "completed", "completed"]
            types = [e["type"] for e in await orch.ledger.recent_events(eid, limit=100)]
            assert "execution.resumed" in types

    asyncio.run(scenario())


def test_estimate_reports_plan_and_availability():
    workers = MockWorkers()

    async def scenario():
        async with running_orchestrator(workers) as orch:
            estimate = await orch.estimate("market-scan")
            assert estimate["feasible"] is True
            assert estimate["estimated_time_ms"] == 700
            assert [g["stages"] for g in estimate["plan"]["parallel_groups"]] == [[2, 3]]

    asyncio.run(scenario())


def test_queued_execution_with_vanished_template_fails_after_restart(tmp_path):
    settings = make_settings(database_path=str(tmp_path / "factory.db"), blob_dir=tmp_path / "blobs")
    workers = MockWorkers()

    async def scenario():
        # submitted but never admitted before the process went away
        orch = ExecutionOrchestrator(settings, templates=make_registry(), http_client=workers.client(), sleep=no_sleep)
        await orch.db.connect()
        lost = (await _submit(orch))["execution_id"]
        kept = (await _submit(orch, "market-scan", parameters={}))["execution_id"]
        await orch.stop()

        async with running_orchestrator(workers, settings, make_registry(PARALLEL_TEMPLATE)) as orch:
            execution = await _finish(orch, lost)
            assert execution.status == "failed"
            assert "rss-intelligence" in execution.error_message
            assert execution.started_at is not None
            assert not orch.queue.is_queued(lost)
            assert all(status == "skipped" for status in await _statuses(orch, lost))
            types = [e["type"] for e in await orch.ledger.recent_events(lost, limit=100)]
            assert "execution.failed" in types

            assert (await _finish(orch, kept)).status == "completed"
            assert _all_released(orch)

    asyncio.run(scenario())
