"""Shared test helpers: settings, templates and a scriptable fleet of mock workers."""

from __future__ import annotations

import asyncio
import copy
import json
from contextlib import asynccontextmanager
from typing import Any, Callable

import httpx

from aifactory.config import ClientCredential, Settings, WorkerDescriptor
from aifactory.models import ResourceDefinition
from aifactory.orchestrator import ExecutionOrchestrator
from aifactory.templates import TemplateRegistry

WORKER_NAMES = ("topic_researcher", "feed_fetcher", "report_builder", "content_classifier")


def make_settings(**overrides: Any) -> Settings:
    workers = {
        name: WorkerDescriptor(
            name=name,
            endpoint=f"http://workers.test/{name}",
            secret=f"{name}-secret",
            max_concurrent=1,
        )
        for name in WORKER_NAMES
    }
    settings = Settings(
        database_path=":memory:",
        queue_tick_seconds=0.01,
        resource_wait_seconds=2,
        workers=workers,
        resources={
            "openai_api": ResourceDefinition(
                name="openai_api", resource_type="api", limit=100000, period="daily",
                cost_per_unit=0.00002, unit="tokens",
            ),
        },
        clients={
            "client-a": ClientCredential("client-a", "key-a"),
            "client-b": ClientCredential("client-b", "key-b"),
            "ops": ClientCredential("ops", "key-admin", ["all"]),
        },
    )
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


FAST_RETRY = {"max_attempts": 3, "backoff_type": "exponential", "initial_delay_ms": 10, "max_delay_ms": 40}

RSS_TEMPLATE = {
    "name": "rss-intelligence",
    "description": "Research, fetch, report",
    "parameters": [{"name": "topic", "type": "string", "required": True}],
    "stages": [
        {
            "stage_order": 1,
            "worker_name": "topic_researcher",
            "action": "discover_sources",
            "resource_requirements": [{"resource_name": "openai_api", "quantity": 100, "unit": "tokens"}],
            "retry_config": FAST_RETRY,
            "estimated_cost_usd": 0.01,
            "estimated_time_ms": 1000,
        },
        {
            "stage_order": 2,
            "worker_name": "feed_fetcher",
            "action": "fetch_articles",
            "depends_on": [1],
            "retry_config": FAST_RETRY,
            "estimated_time_ms": 2000,
        },
        {
            "stage_order": 3,
            "worker_name": "report_builder",
            "action": "build_report",
            "depends_on": [2],
            "retry_config": FAST_RETRY,
            "estimated_cost_usd": 0.02,
            "estimated_time_ms": 3000,
        },
    ],
}

PARALLEL_TEMPLATE = {
    "name": "market-scan",
    "stages": [
        {"stage_order": 1, "worker_name": "feed_fetcher", "retry_config": FAST_RETRY, "estimated_time_ms": 100},
        {"stage_order": 2, "worker_name": "content_classifier", "can_parallel": True, "depends_on": [1],
         "retry_config": FAST_RETRY, "estimated_time_ms": 400, "estimated_cost_usd": 0.5},
        {"stage_order": 3, "worker_name": "topic_researcher", "can_parallel": True, "depends_on": [1],
         "retry_config": FAST_RETRY, "estimated_time_ms": 300, "estimated_cost_usd": 0.25},
        {"stage_order": 4, "worker_name": "report_builder", "depends_on": [2, 3],
         "retry_config": FAST_RETRY, "estimated_time_ms": 200},
    ],
}


def template(base: dict, **changes: Any) -> dict:
    data = copy.deepcopy(base)
    data.update(changes)
    return data


def make_registry(*templates: dict) -> TemplateRegistry:
    registry = TemplateRegistry()
    for t in templates or (RSS_TEMPLATE, PARALLEL_TEMPLATE):
        registry.register(copy.deepcopy(t))
    return registry


def summary(continue_pipeline: bool = True, items: int = 5, **metrics: Any) -> dict:
    return {
        "items_processed": items,
        "quality_score": 0.9,
        "confidence_level": 0.8,
        "processing_time_ms": 12,
        "metrics": metrics,
        "continue_pipeline": continue_pipeline,
    }


def ok_response(output: Any = None, continue_pipeline: bool = True, usage: list | None = None, next: dict | None = None, **metrics: Any) -> dict:
    body = {
        "success": True,
        "output": output,
        "summary": summary(continue_pipeline, **metrics),
        "resource_usage": usage or [],
    }
    if next:
        body["next"] = next
    return body


class MockWorkers:
    """httpx MockTransport handler routing by worker name in the URL path."""

    def __init__(self):
        self.calls: list[tuple[str, dict, httpx.Headers]] = []
        self.handlers: dict[str, Callable[[dict], Any]] = {}

    def on(self, worker: str, handler: Callable[[dict], Any]):
        self.handlers[worker] = handler

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        worker = request.url.path.strip("/").split("/")[0]
        packet = json.loads(request.content)
        self.calls.append((worker, packet, request.headers))
        handler = self.handlers.get(worker)
        if handler is None:
            return httpx.Response(200, json=ok_response({"worker": worker}))
        result = handler(packet)
        if asyncio.iscoroutine(result):
            result = await result
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=result)

    def calls_to(self, worker: str) -> list[dict]:
        return [packet for name, packet, _ in self.calls if name == worker]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


async def no_sleep(_seconds: float):
    await asyncio.sleep(0)


@asynccontextmanager
async def running_orchestrator(workers: MockWorkers, settings: Settings | None = None, registry: TemplateRegistry | None = None):
    orch = ExecutionOrchestrator(
        settings or make_settings(),
        templates=registry or make_registry(),
        http_client=workers.client(),
        sleep=no_sleep,
    )
    await orch.start()
    try:
        yield orch
    finally:
        await orch.stop()


async def wait_until(predicate: Callable[[], Any], timeout: float = 5.0, interval: float = 0.01):
    """Poll a sync or async predicate until it is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)
