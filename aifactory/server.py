"""FastAPI server: HTTP control surface for the orchestrator."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

import httpx
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from aifactory.auth import (
    AuthContext,
    Authenticator,
    IdentityService,
    RemoteIdentityService,
    StaticIdentityService,
    ensure_client_access,
    require_admin,
    require_admin_or_worker,
    require_worker,
)
from aifactory.config import Settings, load_settings
from aifactory.errors import AuthenticationError, AuthorizationError, OrchestratorError, ValidationError
from aifactory.handshake import HandshakeAcknowledgment, HandshakePacket, Priority
from aifactory.models import ResourceRequirement, generate_id
from aifactory.orchestrator import ExecutionOrchestrator
from aifactory.templates import StageResource, TemplateRegistry

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request Models
# ---------------------------------------------------------------------------


class ExecuteRequest(BaseModel):
    template_name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = "normal"
    request_id: str | None = None


class EstimateRequest(BaseModel):
    template_name: str
    parameters: dict[str, Any] | None = None


class RequirementsRequest(BaseModel):
    requirements: list[StageResource] = Field(min_length=1)

    def as_requirements(self) -> list[ResourceRequirement]:
        return [ResourceRequirement(r.resource_name, r.quantity, r.resource_type, r.unit) for r in self.requirements]


class AllocateRequest(RequirementsRequest):
    execution_id: str


class ReleaseRequest(BaseModel):
    allocation_ids: list[str] = Field(default_factory=list)
    execution_id: str | None = None


class UsageRequest(BaseModel):
    execution_id: str
    resource_name: str
    quantity: float = Field(ge=0)
    cost_usd: float | None = Field(default=None, ge=0)
    stage_id: str | None = None


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def _orchestrator(request: Request) -> ExecutionOrchestrator:
    return request.app.state.orchestrator


async def current_auth(
    request: Request,
    authorization: str | None = Header(default=None),
    x_worker_id: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
    x_session_token: str | None = Header(default=None),
) -> AuthContext:
    return await request.app.state.authenticator.authenticate(
        authorization=authorization,
        worker_id=x_worker_id,
        api_key=x_api_key,
        session_token=x_session_token,
    )


async def client_auth(ctx: AuthContext = Depends(current_auth)) -> AuthContext:
    if ctx.client_id is None:
        raise AuthorizationError("Client credentials required")
    return ctx


async def admin_auth(ctx: AuthContext = Depends(current_auth)) -> AuthContext:
    require_admin(ctx)
    return ctx


async def worker_auth(ctx: AuthContext = Depends(current_auth)) -> AuthContext:
    require_worker(ctx)
    return ctx


async def operator_auth(ctx: AuthContext = Depends(current_auth)) -> AuthContext:
    require_admin_or_worker(ctx)
    return ctx


async def _owned(request: Request, execution_id: str, ctx: AuthContext) -> ExecutionOrchestrator:
    orch = _orchestrator(request)
    summary = await orch.ledger.summary(execution_id)
    ensure_client_access(ctx, summary["client_id"])
    return orch


def _ok(**data: Any) -> dict:
    return {"success": True, **data}


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@router.get("/")
async def index(request: Request) -> dict:
    orch = _orchestrator(request)
    return _ok(service="aifactory-orchestrator", orchestrator_id=orch.settings.orchestrator_id, version="1.0")


@router.get("/health")
async def health(request: Request) -> dict:
    orch = _orchestrator(request)
    return _ok(
        status="healthy" if orch.started else "starting",
        queue_depth=orch.queue.depth,
        active_executions=len(orch.queue.active),
        workers=len(orch.settings.workers),
    )


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------


@router.post("/execute")
async def execute(req: ExecuteRequest, request: Request, ctx: AuthContext = Depends(client_auth)) -> dict:
    """Submit a template for execution."""
    orch = _orchestrator(request)
    result = await orch.submit(
        client_id=ctx.client_id,
        template_name=req.template_name,
        parameters=req.parameters,
        priority=req.priority,
        request_id=req.request_id,
    )
    return _ok(**result)


@router.get("/executions")
async def list_executions(request: Request, status: str | None = None, ctx: AuthContext = Depends(client_auth)) -> dict:
    orch = _orchestrator(request)
    executions = await orch.ledger.list_executions(
        statuses=[status] if status else None,
        client_id=None if ctx.is_admin else ctx.client_id,
    )
    return _ok(executions=[e.to_dict() for e in executions])


@router.get("/progress/{execution_id}")
async def get_progress(execution_id: str, request: Request, ctx: AuthContext = Depends(current_auth)) -> dict:
    orch = await _owned(request, execution_id, ctx)
    return _ok(**await orch.get_progress(execution_id))


@router.get("/execution/{execution_id}")
async def get_execution(execution_id: str, request: Request, ctx: AuthContext = Depends(current_auth)) -> dict:
    orch = await _owned(request, execution_id, ctx)
    return _ok(**await orch.get_execution_detail(execution_id))


@router.post("/execution/{execution_id}/cancel")
async def cancel_execution(execution_id: str, request: Request, ctx: AuthContext = Depends(current_auth)) -> dict:
    orch = await _owned(request, execution_id, ctx)
    return _ok(**await orch.cancel(execution_id))


@router.post("/execution/{execution_id}/retry")
async def retry_execution(execution_id: str, request: Request, ctx: AuthContext = Depends(current_auth)) -> dict:
    orch = await _owned(request, execution_id, ctx)
    return _ok(**await orch.retry(execution_id))


@router.get("/execution/{execution_id}/events")
async def get_events(execution_id: str, request: Request, limit: int = 50, ctx: AuthContext = Depends(current_auth)) -> dict:
    """Recent events (polling fallback for the WebSocket stream)."""
    orch = await _owned(request, execution_id, ctx)
    return _ok(events=await orch.ledger.recent_events(execution_id, limit=limit))


@router.websocket("/execution/{execution_id}/events")
async def event_stream(websocket: WebSocket, execution_id: str):
    """WebSocket stream of one execution's events."""
    await websocket.accept()
    orch: ExecutionOrchestrator = websocket.app.state.orchestrator
    try:
        ctx = await websocket.app.state.authenticator.authenticate(
            authorization=websocket.headers.get("authorization"),
            worker_id=websocket.headers.get("x-worker-id"),
            api_key=websocket.headers.get("x-api-key") or websocket.query_params.get("api_key"),
            session_token=websocket.headers.get("x-session-token"),
        )
        summary = await orch.ledger.summary(execution_id)
        ensure_client_access(ctx, summary["client_id"])
    except (AuthenticationError, AuthorizationError) as e:
        await websocket.close(code=4401 if isinstance(e, AuthenticationError) else 4403, reason=e.message)
        return
    except OrchestratorError as e:
        await websocket.close(code=4004, reason=e.message)
        return

    queue = orch.event_bus.subscribe(execution_id)
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(jsonable_encoder(event.to_dict()))
    except WebSocketDisconnect:
        pass
    finally:
        orch.event_bus.unsubscribe(queue)


@router.get("/queue")
async def get_queue(request: Request, ctx: AuthContext = Depends(admin_auth)) -> dict:
    return _ok(**_orchestrator(request).queue_view())


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


@router.get("/templates")
async def list_templates(request: Request, ctx: AuthContext = Depends(current_auth)) -> dict:
    orch = _orchestrator(request)
    return _ok(templates=[
        {
            "name": t.name,
            "description": t.description,
            "version": t.version,
            "category": t.category,
            "stages": len(t.stages),
        }
        for t in orch.templates.list()
    ])


@router.get("/templates/{name}")
async def get_template(name: str, request: Request, ctx: AuthContext = Depends(current_auth)) -> dict:
    orch = _orchestrator(request)
    template = orch.templates.get(name)
    return _ok(template=template.model_dump(mode="json"), plan=orch.resolver.plan(template).to_dict())


@router.post("/estimate")
async def estimate(req: EstimateRequest, request: Request, ctx: AuthContext = Depends(current_auth)) -> dict:
    return _ok(**await _orchestrator(request).estimate(req.template_name, req.parameters))


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


@router.post("/resources/check")
async def check_resources(req: RequirementsRequest, request: Request, ctx: AuthContext = Depends(current_auth)) -> dict:
    return _ok(**_orchestrator(request).resources.check_availability(req.as_requirements()))


@router.post("/resources/allocate")
async def allocate_resources(req: AllocateRequest, request: Request, ctx: AuthContext = Depends(operator_auth)) -> dict:
    orch = _orchestrator(request)
    await orch.ledger.get_execution(req.execution_id)
    allocation = await orch.resources.allocate(req.execution_id, req.as_requirements())
    return _ok(**allocation.to_dict())


@router.post("/resources/release")
async def release_resources(req: ReleaseRequest, request: Request, ctx: AuthContext = Depends(operator_auth)) -> dict:
    orch = _orchestrator(request)
    released = await orch.resources.release(req.allocation_ids)
    if req.execution_id:
        released += await orch.resources.release_execution(req.execution_id)
    return _ok(released=released)


@router.post("/resources/usage")
async def record_usage(req: UsageRequest, request: Request, ctx: AuthContext = Depends(operator_auth)) -> dict:
    orch = _orchestrator(request)
    return _ok(**await orch.record_usage(req.execution_id, req.resource_name, req.quantity, req.cost_usd, req.stage_id))


@router.get("/resources/status")
async def resource_status(request: Request, ctx: AuthContext = Depends(admin_auth)) -> dict:
    return _ok(resources=_orchestrator(request).resources.status())


@router.get("/resources/availability")
async def resource_availability(request: Request, ctx: AuthContext = Depends(current_auth)) -> dict:
    rows = _orchestrator(request).resources.status()
    return _ok(resources=[
        {"name": r["name"], "resource_type": r["resource_type"], "available": r["available"], "utilization": r["utilization"]}
        for r in rows
    ])


@router.get("/resources/quotas")
async def resource_quotas(request: Request, ctx: AuthContext = Depends(admin_auth)) -> dict:
    return _ok(quotas=_orchestrator(request).resources.quotas())


# ---------------------------------------------------------------------------
# Handshake (worker-authenticated)
# ---------------------------------------------------------------------------


@router.post("/handshake/receive")
async def handshake_receive(packet: HandshakePacket, request: Request, ctx: AuthContext = Depends(worker_auth)) -> dict:
    ack = await _orchestrator(request).coordinator.receive(packet, ctx.worker_id)
    return _ok(acknowledgment=ack.model_dump(mode="json"))


@router.post("/handshake/acknowledge")
async def handshake_acknowledge(ack: HandshakeAcknowledgment, request: Request, ctx: AuthContext = Depends(worker_auth)) -> dict:
    return _ok(**await _orchestrator(request).coordinator.acknowledge(ack, ctx.worker_id))


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------


@router.get("/workers")
async def get_workers(request: Request, ctx: AuthContext = Depends(admin_auth)) -> dict:
    return _ok(workers=_orchestrator(request).workers_view())


@router.get("/metrics")
async def get_metrics(request: Request, window_hours: float = 24, ctx: AuthContext = Depends(admin_auth)) -> dict:
    if window_hours <= 0:
        raise ValidationError("window_hours must be positive")
    return _ok(metrics=await _orchestrator(request).metrics(window_hours * 3600))


# ---------------------------------------------------------------------------
# Error envelopes
# ---------------------------------------------------------------------------


async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Invalid request body",
            "code": "invalid_request",
            "details": jsonable_encoder(exc.errors(), custom_encoder={Exception: str}),
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    correlation_id = generate_id()
    logger.error(f"Unhandled error [{correlation_id}] on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "correlation_id": correlation_id},
    )


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
    identity: IdentityService | None = None,
    templates: TemplateRegistry | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    orchestrator = ExecutionOrchestrator(settings, templates=templates, http_client=http_client)
    if identity is None:
        if settings.identity_url:
            identity = RemoteIdentityService(settings.identity_url, http_client=orchestrator.http)
        else:
            identity = StaticIdentityService(settings.clients)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await orchestrator.start()
        yield
        await orchestrator.stop()

    app = FastAPI(
        title="AI Factory Orchestrator",
        version="1.0",
        description="Pipeline execution engine for the AI factory workers",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.authenticator = Authenticator(settings.workers, identity)

    app.add_exception_handler(OrchestratorError, orchestrator_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router)
    return app


app = create_app()


# ---------------------------------------------------------------------------
# Entry Point
# ---------------------------------------------------------------------------


def main():
    """Start the orchestrator server."""
    settings = app.state.settings
    print(f"Starting AI factory orchestrator on {settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="info")


if __name__ == "__main__":
    main()
