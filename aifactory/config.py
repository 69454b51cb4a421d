"""Configuration loading and defaults.

Reads from config.toml at the project root, with .env and environment
variable overrides. Nothing outside this module reads the environment.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from aifactory.models import ResourceDefinition

logger = logging.getLogger(__name__)

_project_root = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = _project_root / "config.toml"


@dataclass
class WorkerDescriptor:
    """A registered worker: where it lives and how it authenticates."""

    name: str
    endpoint: str
    secret: str = ""
    max_concurrent: int = 1
    capabilities: list[str] = field(default_factory=list)
    process_path: str = "/process"

    @property
    def slot_resource(self) -> str:
        return f"worker_slots:{self.name}"

    def to_dict(self) -> dict:
        # never expose the secret
        return {
            "name": self.name,
            "endpoint": self.endpoint,
            "max_concurrent": self.max_concurrent,
            "capabilities": self.capabilities,
            "slot_resource": self.slot_resource,
        }


@dataclass
class ClientCredential:
    client_id: str
    api_key: str
    permissions: list[str] = field(default_factory=lambda: ["execute"])


@dataclass
class Settings:
    host: str = "0.0.0.0"
    port: int = 8000
    orchestrator_id: str = "aifactory-orchestrator"
    database_path: str = ":memory:"
    templates_dir: Path | None = None
    blob_dir: Path | None = None
    event_log: Path | None = None
    inline_threshold_bytes: int = 10 * 1024
    queue_tick_seconds: float = 1.0
    max_concurrent_executions: int = 4
    progress_ttl: float = 30
    handshake_ttl: float = 300
    data_ref_ttl: float = 3600
    allocation_ttl: float = 3600
    resource_wait_seconds: float = 300
    workers: dict[str, WorkerDescriptor] = field(default_factory=dict)
    resources: dict[str, ResourceDefinition] = field(default_factory=dict)
    clients: dict[str, ClientCredential] = field(default_factory=dict)
    identity_url: str | None = None

    def resource_definitions(self) -> list[ResourceDefinition]:
        """Configured resources plus one concurrency pool per worker."""
        definitions = dict(self.resources)
        for worker in self.workers.values():
            definitions.setdefault(
                worker.slot_resource,
                ResourceDefinition(
                    name=worker.slot_resource,
                    resource_type="compute",
                    limit=worker.max_concurrent,
                    unit="slots",
                ),
            )
        return list(definitions.values())


def _env(name: str, default):
    return os.getenv(f"AIFACTORY_{name}", default)


def _optional_path(value, base: Path) -> Path | None:
    """Relative paths in the config file are relative to the file itself."""
    if not value:
        return None
    path = Path(value)
    return path if path.is_absolute() else base / path


def load_settings(path: Path | str | None = None) -> Settings:
    """Build settings from defaults, config.toml, .env and AIFACTORY_* variables."""
    load_dotenv(_project_root / ".env")
    load_dotenv()  # also check cwd

    toml_path = Path(path) if path else Path(_env("CONFIG", DEFAULT_CONFIG_PATH))
    cfg: dict = {}
    if toml_path.exists():
        with open(toml_path, "rb") as f:
            cfg = tomllib.load(f)
        logger.debug(f"Loaded configuration from {toml_path}")

    server = cfg.get("server", {})
    orch = cfg.get("orchestrator", {})
    defaults = Settings()
    base = toml_path.resolve().parent if toml_path.exists() else _project_root
    database_path = _env("DATABASE_PATH", orch.get("database_path", defaults.database_path))
    if database_path != ":memory:":
        database_path = str(_optional_path(database_path, base))

    workers: dict[str, WorkerDescriptor] = {}
    for name, section in cfg.get("workers", {}).items():
        secret_env = section.get("secret_env", f"{name.upper()}_SECRET")
        workers[name] = WorkerDescriptor(
            name=name,
            endpoint=section["endpoint"].rstrip("/"),
            secret=os.getenv(secret_env, ""),
            max_concurrent=int(section.get("max_concurrent", 1)),
            capabilities=list(section.get("capabilities", [])),
            process_path=section.get("process_path", "/process"),
        )
        if not workers[name].secret:
            logger.warning(f"Worker {name} has no secret ({secret_env} unset)")

    resources: dict[str, ResourceDefinition] = {}
    for name, section in cfg.get("resources", {}).items():
        resources[name] = ResourceDefinition(
            name=name,
            resource_type=section.get("type", "api"),
            limit=float(section.get("limit", -1)),
            period=section.get("period"),
            cost_per_unit=float(section.get("cost_per_unit", 0.0)),
            unit=section.get("unit", "units"),
        )

    clients: dict[str, ClientCredential] = {}
    for client_id, section in cfg.get("clients", {}).items():
        api_key = os.getenv(section.get("api_key_env", ""), "") if section.get("api_key_env") else ""
        if not api_key:
            logger.warning(f"Client {client_id} has no API key configured")
            continue
        clients[client_id] = ClientCredential(
            client_id=client_id,
            api_key=api_key,
            permissions=list(section.get("permissions", ["execute"])),
        )

    return Settings(
        host=_env("HOST", server.get("host", defaults.host)),
        port=int(_env("PORT", server.get("port", defaults.port))),
        orchestrator_id=_env("ORCHESTRATOR_ID", orch.get("orchestrator_id", defaults.orchestrator_id)),
        database_path=database_path,
        templates_dir=_optional_path(_env("TEMPLATES_DIR", orch.get("templates_dir", "templates")), base),
        blob_dir=_optional_path(_env("BLOB_DIR", orch.get("blob_dir")), base),
        event_log=_optional_path(_env("EVENT_LOG", orch.get("event_log")), base),
        inline_threshold_bytes=int(_env("INLINE_THRESHOLD", orch.get("inline_threshold_bytes", defaults.inline_threshold_bytes))),
        queue_tick_seconds=float(_env("QUEUE_TICK", orch.get("queue_tick_seconds", defaults.queue_tick_seconds))),
        max_concurrent_executions=int(_env("MAX_EXECUTIONS", orch.get("max_concurrent_executions", defaults.max_concurrent_executions))),
        progress_ttl=float(_env("PROGRESS_TTL", orch.get("progress_ttl", defaults.progress_ttl))),
        handshake_ttl=float(_env("HANDSHAKE_TTL", orch.get("handshake_ttl", defaults.handshake_ttl))),
        data_ref_ttl=float(_env("DATA_REF_TTL", orch.get("data_ref_ttl", defaults.data_ref_ttl))),
        allocation_ttl=float(_env("ALLOCATION_TTL", orch.get("allocation_ttl", defaults.allocation_ttl))),
        resource_wait_seconds=float(_env("RESOURCE_WAIT", orch.get("resource_wait_seconds", defaults.resource_wait_seconds))),
        workers=workers,
        resources=resources,
        clients=clients,
        identity_url=_env("IDENTITY_URL", cfg.get("identity", {}).get("url")),
    )
