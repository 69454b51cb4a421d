"""Authentication: workers, API keys and sessions resolve to an AuthContext."""

from __future__ import annotations

import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import httpx

from aifactory.errors import AuthenticationError, AuthorizationError

if TYPE_CHECKING:
    from aifactory.config import ClientCredential, WorkerDescriptor

logger = logging.getLogger(__name__)

ADMIN_PERMISSIONS = frozenset({"all", "admin"})


@dataclass(frozen=True)
class AuthContext:
    kind: str  # worker | api_key | session
    client_id: str | None = None
    worker_id: str | None = None
    user_id: str | None = None
    permissions: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return bool(self.permissions & ADMIN_PERMISSIONS)

    @property
    def is_worker(self) -> bool:
        return self.kind == "worker"


@dataclass(frozen=True)
class Identity:
    client_id: str
    permissions: frozenset[str]
    user_id: str | None = None


class IdentityService(ABC):
    """Validates client credentials. Returns None for unknown credentials."""

    @abstractmethod
    async def validate_api_key(self, api_key: str) -> Identity | None: ...

    @abstractmethod
    async def validate_session(self, token: str) -> Identity | None: ...


class StaticIdentityService(IdentityService):
    """Clients from configuration. Sessions are not supported."""

    def __init__(self, clients: dict[str, "ClientCredential"]):
        self._clients = clients

    async def validate_api_key(self, api_key: str) -> Identity | None:
        for client in self._clients.values():
            if hmac.compare_digest(client.api_key, api_key):
                return Identity(client_id=client.client_id, permissions=frozenset(client.permissions))
        return None

    async def validate_session(self, token: str) -> Identity | None:
        return None


class RemoteIdentityService(IdentityService):
    """Asks an external identity service over HTTP."""

    def __init__(self, base_url: str, http_client: httpx.AsyncClient | None = None, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self._http = http_client or httpx.AsyncClient()
        self.timeout = timeout

    async def validate_api_key(self, api_key: str) -> Identity | None:
        return await self._validate("/validate/api-key", {"api_key": api_key})

    async def validate_session(self, token: str) -> Identity | None:
        return await self._validate("/validate/session", {"session_token": token})

    async def _validate(self, path: str, body: dict) -> Identity | None:
        try:
            resp = await self._http.post(f"{self.base_url}{path}", json=body, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.error(f"Identity service unreachable: {e}")
            raise AuthenticationError("Identity service unavailable") from e
        if resp.status_code in (401, 403, 404):
            return None
        if not resp.is_success:
            logger.error(f"Identity service returned HTTP {resp.status_code}")
            raise AuthenticationError("Identity service unavailable")
        data = resp.json()
        if not data.get("valid"):
            return None
        return Identity(
            client_id=data["client_id"],
            permissions=frozenset(data.get("permissions", [])),
            user_id=data.get("user_id"),
        )


class Authenticator:
    def __init__(self, workers: dict[str, "WorkerDescriptor"], identity: IdentityService):
        self._workers = workers
        self._identity = identity

    async def authenticate(
        self,
        authorization: str | None = None,
        worker_id: str | None = None,
        api_key: str | None = None,
        session_token: str | None = None,
    ) -> AuthContext:
        if worker_id:
            return self._authenticate_worker(worker_id, authorization)
        if api_key:
            identity = await self._identity.validate_api_key(api_key)
            if identity is None:
                raise AuthenticationError("Invalid API key")
            return AuthContext(kind="api_key", client_id=identity.client_id, user_id=identity.user_id, permissions=identity.permissions)
        if session_token:
            identity = await self._identity.validate_session(session_token)
            if identity is None:
                raise AuthenticationError("Invalid or expired session")
            return AuthContext(kind="session", client_id=identity.client_id, user_id=identity.user_id, permissions=identity.permissions)
        raise AuthenticationError("Missing credentials")

    def _authenticate_worker(self, worker_id: str, authorization: str | None) -> AuthContext:
        worker = self._workers.get(worker_id)
        if worker is None or not worker.secret:
            raise AuthenticationError(f"Unknown worker {worker_id}")
        if not authorization or not authorization.startswith("Bearer "):
            raise AuthenticationError("Missing worker bearer token")
        token = authorization[len("Bearer "):]
        if not hmac.compare_digest(token, worker.secret):
            raise AuthenticationError("Invalid worker credentials")
        return AuthContext(kind="worker", worker_id=worker_id, permissions=frozenset({"worker"}))


def require_admin(ctx: AuthContext):
    if not ctx.is_admin:
        raise AuthorizationError("Admin permission required")


def require_worker(ctx: AuthContext):
    if not ctx.is_worker:
        raise AuthorizationError("Worker credentials required")


def require_admin_or_worker(ctx: AuthContext):
    if not (ctx.is_admin or ctx.is_worker):
        raise AuthorizationError("Admin or worker credentials required")


def ensure_client_access(ctx: AuthContext, owner_client_id: str):
    """Clients only see their own executions; admins see everything."""
    if ctx.is_admin:
        return
    if ctx.is_worker or ctx.client_id != owner_client_id:
        raise AuthorizationError("Not allowed to access this execution")
