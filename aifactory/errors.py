"""Error taxonomy shared by the orchestrator and its HTTP surface.

Every error carries the HTTP status it maps to and a short machine code.
Handlers raise these; the server's exception handlers render them into the
``{success: false, error, code}`` envelope.
"""

from __future__ import annotations

from typing import Any


class OrchestratorError(Exception):
    """Base exception for the orchestrator."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class AuthenticationError(OrchestratorError):
    """Missing or invalid credentials."""

    status_code = 401
    code = "unauthenticated"


class AuthorizationError(OrchestratorError):
    """Valid identity, insufficient scope."""

    status_code = 403
    code = "forbidden"


class NotFoundError(OrchestratorError):
    status_code = 404
    code = "not_found"


class ValidationError(OrchestratorError):
    status_code = 400
    code = "invalid_request"


class ConflictError(OrchestratorError):
    """The request is valid but the target is in the wrong state."""

    status_code = 409
    code = "conflict"


class ResourceExhaustedError(OrchestratorError):
    status_code = 429
    code = "resource_exhausted"

    def __init__(self, message: str = "", wait_estimate_ms: int = 0, **details: Any):
        super().__init__(message, wait_estimate_ms=wait_estimate_ms, **details)
        self.wait_estimate_ms = wait_estimate_ms


class WorkerUnavailableError(OrchestratorError):
    """Dispatch failed after the stage's retry policy was exhausted."""

    status_code = 502
    code = "worker_unavailable"

    def __init__(self, message: str = "", attempts: int = 0, **details: Any):
        super().__init__(message, attempts=attempts, **details)
        self.attempts = attempts


class PipelineAborted(OrchestratorError):
    """A skip condition with action ``abort`` matched."""

    status_code = 422
    code = "pipeline_aborted"


class TemplateNotFound(NotFoundError):
    code = "template_not_found"


class InvalidTemplate(ValidationError):
    code = "invalid_template"
