"""
API Error Handling
==================

Every error the blueprint API returns has the same JSON body::

    {"error_code": "...", "message": "...", "details": {...}, "timestamp": "..."}

Engine exceptions are raised as-is by the executor and CRUD layer and
translated here, so the engine never imports FastAPI:

| Engine exception                                   | Status | error_code        |
|----------------------------------------------------|--------|-------------------|
| BlueprintNotFound, NodeNotFound                    | 404    | NOT_FOUND         |
| NodeNotRunnable, BlueprintNotRunnable              | 409    | CONFLICT          |
| InvalidStateTransition, DependencyCycleError       | 409    | CONFLICT          |
| UnknownDependencyError, UnknownAgentType           | 422    | VALIDATION_ERROR  |
| PlanAssistantError                                 | 422    | VALIDATION_ERROR  |
| AgentBinaryNotFound                                | 503    | AGENT_UNAVAILABLE |
| TransactionError                                   | 500    | DATABASE_ERROR    |
"""

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from clawui.agent_runtime import AgentBinaryNotFound
from clawui.blueprint_executor import (
    BlueprintNotFound,
    BlueprintNotRunnable,
    NodeNotFound,
    NodeNotRunnable,
)
from clawui.database import TransactionError
from clawui.dependency_graph import DependencyCycleError
from clawui.plan_assistant import PlanAssistantError
from clawui.plan_crud import UnknownDependencyError
from clawui.plan_models import InvalidStateTransition
from clawui.runtime_registry import UnknownAgentType

_logger = logging.getLogger(__name__)


# =============================================================================
# Response Body
# =============================================================================


class ErrorResponse(BaseModel):
    """Body of every non-2xx response."""

    error_code: str = Field(..., description="Stable code for clients to branch on")
    message: str = Field(..., description="What went wrong, for humans")
    details: dict[str, Any] | None = Field(default=None, description="Ids, states or field errors")
    timestamp: str | None = Field(default=None, description="ISO 8601, UTC")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error_code": "CONFLICT",
                "message": "Node n1 cannot run (status 'running'): Node is running",
                "details": {"node_id": "n1", "status": "running"},
                "timestamp": "2025-01-01T00:00:00+00:00",
            }
        }
    )


class ErrorCode:
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    FORBIDDEN = "FORBIDDEN"
    DATABASE_ERROR = "DATABASE_ERROR"
    AGENT_UNAVAILABLE = "AGENT_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_CODE_FOR_STATUS = {
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.CONFLICT,
    422: ErrorCode.VALIDATION_ERROR,
    503: ErrorCode.AGENT_UNAVAILABLE,
}


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_error_response(
    error_code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"error_code": error_code, "message": message, "timestamp": _timestamp()}
    if details is not None:
        body["details"] = details
    return body


# =============================================================================
# API Exceptions
# =============================================================================


class APIError(Exception):
    """An error with a fixed HTTP status and error code."""

    def __init__(
        self,
        error_code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.error_code = error_code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error_code=self.error_code,
            message=self.message,
            details=self.details,
            timestamp=_timestamp(),
        )


class NotFoundError(APIError):
    """
    A blueprint, node or execution id that does not exist.

    Example:
        raise NotFoundError("node", node_id)
        # {"error_code": "NOT_FOUND", "message": "Node 'abc' not found", ...}
    """

    def __init__(self, resource: str, identifier: Any = None):
        if identifier is None:
            message = f"{resource.title()} not found"
            details: dict[str, Any] = {"resource": resource}
        else:
            message = f"{resource.title()} '{identifier}' not found"
            details = {"resource": resource, "id": identifier}
        super().__init__(ErrorCode.NOT_FOUND, message, status.HTTP_404_NOT_FOUND, details)


class ConflictError(APIError):
    """The request is valid but the blueprint or node is in the wrong state for it."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(ErrorCode.CONFLICT, message, status.HTTP_409_CONFLICT, details)


class ValidationError(APIError):
    """
    Input that passed schema validation but refers to something invalid,
    such as a dependency id from another blueprint.
    """

    def __init__(self, message: str, field: str | None = None, value: Any = None):
        details: dict[str, Any] = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]
        super().__init__(
            ErrorCode.VALIDATION_ERROR,
            message,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            details or None,
        )


class DatabaseError(APIError):
    # The underlying error is logged, never returned
    def __init__(self, message: str = "A database error occurred"):
        super().__init__(ErrorCode.DATABASE_ERROR, message, status.HTTP_500_INTERNAL_SERVER_ERROR)


class AgentUnavailableError(APIError):
    """The blueprint's agent CLI is not installed or not executable."""

    def __init__(self, message: str, agent_type: str | None = None):
        super().__init__(
            ErrorCode.AGENT_UNAVAILABLE,
            message,
            status.HTTP_503_SERVICE_UNAVAILABLE,
            {"agent_type": agent_type} if agent_type else None,
        )


# =============================================================================
# Engine Exception Mapping
# =============================================================================

ENGINE_EXCEPTIONS = (
    BlueprintNotFound,
    NodeNotFound,
    NodeNotRunnable,
    BlueprintNotRunnable,
    InvalidStateTransition,
    DependencyCycleError,
    UnknownDependencyError,
    PlanAssistantError,
    UnknownAgentType,
    AgentBinaryNotFound,
    TransactionError,
)


def to_api_error(exc: Exception) -> APIError | None:
    """The APIError an engine exception is reported as, or None if it is not one."""
    if isinstance(exc, APIError):
        return exc
    if isinstance(exc, BlueprintNotFound):
        return NotFoundError("blueprint", exc.blueprint_id)
    if isinstance(exc, NodeNotFound):
        return NotFoundError("node", exc.node_id)
    if isinstance(exc, NodeNotRunnable):
        return ConflictError(str(exc), {"node_id": exc.node_id, "status": exc.status, "reason": exc.reason})
    if isinstance(exc, BlueprintNotRunnable):
        return ConflictError(str(exc), {"blueprint_id": exc.blueprint_id, "status": exc.status})
    if isinstance(exc, InvalidStateTransition):
        return ConflictError(str(exc), {
            "entity": exc.entity,
            "entity_id": exc.entity_id,
            "current_state": exc.current_state,
            "target_state": exc.target_state,
        })
    if isinstance(exc, DependencyCycleError):
        return ConflictError(str(exc), {"node_id": exc.node_id, "cycle": exc.cycle})
    if isinstance(exc, UnknownDependencyError):
        return ValidationError(str(exc), field="dependencies", value=exc.missing)
    if isinstance(exc, PlanAssistantError):
        return ValidationError(str(exc))
    if isinstance(exc, UnknownAgentType):
        return ValidationError(str(exc), field="agent_type", value=exc.agent_type)
    if isinstance(exc, AgentBinaryNotFound):
        return AgentUnavailableError(str(exc), exc.agent_type)
    if isinstance(exc, TransactionError):
        return DatabaseError(str(exc))
    return None


# =============================================================================
# Handlers
# =============================================================================


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc.error_code, exc.message, exc.details),
    )


async def engine_error_handler(request: Request, exc: Exception) -> JSONResponse:
    api_error = to_api_error(exc)
    if api_error is None:
        return await generic_exception_handler(request, exc)
    if api_error.status_code >= 500:
        _logger.error("Engine error on %s %s: %s", request.method, request.url.path, exc)
    return await api_error_handler(request, api_error)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Flatten pydantic's error list into ``details.errors`` with dotted field paths."""
    errors = []
    for error in exc.errors():
        path = [str(p) for p in error.get("loc", ()) if p != "body"]
        errors.append({
            "field": ".".join(path) or "request",
            "message": error.get("msg", "Invalid value"),
            "type": error.get("type", "value_error"),
        })

    if len(errors) == 1:
        message = f"Invalid '{errors[0]['field']}': {errors[0]['message']}"
    else:
        message = f"Request has {len(errors)} invalid fields"
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=create_error_response(ErrorCode.VALIDATION_ERROR, message, {"errors": errors}),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    error_code = _CODE_FOR_STATUS.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = str(exc.detail) if exc.detail else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(error_code, message),
    )


async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    _logger.exception("Database error on %s %s", request.method, request.url.path)
    if isinstance(exc, IntegrityError):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=create_error_response(ErrorCode.CONFLICT, "Write conflicts with existing data"),
        )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(ErrorCode.DATABASE_ERROR, "A database error occurred"),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    _logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred"),
    )


def register_exception_handlers(app) -> None:
    """Install the handlers on ``app``; most specific first, catch-all last."""
    app.add_exception_handler(APIError, api_error_handler)
    for exc_class in ENGINE_EXCEPTIONS:
        app.add_exception_handler(exc_class, engine_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
