"""
Blueprint Pydantic Schemas
==========================

Request/Response schemas for the blueprint execution endpoints.

These schemas provide:
- Input validation for API requests
- Response serialization
- OpenAPI documentation

Mirrors the SQLAlchemy models in clawui/plan_models.py
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Constants (must match clawui/plan_models.py)
# =============================================================================

BLUEPRINT_STATUSES = Literal["draft", "approved", "running", "paused", "done", "failed"]
NODE_STATUSES = Literal["pending", "queued", "running", "done", "failed", "blocked", "skipped"]
AGENT_TYPES = Literal["claude", "openclaw", "pimono", "pi"]
REPORTED_STATUSES = Literal["done", "failed", "blocked"]
EVALUATION_STATUSES = Literal["COMPLETE", "NEEDS_REFINEMENT", "HAS_BLOCKER"]
MUTATION_ACTIONS = Literal["INSERT_BETWEEN", "ADD_SIBLING"]


# =============================================================================
# Blueprint / Node Schemas
# =============================================================================

class BlueprintCreate(BaseModel):
    """Request schema for creating a Blueprint."""

    title: str = Field(..., min_length=1, max_length=255, description="Short plan title")
    description: str | None = Field(default=None, max_length=20000, description="What the plan should achieve")
    project_cwd: str | None = Field(default=None, description="Working directory the agent runs in")
    agent_type: AGENT_TYPES | None = Field(
        default=None,
        description="Agent runtime; defaults to the server's AGENT_TYPE"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "title": "Add login page",
                "description": "Email/password login with session cookie",
                "project_cwd": "/home/me/projects/webapp",
                "agent_type": "claude",
            }
        }


class NodeCreate(BaseModel):
    """Request schema for adding a MacroNode to a Blueprint."""

    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=20000)
    prompt: str | None = Field(default=None, description="Extra instructions appended to the task")
    order: int | None = Field(default=None, ge=0, description="Display order; appended last if omitted")
    dependencies: list[str] = Field(default_factory=list, description="IDs of nodes that must finish first")
    estimated_minutes: float | None = Field(default=None, ge=0)
    parallel_group: str | None = Field(default=None, max_length=100)

    @field_validator("dependencies")
    @classmethod
    def dedupe_dependencies(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(v))


class NodeResponse(BaseModel):
    """Response schema for a MacroNode."""

    id: str
    blueprint_id: str
    order: int
    title: str
    description: str | None
    status: str
    dependencies: list[str]
    parallel_group: str | None
    prompt: str | None
    estimated_minutes: float | None
    actual_minutes: float | None
    error: str | None
    created_at: datetime
    updated_at: datetime

    @field_validator("dependencies", mode="before")
    @classmethod
    def coerce_dependencies(cls, v: Any) -> list[str]:
        if not isinstance(v, list):
            return []
        return [d for d in v if isinstance(d, str)]

    class Config:
        from_attributes = True


class BlueprintResponse(BaseModel):
    """Response schema for a Blueprint, optionally with its nodes."""

    id: str
    title: str
    description: str | None
    status: str
    project_cwd: str | None
    agent_type: str
    created_at: datetime
    updated_at: datetime
    nodes: list[NodeResponse] = Field(default_factory=list)

    class Config:
        from_attributes = True


class ExecutionResponse(BaseModel):
    """Response schema for a NodeExecution."""

    id: str
    node_id: str
    blueprint_id: str
    session_id: str | None
    type: str
    status: str
    input_context: str | None
    output_summary: str | None
    parent_execution_id: str | None
    cli_pid: int | None
    blocker_info: str | None
    task_summary: str | None
    failure_reason: str | None
    detail: str | None
    compact_count: int | None
    peak_tokens: int | None
    context_pressure: str | None
    reported_status: str | None
    reported_reason: str | None
    started_at: datetime
    completed_at: datetime | None

    class Config:
        from_attributes = True


class ExecutionListResponse(BaseModel):
    executions: list[ExecutionResponse]
    total: int


# =============================================================================
# Run Control Schemas
# =============================================================================

class RunQueuedResponse(BaseModel):
    """Returned when a run was accepted into the blueprint's queue."""

    status: Literal["queued", "already_running", "nothing_to_do"]
    blueprint_id: str
    node_id: str | None = None
    message: str


class UnqueueResponse(BaseModel):
    node_id: str
    removed: bool


class CancelResponse(BaseModel):
    node_id: str
    removed_from_queue: bool
    cancelled_execution_id: str | None


class ResumeSessionRequest(BaseModel):
    prompt: str | None = Field(default=None, max_length=20000, description="Message for the resumed session")


# =============================================================================
# Plan Assistant Schemas
# =============================================================================

class GenerateRequest(BaseModel):
    description: str | None = Field(
        default=None, max_length=20000, description="What to plan; defaults to the blueprint description"
    )


class RelatedSessionResponse(BaseModel):
    """An auxiliary agent session (evaluation, split, ...) spawned for a node."""

    id: str
    node_id: str
    blueprint_id: str
    session_id: str
    type: str
    started_at: datetime
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class RelatedSessionListResponse(BaseModel):
    related_sessions: list[RelatedSessionResponse]
    total: int


# =============================================================================
# Agent Callback Schemas
# =============================================================================

class ReportStatusRequest(BaseModel):
    """Final status reported by the agent for its execution."""

    status: REPORTED_STATUSES
    reason: str | None = Field(default=None, max_length=5000)


class TaskSummaryRequest(BaseModel):
    summary: str = Field(..., min_length=1, max_length=20000)


class ReportBlockerRequest(BaseModel):
    """A blocker the agent could not resolve on its own."""

    type: str = Field(
        ..., min_length=1, max_length=50,
        description="missing_dependency, unclear_requirement, access_issue or technical_limitation"
    )
    description: str = Field(..., min_length=1, max_length=5000)
    suggestion: str | None = Field(default=None, max_length=5000)


class CallbackResponse(BaseModel):
    ok: bool = True
    execution_id: str


class NewNodeSpec(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(default="", max_length=20000)


class GraphMutation(BaseModel):
    action: MUTATION_ACTIONS
    new_node: NewNodeSpec


class EvaluationCallbackRequest(BaseModel):
    """Post-completion evaluation of a node, with optional graph changes."""

    evaluation: str = Field(default="", max_length=20000)
    status: EVALUATION_STATUSES
    mutations: list[GraphMutation] = Field(default_factory=list)


class EvaluationCallbackResponse(BaseModel):
    status: EVALUATION_STATUSES
    created_nodes: list[NodeResponse]
    rewired: list[dict[str, Any]]


# =============================================================================
# Queue Schemas
# =============================================================================

class PendingTaskResponse(BaseModel):
    type: str
    node_id: str | None
    queued_at: datetime


class QueueInfoResponse(BaseModel):
    running: bool
    queue_length: int
    pending_tasks: list[PendingTaskResponse]
    running_node_id: str | None = None


class GlobalStatusResponse(BaseModel):
    """Aggregate queue state across blueprints, for dashboard polling."""

    active: bool
    total_pending: int
    tasks: list[dict[str, Any]]
    session_activity: dict[str, Any] | None = None
