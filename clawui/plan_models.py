"""
Blueprint Database Models
=========================

SQLAlchemy models for the blueprint execution engine:

- Blueprint: a user-defined multi-step task
- MacroNode: one DAG vertex, a unit of agent work
- Artifact: immutable handoff payload produced by a node
- NodeExecution: one attempt to run a MacroNode through an agent CLI
- RelatedSession: auxiliary agent sessions spawned for a node

Node and execution status changes go through ``transition_to()`` which
enforces the state machines below and logs every move.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import JSON

from clawui.database import Base, _utc_now

_logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

BLUEPRINT_STATUS = ["draft", "approved", "running", "paused", "done", "failed"]

NODE_STATUS = ["pending", "queued", "running", "done", "failed", "blocked", "skipped"]

EXECUTION_STATUS = ["running", "done", "failed", "cancelled"]

EXECUTION_TYPE = ["primary", "retry", "continuation", "subtask"]

ARTIFACT_TYPE = ["handoff_summary", "file_diff", "test_report", "custom"]

FAILURE_REASON = [
    "timeout",
    "context_exhausted",
    "output_token_limit",
    "hung",
    "error",
    "interrupted",
]

REPORTED_STATUS = ["done", "failed", "blocked"]

# Ordinal: later entries are worse
CONTEXT_PRESSURE = ["none", "moderate", "high", "critical"]

RELATED_SESSION_TYPE = [
    "enrich",
    "reevaluate",
    "split",
    "evaluate",
    "reevaluate_all",
    "generate",
    "smart_deps",
]

AGENT_TYPE = ["claude", "openclaw", "pimono"]

# A dependency in one of these states lets dependents run
SATISFIED_NODE_STATUSES = frozenset({"done", "skipped"})

TERMINAL_EXECUTION_STATUSES = frozenset({"done", "failed", "cancelled"})

BLUEPRINT_STATE_TRANSITIONS: dict[str, frozenset[str]] = {
    "draft": frozenset({"approved"}),
    "approved": frozenset({"running", "draft", "done"}),
    "running": frozenset({"done", "failed", "paused", "approved"}),
    "paused": frozenset({"running", "approved"}),
    "done": frozenset({"running", "approved"}),
    "failed": frozenset({"running", "approved"}),
}

NODE_STATE_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"queued", "running", "blocked", "skipped"}),
    "queued": frozenset({"running", "pending", "skipped"}),
    "running": frozenset({"done", "failed", "blocked", "pending"}),
    "failed": frozenset({"pending", "queued", "running", "blocked", "skipped"}),
    "blocked": frozenset({"pending", "queued", "running", "skipped"}),
    "done": frozenset({"pending"}),
    "skipped": frozenset({"pending"}),
}

EXECUTION_STATE_TRANSITIONS: dict[str, frozenset[str]] = {
    "running": frozenset({"done", "failed", "cancelled"}),
    "done": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}

# Prefix on MacroNode.error for nodes blocked by a failed dependency, as
# opposed to blockers reported by the agent itself.
DEPENDENCY_BLOCKED_PREFIX = "Blocked by failed dependency"


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _iso(value: datetime | None) -> str | None:
    value = ensure_utc(value)
    return value.isoformat() if value else None


class InvalidStateTransition(Exception):
    """
    Raised when an invalid state transition is attempted on a blueprint,
    node or execution.
    """

    def __init__(
        self,
        entity: str,
        entity_id: str,
        current_state: str,
        target_state: str,
        valid_targets: frozenset[str] = frozenset(),
        message: str | None = None,
    ):
        self.entity = entity
        self.entity_id = entity_id
        self.current_state = current_state
        self.target_state = target_state

        if message is None:
            if valid_targets:
                valid_str = ", ".join(sorted(valid_targets))
                message = (
                    f"Invalid state transition for {entity} {entity_id}: "
                    f"'{current_state}' -> '{target_state}'. "
                    f"Valid transitions from '{current_state}': {valid_str}"
                )
            else:
                message = (
                    f"Invalid state transition for {entity} {entity_id}: "
                    f"'{current_state}' -> '{target_state}'. "
                    f"'{current_state}' is a terminal state with no valid transitions."
                )

        super().__init__(message)


class _StateMachineMixin:
    """Shared ``transition_to`` for models with a ``status`` column."""

    _entity_name: str = ""
    _statuses: list[str] = []
    _transitions: dict[str, frozenset[str]] = {}

    def can_transition_to(self, target_status: str) -> bool:
        return target_status in self._transitions.get(self.status, frozenset())

    def get_valid_transitions(self) -> frozenset[str]:
        return self._transitions.get(self.status, frozenset())

    def transition_to(self, target_status: str) -> datetime:
        """
        Move to ``target_status`` after validating it against the state machine.

        Returns:
            The timestamp of the transition

        Raises:
            InvalidStateTransition: If the transition is not valid
            ValueError: If target_status is not a recognized status
        """
        if target_status not in self._statuses:
            raise ValueError(
                f"Unknown status '{target_status}'. "
                f"Valid statuses: {', '.join(self._statuses)}"
            )
        if not self.can_transition_to(target_status):
            raise InvalidStateTransition(
                entity=self._entity_name,
                entity_id=self.id,
                current_state=self.status,
                target_state=target_status,
                valid_targets=self.get_valid_transitions(),
            )

        transition_time = _utc_now()
        old_status = self.status
        self.status = target_status
        self._on_transition(old_status, target_status, transition_time)

        _logger.info(
            "%s %s: status transition '%s' -> '%s'",
            self._entity_name, self.id, old_status, target_status,
        )
        return transition_time

    def _on_transition(self, old_status: str, new_status: str, at: datetime) -> None:
        if hasattr(self, "updated_at"):
            self.updated_at = at


# =============================================================================
# Models
# =============================================================================

class Blueprint(_StateMachineMixin, Base):
    """A named unit of work owning an ordered set of macro nodes."""

    __tablename__ = "blueprints"

    _entity_name = "Blueprint"
    _statuses = BLUEPRINT_STATUS
    _transitions = BLUEPRINT_STATE_TRANSITIONS

    id = Column(String(36), primary_key=True, default=generate_uuid)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="draft", index=True)
    project_cwd = Column(Text, nullable=True)
    agent_type = Column(String(20), nullable=False, default="claude")
    created_at = Column(DateTime, nullable=False, default=_utc_now)
    updated_at = Column(DateTime, nullable=False, default=_utc_now, onupdate=_utc_now)

    nodes = relationship(
        "MacroNode",
        back_populates="blueprint",
        cascade="all, delete-orphan",
        order_by="MacroNode.order",
    )
    artifacts = relationship("Artifact", cascade="all, delete-orphan")
    executions = relationship("NodeExecution", cascade="all, delete-orphan")

    def to_dict(self, include_nodes: bool = False) -> dict[str, Any]:
        data = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "project_cwd": self.project_cwd,
            "agent_type": self.agent_type,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_nodes:
            data["nodes"] = [node.to_dict() for node in self.nodes]
        return data


class MacroNode(_StateMachineMixin, Base):
    """One DAG vertex representing one unit of agent work."""

    __tablename__ = "macro_nodes"

    __table_args__ = (
        Index("ix_macro_node_blueprint_order", "blueprint_id", "order"),
    )

    _entity_name = "MacroNode"
    _statuses = NODE_STATUS
    _transitions = NODE_STATE_TRANSITIONS

    id = Column(String(36), primary_key=True, default=generate_uuid)
    blueprint_id = Column(
        String(36), ForeignKey("blueprints.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order = Column(Integer, nullable=False, default=0)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    # Node ids within the same blueprint that must be done/skipped first
    dependencies = Column(JSON, nullable=False, default=list)
    parallel_group = Column(String(100), nullable=True)
    prompt = Column(Text, nullable=True)
    estimated_minutes = Column(Float, nullable=True)
    actual_minutes = Column(Float, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utc_now)
    updated_at = Column(DateTime, nullable=False, default=_utc_now)

    blueprint = relationship("Blueprint", back_populates="nodes")

    def get_dependencies_safe(self) -> list[str]:
        """Dependencies as a list of ids, tolerating NULL/malformed values."""
        if not isinstance(self.dependencies, list):
            return []
        return [d for d in self.dependencies if isinstance(d, str)]

    @property
    def is_dependency_blocked(self) -> bool:
        return self.status == "blocked" and (self.error or "").startswith(DEPENDENCY_BLOCKED_PREFIX)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "blueprint_id": self.blueprint_id,
            "order": self.order,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "dependencies": self.get_dependencies_safe(),
            "parallel_group": self.parallel_group,
            "prompt": self.prompt,
            "estimated_minutes": self.estimated_minutes,
            "actual_minutes": self.actual_minutes,
            "error": self.error,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Artifact(Base):
    """Immutable handoff payload produced by a node for its dependents."""

    __tablename__ = "artifacts"

    __table_args__ = (
        Index("ix_artifact_source_target", "source_node_id", "target_node_id"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    blueprint_id = Column(
        String(36), ForeignKey("blueprints.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_node_id = Column(
        String(36), ForeignKey("macro_nodes.id", ondelete="CASCADE"), nullable=False
    )
    target_node_id = Column(String(36), nullable=True)
    type = Column(String(30), nullable=False, default="handoff_summary")
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "blueprint_id": self.blueprint_id,
            "source_node_id": self.source_node_id,
            "target_node_id": self.target_node_id,
            "type": self.type,
            "content": self.content,
            "created_at": _iso(self.created_at),
        }


class NodeExecution(_StateMachineMixin, Base):
    """
    One concrete attempt to run a MacroNode via an external agent process.

    Health signals from the transcript analysis are copied onto the row when
    the attempt finishes; ``reported_status``/``reported_reason``,
    ``task_summary`` and ``blocker_info`` may also be written while it is
    running, through the agent callbacks.
    """

    __tablename__ = "node_executions"

    __table_args__ = (
        Index("ix_node_execution_node_status", "node_id", "status"),
    )

    _entity_name = "NodeExecution"
    _statuses = EXECUTION_STATUS
    _transitions = EXECUTION_STATE_TRANSITIONS

    id = Column(String(36), primary_key=True, default=generate_uuid)
    node_id = Column(
        String(36), ForeignKey("macro_nodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    blueprint_id = Column(
        String(36), ForeignKey("blueprints.id", ondelete="CASCADE"), nullable=False, index=True
    )
    session_id = Column(String(255), nullable=True, index=True)
    type = Column(String(20), nullable=False, default="primary")
    status = Column(String(20), nullable=False, default="running", index=True)
    input_context = Column(Text, nullable=True)
    output_summary = Column(Text, nullable=True)
    parent_execution_id = Column(String(36), nullable=True)
    cli_pid = Column(Integer, nullable=True)
    blocker_info = Column(Text, nullable=True)
    task_summary = Column(Text, nullable=True)

    # Health signals
    failure_reason = Column(String(30), nullable=True)
    detail = Column(Text, nullable=True)
    compact_count = Column(Integer, nullable=True)
    peak_tokens = Column(Integer, nullable=True)
    context_pressure = Column(String(20), nullable=True)
    reported_status = Column(String(20), nullable=True)
    reported_reason = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=False, default=_utc_now)
    completed_at = Column(DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    def _on_transition(self, old_status: str, new_status: str, at: datetime) -> None:
        if new_status in TERMINAL_EXECUTION_STATUSES:
            self.completed_at = at

    def apply_health(self, health: dict[str, Any] | None) -> None:
        """Copy transcript health signals onto this execution."""
        if not health:
            return
        self.compact_count = health.get("compact_count")
        self.peak_tokens = health.get("peak_tokens")
        self.context_pressure = health.get("context_pressure")
        if health.get("failure_reason") and not self.failure_reason:
            self.failure_reason = health["failure_reason"]
        if health.get("detail") and not self.detail:
            self.detail = health["detail"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "node_id": self.node_id,
            "blueprint_id": self.blueprint_id,
            "session_id": self.session_id,
            "type": self.type,
            "status": self.status,
            "input_context": self.input_context,
            "output_summary": self.output_summary,
            "parent_execution_id": self.parent_execution_id,
            "cli_pid": self.cli_pid,
            "blocker_info": self.blocker_info,
            "task_summary": self.task_summary,
            "failure_reason": self.failure_reason,
            "detail": self.detail,
            "compact_count": self.compact_count,
            "peak_tokens": self.peak_tokens,
            "context_pressure": self.context_pressure,
            "reported_status": self.reported_status,
            "reported_reason": self.reported_reason,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


class RelatedSession(Base):
    """An auxiliary agent session (reevaluate, split, ...) spawned for a node."""

    __tablename__ = "node_related_sessions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    node_id = Column(
        String(36), ForeignKey("macro_nodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    blueprint_id = Column(
        String(36), ForeignKey("blueprints.id", ondelete="CASCADE"), nullable=False
    )
    session_id = Column(String(255), nullable=False)
    type = Column(String(20), nullable=False)
    started_at = Column(DateTime, nullable=False, default=_utc_now)
    completed_at = Column(DateTime, nullable=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "node_id": self.node_id,
            "blueprint_id": self.blueprint_id,
            "session_id": self.session_id,
            "type": self.type,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }
