"""
Blueprint CRUD Operations
=========================

Database operations for Blueprint, MacroNode, Artifact, NodeExecution and
RelatedSession.

Plain reads and single-row writes only ``flush``; the caller commits.
Writes that change a node's status together with one of its executions
(``start_node_execution``, ``finish_node_execution``,
``roll_over_execution``, ``cancel_node_execution``) commit on their own
through ``run_in_transaction`` so both rows always move together.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy import desc, func
from sqlalchemy.orm import Session

from clawui.database import _utc_now, run_in_transaction
from clawui.dependency_graph import BlockingUpdate, DependencyCycleError, would_create_cycle
from clawui.plan_models import (
    ARTIFACT_TYPE,
    DEPENDENCY_BLOCKED_PREFIX,
    EXECUTION_TYPE,
    RELATED_SESSION_TYPE,
    Artifact,
    Blueprint,
    MacroNode,
    NodeExecution,
    RelatedSession,
    generate_uuid,
)

_logger = logging.getLogger(__name__)

INTERRUPTED_LOOKBACK_MINUTES = 10


class UnknownDependencyError(Exception):
    """Raised when a node names dependencies outside its blueprint."""

    def __init__(self, node_id: str, missing: list[str]):
        self.node_id = node_id
        self.missing = missing
        super().__init__(
            f"Node {node_id} depends on unknown node(s): {', '.join(missing)}"
        )


# =============================================================================
# Blueprint CRUD
# =============================================================================

def create_blueprint(
    session: Session,
    title: str,
    *,
    description: str | None = None,
    project_cwd: str | None = None,
    agent_type: str = "claude",
    status: str = "draft",
) -> Blueprint:
    blueprint = Blueprint(
        id=generate_uuid(),
        title=title,
        description=description,
        project_cwd=project_cwd,
        agent_type=agent_type,
        status=status,
    )
    session.add(blueprint)
    session.flush()
    return blueprint


def get_blueprint(session: Session, blueprint_id: str) -> Blueprint | None:
    """Get a Blueprint by ID."""
    return session.query(Blueprint).filter(Blueprint.id == blueprint_id).first()


def list_blueprints(session: Session, *, status: str | None = None) -> list[Blueprint]:
    query = session.query(Blueprint)
    if status:
        query = query.filter(Blueprint.status == status)
    return query.order_by(desc(Blueprint.updated_at)).all()


def set_blueprint_status(session: Session, blueprint: Blueprint, status: str) -> bool:
    """Transition ``blueprint`` unless it is already in ``status``."""
    if blueprint.status == status:
        return False
    blueprint.transition_to(status)
    session.flush()
    return True


def list_running_blueprints(session: Session) -> list[Blueprint]:
    return session.query(Blueprint).filter(Blueprint.status == "running").all()


# =============================================================================
# MacroNode CRUD
# =============================================================================

def list_nodes(session: Session, blueprint_id: str) -> list[MacroNode]:
    return (
        session.query(MacroNode)
        .filter(MacroNode.blueprint_id == blueprint_id)
        .order_by(MacroNode.order, MacroNode.created_at)
        .all()
    )


def list_runnable_candidates(session: Session, blueprint_id: str) -> list[MacroNode]:
    """
    Every node of the blueprint, freshly loaded, in display order.

    The whole set is returned (not only pending nodes) because whether a
    node can run depends on the status of its dependencies.
    """
    nodes = list_nodes(session, blueprint_id)
    for node in nodes:
        session.refresh(node)
    return nodes


def get_node(session: Session, blueprint_id: str, node_id: str) -> MacroNode | None:
    return (
        session.query(MacroNode)
        .filter(MacroNode.blueprint_id == blueprint_id, MacroNode.id == node_id)
        .first()
    )


def _validate_dependencies(
    session: Session,
    blueprint_id: str,
    node_id: str,
    dependencies: Sequence[str],
) -> None:
    existing = list_nodes(session, blueprint_id)
    known = {n.id for n in existing}
    missing = [d for d in dependencies if d not in known]
    if missing:
        raise UnknownDependencyError(node_id, missing)
    cycle = would_create_cycle(existing, node_id, dependencies)
    if cycle:
        raise DependencyCycleError(node_id, cycle)


def create_macro_node(
    session: Session,
    blueprint_id: str,
    title: str,
    *,
    description: str | None = None,
    order: int | None = None,
    dependencies: Sequence[str] | None = None,
    prompt: str | None = None,
    estimated_minutes: float | None = None,
    parallel_group: str | None = None,
    status: str = "pending",
    node_id: str | None = None,
) -> MacroNode:
    """
    Create a node, rejecting unknown dependencies and dependency cycles.

    Raises:
        UnknownDependencyError: If a dependency is not a node of the blueprint
        DependencyCycleError: If the dependencies would close a cycle
    """
    node_id = node_id or generate_uuid()
    deps = list(dict.fromkeys(dependencies or []))
    _validate_dependencies(session, blueprint_id, node_id, deps)

    if order is None:
        max_order = (
            session.query(func.max(MacroNode.order))
            .filter(MacroNode.blueprint_id == blueprint_id)
            .scalar()
        )
        order = 0 if max_order is None else max_order + 1

    node = MacroNode(
        id=node_id,
        blueprint_id=blueprint_id,
        order=order,
        title=title,
        description=description,
        dependencies=deps,
        prompt=prompt,
        estimated_minutes=estimated_minutes,
        parallel_group=parallel_group,
        status=status,
    )
    session.add(node)
    session.flush()
    return node


def update_node_dependencies(session: Session, node: MacroNode, dependencies: Sequence[str]) -> MacroNode:
    deps = list(dict.fromkeys(dependencies))
    _validate_dependencies(session, node.blueprint_id, node.id, deps)
    node.dependencies = deps
    node.updated_at = _utc_now()
    session.flush()
    return node


def update_node_text(
    session: Session,
    node: MacroNode,
    *,
    title: str | None = None,
    description: str | None = None,
) -> MacroNode:
    """Replace the node's title and/or description; blank values are ignored."""
    if title and title.strip():
        node.title = title.strip()[:255]
    if description and description.strip():
        node.description = description.strip()
    node.updated_at = _utc_now()
    session.flush()
    return node


def set_node_status(session: Session, node: MacroNode, status: str, *, error: str | None = None) -> None:
    """Transition a node that has no execution involved (queue, unqueue, block)."""
    if node.status != status:
        node.transition_to(status)
    node.error = error
    session.flush()


def apply_blocking_update(session: Session, nodes: Iterable[MacroNode], update: BlockingUpdate) -> None:
    """Persist a ``propagate_blocked`` decision in one commit."""
    if update.is_empty:
        return
    by_id = {n.id: n for n in nodes}

    def apply(db: Session) -> None:
        for node_id in update.blocked:
            node = by_id[node_id]
            failed_deps = [d for d in node.get_dependencies_safe() if d in by_id and by_id[d].status in ("failed", "blocked")]
            node.transition_to("blocked")
            node.error = f"{DEPENDENCY_BLOCKED_PREFIX}: {', '.join(failed_deps)}"
        for node_id in update.unblocked:
            node = by_id[node_id]
            node.transition_to("pending")
            node.error = None

    run_in_transaction(session, "apply_blocking_update", ",".join(update.blocked + update.unblocked), apply)


# =============================================================================
# Artifact CRUD
# =============================================================================

def create_artifact(
    session: Session,
    blueprint_id: str,
    source_node_id: str,
    content: str,
    *,
    artifact_type: str = "handoff_summary",
    target_node_id: str | None = None,
) -> Artifact:
    if artifact_type not in ARTIFACT_TYPE:
        raise ValueError(f"Unknown artifact type '{artifact_type}'. Valid types: {', '.join(ARTIFACT_TYPE)}")
    artifact = Artifact(
        id=generate_uuid(),
        blueprint_id=blueprint_id,
        source_node_id=source_node_id,
        target_node_id=target_node_id,
        type=artifact_type,
        content=content,
    )
    session.add(artifact)
    session.flush()
    return artifact


def list_artifacts(session: Session, node_id: str) -> list[Artifact]:
    """Artifacts produced by a node, newest first."""
    return (
        session.query(Artifact)
        .filter(Artifact.source_node_id == node_id)
        .order_by(desc(Artifact.created_at))
        .all()
    )


def latest_output_artifact(session: Session, source_node_id: str, target_node_id: str | None = None) -> Artifact | None:
    """
    Newest artifact from ``source_node_id`` meant for ``target_node_id``.

    An artifact addressed to the target wins; otherwise the newest
    unaddressed one, then the newest of any kind.
    """
    query = session.query(Artifact).filter(Artifact.source_node_id == source_node_id)
    if target_node_id is not None:
        addressed = (
            query.filter(Artifact.target_node_id == target_node_id)
            .order_by(desc(Artifact.created_at))
            .first()
        )
        if addressed is not None:
            return addressed
    unaddressed = (
        query.filter(Artifact.target_node_id.is_(None))
        .order_by(desc(Artifact.created_at))
        .first()
    )
    if unaddressed is not None:
        return unaddressed
    return query.order_by(desc(Artifact.created_at)).first()


# =============================================================================
# NodeExecution CRUD
# =============================================================================

def get_execution(session: Session, execution_id: str) -> NodeExecution | None:
    return session.query(NodeExecution).filter(NodeExecution.id == execution_id).first()


def list_executions(session: Session, node_id: str) -> list[NodeExecution]:
    """Executions of a node, oldest first."""
    return (
        session.query(NodeExecution)
        .filter(NodeExecution.node_id == node_id)
        .order_by(NodeExecution.started_at, NodeExecution.id)
        .all()
    )


def latest_execution(session: Session, node_id: str) -> NodeExecution | None:
    return (
        session.query(NodeExecution)
        .filter(NodeExecution.node_id == node_id)
        .order_by(desc(NodeExecution.started_at))
        .first()
    )


def latest_session_execution(session: Session, node_id: str) -> NodeExecution | None:
    """Newest execution of the node that recorded an agent session id."""
    return (
        session.query(NodeExecution)
        .filter(NodeExecution.node_id == node_id, NodeExecution.session_id.isnot(None))
        .order_by(desc(NodeExecution.started_at))
        .first()
    )


def session_owner(session: Session, session_id: str, exclude_execution_id: str | None = None) -> NodeExecution | None:
    """An execution (other than ``exclude_execution_id``) that already recorded ``session_id``."""
    query = session.query(NodeExecution).filter(NodeExecution.session_id == session_id)
    if exclude_execution_id is not None:
        query = query.filter(NodeExecution.id != exclude_execution_id)
    return query.first()


def has_failed_execution(session: Session, node_id: str) -> bool:
    return (
        session.query(NodeExecution.id)
        .filter(NodeExecution.node_id == node_id, NodeExecution.status == "failed")
        .first()
        is not None
    )


def get_running_execution(session: Session, node_id: str) -> NodeExecution | None:
    return (
        session.query(NodeExecution)
        .filter(NodeExecution.node_id == node_id, NodeExecution.status == "running")
        .first()
    )


def list_running_executions(session: Session) -> list[NodeExecution]:
    return (
        session.query(NodeExecution)
        .filter(NodeExecution.status == "running")
        .order_by(NodeExecution.started_at)
        .all()
    )


def start_node_execution(
    session: Session,
    node: MacroNode,
    *,
    execution_type: str = "primary",
    input_context: str | None = None,
    parent_execution_id: str | None = None,
    execution_id: str | None = None,
    blueprint: Blueprint | None = None,
) -> NodeExecution:
    """
    Mark ``node`` running and open a running execution for it, atomically.

    If ``blueprint`` is given it is moved to ``running`` in the same commit.
    """
    if execution_type not in EXECUTION_TYPE:
        raise ValueError(f"Unknown execution type '{execution_type}'")
    execution_id = execution_id or generate_uuid()

    def apply(db: Session) -> NodeExecution:
        node.transition_to("running")
        node.error = None
        if blueprint is not None and blueprint.status != "running":
            blueprint.transition_to("running")
        execution = NodeExecution(
            id=execution_id,
            node_id=node.id,
            blueprint_id=node.blueprint_id,
            type=execution_type,
            status="running",
            input_context=input_context,
            parent_execution_id=parent_execution_id,
            started_at=_utc_now(),
        )
        db.add(execution)
        return execution

    return run_in_transaction(session, "start_node_execution", node.id, apply)


def _close_execution(
    execution: NodeExecution,
    status: str,
    *,
    output_summary: str | None,
    failure_reason: str | None,
    detail: str | None,
    health: dict[str, Any] | None,
) -> None:
    if output_summary is not None:
        execution.output_summary = output_summary
    execution.failure_reason = failure_reason
    if detail is not None:
        execution.detail = detail
    execution.apply_health(health)
    execution.transition_to(status)


def finish_node_execution(
    session: Session,
    execution: NodeExecution,
    node: MacroNode,
    *,
    execution_status: str,
    node_status: str,
    output_summary: str | None = None,
    failure_reason: str | None = None,
    detail: str | None = None,
    health: dict[str, Any] | None = None,
    node_error: str | None = None,
    actual_minutes: float | None = None,
) -> None:
    """Close ``execution`` and move ``node`` to its outcome status in one commit."""

    def apply(db: Session) -> None:
        _close_execution(
            execution,
            execution_status,
            output_summary=output_summary,
            failure_reason=failure_reason,
            detail=detail,
            health=health,
        )
        if node.status != node_status:
            node.transition_to(node_status)
        node.error = node_error
        if actual_minutes is not None:
            node.actual_minutes = actual_minutes

    run_in_transaction(session, "finish_node_execution", execution.id, apply)


def roll_over_execution(
    session: Session,
    execution: NodeExecution,
    node: MacroNode,
    *,
    next_type: str,
    input_context: str | None,
    failure_reason: str | None,
    detail: str | None,
    health: dict[str, Any] | None = None,
    output_summary: str | None = None,
    next_execution_id: str | None = None,
) -> NodeExecution:
    """
    Fail the current attempt and open the next one in a single commit.

    The node stays ``running`` throughout, so it is never observed without a
    running execution.
    """
    next_execution_id = next_execution_id or generate_uuid()

    def apply(db: Session) -> NodeExecution:
        _close_execution(
            execution,
            "failed",
            output_summary=output_summary,
            failure_reason=failure_reason,
            detail=detail,
            health=health,
        )
        nxt = NodeExecution(
            id=next_execution_id,
            node_id=node.id,
            blueprint_id=node.blueprint_id,
            session_id=execution.session_id if next_type == "continuation" else None,
            type=next_type,
            status="running",
            input_context=input_context,
            parent_execution_id=execution.id,
            started_at=_utc_now(),
        )
        db.add(nxt)
        return nxt

    return run_in_transaction(session, "roll_over_execution", execution.id, apply)


def cancel_node_execution(
    session: Session,
    execution: NodeExecution,
    node: MacroNode,
    *,
    detail: str = "Cancelled by user",
) -> None:
    """Mark the execution cancelled and return its node to pending."""

    def apply(db: Session) -> None:
        if execution.status == "running":
            execution.detail = detail
            execution.transition_to("cancelled")
        if node.status == "running":
            node.transition_to("pending")
        node.error = None

    run_in_transaction(session, "cancel_node_execution", execution.id, apply)


def set_execution_pid(session: Session, execution: NodeExecution, pid: int) -> None:
    execution.cli_pid = pid
    session.commit()


def set_execution_session(session: Session, execution: NodeExecution, session_id: str) -> None:
    execution.session_id = session_id
    session.commit()


def set_execution_reported_status(
    session: Session,
    execution: NodeExecution,
    status: str,
    reason: str | None = None,
) -> NodeExecution:
    execution.reported_status = status
    execution.reported_reason = reason
    session.flush()
    return execution


def set_execution_task_summary(session: Session, execution: NodeExecution, summary: str) -> NodeExecution:
    execution.task_summary = summary
    session.flush()
    return execution


def set_execution_blocker(
    session: Session,
    execution: NodeExecution,
    blocker_type: str,
    description: str,
    suggestion: str | None = None,
) -> NodeExecution:
    execution.blocker_info = json.dumps({
        "type": blocker_type,
        "description": description,
        "suggestion": suggestion or "",
    })
    session.flush()
    return execution


def get_stale_running_executions(session: Session, started_before: datetime | None = None) -> list[NodeExecution]:
    """
    Executions still marked running, e.g. after a server restart.

    With ``started_before`` only attempts started before that moment are
    returned, so work started by the current process is left alone.
    """
    query = session.query(NodeExecution).filter(NodeExecution.status == "running")
    if started_before is not None:
        query = query.filter(NodeExecution.started_at < started_before.astimezone(timezone.utc).replace(tzinfo=None))
    return query.order_by(NodeExecution.started_at).all()


def get_recent_interrupted_executions(
    session: Session,
    lookback_minutes: int = INTERRUPTED_LOOKBACK_MINUTES,
) -> list[NodeExecution]:
    """Executions failed by a restart within the lookback window."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=lookback_minutes)
    return (
        session.query(NodeExecution)
        .filter(
            NodeExecution.failure_reason == "interrupted",
            NodeExecution.completed_at >= cutoff.replace(tzinfo=None),
        )
        .order_by(desc(NodeExecution.completed_at))
        .all()
    )


# =============================================================================
# Graph mutations
# =============================================================================

MUTATION_ACTIONS = ("INSERT_BETWEEN", "ADD_SIBLING")


@dataclass
class MutationResult:
    created_nodes: list[MacroNode] = field(default_factory=list)
    rewired: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_nodes": [n.to_dict() for n in self.created_nodes],
            "rewired": list(self.rewired),
        }


def apply_graph_mutations(
    session: Session,
    blueprint_id: str,
    completed_node_id: str,
    mutations: Iterable[dict[str, Any]],
) -> MutationResult:
    """
    Insert follow-up nodes around a completed node.

    - ``INSERT_BETWEEN``: new node depends on the completed node; its former
      dependents now depend on the new node instead.
    - ``ADD_SIBLING``: new node shares the completed node's dependencies, is
      created ``blocked`` for a human to resolve, and is added as a
      dependency of the completed node's dependents.

    Mutations is a list of ``{"action": ..., "new_node": {"title", "description"}}``.
    All changes are committed together.
    """
    result = MutationResult()
    completed = get_node(session, blueprint_id, completed_node_id)
    if completed is None:
        return result

    def apply(db: Session) -> MutationResult:
        nodes = list_nodes(db, blueprint_id)
        for mutation in mutations:
            action = mutation.get("action")
            fields = mutation.get("new_node") or {}
            if action not in MUTATION_ACTIONS or not fields.get("title"):
                _logger.warning("Skipping malformed graph mutation: %s", mutation)
                continue
            dependents = [n for n in nodes if completed.id in n.get_dependencies_safe()]

            if action == "INSERT_BETWEEN":
                new_node = MacroNode(
                    id=generate_uuid(),
                    blueprint_id=blueprint_id,
                    order=completed.order + 1,
                    title=fields["title"],
                    description=fields.get("description") or "",
                    dependencies=[completed.id],
                    status="pending",
                )
                db.add(new_node)
                for dep in dependents:
                    old = dep.get_dependencies_safe()
                    new = [new_node.id if d == completed.id else d for d in old]
                    dep.dependencies = new
                    result.rewired.append({"node_id": dep.id, "old_dependencies": old, "new_dependencies": new})
            else:
                new_node = MacroNode(
                    id=generate_uuid(),
                    blueprint_id=blueprint_id,
                    order=completed.order + 1,
                    title=fields["title"],
                    description=fields.get("description") or "",
                    dependencies=completed.get_dependencies_safe(),
                    status="blocked",
                    error="Added during evaluation; needs human review",
                )
                db.add(new_node)
                for dep in dependents:
                    old = dep.get_dependencies_safe()
                    if new_node.id not in old:
                        new = old + [new_node.id]
                        dep.dependencies = new
                        result.rewired.append({"node_id": dep.id, "old_dependencies": old, "new_dependencies": new})

            nodes.append(new_node)
            result.created_nodes.append(new_node)
            _logger.info(
                "%s: created node %s '%s' next to %s",
                action, new_node.id, new_node.title, completed.id,
            )
        return result

    return run_in_transaction(session, "apply_graph_mutations", completed_node_id, apply)


def split_node(
    session: Session,
    node: MacroNode,
    parts: Sequence[dict[str, Any]],
) -> MutationResult:
    """
    Replace a pending node with a chain of smaller nodes.

    The first part inherits the node's dependencies and every later part
    depends on the one before it. Dependents of the node are rewired to the
    last part, and the node itself is skipped. All changes are committed
    together.
    """
    parts = [p for p in parts if (p.get("title") or "").strip()]
    if not parts:
        raise ValueError(f"No usable parts to split node {node.id} into")

    def apply(db: Session) -> MutationResult:
        result = MutationResult()
        previous: list[str] = node.get_dependencies_safe()
        for part in parts:
            new_node = MacroNode(
                id=generate_uuid(),
                blueprint_id=node.blueprint_id,
                order=node.order,
                title=part["title"].strip()[:255],
                description=(part.get("description") or "").strip(),
                dependencies=previous,
                status="pending",
            )
            db.add(new_node)
            # Same order as the node; created_at keeps the parts in sequence
            db.flush()
            result.created_nodes.append(new_node)
            previous = [new_node.id]

        last_id = previous[0]
        for dep in list_nodes(db, node.blueprint_id):
            old = dep.get_dependencies_safe()
            if node.id in old:
                new = list(dict.fromkeys(last_id if d == node.id else d for d in old))
                dep.dependencies = new
                dep.updated_at = _utc_now()
                result.rewired.append({"node_id": dep.id, "old_dependencies": old, "new_dependencies": new})

        node.transition_to("skipped")
        node.error = None
        _logger.info("Split node %s into %d part(s)", node.id, len(result.created_nodes))
        return result

    return run_in_transaction(session, "split_node", node.id, apply)


# =============================================================================
# RelatedSession CRUD
# =============================================================================

def create_related_session(
    session: Session,
    node: MacroNode,
    session_id: str,
    session_type: str,
    *,
    started_at: datetime | None = None,
    completed_at: datetime | None = None,
) -> RelatedSession:
    """Record an auxiliary agent session (evaluation, split, ...) spawned for ``node``."""
    if session_type not in RELATED_SESSION_TYPE:
        raise ValueError(
            f"Unknown related session type '{session_type}'. Valid types: {', '.join(RELATED_SESSION_TYPE)}"
        )
    related = RelatedSession(
        id=generate_uuid(),
        node_id=node.id,
        blueprint_id=node.blueprint_id,
        session_id=session_id,
        type=session_type,
        started_at=started_at or _utc_now(),
        completed_at=completed_at,
    )
    session.add(related)
    session.flush()
    return related


def list_related_sessions(session: Session, node_id: str) -> list[RelatedSession]:
    return (
        session.query(RelatedSession)
        .filter(RelatedSession.node_id == node_id)
        .order_by(desc(RelatedSession.started_at))
        .all()
    )
