"""
Crash Recovery Service
======================

On server startup, reconciles NodeExecutions left in ``running`` status by a
previous server instance.

Each stale execution ends up in one of three states:

- ``monitored``: its agent process is still alive, or its session file was
  written within the last ``session_active_seconds``. It is left running and
  polled by ``monitor_live_executions`` until the process exits.
- ``recovered``: the process is gone but its session transcript exists (a
  detected session must not belong to another execution). The agent most
  likely finished while the server was down, so the execution and node are
  marked done and a handoff artifact is written from the transcript.
- ``interrupted``: no process and no transcript. The execution fails with
  ``failure_reason="interrupted"`` and the node goes back to ``pending``.

Afterwards nodes still ``running``/``queued`` without a running execution
are reset to ``pending`` (the in-memory queue did not survive), and
blueprints left ``running`` with nothing in flight return to ``approved``.

Usage:
    service = CrashRecoveryService(SessionLocal, registry, settings)
    result = service.smart_recover_stale_executions()
    if result.monitored:
        asyncio.create_task(service.monitor_live_executions(result.monitored))
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from sqlalchemy.orm import Session

from clawui import plan_crud as crud
from clawui.agent_runtime import AgentRuntime, terminate_process
from clawui.database import run_in_transaction
from clawui.dependency_graph import IN_FLIGHT_STATUSES
from clawui.executor_config import ExecutorSettings
from clawui.plan_models import (
    Artifact,
    Blueprint,
    MacroNode,
    NodeExecution,
    ensure_utc,
    generate_uuid,
)
from clawui.runtime_registry import RuntimeRegistry
from clawui.transcripts import TranscriptCycleError

_logger = logging.getLogger(__name__)

RECOVERED_SUMMARY = "Recovered after server restart: session completed"
INTERRUPTED_DETAIL = "Execution interrupted by server restart"

OUTCOME_MONITORED = "monitored"
OUTCOME_RECOVERED = "recovered"
OUTCOME_INTERRUPTED = "interrupted"


def _utc_now() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


@dataclass
class RecoveredExecution:
    """What happened to one stale execution."""

    execution_id: str
    node_id: str
    blueprint_id: str
    outcome: str
    session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "blueprint_id": self.blueprint_id,
            "outcome": self.outcome,
            "session_id": self.session_id,
        }


@dataclass
class RecoveryResult:
    """Result of the startup recovery pass."""

    # Executions found in running status
    total_found: int = 0

    # Marked done from session evidence
    recovered_count: int = 0

    # Marked failed as interrupted
    failed_count: int = 0

    # Execution ids left running because their process is alive
    monitored: list[str] = field(default_factory=list)

    # Nodes reset from running/queued to pending
    requeued_nodes: list[str] = field(default_factory=list)

    # Blueprints moved from running back to approved
    reset_blueprints: list[str] = field(default_factory=list)

    executions: list[RecoveredExecution] = field(default_factory=list)

    # Any errors encountered during recovery
    errors: list[str] = field(default_factory=list)

    timestamp: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "total_found": self.total_found,
            "recovered_count": self.recovered_count,
            "failed_count": self.failed_count,
            "monitored": list(self.monitored),
            "requeued_nodes": list(self.requeued_nodes),
            "reset_blueprints": list(self.reset_blueprints),
            "executions": [e.to_dict() for e in self.executions],
            "errors": list(self.errors),
            "timestamp": self.timestamp.isoformat(),
        }


class CrashRecoveryService:
    """Startup reconciliation of executions, nodes and blueprints."""

    def __init__(
        self,
        session_maker: Callable[[], Session],
        registry: RuntimeRegistry,
        settings: ExecutorSettings,
        started_at: datetime | None = None,
    ):
        self._session_maker = session_maker
        self.registry = registry
        self.settings = settings
        # Executions started after this belong to the current process
        self.started_at = started_at or _utc_now()

    # -- Startup pass ----------------------------------------------------------

    def smart_recover_stale_executions(self) -> RecoveryResult:
        """
        Reconcile every execution left running by a previous server instance.

        Per-execution failures are collected in ``errors``; one bad row never
        stops the others from being recovered.
        """
        result = RecoveryResult()
        _logger.info("Starting crash recovery at %s", result.timestamp.isoformat())

        with self._session_maker() as db:
            stale = crud.get_stale_running_executions(db, started_before=self.started_at)
            result.total_found = len(stale)
            if stale:
                _logger.info("Found %d execution(s) left running", len(stale))

            for execution in stale:
                try:
                    record = self._reconcile(db, execution, allow_monitor=True)
                except Exception as e:
                    db.rollback()
                    error_msg = f"Error recovering execution {execution.id}: {e}"
                    _logger.error(error_msg)
                    result.errors.append(error_msg)
                    continue

                result.executions.append(record)
                if record.outcome == OUTCOME_MONITORED:
                    result.monitored.append(record.execution_id)
                elif record.outcome == OUTCOME_RECOVERED:
                    result.recovered_count += 1
                else:
                    result.failed_count += 1

        result.requeued_nodes = self.requeue_orphaned_nodes()
        with self._session_maker() as db:
            result.reset_blueprints = self._reset_idle_blueprints(db)

        _logger.info(
            "Crash recovery complete: found=%d, recovered=%d, interrupted=%d, "
            "monitored=%d, requeued=%d, errors=%d",
            result.total_found,
            result.recovered_count,
            result.failed_count,
            len(result.monitored),
            len(result.requeued_nodes),
            len(result.errors),
        )
        return result

    def requeue_orphaned_nodes(self) -> list[str]:
        """Reset running/queued nodes that have no running execution to pending."""
        requeued: list[str] = []
        with self._session_maker() as db:
            nodes = (
                db.query(MacroNode)
                .filter(MacroNode.status.in_(sorted(IN_FLIGHT_STATUSES)))
                .all()
            )
            for node in nodes:
                if crud.get_running_execution(db, node.id) is not None:
                    continue
                node.transition_to("pending")
                requeued.append(node.id)
            if requeued:
                db.commit()
                _logger.info("Reset %d orphaned node(s) to pending: %s", len(requeued), ", ".join(requeued))
        return requeued

    def get_recent_interrupted_executions(self, lookback_minutes: int = 10) -> list[dict[str, Any]]:
        with self._session_maker() as db:
            return [
                e.to_dict()
                for e in crud.get_recent_interrupted_executions(db, lookback_minutes)
            ]

    # -- Live process monitor --------------------------------------------------

    async def monitor_live_executions(self, execution_ids: Iterable[str]) -> list[RecoveredExecution]:
        """
        Poll executions whose process outlived the restart.

        Each is reconciled once its process exits and its session goes quiet,
        or when ``recovery_max_wait_seconds`` passes, in which case the
        process is terminated first.
        """
        pending = set(execution_ids)
        if not pending:
            return []
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.recovery_max_wait_seconds
        finished: list[RecoveredExecution] = []
        _logger.info("Monitoring %d live execution(s) from before restart", len(pending))

        while pending:
            await asyncio.sleep(self.settings.recovery_poll_seconds)
            give_up = loop.time() >= deadline
            with self._session_maker() as db:
                for execution_id in sorted(pending):
                    execution = crud.get_execution(db, execution_id)
                    if execution is None or execution.status != "running":
                        pending.discard(execution_id)
                        continue
                    runtime = self._runtime_for(db, execution)
                    if not give_up and self._is_live(runtime, execution):
                        continue
                    if give_up:
                        _logger.warning(
                            "Execution %s still alive after %ss, terminating",
                            execution_id, self.settings.recovery_max_wait_seconds,
                        )
                        terminate_process(execution.cli_pid)
                    try:
                        finished.append(self._reconcile(db, execution, allow_monitor=False))
                    except Exception:
                        db.rollback()
                        _logger.exception("Error reconciling monitored execution %s", execution_id)
                    pending.discard(execution_id)
                self._reset_idle_blueprints(db)
        return finished

    # -- Reconciliation --------------------------------------------------------

    def _runtime_for(self, db: Session, execution: NodeExecution) -> AgentRuntime:
        blueprint = db.get(Blueprint, execution.blueprint_id)
        return self.registry.get(blueprint.agent_type if blueprint else None)

    def _is_live(self, runtime: AgentRuntime, execution: NodeExecution) -> bool:
        if runtime.is_process_alive(execution.cli_pid):
            return True
        if not execution.session_id:
            return False
        modified = runtime.session_last_modified(execution.session_id)
        if modified is None:
            return False
        return _utc_now() - modified < timedelta(seconds=self.settings.session_active_seconds)

    def _detect_session(self, runtime: AgentRuntime, blueprint: Blueprint | None, execution: NodeExecution) -> str | None:
        cwd = (blueprint.project_cwd if blueprint else None) or os.getcwd()
        try:
            return runtime.detect_new_session(cwd, ensure_utc(execution.started_at))
        except OSError as e:
            _logger.warning("Session detection failed for execution %s: %s", execution.id, e)
            return None

    def _reconcile(self, db: Session, execution: NodeExecution, *, allow_monitor: bool) -> RecoveredExecution:
        node = db.get(MacroNode, execution.node_id)
        blueprint = db.get(Blueprint, execution.blueprint_id)
        runtime = self.registry.get(blueprint.agent_type if blueprint else None)

        record = RecoveredExecution(
            execution_id=execution.id,
            node_id=execution.node_id,
            blueprint_id=execution.blueprint_id,
            outcome=OUTCOME_INTERRUPTED,
            session_id=execution.session_id,
        )

        if allow_monitor and self._is_live(runtime, execution):
            record.outcome = OUTCOME_MONITORED
            _logger.info("Execution %s still active (pid %s), monitoring", execution.id, execution.cli_pid)
            return record

        session_id = execution.session_id
        if not session_id:
            session_id = self._detect_session(runtime, blueprint, execution)
            owner = crud.session_owner(db, session_id, execution.id) if session_id else None
            if owner is not None:
                _logger.info(
                    "Detected session %s belongs to execution %s, not %s", session_id, owner.id, execution.id,
                )
                session_id = None
        finished_at = runtime.session_last_modified(session_id) if session_id else None
        if session_id and finished_at is None:
            # Continuations inherit the session id, so require the transcript itself
            _logger.info("Session %s of execution %s has no transcript", session_id, execution.id)
            session_id = None
        if session_id:
            self._mark_recovered(db, runtime, execution, node, session_id, finished_at)
            record.outcome = OUTCOME_RECOVERED
            record.session_id = session_id
        else:
            self._mark_interrupted(db, execution, node)
        return record

    def _mark_recovered(
        self,
        db: Session,
        runtime: AgentRuntime,
        execution: NodeExecution,
        node: MacroNode | None,
        session_id: str,
        finished_at: datetime | None = None,
    ) -> None:
        try:
            health = runtime.analyze_session(session_id)
        except TranscriptCycleError as e:
            _logger.warning("Transcript of session %s is unreadable: %s", session_id, e)
            health = None
        content = (health.last_assistant_text if health else None) or RECOVERED_SUMMARY
        health_fields = None
        if health is not None:
            health_fields = {
                "compact_count": health.compact_count,
                "peak_tokens": health.peak_tokens,
                "context_pressure": health.context_pressure,
            }
        # The transcript stops changing when the agent finishes
        elapsed = ensure_utc(finished_at or _utc_now()) - ensure_utc(execution.started_at)
        actual_minutes = round(max(elapsed.total_seconds(), 0) / 60, 1)
        dependents = []
        if node is not None:
            dependents = [
                n for n in crud.list_nodes(db, node.blueprint_id)
                if node.id in n.get_dependencies_safe()
            ]

        def apply(session: Session) -> None:
            execution.session_id = session_id
            execution.output_summary = RECOVERED_SUMMARY
            execution.apply_health(health_fields)
            execution.transition_to("done")
            if node is None:
                return
            if node.can_transition_to("done"):
                node.transition_to("done")
                node.error = None
                node.actual_minutes = actual_minutes
            for target in [d.id for d in dependents] or [None]:
                session.add(Artifact(
                    id=generate_uuid(),
                    blueprint_id=node.blueprint_id,
                    source_node_id=node.id,
                    target_node_id=target,
                    type="handoff_summary",
                    content=content,
                ))

        run_in_transaction(db, "recover_execution", execution.id, apply)
        _logger.info("Recovered execution %s from session %s", execution.id, session_id)

    def _mark_interrupted(self, db: Session, execution: NodeExecution, node: MacroNode | None) -> None:
        def apply(session: Session) -> None:
            execution.failure_reason = "interrupted"
            execution.detail = INTERRUPTED_DETAIL
            execution.output_summary = INTERRUPTED_DETAIL
            execution.transition_to("failed")
            if node is not None and node.status == "running":
                node.transition_to("pending")
                node.error = INTERRUPTED_DETAIL

        run_in_transaction(db, "interrupt_execution", execution.id, apply)
        _logger.info("Execution %s marked interrupted", execution.id)

    def _reset_idle_blueprints(self, db: Session) -> list[str]:
        reset: list[str] = []
        for blueprint in crud.list_running_blueprints(db):
            nodes = crud.list_nodes(db, blueprint.id)
            if any(n.status in IN_FLIGHT_STATUSES for n in nodes):
                continue
            blueprint.transition_to("approved")
            reset.append(blueprint.id)
        if reset:
            db.commit()
            _logger.info("Reset %d idle blueprint(s) to approved", len(reset))
        return reset
