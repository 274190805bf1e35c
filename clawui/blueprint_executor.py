"""
Blueprint Executor
==================

Runs the macro nodes of a blueprint through an agent runtime.

One node run:
1. Check the node can run (status, dependencies, blueprint approved)
2. Build the prompt from the node, the blueprint and the handoff artifacts of
   its dependencies
3. Start a ``running`` NodeExecution (node ``running`` in the same commit)
4. Spawn the agent CLI inside a global process slot
5. Interpret the result: the agent's own report wins, then blockers, then the
   failure classifier over the process result and transcript health
6. Retry transient failures as ``retry`` attempts and context exhaustion as
   ``continuation`` attempts, up to ``max_attempts``
7. On success write handoff artifacts for the dependents, then let an agent
   evaluate the completion (it may insert follow-up nodes through the
   evaluation callback); on permanent failure block the dependents

Everything that executes for a blueprint holds that blueprint's slot in the
``BlueprintTaskQueue``; the ``_locked`` methods assume the caller holds it.

Usage:
    executor = BlueprintExecutor(SessionLocal, registry, queue, settings)
    result = await executor.execute_node(blueprint_id, node_id)
    queue_task = executor.submit_all(blueprint_id)
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.orm import Session

from clawui import plan_crud as crud
from clawui.agent_runtime import (
    AgentBinaryNotFound,
    AgentRuntime,
    AgentRuntimeError,
    SessionErr,
    SessionNotFound,
    SessionResult,
    terminate_process,
)
from clawui.database import TransactionError
from clawui.dependency_graph import (
    BlockingUpdate,
    GraphDiagnostic,
    dependencies_satisfied,
    diagnose,
    propagate_blocked,
    runnable_nodes,
)
from clawui.executor_config import ExecutorSettings
from clawui.failure_classifier import (
    BLOCKER_END_MARKER,
    BLOCKER_MARKER,
    STATUS_END_MARKER,
    STATUS_MARKER,
    classify_failure,
    classify_hung_failure,
    is_meaningful_output,
    parse_blocker,
    parse_reported_status,
    parse_task_summary,
)
from clawui.plan_models import (
    SATISFIED_NODE_STATUSES,
    Artifact,
    Blueprint,
    MacroNode,
    NodeExecution,
    RelatedSession,
    ensure_utc,
    generate_uuid,
)
from clawui.runtime_registry import RuntimeRegistry
from clawui.session_health import SessionHealth
from clawui.task_queue import BlueprintTaskQueue
from clawui.transcripts import TranscriptCycleError

_logger = logging.getLogger(__name__)

# Failures worth another fresh attempt
RETRYABLE_FAILURES = frozenset({"timeout", "hung", "error", "output_token_limit"})

# Failures continued in (or condensed from) the exhausted session
CONTINUATION_FAILURES = frozenset({"context_exhausted"})

RUNNABLE_NODE_STATUSES = frozenset({"pending", "queued", "failed", "blocked"})

OUTPUT_SUMMARY_CHARS = 2000
PREVIOUS_ATTEMPT_CHARS = 1500
ARTIFACT_FALLBACK_CHARS = 500
CANCEL_WAIT_SECONDS = 10.0

ARTIFACT_MARKER = "**What was done:**"

ARTIFACT_PROMPT = """Summarize what was accomplished in the previous coding step.
Start your response with exactly "**What was done:**" and include ONLY the completed work.
Format:

**What was done:**
<2-3 sentences summarizing completed work>

**Files changed:**
<list of file paths created or modified>

**Decisions:**
<key decisions made, if any>

Keep it under 200 words. Be specific and factual. Do NOT include plans, next steps, or things still to do."""

CONTINUE_PROMPT = """Your previous session ran out of context before this step was finished.
Continue where you left off: check what is already done in the working directory,
finish only the remaining work, and do not redo completed parts."""

RESUME_PROMPT = """Continue working on this step from where the session stopped.
Check the current state of the working directory first, then finish the remaining work."""

EVALUATION_INSTRUCTIONS = """## Instructions
Evaluate the completion based on the handoff summary. Decide on one of three outcomes:

1. **COMPLETE**: the task is fully done and every stated goal is met.
2. **NEEDS_REFINEMENT**: the task is mostly done but something concrete was missed (e.g. missing validation, incomplete error handling, an untested edge case). A follow-up node is inserted between this node and its downstream tasks.
3. **HAS_BLOCKER**: an external dependency blocks progress (e.g. credentials, an API key, manual approval). A blocked sibling node is created for a human.

Be conservative. Most tasks ARE complete. Only flag NEEDS_REFINEMENT for specific gaps that would make downstream tasks fail or leave broken functionality, never for style or nice-to-haves.

Report your result with ONE curl call:

curl -s -X POST '{callback_url}' -H 'Content-Type: application/json' -d '<JSON_BODY>'

Where <JSON_BODY> is one of:

{{"status": "COMPLETE", "evaluation": "Brief assessment", "mutations": []}}

{{"status": "NEEDS_REFINEMENT", "evaluation": "Missing password strength validation", "mutations": [{{"action": "INSERT_BETWEEN", "new_node": {{"title": "Add password validation", "description": "Detailed description..."}}}}]}}

{{"status": "HAS_BLOCKER", "evaluation": "Needs AWS credentials from ops", "mutations": [{{"action": "ADD_SIBLING", "new_node": {{"title": "Waiting for AWS credentials", "description": "Contact ops..."}}}}]}}

Do not output anything else."""


# =============================================================================
# Errors
# =============================================================================

class ExecutorError(Exception):
    """Base exception for executor request errors."""
    pass


class BlueprintNotFound(ExecutorError):
    def __init__(self, blueprint_id: str):
        self.blueprint_id = blueprint_id
        super().__init__(f"Blueprint not found: {blueprint_id}")


class NodeNotFound(ExecutorError):
    def __init__(self, blueprint_id: str, node_id: str):
        self.blueprint_id = blueprint_id
        self.node_id = node_id
        super().__init__(f"Node {node_id} not found in blueprint {blueprint_id}")


class NodeNotRunnable(ExecutorError):
    """Raised when a node's status or dependencies do not allow a run."""

    def __init__(self, node_id: str, status: str, reason: str, message: str | None = None):
        self.node_id = node_id
        self.status = status
        self.reason = reason

        if message is None:
            message = f"Node {node_id} cannot run (status '{status}'): {reason}"

        super().__init__(message)


class BlueprintNotRunnable(ExecutorError):
    def __init__(self, blueprint_id: str, status: str):
        self.blueprint_id = blueprint_id
        self.status = status
        super().__init__(f"Blueprint {blueprint_id} cannot run while '{status}'; approve it first")


# =============================================================================
# Results
# =============================================================================

@dataclass
class NodeRunResult:
    """Final state of one node run, across all of its attempts."""

    blueprint_id: str
    node_id: str
    status: str
    execution_ids: list[str] = field(default_factory=list)
    failure_reason: str | None = None
    detail: str | None = None
    session_id: str | None = None

    @property
    def attempts(self) -> int:
        return len(self.execution_ids)

    @property
    def execution_id(self) -> str | None:
        return self.execution_ids[-1] if self.execution_ids else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "blueprint_id": self.blueprint_id,
            "node_id": self.node_id,
            "status": self.status,
            "execution_id": self.execution_id,
            "execution_ids": list(self.execution_ids),
            "attempts": self.attempts,
            "failure_reason": self.failure_reason,
            "detail": self.detail,
            "session_id": self.session_id,
        }


@dataclass
class SchedulerIdle:
    """
    Returned by ``execute_next_node`` when nothing was started.

    ``reason`` is ``complete`` (every node done or skipped), ``busy`` (a node
    is running or queued elsewhere) or ``stalled`` (work remains that cannot
    start; see ``diagnostic``).
    """

    reason: str
    diagnostic: GraphDiagnostic | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "diagnostic": self.diagnostic.to_dict() if self.diagnostic else None,
        }


@dataclass
class RunAllResult:
    blueprint_id: str
    status: str
    results: list[NodeRunResult] = field(default_factory=list)
    diagnostic: GraphDiagnostic | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "blueprint_id": self.blueprint_id,
            "status": self.status,
            "results": [r.to_dict() for r in self.results],
            "diagnostic": self.diagnostic.to_dict() if self.diagnostic else None,
        }


@dataclass
class _Outcome:
    node_status: str
    execution_status: str
    failure_reason: str | None = None
    detail: str | None = None
    output_summary: str | None = None
    task_summary: str | None = None
    node_error: str | None = None
    # The agent itself said it failed; never retried
    explicit: bool = False


@dataclass
class _InFlight:
    node_id: str
    execution_id: str
    task: asyncio.Task | None = None
    pid: int | None = None


# =============================================================================
# Executor
# =============================================================================

class BlueprintExecutor:
    """Schedules and runs blueprint nodes; shared by the HTTP layer and recovery."""

    def __init__(
        self,
        session_maker: Callable[[], Session],
        registry: RuntimeRegistry,
        queue: BlueprintTaskQueue,
        settings: ExecutorSettings,
    ):
        self._session_maker = session_maker
        self.registry = registry
        self.queue = queue
        self.settings = settings
        self._in_flight: dict[str, _InFlight] = {}

    # -- Public entry points ---------------------------------------------------

    async def execute_node(self, blueprint_id: str, node_id: str) -> NodeRunResult:
        """Run one node now, waiting for the blueprint's slot."""
        async with self.queue.slot(blueprint_id):
            return await self._execute_node_locked(blueprint_id, node_id)

    async def execute_next_node(self, blueprint_id: str) -> NodeRunResult | SchedulerIdle:
        """Run the lowest-order runnable node, or report why nothing can run."""
        async with self.queue.slot(blueprint_id):
            return await self._execute_next_locked(blueprint_id)

    async def execute_all_nodes(self, blueprint_id: str) -> RunAllResult | None:
        """
        Run nodes until nothing is runnable.

        Returns None without doing anything if the blueprint already has work
        in flight.
        """
        if self.queue.is_running(blueprint_id):
            _logger.info("Blueprint %s already executing, run-all skipped", blueprint_id)
            return None
        async with self.queue.slot(blueprint_id):
            return await self._execute_all_locked(blueprint_id)

    async def resume_node_session(
        self,
        blueprint_id: str,
        node_id: str,
        prompt: str | None = None,
    ) -> NodeRunResult:
        """Continue the node's most recent agent session as a new execution."""
        async with self.queue.slot(blueprint_id):
            return await self._resume_locked(blueprint_id, node_id, prompt)

    def submit_node(self, blueprint_id: str, node_id: str) -> asyncio.Task:
        """Mark the node queued and schedule its run behind the blueprint's slot."""
        with self._session_maker() as db:
            _, node = self._load(db, blueprint_id, node_id)
            if node.status not in RUNNABLE_NODE_STATUSES:
                raise NodeNotRunnable(node.id, node.status, f"Node is {node.status}")
            if node.status != "queued":
                crud.set_node_status(db, node, "queued")
                db.commit()
        return self.queue.enqueue(
            blueprint_id, "run", lambda: self._execute_node_locked(blueprint_id, node_id), node_id=node_id,
        )

    def submit_next(self, blueprint_id: str) -> asyncio.Task:
        self._require_blueprint(blueprint_id)
        return self.queue.enqueue(blueprint_id, "run", lambda: self._execute_next_locked(blueprint_id))

    def submit_all(self, blueprint_id: str) -> asyncio.Task | None:
        """Schedule a run-all pass; None if the blueprint is already executing."""
        self._require_blueprint(blueprint_id)
        if self.queue.is_running(blueprint_id):
            _logger.info("Blueprint %s already executing, run-all not queued", blueprint_id)
            return None
        return self.queue.enqueue(blueprint_id, "run_all", lambda: self._execute_all_locked(blueprint_id))

    def submit_resume(self, blueprint_id: str, node_id: str, prompt: str | None = None) -> asyncio.Task:
        with self._session_maker() as db:
            self._load(db, blueprint_id, node_id)
        return self.queue.enqueue(
            blueprint_id, "run", lambda: self._resume_locked(blueprint_id, node_id, prompt), node_id=node_id,
        )

    def unqueue_node(self, blueprint_id: str, node_id: str) -> bool:
        """Drop a queued run that has not started; the node goes back to pending."""
        removed = self.queue.remove_queued_task(blueprint_id, node_id, task_type="run")
        with self._session_maker() as db:
            _, node = self._load(db, blueprint_id, node_id)
            if node.status == "queued":
                crud.set_node_status(db, node, "pending")
                db.commit()
        return removed

    async def cancel_node(self, blueprint_id: str, node_id: str) -> dict[str, Any]:
        """
        Stop the node's queued or in-flight run.

        The running execution becomes ``cancelled`` and the node ``pending``;
        the agent process gets SIGTERM and the blueprint slot is released
        when the run unwinds.
        """
        removed = self.unqueue_node(blueprint_id, node_id)
        cancelled_id: str | None = None

        in_flight = self._in_flight.get(blueprint_id)
        if in_flight is not None and in_flight.node_id == node_id:
            cancelled_id = in_flight.execution_id
            terminate_process(in_flight.pid)
            task = in_flight.task
            if task is not None and not task.done():
                task.cancel()
                await asyncio.wait({task}, timeout=CANCEL_WAIT_SECONDS)

        with self._session_maker() as db:
            blueprint, node = self._load(db, blueprint_id, node_id)
            execution = crud.get_running_execution(db, node_id)
            if execution is not None:
                # Not owned by this process (e.g. still running from before a restart)
                terminate_process(execution.cli_pid)
                crud.cancel_node_execution(db, execution, node)
                cancelled_id = execution.id
            self._settle_blueprint(db, blueprint)

        if cancelled_id:
            _logger.info("Cancelled execution %s of node %s", cancelled_id, node_id)
        return {"removed_from_queue": removed, "cancelled_execution_id": cancelled_id}

    def approve_blueprint(self, blueprint_id: str) -> Blueprint:
        with self._session_maker() as db:
            blueprint = self._require_blueprint(blueprint_id, db)
            blueprint.transition_to("approved")
            db.commit()
            return blueprint

    def in_flight_execution(self, blueprint_id: str) -> str | None:
        in_flight = self._in_flight.get(blueprint_id)
        return in_flight.execution_id if in_flight else None

    # -- Locked implementations ------------------------------------------------

    async def _execute_node_locked(
        self,
        blueprint_id: str,
        node_id: str,
        *,
        within_run: bool = False,
    ) -> NodeRunResult:
        with self._session_maker() as db:
            blueprint, node = self._load(db, blueprint_id, node_id)
            nodes = crud.list_runnable_candidates(db, blueprint_id)
            try:
                self._check_runnable(blueprint, node, nodes)
            except NodeNotRunnable:
                if node.status == "queued":
                    crud.set_node_status(db, node, "pending")
                    db.commit()
                raise

            runtime = self.registry.get(blueprint.agent_type)
            execution_type = "retry" if crud.has_failed_execution(db, node.id) else "primary"
            execution_id = generate_uuid()
            prompt = self.build_node_prompt(
                blueprint, node, nodes, self._collect_inputs(db, node, nodes), execution_id,
            )
            execution = crud.start_node_execution(
                db,
                node,
                execution_type=execution_type,
                input_context=prompt,
                execution_id=execution_id,
                blueprint=blueprint,
            )
            _logger.info(
                "Starting %s execution %s for node %s '%s' (%s)",
                execution_type, execution.id, node.id, node.title, runtime.agent_type,
            )

            self.queue.set_running_node(blueprint_id, node.id)
            try:
                result = await self._run_attempts(db, blueprint, node, runtime, execution, prompt)
            finally:
                self.queue.set_running_node(blueprint_id, None)

            if not within_run:
                self._settle_blueprint(db, blueprint)
            return result

    async def _execute_next_locked(
        self,
        blueprint_id: str,
        *,
        within_run: bool = False,
    ) -> NodeRunResult | SchedulerIdle:
        with self._session_maker() as db:
            blueprint = self._require_blueprint(blueprint_id, db)
            self._refresh_blocking(db, blueprint_id)
            nodes = crud.list_runnable_candidates(db, blueprint_id)
            ready = runnable_nodes(nodes)
            if not ready:
                diagnostic = diagnose(nodes)
                if diagnostic.state == "complete":
                    self._set_blueprint_status(db, blueprint, "done")
                    return SchedulerIdle("complete", diagnostic)
                if diagnostic.state == "in_flight":
                    return SchedulerIdle("busy", diagnostic)
                return SchedulerIdle("stalled", diagnostic)
            node_id = ready[0].id

        return await self._execute_node_locked(blueprint_id, node_id, within_run=within_run)

    async def _execute_all_locked(self, blueprint_id: str) -> RunAllResult:
        with self._session_maker() as db:
            blueprint = self._require_blueprint(blueprint_id, db)
            if blueprint.status == "draft":
                raise BlueprintNotRunnable(blueprint_id, blueprint.status)
            self._set_blueprint_status(db, blueprint, "running")

        _logger.info("Run-all started for blueprint %s", blueprint_id)
        results: list[NodeRunResult] = []
        try:
            while True:
                outcome = await self._execute_next_locked(blueprint_id, within_run=True)
                if isinstance(outcome, SchedulerIdle):
                    break
                results.append(outcome)
        except asyncio.CancelledError:
            self._finish_run(blueprint_id, "paused")
            raise
        except Exception:
            _logger.exception("Run-all for blueprint %s aborted", blueprint_id)
            self._finish_run(blueprint_id, "failed")
            raise

        with self._session_maker() as db:
            blueprint = self._require_blueprint(blueprint_id, db)
            # Nodes that failed during this pass have used up their attempts
            self._refresh_blocking(db, blueprint_id, grace_seconds=0)
            diagnostic = diagnose(crud.list_runnable_candidates(db, blueprint_id))
            if diagnostic.state == "complete":
                status = "done"
            elif diagnostic.state == "in_flight":
                # Queued runs will settle the blueprint when they finish
                status = "running"
            else:
                status = "failed"
            self._set_blueprint_status(db, blueprint, status)

        _logger.info(
            "Run-all for blueprint %s finished: %s (%d node run(s))", blueprint_id, status, len(results),
        )
        return RunAllResult(blueprint_id, status, results, diagnostic)

    async def _resume_locked(self, blueprint_id: str, node_id: str, prompt: str | None) -> NodeRunResult:
        with self._session_maker() as db:
            blueprint, node = self._load(db, blueprint_id, node_id)
            if blueprint.status == "draft":
                raise BlueprintNotRunnable(blueprint_id, blueprint.status)
            if node.status not in RUNNABLE_NODE_STATUSES:
                raise NodeNotRunnable(node.id, node.status, f"Node is {node.status}")
            previous = crud.latest_session_execution(db, node.id)
            if previous is None:
                raise NodeNotRunnable(node.id, node.status, "No previous agent session to resume")

            runtime = self.registry.get(blueprint.agent_type)
            nodes = crud.list_runnable_candidates(db, blueprint_id)
            execution_id = generate_uuid()
            text = "\n\n".join([prompt or RESUME_PROMPT, self._instructions(blueprint.id, execution_id)])
            fallback = self.build_node_prompt(
                blueprint, node, nodes, self._collect_inputs(db, node, nodes), execution_id,
            )
            execution = crud.start_node_execution(
                db,
                node,
                execution_type="continuation",
                input_context=text,
                parent_execution_id=previous.id,
                execution_id=execution_id,
                blueprint=blueprint,
            )
            crud.set_execution_session(db, execution, previous.session_id)
            _logger.info("Resuming session %s for node %s", previous.session_id, node.id)

            self.queue.set_running_node(blueprint_id, node.id)
            try:
                result = await self._run_attempts(
                    db, blueprint, node, runtime, execution, text,
                    resume_id=previous.session_id, fallback_prompt=fallback,
                )
            finally:
                self.queue.set_running_node(blueprint_id, None)
            self._settle_blueprint(db, blueprint)
            return result

    # -- Attempt loop ----------------------------------------------------------

    async def _run_attempts(
        self,
        db: Session,
        blueprint: Blueprint,
        node: MacroNode,
        runtime: AgentRuntime,
        execution: NodeExecution,
        prompt: str,
        *,
        resume_id: str | None = None,
        fallback_prompt: str | None = None,
    ) -> NodeRunResult:
        started_at = ensure_utc(execution.started_at)
        execution_ids = [execution.id]
        attempt = 1

        try:
            while True:
                result = await self._invoke(
                    db, blueprint, node, runtime, execution, prompt, resume_id, fallback_prompt,
                )
                health = self._record_session(db, runtime, blueprint, execution, result)
                outcome = self._interpret(db, execution, result, health)
                health_fields = _health_fields(health)

                if not self._should_retry(outcome, attempt):
                    break

                next_type = "continuation" if outcome.failure_reason in CONTINUATION_FAILURES else "retry"
                next_id = generate_uuid()
                prompt, resume_id, fallback_prompt = self._next_attempt_prompt(
                    db, blueprint, node, execution, result, next_type, next_id,
                )
                _logger.warning(
                    "Node %s attempt %d/%d failed (%s): %s. Starting %s attempt",
                    node.id, attempt, self.settings.max_attempts,
                    outcome.failure_reason, outcome.detail, next_type,
                )
                execution = crud.roll_over_execution(
                    db,
                    execution,
                    node,
                    next_type=next_type,
                    input_context=prompt,
                    failure_reason=outcome.failure_reason,
                    detail=outcome.detail,
                    health=health_fields,
                    output_summary=outcome.output_summary,
                    next_execution_id=next_id,
                )
                execution_ids.append(execution.id)
                attempt += 1

            actual_minutes = None
            if outcome.node_status == "done":
                elapsed = datetime.now(timezone.utc) - started_at
                actual_minutes = round(elapsed.total_seconds() / 60, 1)

            crud.finish_node_execution(
                db,
                execution,
                node,
                execution_status=outcome.execution_status,
                node_status=outcome.node_status,
                output_summary=outcome.output_summary,
                failure_reason=outcome.failure_reason,
                detail=outcome.detail,
                health=health_fields,
                node_error=outcome.node_error,
                actual_minutes=actual_minutes,
            )
            _logger.info(
                "Node %s finished as %s after %d attempt(s)%s",
                node.id, outcome.node_status, attempt,
                f" ({outcome.failure_reason})" if outcome.failure_reason else "",
            )

            if outcome.node_status == "done":
                await self._create_handoff_artifacts(
                    db, blueprint, node, runtime, result.output, outcome.task_summary,
                )
        except asyncio.CancelledError:
            _logger.info("Execution %s of node %s cancelled", execution.id, node.id)
            crud.cancel_node_execution(db, execution, node)
            raise
        except AgentBinaryNotFound as e:
            self._abort_attempt(db, execution, node, str(e), node_status="pending")
            raise
        except Exception as e:
            _logger.exception("Execution %s of node %s crashed", execution.id, node.id)
            self._abort_attempt(db, execution, node, f"Executor error: {e}", node_status="failed")
            raise

        self._refresh_blocking(db, blueprint.id)
        if outcome.node_status == "done" and self.settings.evaluate_completions:
            await self._evaluate_locked(blueprint.id, node.id, "evaluate")
        return NodeRunResult(
            blueprint_id=blueprint.id,
            node_id=node.id,
            status=outcome.node_status,
            execution_ids=execution_ids,
            failure_reason=outcome.failure_reason,
            detail=outcome.detail,
            session_id=execution.session_id,
        )

    def _should_retry(self, outcome: _Outcome, attempt: int) -> bool:
        if outcome.node_status != "failed" or outcome.explicit:
            return False
        if outcome.failure_reason not in RETRYABLE_FAILURES | CONTINUATION_FAILURES:
            return False
        return attempt < self.settings.max_attempts

    async def _invoke(
        self,
        db: Session,
        blueprint: Blueprint,
        node: MacroNode,
        runtime: AgentRuntime,
        execution: NodeExecution,
        prompt: str,
        resume_id: str | None,
        fallback_prompt: str | None,
    ) -> SessionResult:
        timeout = self.settings.timeout_for(execution.type)
        cwd = blueprint.project_cwd or None
        in_flight = _InFlight(node.id, execution.id, asyncio.current_task())

        def on_pid(pid: int) -> None:
            in_flight.pid = pid
            crud.set_execution_pid(db, execution, pid)

        self._in_flight[blueprint.id] = in_flight
        try:
            async with self.queue.process_slot():
                if resume_id:
                    try:
                        return await runtime.resume_session(
                            resume_id, prompt, cwd=cwd, on_pid=on_pid, timeout=timeout,
                        )
                    except SessionNotFound as e:
                        _logger.warning("%s; starting a fresh session instead", e)
                        prompt = fallback_prompt or prompt
                        execution.input_context = prompt
                        db.commit()
                return await runtime.run_session(prompt, cwd=cwd, on_pid=on_pid, timeout=timeout)
        finally:
            self._in_flight.pop(blueprint.id, None)

    def _record_session(
        self,
        db: Session,
        runtime: AgentRuntime,
        blueprint: Blueprint,
        execution: NodeExecution,
        result: SessionResult,
    ) -> SessionHealth | None:
        """Store the run's session id and analyze its transcript."""
        session_id = result.session_id or execution.session_id
        if not session_id:
            cwd = blueprint.project_cwd or os.getcwd()
            try:
                session_id = runtime.detect_new_session(cwd, ensure_utc(execution.started_at))
            except OSError as e:
                _logger.warning("Session detection failed for execution %s: %s", execution.id, e)
        if not session_id:
            return None

        if session_id != execution.session_id:
            crud.set_execution_session(db, execution, session_id)
        self.registry.track_session(session_id)

        try:
            return runtime.analyze_session(session_id)
        except TranscriptCycleError as e:
            _logger.warning("Transcript of session %s is unreadable: %s", session_id, e)
            return None

    def _interpret(
        self,
        db: Session,
        execution: NodeExecution,
        result: SessionResult,
        health: SessionHealth | None,
    ) -> _Outcome:
        """Decide the attempt's outcome from reports, output and transcript health."""
        # Callbacks write through other sessions while the agent runs
        db.refresh(execution)
        output = result.output or ""

        reported: tuple[str, str | None] | None = None
        if execution.reported_status:
            reported = (execution.reported_status, execution.reported_reason)
        else:
            reported = parse_reported_status(output)
            if reported is not None:
                crud.set_execution_reported_status(db, execution, *reported)

        blocker = self._blocker_of(db, execution, output)
        task_summary = execution.task_summary or parse_task_summary(output)
        summary = task_summary or output[-OUTPUT_SUMMARY_CHARS:] or None

        if reported is not None:
            status, reason = reported
            if status == "done":
                return _Outcome("done", "done", output_summary=summary, task_summary=task_summary)
            if status == "blocked":
                description = reason or (blocker or {}).get("description") or "Agent reported a blocker"
                return _blocked(description)
            detail = reason or "Agent reported the task as failed"
            return _Outcome(
                "failed", "failed", "error", detail, summary, node_error=detail, explicit=True,
            )

        if blocker is not None:
            return _blocked(blocker["description"])

        if isinstance(result, SessionErr):
            classification = classify_failure(result.message, output, health, kind=result.kind)
        elif not is_meaningful_output(output) and not task_summary:
            classification = classify_hung_failure(health)
        elif health is not None and health.failure_reason:
            return _Outcome(
                "failed", "failed", health.failure_reason, health.detail, summary, node_error=health.detail,
            )
        else:
            return _Outcome("done", "done", output_summary=summary, task_summary=task_summary)

        return _Outcome(
            "failed",
            "failed",
            classification.reason,
            classification.detail,
            summary,
            node_error=classification.detail,
        )

    def _blocker_of(self, db: Session, execution: NodeExecution, output: str) -> dict[str, str] | None:
        if execution.blocker_info:
            try:
                data = json.loads(execution.blocker_info)
            except json.JSONDecodeError:
                data = {"description": execution.blocker_info}
            if isinstance(data, dict) and data.get("description"):
                return {k: str(v) for k, v in data.items()}
        blocker = parse_blocker(output)
        if blocker is not None:
            crud.set_execution_blocker(
                db, execution, blocker["type"], blocker["description"], blocker["suggestion"],
            )
        return blocker

    def _next_attempt_prompt(
        self,
        db: Session,
        blueprint: Blueprint,
        node: MacroNode,
        execution: NodeExecution,
        result: SessionResult,
        next_type: str,
        next_id: str,
    ) -> tuple[str, str | None, str | None]:
        """Return ``(prompt, resume_session_id, fallback_prompt)`` for the next attempt."""
        nodes = crud.list_runnable_candidates(db, blueprint.id)
        inputs = self._collect_inputs(db, node, nodes)
        if next_type == "retry":
            return self.build_node_prompt(blueprint, node, nodes, inputs, next_id), None, None

        condensed = self.build_node_prompt(
            blueprint,
            node,
            nodes,
            inputs,
            next_id,
            artifact_chars=max(self.settings.artifact_max_chars // 4, 200),
            previous_output=(result.output or "")[-PREVIOUS_ATTEMPT_CHARS:],
        )
        if execution.session_id:
            resume_prompt = "\n\n".join([CONTINUE_PROMPT, self._instructions(blueprint.id, next_id)])
            return resume_prompt, execution.session_id, condensed
        return condensed, None, None

    def _abort_attempt(
        self,
        db: Session,
        execution: NodeExecution,
        node: MacroNode,
        detail: str,
        *,
        node_status: str,
    ) -> None:
        """Close a running attempt after an error so no row is left running."""
        db.rollback()
        db.refresh(execution)
        db.refresh(node)
        if execution.status != "running":
            return
        try:
            crud.finish_node_execution(
                db,
                execution,
                node,
                execution_status="failed",
                node_status=node_status,
                failure_reason="error",
                detail=detail,
                node_error=detail,
            )
        except TransactionError:
            _logger.exception("Could not close execution %s after error", execution.id)

    # -- Artifacts -------------------------------------------------------------

    async def _create_handoff_artifacts(
        self,
        db: Session,
        blueprint: Blueprint,
        node: MacroNode,
        runtime: AgentRuntime,
        output: str | None,
        task_summary: str | None,
    ) -> list[Artifact]:
        """One artifact per dependent (addressed), or one unaddressed artifact."""
        if task_summary:
            content = task_summary
        else:
            tail = (output or "")[-self.settings.artifact_max_chars:]
            if not tail.strip():
                _logger.warning("Node %s produced no output to hand off", node.id)
                return []
            content = await self._summarize(runtime, blueprint, tail)

        dependents = [
            n for n in crud.list_nodes(db, blueprint.id)
            if node.id in n.get_dependencies_safe()
        ]
        targets: list[str | None] = [d.id for d in dependents] or [None]
        artifacts = [
            crud.create_artifact(db, blueprint.id, node.id, content, target_node_id=target)
            for target in targets
        ]
        db.commit()
        _logger.debug("Created %d handoff artifact(s) for node %s", len(artifacts), node.id)
        return artifacts

    async def _summarize(self, runtime: AgentRuntime, blueprint: Blueprint, tail: str) -> str:
        if not self.settings.summarize_artifacts:
            return tail
        prompt = f"Here is the output from a coding step:\n\n---\n{tail}\n---\n\n{ARTIFACT_PROMPT}"
        try:
            async with self.queue.process_slot():
                result = await runtime.run_session(
                    prompt,
                    cwd=blueprint.project_cwd or None,
                    timeout=self.settings.timeout_for("artifact"),
                )
        except AgentRuntimeError as e:
            _logger.warning("Artifact summary failed, using output tail: %s", e)
            return tail[-ARTIFACT_FALLBACK_CHARS:]

        summary = result.output.strip() if result.ok else ""
        if not summary:
            return tail[-ARTIFACT_FALLBACK_CHARS:]
        marker_idx = summary.find(ARTIFACT_MARKER)
        if marker_idx > 0:
            summary = summary[marker_idx:]
        return summary

    # -- Completion evaluation -------------------------------------------------

    def build_evaluation_prompt(
        self,
        blueprint: Blueprint,
        node: MacroNode,
        handoff: str,
        dependents: list[MacroNode],
    ) -> str:
        """Prompt asking an agent to judge a done node and post the verdict to the evaluation callback."""
        callback_url = (
            f"{self.settings.api_base}/api/blueprints/{blueprint.id}/nodes/{node.id}/evaluation-callback"
        )
        parts = [
            "You are evaluating whether a completed development task needs follow-up work.",
            f"## Completed Task\n- Title: {node.title}\n- Description: {node.description or '(none)'}",
            f"## Handoff Summary\n{handoff}",
        ]
        context = [f'## Blueprint Context\n- Blueprint: "{blueprint.title}"']
        if blueprint.description:
            context.append(f"- Description: {blueprint.description}")
        parts.append("\n".join(context))
        if dependents:
            lines = ["## Downstream Tasks (depend on this completed task):"]
            for dep in dependents:
                lines.append(f'- "{dep.title}": {(dep.description or "(no description)")[:200]}')
            parts.append("\n".join(lines))
        parts.append(EVALUATION_INSTRUCTIONS.format(callback_url=callback_url))
        return "\n\n".join(parts)

    async def evaluate_node_completion(
        self,
        blueprint_id: str,
        node_id: str,
        *,
        session_type: str = "evaluate",
    ) -> RelatedSession | None:
        """Run the completion evaluation of a done node now, waiting for the blueprint's slot."""
        async with self.queue.slot(blueprint_id):
            return await self._evaluate_locked(blueprint_id, node_id, session_type)

    def submit_evaluation(self, blueprint_id: str, node_id: str) -> asyncio.Task:
        """Queue a fresh completion evaluation of a done node."""
        with self._session_maker() as db:
            _, node = self._load(db, blueprint_id, node_id)
            if node.status != "done":
                raise NodeNotRunnable(
                    node.id, node.status, "Only done nodes can be evaluated",
                    f"Node {node.id} is {node.status}; only done nodes can be evaluated",
                )
        return self.queue.enqueue(
            blueprint_id,
            "evaluate",
            lambda: self._evaluate_locked(blueprint_id, node_id, "evaluate"),
            node_id=node_id,
        )

    async def _evaluate_locked(self, blueprint_id: str, node_id: str, session_type: str) -> RelatedSession | None:
        """
        Ask the agent whether a done node needs follow-up work.

        The verdict arrives through the evaluation callback, which applies
        any graph mutations; the session is recorded as a RelatedSession.
        Agent failures are logged and never change the node.
        """
        with self._session_maker() as db:
            blueprint, node = self._load(db, blueprint_id, node_id)
            if node.status != "done":
                _logger.debug("Skipping evaluation of node %s (%s)", node.id, node.status)
                return None
            artifact = crud.latest_output_artifact(db, node.id)
            if artifact is None:
                _logger.debug("Skipping evaluation of node %s: no handoff artifact", node.id)
                return None
            dependents = [
                n for n in crud.list_nodes(db, blueprint_id)
                if node.id in n.get_dependencies_safe()
            ]
            prompt = self.build_evaluation_prompt(blueprint, node, artifact.content, dependents)
            runtime = self.registry.get(blueprint.agent_type)
            cwd = blueprint.project_cwd or None

            started_at = datetime.now(timezone.utc)
            try:
                async with self.queue.process_slot():
                    result = await runtime.run_session(
                        prompt, cwd=cwd, timeout=self.settings.timeout_for("evaluate"),
                    )
            except AgentRuntimeError as e:
                _logger.warning("Evaluation of node %s could not start: %s", node.id, e)
                return None
            if not result.ok:
                _logger.warning("Evaluation of node %s failed (%s): %s", node.id, result.kind, result.message)

            related = capture_related_session(
                db, runtime, node, session_type,
                cwd=cwd, started_at=started_at, session_id=result.session_id,
            )
            db.commit()
            _logger.info("Evaluated node %s '%s' (%s)", node.id, node.title, session_type)
            return related

    # -- Prompts ---------------------------------------------------------------

    def _collect_inputs(
        self,
        db: Session,
        node: MacroNode,
        nodes: list[MacroNode],
    ) -> list[tuple[MacroNode, Artifact]]:
        by_id = {n.id: n for n in nodes}
        inputs = []
        for dep_id in node.get_dependencies_safe():
            dep = by_id.get(dep_id)
            if dep is None:
                continue
            artifact = crud.latest_output_artifact(db, dep_id, node.id)
            if artifact is not None:
                inputs.append((dep, artifact))
        return inputs

    def _instructions(self, blueprint_id: str, execution_id: str) -> str:
        base = f"{self.settings.api_base}/api/blueprints/{blueprint_id}/executions/{execution_id}"
        return f"""## Instructions
- Complete this step thoroughly. Focus only on THIS step.
- DO NOT ask for confirmation or clarification. Just write the code directly.
- If you encounter a blocker you cannot resolve, report it by running this curl command:

curl -s -X POST '{base}/report-blocker' -H 'Content-Type: application/json' -d '{{"type": "<one of: missing_dependency, unclear_requirement, access_issue, technical_limitation>", "description": "<describe the actual problem>", "suggestion": "<what the human could do to help>"}}'

- After completing, verify your changes by running the project's appropriate check commands (typecheck, lint, build, or tests as applicable).
- After ALL work is complete, report your task completion summary:

curl -s -X POST '{base}/task-summary' -H 'Content-Type: application/json' -d '{{"summary": "<2-3 sentence summary of what was accomplished in this step>"}}'

- As the ABSOLUTE LAST action, report your execution status. If the task was completed successfully:

curl -s -X POST '{base}/report-status' -H 'Content-Type: application/json' -d '{{"status": "done"}}'

  If the task cannot be completed (e.g., tests don't pass, build broken, requirements unclear):

curl -s -X POST '{base}/report-status' -H 'Content-Type: application/json' -d '{{"status": "failed", "reason": "<why the task could not be completed>"}}'

- If curl is unavailable, print the same status JSON between {STATUS_MARKER} and {STATUS_END_MARKER} (and a blocker between {BLOCKER_MARKER} and {BLOCKER_END_MARKER}) as the last thing you write."""

    def build_node_prompt(
        self,
        blueprint: Blueprint,
        node: MacroNode,
        nodes: list[MacroNode],
        inputs: list[tuple[MacroNode, Artifact]],
        execution_id: str,
        *,
        artifact_chars: int | None = None,
        previous_output: str | None = None,
    ) -> str:
        """Prompt for one node: plan context, dependency handoffs, task, instructions."""
        artifact_chars = artifact_chars or self.settings.artifact_max_chars
        step = node.order + 1
        parts = [f'You are executing step {step}/{len(nodes)} of a development plan: "{blueprint.title}"']

        if blueprint.description:
            parts.append(f"## Plan Description\n{blueprint.description}")

        if inputs:
            context = ["## Context from previous steps:"]
            for dep, artifact in inputs:
                content = artifact.content
                if len(content) > artifact_chars:
                    content = content[-artifact_chars:]
                context.append(f"### Step {dep.order + 1}: {dep.title}\n{content}")
            parts.append("\n".join(context))

        task = [f"## Your Task (Step {step}): {node.title}"]
        if node.description:
            task.append(node.description)
        if node.prompt:
            task.append(node.prompt)
        parts.append("\n".join(task))

        if previous_output:
            parts.append(
                "## Progress from the previous attempt\n"
                "The previous attempt ran out of context. Its last output was:\n"
                f"{previous_output}\n"
                "Check the working directory and finish what remains."
            )

        if blueprint.project_cwd:
            parts.append(f"## Working Directory: {blueprint.project_cwd}")

        parts.append(self._instructions(blueprint.id, execution_id))
        return "\n\n".join(parts)

    # -- Helpers ---------------------------------------------------------------

    def _require_blueprint(self, blueprint_id: str, db: Session | None = None) -> Blueprint:
        if db is None:
            with self._session_maker() as session:
                return self._require_blueprint(blueprint_id, session)
        blueprint = crud.get_blueprint(db, blueprint_id)
        if blueprint is None:
            raise BlueprintNotFound(blueprint_id)
        return blueprint

    def _load(self, db: Session, blueprint_id: str, node_id: str) -> tuple[Blueprint, MacroNode]:
        blueprint = self._require_blueprint(blueprint_id, db)
        node = crud.get_node(db, blueprint_id, node_id)
        if node is None:
            raise NodeNotFound(blueprint_id, node_id)
        return blueprint, node

    def _check_runnable(self, blueprint: Blueprint, node: MacroNode, nodes: list[MacroNode]) -> None:
        if blueprint.status == "draft":
            raise NodeNotRunnable(node.id, node.status, "Blueprint must be approved before running nodes")
        if node.status not in RUNNABLE_NODE_STATUSES:
            raise NodeNotRunnable(node.id, node.status, f"Node is {node.status}")
        by_id = {n.id: n for n in nodes}
        if not dependencies_satisfied(node, by_id):
            waiting = [
                dep_id for dep_id in node.get_dependencies_safe()
                if dep_id not in by_id or by_id[dep_id].status not in SATISFIED_NODE_STATUSES
            ]
            raise NodeNotRunnable(node.id, node.status, f"Waiting on dependencies: {', '.join(waiting)}")

    def _refresh_blocking(
        self,
        db: Session,
        blueprint_id: str,
        grace_seconds: float | None = None,
    ) -> BlockingUpdate:
        if grace_seconds is None:
            grace_seconds = self.settings.block_grace_seconds
        nodes = crud.list_runnable_candidates(db, blueprint_id)
        update = propagate_blocked(nodes, grace_seconds)
        crud.apply_blocking_update(db, nodes, update)
        return update

    def _set_blueprint_status(self, db: Session, blueprint: Blueprint, status: str) -> None:
        if blueprint.status == status:
            return
        if not blueprint.can_transition_to(status):
            _logger.warning(
                "Blueprint %s stays '%s' (cannot move to '%s')", blueprint.id, blueprint.status, status,
            )
            return
        blueprint.transition_to(status)
        db.commit()

    def _settle_blueprint(self, db: Session, blueprint: Blueprint) -> None:
        """After a single-node run: mark done when complete, else release ``running``."""
        db.refresh(blueprint)
        if blueprint.status != "running":
            return
        diagnostic = diagnose(crud.list_runnable_candidates(db, blueprint.id))
        if diagnostic.state == "complete":
            self._set_blueprint_status(db, blueprint, "done")
        elif diagnostic.state != "in_flight" and not self.queue.has_pending(blueprint.id):
            self._set_blueprint_status(db, blueprint, "approved")

    def _finish_run(self, blueprint_id: str, status: str) -> None:
        with self._session_maker() as db:
            blueprint = crud.get_blueprint(db, blueprint_id)
            if blueprint is not None:
                self._set_blueprint_status(db, blueprint, status)


def _blocked(description: str) -> _Outcome:
    return _Outcome(
        "blocked",
        "done",
        output_summary=f"BLOCKER: {description}",
        node_error=f"Agent reported a blocker: {description}",
    )


def _health_fields(health: SessionHealth | None) -> dict[str, Any] | None:
    """Transcript signals copied onto every attempt; failure fields travel in the outcome."""
    if health is None:
        return None
    return {
        "compact_count": health.compact_count,
        "peak_tokens": health.peak_tokens,
        "context_pressure": health.context_pressure,
    }


def capture_related_session(
    db: Session,
    runtime: AgentRuntime,
    node: MacroNode,
    session_type: str,
    *,
    cwd: str | None,
    started_at: datetime,
    session_id: str | None = None,
) -> RelatedSession | None:
    """Record the auxiliary session spawned for ``node`` since ``started_at``, if it can be found."""
    if session_id is None:
        try:
            session_id = runtime.detect_new_session(cwd or os.getcwd(), started_at)
        except OSError as e:
            _logger.warning("Could not detect %s session for node %s: %s", session_type, node.id, e)
            return None
    if not session_id:
        return None
    related = crud.create_related_session(
        db, node, session_id, session_type,
        started_at=started_at, completed_at=datetime.now(timezone.utc),
    )
    _logger.debug("Captured %s session %s for node %s", session_type, session_id, node.id)
    return related
