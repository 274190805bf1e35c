"""
Test Blueprint Executor
=======================

Node runs against a scripted agent runtime:

- Scheduling order, run-all and blueprint status
- Retry and continuation attempts up to the configured cap
- Agent reports (status, blocker, task summary) over heuristics
- Dependency blocking and unblocking
- Single flight per blueprint, queueing, unqueue and cancel
- Session resume with fallback to a fresh session
"""

import asyncio
import dataclasses

import pytest

from clawui import plan_crud as crud
from clawui.agent_runtime import AgentBinaryNotFound, SessionErr, SessionNotFound, SessionOk
from clawui.blueprint_executor import (
    BlueprintExecutor,
    BlueprintNotFound,
    NodeNotFound,
    NodeNotRunnable,
    SchedulerIdle,
)
from clawui.failure_classifier import (
    BLOCKER_END_MARKER,
    BLOCKER_MARKER,
    STATUS_END_MARKER,
    STATUS_MARKER,
    TASK_END_MARKER,
    TASK_MARKER,
)
from clawui.plan_models import DEPENDENCY_BLOCKED_PREFIX

from conftest import DEFAULT_OUTPUT, make_blueprint, make_chain


def load(session_maker, blueprint_id):
    """Fresh (blueprint, nodes by title) snapshot."""
    with session_maker() as db:
        blueprint = crud.get_blueprint(db, blueprint_id)
        nodes = {n.title: n for n in crud.list_nodes(db, blueprint_id)}
        return blueprint, nodes


def executions_of(session_maker, node_id):
    with session_maker() as db:
        return crud.list_executions(db, node_id)


class TestRunAll:
    """Running a whole blueprint in dependency order."""

    @pytest.mark.asyncio
    async def test_chain_runs_to_completion(self, executor, session_maker, db, fake_runtime):
        blueprint = make_blueprint(db, description="Ship the feature")
        a, b, c = make_chain(db, blueprint.id, ["a", "b", "c"])

        result = await executor.execute_all_nodes(blueprint.id)

        assert result.status == "done"
        assert [r.node_id for r in result.results] == [a.id, b.id, c.id]
        assert all(r.status == "done" for r in result.results)

        blueprint, nodes = load(session_maker, blueprint.id)
        assert blueprint.status == "done"
        assert {n.status for n in nodes.values()} == {"done"}
        for node in nodes.values():
            (execution,) = executions_of(session_maker, node.id)
            assert execution.type == "primary"
            assert execution.status == "done"
            assert execution.completed_at is not None

        with session_maker() as s:
            handoff = crud.latest_output_artifact(s, a.id, b.id)
            assert handoff.target_node_id == b.id
            assert handoff.content == DEFAULT_OUTPUT
            (last,) = crud.list_artifacts(s, c.id)
            assert last.target_node_id is None

        assert len(fake_runtime.calls) == 3

    @pytest.mark.asyncio
    async def test_dependency_handoff_is_in_prompt(self, executor, session_maker, db, fake_runtime):
        blueprint = make_blueprint(db, project_cwd="/work/app")
        a, b = make_chain(db, blueprint.id, ["schema", "api"])

        await executor.execute_all_nodes(blueprint.id)

        prompt = fake_runtime.calls[1]["prompt"]
        assert "## Context from previous steps:" in prompt
        assert "### Step 1: schema" in prompt
        assert DEFAULT_OUTPUT in prompt
        assert "## Your Task (Step 2): api" in prompt
        assert "## Working Directory: /work/app" in prompt
        (execution,) = executions_of(session_maker, b.id)
        assert f"http://test/api/blueprints/{blueprint.id}/executions/{execution.id}/report-status" in prompt
        assert execution.input_context == prompt

    @pytest.mark.asyncio
    async def test_permanent_failure_blocks_dependents(self, executor, session_maker, db, fake_runtime):
        fake_runtime.results = [SessionErr(kind="error", message="segfault")] * 3
        blueprint = make_blueprint(db)
        a, b, c = make_chain(db, blueprint.id, ["a", "b", "c"])

        result = await executor.execute_all_nodes(blueprint.id)

        assert result.status == "failed"
        assert result.diagnostic.state == "stalled"
        (run,) = result.results
        assert run.status == "failed"
        assert run.attempts == 3
        assert run.failure_reason == "error"

        attempts = executions_of(session_maker, a.id)
        assert [e.type for e in attempts] == ["primary", "retry", "retry"]
        assert all(e.status == "failed" for e in attempts)
        assert attempts[1].parent_execution_id == attempts[0].id

        blueprint, nodes = load(session_maker, blueprint.id)
        assert blueprint.status == "failed"
        assert nodes["a"].status == "failed"
        assert nodes["b"].status == "blocked"
        assert nodes["b"].error.startswith(DEPENDENCY_BLOCKED_PREFIX)
        assert nodes["c"].status == "blocked"

    @pytest.mark.asyncio
    async def test_fan_out_blocked_despite_grace_period(self, session_maker, registry, queue, settings, db, fake_runtime):
        executor = BlueprintExecutor(
            session_maker, registry, queue, dataclasses.replace(settings, block_grace_seconds=60),
        )
        fake_runtime.results = [SessionErr(kind="error", message="segfault")] * 3
        blueprint = make_blueprint(db)
        (a,) = make_chain(db, blueprint.id, ["a"])
        for title in ("b", "c"):
            crud.create_macro_node(db, blueprint.id, title, dependencies=[a.id])
        db.commit()

        result = await executor.execute_all_nodes(blueprint.id)

        assert result.status == "failed"
        assert len(fake_runtime.calls) == 3
        _, nodes = load(session_maker, blueprint.id)
        assert nodes["a"].status == "failed"
        assert nodes["b"].status == "blocked"
        assert nodes["c"].status == "blocked"
        assert nodes["c"].error.startswith(DEPENDENCY_BLOCKED_PREFIX)

    @pytest.mark.asyncio
    async def test_draft_blueprint_cannot_run(self, executor, db):
        blueprint = make_blueprint(db, status="draft")
        (node,) = make_chain(db, blueprint.id, ["a"])
        with pytest.raises(NodeNotRunnable):
            await executor.execute_node(blueprint.id, node.id)

    @pytest.mark.asyncio
    async def test_unknown_blueprint_and_node(self, executor, db):
        with pytest.raises(BlueprintNotFound):
            await executor.execute_node("nope", "nope")
        blueprint = make_blueprint(db)
        with pytest.raises(NodeNotFound):
            await executor.execute_node(blueprint.id, "nope")


class TestExecuteNext:
    @pytest.mark.asyncio
    async def test_empty_blueprint_is_complete(self, executor, session_maker, db):
        blueprint = make_blueprint(db)
        outcome = await executor.execute_next_node(blueprint.id)
        assert isinstance(outcome, SchedulerIdle)
        assert outcome.reason == "complete"
        assert load(session_maker, blueprint.id)[0].status == "done"

    @pytest.mark.asyncio
    async def test_picks_lowest_order(self, executor, db):
        blueprint = make_blueprint(db)
        first = crud.create_macro_node(db, blueprint.id, "first", order=0)
        crud.create_macro_node(db, blueprint.id, "second", order=1)
        db.commit()
        outcome = await executor.execute_next_node(blueprint.id)
        assert outcome.node_id == first.id

    @pytest.mark.asyncio
    async def test_failed_dependency_stalls_then_rerun_unblocks(self, executor, session_maker, db):
        blueprint = make_blueprint(db)
        a, b = make_chain(db, blueprint.id, ["a", "b"])
        a.status = "failed"
        db.commit()

        outcome = await executor.execute_next_node(blueprint.id)
        assert outcome.reason == "stalled"
        assert load(session_maker, blueprint.id)[1]["b"].status == "blocked"

        # Re-running the failed node clears the propagated block
        result = await executor.execute_node(blueprint.id, a.id)
        assert result.status == "done"
        _, nodes = load(session_maker, blueprint.id)
        assert nodes["b"].status == "pending"
        assert nodes["b"].error is None


class TestAttempts:
    """Retry and continuation policy."""

    @pytest.mark.asyncio
    async def test_retry_then_success(self, executor, session_maker, db, fake_runtime):
        fake_runtime.results = [SessionErr(kind="timeout", message="Process timed out after 1800s (killed)")]
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        result = await executor.execute_node(blueprint.id, node.id)

        assert result.status == "done"
        assert result.attempts == 2
        first, second = executions_of(session_maker, node.id)
        assert (first.type, first.status, first.failure_reason) == ("primary", "failed", "timeout")
        assert (second.type, second.status) == ("retry", "done")
        assert [c["kind"] for c in fake_runtime.calls] == ["run", "run"]

    @pytest.mark.asyncio
    async def test_max_attempts_from_settings(self, session_maker, registry, queue, settings, db, fake_runtime):
        executor = BlueprintExecutor(session_maker, registry, queue, dataclasses.replace(settings, max_attempts=1))
        fake_runtime.results = [SessionErr(kind="hung", message="No output for 600s, process killed")]
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        result = await executor.execute_node(blueprint.id, node.id)

        assert result.status == "failed"
        assert result.failure_reason == "hung"
        assert len(fake_runtime.calls) == 1

    @pytest.mark.asyncio
    async def test_context_exhaustion_resumes_known_session(self, executor, session_maker, db, fake_runtime):
        fake_runtime.results = [
            SessionErr(kind="error", message="Context window exceeded", session_id="sess-1"),
        ]
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        result = await executor.execute_node(blueprint.id, node.id)

        assert result.status == "done"
        first, second = executions_of(session_maker, node.id)
        assert first.failure_reason == "context_exhausted"
        assert first.session_id == "sess-1"
        assert second.type == "continuation"
        assert second.session_id == "sess-1"
        resume = fake_runtime.calls[1]
        assert resume["kind"] == "resume"
        assert resume["session_id"] == "sess-1"
        assert "ran out of context" in resume["prompt"]

    @pytest.mark.asyncio
    async def test_context_exhaustion_without_session_condenses(self, executor, session_maker, db, fake_runtime):
        fake_runtime.results = [
            SessionErr(kind="error", message="maximum context length exceeded", output="Wrote models.py and half of views.py"),
        ]
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        await executor.execute_node(blueprint.id, node.id)

        retry = fake_runtime.calls[1]
        assert retry["kind"] == "run"
        assert "## Progress from the previous attempt" in retry["prompt"]
        assert "Wrote models.py and half of views.py" in retry["prompt"]
        assert [e.type for e in executions_of(session_maker, node.id)] == ["primary", "continuation"]

    @pytest.mark.asyncio
    async def test_transcript_failure_on_clean_exit(self, executor, session_maker, db, fake_runtime):
        from clawui.session_health import SessionHealth

        fake_runtime.results = [SessionOk(output=DEFAULT_OUTPUT, session_id="s-ctx")] + [SessionOk(output=DEFAULT_OUTPUT)]
        fake_runtime.health["s-ctx"] = SessionHealth(
            failure_reason="output_token_limit", detail="Response hit the output token maximum",
        )
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        result = await executor.execute_node(blueprint.id, node.id)

        assert result.attempts == 2
        first = executions_of(session_maker, node.id)[0]
        assert first.failure_reason == "output_token_limit"

    @pytest.mark.asyncio
    async def test_output_too_short_is_hung(self, executor, session_maker, db, fake_runtime):
        fake_runtime.results = [SessionOk(output="ok")] * 3
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        result = await executor.execute_node(blueprint.id, node.id)

        assert result.status == "failed"
        assert result.failure_reason == "hung"
        assert result.attempts == 3


class TestAgentReports:
    """What the agent says about its own run wins over heuristics."""

    @pytest.mark.asyncio
    async def test_reported_failure_is_final(self, executor, session_maker, db, fake_runtime):
        fake_runtime.results = [
            SessionOk(output=f'{DEFAULT_OUTPUT}\n{STATUS_MARKER}{{"status": "failed", "reason": "tests red"}}{STATUS_END_MARKER}'),
        ]
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        result = await executor.execute_node(blueprint.id, node.id)

        assert result.status == "failed"
        assert result.attempts == 1
        (execution,) = executions_of(session_maker, node.id)
        assert execution.reported_status == "failed"
        assert execution.reported_reason == "tests red"
        assert load(session_maker, blueprint.id)[1]["a"].error == "tests red"

    @pytest.mark.asyncio
    async def test_callback_report_beats_short_output(self, executor, session_maker, db, fake_runtime):
        def report_done_then_exit():
            with session_maker() as s:
                running = crud.list_running_executions(s)[0]
                crud.set_execution_reported_status(s, running, "done")
                crud.set_execution_task_summary(s, running, "Added the login form.")
                s.commit()
            return SessionOk(output="ok")

        fake_runtime.results = [report_done_then_exit]
        blueprint = make_blueprint(db)
        a, b = make_chain(db, blueprint.id, ["a", "b"])

        result = await executor.execute_node(blueprint.id, a.id)

        assert result.status == "done"
        with session_maker() as s:
            assert crud.latest_output_artifact(s, a.id, b.id).content == "Added the login form."

    @pytest.mark.asyncio
    async def test_blocker_in_output(self, executor, session_maker, db, fake_runtime):
        fake_runtime.results = [
            SessionOk(output=(
                f'{BLOCKER_MARKER}{{"type": "access_issue", "description": "No DB credentials"}}'
                f"{BLOCKER_END_MARKER}"
            )),
        ]
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        result = await executor.execute_node(blueprint.id, node.id)

        assert result.status == "blocked"
        assert len(fake_runtime.calls) == 1
        _, nodes = load(session_maker, blueprint.id)
        assert nodes["a"].status == "blocked"
        assert "No DB credentials" in nodes["a"].error
        assert not nodes["a"].is_dependency_blocked
        (execution,) = executions_of(session_maker, node.id)
        assert execution.status == "done"
        assert execution.output_summary == "BLOCKER: No DB credentials"

    @pytest.mark.asyncio
    async def test_task_summary_marker_becomes_artifact(self, session_maker, registry, queue, settings, db, fake_runtime):
        executor = BlueprintExecutor(
            session_maker, registry, queue, dataclasses.replace(settings, summarize_artifacts=True),
        )
        fake_runtime.results = [
            SessionOk(output=f"{DEFAULT_OUTPUT}\n{TASK_MARKER}\nCreated the users table.\n{TASK_END_MARKER}"),
        ]
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        await executor.execute_node(blueprint.id, node.id)

        # No summarization call when the agent already summarized
        assert len(fake_runtime.calls) == 1
        with session_maker() as s:
            (artifact,) = crud.list_artifacts(s, node.id)
            assert artifact.content == "Created the users table."

    @pytest.mark.asyncio
    async def test_summarized_artifact(self, session_maker, registry, queue, settings, db, fake_runtime):
        executor = BlueprintExecutor(
            session_maker, registry, queue, dataclasses.replace(settings, summarize_artifacts=True),
        )
        fake_runtime.results = [
            SessionOk(output=DEFAULT_OUTPUT),
            SessionOk(output="Sure, here it is.\n**What was done:**\nBuilt the schema."),
        ]
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        await executor.execute_node(blueprint.id, node.id)

        assert fake_runtime.calls[1]["timeout"] == settings.quick_timeout_seconds
        with session_maker() as s:
            (artifact,) = crud.list_artifacts(s, node.id)
            assert artifact.content == "**What was done:**\nBuilt the schema."


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_single_flight_per_blueprint(self, executor, session_maker, db, fake_runtime):
        fake_runtime.delay = 0.05
        blueprint = make_blueprint(db)
        first = crud.create_macro_node(db, blueprint.id, "one")
        second = crud.create_macro_node(db, blueprint.id, "two")
        db.commit()

        results = await asyncio.gather(
            executor.execute_node(blueprint.id, first.id),
            executor.execute_node(blueprint.id, second.id),
        )

        assert [r.status for r in results] == ["done", "done"]
        assert fake_runtime.max_active == 1
        assert load(session_maker, blueprint.id)[0].status == "done"

    @pytest.mark.asyncio
    async def test_run_all_skipped_while_busy(self, executor, queue, db):
        blueprint = make_blueprint(db)
        async with queue.slot(blueprint.id):
            assert await executor.execute_all_nodes(blueprint.id) is None
            assert executor.submit_all(blueprint.id) is None


class TestQueueing:
    @pytest.mark.asyncio
    async def test_submit_marks_queued(self, executor, session_maker, db):
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        task = executor.submit_node(blueprint.id, node.id)
        assert load(session_maker, blueprint.id)[1]["a"].status == "queued"

        result = await task
        assert result.status == "done"
        assert load(session_maker, blueprint.id)[1]["a"].status == "done"

    @pytest.mark.asyncio
    async def test_submit_done_node_rejected(self, executor, db):
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])
        node.status = "done"
        db.commit()
        with pytest.raises(NodeNotRunnable):
            executor.submit_node(blueprint.id, node.id)

    @pytest.mark.asyncio
    async def test_unqueue(self, executor, queue, session_maker, db, fake_runtime):
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        async with queue.slot(blueprint.id):
            task = executor.submit_node(blueprint.id, node.id)
            await asyncio.sleep(0)
            assert executor.unqueue_node(blueprint.id, node.id) is True

        with pytest.raises(asyncio.CancelledError):
            await task
        assert load(session_maker, blueprint.id)[1]["a"].status == "pending"
        assert fake_runtime.calls == []

    @pytest.mark.asyncio
    async def test_cancel_in_flight(self, executor, session_maker, db, fake_runtime):
        fake_runtime.delay = 5
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        task = executor.submit_node(blueprint.id, node.id)
        for _ in range(200):
            if executor.in_flight_execution(blueprint.id):
                break
            await asyncio.sleep(0.01)
        execution_id = executor.in_flight_execution(blueprint.id)
        assert execution_id is not None

        outcome = await executor.cancel_node(blueprint.id, node.id)

        assert outcome == {"removed_from_queue": False, "cancelled_execution_id": execution_id}
        assert task.cancelled()
        (execution,) = executions_of(session_maker, node.id)
        assert execution.status == "cancelled"
        blueprint, nodes = load(session_maker, blueprint.id)
        assert nodes["a"].status == "pending"
        assert blueprint.status == "approved"


class TestResume:
    def _failed_with_session(self, db, blueprint, node, session_id="old-sess"):
        execution = crud.start_node_execution(db, node, blueprint=blueprint)
        crud.set_execution_session(db, execution, session_id)
        crud.finish_node_execution(
            db, execution, node, execution_status="failed", node_status="failed", failure_reason="timeout",
        )
        return execution

    @pytest.mark.asyncio
    async def test_resume_uses_previous_session(self, executor, session_maker, db, fake_runtime):
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])
        previous = self._failed_with_session(db, blueprint, node)

        result = await executor.resume_node_session(blueprint.id, node.id, "Finish the migration")

        assert result.status == "done"
        call = fake_runtime.calls[0]
        assert call["kind"] == "resume"
        assert call["session_id"] == "old-sess"
        assert call["prompt"].startswith("Finish the migration")
        latest = executions_of(session_maker, node.id)[-1]
        assert latest.type == "continuation"
        assert latest.parent_execution_id == previous.id

    @pytest.mark.asyncio
    async def test_missing_session_falls_back_to_fresh_run(self, executor, session_maker, db, fake_runtime):
        fake_runtime.results = [SessionNotFound("claude", "old-sess")]
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])
        self._failed_with_session(db, blueprint, node)

        result = await executor.resume_node_session(blueprint.id, node.id)

        assert result.status == "done"
        assert [c["kind"] for c in fake_runtime.calls] == ["resume", "run"]
        assert "## Your Task (Step 1): a" in fake_runtime.calls[1]["prompt"]

    @pytest.mark.asyncio
    async def test_nothing_to_resume(self, executor, db):
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])
        with pytest.raises(NodeNotRunnable):
            await executor.resume_node_session(blueprint.id, node.id)


class TestRuntimeErrors:
    @pytest.mark.asyncio
    async def test_missing_binary_returns_node_to_pending(self, executor, session_maker, db, fake_runtime):
        fake_runtime.results = [AgentBinaryNotFound("claude", "fake-agent")]
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        with pytest.raises(AgentBinaryNotFound):
            await executor.execute_node(blueprint.id, node.id)

        (execution,) = executions_of(session_maker, node.id)
        assert execution.status == "failed"
        assert load(session_maker, blueprint.id)[1]["a"].status == "pending"


class TestCompletionEvaluation:
    """A done node gets an evaluation session that reports through the callback."""

    @pytest.fixture
    def evaluating(self, session_maker, registry, queue, settings):
        return BlueprintExecutor(
            session_maker, registry, queue, dataclasses.replace(settings, evaluate_completions=True),
        )

    @pytest.mark.asyncio
    async def test_done_node_is_evaluated(self, evaluating, session_maker, db, fake_runtime):
        fake_runtime.results = [
            SessionOk(output=DEFAULT_OUTPUT, session_id="run-1"),
            SessionOk(output="Posted the verdict.", session_id="eval-1"),
        ]
        blueprint = make_blueprint(db, description="Ship the feature")
        a, b = make_chain(db, blueprint.id, ["a", "b"])

        result = await evaluating.execute_node(blueprint.id, a.id)

        assert result.status == "done"
        assert len(fake_runtime.calls) == 2
        prompt = fake_runtime.calls[1]["prompt"]
        assert f"http://test/api/blueprints/{blueprint.id}/nodes/{a.id}/evaluation-callback" in prompt
        assert DEFAULT_OUTPUT in prompt
        assert '"b"' in prompt
        assert fake_runtime.calls[1]["timeout"] == evaluating.settings.quick_timeout_seconds
        with session_maker() as s:
            (related,) = crud.list_related_sessions(s, a.id)
            assert related.session_id == "eval-1"
            assert related.type == "evaluate"
            assert related.completed_at is not None

    @pytest.mark.asyncio
    async def test_evaluation_failure_keeps_node_done(self, evaluating, session_maker, db, fake_runtime):
        fake_runtime.results = [
            SessionOk(output=DEFAULT_OUTPUT),
            SessionErr(kind="timeout", message="Timed out"),
        ]
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        result = await evaluating.execute_node(blueprint.id, node.id)

        assert result.status == "done"
        assert load(session_maker, blueprint.id)[1]["a"].status == "done"
        with session_maker() as s:
            assert crud.list_related_sessions(s, node.id) == []

    @pytest.mark.asyncio
    async def test_evaluation_runtime_error_keeps_node_done(self, evaluating, session_maker, db, fake_runtime):
        fake_runtime.results = [
            SessionOk(output=DEFAULT_OUTPUT),
            AgentBinaryNotFound("claude", "fake-agent"),
        ]
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        result = await evaluating.execute_node(blueprint.id, node.id)

        assert result.status == "done"
        assert load(session_maker, blueprint.id)[1]["a"].status == "done"

    @pytest.mark.asyncio
    async def test_failed_node_is_not_evaluated(self, evaluating, db, fake_runtime):
        fake_runtime.results = [SessionErr(kind="error", message="boom")] * 3
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        result = await evaluating.execute_node(blueprint.id, node.id)

        assert result.status == "failed"
        assert len(fake_runtime.calls) == 3

    @pytest.mark.asyncio
    async def test_disabled_by_settings(self, executor, db, fake_runtime):
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])

        await executor.execute_node(blueprint.id, node.id)

        assert len(fake_runtime.calls) == 1

    @pytest.mark.asyncio
    async def test_submit_evaluation(self, executor, session_maker, db, fake_runtime):
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])
        await executor.execute_node(blueprint.id, node.id)
        fake_runtime.results = [SessionOk(output="ok", session_id="eval-2")]

        related = await executor.submit_evaluation(blueprint.id, node.id)

        assert related.session_id == "eval-2"
        assert "evaluation-callback" in fake_runtime.calls[-1]["prompt"]

    @pytest.mark.asyncio
    async def test_submit_evaluation_requires_done(self, executor, db):
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])
        with pytest.raises(NodeNotRunnable):
            executor.submit_evaluation(blueprint.id, node.id)

    @pytest.mark.asyncio
    async def test_unqueue_leaves_evaluation_queued(self, executor, queue, db):
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])
        await executor.execute_node(blueprint.id, node.id)

        async with queue.slot(blueprint.id):
            task = executor.submit_evaluation(blueprint.id, node.id)
            await asyncio.sleep(0)
            assert executor.unqueue_node(blueprint.id, node.id) is False
        await task
        assert not task.cancelled()
