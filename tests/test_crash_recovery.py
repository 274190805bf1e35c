"""
Test Crash Recovery
===================

Startup reconciliation of executions left running by a previous server
instance: monitored, recovered from the session, or interrupted.
"""

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from clawui import plan_crud as crud
from clawui.crash_recovery import (
    INTERRUPTED_DETAIL,
    RECOVERED_SUMMARY,
    CrashRecoveryService,
)
from clawui.session_health import SessionHealth

from conftest import make_blueprint, make_chain


@pytest.fixture
def service(session_maker, registry, settings):
    # Everything created during the test counts as left over from before
    return CrashRecoveryService(
        session_maker, registry, settings,
        started_at=datetime.now(timezone.utc) + timedelta(seconds=1),
    )


def stale_execution(db, titles=("a", "b"), **fields):
    """Blueprint with a chain whose first node has a running execution."""
    blueprint = make_blueprint(db)
    nodes = make_chain(db, blueprint.id, titles)
    execution = crud.start_node_execution(db, nodes[0], blueprint=blueprint)
    for name, value in fields.items():
        setattr(execution, name, value)
    db.commit()
    return blueprint, nodes, execution


def reload(session_maker, blueprint_id, execution_id):
    with session_maker() as db:
        blueprint = crud.get_blueprint(db, blueprint_id)
        nodes = {n.title: n for n in crud.list_nodes(db, blueprint_id)}
        return blueprint, nodes, crud.get_execution(db, execution_id)


class TestSmartRecovery:
    def test_no_process_no_session_is_interrupted(self, service, session_maker, db):
        blueprint, _, execution = stale_execution(db)

        result = service.smart_recover_stale_executions()

        assert result.total_found == 1
        assert result.failed_count == 1
        assert result.executions[0].outcome == "interrupted"
        assert result.reset_blueprints == [blueprint.id]

        blueprint, nodes, execution = reload(session_maker, blueprint.id, execution.id)
        assert execution.status == "failed"
        assert execution.failure_reason == "interrupted"
        assert execution.detail == INTERRUPTED_DETAIL
        assert nodes["a"].status == "pending"
        assert nodes["a"].error == INTERRUPTED_DETAIL
        assert blueprint.status == "approved"

    def test_finished_session_is_recovered(self, service, session_maker, db, fake_runtime):
        fake_runtime.health["sess-1"] = SessionHealth(
            compact_count=1, peak_tokens=90000, context_pressure="moderate",
            last_assistant_text="Finished the migration and updated the tests.",
        )
        now = datetime.now(timezone.utc)
        fake_runtime.session_mtimes["sess-1"] = now - timedelta(minutes=10)
        blueprint, (a, b), execution = stale_execution(
            db, session_id="sess-1", started_at=now - timedelta(minutes=30),
        )

        result = service.smart_recover_stale_executions()

        assert result.recovered_count == 1
        assert result.executions[0].session_id == "sess-1"
        blueprint, nodes, execution = reload(session_maker, blueprint.id, execution.id)
        assert execution.status == "done"
        assert execution.output_summary == RECOVERED_SUMMARY
        assert execution.peak_tokens == 90000
        assert nodes["a"].status == "done"
        assert nodes["a"].actual_minutes == 20.0
        assert nodes["b"].status == "pending"
        with session_maker() as s:
            artifact = crud.latest_output_artifact(s, a.id, b.id)
            assert artifact.target_node_id == b.id
            assert artifact.content == "Finished the migration and updated the tests."

    def test_detected_session_without_transcript(self, service, session_maker, db, fake_runtime):
        fake_runtime.detected_session = "found-later"
        fake_runtime.session_mtimes["found-later"] = datetime.now(timezone.utc) - timedelta(hours=1)
        blueprint, (a,), execution = stale_execution(db, titles=("a",))

        result = service.smart_recover_stale_executions()

        assert result.recovered_count == 1
        _, nodes, execution = reload(session_maker, blueprint.id, execution.id)
        assert execution.session_id == "found-later"
        with session_maker() as s:
            (artifact,) = crud.list_artifacts(s, a.id)
            assert artifact.content == RECOVERED_SUMMARY

    def test_session_id_without_transcript_is_interrupted(self, service, session_maker, db):
        # e.g. a continuation that inherited its parent's session id but never ran
        blueprint, _, execution = stale_execution(db, session_id="sess-with-no-file")

        result = service.smart_recover_stale_executions()

        assert result.recovered_count == 0
        assert result.executions[0].outcome == "interrupted"
        _, nodes, execution = reload(session_maker, blueprint.id, execution.id)
        assert execution.status == "failed"
        assert execution.failure_reason == "interrupted"
        assert nodes["a"].status == "pending"

    def test_detected_session_of_another_execution_is_ignored(self, service, session_maker, db, fake_runtime):
        blueprint, (a, b), execution = stale_execution(db)
        earlier = crud.start_node_execution(db, b, blueprint=blueprint)
        crud.set_execution_session(db, earlier, "sess-owned")
        crud.cancel_node_execution(db, earlier, b)
        db.commit()
        fake_runtime.detected_session = "sess-owned"
        fake_runtime.session_mtimes["sess-owned"] = datetime.now(timezone.utc) - timedelta(hours=1)

        result = service.smart_recover_stale_executions()

        (record,) = result.executions
        assert record.outcome == "interrupted"
        _, nodes, execution = reload(session_maker, blueprint.id, execution.id)
        assert execution.status == "failed"
        assert execution.session_id is None
        assert nodes["a"].status == "pending"

    def test_live_process_is_monitored(self, service, session_maker, db, fake_runtime):
        fake_runtime.live_pids.add(4242)
        blueprint, _, execution = stale_execution(db, cli_pid=4242)

        result = service.smart_recover_stale_executions()

        assert result.monitored == [execution.id]
        assert result.reset_blueprints == []
        blueprint, nodes, execution = reload(session_maker, blueprint.id, execution.id)
        assert execution.status == "running"
        assert nodes["a"].status == "running"
        assert blueprint.status == "running"

    def test_recently_written_session_is_monitored(self, service, db, fake_runtime):
        fake_runtime.session_mtimes["sess-2"] = datetime.now(timezone.utc)
        _, _, execution = stale_execution(db, session_id="sess-2")

        assert service.smart_recover_stale_executions().monitored == [execution.id]

    def test_quiet_session_is_not_monitored(self, service, db, fake_runtime):
        fake_runtime.session_mtimes["sess-3"] = datetime.now(timezone.utc) - timedelta(hours=1)
        stale_execution(db, session_id="sess-3")

        result = service.smart_recover_stale_executions()
        assert result.monitored == []
        assert result.recovered_count == 1

    def test_current_process_executions_untouched(self, session_maker, registry, settings, db):
        service = CrashRecoveryService(
            session_maker, registry, settings,
            started_at=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        blueprint, _, execution = stale_execution(db)

        result = service.smart_recover_stale_executions()

        assert result.total_found == 0
        assert reload(session_maker, blueprint.id, execution.id)[2].status == "running"

    def test_orphaned_queued_node_is_requeued(self, service, session_maker, db):
        blueprint = make_blueprint(db)
        (node,) = make_chain(db, blueprint.id, ["a"])
        crud.set_node_status(db, node, "queued")
        db.commit()

        result = service.smart_recover_stale_executions()

        assert result.requeued_nodes == [node.id]
        with session_maker() as s:
            assert crud.get_node(s, blueprint.id, node.id).status == "pending"

    def test_recent_interrupted_listing(self, service, db):
        _, _, execution = stale_execution(db)
        service.smart_recover_stale_executions()

        recent = service.get_recent_interrupted_executions()
        assert [e["id"] for e in recent] == [execution.id]
        assert recent[0]["failure_reason"] == "interrupted"

    def test_result_serializes(self, service, db):
        stale_execution(db)
        data = service.smart_recover_stale_executions().to_dict()
        assert data["total_found"] == 1
        assert data["executions"][0]["outcome"] == "interrupted"
        assert data["errors"] == []


class TestMonitorLiveExecutions:
    @pytest.mark.asyncio
    async def test_reconciled_after_process_exits(self, service, session_maker, db, fake_runtime):
        fake_runtime.live_pids.add(4242)
        blueprint, _, execution = stale_execution(db, cli_pid=4242)
        result = service.smart_recover_stale_executions()

        fake_runtime.live_pids.clear()
        fake_runtime.health["sess-9"] = SessionHealth(last_assistant_text="All green.")
        fake_runtime.detected_session = "sess-9"
        fake_runtime.session_mtimes["sess-9"] = datetime.now(timezone.utc)
        finished = await service.monitor_live_executions(result.monitored)

        assert [r.outcome for r in finished] == ["recovered"]
        blueprint, nodes, execution = reload(session_maker, blueprint.id, execution.id)
        assert execution.status == "done"
        assert nodes["a"].status == "done"
        assert blueprint.status == "approved"

    @pytest.mark.asyncio
    async def test_gives_up_and_terminates(self, session_maker, registry, settings, db, fake_runtime, monkeypatch):
        killed = []
        monkeypatch.setattr("clawui.crash_recovery.terminate_process", killed.append)
        service = CrashRecoveryService(
            session_maker, registry, dataclasses.replace(settings, recovery_max_wait_seconds=0),
            started_at=datetime.now(timezone.utc) + timedelta(seconds=1),
        )
        fake_runtime.live_pids.add(4242)
        blueprint, _, execution = stale_execution(db, cli_pid=4242)
        result = service.smart_recover_stale_executions()

        finished = await service.monitor_live_executions(result.monitored)

        assert killed == [4242]
        assert [r.outcome for r in finished] == ["interrupted"]
        assert reload(session_maker, blueprint.id, execution.id)[2].failure_reason == "interrupted"

    @pytest.mark.asyncio
    async def test_nothing_to_monitor(self, service):
        assert await service.monitor_live_executions([]) == []
