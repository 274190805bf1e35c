"""
Test Blueprint Models
=====================

State machines for blueprints, nodes and executions, plus the small model
helpers.
"""

from datetime import datetime, timezone

import pytest

from clawui.plan_models import (
    BLUEPRINT_STATE_TRANSITIONS,
    DEPENDENCY_BLOCKED_PREFIX,
    NODE_STATE_TRANSITIONS,
    Blueprint,
    InvalidStateTransition,
    MacroNode,
    NodeExecution,
    ensure_utc,
)


class TestBlueprintStateMachine:
    def test_draft_only_moves_to_approved(self):
        blueprint = Blueprint(id="bp", title="t", status="draft")
        assert BLUEPRINT_STATE_TRANSITIONS["draft"] == frozenset({"approved"})
        with pytest.raises(InvalidStateTransition) as exc_info:
            blueprint.transition_to("running")
        assert exc_info.value.current_state == "draft"
        assert exc_info.value.target_state == "running"
        assert "Valid transitions from 'draft': approved" in str(exc_info.value)

        blueprint.transition_to("approved")
        assert blueprint.status == "approved"

    def test_run_cycle(self):
        blueprint = Blueprint(id="bp", title="t", status="approved")
        for status in ("running", "paused", "running", "failed", "running", "done"):
            blueprint.transition_to(status)
        assert blueprint.status == "done"

    def test_unknown_status(self):
        blueprint = Blueprint(id="bp", title="t", status="approved")
        with pytest.raises(ValueError):
            blueprint.transition_to("archived")

    def test_transition_touches_updated_at(self):
        blueprint = Blueprint(id="bp", title="t", status="approved")
        at = blueprint.transition_to("running")
        assert blueprint.updated_at == at


class TestNodeStateMachine:
    @pytest.mark.parametrize(
        "current, target",
        [
            ("pending", "queued"),
            ("queued", "pending"),
            ("queued", "running"),
            ("running", "done"),
            ("running", "failed"),
            ("running", "blocked"),
            ("running", "pending"),
            ("failed", "running"),
            ("blocked", "pending"),
            ("done", "pending"),
        ],
    )
    def test_valid(self, current, target):
        node = MacroNode(id="n", title="t", status=current)
        node.transition_to(target)
        assert node.status == target

    @pytest.mark.parametrize(
        "current, target",
        [
            ("pending", "done"),
            ("queued", "done"),
            ("done", "running"),
            ("skipped", "running"),
        ],
    )
    def test_invalid(self, current, target):
        node = MacroNode(id="n", title="t", status=current)
        assert target not in NODE_STATE_TRANSITIONS[current]
        with pytest.raises(InvalidStateTransition):
            node.transition_to(target)
        assert node.status == current

    def test_dependency_blocked_flag(self):
        node = MacroNode(id="n", title="t", status="blocked", error=f"{DEPENDENCY_BLOCKED_PREFIX}: a")
        assert node.is_dependency_blocked
        node.error = "Agent blocker: missing credentials"
        assert not node.is_dependency_blocked

    def test_dependencies_safe(self):
        assert MacroNode(id="n", title="t", dependencies=None).get_dependencies_safe() == []
        assert MacroNode(id="n", title="t", dependencies=["a", 3, "b"]).get_dependencies_safe() == ["a", "b"]


class TestExecutionStateMachine:
    def test_terminal_states_are_final(self):
        execution = NodeExecution(id="e", node_id="n", blueprint_id="bp", status="running")
        execution.transition_to("done")
        assert execution.is_terminal
        assert execution.completed_at is not None
        with pytest.raises(InvalidStateTransition) as exc_info:
            execution.transition_to("failed")
        assert "terminal state" in str(exc_info.value)

    def test_apply_health_keeps_existing_reason(self):
        execution = NodeExecution(
            id="e", node_id="n", blueprint_id="bp", status="running", failure_reason="timeout",
        )
        execution.apply_health({
            "compact_count": 2,
            "peak_tokens": 180000,
            "context_pressure": "critical",
            "failure_reason": "context_exhausted",
            "detail": "from transcript",
        })
        assert execution.compact_count == 2
        assert execution.context_pressure == "critical"
        assert execution.failure_reason == "timeout"
        assert execution.detail == "from transcript"

    def test_apply_health_none(self):
        execution = NodeExecution(id="e", node_id="n", blueprint_id="bp", status="running")
        execution.apply_health(None)
        assert execution.compact_count is None


class TestEnsureUtc:
    def test_naive_becomes_utc(self):
        naive = datetime(2024, 1, 1, 12, 0)
        assert ensure_utc(naive).tzinfo is timezone.utc
        assert ensure_utc(None) is None
