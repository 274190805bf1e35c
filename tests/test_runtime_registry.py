"""
Test Runtime Registry
=====================
"""

import pytest

from clawui.agent_claude import ClaudeAgentRuntime
from clawui.agent_openclaw import OpenClawAgentRuntime
from clawui.agent_pimono import PiMonoAgentRuntime
from clawui.executor_config import ExecutorSettings
from clawui.runtime_registry import (
    RUNTIME_CLASSES,
    RuntimeRegistry,
    UnknownAgentType,
    build_runtime_registry,
)


class TestBuildRuntimeRegistry:
    def test_every_runtime_is_built(self, tmp_path):
        settings = ExecutorSettings(claude_path="/opt/claude", agent_type="openclaw")
        registry = build_runtime_registry(settings, home=tmp_path)

        assert registry.agent_types == sorted(RUNTIME_CLASSES)
        assert registry.default_type == "openclaw"
        assert isinstance(registry.get(), OpenClawAgentRuntime)
        assert isinstance(registry.get("claude"), ClaudeAgentRuntime)
        assert registry.get("claude").binary == "/opt/claude"

    def test_pi_alias(self, tmp_path):
        registry = build_runtime_registry(ExecutorSettings(), home=tmp_path)
        assert isinstance(registry.get("pi"), PiMonoAgentRuntime)
        assert registry.get("pi") is registry.get("pimono")

    def test_unknown_type(self, tmp_path):
        registry = build_runtime_registry(ExecutorSettings(), home=tmp_path)
        with pytest.raises(UnknownAgentType) as exc_info:
            registry.get("copilot")
        assert exc_info.value.agent_type == "copilot"

    def test_default_must_exist(self):
        with pytest.raises(UnknownAgentType):
            RuntimeRegistry({}, default_type="claude")


class TestTrackSession:
    """Active-session tracking is debounced per session id."""

    def test_debounce_window(self):
        registry = RuntimeRegistry(
            {"claude": ClaudeAgentRuntime("claude")}, track_debounce_seconds=10,
        )
        assert registry.track_session("s1", now=100.0) is True
        assert registry.track_session("s1", now=105.0) is False
        assert registry.session_activity.tracked_at == 100.0
        assert registry.track_session("s1", now=110.0) is True
        assert registry.session_activity.tracked_at == 110.0

    def test_new_session_always_recorded(self):
        registry = RuntimeRegistry({"claude": ClaudeAgentRuntime("claude")})
        registry.track_session("s1", now=100.0)
        assert registry.track_session("s2", now=100.5) is True
        assert registry.session_activity.to_dict() == {"session_id": "s2", "tracked_at": 100.5}

    def test_initial_activity(self):
        registry = RuntimeRegistry({"claude": ClaudeAgentRuntime("claude")})
        assert registry.session_activity.to_dict() == {"session_id": None, "tracked_at": None}
