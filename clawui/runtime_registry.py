"""
Runtime Registry
================

The closed set of supported agent runtimes and the registry object that
holds one instance of each.

The registry is built once at process start (``build_runtime_registry``)
and handed to the executor and recovery service; nothing registers itself
on import.

Usage:
    registry = build_runtime_registry(load_executor_settings())
    runtime = registry.get(blueprint.agent_type)
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from clawui.agent_claude import ClaudeAgentRuntime
from clawui.agent_openclaw import OpenClawAgentRuntime
from clawui.agent_pimono import PiMonoAgentRuntime
from clawui.agent_runtime import AgentRuntime, AgentRuntimeError
from clawui.executor_config import (
    AGENT_CLAUDE,
    AGENT_OPENCLAW,
    AGENT_PIMONO,
    ExecutorSettings,
)

_logger = logging.getLogger(__name__)

RUNTIME_CLASSES: dict[str, type[AgentRuntime]] = {
    AGENT_CLAUDE: ClaudeAgentRuntime,
    AGENT_OPENCLAW: OpenClawAgentRuntime,
    AGENT_PIMONO: PiMonoAgentRuntime,
}


class UnknownAgentType(AgentRuntimeError):
    """Raised when a blueprint names an agent type with no runtime."""

    def __init__(self, agent_type: str, known: list[str]):
        self.agent_type = agent_type
        super().__init__(f"Unknown agent type '{agent_type}'. Known types: {', '.join(known)}")


@dataclass
class SessionActivity:
    """Most recently active agent session, updated at most once per debounce window."""

    session_id: str | None = None
    tracked_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "tracked_at": self.tracked_at or None}


class RuntimeRegistry:
    """Agent runtimes by type, plus the default type for new blueprints."""

    def __init__(
        self,
        runtimes: Mapping[str, AgentRuntime],
        default_type: str = AGENT_CLAUDE,
        track_debounce_seconds: float = 10.0,
    ):
        if default_type not in runtimes:
            raise UnknownAgentType(default_type, sorted(runtimes))
        self._runtimes = dict(runtimes)
        self.default_type = default_type
        self.track_debounce_seconds = track_debounce_seconds
        self.session_activity = SessionActivity()

    @property
    def agent_types(self) -> list[str]:
        return sorted(self._runtimes)

    def get(self, agent_type: str | None = None) -> AgentRuntime:
        key = agent_type or self.default_type
        if key == "pi":
            key = AGENT_PIMONO
        try:
            return self._runtimes[key]
        except KeyError:
            raise UnknownAgentType(key, self.agent_types) from None

    def track_session(self, session_id: str, now: float | None = None) -> bool:
        """
        Record ``session_id`` as the active session.

        Repeated reports of the same session within the debounce window are
        ignored. Returns True when the record was updated.
        """
        now = time.monotonic() if now is None else now
        activity = self.session_activity
        if (
            activity.session_id == session_id
            and now - activity.tracked_at < self.track_debounce_seconds
        ):
            return False
        activity.session_id = session_id
        activity.tracked_at = now
        return True


def build_runtime_registry(settings: ExecutorSettings, home: Path | None = None) -> RuntimeRegistry:
    """Instantiate every runtime from settings."""
    binaries = {
        AGENT_CLAUDE: settings.claude_path,
        AGENT_OPENCLAW: settings.openclaw_path,
        AGENT_PIMONO: settings.pi_path,
    }
    runtimes = {
        agent_type: runtime_cls(
            binaries[agent_type],
            hung_idle_seconds=settings.hung_idle_seconds,
            home=home,
        )
        for agent_type, runtime_cls in RUNTIME_CLASSES.items()
    }
    _logger.info("Agent runtimes: %s (default %s)", ", ".join(sorted(runtimes)), settings.agent_type)
    return RuntimeRegistry(
        runtimes,
        default_type=settings.agent_type,
        track_debounce_seconds=settings.track_debounce_seconds,
    )
