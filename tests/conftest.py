"""
Shared Test Fixtures
====================

File-backed SQLite databases in a temp directory, and a scripted agent
runtime that returns queued results instead of spawning a CLI.
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Callable

import pytest

# Add project root to path
ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from clawui import plan_crud as crud
from clawui.agent_runtime import AgentRuntime, SessionOk
from clawui.blueprint_executor import BlueprintExecutor
from clawui.database import create_database
from clawui.executor_config import ExecutorSettings
from clawui.plan_assistant import PlanAssistant
from clawui.runtime_registry import RuntimeRegistry
from clawui.session_health import TranscriptEvent
from clawui.task_queue import BlueprintTaskQueue

DEFAULT_OUTPUT = (
    "Implemented the requested change, added tests, and verified the build passes."
)


class FakeRuntime(AgentRuntime):
    """
    Agent runtime that replays scripted results.

    Each entry of ``results`` is a ``SessionOk``/``SessionErr``, an exception
    instance to raise, or a callable returning either. When the script runs
    out, every further call succeeds with ``DEFAULT_OUTPUT``.
    """

    agent_type = "claude"

    def __init__(self, results: list[Any] | None = None, *, delay: float = 0.0, agent_type: str = "claude"):
        super().__init__("fake-agent", hung_idle_seconds=None, home=Path("/nonexistent"))
        self.agent_type = agent_type
        self.results = list(results or [])
        self.delay = delay
        self.calls: list[dict[str, Any]] = []
        self.health: dict[str, Any] = {}
        self.live_pids: set[int] = set()
        self.session_mtimes: dict[str, Any] = {}
        self.detected_session: str | None = None
        self.pid: int | None = None
        self.active = 0
        self.max_active = 0

    def build_run_command(self, prompt: str) -> tuple[list[str], str | None]:
        return [self.binary, prompt], None

    def build_resume_command(self, session_id: str, prompt: str) -> list[str]:
        return [self.binary, "--resume", session_id, prompt]

    async def run_session(self, prompt, cwd=None, on_pid=None, timeout=None):
        self.calls.append({"kind": "run", "prompt": prompt, "session_id": None, "timeout": timeout})
        return await self._next(on_pid)

    async def resume_session(self, session_id, prompt, cwd=None, on_pid=None, timeout=None):
        self.calls.append({"kind": "resume", "prompt": prompt, "session_id": session_id, "timeout": timeout})
        return await self._next(on_pid)

    async def _next(self, on_pid: Callable[[int], None] | None):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if on_pid is not None and self.pid is not None:
                on_pid(self.pid)
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.results.pop(0) if self.results else SessionOk(output=DEFAULT_OUTPUT)
            if callable(result):
                result = result()
            if isinstance(result, BaseException):
                raise result
            return result
        finally:
            self.active -= 1

    def session_files(self, project_cwd: str):
        return []

    def all_session_files(self):
        return iter(())

    def parse_transcript(self, lines) -> list[TranscriptEvent]:
        return []

    def detect_new_session(self, project_cwd, since):
        return self.detected_session

    def session_last_modified(self, session_id):
        return self.session_mtimes.get(session_id)

    def analyze_session(self, session_id):
        if not session_id:
            return None
        return self.health.get(session_id)

    def is_process_alive(self, pid):
        return pid in self.live_pids


@pytest.fixture
def db_env(tmp_path):
    """(engine, SessionLocal) for a fresh database in a temp directory."""
    engine, session_maker = create_database(tmp_path / "db")
    yield engine, session_maker
    engine.dispose()


@pytest.fixture
def session_maker(db_env):
    return db_env[1]


@pytest.fixture
def db(session_maker):
    session = session_maker()
    yield session
    session.close()


@pytest.fixture
def settings(tmp_path):
    return ExecutorSettings(
        db_dir=tmp_path / "db",
        max_attempts=3,
        summarize_artifacts=False,
        evaluate_completions=False,
        api_base="http://test",
        recovery_poll_seconds=0.01,
        recovery_max_wait_seconds=5.0,
    )


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def registry(fake_runtime):
    return RuntimeRegistry(
        {
            "claude": fake_runtime,
            "openclaw": FakeRuntime(agent_type="openclaw"),
            "pimono": FakeRuntime(agent_type="pimono"),
        },
        default_type="claude",
    )


@pytest.fixture
def queue():
    return BlueprintTaskQueue(max_concurrent_processes=3)


@pytest.fixture
def executor(session_maker, registry, queue, settings):
    return BlueprintExecutor(session_maker, registry, queue, settings)


@pytest.fixture
def assistant(session_maker, registry, queue, settings):
    return PlanAssistant(session_maker, registry, queue, settings)


def make_blueprint(session, *, status="approved", title="Plan", **kwargs):
    """Create a blueprint in ``status`` (moving through approved as needed)."""
    blueprint = crud.create_blueprint(session, title, **kwargs)
    if status != "draft":
        blueprint.transition_to("approved")
        if status != "approved":
            blueprint.transition_to(status)
    session.commit()
    return blueprint


def make_chain(session, blueprint_id, titles):
    """Nodes where each depends on the previous one."""
    nodes = []
    previous = None
    for title in titles:
        node = crud.create_macro_node(
            session,
            blueprint_id,
            title,
            description=f"Do {title}",
            dependencies=[previous.id] if previous else [],
        )
        nodes.append(node)
        previous = node
    session.commit()
    return nodes
