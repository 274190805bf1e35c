"""
Pi Mono Runtime
===============

Runs ``pi -p <prompt>`` (or ``npx @mariozechner/pi-coding-agent`` when the
configured binary is ``npx``). Resuming passes the session *file* with
``--session <path>``.

Sessions live in ``~/.pi/agent/sessions/--<cwd with / as ->--/<id>.jsonl``
and are tree-structured; see ``transcripts.linearize_branch``.
"""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, Iterator

from clawui.agent_runtime import AgentRuntime, SessionNotFound
from clawui.session_health import TranscriptEvent
from clawui.transcripts import parse_pi_transcript

NPX_PACKAGE = "@mariozechner/pi-coding-agent"


def encode_project_cwd(cwd: str) -> str:
    return f"--{cwd.strip('/').replace('/', '-')}--"


class PiMonoAgentRuntime(AgentRuntime):
    agent_type = "pimono"

    @property
    def sessions_dir(self) -> Path:
        return self.home / ".pi" / "agent" / "sessions"

    def _base_command(self) -> list[str]:
        if Path(self.binary).name == "npx":
            return [self.binary, NPX_PACKAGE]
        return [self.binary]

    def build_run_command(self, prompt: str) -> tuple[list[str], str | None]:
        return [*self._base_command(), "-p", prompt], None

    def build_resume_command(self, session_id: str, prompt: str) -> list[str]:
        session_path = self.find_session_file(session_id)
        if session_path is None:
            raise SessionNotFound(self.agent_type, session_id)
        return [*self._base_command(), "-p", prompt, "--session", str(session_path)]

    def session_files(self, project_cwd: str) -> Iterable[Path]:
        project_dir = self.sessions_dir / encode_project_cwd(project_cwd)
        if not project_dir.is_dir():
            return []
        return sorted(project_dir.glob("*.jsonl"))

    def all_session_files(self) -> Iterator[Path]:
        if not self.sessions_dir.is_dir():
            return iter(())
        return self.sessions_dir.glob("*/*.jsonl")

    def parse_transcript(self, lines: Iterable[str]) -> list[TranscriptEvent]:
        return parse_pi_transcript(lines)
