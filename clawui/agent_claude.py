"""
Claude Code Runtime
===================

Runs ``claude`` in print mode. Sessions are stored as
``~/.claude/projects/<encoded cwd>/<session id>.jsonl`` where the working
directory is encoded by replacing ``/`` with ``-`` (and ``/.`` with ``/-``
first, for hidden path components).
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Iterator

from clawui.agent_runtime import AgentRuntime
from clawui.session_health import TranscriptEvent
from clawui.transcripts import parse_claude_transcript

_ANSI_CSI = re.compile(r"\x1B\[[0-9;]*[a-zA-Z]")
_ANSI_OSC = re.compile(r"\x1B\][^\x07]*\x07")


def encode_project_cwd(cwd: str) -> str:
    return cwd.replace("/.", "/-").replace("/", "-")


class ClaudeAgentRuntime(AgentRuntime):
    agent_type = "claude"

    @property
    def projects_dir(self) -> Path:
        return self.home / ".claude" / "projects"

    def build_run_command(self, prompt: str) -> tuple[list[str], str | None]:
        return [self.binary, "--dangerously-skip-permissions", "-p", prompt], None

    def build_resume_command(self, session_id: str, prompt: str) -> list[str]:
        return [self.binary, "--dangerously-skip-permissions", "--resume", session_id, "-p", prompt]

    def parse_output(self, stdout: str) -> str:
        cleaned = _ANSI_OSC.sub("", _ANSI_CSI.sub("", stdout))
        return cleaned.replace("\r", "").strip()

    def session_files(self, project_cwd: str) -> Iterable[Path]:
        project_dir = self.projects_dir / encode_project_cwd(project_cwd)
        if not project_dir.is_dir():
            return []
        return sorted(project_dir.glob("*.jsonl"))

    def all_session_files(self) -> Iterator[Path]:
        if not self.projects_dir.is_dir():
            return iter(())
        return self.projects_dir.glob("*/*.jsonl")

    def find_session_file(self, session_id: str) -> Path | None:
        if not self.projects_dir.is_dir():
            return None
        for project_dir in self.projects_dir.iterdir():
            candidate = project_dir / f"{session_id}.jsonl"
            if candidate.is_file():
                return candidate
        return None

    def parse_transcript(self, lines: Iterable[str]) -> list[TranscriptEvent]:
        return parse_claude_transcript(lines)
