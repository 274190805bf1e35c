"""
OpenClaw Runtime
================

Runs ``openclaw agent --session-id <uuid> --message <prompt> --json``. The
session id is chosen up front, so it is known before the process exits.

Sessions live in ``~/.openclaw/agents/<agent>/sessions/<id>.jsonl``; the
first line is a ``session`` header whose ``cwd`` ties it to a project.
"""
from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Iterable, Iterator

from clawui.agent_runtime import AgentRuntime
from clawui.session_health import TranscriptEvent
from clawui.transcripts import extract_text, parse_openclaw_transcript, read_openclaw_header


class OpenClawAgentRuntime(AgentRuntime):
    agent_type = "openclaw"

    @property
    def agents_dir(self) -> Path:
        return self.home / ".openclaw" / "agents"

    def build_run_command(self, prompt: str) -> tuple[list[str], str | None]:
        session_id = str(uuid.uuid4())
        return self.build_resume_command(session_id, prompt), session_id

    def build_resume_command(self, session_id: str, prompt: str) -> list[str]:
        return [self.binary, "agent", "--session-id", session_id, "--message", prompt, "--json"]

    def parse_output(self, stdout: str) -> str:
        """Pull the reply text out of ``{status, session_id, message: {content}}``."""
        trimmed = stdout.strip()
        if not trimmed:
            return ""
        try:
            parsed = json.loads(trimmed)
        except json.JSONDecodeError:
            return trimmed
        if isinstance(parsed, dict):
            message = parsed.get("message")
            if isinstance(message, dict) and message.get("content"):
                return extract_text(message["content"])
        return trimmed

    def all_session_files(self) -> Iterator[Path]:
        if not self.agents_dir.is_dir():
            return iter(())
        return self.agents_dir.glob("*/sessions/*.jsonl")

    def session_files(self, project_cwd: str) -> Iterable[Path]:
        matches = []
        for path in self.all_session_files():
            header = read_openclaw_header(path)
            if header and header.get("cwd") == project_cwd:
                matches.append(path)
        return matches

    def parse_transcript(self, lines: Iterable[str]) -> list[TranscriptEvent]:
        return parse_openclaw_transcript(lines)
