"""
Transcript Parsers
==================

Turn each agent's JSONL session file into the normalized
``TranscriptEvent`` stream consumed by ``analyze_session_health``.

Formats:
- Claude Code: one entry per line, compactions are ``system`` entries with
  subtype ``compact_boundary``; API failures carry ``isApiErrorMessage``.
- OpenClaw: a ``session`` header followed by ``message``, ``compaction`` and
  ``error`` entries.
- Pi: OpenClaw-like entries that form a tree through ``id``/``parentId``;
  only the active branch is analyzed (see :func:`linearize_branch`).

Lines that are not valid JSON are skipped.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable

from clawui.session_health import TranscriptEvent

_logger = logging.getLogger(__name__)


class TranscriptCycleError(Exception):
    """Raised when a tree-structured transcript links back on itself."""

    def __init__(self, entry_id: str, message: str | None = None):
        self.entry_id = entry_id

        if message is None:
            message = f"Transcript parent chain revisits entry {entry_id}"

        super().__init__(message)


def read_jsonl(lines: Iterable[str]) -> list[dict[str, Any]]:
    """Decode JSON object lines, skipping blanks and malformed lines."""
    entries: list[dict[str, Any]] = []
    skipped = 0
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            skipped += 1
            continue
        if isinstance(obj, dict):
            entries.append(obj)
    if skipped:
        _logger.debug("Skipped %d malformed transcript line(s)", skipped)
    return entries


def read_transcript_file(path: Path) -> list[dict[str, Any]]:
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return read_jsonl(f)


def extract_text(content: Any) -> str:
    """Join the text blocks of a message content field."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type", "text") == "text"
        ]
        return "\n".join(p for p in parts if p)
    return ""


def _int(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


# =============================================================================
# Claude Code
# =============================================================================

def parse_claude_transcript(lines: Iterable[str]) -> list[TranscriptEvent]:
    events: list[TranscriptEvent] = []
    for obj in read_jsonl(lines):
        entry_type = obj.get("type")
        if entry_type == "system" and obj.get("subtype") == "compact_boundary":
            meta = obj.get("compactMetadata") or {}
            events.append(TranscriptEvent(kind="compaction", pre_tokens=_int(meta.get("preTokens"))))
            continue

        if entry_type not in ("user", "assistant"):
            continue

        message = obj.get("message") or {}
        text = extract_text(message.get("content"))
        if obj.get("isApiErrorMessage"):
            events.append(TranscriptEvent(
                kind="message",
                role="assistant",
                stop_reason="error",
                error_message=text or "Unknown API error",
                text=text,
            ))
            continue

        usage = message.get("usage") or {}
        events.append(TranscriptEvent(
            kind="message",
            role=entry_type,
            input_tokens=(
                _int(usage.get("input_tokens"))
                + _int(usage.get("cache_read_input_tokens"))
                + _int(usage.get("cache_creation_input_tokens"))
            ),
            output_tokens=_int(usage.get("output_tokens")),
            stop_reason=message.get("stop_reason"),
            text=text,
        ))
    return events


# =============================================================================
# OpenClaw
# =============================================================================

def _openclaw_event(obj: dict[str, Any]) -> TranscriptEvent | None:
    entry_type = obj.get("type")
    if entry_type in ("compaction", "compact_boundary"):
        return TranscriptEvent(kind="compaction", pre_tokens=_int(obj.get("preTokens")))
    if entry_type == "error":
        return TranscriptEvent(kind="error", error_message=obj.get("message") or "Unknown error")

    # Pi writes messages flat ({role, content, ...}); OpenClaw nests them
    message = obj.get("message") if entry_type == "message" else obj
    if not isinstance(message, dict) or message.get("role") not in ("user", "assistant"):
        return None

    usage = message.get("usage") or obj.get("usage") or {}
    stop_reason = message.get("stopReason") or obj.get("stopReason")
    text = extract_text(message.get("content"))
    error_message = None
    if stop_reason == "error":
        error_message = message.get("errorMessage") or obj.get("errorMessage") or text or "Unknown error"
    return TranscriptEvent(
        kind="message",
        role=message["role"],
        input_tokens=_int(usage.get("input")),
        output_tokens=_int(usage.get("output")),
        total_tokens=_int(usage.get("totalTokens")),
        stop_reason=stop_reason,
        error_message=error_message,
        text=text,
    )


def parse_openclaw_transcript(lines: Iterable[str]) -> list[TranscriptEvent]:
    events = []
    for obj in read_jsonl(lines):
        if obj.get("type") == "session":
            continue
        event = _openclaw_event(obj)
        if event is not None:
            events.append(event)
    return events


def read_openclaw_header(path: Path) -> dict[str, Any] | None:
    """Return the ``session`` header entry of an OpenClaw/Pi transcript."""
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            first = f.readline()
    except OSError:
        return None
    entries = read_jsonl([first])
    if entries and entries[0].get("type") == "session":
        return entries[0]
    return None


# =============================================================================
# Pi (tree-structured)
# =============================================================================

def linearize_branch(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Return the active branch of an ``id``/``parentId`` tree, root first.

    The active branch is taken to be the path ending at the last leaf in
    file order. When an earlier message was edited and re-run, siblings
    exist and the last leaf is usually, but not provably, the branch the
    agent was continuing.

    Raises:
        TranscriptCycleError: If a parent chain revisits an entry
    """
    if not entries:
        return []

    by_id: dict[str, dict[str, Any]] = {}
    for entry in entries:
        by_id[entry["id"]] = entry

    has_children = {e.get("parentId") for e in entries if e.get("parentId")}
    leaves = [e for e in entries if e["id"] not in has_children]
    if not leaves:
        # Every entry is someone's parent: the ids loop
        raise TranscriptCycleError(entries[-1]["id"])

    branch: list[dict[str, Any]] = []
    visited: set[str] = set()
    current: dict[str, Any] | None = leaves[-1]
    while current is not None:
        entry_id = current["id"]
        if entry_id in visited:
            raise TranscriptCycleError(entry_id)
        visited.add(entry_id)
        branch.append(current)
        parent_id = current.get("parentId")
        current = by_id.get(parent_id) if parent_id else None

    branch.reverse()
    return branch


def parse_pi_transcript(lines: Iterable[str]) -> list[TranscriptEvent]:
    """
    Parse a Pi session. Entries with ids are reduced to the active branch;
    files without ids are read in file order.
    """
    entries = [obj for obj in read_jsonl(lines) if obj.get("type") != "session"]
    tree = [e for e in entries if isinstance(e.get("id"), str)]
    ordered = linearize_branch(tree) if tree else entries

    events = []
    for obj in ordered:
        event = _openclaw_event(obj)
        if event is not None:
            events.append(event)
    return events
