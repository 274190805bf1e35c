"""
Session Health Analysis
=======================

Derives failure and context-pressure signals from an agent session
transcript.

The analyzer consumes an already-normalized event stream (see
``clawui.transcripts`` for the per-agent parsers) and is a pure function of
it: identical events always produce identical signals, and the same rules
apply to every supported agent.

Usage:
    events = parse_claude_transcript(lines)
    health = analyze_session_health(events)
    if health.failure_reason == "context_exhausted":
        ...
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from clawui.plan_models import CONTEXT_PRESSURE

EVENT_KINDS = ("message", "compaction", "error")

# Peak token thresholds for context pressure
HIGH_PRESSURE_TOKENS = 150_000
MODERATE_PRESSURE_TOKENS = 120_000

_ERROR_EXCERPT_CHARS = 200


@dataclass(frozen=True)
class TranscriptEvent:
    """
    One normalized transcript event.

    Attributes:
        kind: "message", "compaction" or "error"
        role: "user" or "assistant" for messages, None otherwise
        input_tokens: Prompt-side tokens reported for the message
        output_tokens: Completion-side tokens reported for the message
        total_tokens: Total tokens if the agent reports one directly
        stop_reason: Agent stop condition ("error" marks a failed response)
        error_message: Error text for error events and failed responses
        pre_tokens: Context size just before a compaction
        text: Plain text of the message, when available
    """

    kind: str
    role: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    stop_reason: str | None = None
    error_message: str | None = None
    pre_tokens: int = 0
    text: str | None = None

    @property
    def is_failed_response(self) -> bool:
        return self.kind == "message" and self.role == "assistant" and self.stop_reason == "error"

    @property
    def is_successful_response(self) -> bool:
        return self.kind == "message" and self.role == "assistant" and self.stop_reason != "error"


@dataclass
class SessionHealth:
    """Signals derived from one session transcript."""

    failure_reason: str | None = None
    detail: str = ""
    compact_count: int = 0
    peak_tokens: int = 0
    last_api_error: str | None = None
    message_count: int = 0
    context_pressure: str = "none"
    ended_after_compaction: bool = False
    responses_after_last_compact: int = 0
    last_assistant_text: str | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "failure_reason": self.failure_reason,
            "detail": self.detail,
            "compact_count": self.compact_count,
            "peak_tokens": self.peak_tokens,
            "last_api_error": self.last_api_error,
            "message_count": self.message_count,
            "context_pressure": self.context_pressure,
            "ended_after_compaction": self.ended_after_compaction,
            "responses_after_last_compact": self.responses_after_last_compact,
        }


def pressure_rank(pressure: str | None) -> int:
    """Ordinal position of a context pressure level (unknown counts as none)."""
    try:
        return CONTEXT_PRESSURE.index(pressure or "none")
    except ValueError:
        return 0


def context_pressure_for(compact_count: int, peak_tokens: int, ended_after_compaction: bool) -> str:
    """Worst applicable context pressure level."""
    if compact_count >= 3 or (compact_count >= 2 and ended_after_compaction):
        return "critical"
    if compact_count >= 2 or (compact_count >= 1 and peak_tokens > HIGH_PRESSURE_TOKENS):
        return "high"
    if compact_count >= 1 or peak_tokens > MODERATE_PRESSURE_TOKENS:
        return "moderate"
    return "none"


def _failure_from_signals(
    last_api_error: str | None,
    compact_count: int,
    peak_tokens: int,
    ended_after_compaction: bool,
) -> tuple[str | None, str]:
    if last_api_error:
        excerpt = last_api_error[:_ERROR_EXCERPT_CHARS]
        lowered = last_api_error.lower()
        if "context" in lowered or "token limit" in lowered:
            return "context_exhausted", f"Session ended with context error: {excerpt}"
        if "output" in lowered and "token" in lowered:
            return "output_token_limit", f"Output token limit exceeded: {excerpt}"
        return "error", f"API error: {excerpt}"

    if ended_after_compaction and compact_count >= 2:
        return "context_exhausted", (
            f"Session compacted {compact_count} times and ended immediately "
            f"after the last compaction (peak {peak_tokens} tokens)."
        )
    if compact_count >= 3:
        return "context_exhausted", (
            f"Session compacted {compact_count} times (peak {peak_tokens} tokens), "
            f"indicating context window exhaustion."
        )
    return None, ""


def analyze_session_health(events: Iterable[TranscriptEvent]) -> SessionHealth:
    """
    Single pass over a normalized transcript.

    A compaction resets the count of responses that followed it; a session
    "ended after compaction" when at most one successful assistant response
    came after the last compaction. The returned ``failure_reason`` is None
    when the transcript alone shows no failure; callers combine it with the
    process exit status.
    """
    compact_count = 0
    peak_tokens = 0
    last_api_error: str | None = None
    message_count = 0
    seen_compaction = False
    responses_after_last_compact = 0
    last_assistant_text: str | None = None

    for event in events:
        if event.kind == "compaction":
            compact_count += 1
            seen_compaction = True
            responses_after_last_compact = 0
            peak_tokens = max(peak_tokens, event.pre_tokens or 0)
            continue

        if event.kind == "error":
            last_api_error = event.error_message or "Unknown error"
            continue

        if event.kind != "message":
            continue

        message_count += 1
        if event.is_failed_response:
            last_api_error = event.error_message or event.text or "Unknown error"
        elif event.is_successful_response:
            if seen_compaction:
                responses_after_last_compact += 1
            used = (event.input_tokens or 0) + (event.output_tokens or 0)
            peak_tokens = max(peak_tokens, used, event.total_tokens or 0)
            if event.text and event.text.strip():
                last_assistant_text = event.text

    ended_after_compaction = seen_compaction and responses_after_last_compact <= 1
    failure_reason, detail = _failure_from_signals(
        last_api_error, compact_count, peak_tokens, ended_after_compaction,
    )

    return SessionHealth(
        failure_reason=failure_reason,
        detail=detail,
        compact_count=compact_count,
        peak_tokens=peak_tokens,
        last_api_error=last_api_error,
        message_count=message_count,
        context_pressure=context_pressure_for(compact_count, peak_tokens, ended_after_compaction),
        ended_after_compaction=ended_after_compaction,
        responses_after_last_compact=responses_after_last_compact,
        last_assistant_text=last_assistant_text,
    )
