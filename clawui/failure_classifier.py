"""
Failure Classification
======================

Decides why a node execution failed by combining the CLI outcome (error
message, captured output) with the transcript health signals, and extracts
the structured markers an agent may print to report its own result.

Classification order for a failed process:
1. Explicit output-token or context-window text in the error/output
2. Transcript signals (API error reasons, compaction patterns)
3. Kill/timeout text in the error message -> ``timeout``
4. Anything else -> ``error``
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from clawui.plan_models import REPORTED_STATUS
from clawui.session_health import SessionHealth

_logger = logging.getLogger(__name__)

TIMEOUT_PATTERN = re.compile(r"killed|timeout|timed out|SIGTERM|ETIMEDOUT", re.IGNORECASE)

CONTEXT_PATTERNS = (
    re.compile(r"context.?window|context.?length.?exceeded|maximum context length", re.IGNORECASE),
    re.compile(r"input.*token.*limit|max_tokens_exceeded", re.IGNORECASE),
    re.compile(r"conversation is too long|too many tokens", re.IGNORECASE),
)

# Output shorter than this, with no explicit report, counts as a hang
MIN_MEANINGFUL_OUTPUT_CHARS = 50

STATUS_MARKER = "===EXECUTION_STATUS==="
STATUS_END_MARKER = "===END_STATUS==="
BLOCKER_MARKER = "===EXECUTION_BLOCKER==="
BLOCKER_END_MARKER = "===END_BLOCKER==="
TASK_MARKER = "===TASK_COMPLETE==="
TASK_END_MARKER = "===END_TASK==="


@dataclass(frozen=True)
class FailureClassification:
    reason: str
    detail: str

    def to_dict(self) -> dict[str, str]:
        return {"failure_reason": self.reason, "detail": self.detail}


def classify_failure(
    error_message: str,
    output: str | None = None,
    health: SessionHealth | None = None,
    kind: str | None = None,
) -> FailureClassification:
    """
    Classify a run whose process failed, timed out or was killed.

    ``kind`` is the runtime's own verdict (``timeout``, ``hung`` or
    ``error``); text and transcript evidence can refine it into a context or
    token-limit failure.
    """
    error_message = error_message or ""
    is_timeout = kind == "timeout" or bool(TIMEOUT_PATTERN.search(error_message))
    combined = "\n".join([error_message, output or ""])

    if output and "exceeded" in output and "output token maximum" in output:
        return FailureClassification(
            "output_token_limit",
            "The response exceeded the output token limit. The task may need to be "
            "broken into smaller steps.",
        )

    if any(pattern.search(combined) for pattern in CONTEXT_PATTERNS):
        return FailureClassification(
            "context_exhausted",
            f"Context window exceeded: {error_message[:200]}",
        )

    if health is not None:
        if health.failure_reason in ("output_token_limit", "context_exhausted"):
            return FailureClassification(health.failure_reason, health.detail)
        if health.ended_after_compaction and health.compact_count >= 1:
            return FailureClassification(
                "context_exhausted",
                f"Session compacted {health.compact_count} time(s) and ended immediately "
                f"after (peak {health.peak_tokens} tokens). Context was likely full.",
            )
        if health.compact_count >= 2 and is_timeout:
            return FailureClassification(
                "context_exhausted",
                f"Session timed out after {health.compact_count} context compactions "
                f"(peak {health.peak_tokens} tokens).",
            )
        if health.last_api_error:
            return FailureClassification("error", f"API error: {health.last_api_error[:200]}")

    if kind == "hung":
        return FailureClassification("hung", f"Execution hung: {error_message}")
    if is_timeout:
        return FailureClassification("timeout", f"Execution timed out: {error_message}")
    return FailureClassification("error", f"Execution failed: {error_message}")


def classify_hung_failure(health: SessionHealth | None = None) -> FailureClassification:
    """Classify a run that exited without meaningful output."""
    if health is not None:
        if health.failure_reason == "output_token_limit":
            return FailureClassification("output_token_limit", health.detail)
        if health.failure_reason == "context_exhausted" or health.compact_count >= 2:
            return FailureClassification(
                "context_exhausted",
                health.detail or (
                    f"Session compacted {health.compact_count} times; context "
                    f"exhaustion likely caused the hang."
                ),
            )
        if health.ended_after_compaction and health.compact_count >= 1:
            return FailureClassification(
                "context_exhausted",
                f"Session compacted {health.compact_count} time(s) and produced no output "
                f"after the last compaction (peak {health.peak_tokens} tokens).",
            )
    return FailureClassification(
        "hung",
        "Execution produced no meaningful output (the agent may have hung)",
    )


def is_meaningful_output(output: str | None) -> bool:
    return bool(output) and len(output.strip()) >= MIN_MEANINGFUL_OUTPUT_CHARS


# =============================================================================
# Structured output markers
# =============================================================================

def _last_block(output: str | None, start: str, end: str) -> str | None:
    """Content of the last ``start ... end`` block, or None."""
    if not output:
        return None
    start_idx = output.rfind(start)
    if start_idx == -1:
        return None
    end_idx = output.find(end, start_idx)
    if end_idx == -1:
        return None
    content = output[start_idx + len(start):end_idx].strip()
    return content or None


def _last_json_block(output: str | None, start: str, end: str) -> dict[str, Any] | None:
    content = _last_block(output, start, end)
    if content is None:
        return None
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        _logger.debug("Ignoring malformed %s block", start)
        return None
    return data if isinstance(data, dict) else None


def parse_reported_status(output: str | None) -> tuple[str, str | None] | None:
    """Extract ``(status, reason)`` from the last status marker in ``output``."""
    data = _last_json_block(output, STATUS_MARKER, STATUS_END_MARKER)
    if data is None or data.get("status") not in REPORTED_STATUS:
        return None
    reason = data.get("reason")
    return data["status"], reason if isinstance(reason, str) else None


def parse_blocker(output: str | None) -> dict[str, str] | None:
    """Extract a ``{type, description, suggestion}`` blocker report."""
    data = _last_json_block(output, BLOCKER_MARKER, BLOCKER_END_MARKER)
    if data is None or not data.get("description"):
        return None
    return {
        "type": str(data.get("type") or "unknown"),
        "description": str(data["description"]),
        "suggestion": str(data.get("suggestion") or ""),
    }


def parse_task_summary(output: str | None) -> str | None:
    return _last_block(output, TASK_MARKER, TASK_END_MARKER)
