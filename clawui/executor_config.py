"""
Executor Configuration
======================

Environment variable configuration for the blueprint executor: which agent
runtime to use, retry caps, wall-clock budgets, the global process cap and
crash-recovery polling.

Every value is read once into a frozen ``ExecutorSettings``; invalid values
log a warning and fall back to the default.

Usage:
    from clawui.executor_config import load_executor_settings

    settings = load_executor_settings()
    timeout = settings.timeout_for("primary")
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Mapping

_logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

ENV_DB_DIR = "CLAWUI_DB_DIR"
ENV_AGENT_TYPE = "AGENT_TYPE"
ENV_CLAUDE_PATH = "CLAUDE_PATH"
ENV_OPENCLAW_PATH = "OPENCLAW_PATH"
ENV_PI_PATH = "PI_PATH"
ENV_MAX_ATTEMPTS = "CLAWUI_MAX_ATTEMPTS"
ENV_PRIMARY_TIMEOUT = "CLAWUI_PRIMARY_TIMEOUT_SECONDS"
ENV_QUICK_TIMEOUT = "CLAWUI_QUICK_TIMEOUT_SECONDS"
ENV_HUNG_IDLE = "CLAWUI_HUNG_IDLE_SECONDS"
ENV_MAX_PROCESSES = "CLAWUI_MAX_CONCURRENT_PROCESSES"
ENV_BLOCK_GRACE = "CLAWUI_BLOCK_GRACE_SECONDS"
ENV_ARTIFACT_MAX_CHARS = "CLAWUI_ARTIFACT_MAX_CHARS"
ENV_RECOVERY_POLL = "CLAWUI_RECOVERY_POLL_SECONDS"
ENV_RECOVERY_MAX_WAIT = "CLAWUI_RECOVERY_MAX_WAIT_SECONDS"
ENV_SESSION_ACTIVE = "CLAWUI_SESSION_ACTIVE_SECONDS"
ENV_API_BASE = "CLAWUI_API_BASE"
ENV_SUMMARIZE_ARTIFACTS = "CLAWUI_SUMMARIZE_ARTIFACTS"
ENV_EVALUATE_NODES = "CLAWUI_EVALUATE_NODES"

AGENT_CLAUDE = "claude"
AGENT_OPENCLAW = "openclaw"
AGENT_PIMONO = "pimono"

VALID_AGENT_TYPES = (AGENT_CLAUDE, AGENT_OPENCLAW, AGENT_PIMONO)

DEFAULT_AGENT_TYPE = AGENT_CLAUDE

# Execution types run with the short budget
QUICK_EXECUTION_TYPES = frozenset({
    "subtask", "artifact", "evaluate", "generate", "enrich", "reevaluate", "reevaluate_all", "split", "smart_deps",
})


@dataclass(frozen=True)
class ExecutorSettings:
    """Tunable limits for node execution and recovery."""

    db_dir: Path = Path(".clawui")
    agent_type: str = DEFAULT_AGENT_TYPE
    claude_path: str = "claude"
    openclaw_path: str = "openclaw"
    pi_path: str = "pi"
    max_attempts: int = 3
    primary_timeout_seconds: float = 1800.0
    quick_timeout_seconds: float = 180.0
    hung_idle_seconds: float = 600.0
    max_concurrent_processes: int = 3
    block_grace_seconds: float = 0.0
    artifact_max_chars: int = 4000
    recovery_poll_seconds: float = 10.0
    recovery_max_wait_seconds: float = 2700.0
    session_active_seconds: float = 60.0
    track_debounce_seconds: float = 10.0
    api_base: str = "http://localhost:3001"
    summarize_artifacts: bool = True
    evaluate_completions: bool = True

    def timeout_for(self, execution_type: str) -> float:
        """Wall-clock budget for an execution of the given type."""
        if execution_type in QUICK_EXECUTION_TYPES:
            return self.quick_timeout_seconds
        return self.primary_timeout_seconds

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["db_dir"] = str(self.db_dir)
        return data


# =============================================================================
# Environment Variable Reading
# =============================================================================

def get_agent_type(environ: Mapping[str, str] | None = None) -> str:
    """
    Read the AGENT_TYPE env var.

    Returns:
        One of VALID_AGENT_TYPES. Defaults to claude if unset or invalid.
    """
    environ = os.environ if environ is None else environ
    raw = environ.get(ENV_AGENT_TYPE, "").strip().lower()

    if not raw:
        return DEFAULT_AGENT_TYPE

    # "pi" is the CLI's own name
    if raw == "pi":
        return AGENT_PIMONO

    if raw in VALID_AGENT_TYPES:
        return raw

    _logger.warning(
        "Unknown value for %s: '%s'. Defaulting to '%s'. Valid values: %s",
        ENV_AGENT_TYPE,
        raw,
        DEFAULT_AGENT_TYPE,
        VALID_AGENT_TYPES,
    )
    return DEFAULT_AGENT_TYPE


def _read_number(environ: Mapping[str, str], name: str, default: float, *, integer: bool = False,
                 minimum: float = 0) -> Any:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw) if integer else float(raw)
    except ValueError:
        _logger.warning("Invalid value for %s: '%s'. Defaulting to %s", name, raw, default)
        return default
    if value < minimum:
        _logger.warning(
            "Value for %s must be >= %s, got %s. Defaulting to %s", name, minimum, value, default,
        )
        return default
    return value


def _read_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    _logger.warning("Invalid value for %s: '%s'. Defaulting to %s", name, raw, default)
    return default


def load_executor_settings(environ: Mapping[str, str] | None = None) -> ExecutorSettings:
    """Build ``ExecutorSettings`` from the environment."""
    environ = os.environ if environ is None else environ
    defaults = ExecutorSettings()

    def path_of(name: str, default: str) -> str:
        return environ.get(name, "").strip() or default

    return ExecutorSettings(
        db_dir=Path(path_of(ENV_DB_DIR, str(defaults.db_dir))),
        agent_type=get_agent_type(environ),
        claude_path=path_of(ENV_CLAUDE_PATH, defaults.claude_path),
        openclaw_path=path_of(ENV_OPENCLAW_PATH, defaults.openclaw_path),
        pi_path=path_of(ENV_PI_PATH, defaults.pi_path),
        max_attempts=_read_number(environ, ENV_MAX_ATTEMPTS, defaults.max_attempts, integer=True, minimum=1),
        primary_timeout_seconds=_read_number(
            environ, ENV_PRIMARY_TIMEOUT, defaults.primary_timeout_seconds, minimum=1,
        ),
        quick_timeout_seconds=_read_number(
            environ, ENV_QUICK_TIMEOUT, defaults.quick_timeout_seconds, minimum=1,
        ),
        hung_idle_seconds=_read_number(environ, ENV_HUNG_IDLE, defaults.hung_idle_seconds, minimum=1),
        max_concurrent_processes=_read_number(
            environ, ENV_MAX_PROCESSES, defaults.max_concurrent_processes, integer=True, minimum=1,
        ),
        block_grace_seconds=_read_number(environ, ENV_BLOCK_GRACE, defaults.block_grace_seconds),
        artifact_max_chars=_read_number(
            environ, ENV_ARTIFACT_MAX_CHARS, defaults.artifact_max_chars, integer=True, minimum=100,
        ),
        recovery_poll_seconds=_read_number(
            environ, ENV_RECOVERY_POLL, defaults.recovery_poll_seconds, minimum=1,
        ),
        recovery_max_wait_seconds=_read_number(
            environ, ENV_RECOVERY_MAX_WAIT, defaults.recovery_max_wait_seconds, minimum=1,
        ),
        session_active_seconds=_read_number(
            environ, ENV_SESSION_ACTIVE, defaults.session_active_seconds, minimum=0,
        ),
        api_base=environ.get(ENV_API_BASE, "").strip().rstrip("/") or defaults.api_base,
        summarize_artifacts=_read_bool(environ, ENV_SUMMARIZE_ARTIFACTS, defaults.summarize_artifacts),
        evaluate_completions=_read_bool(environ, ENV_EVALUATE_NODES, defaults.evaluate_completions),
    )
