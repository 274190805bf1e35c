"""
ClawUI Package
==============

Blueprint execution engine: models, dependency scheduling, agent runtimes,
transcript health analysis, execution and crash recovery.
"""

from clawui.database import (
    Base,
    ConcurrentModificationError,
    DatabaseLockError,
    TransactionError,
    create_database,
    get_database_path,
    run_in_transaction,
)
from clawui.plan_models import (
    Artifact,
    Blueprint,
    InvalidStateTransition,
    MacroNode,
    NodeExecution,
    RelatedSession,
)
from clawui.dependency_graph import (
    BlockingUpdate,
    DependencyCycleError,
    GraphDiagnostic,
    diagnose,
    find_cycles,
    propagate_blocked,
    runnable_nodes,
    would_create_cycle,
)
from clawui.session_health import (
    SessionHealth,
    TranscriptEvent,
    analyze_session_health,
)
from clawui.transcripts import (
    TranscriptCycleError,
    linearize_branch,
    parse_claude_transcript,
    parse_openclaw_transcript,
    parse_pi_transcript,
)
from clawui.failure_classifier import (
    FailureClassification,
    classify_failure,
    classify_hung_failure,
)
from clawui.agent_runtime import (
    AgentBinaryNotFound,
    AgentRuntime,
    AgentRuntimeError,
    SessionErr,
    SessionNotFound,
    SessionOk,
)
from clawui.executor_config import ExecutorSettings, load_executor_settings
from clawui.runtime_registry import RuntimeRegistry, UnknownAgentType, build_runtime_registry
from clawui.task_queue import BlueprintTaskQueue, PendingTask
from clawui.blueprint_executor import (
    BlueprintExecutor,
    BlueprintNotFound,
    BlueprintNotRunnable,
    ExecutorError,
    NodeNotFound,
    NodeNotRunnable,
    NodeRunResult,
    RunAllResult,
    SchedulerIdle,
)
from clawui.crash_recovery import CrashRecoveryService, RecoveryResult

__all__ = [
    # Database
    "Base",
    "create_database",
    "get_database_path",
    "run_in_transaction",
    "TransactionError",
    "ConcurrentModificationError",
    "DatabaseLockError",
    # Models
    "Blueprint",
    "MacroNode",
    "Artifact",
    "NodeExecution",
    "RelatedSession",
    "InvalidStateTransition",
    # Dependency graph
    "BlockingUpdate",
    "DependencyCycleError",
    "GraphDiagnostic",
    "diagnose",
    "find_cycles",
    "propagate_blocked",
    "runnable_nodes",
    "would_create_cycle",
    # Transcript health
    "SessionHealth",
    "TranscriptEvent",
    "analyze_session_health",
    "TranscriptCycleError",
    "linearize_branch",
    "parse_claude_transcript",
    "parse_openclaw_transcript",
    "parse_pi_transcript",
    "FailureClassification",
    "classify_failure",
    "classify_hung_failure",
    # Runtimes
    "AgentRuntime",
    "AgentRuntimeError",
    "AgentBinaryNotFound",
    "SessionNotFound",
    "SessionOk",
    "SessionErr",
    "RuntimeRegistry",
    "UnknownAgentType",
    "build_runtime_registry",
    # Execution
    "ExecutorSettings",
    "load_executor_settings",
    "BlueprintTaskQueue",
    "PendingTask",
    "BlueprintExecutor",
    "ExecutorError",
    "BlueprintNotFound",
    "BlueprintNotRunnable",
    "NodeNotFound",
    "NodeNotRunnable",
    "NodeRunResult",
    "RunAllResult",
    "SchedulerIdle",
    "CrashRecoveryService",
    "RecoveryResult",
]
