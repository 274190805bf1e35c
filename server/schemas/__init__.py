"""
Pydantic Schemas Package
========================

Organized schemas for the ClawUI API.
"""

from .blueprint import (
    BlueprintCreate,
    BlueprintResponse,
    CallbackResponse,
    CancelResponse,
    EvaluationCallbackRequest,
    EvaluationCallbackResponse,
    ExecutionListResponse,
    ExecutionResponse,
    GlobalStatusResponse,
    GraphMutation,
    NewNodeSpec,
    NodeCreate,
    NodeResponse,
    PendingTaskResponse,
    QueueInfoResponse,
    ReportBlockerRequest,
    ReportStatusRequest,
    ResumeSessionRequest,
    RunQueuedResponse,
    TaskSummaryRequest,
    UnqueueResponse,
)

__all__ = [
    "BlueprintCreate",
    "BlueprintResponse",
    "CallbackResponse",
    "CancelResponse",
    "EvaluationCallbackRequest",
    "EvaluationCallbackResponse",
    "ExecutionListResponse",
    "ExecutionResponse",
    "GlobalStatusResponse",
    "GraphMutation",
    "NewNodeSpec",
    "NodeCreate",
    "NodeResponse",
    "PendingTaskResponse",
    "QueueInfoResponse",
    "ReportBlockerRequest",
    "ReportStatusRequest",
    "ResumeSessionRequest",
    "RunQueuedResponse",
    "TaskSummaryRequest",
    "UnqueueResponse",
]
