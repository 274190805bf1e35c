"""
Blueprints Router
=================

API endpoints for blueprint planning, execution control and the callbacks
the agent uses while it works on a node.

Implements:
- POST /api/blueprints - Create a blueprint
- GET /api/blueprints/:id - Blueprint with its nodes
- POST /api/blueprints/:id/nodes - Add a node
- POST /api/blueprints/:id/approve - Approve a draft blueprint
- POST /api/blueprints/:id/nodes/:node_id/run - Queue one node
- POST /api/blueprints/:id/run - Queue the next runnable node
- POST /api/blueprints/:id/run-all - Queue a run-all pass
- POST /api/blueprints/:id/nodes/:node_id/unqueue - Drop a queued node run
- POST /api/blueprints/:id/nodes/:node_id/cancel - Cancel a queued or running node
- POST /api/blueprints/:id/nodes/:node_id/resume-session - Continue the last session
- GET /api/blueprints/:id/nodes/:node_id/executions - Execution history
- GET /api/blueprints/:id/nodes/:node_id/related-sessions - Auxiliary sessions
- POST /api/blueprints/:id/generate - Queue node generation
- POST /api/blueprints/:id/nodes/:node_id/enrich - Queue a title/description rewrite
- POST /api/blueprints/:id/nodes/:node_id/reevaluate - Queue a node re-evaluation
- POST /api/blueprints/:id/reevaluate-all - Queue re-evaluation of open nodes
- POST /api/blueprints/:id/nodes/:node_id/split - Queue a node split
- POST /api/blueprints/:id/nodes/:node_id/smart-dependencies - Queue dependency selection
- POST /api/blueprints/:id/nodes/:node_id/evaluate - Queue a completion evaluation
- POST /api/blueprints/:id/nodes/:node_id/evaluation-callback - Graph mutations
- POST /api/blueprints/:id/executions/:execution_id/report-status
- POST /api/blueprints/:id/executions/:execution_id/task-summary
- POST /api/blueprints/:id/executions/:execution_id/report-blocker
- GET /api/blueprints/:id/queue - Queue view for one blueprint
- GET /api/global-status - Queue view across blueprints
"""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Request, status
from sqlalchemy.orm import Session

from clawui import plan_crud as crud
from clawui.blueprint_executor import BlueprintExecutor
from clawui.database import get_db
from clawui.plan_assistant import PlanAssistant
from clawui.plan_models import Blueprint, MacroNode, NodeExecution
from clawui.task_queue import BlueprintTaskQueue, PendingTask
from server.exceptions import ConflictError, NotFoundError
from server.schemas.blueprint import (
    BlueprintCreate,
    BlueprintResponse,
    CallbackResponse,
    CancelResponse,
    EvaluationCallbackRequest,
    EvaluationCallbackResponse,
    ExecutionListResponse,
    ExecutionResponse,
    GenerateRequest,
    GlobalStatusResponse,
    NodeCreate,
    NodeResponse,
    QueueInfoResponse,
    RelatedSessionListResponse,
    RelatedSessionResponse,
    ReportBlockerRequest,
    ReportStatusRequest,
    ResumeSessionRequest,
    RunQueuedResponse,
    TaskSummaryRequest,
    UnqueueResponse,
)

_logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["blueprints"])

_NOT_FOUND = {404: {"description": "Blueprint or node not found"}}
_CONFLICT = {409: {"description": "Not allowed in the current state"}}


def get_executor(request: Request) -> BlueprintExecutor:
    return request.app.state.executor


def get_queue(request: Request) -> BlueprintTaskQueue:
    return request.app.state.queue


def get_assistant(request: Request) -> PlanAssistant:
    return request.app.state.assistant


def _get_blueprint_or_404(db: Session, blueprint_id: str) -> Blueprint:
    blueprint = crud.get_blueprint(db, blueprint_id)
    if blueprint is None:
        raise NotFoundError("blueprint", blueprint_id)
    return blueprint


def _get_node_or_404(db: Session, blueprint_id: str, node_id: str) -> MacroNode:
    _get_blueprint_or_404(db, blueprint_id)
    node = crud.get_node(db, blueprint_id, node_id)
    if node is None:
        raise NotFoundError("node", node_id)
    return node


def _get_execution_or_404(db: Session, blueprint_id: str, execution_id: str) -> NodeExecution:
    execution = crud.get_execution(db, execution_id)
    if execution is None or execution.blueprint_id != blueprint_id:
        raise NotFoundError("execution", execution_id)
    if execution.status != "running":
        _logger.warning(
            "Callback for execution %s arrived after it finished (status %s)",
            execution_id, execution.status,
        )
    return execution


def _blueprint_response(db: Session, blueprint: Blueprint) -> BlueprintResponse:
    response = BlueprintResponse.model_validate(blueprint)
    response.nodes = [NodeResponse.model_validate(n) for n in crud.list_nodes(db, blueprint.id)]
    return response


# =============================================================================
# Blueprints and nodes
# =============================================================================

@router.post(
    "/blueprints",
    response_model=BlueprintResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"description": "Invalid input or unknown agent type"}},
)
async def create_blueprint(
    data: BlueprintCreate,
    db: Session = Depends(get_db),
    executor: BlueprintExecutor = Depends(get_executor),
):
    """
    Create a new blueprint in ``draft`` status.

    The agent type defaults to the server's configured ``AGENT_TYPE``; an
    unknown type is rejected with 422.
    """
    agent_type = data.agent_type or executor.registry.default_type
    if agent_type == "pi":
        agent_type = "pimono"
    executor.registry.get(agent_type)

    blueprint = crud.create_blueprint(
        db,
        data.title,
        description=data.description,
        project_cwd=data.project_cwd,
        agent_type=agent_type,
    )
    db.commit()
    _logger.info("Created blueprint %s '%s' (%s)", blueprint.id, blueprint.title, agent_type)
    return _blueprint_response(db, blueprint)


@router.get(
    "/blueprints/{blueprint_id}",
    response_model=BlueprintResponse,
    responses=_NOT_FOUND,
)
async def get_blueprint(blueprint_id: str, db: Session = Depends(get_db)):
    """Get a blueprint with its nodes in display order."""
    return _blueprint_response(db, _get_blueprint_or_404(db, blueprint_id))


@router.post(
    "/blueprints/{blueprint_id}/nodes",
    response_model=NodeResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**_NOT_FOUND, **_CONFLICT, 422: {"description": "Unknown dependency"}},
)
async def create_node(blueprint_id: str, data: NodeCreate, db: Session = Depends(get_db)):
    """
    Add a macro node to a blueprint.

    ## Validation

    - Every dependency must be a node of the same blueprint (422 otherwise)
    - The new edges must not close a cycle (409 otherwise)
    """
    _get_blueprint_or_404(db, blueprint_id)
    node = crud.create_macro_node(
        db,
        blueprint_id,
        data.title,
        description=data.description,
        order=data.order,
        dependencies=data.dependencies,
        prompt=data.prompt,
        estimated_minutes=data.estimated_minutes,
        parallel_group=data.parallel_group,
    )
    db.commit()
    return NodeResponse.model_validate(node)


@router.post(
    "/blueprints/{blueprint_id}/approve",
    response_model=BlueprintResponse,
    responses={**_NOT_FOUND, **_CONFLICT},
)
async def approve_blueprint(
    blueprint_id: str,
    db: Session = Depends(get_db),
    executor: BlueprintExecutor = Depends(get_executor),
):
    """
    Approve a blueprint for execution.

    ## State Transitions

    - draft -> approved
    - anything else -> 409 Conflict
    """
    executor.approve_blueprint(blueprint_id)
    return _blueprint_response(db, _get_blueprint_or_404(db, blueprint_id))


# =============================================================================
# Execution control
# =============================================================================

@router.post(
    "/blueprints/{blueprint_id}/nodes/{node_id}/run",
    response_model=RunQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={**_NOT_FOUND, **_CONFLICT},
)
async def run_node(
    blueprint_id: str,
    node_id: str,
    executor: BlueprintExecutor = Depends(get_executor),
):
    """
    Queue one node for execution.

    The node is marked ``queued`` right away and runs once the blueprint's
    execution slot is free. Queuing a node that is already queued returns
    the existing entry.

    ## State Transitions

    - pending/failed/blocked -> queued
    - running/done/skipped -> 409 Conflict
    """
    executor.submit_node(blueprint_id, node_id)
    return RunQueuedResponse(
        status="queued",
        blueprint_id=blueprint_id,
        node_id=node_id,
        message=f"Node {node_id} queued",
    )


@router.post(
    "/blueprints/{blueprint_id}/run",
    response_model=RunQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_NOT_FOUND,
)
async def run_next_node(blueprint_id: str, executor: BlueprintExecutor = Depends(get_executor)):
    """Queue a run of the lowest-order runnable node."""
    executor.submit_next(blueprint_id)
    return RunQueuedResponse(
        status="queued",
        blueprint_id=blueprint_id,
        message="Next runnable node queued",
    )


@router.post(
    "/blueprints/{blueprint_id}/run-all",
    response_model=RunQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_NOT_FOUND,
)
async def run_all_nodes(blueprint_id: str, executor: BlueprintExecutor = Depends(get_executor)):
    """
    Queue a run-all pass: nodes execute in dependency order until nothing
    is runnable.

    If the blueprint is already executing, nothing is queued and the
    response status is ``already_running``.
    """
    task = executor.submit_all(blueprint_id)
    if task is None:
        return RunQueuedResponse(
            status="already_running",
            blueprint_id=blueprint_id,
            message="Blueprint is already executing",
        )
    return RunQueuedResponse(
        status="queued",
        blueprint_id=blueprint_id,
        message="Run-all queued",
    )


@router.post(
    "/blueprints/{blueprint_id}/nodes/{node_id}/unqueue",
    response_model=UnqueueResponse,
    responses=_NOT_FOUND,
)
async def unqueue_node(
    blueprint_id: str,
    node_id: str,
    executor: BlueprintExecutor = Depends(get_executor),
):
    """
    Remove a node's pending run from the queue.

    ## State Transitions

    - queued -> pending
    """
    removed = executor.unqueue_node(blueprint_id, node_id)
    return UnqueueResponse(node_id=node_id, removed=removed)


@router.post(
    "/blueprints/{blueprint_id}/nodes/{node_id}/cancel",
    response_model=CancelResponse,
    responses={**_NOT_FOUND, 409: {"description": "Nothing queued or running for the node"}},
)
async def cancel_node(
    blueprint_id: str,
    node_id: str,
    executor: BlueprintExecutor = Depends(get_executor),
):
    """
    Cancel a node's queued or in-flight run.

    The agent process is terminated and the running execution is closed.

    ## State Transitions

    - execution: running -> cancelled
    - node: queued/running -> pending
    """
    result = await executor.cancel_node(blueprint_id, node_id)
    if not result["removed_from_queue"] and result["cancelled_execution_id"] is None:
        raise ConflictError(
            f"Node {node_id} has nothing queued or running",
            details={"node_id": node_id},
        )
    return CancelResponse(node_id=node_id, **result)


@router.post(
    "/blueprints/{blueprint_id}/nodes/{node_id}/resume-session",
    response_model=RunQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={**_NOT_FOUND, **_CONFLICT},
)
async def resume_session(
    blueprint_id: str,
    node_id: str,
    data: ResumeSessionRequest | None = Body(default=None),
    executor: BlueprintExecutor = Depends(get_executor),
):
    """
    Continue the node's most recent agent session as a ``continuation``
    execution.
    """
    executor.submit_resume(blueprint_id, node_id, data.prompt if data else None)
    return RunQueuedResponse(
        status="queued",
        blueprint_id=blueprint_id,
        node_id=node_id,
        message=f"Session resume for node {node_id} queued",
    )


@router.get(
    "/blueprints/{blueprint_id}/nodes/{node_id}/executions",
    response_model=ExecutionListResponse,
    responses=_NOT_FOUND,
)
async def list_node_executions(blueprint_id: str, node_id: str, db: Session = Depends(get_db)):
    """Execution history of a node, newest first."""
    _get_node_or_404(db, blueprint_id, node_id)
    executions = crud.list_executions(db, node_id)
    return ExecutionListResponse(
        executions=[ExecutionResponse.model_validate(e) for e in executions],
        total=len(executions),
    )


@router.get(
    "/blueprints/{blueprint_id}/nodes/{node_id}/related-sessions",
    response_model=RelatedSessionListResponse,
    responses=_NOT_FOUND,
)
async def list_related_sessions(blueprint_id: str, node_id: str, db: Session = Depends(get_db)):
    """Auxiliary agent sessions (evaluation, split, ...) of a node, newest first."""
    _get_node_or_404(db, blueprint_id, node_id)
    sessions = crud.list_related_sessions(db, node_id)
    return RelatedSessionListResponse(
        related_sessions=[RelatedSessionResponse.model_validate(s) for s in sessions],
        total=len(sessions),
    )


# =============================================================================
# Plan assistant
# =============================================================================

@router.post(
    "/blueprints/{blueprint_id}/generate",
    response_model=RunQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={**_NOT_FOUND, 422: {"description": "Nothing to plan from"}},
)
async def generate_nodes(
    blueprint_id: str,
    data: GenerateRequest | None = Body(default=None),
    assistant: PlanAssistant = Depends(get_assistant),
):
    """
    Queue an agent session that appends new nodes planned from the
    description (or the blueprint's own description).
    """
    assistant.submit_generate(blueprint_id, data.description if data else None)
    return RunQueuedResponse(status="queued", blueprint_id=blueprint_id, message="Node generation queued")


@router.post(
    "/blueprints/{blueprint_id}/nodes/{node_id}/enrich",
    response_model=RunQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_NOT_FOUND,
)
async def enrich_node(blueprint_id: str, node_id: str, assistant: PlanAssistant = Depends(get_assistant)):
    """Queue an agent session that rewrites the node's title and description."""
    assistant.submit_enrich(blueprint_id, node_id)
    return RunQueuedResponse(
        status="queued", blueprint_id=blueprint_id, node_id=node_id, message=f"Enrich for node {node_id} queued",
    )


@router.post(
    "/blueprints/{blueprint_id}/nodes/{node_id}/reevaluate",
    response_model=RunQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_NOT_FOUND,
)
async def reevaluate_node(blueprint_id: str, node_id: str, assistant: PlanAssistant = Depends(get_assistant)):
    """
    Queue an agent session that brings the node up to date with the project.

    ## State Transitions

    - failed/blocked -> pending when the agent finds the cause resolved
    - pending/failed/blocked -> skipped when the work is no longer needed
    """
    assistant.submit_reevaluate(blueprint_id, node_id)
    return RunQueuedResponse(
        status="queued", blueprint_id=blueprint_id, node_id=node_id,
        message=f"Re-evaluation of node {node_id} queued",
    )


@router.post(
    "/blueprints/{blueprint_id}/reevaluate-all",
    response_model=RunQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_NOT_FOUND,
)
async def reevaluate_all(blueprint_id: str, assistant: PlanAssistant = Depends(get_assistant)):
    """Queue one agent session re-evaluating every node that is not done, queued or running."""
    task = assistant.submit_reevaluate_all(blueprint_id)
    if task is None:
        return RunQueuedResponse(
            status="nothing_to_do", blueprint_id=blueprint_id, message="No nodes to re-evaluate",
        )
    return RunQueuedResponse(status="queued", blueprint_id=blueprint_id, message="Re-evaluation queued")


@router.post(
    "/blueprints/{blueprint_id}/nodes/{node_id}/split",
    response_model=RunQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={**_NOT_FOUND, **_CONFLICT},
)
async def split_node(blueprint_id: str, node_id: str, assistant: PlanAssistant = Depends(get_assistant)):
    """
    Queue an agent session that replaces a pending node with 2-3 chained
    sub-nodes. Dependents are rewired to the last sub-node.

    ## State Transitions

    - pending -> skipped (the original node)
    - running/done/failed/... -> 409 Conflict
    """
    assistant.submit_split(blueprint_id, node_id)
    return RunQueuedResponse(
        status="queued", blueprint_id=blueprint_id, node_id=node_id, message=f"Split of node {node_id} queued",
    )


@router.post(
    "/blueprints/{blueprint_id}/nodes/{node_id}/smart-dependencies",
    response_model=RunQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={**_NOT_FOUND, **_CONFLICT, 422: {"description": "No other nodes to depend on"}},
)
async def smart_dependencies(blueprint_id: str, node_id: str, assistant: PlanAssistant = Depends(get_assistant)):
    """Queue an agent session that picks the node's dependencies among the other nodes."""
    assistant.submit_smart_dependencies(blueprint_id, node_id)
    return RunQueuedResponse(
        status="queued", blueprint_id=blueprint_id, node_id=node_id,
        message=f"Dependency selection for node {node_id} queued",
    )


@router.post(
    "/blueprints/{blueprint_id}/nodes/{node_id}/evaluate",
    response_model=RunQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={**_NOT_FOUND, **_CONFLICT},
)
async def evaluate_node(blueprint_id: str, node_id: str, executor: BlueprintExecutor = Depends(get_executor)):
    """Queue a fresh completion evaluation of a done node; the verdict arrives through the evaluation callback."""
    executor.submit_evaluation(blueprint_id, node_id)
    return RunQueuedResponse(
        status="queued", blueprint_id=blueprint_id, node_id=node_id,
        message=f"Evaluation of node {node_id} queued",
    )


# =============================================================================
# Agent callbacks
# =============================================================================

@router.post(
    "/blueprints/{blueprint_id}/nodes/{node_id}/evaluation-callback",
    response_model=EvaluationCallbackResponse,
    responses=_NOT_FOUND,
)
async def evaluation_callback(
    blueprint_id: str,
    node_id: str,
    data: EvaluationCallbackRequest,
    db: Session = Depends(get_db),
):
    """
    Record the evaluation of a completed node.

    ``NEEDS_REFINEMENT`` and ``HAS_BLOCKER`` evaluations may carry graph
    mutations:

    - **INSERT_BETWEEN**: follow-up node between this node and its dependents
    - **ADD_SIBLING**: blocked node for human review, required by this
      node's dependents
    """
    _get_node_or_404(db, blueprint_id, node_id)
    if data.status == "COMPLETE" or not data.mutations:
        _logger.info("Evaluation of node %s: %s", node_id, data.status)
        return EvaluationCallbackResponse(status=data.status, created_nodes=[], rewired=[])

    result = crud.apply_graph_mutations(
        db,
        blueprint_id,
        node_id,
        [m.model_dump() for m in data.mutations],
    )
    _logger.info(
        "Evaluation of node %s: %s, %d node(s) created",
        node_id, data.status, len(result.created_nodes),
    )
    return EvaluationCallbackResponse(
        status=data.status,
        created_nodes=[NodeResponse.model_validate(n) for n in result.created_nodes],
        rewired=result.rewired,
    )


@router.post(
    "/blueprints/{blueprint_id}/executions/{execution_id}/report-status",
    response_model=CallbackResponse,
    responses=_NOT_FOUND,
)
async def report_status(
    blueprint_id: str,
    execution_id: str,
    data: ReportStatusRequest,
    db: Session = Depends(get_db),
):
    """
    Record the final status the agent reports for its work.

    A reported status takes precedence over everything inferred from the
    process result when the execution finishes.
    """
    execution = _get_execution_or_404(db, blueprint_id, execution_id)
    crud.set_execution_reported_status(db, execution, data.status, data.reason)
    db.commit()
    _logger.info("Execution %s reported status %s", execution_id, data.status)
    return CallbackResponse(execution_id=execution_id)


@router.post(
    "/blueprints/{blueprint_id}/executions/{execution_id}/task-summary",
    response_model=CallbackResponse,
    responses=_NOT_FOUND,
)
async def task_summary(
    blueprint_id: str,
    execution_id: str,
    data: TaskSummaryRequest,
    db: Session = Depends(get_db),
):
    """Record the agent's summary of completed work; used as the handoff artifact."""
    execution = _get_execution_or_404(db, blueprint_id, execution_id)
    crud.set_execution_task_summary(db, execution, data.summary)
    db.commit()
    return CallbackResponse(execution_id=execution_id)


@router.post(
    "/blueprints/{blueprint_id}/executions/{execution_id}/report-blocker",
    response_model=CallbackResponse,
    responses=_NOT_FOUND,
)
async def report_blocker(
    blueprint_id: str,
    execution_id: str,
    data: ReportBlockerRequest,
    db: Session = Depends(get_db),
):
    """Record a blocker; the node ends ``blocked`` unless the agent reports done."""
    execution = _get_execution_or_404(db, blueprint_id, execution_id)
    crud.set_execution_blocker(db, execution, data.type, data.description, data.suggestion)
    db.commit()
    _logger.info("Execution %s reported blocker: %s", execution_id, data.type)
    return CallbackResponse(execution_id=execution_id)


# =============================================================================
# Queue views
# =============================================================================

@router.get(
    "/blueprints/{blueprint_id}/queue",
    response_model=QueueInfoResponse,
    responses=_NOT_FOUND,
)
async def get_queue_info(
    blueprint_id: str,
    db: Session = Depends(get_db),
    queue: BlueprintTaskQueue = Depends(get_queue),
):
    """Whether the blueprint is executing, and what is waiting behind it."""
    _get_blueprint_or_404(db, blueprint_id)
    return queue.get_queue_info(blueprint_id).to_dict()


@router.get("/global-status", response_model=GlobalStatusResponse)
async def get_global_status(
    request: Request,
    db: Session = Depends(get_db),
    queue: BlueprintTaskQueue = Depends(get_queue),
):
    """
    Queue state across all blueprints, for dashboard polling.

    Each task carries the blueprint and node titles and, for a running task,
    the id of its execution.
    """
    executor: BlueprintExecutor = request.app.state.executor
    titles: dict[str, str | None] = {}

    def describe(blueprint_id: str, task: PendingTask) -> dict[str, Any]:
        if blueprint_id not in titles:
            blueprint = crud.get_blueprint(db, blueprint_id)
            titles[blueprint_id] = blueprint.title if blueprint else None
        extra: dict[str, Any] = {"blueprint_title": titles[blueprint_id]}
        if task.node_id:
            node = crud.get_node(db, blueprint_id, task.node_id)
            extra["node_title"] = node.title if node else None
        if queue.active_task(blueprint_id) is task:
            extra["execution_id"] = executor.in_flight_execution(blueprint_id)
        return extra

    info = queue.get_global_queue_info(describe).to_dict()
    info["session_activity"] = executor.registry.session_activity.to_dict()
    return info
