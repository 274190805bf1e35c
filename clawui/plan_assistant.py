"""
Plan Assistant
==============

Short agent sessions that edit the plan rather than the project: generate
nodes from a description, enrich or re-evaluate a node, split a node into
smaller ones, and pick a node's dependencies.

Each operation is queued behind the blueprint's slot under its own task
type, asks the agent for a JSON reply, applies the reply through
``plan_crud`` and records the agent session as a RelatedSession of every
node it touched. Unusable replies raise ``PlanAssistantError``; the task
queue logs them and the plan stays as it was.

Usage:
    assistant = PlanAssistant(SessionLocal, registry, queue, settings)
    task = assistant.submit_generate(blueprint_id, "Add a login page")
    created = await task
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.orm import Session

from clawui import plan_crud as crud
from clawui.blueprint_executor import (
    BlueprintNotFound,
    ExecutorError,
    NodeNotFound,
    NodeNotRunnable,
    capture_related_session,
)
from clawui.executor_config import ExecutorSettings
from clawui.plan_models import Blueprint, MacroNode
from clawui.runtime_registry import RuntimeRegistry
from clawui.task_queue import BlueprintTaskQueue

_logger = logging.getLogger(__name__)

HANDOFF_CONTEXT_CHARS = 300
SPLIT_MAX_PARTS = 3
SMART_DEPS_MAX = 3

# Statuses a re-evaluation may move a node to
REEVALUATE_STATUSES = frozenset({"pending", "blocked", "skipped"})
SPLITTABLE_STATUSES = frozenset({"pending"})
SMART_DEPS_STATUSES = frozenset({"pending", "failed", "blocked"})
# Queued and running nodes are left alone
REEVALUATE_ALL_EXCLUDED = frozenset({"done", "running", "queued"})


class PlanAssistantError(ExecutorError):
    """The request or the agent's reply cannot be turned into plan changes."""


def parse_json_reply(output: str) -> tuple[Any, str | None]:
    """
    Parse the JSON an agent replied with, raw or wrapped in markdown.

    Returns:
        Tuple of (parsed_value, error_message)
        error_message is None if parsing succeeded
    """
    if not output or not output.strip():
        return None, "Agent reply is empty"
    value = output.strip()

    try:
        return json.loads(value), None
    except json.JSONDecodeError:
        pass

    for pattern in (r'```json\s*\n([\s\S]*?)\n```', r'```\s*\n([\s\S]*?)\n```'):
        match = re.search(pattern, value)
        if match:
            try:
                return json.loads(match.group(1)), None
            except json.JSONDecodeError:
                continue

    json_match = re.search(r'(\{[\s\S]*\}|\[[\s\S]*\])', value)
    if json_match:
        try:
            return json.loads(json_match.group(1)), None
        except json.JSONDecodeError as e:
            return None, f"Agent reply contains invalid JSON: {e}"

    return None, "Agent reply contains no JSON"


def _nodes_context(nodes: list[MacroNode], marker_id: str | None = None, marker: str = "") -> str:
    lines = []
    for i, n in enumerate(nodes, start=1):
        line = f"  {i}. [{n.status}] {n.title}"
        if n.error:
            line += f" (ERROR: {n.error})"
        if n.id == marker_id:
            line += f" <- {marker}"
        lines.append(line)
    return "\n".join(lines)


def _blueprint_header(blueprint: Blueprint) -> str:
    lines = [f'Blueprint: "{blueprint.title}"']
    if blueprint.description:
        lines.append(f"Blueprint description: {blueprint.description}")
    if blueprint.project_cwd:
        lines.append(f"Project directory: {blueprint.project_cwd}")
    return "\n".join(lines)


def _handoffs(db: Session, nodes: list[MacroNode]) -> dict[str, str]:
    """Start of the latest handoff of each done node."""
    handoffs = {}
    for n in nodes:
        if n.status != "done":
            continue
        artifact = crud.latest_output_artifact(db, n.id)
        if artifact is not None:
            handoffs[n.id] = artifact.content[:HANDOFF_CONTEXT_CHARS]
    return handoffs


def _progress(nodes: list[MacroNode], handoffs: dict[str, str]) -> str:
    summaries = [f'Step "{n.title}": {handoffs[n.id]}' for n in nodes if n.id in handoffs]
    if not summaries:
        return ""
    return "Progress from completed steps:\n" + "\n".join(summaries) + "\n\n"


class PlanAssistant:
    """Agent-assisted plan editing, queued per blueprint like node runs."""

    def __init__(
        self,
        session_maker: Callable[[], Session],
        registry: RuntimeRegistry,
        queue: BlueprintTaskQueue,
        settings: ExecutorSettings,
    ):
        self._session_maker = session_maker
        self.registry = registry
        self.queue = queue
        self.settings = settings

    # -- Submission ------------------------------------------------------------

    def submit_generate(self, blueprint_id: str, description: str | None = None) -> asyncio.Task:
        """Queue generation of new nodes from ``description`` (or the blueprint's)."""
        with self._session_maker() as db:
            blueprint = self._require_blueprint(db, blueprint_id)
            if not (description or blueprint.description or "").strip():
                raise PlanAssistantError(f"Blueprint {blueprint_id} has no description to plan from")
        return self.queue.enqueue(
            blueprint_id, "generate", lambda: self._generate_locked(blueprint_id, description),
        )

    def submit_enrich(self, blueprint_id: str, node_id: str) -> asyncio.Task:
        with self._session_maker() as db:
            self._load(db, blueprint_id, node_id)
        return self.queue.enqueue(
            blueprint_id, "enrich", lambda: self._enrich_locked(blueprint_id, node_id), node_id=node_id,
        )

    def submit_reevaluate(self, blueprint_id: str, node_id: str) -> asyncio.Task:
        with self._session_maker() as db:
            self._load(db, blueprint_id, node_id)
        return self.queue.enqueue(
            blueprint_id, "reevaluate", lambda: self._reevaluate_locked(blueprint_id, node_id), node_id=node_id,
        )

    def submit_reevaluate_all(self, blueprint_id: str) -> asyncio.Task | None:
        """Queue one session re-evaluating every node not done, queued or running; None if there are none."""
        with self._session_maker() as db:
            self._require_blueprint(db, blueprint_id)
            targets = [n for n in crud.list_nodes(db, blueprint_id) if n.status not in REEVALUATE_ALL_EXCLUDED]
        if not targets:
            _logger.info("Blueprint %s has no nodes to re-evaluate", blueprint_id)
            return None
        return self.queue.enqueue(
            blueprint_id, "reevaluate_all", lambda: self._reevaluate_all_locked(blueprint_id),
        )

    def submit_split(self, blueprint_id: str, node_id: str) -> asyncio.Task:
        with self._session_maker() as db:
            _, node = self._load(db, blueprint_id, node_id)
            self._check_status(node, SPLITTABLE_STATUSES, "split")
        return self.queue.enqueue(
            blueprint_id, "split", lambda: self._split_locked(blueprint_id, node_id), node_id=node_id,
        )

    def submit_smart_dependencies(self, blueprint_id: str, node_id: str) -> asyncio.Task:
        with self._session_maker() as db:
            _, node = self._load(db, blueprint_id, node_id)
            self._check_status(node, SMART_DEPS_STATUSES, "given dependencies")
            if not self._dependency_candidates(db, node):
                raise PlanAssistantError(f"No other nodes for {node_id} to depend on")
        return self.queue.enqueue(
            blueprint_id, "smart_deps", lambda: self._smart_deps_locked(blueprint_id, node_id), node_id=node_id,
        )

    # -- Locked implementations ------------------------------------------------

    async def _generate_locked(self, blueprint_id: str, description: str | None) -> list[MacroNode]:
        with self._session_maker() as db:
            blueprint = self._require_blueprint(db, blueprint_id)
            existing = crud.list_nodes(db, blueprint_id)
            prompt = self.build_generate_prompt(blueprint, existing, description or blueprint.description or "")

            steps, session = await self._ask(blueprint, prompt, "generate")
            if not isinstance(steps, list) or not steps:
                raise PlanAssistantError("Agent returned no plan steps")

            created: list[MacroNode | None] = []
            for step in steps:
                if not isinstance(step, dict) or not str(step.get("title") or "").strip():
                    _logger.warning("Skipping malformed plan step: %s", step)
                    created.append(None)
                    continue
                # Indices refer to earlier steps of the same reply
                dep_ids = [
                    created[i].id for i in step.get("dependencies") or []
                    if isinstance(i, int) and 0 <= i < len(created) and created[i] is not None
                ]
                created.append(crud.create_macro_node(
                    db, blueprint_id, str(step["title"]).strip()[:255],
                    description=str(step.get("description") or "").strip(),
                    dependencies=dep_ids,
                ))
            nodes = [n for n in created if n is not None]
            if not nodes:
                raise PlanAssistantError("Agent returned no usable plan steps")
            self._record(db, blueprint, nodes, "generate", session)
            db.commit()
            _logger.info("Generated %d node(s) for blueprint %s", len(nodes), blueprint_id)
            return nodes

    async def _enrich_locked(self, blueprint_id: str, node_id: str) -> MacroNode:
        with self._session_maker() as db:
            blueprint, node = self._load(db, blueprint_id, node_id)
            nodes = crud.list_nodes(db, blueprint_id)
            prompt = self.build_enrich_prompt(blueprint, node, nodes, _handoffs(db, nodes))

            reply, session = await self._ask(blueprint, prompt, "enrich")
            if not isinstance(reply, dict):
                raise PlanAssistantError("Agent reply is not a JSON object")
            crud.update_node_text(db, node, title=reply.get("title"), description=reply.get("description"))
            self._record(db, blueprint, [node], "enrich", session)
            db.commit()
            _logger.info("Enriched node %s '%s'", node.id, node.title)
            return node

    async def _reevaluate_locked(self, blueprint_id: str, node_id: str) -> MacroNode:
        with self._session_maker() as db:
            blueprint, node = self._load(db, blueprint_id, node_id)
            nodes = crud.list_nodes(db, blueprint_id)
            prompt = self.build_reevaluate_prompt(blueprint, node, nodes, _handoffs(db, nodes))

            reply, session = await self._ask(blueprint, prompt, "reevaluate")
            if not isinstance(reply, dict):
                raise PlanAssistantError("Agent reply is not a JSON object")
            db.refresh(node)
            self._apply_update(db, node, reply)
            self._record(db, blueprint, [node], "reevaluate", session)
            db.commit()
            _logger.info("Re-evaluated node %s '%s' (%s)", node.id, node.title, node.status)
            return node

    async def _reevaluate_all_locked(self, blueprint_id: str) -> list[MacroNode]:
        with self._session_maker() as db:
            blueprint = self._require_blueprint(db, blueprint_id)
            nodes = crud.list_nodes(db, blueprint_id)
            targets = [n for n in nodes if n.status not in REEVALUATE_ALL_EXCLUDED]
            if not targets:
                return []
            prompt = self.build_reevaluate_all_prompt(blueprint, nodes, targets, _handoffs(db, nodes))

            reply, session = await self._ask(blueprint, prompt, "reevaluate_all")
            if not isinstance(reply, list):
                raise PlanAssistantError("Agent reply is not a JSON array")
            by_id = {n.id: n for n in targets}
            updated: list[MacroNode] = []
            for update in reply:
                node = by_id.get(update.get("id")) if isinstance(update, dict) else None
                if node is None:
                    _logger.warning("Skipping update for a node outside the re-evaluation: %s", update)
                    continue
                db.refresh(node)
                if node.status in REEVALUATE_ALL_EXCLUDED:
                    continue
                self._apply_update(db, node, update)
                updated.append(node)
            self._record(db, blueprint, targets, "reevaluate_all", session)
            db.commit()
            _logger.info("Re-evaluated %d of %d node(s) in blueprint %s", len(updated), len(targets), blueprint_id)
            return updated

    async def _split_locked(self, blueprint_id: str, node_id: str) -> crud.MutationResult:
        with self._session_maker() as db:
            blueprint, node = self._load(db, blueprint_id, node_id)
            self._check_status(node, SPLITTABLE_STATUSES, "split")
            nodes = crud.list_nodes(db, blueprint_id)
            dependents = [n for n in nodes if node.id in n.get_dependencies_safe()]
            prompt = self.build_split_prompt(blueprint, node, nodes, dependents)

            parts, session = await self._ask(blueprint, prompt, "split")
            if not isinstance(parts, list):
                raise PlanAssistantError("Agent reply is not a JSON array")
            parts = [p for p in parts if isinstance(p, dict)][:SPLIT_MAX_PARTS]
            db.refresh(node)
            self._check_status(node, SPLITTABLE_STATUSES, "split")
            try:
                result = crud.split_node(db, node, parts)
            except ValueError as e:
                raise PlanAssistantError(str(e)) from e
            self._record(db, blueprint, [node], "split", session)
            db.commit()
            return result

    async def _smart_deps_locked(self, blueprint_id: str, node_id: str) -> MacroNode:
        with self._session_maker() as db:
            blueprint, node = self._load(db, blueprint_id, node_id)
            self._check_status(node, SMART_DEPS_STATUSES, "given dependencies")
            candidates = self._dependency_candidates(db, node)
            nodes = crud.list_nodes(db, blueprint_id)
            prompt = self.build_smart_deps_prompt(blueprint, node, candidates, nodes, _handoffs(db, nodes))

            reply, session = await self._ask(blueprint, prompt, "smart_deps")
            if not isinstance(reply, list):
                raise PlanAssistantError("Agent reply is not a JSON array")
            known = {n.id for n in candidates}
            picked = [d for d in reply if isinstance(d, str) and d in known][:SMART_DEPS_MAX]
            ignored = [d for d in reply if d not in picked]
            if ignored:
                _logger.warning("Ignoring dependencies outside the candidates of %s: %s", node.id, ignored)
            # Raises DependencyCycleError if a pick would close a cycle
            crud.update_node_dependencies(db, node, picked)
            self._record(db, blueprint, [node], "smart_deps", session)
            db.commit()
            _logger.info("Node %s now depends on %s", node.id, picked or "nothing")
            return node

    # -- Agent session ---------------------------------------------------------

    async def _ask(self, blueprint: Blueprint, prompt: str, session_type: str) -> tuple[Any, dict[str, Any]]:
        """Run one quick session and return its parsed JSON reply with the session details."""
        runtime = self.registry.get(blueprint.agent_type)
        cwd = blueprint.project_cwd or None
        started_at = datetime.now(timezone.utc)
        async with self.queue.process_slot():
            result = await runtime.run_session(prompt, cwd=cwd, timeout=self.settings.timeout_for(session_type))
        if not result.ok and not result.output.strip():
            raise PlanAssistantError(f"Agent {session_type} session failed ({result.kind}): {result.message}")

        value, error = parse_json_reply(result.output)
        if error:
            raise PlanAssistantError(error)
        session = {"runtime": runtime, "cwd": cwd, "started_at": started_at, "session_id": result.session_id}
        return value, session

    def _record(
        self,
        db: Session,
        blueprint: Blueprint,
        nodes: list[MacroNode],
        session_type: str,
        session: dict[str, Any],
    ) -> None:
        session_id = session["session_id"]
        for node in nodes:
            related = capture_related_session(
                db, session["runtime"], node, session_type,
                cwd=session["cwd"], started_at=session["started_at"], session_id=session_id,
            )
            if related is None:
                return
            # Detect once; every node shares the session
            session_id = related.session_id

    def _apply_update(self, db: Session, node: MacroNode, update: dict[str, Any]) -> None:
        crud.update_node_text(db, node, title=update.get("title"), description=update.get("description"))
        status = update.get("status")
        if not status or status == node.status:
            return
        if status not in REEVALUATE_STATUSES or not node.can_transition_to(status):
            _logger.warning("Ignoring status '%s' for node %s (%s)", status, node.id, node.status)
            return
        error = (update.get("error") or None) if status == "blocked" else None
        crud.set_node_status(db, node, status, error=error)

    # -- Prompts ---------------------------------------------------------------

    def build_generate_prompt(self, blueprint: Blueprint, existing: list[MacroNode], description: str) -> str:
        parts = [
            "You are a senior software architect planning a development task.",
            f"Task: {description}\nWorking directory: {blueprint.project_cwd or 'not specified'}",
        ]
        if existing:
            listing = "\n".join(f"  #{n.order}. [{n.status}] {n.title}" for n in existing)
            parts.append(
                f"Already existing nodes in this blueprint:\n{listing}\n\n"
                "Do NOT regenerate these. Only generate NEW nodes for remaining work."
            )
        parts.append(
            "Generate the NEXT 2-6 concrete steps that still need to be done. "
            "Each step will be executed by a separate coding agent session.\n\n"
            "Reply with ONLY a JSON array (no explanation):\n"
            '[{"title": "Short title", "description": "What to implement, with files and expected behavior", '
            '"dependencies": []}]\n\n'
            "Rules:\n"
            "- Each step should be completable in one session (5-15 min)\n"
            "- Dependencies are 0-based indices of earlier steps in THIS array\n"
            "- The first step has dependencies: []"
        )
        return "\n\n".join(parts)

    def build_enrich_prompt(
        self,
        blueprint: Blueprint,
        node: MacroNode,
        nodes: list[MacroNode],
        handoffs: dict[str, str],
    ) -> str:
        deps = node.get_dependencies_safe()
        context_nodes = [n for n in nodes if n.id in deps] if deps else [n for n in nodes if n.id != node.id]
        label = "Dependency nodes" if deps else "Existing nodes"
        lines = []
        for i, n in enumerate(context_nodes, start=1):
            line = f"  {i}. [{n.status}] {n.title}"
            handoff = handoffs.get(n.id)
            if handoff:
                line += f" - Handoff: {handoff}"
            lines.append(line)
        listing = f"{label}:\n" + "\n".join(lines) if lines else "No other nodes yet."
        return (
            "You are helping a developer write a clear, actionable task node for a coding blueprint.\n\n"
            f"{_blueprint_header(blueprint)}\n\n{listing}\n\n"
            f'The node:\n- Title: "{node.title}"\n- Description: "{node.description or "(none)"}"\n\n'
            "Improve the title and description so an AI coding agent can act on them: be specific, "
            "reference relevant files when the project suggests them and state the expected behavior.\n\n"
            'Reply with ONLY a JSON object: {"title": "...", "description": "..."}'
        )

    def build_reevaluate_prompt(
        self,
        blueprint: Blueprint,
        node: MacroNode,
        nodes: list[MacroNode],
        handoffs: dict[str, str],
    ) -> str:
        error_line = f"- Error: {node.error}\n" if node.error else ""
        status_note = ""
        if node.status in ("failed", "blocked"):
            status_note = (
                f'\nThe node is {node.status}. Include "status": "pending" to reset it for another run, '
                "unless the failure or blocker still applies."
            )
        return (
            "You are a project manager reviewing a development task node in the context of its plan.\n\n"
            f"{_blueprint_header(blueprint)}\n\n"
            f"All nodes in the plan:\n{_nodes_context(nodes, node.id, 'THIS NODE')}\n\n"
            f"{_progress(nodes, handoffs)}"
            f'The node to re-evaluate:\n- Title: "{node.title}"\n'
            f'- Description: "{node.description or "(none)"}"\n- Current status: {node.status}\n'
            f"{error_line}\n"
            "Update the title and description to match the current state of the project. If the task is "
            'already done elsewhere or no longer needed, say so in the description and use "status": "skipped".'
            f"{status_note}\n\n"
            'Reply with ONLY a JSON object: {"title": "...", "description": "...", "status": "optional"}'
        )

    def build_reevaluate_all_prompt(
        self,
        blueprint: Blueprint,
        nodes: list[MacroNode],
        targets: list[MacroNode],
        handoffs: dict[str, str],
    ) -> str:
        target_list = "\n".join(
            f'  - id: "{n.id}", title: "{n.title}", status: "{n.status}"' for n in targets
        )
        return (
            "You are a project manager re-evaluating every incomplete node of a development plan.\n\n"
            f"{_blueprint_header(blueprint)}\n\n"
            f"All nodes in the plan:\n{_nodes_context(nodes)}\n\n"
            f"{_progress(nodes, handoffs)}"
            f"Nodes to re-evaluate:\n{target_list}\n\n"
            "Check the codebase and update each node's title and description. Set status to "
            '"skipped" for redundant nodes, "pending" when a blocker is resolved, or "blocked" '
            '(with an "error") when it persists.\n\n'
            "Reply with ONLY a JSON array with one object per node:\n"
            '[{"id": "...", "title": "...", "description": "...", "status": "optional", "error": "optional"}]'
        )

    def build_split_prompt(
        self,
        blueprint: Blueprint,
        node: MacroNode,
        nodes: list[MacroNode],
        dependents: list[MacroNode],
    ) -> str:
        downstream = (
            "Downstream nodes will depend on the LAST sub-task:\n"
            + "\n".join(f'  - "{d.title}"' for d in dependents)
            if dependents else "No downstream nodes depend on this node."
        )
        return (
            "You are a project manager splitting a large development task into smaller sub-tasks.\n\n"
            f"{_blueprint_header(blueprint)}\n\n"
            f"All nodes in the plan:\n{_nodes_context(nodes, node.id, 'THIS NODE (to be split)')}\n\n"
            f'The node to split:\n- Title: "{node.title}"\n- Description: "{node.description or "(none)"}"\n'
            f"{downstream}\n\n"
            f"Decompose the node into 2-{SPLIT_MAX_PARTS} self-contained sub-tasks, in execution order. "
            "Each must be completable in a single session. Preserve the scope of the original node.\n\n"
            'Reply with ONLY a JSON array: [{"title": "...", "description": "..."}]'
        )

    def build_smart_deps_prompt(
        self,
        blueprint: Blueprint,
        node: MacroNode,
        candidates: list[MacroNode],
        nodes: list[MacroNode],
        handoffs: dict[str, str],
    ) -> str:
        titles = {n.id: n.title for n in nodes}
        current = ", ".join(f'"{titles.get(d, d)}"' for d in node.get_dependencies_safe()) or "(none)"
        lines = []
        for n in candidates:
            line = f'  - ID: {n.id} | #{n.order + 1} [{n.status}] "{n.title}"'
            handoff = handoffs.get(n.id)
            if handoff:
                line += f" - Handoff: {handoff[:200]}"
            lines.append(line)
        return (
            "You are choosing the dependencies of a task node in a development blueprint.\n\n"
            f"{_blueprint_header(blueprint)}\n\n"
            f'Target node:\n- Title: "{node.title}"\n- Description: "{node.description or "(none)"}"\n'
            f"- Current dependencies: {current}\n\n"
            "Available nodes:\n" + "\n".join(lines) + "\n\n"
            f"Pick 0-{SMART_DEPS_MAX} nodes whose output or completion is required before the target can "
            "start. Do not pick independent work.\n\n"
            'Reply with ONLY a JSON array of node IDs, e.g. ["id1", "id2"], or [] for none.'
        )

    # -- Helpers ---------------------------------------------------------------

    def _dependency_candidates(self, db: Session, node: MacroNode) -> list[MacroNode]:
        return [
            n for n in crud.list_nodes(db, node.blueprint_id)
            if n.id != node.id and n.status != "skipped"
        ]

    def _check_status(self, node: MacroNode, allowed: frozenset[str], action: str) -> None:
        if node.status not in allowed:
            raise NodeNotRunnable(
                node.id, node.status, f"Only {'/'.join(sorted(allowed))} nodes can be {action}",
                f"Node {node.id} is {node.status}; only {'/'.join(sorted(allowed))} nodes can be {action}",
            )

    def _require_blueprint(self, db: Session, blueprint_id: str) -> Blueprint:
        blueprint = crud.get_blueprint(db, blueprint_id)
        if blueprint is None:
            raise BlueprintNotFound(blueprint_id)
        return blueprint

    def _load(self, db: Session, blueprint_id: str, node_id: str) -> tuple[Blueprint, MacroNode]:
        blueprint = self._require_blueprint(db, blueprint_id)
        node = crud.get_node(db, blueprint_id, node_id)
        if node is None:
            raise NodeNotFound(blueprint_id, node_id)
        return blueprint, node
