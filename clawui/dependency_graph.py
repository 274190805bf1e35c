"""
Dependency Graph
================

Pure scheduling functions over a blueprint's macro nodes.

Nodes are anything exposing ``id``, ``status``, ``order`` and
``dependencies`` (a list of node ids in the same blueprint); ``MacroNode``
rows are used directly. Nothing here touches the database: callers persist
the returned decisions.

Unknown dependency ids are never an error. A node depending on a missing id
simply never becomes runnable, and :func:`diagnose` reports it so the caller
can show a stalled blueprint instead of crashing.

Usage:
    ready = runnable_nodes(blueprint.nodes)
    update = propagate_blocked(blueprint.nodes, grace_seconds=30)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Sequence

from clawui.plan_models import SATISFIED_NODE_STATUSES, ensure_utc

_logger = logging.getLogger(__name__)

IN_FLIGHT_STATUSES = frozenset({"running", "queued"})


class DependencyCycleError(Exception):
    """Raised when a dependency change would close a cycle."""

    def __init__(self, node_id: str, cycle: list[str], message: str | None = None):
        self.node_id = node_id
        self.cycle = cycle

        if message is None:
            message = (
                f"Dependencies of node {node_id} would create a cycle: "
                f"{' -> '.join(cycle)}"
            )

        super().__init__(message)


@dataclass
class BlockingUpdate:
    """Status flips computed by :func:`propagate_blocked`."""

    blocked: list[str] = field(default_factory=list)
    unblocked: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.blocked and not self.unblocked

    def to_dict(self) -> dict[str, Any]:
        return {"blocked": list(self.blocked), "unblocked": list(self.unblocked)}


@dataclass
class GraphDiagnostic:
    """
    Scheduling state of a blueprint.

    ``state`` is one of:
    - ``complete``: every node is done or skipped
    - ``in_flight``: a node is running or queued
    - ``runnable``: at least one node can start now
    - ``stalled``: nodes remain but none can ever start without intervention
    """

    state: str
    runnable: list[str] = field(default_factory=list)
    in_flight: list[str] = field(default_factory=list)
    remaining: list[str] = field(default_factory=list)
    dangling: dict[str, list[str]] = field(default_factory=dict)
    cycles: list[list[str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "runnable": list(self.runnable),
            "in_flight": list(self.in_flight),
            "remaining": list(self.remaining),
            "dangling": {k: list(v) for k, v in self.dangling.items()},
            "cycles": [list(c) for c in self.cycles],
        }


def _deps(node: Any) -> list[str]:
    deps = getattr(node, "dependencies", None)
    if not isinstance(deps, (list, tuple, set, frozenset)):
        return []
    return [d for d in deps if isinstance(d, str)]


def _order_key(node: Any) -> tuple:
    return (getattr(node, "order", 0) or 0, node.id)


def dependencies_satisfied(node: Any, by_id: dict[str, Any]) -> bool:
    """True when every dependency id resolves to a done or skipped node."""
    for dep_id in _deps(node):
        dep = by_id.get(dep_id)
        if dep is None or dep.status not in SATISFIED_NODE_STATUSES:
            return False
    return True


def runnable_nodes(nodes: Iterable[Any]) -> list[Any]:
    """
    Return the pending nodes whose dependencies are all done or skipped.

    Sorted by display order, so the first element is the next node to run.
    """
    node_list = list(nodes)
    by_id = {n.id: n for n in node_list}
    ready = [
        n for n in node_list
        if n.status == "pending" and dependencies_satisfied(n, by_id)
    ]
    return sorted(ready, key=_order_key)


def find_dangling_dependencies(nodes: Iterable[Any]) -> dict[str, list[str]]:
    """Map node id -> dependency ids that match no node in the set."""
    node_list = list(nodes)
    known = {n.id for n in node_list}
    dangling: dict[str, list[str]] = {}
    for node in node_list:
        missing = [d for d in _deps(node) if d not in known]
        if missing:
            dangling[node.id] = missing
    return dangling


def _adjacency(nodes: Iterable[Any]) -> dict[str, list[str]]:
    return {n.id: _deps(n) for n in nodes}


def _cycles_in(graph: dict[str, list[str]]) -> list[list[str]]:
    """Iterative DFS returning each cycle found as a closed id path."""
    white, grey, black = 0, 1, 2
    color = {node_id: white for node_id in graph}
    cycles: list[list[str]] = []

    for root in sorted(graph):
        if color[root] != white:
            continue
        stack: list[tuple[str, int]] = [(root, 0)]
        path: list[str] = [root]
        color[root] = grey
        while stack:
            node_id, index = stack[-1]
            edges = [d for d in graph.get(node_id, []) if d in graph]
            if index < len(edges):
                stack[-1] = (node_id, index + 1)
                nxt = edges[index]
                if color[nxt] == grey:
                    start = path.index(nxt)
                    cycles.append(path[start:] + [nxt])
                elif color[nxt] == white:
                    color[nxt] = grey
                    stack.append((nxt, 0))
                    path.append(nxt)
            else:
                color[node_id] = black
                stack.pop()
                path.pop()
    return cycles


def find_cycles(nodes: Iterable[Any]) -> list[list[str]]:
    """Return every dependency cycle reachable in the node set."""
    return _cycles_in(_adjacency(nodes))


def would_create_cycle(
    nodes: Iterable[Any],
    node_id: str,
    dependencies: Sequence[str],
) -> list[str] | None:
    """
    Check whether giving ``node_id`` these dependencies would close a cycle.

    Returns the offending cycle path, or None if the change is safe. The
    node does not have to exist yet (validation at creation time).
    """
    graph = _adjacency(nodes)
    graph[node_id] = [d for d in dependencies if isinstance(d, str)]
    for cycle in _cycles_in(graph):
        if node_id in cycle:
            return cycle
    return None


def _failure_settled(node: Any, cutoff: datetime | None) -> bool:
    if cutoff is None:
        return True
    failed_at = ensure_utc(getattr(node, "updated_at", None))
    return failed_at is None or failed_at <= cutoff


def propagate_blocked(
    nodes: Iterable[Any],
    grace_seconds: float = 0,
    now: datetime | None = None,
) -> BlockingUpdate:
    """
    Compute which nodes should be blocked or unblocked by dependency failures.

    A pending node becomes blocked when a dependency is ``failed`` and has
    stayed failed for longer than ``grace_seconds``, or when a dependency is
    itself blocked by propagation; this repeats until no more nodes change,
    so transitive dependents are covered. A node previously blocked this way
    whose dependencies have since recovered is returned in ``unblocked``.
    Nodes blocked by an agent-reported blocker are never unblocked here.
    """
    node_list = list(nodes)
    by_id = {n.id: n for n in node_list}
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=grace_seconds) if grace_seconds > 0 else None

    def was_dependency_blocked(node: Any) -> bool:
        return bool(getattr(node, "is_dependency_blocked", False))

    candidates = [
        n for n in node_list
        if n.status == "pending" or was_dependency_blocked(n)
    ]
    should_block: set[str] = set()
    changed = True
    while changed:
        changed = False
        for node in candidates:
            if node.id in should_block:
                continue
            already_blocked = was_dependency_blocked(node)
            for dep_id in _deps(node):
                dep = by_id.get(dep_id)
                if dep is None:
                    continue
                if dep_id in should_block or (
                    dep.status == "failed"
                    and (already_blocked or _failure_settled(dep, cutoff))
                ):
                    should_block.add(node.id)
                    changed = True
                    break

    update = BlockingUpdate()
    for node in sorted(candidates, key=_order_key):
        if node.status == "pending" and node.id in should_block:
            update.blocked.append(node.id)
        elif was_dependency_blocked(node) and node.id not in should_block:
            update.unblocked.append(node.id)

    if not update.is_empty:
        _logger.info(
            "Dependency blocking update: %d blocked, %d unblocked",
            len(update.blocked), len(update.unblocked),
        )
    return update


def diagnose(nodes: Iterable[Any]) -> GraphDiagnostic:
    """Classify the blueprint's scheduling state for callers and the UI."""
    node_list = list(nodes)
    remaining = [n for n in node_list if n.status not in SATISFIED_NODE_STATUSES]
    in_flight = [n.id for n in node_list if n.status in IN_FLIGHT_STATUSES]
    ready = [n.id for n in runnable_nodes(node_list)]

    if not remaining:
        state = "complete"
    elif in_flight:
        state = "in_flight"
    elif ready:
        state = "runnable"
    else:
        state = "stalled"

    diagnostic = GraphDiagnostic(
        state=state,
        runnable=ready,
        in_flight=in_flight,
        remaining=[n.id for n in sorted(remaining, key=_order_key)],
        dangling=find_dangling_dependencies(node_list),
        cycles=find_cycles(node_list),
    )
    if state == "stalled":
        _logger.warning(
            "Blueprint stalled: %d node(s) remaining, dangling=%s, cycles=%s",
            len(remaining), diagnostic.dangling, diagnostic.cycles,
        )
    return diagnostic
