"""Structural queries and validation over workflow graphs."""

from __future__ import annotations

import logging
from collections import deque
from typing import Dict, List

from .conditions import validate_expression
from .constants import LOOP_BODY_LABEL
from .contracts import Edge, EdgeKind, Phase, PhaseKind, WorkflowDefinition
from .errors import (
    ConfigurationError,
    CycleError,
    DanglingEdgeError,
    DuplicatePhaseError,
    NoStartPhaseError,
    UnreachablePhaseError,
)

logger = logging.getLogger(__name__)


class GraphIndex:
    """Id-indexed adjacency tables for one workflow definition.

    Built once per definition; loop-back edges are ordinary edges tagged by
    kind, so the tables never hold recursive references.
    """

    def __init__(self, definition: WorkflowDefinition) -> None:
        self.definition = definition
        self.phases: Dict[str, Phase] = {p.id: p for p in definition.phases}
        self.outgoing: Dict[str, List[Edge]] = {p.id: [] for p in definition.phases}
        self.incoming: Dict[str, List[Edge]] = {p.id: [] for p in definition.phases}
        for edge in definition.edges:
            if edge.source in self.outgoing:
                self.outgoing[edge.source].append(edge)
            if edge.target in self.incoming:
                self.incoming[edge.target].append(edge)

        self.forward_incoming: Dict[str, List[Edge]] = {
            pid: [e for e in edges if e.kind != EdgeKind.LOOP_BACK]
            for pid, edges in self.incoming.items()
        }
        self.start: List[str] = [
            p.id for p in definition.phases if not self.forward_incoming[p.id]
        ]
        self.join_arity: Dict[str, int] = {
            p.id: len({e.source for e in self.forward_incoming[p.id]})
            for p in definition.phases
            if p.kind == PhaseKind.PARALLEL_JOIN
        }

    def phase(self, phase_id: str) -> Phase:
        return self.phases[phase_id]

    def edges_from(self, phase_id: str) -> List[Edge]:
        return self.outgoing.get(phase_id, [])


def start_phases(definition: WorkflowDefinition) -> List[Phase]:
    """Return phases without incoming (non loop-back) edges, in definition order."""
    index = GraphIndex(definition)
    if not index.start:
        raise NoStartPhaseError(f"Workflow {definition.id} has no start phase")
    return [index.phases[pid] for pid in index.start]


def outgoing_edges(definition: WorkflowDefinition, phase_id: str) -> List[Edge]:
    """Return the edges leaving ``phase_id`` in definition order."""
    return [e for e in definition.edges if e.source == phase_id]


def _find_cycle(index: GraphIndex) -> List[str] | None:
    white, grey, black = 0, 1, 2
    color = {pid: white for pid in index.phases}
    parent: Dict[str, str] = {}

    for root in index.phases:
        if color[root] != white:
            continue
        stack = [(root, iter(index.outgoing[root]))]
        color[root] = grey
        while stack:
            node, edges = stack[-1]
            advanced = False
            for edge in edges:
                if edge.kind == EdgeKind.LOOP_BACK:
                    continue
                target = edge.target
                if color[target] == grey:
                    cycle = [target, node]
                    cur = node
                    while cur != target:
                        cur = parent[cur]
                        cycle.append(cur)
                    cycle.reverse()
                    return cycle
                if color[target] == white:
                    color[target] = grey
                    parent[target] = node
                    stack.append((target, iter(index.outgoing[target])))
                    advanced = True
                    break
            if not advanced:
                color[node] = black
                stack.pop()
    return None


# Phase kinds whose result can be reshaped by ``output_mapping``.
_MAPPED_KINDS = (PhaseKind.PLANNING, PhaseKind.WRITING, PhaseKind.SUB_WORKFLOW)


def _check_phase(phase: Phase, index: GraphIndex) -> None:
    if phase.condition is not None:
        validate_expression(phase.condition)
    if phase.kind == PhaseKind.LOOP:
        labels = {e.normalized_label for e in index.outgoing[phase.id]}
        if LOOP_BODY_LABEL not in labels:
            raise ConfigurationError(f"Loop phase {phase.id} has no '{LOOP_BODY_LABEL}' edge")
    if phase.kind == PhaseKind.SUB_WORKFLOW and not phase.sub_workflow_id:
        raise ConfigurationError(f"Sub-workflow phase {phase.id} has no sub_workflow_id")
    for target, path in phase.context_projection.items():
        if not target or not path:
            raise ConfigurationError(f"Phase {phase.id} has an empty context projection")
    if phase.collection is not None and phase.kind != PhaseKind.LOOP:
        raise ConfigurationError(f"Phase {phase.id} is not a loop but declares a collection")
    if phase.collection == "":
        raise ConfigurationError(f"Loop phase {phase.id} has an empty collection path")
    if phase.output_mapping and phase.kind not in _MAPPED_KINDS:
        raise ConfigurationError(
            f"Phase {phase.id} of kind {phase.kind.value} does not support an output mapping"
        )
    for key, path in phase.output_mapping.items():
        if not key or not path:
            raise ConfigurationError(f"Phase {phase.id} has an empty output mapping")


def validate(definition: WorkflowDefinition) -> GraphIndex:
    """Validate ``definition`` and return its :class:`GraphIndex`.

    Raises:
        DuplicatePhaseError: Two phases share an id.
        DanglingEdgeError: An edge references an unknown phase.
        InvalidExpressionError: A condition does not parse.
        NoStartPhaseError: Every phase has an incoming edge.
        CycleError: A cycle exists outside loop-back edges.
        UnreachablePhaseError: A phase cannot be reached from the start set.
        ConfigurationError: Other malformed phase or edge settings.
    """
    seen: set[str] = set()
    for phase in definition.phases:
        if phase.id in seen:
            raise DuplicatePhaseError(f"Duplicate phase id: {phase.id}")
        seen.add(phase.id)

    for edge in definition.edges:
        for endpoint in (edge.source, edge.target):
            if endpoint not in seen:
                raise DanglingEdgeError(edge.source, edge.target, endpoint)
        if edge.kind == EdgeKind.CONDITIONAL and not edge.condition:
            raise ConfigurationError(
                f"Conditional edge {edge.source} -> {edge.target} has no condition"
            )
        if edge.condition is not None:
            validate_expression(edge.condition)

    index = GraphIndex(definition)
    for phase in definition.phases:
        _check_phase(phase, index)

    if not index.start:
        raise NoStartPhaseError(f"Workflow {definition.id} has no start phase")

    cycle = _find_cycle(index)
    if cycle:
        raise CycleError(cycle)

    reached = set(index.start)
    queue = deque(index.start)
    while queue:
        current = queue.popleft()
        for edge in index.outgoing[current]:
            if edge.target not in reached:
                reached.add(edge.target)
                queue.append(edge.target)
    unreachable = [p.id for p in definition.phases if p.id not in reached]
    if unreachable:
        raise UnreachablePhaseError(unreachable)

    logger.debug(
        f"Validated workflow {definition.id}@{definition.version}: "
        f"{len(definition.phases)} phases, {len(definition.edges)} edges"
    )
    return index
