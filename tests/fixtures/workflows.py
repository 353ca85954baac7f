"""Small builders for workflow definitions used across tests."""

from __future__ import annotations

from typing import Any, List

from phaseflow.contracts import Edge, EdgeKind, Phase, PhaseKind, WorkflowDefinition


def phase(phase_id: str, kind: PhaseKind = PhaseKind.WRITING, **kwargs: Any) -> Phase:
    return Phase(id=phase_id, kind=kind, **kwargs)


def edge(
    source: str,
    target: str,
    kind: EdgeKind = EdgeKind.DEFAULT,
    **kwargs: Any,
) -> Edge:
    return Edge(source=source, target=target, kind=kind, **kwargs)


def workflow(
    workflow_id: str,
    phases: List[Phase],
    edges: List[Edge],
    version: str = "1.0.0",
    **kwargs: Any,
) -> WorkflowDefinition:
    return WorkflowDefinition(
        id=workflow_id,
        name=workflow_id.replace("-", " ").title(),
        version=version,
        phases=phases,
        edges=edges,
        **kwargs,
    )


def linear(workflow_id: str = "linear", *phase_ids: str) -> WorkflowDefinition:
    ids = list(phase_ids) or ["plan", "draft", "polish"]
    kinds = [PhaseKind.PLANNING] + [PhaseKind.WRITING] * (len(ids) - 1)
    return workflow(
        workflow_id,
        [phase(pid, kind) for pid, kind in zip(ids, kinds)],
        [edge(a, b) for a, b in zip(ids, ids[1:])],
    )


def gate_retry(condition: str = "score >= 70") -> WorkflowDefinition:
    """writing(1) -> gate(2) -> writing(3), with a ``fail`` loop-back from 2 to 1."""
    return workflow(
        "gate-retry",
        [
            phase("1", PhaseKind.WRITING),
            phase("2", PhaseKind.GATE, condition=condition),
            phase("3", PhaseKind.WRITING),
        ],
        [
            edge("1", "2"),
            edge("2", "3", label="pass"),
            edge("2", "1", EdgeKind.LOOP_BACK, label="fail"),
        ],
    )


def three_way_join() -> WorkflowDefinition:
    return workflow(
        "fan-out",
        [
            phase("split", PhaseKind.PARALLEL_SPLIT),
            phase("a"),
            phase("b"),
            phase("c"),
            phase("join", PhaseKind.PARALLEL_JOIN),
            phase("final"),
        ],
        [
            edge("split", "a"),
            edge("split", "b"),
            edge("split", "c"),
            edge("a", "join"),
            edge("b", "join"),
            edge("c", "join"),
            edge("join", "final"),
        ],
    )


def bounded_loop(
    max_iterations: int | None = 3,
    condition: str | None = None,
    collection: str | None = None,
) -> WorkflowDefinition:
    return workflow(
        "revise-loop",
        [
            phase("outline", PhaseKind.PLANNING),
            phase(
                "loop",
                PhaseKind.LOOP,
                max_iterations=max_iterations,
                condition=condition,
                collection=collection,
            ),
            phase("revise"),
            phase("publish"),
            phase("escalate"),
        ],
        [
            edge("outline", "loop"),
            edge("loop", "revise", label="body"),
            edge("revise", "loop", EdgeKind.LOOP_BACK),
            edge("loop", "publish", label="exit"),
            edge("loop", "escalate", label="exhausted"),
        ],
    )
