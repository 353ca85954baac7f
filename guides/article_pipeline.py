"""Drive an article workflow with a gate, a retry loop and a human approval."""

import asyncio
from typing import Any, AsyncIterator

from phaseflow import (
    Edge,
    EdgeKind,
    EventEmitter,
    InMemoryStateStore,
    Orchestrator,
    Phase,
    PhaseKind,
    WorkflowDefinition,
)
from phaseflow.config import PhaseflowConfig, RetryConfig
from phaseflow.runners import PhaseRunner, ProgressChunk, RunnerRequest, RunnerResult


class DemoRunner(PhaseRunner):
    """Canned outputs: the first review fails, the second passes."""

    def __init__(self) -> None:
        self.reviews = 0

    async def run(self, request: RunnerRequest) -> AsyncIterator[Any]:
        yield ProgressChunk(text=f"working on {request.phase_id}")
        if request.kind is PhaseKind.GATE:
            self.reviews += 1
            yield RunnerResult(output={"score": 40 if self.reviews == 1 else 88})
            return
        topic = request.context.get("inputs", {}).get("topic", "something")
        yield RunnerResult(output={"text": f"{request.phase_id} about {topic}"})


ARTICLE = WorkflowDefinition(
    id="article",
    name="Article pipeline",
    phases=[
        Phase(id="outline", kind=PhaseKind.PLANNING),
        Phase(id="draft", kind=PhaseKind.WRITING),
        Phase(id="review", kind=PhaseKind.GATE, condition="score >= 70"),
        Phase(id="polish", kind=PhaseKind.WRITING, requires_approval=True),
    ],
    edges=[
        Edge(source="outline", target="draft"),
        Edge(source="draft", target="review"),
        Edge(source="review", target="polish", label="pass"),
        Edge(source="review", target="draft", kind=EdgeKind.LOOP_BACK, label="fail"),
    ],
)


async def main():
    print("📝 Article pipeline")

    events = EventEmitter()
    events.subscribe("*", lambda e: print(f"  [{e.sequence:>2}] {e.type.value} {e.phase_id or ''}"))
    orchestrator = Orchestrator(
        DemoRunner(),
        store=InMemoryStateStore(),
        events=events,
        config=PhaseflowConfig(retry=RetryConfig(backoff_base=0)),
    )
    await orchestrator.register(ARTICLE)

    instance = await orchestrator.run("article", inputs={"topic": "owls"})
    print(f"⏸️  Instance {instance.id} is {instance.status.value}, waiting on {instance.blocked_phases}")

    await orchestrator.approve(instance.id, "polish", edited_output={"text": "Owls, edited"})
    instance = await orchestrator.wait(instance.id)
    await events.drain()

    print(f"✅ Instance finished: {instance.status.value}")
    print(f"   Final text: {instance.context.snapshot()['phases']['polish']['text']}")
    await orchestrator.aclose()


if __name__ == "__main__":
    asyncio.run(main())
