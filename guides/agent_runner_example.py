"""Run phases with pydantic-ai agents through AgentPhaseRunner."""

import asyncio

from pydantic import BaseModel
from pydantic_ai import Agent

from phaseflow import (
    AgentPhaseRunner,
    Edge,
    InMemoryStateStore,
    Orchestrator,
    Phase,
    PhaseDeps,
    PhaseKind,
    WorkflowDefinition,
)


class Outline(BaseModel):
    title: str
    sections: list[str]


# "test" runs pydantic-ai's offline test model; swap in a real model name.
planner = Agent("test", deps_type=PhaseDeps, output_type=Outline, name="planner")
writer = Agent("test", deps_type=PhaseDeps, name="writer")

WORKFLOW = WorkflowDefinition(
    id="agent-article",
    name="Agent article",
    phases=[
        Phase(
            id="outline",
            kind=PhaseKind.PLANNING,
            runner_spec={"agent": "planner", "prompt": "Outline an article on {inputs[topic]}"},
        ),
        Phase(
            id="draft",
            kind=PhaseKind.WRITING,
            runner_spec={"agent": "writer", "prompt": "Write the article: {phases[outline]}"},
        ),
    ],
    edges=[Edge(source="outline", target="draft")],
)


async def main():
    print("🤖 Agent runner")
    runner = AgentPhaseRunner({"planner": planner, "writer": writer})
    orchestrator = Orchestrator(runner, store=InMemoryStateStore())
    await orchestrator.register(WORKFLOW)

    instance = await orchestrator.run("agent-article", inputs={"topic": "owls"})
    context = instance.context.snapshot()
    print(f"✅ {instance.status.value}: outline={context['phases']['outline']}")
    print(f"   draft={context['phases']['draft']!r}")
    await orchestrator.aclose()


if __name__ == "__main__":
    asyncio.run(main())
