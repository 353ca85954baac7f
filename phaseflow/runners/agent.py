"""Phase runner backed by pydantic-ai agents."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, Mapping, Optional

from pydantic import BaseModel, Field
from pydantic_ai import Agent
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior, UsageLimitExceeded

from ..errors import RunnerError
from .base import PhaseRunner, ProgressChunk, RunnerItem, RunnerRequest, RunnerResult

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 409, 425, 429, 500, 502, 503, 504}


class PhaseDeps(BaseModel):
    """Dependencies handed to agents run by :class:`AgentPhaseRunner`."""

    instance_id: str
    phase_id: str
    context: Dict[str, Any] = Field(default_factory=dict)
    runner_spec: Dict[str, Any] = Field(default_factory=dict)


def normalize_output(output: Any) -> Any:
    """Convert pydantic outputs to plain data; leave other values as-is."""
    if isinstance(output, BaseModel):
        return output.model_dump(mode="json")
    return output


class AgentPhaseRunner(PhaseRunner):
    """Run phases with pydantic-ai agents selected by ``runner_spec["agent"]``.

    ``runner_spec`` keys:
        agent: name of the registered agent (falls back to ``default_agent``).
        prompt: prompt text; ``{placeholders}`` are filled from the context.
    """

    def __init__(
        self,
        agents: Mapping[str, Agent],
        default_agent: Optional[str] = None,
    ) -> None:
        self._agents = dict(agents)
        self._default_agent = default_agent

    def _select(self, request: RunnerRequest) -> Agent:
        name = request.runner_spec.get("agent") or self._default_agent
        agent = self._agents.get(name) if name else None
        if agent is None:
            raise RunnerError(
                f"No agent '{name}' registered for phase {request.phase_id}", retryable=False
            )
        return agent

    @staticmethod
    def _prompt(request: RunnerRequest) -> str:
        template = request.runner_spec.get("prompt") or f"Run phase {request.phase_id}"
        try:
            return template.format_map(_PromptContext(request.context))
        except (AttributeError, IndexError, KeyError, ValueError):
            return template

    async def run(self, request: RunnerRequest) -> AsyncIterator[RunnerItem]:
        agent = self._select(request)
        prompt = self._prompt(request)
        deps = PhaseDeps(
            instance_id=request.instance_id,
            phase_id=request.phase_id,
            context=request.context,
            runner_spec=request.runner_spec,
        )
        yield ProgressChunk(text=f"Running agent {agent.name or 'agent'} (attempt {request.attempt})")
        try:
            result = await agent.run(prompt, deps=deps)
        except ModelHTTPError as e:
            raise RunnerError(str(e), retryable=e.status_code in _RETRYABLE_STATUS) from e
        except UnexpectedModelBehavior as e:
            raise RunnerError(str(e), retryable=True) from e
        except UsageLimitExceeded as e:
            raise RunnerError(str(e), retryable=False) from e

        logger.debug(f"Agent finished phase {request.phase_id} for instance {request.instance_id}")
        yield RunnerResult(output=normalize_output(result.output))


class _PromptContext(dict):
    """``format_map`` helper that leaves unknown placeholders untouched."""

    def __init__(self, context: Mapping[str, Any]):
        super().__init__(context)

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"
