"""Phase runner contract.

A runner performs the actual work of a phase (usually an LLM agent) and
streams progress back to the engine. The engine only looks at progress
text, the final structured output and the ``retryable`` flag of a
:class:`~phaseflow.errors.RunnerError`.
"""

from __future__ import annotations

import abc
import asyncio
from typing import Any, AsyncIterator, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..contracts import PhaseKind


class ProgressChunk(BaseModel):
    """Intermediate progress text emitted by a running phase."""

    text: str
    data: Optional[Dict[str, Any]] = None


class RunnerResult(BaseModel):
    """Final item of a runner stream."""

    output: Any = None


RunnerItem = Union[ProgressChunk, RunnerResult]


class RunnerRequest(BaseModel):
    """Everything a runner receives for one invocation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    instance_id: str
    phase_id: str
    kind: PhaseKind
    runner_spec: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    attempt: int = 1
    inputs: asyncio.Queue = Field(default_factory=asyncio.Queue, exclude=True)

    async def next_input(self, timeout: Optional[float] = None) -> str:
        """Wait for text forwarded with ``Orchestrator.send_input``."""
        if timeout is None:
            return await self.inputs.get()
        return await asyncio.wait_for(self.inputs.get(), timeout)


class PhaseRunner(metaclass=abc.ABCMeta):
    """Abstract executor for a phase's work."""

    @abc.abstractmethod
    def run(self, request: RunnerRequest) -> AsyncIterator[RunnerItem]:
        """Yield progress chunks and finish with a :class:`RunnerResult`.

        Raises:
            RunnerError: When the work fails; ``retryable`` selects the
                engine's retry path.
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release runner resources (no-op by default)."""
        pass
