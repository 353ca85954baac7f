"""Phase runner interface and adapters."""

from .agent import AgentPhaseRunner, PhaseDeps
from .base import PhaseRunner, ProgressChunk, RunnerItem, RunnerRequest, RunnerResult

__all__ = [
    "AgentPhaseRunner",
    "PhaseDeps",
    "PhaseRunner",
    "ProgressChunk",
    "RunnerItem",
    "RunnerRequest",
    "RunnerResult",
]
