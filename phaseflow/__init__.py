"""phaseflow: durable workflow orchestration for multi-step AI pipelines."""

from .config import PhaseflowConfig, load_config
from .contracts import (
    DependencyManifest,
    Edge,
    EdgeKind,
    EventType,
    LifecycleEvent,
    Phase,
    PhaseKind,
    WorkflowDefinition,
)
from .events import EventEmitter
from .graph import GraphIndex, validate
from .orchestrator import Orchestrator
from .persistence import InMemoryStateStore, SQLiteStateStore, get_repository
from .runners import (
    AgentPhaseRunner,
    PhaseDeps,
    PhaseRunner,
    ProgressChunk,
    RunnerRequest,
    RunnerResult,
)
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "AgentPhaseRunner",
    "DependencyManifest",
    "Edge",
    "EdgeKind",
    "EventEmitter",
    "EventType",
    "GraphIndex",
    "InMemoryStateStore",
    "LifecycleEvent",
    "Orchestrator",
    "Phase",
    "PhaseDeps",
    "PhaseKind",
    "PhaseRunner",
    "PhaseflowConfig",
    "ProgressChunk",
    "RunnerRequest",
    "RunnerResult",
    "SQLiteStateStore",
    "WorkflowDefinition",
    "get_repository",
    "get_transport",
    "load_config",
    "validate",
]
