"""Core contracts: workflow graphs and lifecycle events."""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PhaseKind(str, Enum):
    PLANNING = "planning"
    WRITING = "writing"
    GATE = "gate"
    LOOP = "loop"
    USER_APPROVAL = "user-approval"
    SUB_WORKFLOW = "sub-workflow"
    PARALLEL_SPLIT = "parallel-split"
    PARALLEL_JOIN = "parallel-join"


class EdgeKind(str, Enum):
    DEFAULT = "default"
    CONDITIONAL = "conditional"
    LOOP_BACK = "loop-back"


class SemanticVersion(BaseModel):
    """Semantic version with ``major.minor.patch`` components."""

    model_config = ConfigDict(frozen=True)

    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, value: str) -> "SemanticVersion":
        """Parse a dotted semantic version string."""
        parts = value.split(".")
        if len(parts) != 3:
            raise ValueError("Semantic version must have three components")
        major, minor, patch = (int(p) for p in parts)
        return cls(major=major, minor=minor, patch=patch)

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.major}.{self.minor}.{self.patch}"


class Position(BaseModel):
    """Canvas coordinates; ignored by the engine."""

    model_config = ConfigDict(frozen=True)

    x: float = 0
    y: float = 0


class Phase(BaseModel):
    """One node of the workflow graph."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: PhaseKind
    name: Optional[str] = None
    runner_spec: Dict[str, Any] = Field(
        default_factory=dict, description="Resolved runner configuration, opaque to the engine"
    )
    condition: Optional[str] = Field(
        default=None, description="Gate condition or loop exit condition"
    )
    max_iterations: Optional[int] = Field(default=None, ge=1)
    collection: Optional[str] = Field(
        default=None, description="Loop over the list at this dotted context path"
    )
    requires_approval: bool = False
    sub_workflow_id: Optional[str] = None
    sub_workflow_version: Optional[str] = None
    context_projection: Dict[str, str] = Field(
        default_factory=dict, description="Child input key -> dotted path in parent context"
    )
    output_mapping: Dict[str, str] = Field(
        default_factory=dict,
        description="Output key -> dotted path in the phase result; empty keeps the whole result",
    )
    timeout: Optional[float] = Field(default=None, gt=0)
    position: Position = Field(default_factory=Position)

    @property
    def display_name(self) -> str:
        return self.name or self.id


class Edge(BaseModel):
    """Directed, typed connection between two phases."""

    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    kind: EdgeKind = EdgeKind.DEFAULT
    condition: Optional[str] = None
    label: Optional[str] = None

    @property
    def normalized_label(self) -> Optional[str]:
        return self.label.strip().lower() if self.label else None


class DependencyManifest(BaseModel):
    """External components a workflow needs to run."""

    model_config = ConfigDict(frozen=True)

    agents: List[str] = Field(default_factory=list)
    skills: List[str] = Field(default_factory=list)
    mcp_servers: List[str] = Field(default_factory=list)
    sub_workflows: List[str] = Field(default_factory=list)


class WorkflowDefinition(BaseModel):
    """Immutable description of a workflow graph."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    version: str = "1.0.0"
    description: Optional[str] = None
    phases: List[Phase] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    dependencies: DependencyManifest = Field(default_factory=DependencyManifest)

    @field_validator("version")
    @classmethod
    def _ensure_semver(cls, v: str) -> str:
        SemanticVersion.parse(v)
        return v

    @property
    def semantic_version(self) -> SemanticVersion:
        return SemanticVersion.parse(self.version)

    def get_phase(self, phase_id: str) -> Optional[Phase]:
        return next((p for p in self.phases if p.id == phase_id), None)

    def fingerprint(self) -> str:
        """Stable digest of the definition content, used to detect mutation."""
        return hashlib.sha256(self.model_dump_json().encode()).hexdigest()

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkflowDefinition":
        return cls.model_validate_json(data)


class EventType(str, Enum):
    PHASE_STARTED = "phase-started"
    PHASE_PROGRESS = "phase-progress"
    PHASE_COMPLETED = "phase-completed"
    PHASE_FAILED = "phase-failed"
    GATE_EVALUATED = "gate-evaluated"
    APPROVAL_REQUIRED = "approval-required"
    INSTANCE_PAUSED = "instance-paused"
    INSTANCE_COMPLETED = "instance-completed"
    INSTANCE_FAILED = "instance-failed"
    INSTANCE_CANCELLED = "instance-cancelled"


class LifecycleEvent(BaseModel):
    """Envelope broadcast to observers. Ordered per instance by ``sequence``."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: EventType
    instance_id: str
    phase_id: Optional[str] = None
    sequence: int = 0
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "LifecycleEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)
