"""Data models for persisted workflow runtime state."""

from __future__ import annotations

import copy
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, PrivateAttr

from ..errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def assign_path(target: Dict[str, Any], key: str, value: Any) -> None:
    """Set a dotted ``key`` inside nested dictionaries, creating parents."""
    *parents, leaf = key.split(".")
    for part in parents:
        child = target.get(part)
        if not isinstance(child, dict):
            child = {}
            target[part] = child
        target = child
    target[leaf] = copy.deepcopy(value)


class InstanceStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


class GateVerdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    PENDING = "pending"


TERMINAL_STATUSES: FrozenSet[InstanceStatus] = frozenset(
    [InstanceStatus.COMPLETE, InstanceStatus.FAILED, InstanceStatus.CANCELLED]
)

VALID_TRANSITIONS: Dict[InstanceStatus, FrozenSet[InstanceStatus]] = {
    InstanceStatus.PENDING: frozenset(
        [InstanceStatus.RUNNING, InstanceStatus.FAILED, InstanceStatus.CANCELLED]
    ),
    InstanceStatus.RUNNING: frozenset(
        [
            InstanceStatus.PAUSED,
            InstanceStatus.COMPLETE,
            InstanceStatus.FAILED,
            InstanceStatus.CANCELLED,
        ]
    ),
    # A paused instance may still fail from a sibling branch.
    InstanceStatus.PAUSED: frozenset(
        [InstanceStatus.RUNNING, InstanceStatus.FAILED, InstanceStatus.CANCELLED]
    ),
    InstanceStatus.COMPLETE: frozenset(),
    InstanceStatus.FAILED: frozenset(),
    InstanceStatus.CANCELLED: frozenset(),
}


class ContextWrite(BaseModel):
    """A single namespaced write into an instance's execution context."""

    sequence: int
    key: str
    value: Any = None
    phase_id: Optional[str] = None


class ExecutionContext(BaseModel):
    """Append-only log of context writes.

    Phases read a snapshot folded from the log; a checkpoint is the
    snapshot at a given sequence number.
    """

    writes: List[ContextWrite] = Field(default_factory=list)
    _folded: Dict[str, Any] = PrivateAttr(default_factory=dict)
    _folded_count: int = PrivateAttr(default=0)
    _folded_tail: Optional[ContextWrite] = PrivateAttr(default=None)

    @property
    def last_sequence(self) -> int:
        return self.writes[-1].sequence if self.writes else 0

    def append(self, key: str, value: Any, phase_id: Optional[str] = None) -> ContextWrite:
        write = ContextWrite(
            sequence=self.last_sequence + 1,
            key=key,
            value=copy.deepcopy(value),
            phase_id=phase_id,
        )
        self.writes.append(write)
        return write

    def snapshot(self, upto: Optional[int] = None) -> Dict[str, Any]:
        """Fold writes with ``sequence <= upto`` into a nested dictionary.

        The fold of the whole log is cached and extended as writes are
        appended, so repeated snapshots only replay new writes.
        """
        if upto is not None and upto < self.last_sequence:
            result: Dict[str, Any] = {}
            for write in self.writes:
                if write.sequence > upto:
                    break
                assign_path(result, write.key, write.value)
            return result
        return copy.deepcopy(self._fold())

    def _fold(self) -> Dict[str, Any]:
        count = self._folded_count
        # the log was replaced or truncated since the last fold
        if count > len(self.writes) or (count and self.writes[count - 1] is not self._folded_tail):
            self._folded, count = {}, 0
        for write in self.writes[count:]:
            assign_path(self._folded, write.key, write.value)
        self._folded_count = len(self.writes)
        self._folded_tail = self.writes[-1] if self.writes else None
        return self._folded

    def __eq__(self, other: object) -> bool:
        # the fold cache is not part of the value
        if isinstance(other, ExecutionContext):
            return self.writes == other.writes
        return NotImplemented

    def get(self, key: str, default: Any = None) -> Any:
        for write in reversed(self.writes):
            if write.key == key:
                return copy.deepcopy(write.value)
        return default


class WorkflowInstance(BaseModel):
    """One execution run of a workflow definition."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    workflow_version: str
    status: InstanceStatus = InstanceStatus.PENDING
    active_phases: List[str] = Field(default_factory=list)
    blocked_phases: List[str] = Field(default_factory=list)
    context: ExecutionContext = Field(default_factory=ExecutionContext)
    parent_instance_id: Optional[str] = None
    parent_phase_id: Optional[str] = None
    error: Optional[str] = None
    revision: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, to_status: InstanceStatus) -> None:
        """Move to ``to_status`` or raise :class:`InvalidTransitionError`."""
        if to_status == self.status:
            return
        if to_status not in VALID_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, to_status.value, self.id)
        self.status = to_status
        self.updated_at = utcnow()
        if to_status in TERMINAL_STATUSES:
            self.completed_at = self.updated_at


class PhaseExecution(BaseModel):
    """Record of one activation of a phase."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    phase_id: str
    status: PhaseStatus = PhaseStatus.PENDING
    iteration: int = 1
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    output: Any = None
    error: Optional[str] = None


class QualityGateResult(BaseModel):
    """Outcome of a gate evaluation."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    phase_id: str
    phase_execution_id: str
    gate_type: str = "quality"
    criteria: Optional[str] = None
    result: GateVerdict = GateVerdict.PENDING
    score: Optional[float] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class Checkpoint(BaseModel):
    """Durable snapshot written after each phase-set transition."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    phase_id: Optional[str] = None
    sequence: int
    status: InstanceStatus
    context: Dict[str, Any] = Field(default_factory=dict)
    context_sequence: int = 0
    active_phases: List[str] = Field(default_factory=list)
    blocked_phases: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class VersionLock(BaseModel):
    """Guard preventing mutation of a definition version in use."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    version: str
    instance_id: str
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    released_at: Optional[datetime] = None


class Transition(BaseModel):
    """Writes that must become visible together."""

    instance: Optional[WorkflowInstance] = None
    expected_revision: Optional[int] = None
    executions: List[PhaseExecution] = Field(default_factory=list)
    gate_results: List[QualityGateResult] = Field(default_factory=list)
    checkpoint: Optional[Checkpoint] = None

    @property
    def instance_id(self) -> Optional[str]:
        if self.instance is not None:
            return self.instance.id
        if self.checkpoint is not None:
            return self.checkpoint.instance_id
        if self.executions:
            return self.executions[0].instance_id
        if self.gate_results:
            return self.gate_results[0].instance_id
        return None
