"""Repository abstraction for workflow runtime persistence."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Optional, Protocol

from ..contracts import WorkflowDefinition
from .models import (
    Checkpoint,
    InstanceStatus,
    PhaseExecution,
    QualityGateResult,
    Transition,
    VersionLock,
    WorkflowInstance,
)


class InstanceLocks:
    """Per-instance asyncio locks; distinct instances never contend."""

    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __call__(self, instance_id: Optional[str]) -> asyncio.Lock:
        return self._locks[instance_id or "__global__"]

    def discard(self, instance_id: str) -> None:
        lock = self._locks.get(instance_id)
        if lock is not None and not lock.locked():
            del self._locks[instance_id]


class StateStore(Protocol):
    """Protocol for workflow state persistence backends."""

    # Definitions -------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Store a definition; raises ``VersionLockedError`` on locked mutation."""

    async def get_definition(
        self, workflow_id: str, version: str | None = None
    ) -> WorkflowDefinition | None:
        """Return a definition version, or the latest when ``version`` is None."""

    async def list_definitions(self) -> list[WorkflowDefinition]:
        """Return all stored definitions."""

    async def delete_definition(self, workflow_id: str, version: str) -> None:
        """Delete a definition version unless it is locked."""

    # Instances ---------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Persist a new instance."""

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve an instance by id."""

    async def list_instances(
        self,
        status: InstanceStatus | None = None,
        parent_instance_id: str | None = None,
    ) -> list[WorkflowInstance]:
        """Return instances, optionally filtered."""

    # Version locks -----------------------------------------------------
    async def lock_version(
        self, workflow_id: str, version: str, instance_id: str
    ) -> VersionLock:
        """Acquire (idempotently) a version lock for ``instance_id``."""

    async def release_locks(self, instance_id: str) -> None:
        """Release every active lock held by ``instance_id``."""

    async def list_locks(
        self, workflow_id: str, active_only: bool = True
    ) -> list[VersionLock]:
        """Return locks for a workflow."""

    # Phase executions --------------------------------------------------
    async def start_phase(self, execution: PhaseExecution) -> None:
        """Record a started phase execution; repeated ids are ignored."""

    async def get_phase_execution(self, execution_id: str) -> PhaseExecution | None:
        """Retrieve a phase execution by id."""

    async def list_phase_executions(
        self, instance_id: str, phase_id: str | None = None
    ) -> list[PhaseExecution]:
        """Return phase executions in start order."""

    async def list_gate_results(self, instance_id: str) -> list[QualityGateResult]:
        """Return gate results in creation order."""

    # Checkpoints -------------------------------------------------------
    async def list_checkpoints(self, instance_id: str) -> list[Checkpoint]:
        """Return checkpoints ordered by sequence."""

    async def latest_checkpoint(self, instance_id: str) -> Checkpoint | None:
        """Return the most recent checkpoint for resume."""

    # Atomic writes -----------------------------------------------------
    async def commit_transition(self, transition: Transition) -> int | None:
        """Atomically apply ``transition``; returns the new instance revision."""

    async def complete_phase(
        self,
        execution: PhaseExecution,
        gate_result: QualityGateResult | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> None:
        """Idempotently commit one phase completion."""
