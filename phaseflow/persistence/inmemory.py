"""In-memory implementation of the state store."""

from __future__ import annotations

from typing import Dict, Tuple

from ..contracts import SemanticVersion, WorkflowDefinition
from ..errors import (
    ConcurrencyConflictError,
    DefinitionNotFoundError,
    InstanceNotFoundError,
    VersionLockedError,
)
from .models import (
    Checkpoint,
    InstanceStatus,
    PhaseExecution,
    QualityGateResult,
    Transition,
    VersionLock,
    WorkflowInstance,
    utcnow,
)
from .repository import InstanceLocks, StateStore


class InMemoryStateStore(StateStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._definitions: Dict[Tuple[str, str], WorkflowDefinition] = {}
        self._instances: Dict[str, WorkflowInstance] = {}
        self._executions: Dict[str, PhaseExecution] = {}
        self._gates: Dict[str, QualityGateResult] = {}
        self._checkpoints: Dict[str, Checkpoint] = {}
        self._locks: Dict[str, VersionLock] = {}
        self._instance_locks = InstanceLocks()

    # ------------------------------------------------------------------
    def _active_lock_holders(self, workflow_id: str, version: str) -> list[str]:
        return [
            lock.instance_id
            for lock in self._locks.values()
            if lock.active and lock.workflow_id == workflow_id and lock.version == version
        ]

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        key = (definition.id, definition.version)
        existing = self._definitions.get(key)
        if existing is not None and existing.fingerprint() != definition.fingerprint():
            holders = self._active_lock_holders(*key)
            if holders:
                raise VersionLockedError(definition.id, definition.version, holders)
        self._definitions[key] = definition

    async def get_definition(
        self, workflow_id: str, version: str | None = None
    ) -> WorkflowDefinition | None:
        if version is not None:
            return self._definitions.get((workflow_id, version))
        candidates = [d for (wid, _), d in self._definitions.items() if wid == workflow_id]
        if not candidates:
            return None
        return max(candidates, key=lambda d: SemanticVersion.parse(d.version).as_tuple())

    async def list_definitions(self) -> list[WorkflowDefinition]:
        return list(self._definitions.values())

    async def delete_definition(self, workflow_id: str, version: str) -> None:
        holders = self._active_lock_holders(workflow_id, version)
        if holders:
            raise VersionLockedError(workflow_id, version, holders)
        self._definitions.pop((workflow_id, version), None)

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        async with self._instance_locks(instance.id):
            self._instances[instance.id] = instance.model_copy(deep=True)
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_instances(
        self,
        status: InstanceStatus | None = None,
        parent_instance_id: str | None = None,
    ) -> list[WorkflowInstance]:
        return [
            inst.model_copy(deep=True)
            for inst in self._instances.values()
            if (status is None or inst.status == status)
            and (parent_instance_id is None or inst.parent_instance_id == parent_instance_id)
        ]

    # ------------------------------------------------------------------
    async def lock_version(
        self, workflow_id: str, version: str, instance_id: str
    ) -> VersionLock:
        if (workflow_id, version) not in self._definitions:
            raise DefinitionNotFoundError(f"{workflow_id}@{version}")
        for lock in self._locks.values():
            if (
                lock.active
                and lock.instance_id == instance_id
                and lock.workflow_id == workflow_id
                and lock.version == version
            ):
                return lock.model_copy()
        lock = VersionLock(workflow_id=workflow_id, version=version, instance_id=instance_id)
        self._locks[lock.id] = lock
        return lock.model_copy()

    async def release_locks(self, instance_id: str) -> None:
        for lock in self._locks.values():
            if lock.instance_id == instance_id and lock.active:
                lock.active = False
                lock.released_at = utcnow()

    async def list_locks(
        self, workflow_id: str, active_only: bool = True
    ) -> list[VersionLock]:
        return [
            lock.model_copy()
            for lock in self._locks.values()
            if lock.workflow_id == workflow_id and (lock.active or not active_only)
        ]

    # ------------------------------------------------------------------
    async def start_phase(self, execution: PhaseExecution) -> None:
        async with self._instance_locks(execution.instance_id):
            # ignore duplicate starts for the same execution id
            if execution.id not in self._executions:
                self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_phase_execution(self, execution_id: str) -> PhaseExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_phase_executions(
        self, instance_id: str, phase_id: str | None = None
    ) -> list[PhaseExecution]:
        return [
            ex.model_copy(deep=True)
            for ex in self._executions.values()
            if ex.instance_id == instance_id and (phase_id is None or ex.phase_id == phase_id)
        ]

    async def list_gate_results(self, instance_id: str) -> list[QualityGateResult]:
        return [g.model_copy(deep=True) for g in self._gates.values() if g.instance_id == instance_id]

    async def list_checkpoints(self, instance_id: str) -> list[Checkpoint]:
        checkpoints = [c for c in self._checkpoints.values() if c.instance_id == instance_id]
        return [c.model_copy(deep=True) for c in sorted(checkpoints, key=lambda c: c.sequence)]

    async def latest_checkpoint(self, instance_id: str) -> Checkpoint | None:
        checkpoints = await self.list_checkpoints(instance_id)
        return checkpoints[-1] if checkpoints else None

    # ------------------------------------------------------------------
    async def commit_transition(self, transition: Transition) -> int | None:
        async with self._instance_locks(transition.instance_id):
            revision = None
            # validate first so a conflict leaves nothing half-written
            if transition.instance is not None:
                current = self._instances.get(transition.instance.id)
                if current is None:
                    raise InstanceNotFoundError(transition.instance.id)
                if (
                    transition.expected_revision is not None
                    and current.revision != transition.expected_revision
                ):
                    raise ConcurrencyConflictError(
                        current.id, transition.expected_revision, current.revision
                    )
                revision = current.revision + 1
                self._instances[current.id] = transition.instance.model_copy(
                    update={"revision": revision, "updated_at": utcnow()}, deep=True
                )
            for execution in transition.executions:
                self._executions[execution.id] = execution.model_copy(deep=True)
            for gate in transition.gate_results:
                if not any(
                    g.phase_execution_id == gate.phase_execution_id for g in self._gates.values()
                ):
                    self._gates[gate.id] = gate.model_copy(deep=True)
            if transition.checkpoint is not None:
                self._checkpoints[transition.checkpoint.id] = transition.checkpoint.model_copy(
                    deep=True
                )
            return revision

    async def complete_phase(
        self,
        execution: PhaseExecution,
        gate_result: QualityGateResult | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> None:
        await self.commit_transition(
            Transition(
                executions=[execution],
                gate_results=[gate_result] if gate_result else [],
                checkpoint=checkpoint,
            )
        )
