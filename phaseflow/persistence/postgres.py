"""PostgreSQL implementation of the state store."""

from __future__ import annotations

from typing import Any

import asyncpg

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


class PostgresStateStore(StateStore):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False
        self._instance_locks = InstanceLocks()

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS phaseflow_definitions (
                workflow_id TEXT NOT NULL,
                version TEXT NOT NULL,
                fingerprint TEXT NOT NULL,
                body JSONB NOT NULL,
                PRIMARY KEY (workflow_id, version)
            );
            CREATE TABLE IF NOT EXISTS phaseflow_instances (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                parent_instance_id TEXT,
                revision INTEGER NOT NULL,
                created_seq BIGSERIAL,
                body JSONB NOT NULL
            );
            CREATE TABLE IF NOT EXISTS phaseflow_phase_executions (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                instance_id TEXT NOT NULL,
                phase_id TEXT NOT NULL,
                status TEXT NOT NULL,
                body JSONB NOT NULL
            );
            CREATE TABLE IF NOT EXISTS phaseflow_gate_results (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                instance_id TEXT NOT NULL,
                phase_execution_id TEXT NOT NULL UNIQUE,
                body JSONB NOT NULL
            );
            CREATE TABLE IF NOT EXISTS phaseflow_checkpoints (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                body JSONB NOT NULL
            );
            CREATE TABLE IF NOT EXISTS phaseflow_version_locks (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                version TEXT NOT NULL,
                instance_id TEXT NOT NULL,
                active BOOLEAN NOT NULL,
                body JSONB NOT NULL
            );
            """
        )

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    @staticmethod
    async def _active_holders(
        conn: asyncpg.Connection, workflow_id: str, version: str
    ) -> list[str]:
        rows = await conn.fetch(
            """
            SELECT instance_id FROM phaseflow_version_locks
            WHERE workflow_id = $1 AND version = $2 AND active
            """,
            workflow_id,
            version,
        )
        return [r["instance_id"] for r in rows]

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        fingerprint = definition.fingerprint()
        conn = await self._connect()
        try:
            async with conn.transaction():
                current = await conn.fetchval(
                    """
                    SELECT fingerprint FROM phaseflow_definitions
                    WHERE workflow_id = $1 AND version = $2 FOR UPDATE
                    """,
                    definition.id,
                    definition.version,
                )
                if current is not None and current != fingerprint:
                    holders = await self._active_holders(conn, definition.id, definition.version)
                    if holders:
                        raise VersionLockedError(definition.id, definition.version, holders)
                await conn.execute(
                    """
                    INSERT INTO phaseflow_definitions (workflow_id, version, fingerprint, body)
                    VALUES ($1, $2, $3, $4::jsonb)
                    ON CONFLICT (workflow_id, version)
                    DO UPDATE SET fingerprint = EXCLUDED.fingerprint, body = EXCLUDED.body
                    """,
                    definition.id,
                    definition.version,
                    fingerprint,
                    definition.to_json(),
                )
        finally:
            await conn.close()

    async def get_definition(
        self, workflow_id: str, version: str | None = None
    ) -> WorkflowDefinition | None:
        if version is not None:
            row = await self._fetchrow(
                "SELECT body FROM phaseflow_definitions WHERE workflow_id = $1 AND version = $2",
                workflow_id,
                version,
            )
            return WorkflowDefinition.from_json(row["body"]) if row else None
        rows = await self._fetch(
            "SELECT body FROM phaseflow_definitions WHERE workflow_id = $1", workflow_id
        )
        definitions = [WorkflowDefinition.from_json(r["body"]) for r in rows]
        if not definitions:
            return None
        return max(definitions, key=lambda d: SemanticVersion.parse(d.version).as_tuple())

    async def list_definitions(self) -> list[WorkflowDefinition]:
        rows = await self._fetch("SELECT body FROM phaseflow_definitions")
        return [WorkflowDefinition.from_json(r["body"]) for r in rows]

    async def delete_definition(self, workflow_id: str, version: str) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                holders = await self._active_holders(conn, workflow_id, version)
                if holders:
                    raise VersionLockedError(workflow_id, version, holders)
                await conn.execute(
                    "DELETE FROM phaseflow_definitions WHERE workflow_id = $1 AND version = $2",
                    workflow_id,
                    version,
                )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        async with self._instance_locks(instance.id):
            conn = await self._connect()
            try:
                await conn.execute(
                    """
                    INSERT INTO phaseflow_instances
                        (id, workflow_id, status, parent_instance_id, revision, body)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                    """,
                    instance.id,
                    instance.workflow_id,
                    instance.status.value,
                    instance.parent_instance_id,
                    instance.revision,
                    instance.model_dump_json(),
                )
            finally:
                await conn.close()
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = await self._fetchrow(
            "SELECT body FROM phaseflow_instances WHERE id = $1", instance_id
        )
        return WorkflowInstance.model_validate_json(row["body"]) if row else None

    async def list_instances(
        self,
        status: InstanceStatus | None = None,
        parent_instance_id: str | None = None,
    ) -> list[WorkflowInstance]:
        rows = await self._fetch(
            """
            SELECT body FROM phaseflow_instances
            WHERE ($1::text IS NULL OR status = $1)
              AND ($2::text IS NULL OR parent_instance_id = $2)
            ORDER BY created_seq
            """,
            status.value if status else None,
            parent_instance_id,
        )
        return [WorkflowInstance.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    async def lock_version(
        self, workflow_id: str, version: str, instance_id: str
    ) -> VersionLock:
        conn = await self._connect()
        try:
            async with conn.transaction():
                exists = await conn.fetchval(
                    "SELECT 1 FROM phaseflow_definitions WHERE workflow_id = $1 AND version = $2",
                    workflow_id,
                    version,
                )
                if exists is None:
                    raise DefinitionNotFoundError(f"{workflow_id}@{version}")
                row = await conn.fetchrow(
                    """
                    SELECT body FROM phaseflow_version_locks
                    WHERE workflow_id = $1 AND version = $2 AND instance_id = $3 AND active
                    """,
                    workflow_id,
                    version,
                    instance_id,
                )
                if row is not None:
                    return VersionLock.model_validate_json(row["body"])
                lock = VersionLock(
                    workflow_id=workflow_id, version=version, instance_id=instance_id
                )
                await conn.execute(
                    """
                    INSERT INTO phaseflow_version_locks
                        (id, workflow_id, version, instance_id, active, body)
                    VALUES ($1, $2, $3, $4, TRUE, $5::jsonb)
                    """,
                    lock.id,
                    workflow_id,
                    version,
                    instance_id,
                    lock.model_dump_json(),
                )
                return lock
        finally:
            await conn.close()

    async def release_locks(self, instance_id: str) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    SELECT body FROM phaseflow_version_locks
                    WHERE instance_id = $1 AND active FOR UPDATE
                    """,
                    instance_id,
                )
                for row in rows:
                    lock = VersionLock.model_validate_json(row["body"])
                    lock.active = False
                    lock.released_at = utcnow()
                    await conn.execute(
                        "UPDATE phaseflow_version_locks SET active = FALSE, body = $1::jsonb WHERE id = $2",
                        lock.model_dump_json(),
                        lock.id,
                    )
        finally:
            await conn.close()

    async def list_locks(
        self, workflow_id: str, active_only: bool = True
    ) -> list[VersionLock]:
        rows = await self._fetch(
            """
            SELECT body FROM phaseflow_version_locks
            WHERE workflow_id = $1 AND (active OR NOT $2)
            """,
            workflow_id,
            active_only,
        )
        return [VersionLock.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    async def start_phase(self, execution: PhaseExecution) -> None:
        async with self._instance_locks(execution.instance_id):
            conn = await self._connect()
            try:
                await conn.execute(
                    """
                    INSERT INTO phaseflow_phase_executions
                        (id, instance_id, phase_id, status, body)
                    VALUES ($1, $2, $3, $4, $5::jsonb)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    execution.id,
                    execution.instance_id,
                    execution.phase_id,
                    execution.status.value,
                    execution.model_dump_json(),
                )
            finally:
                await conn.close()

    async def get_phase_execution(self, execution_id: str) -> PhaseExecution | None:
        row = await self._fetchrow(
            "SELECT body FROM phaseflow_phase_executions WHERE id = $1", execution_id
        )
        return PhaseExecution.model_validate_json(row["body"]) if row else None

    async def list_phase_executions(
        self, instance_id: str, phase_id: str | None = None
    ) -> list[PhaseExecution]:
        rows = await self._fetch(
            """
            SELECT body FROM phaseflow_phase_executions
            WHERE instance_id = $1 AND ($2::text IS NULL OR phase_id = $2)
            ORDER BY seq
            """,
            instance_id,
            phase_id,
        )
        return [PhaseExecution.model_validate_json(r["body"]) for r in rows]

    async def list_gate_results(self, instance_id: str) -> list[QualityGateResult]:
        rows = await self._fetch(
            "SELECT body FROM phaseflow_gate_results WHERE instance_id = $1 ORDER BY seq",
            instance_id,
        )
        return [QualityGateResult.model_validate_json(r["body"]) for r in rows]

    async def list_checkpoints(self, instance_id: str) -> list[Checkpoint]:
        rows = await self._fetch(
            "SELECT body FROM phaseflow_checkpoints WHERE instance_id = $1 ORDER BY sequence",
            instance_id,
        )
        return [Checkpoint.model_validate_json(r["body"]) for r in rows]

    async def latest_checkpoint(self, instance_id: str) -> Checkpoint | None:
        row = await self._fetchrow(
            """
            SELECT body FROM phaseflow_checkpoints
            WHERE instance_id = $1 ORDER BY sequence DESC LIMIT 1
            """,
            instance_id,
        )
        return Checkpoint.model_validate_json(row["body"]) if row else None

    # ------------------------------------------------------------------
    async def commit_transition(self, transition: Transition) -> int | None:
        async with self._instance_locks(transition.instance_id):
            conn = await self._connect()
            try:
                async with conn.transaction():
                    return await self._apply(conn, transition)
            finally:
                await conn.close()

    async def _apply(self, conn: asyncpg.Connection, transition: Transition) -> int | None:
        revision = None
        instance = transition.instance
        if instance is not None:
            current = await conn.fetchval(
                "SELECT revision FROM phaseflow_instances WHERE id = $1 FOR UPDATE", instance.id
            )
            if current is None:
                raise InstanceNotFoundError(instance.id)
            expected = transition.expected_revision
            if expected is not None and current != expected:
                raise ConcurrencyConflictError(instance.id, expected, current)
            revision = current + 1
            stored = instance.model_copy(update={"revision": revision, "updated_at": utcnow()})
            await conn.execute(
                """
                UPDATE phaseflow_instances SET status = $1, revision = $2, body = $3::jsonb
                WHERE id = $4
                """,
                stored.status.value,
                revision,
                stored.model_dump_json(),
                instance.id,
            )
        for execution in transition.executions:
            await conn.execute(
                """
                INSERT INTO phaseflow_phase_executions (id, instance_id, phase_id, status, body)
                VALUES ($1, $2, $3, $4, $5::jsonb)
                ON CONFLICT (id) DO UPDATE SET status = EXCLUDED.status, body = EXCLUDED.body
                """,
                execution.id,
                execution.instance_id,
                execution.phase_id,
                execution.status.value,
                execution.model_dump_json(),
            )
        for gate in transition.gate_results:
            await conn.execute(
                """
                INSERT INTO phaseflow_gate_results (id, instance_id, phase_execution_id, body)
                VALUES ($1, $2, $3, $4::jsonb)
                ON CONFLICT DO NOTHING
                """,
                gate.id,
                gate.instance_id,
                gate.phase_execution_id,
                gate.model_dump_json(),
            )
        checkpoint = transition.checkpoint
        if checkpoint is not None:
            await conn.execute(
                """
                INSERT INTO phaseflow_checkpoints (id, instance_id, sequence, body)
                VALUES ($1, $2, $3, $4::jsonb)
                ON CONFLICT (id) DO UPDATE SET sequence = EXCLUDED.sequence, body = EXCLUDED.body
                """,
                checkpoint.id,
                checkpoint.instance_id,
                checkpoint.sequence,
                checkpoint.model_dump_json(),
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
