"""SQLite implementation of the state store."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, TypeVar

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

T = TypeVar("T")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS definitions (
        workflow_id TEXT NOT NULL,
        version TEXT NOT NULL,
        fingerprint TEXT NOT NULL,
        body TEXT NOT NULL,
        PRIMARY KEY (workflow_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS instances (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        status TEXT NOT NULL,
        parent_instance_id TEXT,
        revision INTEGER NOT NULL,
        body TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS phase_executions (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        instance_id TEXT NOT NULL,
        phase_id TEXT NOT NULL,
        status TEXT NOT NULL,
        body TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS gate_results (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        instance_id TEXT NOT NULL,
        phase_execution_id TEXT NOT NULL UNIQUE,
        body TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS checkpoints (
        id TEXT PRIMARY KEY,
        instance_id TEXT NOT NULL,
        sequence INTEGER NOT NULL,
        body TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS version_locks (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        version TEXT NOT NULL,
        instance_id TEXT NOT NULL,
        active INTEGER NOT NULL,
        body TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_exec_instance ON phase_executions (instance_id)",
    "CREATE INDEX IF NOT EXISTS ix_ckpt_instance ON checkpoints (instance_id, sequence)",
)


class SQLiteStateStore(StateStore):
    """Persist workflow state using SQLite.

    Every write runs in a single ``BEGIN IMMEDIATE`` transaction on a worker
    thread; the connection is shared, so a thread lock serializes access.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn_lock = threading.Lock()
        self._instance_locks = InstanceLocks()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._conn_lock:
            for statement in _SCHEMA:
                self._conn.execute(statement)

    def close(self) -> None:
        with self._conn_lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, work: Callable[[sqlite3.Cursor], T]) -> T:
        with self._conn_lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                result = work(cur)
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")
            return result

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._conn_lock:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._conn_lock:
            return self._conn.execute(query, params).fetchall()

    async def _write(self, instance_id: str | None, work: Callable[[sqlite3.Cursor], T]) -> T:
        async with self._instance_locks(instance_id):
            return await asyncio.to_thread(self._transaction, work)

    @staticmethod
    def _active_holders(cur: sqlite3.Cursor, workflow_id: str, version: str) -> list[str]:
        rows = cur.execute(
            "SELECT instance_id FROM version_locks WHERE workflow_id = ? AND version = ? AND active = 1",
            (workflow_id, version),
        ).fetchall()
        return [r["instance_id"] for r in rows]

    # ------------------------------------------------------------------
    # Definitions
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        fingerprint = definition.fingerprint()

        def work(cur: sqlite3.Cursor) -> None:
            row = cur.execute(
                "SELECT fingerprint FROM definitions WHERE workflow_id = ? AND version = ?",
                (definition.id, definition.version),
            ).fetchone()
            if row is not None and row["fingerprint"] != fingerprint:
                holders = self._active_holders(cur, definition.id, definition.version)
                if holders:
                    raise VersionLockedError(definition.id, definition.version, holders)
            cur.execute(
                """
                INSERT INTO definitions (workflow_id, version, fingerprint, body)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (workflow_id, version)
                DO UPDATE SET fingerprint = excluded.fingerprint, body = excluded.body
                """,
                (definition.id, definition.version, fingerprint, definition.to_json()),
            )

        await self._write(None, work)

    async def get_definition(
        self, workflow_id: str, version: str | None = None
    ) -> WorkflowDefinition | None:
        if version is not None:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT body FROM definitions WHERE workflow_id = ? AND version = ?",
                workflow_id,
                version,
            )
            return WorkflowDefinition.from_json(row["body"]) if row else None
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT body FROM definitions WHERE workflow_id = ?", workflow_id
        )
        definitions = [WorkflowDefinition.from_json(r["body"]) for r in rows]
        if not definitions:
            return None
        return max(definitions, key=lambda d: SemanticVersion.parse(d.version).as_tuple())

    async def list_definitions(self) -> list[WorkflowDefinition]:
        rows = await asyncio.to_thread(self._fetchall, "SELECT body FROM definitions")
        return [WorkflowDefinition.from_json(r["body"]) for r in rows]

    async def delete_definition(self, workflow_id: str, version: str) -> None:
        def work(cur: sqlite3.Cursor) -> None:
            holders = self._active_holders(cur, workflow_id, version)
            if holders:
                raise VersionLockedError(workflow_id, version, holders)
            cur.execute(
                "DELETE FROM definitions WHERE workflow_id = ? AND version = ?",
                (workflow_id, version),
            )

        await self._write(None, work)

    # ------------------------------------------------------------------
    # Instances
    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        def work(cur: sqlite3.Cursor) -> None:
            cur.execute(
                """
                INSERT INTO instances (id, workflow_id, status, parent_instance_id, revision, body)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    instance.id,
                    instance.workflow_id,
                    instance.status.value,
                    instance.parent_instance_id,
                    instance.revision,
                    instance.model_dump_json(),
                ),
            )

        await self._write(instance.id, work)
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT body FROM instances WHERE id = ?", instance_id
        )
        return WorkflowInstance.model_validate_json(row["body"]) if row else None

    async def list_instances(
        self,
        status: InstanceStatus | None = None,
        parent_instance_id: str | None = None,
    ) -> list[WorkflowInstance]:
        query = "SELECT body FROM instances WHERE 1 = 1"
        params: list[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        if parent_instance_id is not None:
            query += " AND parent_instance_id = ?"
            params.append(parent_instance_id)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY rowid", *params)
        return [WorkflowInstance.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    # Version locks
    async def lock_version(
        self, workflow_id: str, version: str, instance_id: str
    ) -> VersionLock:
        def work(cur: sqlite3.Cursor) -> VersionLock:
            if cur.execute(
                "SELECT 1 FROM definitions WHERE workflow_id = ? AND version = ?",
                (workflow_id, version),
            ).fetchone() is None:
                raise DefinitionNotFoundError(f"{workflow_id}@{version}")
            row = cur.execute(
                """
                SELECT body FROM version_locks
                WHERE workflow_id = ? AND version = ? AND instance_id = ? AND active = 1
                """,
                (workflow_id, version, instance_id),
            ).fetchone()
            if row is not None:
                return VersionLock.model_validate_json(row["body"])
            lock = VersionLock(workflow_id=workflow_id, version=version, instance_id=instance_id)
            cur.execute(
                """
                INSERT INTO version_locks (id, workflow_id, version, instance_id, active, body)
                VALUES (?, ?, ?, ?, 1, ?)
                """,
                (lock.id, workflow_id, version, instance_id, lock.model_dump_json()),
            )
            return lock

        return await self._write(instance_id, work)

    async def release_locks(self, instance_id: str) -> None:
        def work(cur: sqlite3.Cursor) -> None:
            rows = cur.execute(
                "SELECT body FROM version_locks WHERE instance_id = ? AND active = 1",
                (instance_id,),
            ).fetchall()
            for row in rows:
                lock = VersionLock.model_validate_json(row["body"])
                lock.active = False
                lock.released_at = utcnow()
                cur.execute(
                    "UPDATE version_locks SET active = 0, body = ? WHERE id = ?",
                    (lock.model_dump_json(), lock.id),
                )

        await self._write(instance_id, work)

    async def list_locks(
        self, workflow_id: str, active_only: bool = True
    ) -> list[VersionLock]:
        query = "SELECT body FROM version_locks WHERE workflow_id = ?"
        if active_only:
            query += " AND active = 1"
        rows = await asyncio.to_thread(self._fetchall, query, workflow_id)
        return [VersionLock.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    # Phase executions, gates, checkpoints
    async def start_phase(self, execution: PhaseExecution) -> None:
        def work(cur: sqlite3.Cursor) -> None:
            cur.execute(
                """
                INSERT OR IGNORE INTO phase_executions (id, instance_id, phase_id, status, body)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    execution.id,
                    execution.instance_id,
                    execution.phase_id,
                    execution.status.value,
                    execution.model_dump_json(),
                ),
            )

        await self._write(execution.instance_id, work)

    async def get_phase_execution(self, execution_id: str) -> PhaseExecution | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT body FROM phase_executions WHERE id = ?", execution_id
        )
        return PhaseExecution.model_validate_json(row["body"]) if row else None

    async def list_phase_executions(
        self, instance_id: str, phase_id: str | None = None
    ) -> list[PhaseExecution]:
        query = "SELECT body FROM phase_executions WHERE instance_id = ?"
        params: list[Any] = [instance_id]
        if phase_id is not None:
            query += " AND phase_id = ?"
            params.append(phase_id)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY seq", *params)
        return [PhaseExecution.model_validate_json(r["body"]) for r in rows]

    async def list_gate_results(self, instance_id: str) -> list[QualityGateResult]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM gate_results WHERE instance_id = ? ORDER BY seq",
            instance_id,
        )
        return [QualityGateResult.model_validate_json(r["body"]) for r in rows]

    async def list_checkpoints(self, instance_id: str) -> list[Checkpoint]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM checkpoints WHERE instance_id = ? ORDER BY sequence",
            instance_id,
        )
        return [Checkpoint.model_validate_json(r["body"]) for r in rows]

    async def latest_checkpoint(self, instance_id: str) -> Checkpoint | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT body FROM checkpoints WHERE instance_id = ? ORDER BY sequence DESC LIMIT 1",
            instance_id,
        )
        return Checkpoint.model_validate_json(row["body"]) if row else None

    # ------------------------------------------------------------------
    # Atomic writes
    async def commit_transition(self, transition: Transition) -> int | None:
        def work(cur: sqlite3.Cursor) -> int | None:
            revision = None
            instance = transition.instance
            if instance is not None:
                row = cur.execute(
                    "SELECT revision FROM instances WHERE id = ?", (instance.id,)
                ).fetchone()
                if row is None:
                    raise InstanceNotFoundError(instance.id)
                current = row["revision"]
                expected = transition.expected_revision
                if expected is not None and current != expected:
                    raise ConcurrencyConflictError(instance.id, expected, current)
                revision = current + 1
                stored = instance.model_copy(update={"revision": revision, "updated_at": utcnow()})
                cur.execute(
                    "UPDATE instances SET status = ?, revision = ?, body = ? WHERE id = ?",
                    (stored.status.value, revision, stored.model_dump_json(), instance.id),
                )
            for execution in transition.executions:
                cur.execute(
                    """
                    INSERT INTO phase_executions (id, instance_id, phase_id, status, body)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (id) DO UPDATE SET status = excluded.status, body = excluded.body
                    """,
                    (
                        execution.id,
                        execution.instance_id,
                        execution.phase_id,
                        execution.status.value,
                        execution.model_dump_json(),
                    ),
                )
            for gate in transition.gate_results:
                cur.execute(
                    """
                    INSERT OR IGNORE INTO gate_results (id, instance_id, phase_execution_id, body)
                    VALUES (?, ?, ?, ?)
                    """,
                    (gate.id, gate.instance_id, gate.phase_execution_id, gate.model_dump_json()),
                )
            checkpoint = transition.checkpoint
            if checkpoint is not None:
                cur.execute(
                    """
                    INSERT INTO checkpoints (id, instance_id, sequence, body) VALUES (?, ?, ?, ?)
                    ON CONFLICT (id) DO UPDATE SET sequence = excluded.sequence, body = excluded.body
                    """,
                    (
                        checkpoint.id,
                        checkpoint.instance_id,
                        checkpoint.sequence,
                        checkpoint.model_dump_json(),
                    ),
                )
            return revision

        return await self._write(transition.instance_id, work)

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
