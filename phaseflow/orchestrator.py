"""Execution engine driving workflow instances through their graphs."""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from .conditions import ABSENT, evaluate, resolve_path
from .config import PhaseflowConfig, load_config
from .constants import (
    GATE_FAIL_LABEL,
    GATE_PASS_LABEL,
    LOOP_BODY_LABEL,
    LOOP_EXHAUSTED_LABEL,
    LOOP_EXIT_LABEL,
)
from .contracts import Edge, EdgeKind, EventType, Phase, PhaseKind, WorkflowDefinition
from .errors import (
    ApprovalRejectedError,
    ConcurrencyConflictError,
    DeadEndError,
    DefinitionNotFoundError,
    ExecutionError,
    GateOutputError,
    InstanceNotFoundError,
    LoopExhaustedError,
    MissingDependencyError,
    PhaseflowError,
    RunnerError,
    SubWorkflowFailedError,
    UnhandledGateFailure,
)
from .events import EventEmitter
from .graph import GraphIndex, validate
from .persistence import get_repository
from .persistence.models import (
    Checkpoint,
    GateVerdict,
    InstanceStatus,
    PhaseExecution,
    PhaseStatus,
    QualityGateResult,
    Transition,
    WorkflowInstance,
    assign_path,
    utcnow,
)
from .persistence.repository import StateStore
from .runners.base import PhaseRunner, ProgressChunk, RunnerRequest, RunnerResult
from .transports import get_transport
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)

# Default for ``approve`` so that an explicit ``None`` still replaces the output.
_NO_EDIT = object()


@dataclass
class _Outcome:
    """What one phase activation produced; applied by the driver after gather."""

    phase_id: str
    execution: PhaseExecution
    writes: List[Tuple[str, Any]] = field(default_factory=list)
    targets: List[str] = field(default_factory=list)
    gate_result: Optional[QualityGateResult] = None
    blocked: bool = False
    events: List[Tuple[EventType, Dict[str, Any]]] = field(default_factory=list)
    error: Optional[PhaseflowError] = None


class _Run:
    """In-process state of one instance being driven."""

    def __init__(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        index: GraphIndex,
        checkpoint_seq: int = 0,
    ) -> None:
        self.instance = instance
        self.definition = definition
        self.index = index
        self.checkpoint_seq = checkpoint_seq
        self.lock = asyncio.Lock()
        self.changed = asyncio.Condition()
        self.driver: Optional[asyncio.Task] = None
        self.idle = True
        self.cancelled = False
        self.tasks: Dict[str, asyncio.Task] = {}
        self.inputs: Dict[str, asyncio.Queue] = {}

    @property
    def id(self) -> str:
        return self.instance.id


class Orchestrator:
    """Drives workflow instances: dispatch, routing, persistence and events.

    Each instance is driven by one asyncio task running supersteps: every
    phase of the active set runs concurrently, results are applied in
    frontier order, and each applied result is committed atomically together
    with a checkpoint before its events are emitted.
    """

    # Phase kind -> name of the coroutine method that activates it.
    _HANDLERS: Dict[PhaseKind, str] = {
        PhaseKind.PLANNING: "_run_work",
        PhaseKind.WRITING: "_run_work",
        PhaseKind.GATE: "_run_gate",
        PhaseKind.LOOP: "_run_loop",
        PhaseKind.USER_APPROVAL: "_run_approval",
        PhaseKind.SUB_WORKFLOW: "_run_sub_workflow",
        PhaseKind.PARALLEL_SPLIT: "_run_split",
        PhaseKind.PARALLEL_JOIN: "_run_join",
    }

    def __init__(
        self,
        runner: PhaseRunner,
        store: StateStore | None = None,
        events: EventEmitter | None = None,
        config: PhaseflowConfig | None = None,
    ) -> None:
        self._config = config or load_config()
        self._runner = runner
        self._store = store or get_repository(config=self._config)
        self._events = events or EventEmitter(
            queue_size=self._config.events.queue_size,
            transport=get_transport(config=self._config),
        )
        self._runs: Dict[str, _Run] = {}
        self._indexes: Dict[Tuple[str, str], GraphIndex] = {}
        missing = set(PhaseKind) - set(self._HANDLERS)
        if missing:
            names = ", ".join(sorted(kind.value for kind in missing))
            raise TypeError(f"No dispatch handler for phase kinds: {names}")
        self._handlers: Dict[
            PhaseKind, Callable[[_Run, Phase, _Outcome, Dict[str, Any]], Awaitable[None]]
        ] = {kind: getattr(self, name) for kind, name in self._HANDLERS.items()}

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def events(self) -> EventEmitter:
        return self._events

    # ------------------------------------------------------------------
    # Control operations
    async def register(self, definition: WorkflowDefinition) -> GraphIndex:
        """Validate and store a definition."""
        index = validate(definition)
        await self._store.save_definition(definition)
        self._indexes[(definition.id, definition.version)] = index
        return index

    async def start(
        self,
        workflow_id: str,
        inputs: Optional[Dict[str, Any]] = None,
        version: Optional[str] = None,
    ) -> WorkflowInstance:
        """Create an instance and begin driving it in the background."""
        definition = await self._load_definition(workflow_id, version)
        await self._check_dependencies(definition)
        run = await self._launch(definition, inputs or {})
        return self._snapshot(run)

    async def run(
        self,
        workflow_id: str,
        inputs: Optional[Dict[str, Any]] = None,
        version: Optional[str] = None,
    ) -> WorkflowInstance:
        """Start an instance and wait until it is paused or terminal."""
        instance = await self.start(workflow_id, inputs=inputs, version=version)
        return await self.wait(instance.id)

    async def wait(self, instance_id: str) -> WorkflowInstance:
        """Wait until the instance has nothing left to run; return its state."""
        run = self._runs.get(instance_id)
        if run is None:
            instance = await self._store.get_instance(instance_id)
            if instance is None:
                raise InstanceNotFoundError(f"Instance {instance_id} not found")
            return instance
        async with run.changed:
            await run.changed.wait_for(lambda: run.idle)
        return self._snapshot(run)

    async def resume(self, instance_id: str) -> WorkflowInstance:
        """Restore an instance from its latest checkpoint and continue it."""
        run = self._runs.get(instance_id)
        if run is not None and not run.idle:
            return self._snapshot(run)
        if run is None:
            run = await self._attach(instance_id)

        async with run.lock:
            instance = run.instance
            if instance.is_terminal:
                self._release(run)
                return self._snapshot(run)

            checkpoint = await self._store.latest_checkpoint(instance_id)
            if checkpoint is not None:
                instance.context.writes = [
                    w for w in instance.context.writes if w.sequence <= checkpoint.context_sequence
                ]
                instance.active_phases = list(checkpoint.active_phases)
                instance.blocked_phases = list(checkpoint.blocked_phases)

            stale = await self._interrupted(
                run, "Interrupted before completion", (PhaseStatus.RUNNING,)
            )
            if stale:
                await self._commit(run, executions=stale)

            logger.info(
                f"Resuming instance {instance_id} with active={instance.active_phases} "
                f"blocked={instance.blocked_phases}"
            )
            if instance.active_phases:
                self._ensure_driver(run)
            return self._snapshot(run)

    async def approve(
        self, instance_id: str, phase_id: str, edited_output: Any = _NO_EDIT
    ) -> WorkflowInstance:
        """Complete a blocked approval, optionally replacing its output."""
        run = await self._get_run(instance_id)
        async with run.lock:
            execution = await self._blocked_execution(run, phase_id)
            instance = run.instance
            phase = run.index.phase(phase_id)

            if edited_output is not _NO_EDIT:
                execution.output = copy.deepcopy(edited_output)
                instance.context.append(f"phases.{phase_id}", edited_output, phase_id)
                result = execution.output
            else:
                result = self._project_output(phase, execution.output)
            execution.status = PhaseStatus.COMPLETE
            execution.completed_at = utcnow()
            instance.blocked_phases.remove(phase_id)

            try:
                targets = self._follow(
                    run, phase, run.index.edges_from(phase_id), instance.context.snapshot(), result
                )
            except ExecutionError as e:
                execution.status = PhaseStatus.FAILED
                execution.error = str(e)
                await self._fail(run, e, executions=[execution], phase_id=phase_id)
                await self._notify(run)
                self._release(run)
                return self._snapshot(run)

            frontier = list(instance.active_phases)
            join_rows, events = self._route(run, phase_id, targets, frontier)
            instance.active_phases = frontier
            if instance.status is InstanceStatus.PAUSED:
                instance.transition(InstanceStatus.RUNNING)
            await self._commit(run, phase_id=phase_id, executions=[execution, *join_rows])
            logger.info(f"Phase {phase_id} approved for instance {instance_id}")
            await self._emit(
                run,
                EventType.PHASE_COMPLETED,
                phase_id,
                {"approved": True, "edited": edited_output is not _NO_EDIT},
            )
            for event_type, event_phase, payload in events:
                await self._emit(run, event_type, event_phase, payload)
            self._ensure_driver(run)
            await self._notify(run)
            return self._snapshot(run)

    async def reject(self, instance_id: str, phase_id: str, reason: str) -> WorkflowInstance:
        """Fail a blocked approval and with it the instance."""
        run = await self._get_run(instance_id)
        async with run.lock:
            execution = await self._blocked_execution(run, phase_id)
            execution.status = PhaseStatus.FAILED
            execution.error = reason
            execution.completed_at = utcnow()
            run.instance.blocked_phases.remove(phase_id)
            error = ApprovalRejectedError(
                f"Phase {phase_id} was rejected: {reason}",
                instance_id=instance_id,
                phase_id=phase_id,
            )
            await self._fail(run, error, executions=[execution], phase_id=phase_id)
            await self._notify(run)
            self._release(run)
            return self._snapshot(run)

    async def cancel(self, instance_id: str) -> WorkflowInstance:
        """Cancel in-flight phases and nested instances; mark it cancelled."""
        run = self._runs.get(instance_id) or await self._attach(instance_id)
        if run.instance.is_terminal:
            self._release(run)
            return self._snapshot(run)

        run.cancelled = True
        for task in list(run.tasks.values()):
            task.cancel()
        driver = run.driver
        if driver is not None and driver is not asyncio.current_task() and not driver.done():
            await asyncio.gather(driver, return_exceptions=True)

        for child in await self._store.list_instances(parent_instance_id=instance_id):
            if not child.is_terminal:
                await self.cancel(child.id)

        async with run.lock:
            instance = run.instance
            if instance.is_terminal:
                self._release(run)
                return self._snapshot(run)
            interrupted = await self._interrupted(run, "Cancelled")
            instance.transition(InstanceStatus.CANCELLED)
            await self._commit(run, executions=interrupted)
            await self._store.release_locks(instance_id)
            logger.info(f"Instance {instance_id} cancelled")
            await self._emit(run, EventType.INSTANCE_CANCELLED)
            run.idle = True
            await self._notify(run)
            self._release(run)
            return self._snapshot(run)

    async def send_input(
        self, instance_id: str, text: str, phase_id: Optional[str] = None
    ) -> str:
        """Forward ``text`` to the interactive runner of an active phase.

        Returns the id of the phase that received the input.
        """
        run = self._runs.get(instance_id)
        queues = run.inputs if run is not None else {}
        if phase_id is None:
            if len(queues) != 1:
                raise ExecutionError(
                    f"Expected exactly one running phase to receive input, found {len(queues)}",
                    instance_id=instance_id,
                )
            phase_id = next(iter(queues))
        queue = queues.get(phase_id)
        if queue is None:
            raise ExecutionError(
                f"Phase {phase_id} is not running", instance_id=instance_id, phase_id=phase_id
            )
        await queue.put(text)
        return phase_id

    async def aclose(self) -> None:
        """Stop drivers owned by this orchestrator and close the event emitter."""
        drivers = [r.driver for r in self._runs.values() if r.driver is not None]
        for run in self._runs.values():
            for task in run.tasks.values():
                task.cancel()
        for driver in drivers:
            driver.cancel()
        await asyncio.gather(*drivers, return_exceptions=True)
        await self._runner.aclose()
        await self._events.aclose()

    # ------------------------------------------------------------------
    # Instance bookkeeping
    async def _load_definition(
        self, workflow_id: str, version: Optional[str] = None
    ) -> WorkflowDefinition:
        definition = await self._store.get_definition(workflow_id, version)
        if definition is None:
            label = f"{workflow_id}@{version}" if version else workflow_id
            raise DefinitionNotFoundError(f"Workflow definition {label} not found")
        return definition

    def _index(self, definition: WorkflowDefinition) -> GraphIndex:
        key = (definition.id, definition.version)
        index = self._indexes.get(key)
        if index is None or index.definition != definition:
            index = validate(definition)
            self._indexes[key] = index
        return index

    async def _check_dependencies(self, definition: WorkflowDefinition) -> None:
        """Ensure every nested workflow is registered, transitively."""
        seen = {definition.id}
        pending = [definition]
        while pending:
            current = pending.pop()
            refs: List[Tuple[str, Optional[str]]] = [
                (ref, None) for ref in current.dependencies.sub_workflows
            ]
            refs += [
                (p.sub_workflow_id, p.sub_workflow_version)
                for p in current.phases
                if p.kind is PhaseKind.SUB_WORKFLOW and p.sub_workflow_id
            ]
            missing = []
            for ref, version in refs:
                child = await self._store.get_definition(ref, version)
                if child is None:
                    missing.append(f"{ref}@{version}" if version else ref)
                elif child.id not in seen:
                    seen.add(child.id)
                    self._index(child)
                    pending.append(child)
            if missing:
                raise MissingDependencyError(current.id, missing)

    async def _launch(
        self,
        definition: WorkflowDefinition,
        inputs: Dict[str, Any],
        parent_instance_id: Optional[str] = None,
        parent_phase_id: Optional[str] = None,
    ) -> _Run:
        index = self._index(definition)
        instance = WorkflowInstance(
            workflow_id=definition.id,
            workflow_version=definition.version,
            active_phases=list(index.start),
            parent_instance_id=parent_instance_id,
            parent_phase_id=parent_phase_id,
        )
        instance.context.append("inputs", inputs)
        instance = await self._store.create_instance(instance)
        await self._store.lock_version(definition.id, definition.version, instance.id)

        run = _Run(instance, definition, index)
        self._runs[instance.id] = run
        logger.info(
            f"Started instance {instance.id} of {definition.id}@{definition.version}"
            + (f" (parent {parent_instance_id})" if parent_instance_id else "")
        )
        async with run.lock:
            self._ensure_driver(run)
        return run

    async def _attach(self, instance_id: str) -> _Run:
        """Load a persisted instance into this orchestrator without driving it."""
        instance = await self._store.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")
        definition = await self._load_definition(instance.workflow_id, instance.workflow_version)
        checkpoint = await self._store.latest_checkpoint(instance_id)
        run = _Run(
            instance,
            definition,
            self._index(definition),
            checkpoint_seq=checkpoint.sequence if checkpoint else 0,
        )
        self._runs[instance_id] = run
        return run

    async def _get_run(self, instance_id: str) -> _Run:
        return self._runs.get(instance_id) or await self._attach(instance_id)

    async def _interrupted(
        self,
        run: _Run,
        reason: str,
        statuses: Tuple[PhaseStatus, ...] = (
            PhaseStatus.PENDING,
            PhaseStatus.RUNNING,
            PhaseStatus.BLOCKED,
        ),
        exclude: Optional[set] = None,
    ) -> List[PhaseExecution]:
        """Return unfinished execution rows marked failed with ``reason``."""
        return [
            e.model_copy(
                update={"status": PhaseStatus.FAILED, "error": reason, "completed_at": utcnow()}
            )
            for e in await self._store.list_phase_executions(run.id)
            if e.status in statuses and e.id not in (exclude or set())
        ]

    async def _blocked_execution(self, run: _Run, phase_id: str) -> PhaseExecution:
        if run.instance.is_terminal:
            self._release(run)
            raise ExecutionError(
                f"Instance is {run.instance.status.value}",
                instance_id=run.id,
                phase_id=phase_id,
            )
        if phase_id not in run.instance.blocked_phases:
            raise ExecutionError(
                f"Phase {phase_id} is not awaiting approval",
                instance_id=run.id,
                phase_id=phase_id,
            )
        for execution in reversed(await self._store.list_phase_executions(run.id, phase_id)):
            if execution.status is PhaseStatus.BLOCKED:
                return execution
        raise ExecutionError(
            f"No blocked execution recorded for phase {phase_id}",
            instance_id=run.id,
            phase_id=phase_id,
        )

    def _ensure_driver(self, run: _Run) -> None:
        """Spawn a driver unless one is already progressing. Call with ``run.lock`` held."""
        if run.idle or run.driver is None:
            run.idle = False
            run.driver = asyncio.create_task(self._drive(run))

    @staticmethod
    def _snapshot(run: _Run) -> WorkflowInstance:
        return run.instance.model_copy(deep=True)

    async def _notify(self, run: _Run) -> None:
        async with run.changed:
            run.changed.notify_all()

    def _release(self, run: _Run) -> None:
        """Forget a finished run; later calls reload it from the store."""
        if run.instance.is_terminal and self._runs.get(run.id) is run:
            del self._runs[run.id]
            self._events.forget(run.id)

    async def _emit(
        self,
        run: _Run,
        event_type: EventType,
        phase_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._events.emit(event_type, run.id, phase_id=phase_id, payload=payload)

    async def _commit(
        self,
        run: _Run,
        phase_id: Optional[str] = None,
        executions: List[PhaseExecution] | None = None,
        gate_results: List[QualityGateResult] | None = None,
        force: bool = False,
    ) -> None:
        """Atomically persist the instance, execution rows and a new checkpoint."""
        instance = run.instance
        run.checkpoint_seq += 1
        transition = Transition(
            instance=instance,
            expected_revision=None if force else instance.revision,
            executions=executions or [],
            gate_results=gate_results or [],
            checkpoint=Checkpoint(
                instance_id=instance.id,
                phase_id=phase_id,
                sequence=run.checkpoint_seq,
                status=instance.status,
                context=instance.context.snapshot(),
                context_sequence=instance.context.last_sequence,
                active_phases=list(instance.active_phases),
                blocked_phases=list(instance.blocked_phases),
            ),
        )
        try:
            revision = await self._store.commit_transition(transition)
        except ConcurrencyConflictError as e:
            logger.warning(f"{e}; re-reading instance and retrying once")
            current = await self._store.get_instance(instance.id)
            if current is None:
                raise InstanceNotFoundError(f"Instance {instance.id} not found") from e
            if current.is_terminal:
                raise
            transition.expected_revision = current.revision
            revision = await self._store.commit_transition(transition)
        if revision is not None:
            instance.revision = revision

    # ------------------------------------------------------------------
    # Driver
    async def _drive(self, run: _Run) -> None:
        try:
            while True:
                async with run.lock:
                    if run.instance.is_terminal or run.cancelled:
                        return
                    frontier = list(run.instance.active_phases)
                    if not frontier:
                        await self._settle(run)
                        return
                    if run.instance.status is not InstanceStatus.RUNNING:
                        run.instance.transition(InstanceStatus.RUNNING)
                        await self._commit(run)
                if not await self._superstep(run, frontier):
                    return
        except asyncio.CancelledError:
            raise
        except ConcurrencyConflictError as e:
            async with run.lock:
                await self._fail(run, e, force=True)
        except Exception as e:
            logger.error(f"Driver for instance {run.id} crashed: {e!r}")
            async with run.lock:
                if not run.instance.is_terminal:
                    await self._fail(run, e)
        finally:
            if run.driver is asyncio.current_task():
                run.driver = None
                run.idle = True
            await self._notify(run)
            self._release(run)

    async def _superstep(self, run: _Run, frontier: List[str]) -> bool:
        """Run one activation of ``frontier``; return whether to continue."""
        snapshot = run.instance.context.snapshot()
        run.tasks = {
            phase_id: asyncio.create_task(self._dispatch(run, phase_id, snapshot))
            for phase_id in frontier
        }
        results = await asyncio.gather(*run.tasks.values(), return_exceptions=True)
        run.tasks = {}

        async with run.lock:
            if run.cancelled or run.instance.is_terminal:
                return False
            for result in results:
                if isinstance(result, BaseException):
                    raise result

            instance = run.instance
            # phases added by approve() while this superstep was running
            next_frontier = [p for p in instance.active_phases if p not in frontier]
            failures: List[_Outcome] = []
            for position, outcome in enumerate(results):
                for key, value in outcome.writes:
                    instance.context.append(key, value, outcome.phase_id)
                if outcome.error is not None:
                    failures.append(outcome)
                    continue

                join_rows: List[PhaseExecution] = []
                routed: List[Tuple[EventType, str, Dict[str, Any]]] = []
                if outcome.blocked:
                    if outcome.phase_id not in instance.blocked_phases:
                        instance.blocked_phases.append(outcome.phase_id)
                else:
                    join_rows, routed = self._route(
                        run, outcome.phase_id, outcome.targets, next_frontier
                    )
                remaining = frontier[position + 1 :]
                instance.active_phases = remaining + [
                    p for p in next_frontier if p not in remaining
                ]
                await self._commit(
                    run,
                    phase_id=outcome.phase_id,
                    executions=[outcome.execution, *join_rows],
                    gate_results=[outcome.gate_result] if outcome.gate_result else [],
                )
                for event_type, payload in outcome.events:
                    await self._emit(run, event_type, outcome.phase_id, payload)
                for event_type, phase_id, payload in routed:
                    await self._emit(run, event_type, phase_id, payload)

            if failures:
                first = failures[0]
                await self._fail(
                    run,
                    first.error,
                    executions=[f.execution for f in failures],
                    gate_results=[f.gate_result for f in failures if f.gate_result],
                    phase_id=first.phase_id,
                )
                return False
            instance.active_phases = next_frontier
        return True

    def _route(
        self,
        run: _Run,
        source_id: str,
        targets: List[str],
        frontier: List[str],
    ) -> Tuple[List[PhaseExecution], List[Tuple[EventType, str, Dict[str, Any]]]]:
        """Add ``targets`` to ``frontier`` in place, holding joins until complete.

        Returns new blocked join rows and the events to emit once they are
        committed.
        """
        instance = run.instance
        rows: List[PhaseExecution] = []
        events: List[Tuple[EventType, str, Dict[str, Any]]] = []
        for target in targets:
            phase = run.index.phase(target)
            if phase.kind is not PhaseKind.PARALLEL_JOIN:
                if target not in frontier:
                    frontier.append(target)
                continue

            state = instance.context.get(f"joins.{target}") or {
                "generation": 1,
                "arrivals": [],
                "execution_id": None,
            }
            if source_id in state["arrivals"]:
                logger.debug(f"Ignoring repeated arrival of {source_id} at join {target}")
                continue
            state["arrivals"].append(source_id)
            if state["execution_id"] is None:
                row = PhaseExecution(
                    instance_id=instance.id,
                    phase_id=target,
                    status=PhaseStatus.BLOCKED,
                    iteration=state["generation"],
                    started_at=utcnow(),
                )
                state["execution_id"] = row.id
                rows.append(row)
                events.append(
                    (EventType.PHASE_STARTED, target, {"kind": phase.kind.value, "blocked": True})
                )
            instance.context.append(f"joins.{target}", state, source_id)

            arity = run.index.join_arity[target]
            if len(state["arrivals"]) >= arity and target not in frontier:
                frontier.append(target)
        return rows, events

    async def _settle(self, run: _Run) -> None:
        """Handle an empty frontier. Called with ``run.lock`` held."""
        instance = run.instance
        if instance.blocked_phases:
            if instance.status is not InstanceStatus.PAUSED:
                instance.transition(InstanceStatus.PAUSED)
                await self._commit(run)
                logger.info(f"Instance {run.id} paused on {instance.blocked_phases}")
                await self._emit(
                    run, EventType.INSTANCE_PAUSED, payload={"blocked": instance.blocked_phases}
                )
            run.idle = True
            return

        waiting = [
            join_id
            for join_id, state in instance.context.snapshot().get("joins", {}).items()
            if state.get("arrivals")
        ]
        if waiting:
            error = DeadEndError(
                f"Joins {waiting} can no longer receive their remaining branches",
                instance_id=run.id,
                phase_id=waiting[0],
            )
            await self._fail(run, error, phase_id=waiting[0])
            return

        instance.transition(InstanceStatus.COMPLETE)
        await self._commit(run)
        await self._store.release_locks(run.id)
        logger.info(f"Instance {run.id} complete")
        await self._emit(run, EventType.INSTANCE_COMPLETED)
        run.idle = True

    async def _fail(
        self,
        run: _Run,
        error: BaseException,
        executions: List[PhaseExecution] | None = None,
        gate_results: List[QualityGateResult] | None = None,
        phase_id: Optional[str] = None,
        force: bool = False,
    ) -> None:
        """Record a fatal error. Called with ``run.lock`` held."""
        if force:
            current = await self._store.get_instance(run.id)
            if current is not None and current.is_terminal:
                logger.warning(f"Instance {run.id} was finished elsewhere as {current.status.value}")
                run.instance = current
                run.idle = True
                return

        instance = run.instance
        for task in list(run.tasks.values()):
            if task is not asyncio.current_task():
                task.cancel()
        executions = list(executions or [])
        interrupted = await self._interrupted(
            run, "Instance failed", exclude={e.id for e in executions}
        )
        instance.error = str(error)
        instance.transition(InstanceStatus.FAILED)
        await self._commit(
            run,
            phase_id=phase_id,
            executions=executions + interrupted,
            gate_results=gate_results,
            force=force,
        )
        await self._store.release_locks(run.id)
        logger.error(f"Instance {run.id} failed: {error}")

        for execution in executions:
            await self._emit(
                run, EventType.PHASE_FAILED, execution.phase_id, {"error": execution.error}
            )
        await self._emit(
            run,
            EventType.INSTANCE_FAILED,
            phase_id,
            {"error": str(error), "error_type": type(error).__name__},
        )
        run.idle = True

    # ------------------------------------------------------------------
    # Dispatch
    async def _dispatch(self, run: _Run, phase_id: str, snapshot: Dict[str, Any]) -> _Outcome:
        phase = run.index.phase(phase_id)
        if phase.kind is PhaseKind.PARALLEL_JOIN:
            execution = await self._join_execution(run, phase, snapshot)
        else:
            previous = await self._store.list_phase_executions(run.id, phase_id)
            execution = PhaseExecution(
                instance_id=run.id,
                phase_id=phase_id,
                status=PhaseStatus.RUNNING,
                iteration=len(previous) + 1,
                started_at=utcnow(),
            )
            await self._store.start_phase(execution)
            await self._emit(
                run,
                EventType.PHASE_STARTED,
                phase_id,
                {"kind": phase.kind.value, "execution_id": execution.id},
            )

        outcome = _Outcome(phase_id=phase_id, execution=execution)
        try:
            await self._handlers[phase.kind](run, phase, outcome, snapshot)
        except PhaseflowError as e:
            logger.debug(f"Phase {phase_id} of instance {run.id} raised {e!r}")
            outcome.error = e
            if isinstance(e, ExecutionError) and e.instance_id is None:
                e.instance_id, e.phase_id = run.id, phase_id
            execution.status = PhaseStatus.FAILED
            execution.error = str(e)
            execution.completed_at = utcnow()
            return outcome

        if not outcome.blocked:
            execution.status = PhaseStatus.COMPLETE
            execution.completed_at = utcnow()
            outcome.events.append(
                (
                    EventType.PHASE_COMPLETED,
                    {"execution_id": execution.id, "targets": list(outcome.targets)},
                )
            )
        return outcome

    async def _run_work(
        self, run: _Run, phase: Phase, outcome: _Outcome, snapshot: Dict[str, Any]
    ) -> None:
        outcome.execution.output = await self._invoke_with_retry(
            run, phase, outcome.execution, snapshot
        )
        output = self._project_output(phase, outcome.execution.output)
        outcome.writes.append((f"phases.{phase.id}", output))
        if phase.requires_approval:
            self._block_for_approval(outcome, output)
            return
        outcome.targets = self._follow(
            run, phase, run.index.edges_from(phase.id), _overlay(snapshot, outcome.writes), output
        )

    async def _run_gate(
        self, run: _Run, phase: Phase, outcome: _Outcome, snapshot: Dict[str, Any]
    ) -> None:
        output = await self._invoke_with_retry(run, phase, outcome.execution, snapshot)
        if not isinstance(output, Mapping):
            raise GateOutputError(
                f"Gate {phase.id} needs structured output, got {type(output).__name__}"
            )
        output = dict(output)
        outcome.execution.output = output
        outcome.writes.append((f"phases.{phase.id}", output))

        context = _overlay(snapshot, outcome.writes)
        if phase.condition:
            passed = evaluate(phase.condition, {**context, **output})
        elif "verdict" in output:
            passed = str(output["verdict"]).strip().lower() == GATE_PASS_LABEL
        else:
            raise GateOutputError(
                f"Gate {phase.id} has no condition and its output carries no verdict"
            )
        verdict = GateVerdict.PASS if passed else GateVerdict.FAIL
        score = output.get("score")
        score = float(score) if isinstance(score, (int, float)) and not isinstance(score, bool) else None

        outcome.gate_result = QualityGateResult(
            instance_id=run.id,
            phase_id=phase.id,
            phase_execution_id=outcome.execution.id,
            criteria=phase.condition,
            result=verdict,
            score=score,
            details=output,
        )
        outcome.writes.append((f"gates.{phase.id}", {"verdict": verdict.value, "score": score}))
        outcome.events.append(
            (EventType.GATE_EVALUATED, {"verdict": verdict.value, "score": score})
        )
        logger.info(f"Gate {phase.id} of instance {run.id}: {verdict.value} (score={score})")

        edges = run.index.edges_from(phase.id)
        if passed:
            matching = [e for e in edges if e.normalized_label in (GATE_PASS_LABEL, None)]
        else:
            matching = [e for e in edges if e.normalized_label == GATE_FAIL_LABEL]
        if not matching and (edges or not passed):
            raise UnhandledGateFailure(
                f"Gate {phase.id} verdict '{verdict.value}' has no matching edge",
                instance_id=run.id,
                phase_id=phase.id,
            )
        outcome.targets = self._follow(
            run, phase, matching, _overlay(snapshot, outcome.writes), output
        )

    async def _run_loop(
        self, run: _Run, phase: Phase, outcome: _Outcome, snapshot: Dict[str, Any]
    ) -> None:
        counter = resolve_path(f"loops.{phase.id}.iteration", snapshot)
        counter = counter if isinstance(counter, int) else 0
        cap = phase.max_iterations or self._config.loops.max_iterations
        items = self._loop_items(phase, snapshot) if phase.collection else None
        edges = run.index.edges_from(phase.id)

        if (phase.condition and evaluate(phase.condition, snapshot)) or (
            items is not None and counter >= len(items)
        ):
            label = LOOP_EXIT_LABEL
            chosen = [e for e in edges if e.normalized_label in (LOOP_EXIT_LABEL, None)]
            state = {"iteration": 0, "completed_iterations": counter, "outcome": label}
        elif counter < cap:
            label = LOOP_BODY_LABEL
            counter += 1
            chosen = [e for e in edges if e.normalized_label == LOOP_BODY_LABEL]
            state = {"iteration": counter}
            if items is not None:
                state["index"] = counter - 1
                state["item"] = items[counter - 1]
        else:
            label = LOOP_EXHAUSTED_LABEL
            chosen = [e for e in edges if e.normalized_label == LOOP_EXHAUSTED_LABEL]
            if not chosen:
                raise LoopExhaustedError(
                    f"Loop {phase.id} reached {cap} iterations",
                    instance_id=run.id,
                    phase_id=phase.id,
                )
            state = {"iteration": 0, "completed_iterations": counter, "outcome": label}

        outcome.execution.iteration = max(counter, 1)
        outcome.execution.output = {"outcome": label, "iteration": counter}
        outcome.writes.append((f"loops.{phase.id}", state))
        logger.debug(f"Loop {phase.id} of instance {run.id}: {label} at iteration {counter}")
        outcome.targets = self._follow(run, phase, chosen, _overlay(snapshot, outcome.writes), None)

    @staticmethod
    def _loop_items(phase: Phase, snapshot: Dict[str, Any]) -> List[Any]:
        items = resolve_path(phase.collection, snapshot)
        if not isinstance(items, (list, tuple)):
            found = "nothing" if items is ABSENT else type(items).__name__
            raise ExecutionError(
                f"Loop {phase.id} collection {phase.collection} must be a list, found {found}"
            )
        return list(items)

    async def _run_approval(
        self, run: _Run, phase: Phase, outcome: _Outcome, snapshot: Dict[str, Any]
    ) -> None:
        output = None
        if phase.runner_spec:
            output = await self._invoke_with_retry(run, phase, outcome.execution, snapshot)
            outcome.writes.append((f"phases.{phase.id}", output))
        outcome.execution.output = output
        self._block_for_approval(outcome, output)

    async def _run_sub_workflow(
        self, run: _Run, phase: Phase, outcome: _Outcome, snapshot: Dict[str, Any]
    ) -> None:
        definition = await self._load_definition(phase.sub_workflow_id, phase.sub_workflow_version)
        if phase.context_projection:
            inputs = {}
            for key, path in phase.context_projection.items():
                value = resolve_path(path, snapshot)
                if value is not ABSENT:
                    inputs[key] = copy.deepcopy(value)
        else:
            inputs = copy.deepcopy(snapshot.get("inputs") or {})

        child = await self._launch(
            definition, inputs, parent_instance_id=run.id, parent_phase_id=phase.id
        )
        outcome.execution.output = {"child_instance_id": child.id}
        await self._watch_child(child, outcome.execution)

        result = child.instance
        if result.status is not InstanceStatus.COMPLETE:
            raise SubWorkflowFailedError(
                f"Sub-workflow {definition.id} ended {result.status.value}: {result.error}",
                instance_id=run.id,
                phase_id=phase.id,
                child_instance_id=child.id,
            )
        outcome.execution.output = result.context.snapshot().get("phases", {})
        output = self._project_output(phase, outcome.execution.output)
        outcome.writes.append((f"phases.{phase.id}", output))
        outcome.targets = self._follow(
            run, phase, run.index.edges_from(phase.id), _overlay(snapshot, outcome.writes), output
        )

    async def _watch_child(self, child: _Run, execution: PhaseExecution) -> None:
        """Wait for a nested instance to terminate, blocking the phase while it is paused."""
        async with child.changed:
            while not child.instance.is_terminal:
                if (
                    child.instance.status is InstanceStatus.PAUSED
                    and execution.status is not PhaseStatus.BLOCKED
                ):
                    execution.status = PhaseStatus.BLOCKED
                    await self._store.commit_transition(Transition(executions=[execution]))
                    logger.info(
                        f"Phase {execution.phase_id} blocked on paused sub-workflow {child.id}"
                    )
                await child.changed.wait()

    async def _run_split(
        self, run: _Run, phase: Phase, outcome: _Outcome, snapshot: Dict[str, Any]
    ) -> None:
        outcome.targets = [e.target for e in run.index.edges_from(phase.id)]
        outcome.execution.output = {"branches": list(outcome.targets)}

    async def _run_join(
        self, run: _Run, phase: Phase, outcome: _Outcome, snapshot: Dict[str, Any]
    ) -> None:
        state = resolve_path(f"joins.{phase.id}", snapshot)
        output = {"arrivals": list(state["arrivals"]), "generation": state["generation"]}
        outcome.execution.output = output
        outcome.writes.append(
            (
                f"joins.{phase.id}",
                {"generation": state["generation"] + 1, "arrivals": [], "execution_id": None},
            )
        )
        outcome.targets = self._follow(
            run, phase, run.index.edges_from(phase.id), _overlay(snapshot, outcome.writes), output
        )

    async def _join_execution(
        self, run: _Run, phase: Phase, snapshot: Dict[str, Any]
    ) -> PhaseExecution:
        state = resolve_path(f"joins.{phase.id}", snapshot)
        execution = None
        if isinstance(state, dict) and state.get("execution_id"):
            execution = await self._store.get_phase_execution(state["execution_id"])
        if execution is None:
            raise ExecutionError(
                f"Join {phase.id} activated without recorded arrivals",
                instance_id=run.id,
                phase_id=phase.id,
            )
        execution.status = PhaseStatus.RUNNING
        return execution

    @staticmethod
    def _project_output(phase: Phase, output: Any) -> Any:
        """Apply the phase's output mapping to a raw result.

        Paths missing from the result are left out of the projection.
        """
        if not phase.output_mapping:
            return output
        projected: Dict[str, Any] = {}
        for key, path in phase.output_mapping.items():
            value = resolve_path(path, output)
            if value is ABSENT:
                logger.warning(f"Output of phase {phase.id} has nothing at {path} for {key}")
                continue
            projected[key] = copy.deepcopy(value)
        return projected

    @staticmethod
    def _block_for_approval(outcome: _Outcome, output: Any) -> None:
        outcome.blocked = True
        outcome.execution.status = PhaseStatus.BLOCKED
        outcome.events.append(
            (
                EventType.APPROVAL_REQUIRED,
                {"execution_id": outcome.execution.id, "output": output},
            )
        )

    def _follow(
        self,
        run: _Run,
        phase: Phase,
        edges: List[Edge],
        context: Dict[str, Any],
        result: Any,
    ) -> List[str]:
        """Return the targets of ``edges`` that fire, in order, without duplicates."""
        if not edges:
            return []
        scope = {**context, "result": result}
        targets: List[str] = []
        for edge in edges:
            if edge.kind is EdgeKind.CONDITIONAL and not evaluate(edge.condition, scope):
                continue
            if edge.target not in targets:
                targets.append(edge.target)
        if not targets:
            raise DeadEndError(
                f"No outgoing edge of phase {phase.id} could be followed",
                instance_id=run.id,
                phase_id=phase.id,
            )
        return targets

    # ------------------------------------------------------------------
    # Runner invocation
    async def _invoke_with_retry(
        self,
        run: _Run,
        phase: Phase,
        execution: PhaseExecution,
        snapshot: Dict[str, Any],
    ) -> Any:
        retry = self._config.retry
        attempt = 0
        while True:
            attempt += 1
            execution.attempts = attempt
            try:
                return await self._invoke(run, phase, snapshot, attempt)
            except RunnerError as e:
                if not e.retryable or attempt >= retry.max_attempts:
                    raise
                logger.warning(
                    f"Phase {phase.id} attempt {attempt}/{retry.max_attempts} failed: {e}; retrying"
                )
                delay = await schedule_retry(
                    attempt,
                    base=retry.backoff_base,
                    jitter=retry.jitter,
                    max_delay=retry.max_delay,
                )
                logger.debug(f"Retrying phase {phase.id} after {delay:.2f}s")

    async def _invoke(
        self, run: _Run, phase: Phase, snapshot: Dict[str, Any], attempt: int
    ) -> Any:
        request = RunnerRequest(
            instance_id=run.id,
            phase_id=phase.id,
            kind=phase.kind,
            runner_spec=phase.runner_spec,
            context=copy.deepcopy(snapshot),
            attempt=attempt,
        )
        timeout = phase.timeout or self._config.runner.liveness_timeout
        run.inputs[phase.id] = request.inputs
        stream = self._runner.run(request)
        result: Optional[RunnerResult] = None
        try:
            while result is None:
                try:
                    item = await asyncio.wait_for(stream.__anext__(), timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as e:
                    raise RunnerError(
                        f"Runner for phase {phase.id} produced nothing for {timeout}s",
                        retryable=True,
                    ) from e
                if isinstance(item, ProgressChunk):
                    await self._emit(
                        run,
                        EventType.PHASE_PROGRESS,
                        phase.id,
                        {"text": item.text, "data": item.data},
                    )
                elif isinstance(item, RunnerResult):
                    result = item
        except (RunnerError, asyncio.CancelledError):
            raise
        except Exception as e:
            raise RunnerError(f"Runner for phase {phase.id} crashed: {e}", retryable=False) from e
        finally:
            run.inputs.pop(phase.id, None)
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if result is None:
            raise RunnerError(f"Runner for phase {phase.id} ended without a result")
        return result.output


def _overlay(snapshot: Dict[str, Any], writes: List[Tuple[str, Any]]) -> Dict[str, Any]:
    """Return a copy of ``snapshot`` with pending ``writes`` applied."""
    context = copy.deepcopy(snapshot)
    for key, value in writes:
        assign_path(context, key, value)
    return context
