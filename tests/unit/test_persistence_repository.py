import pytest

from phaseflow import persistence
from phaseflow.contracts import WorkflowDefinition
from phaseflow.errors import ConcurrencyConflictError, DefinitionNotFoundError, VersionLockedError
from phaseflow.persistence import (
    Checkpoint,
    GateVerdict,
    InMemoryStateStore,
    InstanceStatus,
    PhaseExecution,
    PhaseStatus,
    QualityGateResult,
    SQLiteStateStore,
    Transition,
    WorkflowInstance,
    get_repository,
)

from fixtures.workflows import gate_retry, linear


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        yield InMemoryStateStore()
        return
    store = SQLiteStateStore(tmp_path / "phaseflow.db")
    yield store
    store.close()


async def _new_instance(repo, definition: WorkflowDefinition) -> WorkflowInstance:
    await repo.save_definition(definition)
    instance = WorkflowInstance(
        workflow_id=definition.id,
        workflow_version=definition.version,
        active_phases=["1"],
    )
    instance.context.append("inputs", {"topic": "owls"})
    return await repo.create_instance(instance)


@pytest.mark.asyncio
async def test_definitions_latest_version(repo):
    await repo.save_definition(linear("article"))
    newer = linear("article").model_copy(update={"version": "1.10.0"})
    await repo.save_definition(newer)
    await repo.save_definition(linear("article").model_copy(update={"version": "1.2.0"}))

    latest = await repo.get_definition("article")
    assert latest.version == "1.10.0"
    assert (await repo.get_definition("article", "1.2.0")).version == "1.2.0"
    assert await repo.get_definition("missing") is None
    assert len(await repo.list_definitions()) == 3


@pytest.mark.asyncio
async def test_locked_version_cannot_be_mutated(repo):
    definition = gate_retry()
    instance = await _new_instance(repo, definition)
    await repo.lock_version(definition.id, definition.version, instance.id)

    # identical content is accepted
    await repo.save_definition(definition)

    changed = definition.model_copy(update={"name": "Renamed"})
    with pytest.raises(VersionLockedError) as excinfo:
        await repo.save_definition(changed)
    assert excinfo.value.instance_ids == [instance.id]
    with pytest.raises(VersionLockedError):
        await repo.delete_definition(definition.id, definition.version)

    await repo.release_locks(instance.id)
    assert await repo.list_locks(definition.id) == []
    assert len(await repo.list_locks(definition.id, active_only=False)) == 1
    await repo.save_definition(changed)
    assert (await repo.get_definition(definition.id, definition.version)).name == "Renamed"


@pytest.mark.asyncio
async def test_lock_version_is_idempotent_and_requires_definition(repo):
    definition = gate_retry()
    instance = await _new_instance(repo, definition)

    first = await repo.lock_version(definition.id, definition.version, instance.id)
    second = await repo.lock_version(definition.id, definition.version, instance.id)

    assert first.id == second.id
    with pytest.raises(DefinitionNotFoundError):
        await repo.lock_version("missing", "1.0.0", instance.id)


@pytest.mark.asyncio
async def test_commit_transition_detects_stale_revision(repo):
    instance = await _new_instance(repo, gate_retry())

    instance.transition(InstanceStatus.RUNNING)
    revision = await repo.commit_transition(Transition(instance=instance, expected_revision=0))
    assert revision == 1

    with pytest.raises(ConcurrencyConflictError) as excinfo:
        await repo.commit_transition(Transition(instance=instance, expected_revision=0))
    assert excinfo.value.actual == 1

    stored = await repo.get_instance(instance.id)
    assert stored.status is InstanceStatus.RUNNING
    assert stored.revision == 1
    assert stored.context.snapshot() == {"inputs": {"topic": "owls"}}


@pytest.mark.asyncio
async def test_conflicting_transition_writes_nothing(repo):
    instance = await _new_instance(repo, gate_retry())
    execution = PhaseExecution(instance_id=instance.id, phase_id="1")
    checkpoint = Checkpoint(instance_id=instance.id, sequence=1, status=instance.status)

    with pytest.raises(ConcurrencyConflictError):
        await repo.commit_transition(
            Transition(
                instance=instance,
                expected_revision=5,
                executions=[execution],
                checkpoint=checkpoint,
            )
        )

    assert await repo.list_phase_executions(instance.id) == []
    assert await repo.latest_checkpoint(instance.id) is None


@pytest.mark.asyncio
async def test_phase_completion_is_idempotent(repo):
    instance = await _new_instance(repo, gate_retry())
    execution = PhaseExecution(
        instance_id=instance.id, phase_id="2", status=PhaseStatus.RUNNING
    )
    await repo.start_phase(execution)
    await repo.start_phase(execution)

    execution.status = PhaseStatus.COMPLETE
    execution.output = {"score": 85}
    gate = QualityGateResult(
        instance_id=instance.id,
        phase_id="2",
        phase_execution_id=execution.id,
        result=GateVerdict.PASS,
        score=85,
    )
    await repo.complete_phase(execution, gate_result=gate)
    duplicate = gate.model_copy(update={"id": "other", "result": GateVerdict.FAIL})
    await repo.complete_phase(execution, gate_result=duplicate)

    executions = await repo.list_phase_executions(instance.id)
    assert len(executions) == 1
    assert executions[0].status is PhaseStatus.COMPLETE
    assert executions[0].output == {"score": 85}
    gates = await repo.list_gate_results(instance.id)
    assert [g.result for g in gates] == [GateVerdict.PASS]


@pytest.mark.asyncio
async def test_checkpoints_are_listed_by_sequence(repo):
    instance = await _new_instance(repo, gate_retry())
    for sequence in (2, 1, 3):
        await repo.commit_transition(
            Transition(
                checkpoint=Checkpoint(
                    instance_id=instance.id,
                    sequence=sequence,
                    status=InstanceStatus.RUNNING,
                    context={"seq": sequence},
                )
            )
        )

    checkpoints = await repo.list_checkpoints(instance.id)
    assert [c.sequence for c in checkpoints] == [1, 2, 3]
    assert (await repo.latest_checkpoint(instance.id)).context == {"seq": 3}


@pytest.mark.asyncio
async def test_list_instances_filters(repo):
    parent = await _new_instance(repo, gate_retry())
    child = WorkflowInstance(
        workflow_id="gate-retry",
        workflow_version="1.0.0",
        parent_instance_id=parent.id,
        parent_phase_id="2",
    )
    await repo.create_instance(child)
    child.transition(InstanceStatus.RUNNING)
    await repo.commit_transition(Transition(instance=child, expected_revision=0))

    children = await repo.list_instances(parent_instance_id=parent.id)
    assert [c.id for c in children] == [child.id]
    running = await repo.list_instances(status=InstanceStatus.RUNNING)
    assert [i.id for i in running] == [child.id]
    assert len(await repo.list_instances()) == 2


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.setattr(persistence, "_repository_instance", None)
    monkeypatch.delenv("PHASEFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    repo = get_repository(database_url=f"sqlite://{tmp_path / 'wf.db'}")
    assert isinstance(repo, SQLiteStateStore)
    repo.close()

    with pytest.raises(ValueError):
        get_repository(database_url="mysql://nope")
