import pytest

from phaseflow.errors import InvalidTransitionError
from phaseflow.persistence import ExecutionContext, InstanceStatus, WorkflowInstance


def test_snapshot_folds_dotted_writes():
    context = ExecutionContext()
    context.append("inputs", {"topic": "owls"})
    context.append("phases.draft", {"text": "v1"}, "draft")
    context.append("phases.review", {"score": 40}, "review")
    context.append("phases.draft", {"text": "v2"}, "draft")

    assert context.snapshot() == {
        "inputs": {"topic": "owls"},
        "phases": {"draft": {"text": "v2"}, "review": {"score": 40}},
    }
    assert context.last_sequence == 4


def test_snapshot_upto_reconstructs_earlier_state():
    context = ExecutionContext()
    context.append("phases.draft", {"text": "v1"})
    context.append("phases.draft", {"text": "v2"})

    assert context.snapshot(upto=1) == {"phases": {"draft": {"text": "v1"}}}


def test_writes_are_copied():
    value = {"items": [1]}
    context = ExecutionContext()
    context.append("data", value)
    value["items"].append(2)

    snapshot = context.snapshot()
    snapshot["data"]["items"].append(3)

    assert context.get("data") == {"items": [1]}


def test_instance_status_machine():
    instance = WorkflowInstance(workflow_id="wf", workflow_version="1.0.0")
    instance.transition(InstanceStatus.RUNNING)
    instance.transition(InstanceStatus.PAUSED)
    instance.transition(InstanceStatus.RUNNING)
    instance.transition(InstanceStatus.COMPLETE)

    assert instance.is_terminal
    assert instance.completed_at is not None
    with pytest.raises(InvalidTransitionError):
        instance.transition(InstanceStatus.RUNNING)


def test_pending_instance_cannot_pause():
    instance = WorkflowInstance(workflow_id="wf", workflow_version="1.0.0")

    with pytest.raises(InvalidTransitionError):
        instance.transition(InstanceStatus.PAUSED)


@pytest.fixture
def fold_calls(monkeypatch):
    from phaseflow.persistence import models

    calls = []
    original = models.assign_path

    def counting(target, key, value):
        calls.append(key)
        original(target, key, value)

    monkeypatch.setattr(models, "assign_path", counting)
    return calls


def test_repeated_snapshots_only_fold_new_writes(fold_calls):
    context = ExecutionContext()
    context.append("inputs", {"topic": "owls"})
    context.append("phases.outline", {"sections": 3}, "outline")
    context.append("phases.draft", {"text": "v1"}, "draft")

    first = context.snapshot()
    assert len(fold_calls) == 3

    assert context.snapshot() == first
    assert len(fold_calls) == 3

    context.append("phases.draft", {"text": "v2"}, "draft")
    assert context.snapshot()["phases"]["draft"] == {"text": "v2"}
    assert fold_calls[3:] == ["phases.draft"]


def test_cached_snapshot_is_not_shared_with_callers():
    context = ExecutionContext()
    context.append("phases.draft", {"text": "v1"})

    context.snapshot()["phases"]["draft"]["text"] = "edited"

    assert context.snapshot() == {"phases": {"draft": {"text": "v1"}}}


def test_truncated_log_rebuilds_snapshot():
    context = ExecutionContext()
    context.append("phases.draft", {"text": "v1"})
    context.append("phases.review", {"score": 40})
    context.append("phases.draft", {"text": "v2"})
    assert context.snapshot()["phases"]["draft"] == {"text": "v2"}

    context.writes = [w for w in context.writes if w.sequence <= 1]
    assert context.snapshot() == {"phases": {"draft": {"text": "v1"}}}

    context.append("phases.draft", {"text": "v3"})
    context.append("phases.final", True)
    assert context.snapshot() == {"phases": {"draft": {"text": "v3"}, "final": True}}


def test_copied_instance_keeps_an_independent_snapshot():
    instance = WorkflowInstance(workflow_id="wf", workflow_version="1.0.0")
    instance.context.append("phases.draft", {"text": "v1"})
    instance.context.snapshot()

    copied = instance.model_copy(deep=True)
    copied.context.append("phases.draft", {"text": "v2"})

    assert instance.context.snapshot() == {"phases": {"draft": {"text": "v1"}}}
    assert copied.context.snapshot() == {"phases": {"draft": {"text": "v2"}}}


def test_context_equality_ignores_fold_cache():
    folded = ExecutionContext()
    folded.append("phases.draft", {"text": "v1"})
    folded.snapshot()

    fresh = ExecutionContext.model_validate(folded.model_dump())

    assert fresh == folded
