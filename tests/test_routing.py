"""End-to-end routing scenarios: gates, loops, joins and conditional edges."""

import pytest

from phaseflow.config import LoopConfig
from phaseflow.contracts import EdgeKind, EventType, PhaseKind
from phaseflow.errors import LoopExhaustedError
from phaseflow.persistence import GateVerdict, InstanceStatus, PhaseStatus, SQLiteStateStore

from fixtures.runners import ScriptedRunner
from fixtures.workflows import bounded_loop, edge, gate_retry, phase, three_way_join, workflow


async def _statuses(store, instance_id, phase_id):
    return [e.status for e in await store.list_phase_executions(instance_id, phase_id)]


@pytest.mark.asyncio
async def test_gate_pass_routes_to_pass_edge(make_orchestrator, store):
    runner = ScriptedRunner({"2": [{"score": 85, "notes": "clear"}]})
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(gate_retry())

    instance = await orchestrator.run("gate-retry", inputs={"topic": "owls"})

    assert instance.status is InstanceStatus.COMPLETE
    assert [c.phase_id for c in runner.calls] == ["1", "2", "3"]
    gates = await store.list_gate_results(instance.id)
    assert [(g.phase_id, g.result, g.score) for g in gates] == [("2", GateVerdict.PASS, 85.0)]
    context = instance.context.snapshot()
    assert context["gates"]["2"] == {"verdict": "pass", "score": 85.0}
    assert context["phases"]["2"]["notes"] == "clear"
    assert await store.list_locks("gate-retry") == []
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_gate_fail_loops_back_and_reruns_writing_phase(make_orchestrator, store):
    runner = ScriptedRunner({"2": [{"score": 40}, {"score": 85}]})
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(gate_retry())

    instance = await orchestrator.run("gate-retry", inputs={"topic": "owls"})

    assert instance.status is InstanceStatus.COMPLETE
    assert [c.phase_id for c in runner.calls] == ["1", "2", "1", "2", "3"]
    assert await _statuses(store, instance.id, "1") == [PhaseStatus.COMPLETE] * 2
    assert await _statuses(store, instance.id, "3") == [PhaseStatus.COMPLETE]
    rerun = await store.list_phase_executions(instance.id, "1")
    assert [e.iteration for e in rerun] == [1, 2]

    # the second writing pass sees the failed verdict
    second_call = runner.calls_for("1")[1]
    assert second_call.context["gates"]["2"]["verdict"] == "fail"
    assert second_call.context["phases"]["2"] == {"score": 40}

    gates = await store.list_gate_results(instance.id)
    assert [g.result for g in gates] == [GateVerdict.FAIL, GateVerdict.PASS]
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_gate_without_fail_edge_fails_instance(make_orchestrator, store):
    definition = workflow(
        "strict-review",
        [phase("draft"), phase("review", PhaseKind.GATE, condition="score >= 70"), phase("ship")],
        [edge("draft", "review"), edge("review", "ship", label="pass")],
    )
    events = []
    runner = ScriptedRunner({"review": [{"score": 40}]})
    orchestrator = make_orchestrator(runner)
    orchestrator.events.subscribe("*", events.append)
    await orchestrator.register(definition)

    instance = await orchestrator.run("strict-review")
    await orchestrator.events.drain()

    assert instance.status is InstanceStatus.FAILED
    assert "no matching edge" in instance.error
    assert await _statuses(store, instance.id, "review") == [PhaseStatus.FAILED]
    assert [g.result for g in await store.list_gate_results(instance.id)] == [GateVerdict.FAIL]
    assert "ship" not in runner.finished
    failed = [e for e in events if e.type is EventType.INSTANCE_FAILED]
    assert failed[0].payload["error_type"] == "UnhandledGateFailure"
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_gate_verdict_field_without_condition(make_orchestrator):
    definition = workflow(
        "verdict-review",
        [phase("draft"), phase("review", PhaseKind.GATE), phase("ship"), phase("redo")],
        [
            edge("draft", "review"),
            edge("review", "ship", label="Pass"),
            edge("review", "redo", label="fail"),
        ],
    )
    runner = ScriptedRunner({"review": [{"verdict": "FAIL"}]})
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(definition)

    instance = await orchestrator.run("verdict-review")

    assert instance.status is InstanceStatus.COMPLETE
    assert runner.finished == ["draft", "review", "redo"]
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_free_text_gate_output_fails_instance(make_orchestrator):
    runner = ScriptedRunner({"2": ["looks good to me"]})
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(gate_retry())

    instance = await orchestrator.run("gate-retry")

    assert instance.status is InstanceStatus.FAILED
    assert "structured output" in instance.error
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_loop_runs_body_max_iterations_then_exhausts(make_orchestrator, store):
    runner = ScriptedRunner()
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(bounded_loop(max_iterations=3))

    instance = await orchestrator.run("revise-loop")

    assert instance.status is InstanceStatus.COMPLETE
    assert runner.finished.count("revise") == 3
    assert "escalate" in runner.finished
    assert "publish" not in runner.finished
    loop_rows = await store.list_phase_executions(instance.id, "loop")
    assert [row.output["outcome"] for row in loop_rows] == ["body", "body", "body", "exhausted"]
    assert [row.iteration for row in loop_rows] == [1, 2, 3, 3]
    assert instance.context.snapshot()["loops"]["loop"] == {
        "iteration": 0,
        "completed_iterations": 3,
        "outcome": "exhausted",
    }
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_loop_exit_condition_leaves_early(make_orchestrator):
    runner = ScriptedRunner({"revise": [{"approved": False}, {"approved": True}]})
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(
        bounded_loop(max_iterations=3, condition="phases.revise.approved == true")
    )

    instance = await orchestrator.run("revise-loop")

    assert instance.status is InstanceStatus.COMPLETE
    assert runner.finished.count("revise") == 2
    assert "publish" in runner.finished
    assert "escalate" not in runner.finished
    assert instance.context.snapshot()["loops"]["loop"]["outcome"] == "exit"
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_loop_without_exhausted_edge_fails(make_orchestrator):
    definition = workflow(
        "short-loop",
        [
            phase("loop", PhaseKind.LOOP, max_iterations=1),
            phase("revise"),
            phase("publish"),
        ],
        [
            edge("loop", "revise", label="body"),
            edge("revise", "loop", EdgeKind.LOOP_BACK),
            edge("loop", "publish", label="exit"),
        ],
    )
    events = []
    runner = ScriptedRunner()
    orchestrator = make_orchestrator(runner)
    orchestrator.events.subscribe("*", events.append)
    await orchestrator.register(definition)

    instance = await orchestrator.run("short-loop")
    await orchestrator.events.drain()

    assert instance.status is InstanceStatus.FAILED
    assert runner.finished == ["revise"]
    failed = [e for e in events if e.type is EventType.INSTANCE_FAILED][0]
    assert failed.payload["error_type"] == LoopExhaustedError.__name__
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_loop_without_max_iterations_stops_at_configured_cap(
    make_orchestrator, store, config
):
    config.loops = LoopConfig(max_iterations=4)
    runner = ScriptedRunner({"revise": [{"approved": False}]})
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(
        bounded_loop(max_iterations=None, condition="phases.revise.approved == true")
    )

    instance = await orchestrator.run("revise-loop")

    assert instance.status is InstanceStatus.COMPLETE
    assert runner.finished.count("revise") == 4
    assert "escalate" in runner.finished
    loop_rows = await store.list_phase_executions(instance.id, "loop")
    assert loop_rows[-1].output == {"outcome": "exhausted", "iteration": 4}
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_uncapped_loop_without_exhausted_edge_fails_at_cap(make_orchestrator, config):
    config.loops = LoopConfig(max_iterations=2)
    definition = workflow(
        "open-loop",
        [phase("loop", PhaseKind.LOOP), phase("revise"), phase("publish")],
        [
            edge("loop", "revise", label="body"),
            edge("revise", "loop", EdgeKind.LOOP_BACK),
            edge("loop", "publish", label="exit"),
        ],
    )
    runner = ScriptedRunner()
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(definition)

    instance = await orchestrator.run("open-loop")

    assert instance.status is InstanceStatus.FAILED
    assert runner.finished == ["revise", "revise"]
    assert "reached 2 iterations" in instance.error
    await orchestrator.aclose()


def _revise_section(request):
    state = request.context["loops"]["loop"]
    return {"section": state["item"], "index": state["index"]}


@pytest.mark.asyncio
async def test_collection_loop_visits_each_item(make_orchestrator, store):
    runner = ScriptedRunner(
        {
            "outline": [{"sections": ["intro", "body", "outro"]}],
            "revise": [_revise_section],
        }
    )
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(
        bounded_loop(max_iterations=None, collection="phases.outline.sections")
    )

    instance = await orchestrator.run("revise-loop")

    assert instance.status is InstanceStatus.COMPLETE
    assert "publish" in runner.finished
    assert "escalate" not in runner.finished
    revisions = await store.list_phase_executions(instance.id, "revise")
    assert [row.output for row in revisions] == [
        {"section": "intro", "index": 0},
        {"section": "body", "index": 1},
        {"section": "outro", "index": 2},
    ]
    assert instance.context.snapshot()["loops"]["loop"] == {
        "iteration": 0,
        "completed_iterations": 3,
        "outcome": "exit",
    }
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_collection_longer_than_cap_exhausts(make_orchestrator):
    runner = ScriptedRunner({"outline": [{"sections": ["a", "b", "c"]}]})
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(
        bounded_loop(max_iterations=2, collection="phases.outline.sections")
    )

    instance = await orchestrator.run("revise-loop")

    assert instance.status is InstanceStatus.COMPLETE
    assert runner.finished.count("revise") == 2
    assert "escalate" in runner.finished
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_empty_collection_exits_without_running_body(make_orchestrator):
    runner = ScriptedRunner({"outline": [{"sections": []}]})
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(bounded_loop(collection="phases.outline.sections"))

    instance = await orchestrator.run("revise-loop")

    assert instance.status is InstanceStatus.COMPLETE
    assert runner.finished == ["outline", "publish"]
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_collection_that_is_not_a_list_fails_instance(make_orchestrator, store):
    runner = ScriptedRunner({"outline": [{"sections": "intro, body"}]})
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(bounded_loop(collection="phases.outline.sections"))

    instance = await orchestrator.run("revise-loop")

    assert instance.status is InstanceStatus.FAILED
    assert "must be a list, found str" in instance.error
    assert await _statuses(store, instance.id, "loop") == [PhaseStatus.FAILED]
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_join_activates_once_after_all_branches(make_orchestrator, store):
    runner = ScriptedRunner(delays={"a": 0.05, "b": 0.01, "c": 0.03})
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(three_way_join())

    instance = await orchestrator.run("fan-out")

    assert instance.status is InstanceStatus.COMPLETE
    # branches finish out of order but all of them run before the join
    assert runner.finished[:3] == ["b", "c", "a"]
    assert len(runner.calls_for("final")) == 1
    joins = await store.list_phase_executions(instance.id, "join")
    assert len(joins) == 1
    assert joins[0].status is PhaseStatus.COMPLETE
    assert joins[0].output == {"arrivals": ["a", "b", "c"], "generation": 1}
    final_context = runner.calls_for("final")[0].context
    assert set(final_context["phases"]) == {"a", "b", "c"}
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_conditional_edges_pick_branch_from_result(make_orchestrator):
    definition = workflow(
        "length-check",
        [phase("draft"), phase("expand"), phase("trim")],
        [
            edge("draft", "expand", EdgeKind.CONDITIONAL, condition="result.words < 100"),
            edge("draft", "trim", EdgeKind.CONDITIONAL, condition="result.words >= 100"),
        ],
    )
    runner = ScriptedRunner({"draft": [{"words": 50}]})
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(definition)

    instance = await orchestrator.run("length-check")

    assert instance.status is InstanceStatus.COMPLETE
    assert runner.finished == ["draft", "expand"]
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_no_followable_edge_is_a_dead_end(make_orchestrator, store):
    definition = workflow(
        "dead-end",
        [phase("draft"), phase("publish")],
        [edge("draft", "publish", EdgeKind.CONDITIONAL, condition="result.ready == true")],
    )
    runner = ScriptedRunner({"draft": [{"ready": False}]})
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(definition)

    instance = await orchestrator.run("dead-end")

    assert instance.status is InstanceStatus.FAILED
    assert "No outgoing edge of phase draft" in instance.error
    assert await _statuses(store, instance.id, "draft") == [PhaseStatus.FAILED]
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_gate_retry_on_sqlite_store(tmp_path, config):
    from phaseflow.events import EventEmitter
    from phaseflow.orchestrator import Orchestrator

    store = SQLiteStateStore(tmp_path / "phaseflow.db")
    runner = ScriptedRunner({"2": [{"score": 40}, {"score": 90}]})
    orchestrator = Orchestrator(runner, store=store, events=EventEmitter(), config=config)
    await orchestrator.register(gate_retry())

    instance = await orchestrator.run("gate-retry", inputs={"topic": "owls"})

    assert instance.status is InstanceStatus.COMPLETE
    stored = await store.get_instance(instance.id)
    assert stored.status is InstanceStatus.COMPLETE
    assert stored.revision == instance.revision
    assert len(await store.list_phase_executions(instance.id, "1")) == 2
    assert [g.score for g in await store.list_gate_results(instance.id)] == [40.0, 90.0]
    await orchestrator.aclose()
    store.close()


@pytest.mark.asyncio
async def test_output_mapping_projects_result_into_context(make_orchestrator, store):
    definition = workflow(
        "mapped",
        [
            phase(
                "outline",
                PhaseKind.PLANNING,
                output_mapping={"title": "meta.title", "first": "sections[0]"},
            ),
            phase("draft"),
        ],
        [edge("outline", "draft")],
    )
    raw = {"meta": {"title": "Owls", "tokens": 812}, "sections": ["intro", "body"]}
    runner = ScriptedRunner({"outline": [raw]})
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(definition)

    instance = await orchestrator.run("mapped")

    assert instance.status is InstanceStatus.COMPLETE
    projected = {"title": "Owls", "first": "intro"}
    assert instance.context.snapshot()["phases"]["outline"] == projected
    assert runner.calls_for("draft")[0].context["phases"]["outline"] == projected
    (row,) = await store.list_phase_executions(instance.id, "outline")
    assert row.output == raw
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_edges_see_projected_result(make_orchestrator):
    definition = workflow(
        "mapped-branch",
        [
            phase("draft", output_mapping={"words": "stats.words"}),
            phase("expand"),
            phase("trim"),
        ],
        [
            edge("draft", "expand", EdgeKind.CONDITIONAL, condition="result.words < 100"),
            edge("draft", "trim", EdgeKind.CONDITIONAL, condition="result.words >= 100"),
        ],
    )
    runner = ScriptedRunner({"draft": [{"text": "...", "stats": {"words": 240}}]})
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(definition)

    instance = await orchestrator.run("mapped-branch")

    assert instance.status is InstanceStatus.COMPLETE
    assert runner.finished == ["draft", "trim"]
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_missing_mapped_path_is_left_out(make_orchestrator, caplog):
    definition = workflow(
        "mapped-missing",
        [phase("draft", output_mapping={"text": "text", "summary": "meta.summary"})],
        [],
    )
    runner = ScriptedRunner({"draft": [{"text": "v1"}]})
    orchestrator = make_orchestrator(runner)
    await orchestrator.register(definition)

    with caplog.at_level("WARNING", logger="phaseflow.orchestrator"):
        instance = await orchestrator.run("mapped-missing")

    assert instance.context.snapshot()["phases"]["draft"] == {"text": "v1"}
    assert "has nothing at meta.summary" in caplog.text
    await orchestrator.aclose()
