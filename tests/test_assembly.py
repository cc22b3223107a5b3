import asyncio

import pytest

from conftest import BROKEN_ATTACH, PASS, STACK_ATTACH, FakeOracles, FakeStage, make_plan, reject
from dreammesh.core.assembly import assemble, commit
from dreammesh.core.errors import CriticalFailure
from dreammesh.core.pipeline import PipelineOptions, PipelineRun
from dreammesh.core.sandbox import Sandbox
from dreammesh.core.toolkit import Kit
from dreammesh.schemas import ComponentArtifact, ComponentStatus, LogSeverity, PipelinePhase

kit = Kit()


def _run_pipeline(make_run, oracles, prompt="a thing"):
    run = make_run(oracles)
    asyncio.run(run.run(prompt))
    return run


def test_rejected_part_is_skipped_and_run_completes(make_run, stage):
    plan = make_plan(("A", []), ("B", ["A"]), ("C", ["A"]))
    oracles = FakeOracles(plan)
    oracles.assembly_verdicts["C"] = [reject("floating in mid-air")]

    run = _run_pipeline(make_run, oracles)

    assert run.phase == PipelinePhase.completed
    outcome = run.outcome
    assert outcome.anchor_id == "A"
    assert outcome.order == ["A", "B", "C"]
    assert outcome.attached == ["B"]
    assert outcome.skipped == ["C"]
    assert [c.name for c in outcome.root.children] == ["B"]
    assert len(oracles.calls["judge_assembly"]) == 1 + 4
    # 3 component captures, the anchor, B once, C four times
    assert stage.captures == 3 + 1 + 1 + 4


def test_rejections_leave_the_committed_assembly_untouched(make_run):
    plan = make_plan(("A", []), ("B", ["A"]), ("C", ["A"]))
    oracles = FakeOracles(plan)
    oracles.attach_codes["C"] = [BROKEN_ATTACH]

    run = _run_pipeline(make_run, oracles)

    root = run.outcome.root
    assert run.outcome.skipped == ["C"]
    assert [c.name for c in root.children] == ["B"]
    assert root.children[0].position.tolist() == pytest.approx([0.0, 1.0, 0.0])
    assert root.position.tolist() == pytest.approx([0.0, 0.0, 0.0])
    assert root.find("C") is None


def test_commit_moves_draft_children_and_transform():
    anchor = kit.box(name="anchor")
    draft = anchor.clone()
    draft.add(kit.sphere(name="wheel"))
    draft.position = (0, 2, 0)

    commit(anchor, draft)

    assert [c.name for c in anchor.children] == ["wheel"]
    assert anchor.children[0].parent is anchor
    assert draft.children == []
    assert anchor.position.tolist() == [0.0, 2.0, 0.0]


def test_state_is_stable_across_a_failed_attempt(make_run):
    plan = make_plan(("A", []), ("B", ["A"]))
    oracles = FakeOracles(plan)
    oracles.attach_codes["B"] = [BROKEN_ATTACH]
    run = make_run(oracles)
    snapshots = {}

    original = oracles.generate_attachment

    async def generate_attachment(*args):
        code = await original(*args)
        snapshots.setdefault("before", run.stage.root.state())
        return code

    oracles.generate_attachment = generate_attachment
    asyncio.run(run.run("two parts"))

    assert run.phase == PipelinePhase.completed
    assert run.outcome.root.state() == snapshots["before"]
    assert run.outcome.root.children == []


def test_attachment_retries_carry_feedback_but_not_code(make_run):
    plan = make_plan(("A", []), ("B", ["A"]))
    oracles = FakeOracles(plan)
    oracles.attach_codes["B"] = [BROKEN_ATTACH, STACK_ATTACH]
    oracles.assembly_verdicts["B"] = [reject("sunk into the body"), PASS]

    run = _run_pipeline(make_run, oracles)

    calls = oracles.calls["generate_attachment"]
    assert len(calls) == 3
    assert all(c["previous_code"] is None for c in calls)
    assert calls[0]["error_context"] is None
    assert calls[1]["error_context"].startswith("Execution Error: ValueError")
    assert calls[2]["error_context"] == "sunk into the body"
    assert run.outcome.attached == ["B"]
    # every request gets the current assembly and the part's own verified views
    assert len(calls[0]["assembly_snapshots"]) == 8
    assert calls[0]["part_snapshots"] == run.artifacts["B"].images


def test_stage_is_restored_to_the_anchor(make_run, stage):
    plan = make_plan(("A", []), ("B", ["A"]))
    oracles = FakeOracles(plan)
    oracles.assembly_verdicts["B"] = [reject()]

    run = _run_pipeline(make_run, oracles)

    assert stage.root is run.outcome.root
    assert run.outcome.skipped == ["B"]


def test_anchor_is_recentred_without_touching_the_verified_object(make_run):
    plan = make_plan(("A", []))
    oracles = FakeOracles(plan)
    oracles.codes["A"] = [
        "def create_part(kit):\n"
        "    body = kit.box(2, 1, 1, name='A')\n"
        "    body.position = (3, 1, 0)\n"
        "    return body\n"
    ]

    run = _run_pipeline(make_run, oracles)

    assert run.outcome.root.bounding_box().center.tolist() == pytest.approx([0, 0, 0])
    assert run.objects["A"].position.tolist() == [3.0, 1.0, 0.0]
    assert run.outcome.attached == [] and run.outcome.skipped == []


def test_anchor_capture_failure_is_critical():
    plan = make_plan(("A", []))
    oracles = FakeOracles(plan)
    stage = FakeStage(fail_on={2})
    run = PipelineRun(
        oracles, stage, Sandbox(),
        PipelineOptions(component_settle_seconds=0.0, assembly_settle_seconds=0.0),
    )

    asyncio.run(run.run("one part"))

    assert run.phase == PipelinePhase.error
    assert "Could not capture anchor" in run.error
    assert run.logs[-1].message.startswith("Critical Failure:")


def test_unverified_part_is_skipped():
    plan = make_plan(("A", []), ("B", ["A"]))
    oracles = FakeOracles(plan)
    run = PipelineRun(
        oracles, FakeStage(), Sandbox(),
        PipelineOptions(component_settle_seconds=0.0, assembly_settle_seconds=0.0),
    )
    run.plan = plan
    run.artifacts = {c.id: ComponentArtifact(plan=c) for c in plan.components}
    run.artifacts["A"].status = ComponentStatus.verified
    run.objects["A"] = kit.box(name="A")
    for phase in (PipelinePhase.planning, PipelinePhase.generating, PipelinePhase.qc_analysis):
        run.set_phase(phase)

    outcome = asyncio.run(assemble(run))

    assert outcome.skipped == ["B"]
    assert oracles.calls["generate_attachment"] == []


def test_missing_anchor_object_is_critical():
    plan = make_plan(("A", []))
    run = PipelineRun(FakeOracles(plan), FakeStage(), Sandbox())
    run.plan = plan
    for phase in (PipelinePhase.planning, PipelinePhase.generating, PipelinePhase.qc_analysis):
        run.set_phase(phase)

    with pytest.raises(CriticalFailure):
        asyncio.run(assemble(run))


def test_cycles_and_unknown_dependencies_are_logged(make_run):
    plan = make_plan(("A", ["B"]), ("B", ["A", "ghost"]))
    oracles = FakeOracles(plan)

    run = _run_pipeline(make_run, oracles)

    warnings = [e.message for e in run.logs if e.severity == LogSeverity.warning]
    assert run.phase == PipelinePhase.completed
    assert run.outcome.order == ["B", "A"]
    assert "Dependency cycle: B -> A ignored" in warnings
    assert "B depends on unknown component ghost; ignored" in warnings


def test_anchor_is_the_sequenced_dependency_not_the_first_listed(make_run):
    plan = make_plan(("wheel", ["frame"]), ("frame", []))
    oracles = FakeOracles(plan)

    run = _run_pipeline(make_run, oracles)

    assert run.outcome.anchor_id == "frame"
    assert run.outcome.root.name == "frame"
    assert [c["id"] for c in oracles.calls["generate_attachment"]] == ["wheel"]
    assert any(e.message.endswith("(anchor Part frame)") for e in run.logs)
