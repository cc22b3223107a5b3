"""
Incremental assembly loop.

The first component in dependency order is the anchor: it is cloned,
recentred on the origin and photographed. Every other verified component
is attached one at a time against a *draft* (a clone of the anchor), judged
from the standard 8 views, and only committed to the anchor when the judge
passes it. A part that cannot be attached within its attempt budget is
skipped; the run still completes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..schemas import ComponentStatus, LogSeverity, PipelinePhase
from .errors import CaptureError, CriticalFailure, PipelineError
from .scene import SceneNode
from .sequencer import sequence_components

if TYPE_CHECKING:
    from .pipeline import PipelineRun

logger = logging.getLogger(__name__)


@dataclass
class AssemblyOutcome:
    anchor_id: str
    root: SceneNode
    order: list[str] = field(default_factory=list)
    attached: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    snapshots: list[str] = field(default_factory=list)


def commit(anchor: SceneNode, draft: SceneNode) -> None:
    """Make ``anchor`` take the draft's children and transform."""
    children = list(draft.children)
    anchor.clear()
    anchor.add(*children)
    anchor.position = draft.position.copy()
    anchor.rotation = draft.rotation.copy()
    anchor.scale = draft.scale.copy()


def _restore(run: "PipelineRun", anchor: SceneNode) -> None:
    run.stage.reset()
    run.stage.add(anchor)


async def assemble(run: "PipelineRun") -> AssemblyOutcome:
    run.set_phase(PipelinePhase.assembling)
    options = run.options
    overview = run.plan.overview

    sequence = sequence_components(run.plan.components)
    for component_id, dep_id in sequence.back_edges:
        run.log(f"Dependency cycle: {component_id} -> {dep_id} ignored", LogSeverity.warning)
    for component_id, dep_id in sequence.dangling:
        run.log(f"{component_id} depends on unknown component {dep_id}; ignored", LogSeverity.warning)

    anchor_plan = run.plan.component(sequence.anchor_id)
    if anchor_plan is None:
        raise CriticalFailure("Build plan has no anchor component")
    anchor_obj = run.objects.get(anchor_plan.id)
    if anchor_obj is None:
        raise CriticalFailure(f"Anchor component {anchor_plan.name} has no verified object")

    anchor = anchor_obj.clone()
    anchor.position = anchor.position - anchor.bounding_box().center
    outcome = AssemblyOutcome(anchor_id=anchor_plan.id, root=anchor, order=sequence.ids)
    run.log(f"Assembly order: {' -> '.join(sequence.ids)} (anchor {anchor_plan.name})")

    _restore(run, anchor)
    await asyncio.sleep(options.assembly_settle_seconds)
    try:
        assembly_snapshots = await run.stage.capture_snapshots()
    except CaptureError as e:
        raise CriticalFailure(f"Could not capture anchor {anchor_plan.name}: {e}") from e

    for component in sequence.order[1:]:
        artifact = run.artifacts.get(component.id)
        part_obj = run.objects.get(component.id)
        if artifact is None or artifact.status != ComponentStatus.verified or part_obj is None:
            run.log(f"Skipping {component.name}: not verified", LogSeverity.warning)
            outcome.skipped.append(component.id)
            continue

        error_context: str | None = None
        attached = False
        for attempt in range(1, options.attachment_max_attempts + 1):
            logger.info(
                "[ATTACH %d/%d] component=%s", attempt, options.attachment_max_attempts, component.id,
            )
            run.log(f"Attaching {component.name} (attempt {attempt}/{options.attachment_max_attempts})...")
            try:
                code = await run.oracles.generate_attachment(
                    overview, component, list(assembly_snapshots), list(artifact.images),
                    None, error_context,
                )
                draft = anchor.clone()
                part = part_obj.clone()
                run.stage.reset()
                run.stage.add(draft)
                await run.sandbox.run_attachment_async(code, draft, part)

                await asyncio.sleep(options.assembly_settle_seconds)
                snapshots = await run.stage.capture_snapshots()
                verdict = await run.oracles.judge_assembly(overview, component, snapshots)
            except PipelineError as e:
                if e.fatal:
                    raise
                error_context = str(e)
                run.log(f"Attachment of {component.name} failed: {e}", LogSeverity.error)
                _restore(run, anchor)
                continue
            except Exception as e:
                error_context = str(e) or type(e).__name__
                run.log(f"Attachment of {component.name} failed: {error_context}", LogSeverity.error)
                _restore(run, anchor)
                continue

            if verdict.passed:
                commit(anchor, draft)
                assembly_snapshots = snapshots
                attached = True
                run.log(f"{component.name} attached (score {verdict.score})", LogSeverity.success)
                break

            error_context = verdict.feedback
            run.log(f"Assembly QC rejected {component.name}: {verdict.feedback}", LogSeverity.warning)
            _restore(run, anchor)

        if attached:
            outcome.attached.append(component.id)
        else:
            outcome.skipped.append(component.id)
            run.log(
                f"Skipping {component.name} after {options.attachment_max_attempts} attachment attempts",
                LogSeverity.warning,
            )

    _restore(run, anchor)
    outcome.snapshots = list(assembly_snapshots)
    return outcome
