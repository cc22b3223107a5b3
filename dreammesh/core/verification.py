"""
Component verification loop.

For one component, up to ``component_max_attempts`` times:

  1. Generate construction code (GENERATING on the first attempt, FIXING on
     retries) from the plan entry, the previous code, the last recorded error
     (else the latest QC feedback) and the accumulated context images
  2. Reset the stage, execute the code in the sandbox, stage the object
  3. QC_ANALYSIS: settle, capture 8 views, ask the visual judge
  4. Passed: VERIFIED, keep images and object, feed the context accumulator.
     Rejected or errored: FAILED, count the attempt, go again.

Recoverable errors (sandbox, capture, oracle hiccups) only cost an attempt.
Fatal pipeline errors (budget, illegal transition) propagate untouched.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from ..schemas import ComponentArtifact, ComponentStatus, LogSeverity, PipelinePhase
from .errors import PipelineError, RetryExhaustion
from .scene import SceneNode

if TYPE_CHECKING:
    from .pipeline import PipelineRun

logger = logging.getLogger(__name__)


async def verify_component(run: "PipelineRun", artifact: ComponentArtifact) -> SceneNode:
    plan = artifact.plan
    max_attempts = run.options.component_max_attempts

    while artifact.retry_count < max_attempts:
        attempt = artifact.retry_count + 1
        logger.info(
            "[ATTEMPT %d/%d] component=%s context_from=%s",
            attempt, max_attempts, plan.id, run.context.component_ids,
        )
        try:
            if artifact.status in (ComponentStatus.pending, ComponentStatus.failed):
                first = artifact.retry_count == 0
                run.set_phase(PipelinePhase.generating if first else PipelinePhase.fixing)
                run.log(
                    f"Generating {plan.name}..." if first
                    else f"Fixing {plan.name} (attempt {attempt}/{max_attempts})..."
                )
                artifact.code = await run.oracles.generate(
                    plan,
                    artifact.code or None,
                    artifact.error_context(),
                    run.context.images(),
                )
                artifact.status = ComponentStatus.generated

            run.stage.reset()
            obj = await run.sandbox.run_construction_async(artifact.code)
            run.stage.add(obj)

            run.set_phase(PipelinePhase.qc_analysis)
            await asyncio.sleep(run.options.component_settle_seconds)
            snapshots = await run.stage.capture_snapshots()
            verdict = await run.oracles.judge(plan, snapshots, run.context.images())

        except PipelineError as e:
            if e.fatal:
                raise
            _record_error(run, artifact, e)
            continue
        except Exception as e:
            _record_error(run, artifact, e)
            continue

        artifact.qc_history.insert(0, verdict)
        if verdict.passed:
            artifact.status = ComponentStatus.verified
            artifact.images = list(snapshots)
            run.objects[plan.id] = obj
            run.context.add(plan.id, snapshots)
            run.log(f"{plan.name} verified (score {verdict.score})", LogSeverity.success)
            return obj

        artifact.status = ComponentStatus.failed
        artifact.retry_count += 1
        run.log(f"QC rejected {plan.name} (score {verdict.score}): {verdict.feedback}", LogSeverity.warning)

    raise RetryExhaustion(plan.name, max_attempts)


def _record_error(run: "PipelineRun", artifact: ComponentArtifact, error: Exception) -> None:
    message = str(error) or type(error).__name__
    artifact.error_logs.append(message)
    artifact.status = ComponentStatus.failed
    artifact.retry_count += 1
    run.log(f"{artifact.plan.name} failed: {message}", LogSeverity.error)
