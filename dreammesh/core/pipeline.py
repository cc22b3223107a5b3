"""
Prompt-to-assembly pipeline — orchestrates the full flow:

  1. PLANNING: decompose the prompt into a build plan
  2. GENERATING / QC_ANALYSIS / FIXING: verify every component in plan order
  3. ASSEMBLING: attach verified components onto the anchor, one at a time
  4. COMPLETED, or ERROR on the first fatal failure

``PipelineRun`` is the per-run context object: it owns the phase, the log
stream, the artifacts, the verified objects, the context accumulator, the
stage and the oracles. ``generate_asset`` wires a run from settings and
writes the session record and model exports.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from ..config import DreamMeshSettings
from ..schemas import (
    BuildPlan,
    ComponentArtifact,
    CostSummary,
    GenerateRequest,
    GenerateResult,
    LogEntry,
    LogSeverity,
    PipelinePhase,
)
from ..shared.files import ensure_dir, safe_name
from .assembly import AssemblyOutcome, assemble
from .context import ContextAccumulator
from .errors import IllegalPhaseTransition, PipelineError
from .exporter import write_exports
from .oracles import LLMOracles, Oracles
from .sandbox import Sandbox
from .scene import SceneNode
from .stage import BlenderStage, RenderStage
from .verification import verify_component

logger = logging.getLogger(__name__)

EventCallback = Callable[[LogEntry], None]

_P = PipelinePhase
ALLOWED_TRANSITIONS: dict[PipelinePhase, frozenset[PipelinePhase]] = {
    _P.idle: frozenset({_P.planning}),
    _P.planning: frozenset({_P.generating, _P.error}),
    _P.generating: frozenset({_P.qc_analysis, _P.fixing, _P.error}),
    _P.fixing: frozenset({_P.qc_analysis, _P.fixing, _P.error}),
    _P.qc_analysis: frozenset({_P.generating, _P.fixing, _P.assembling, _P.error}),
    _P.assembling: frozenset({_P.completed, _P.error}),
    _P.completed: frozenset(),
    _P.error: frozenset(),
}

_LOG_LEVELS = {
    LogSeverity.info: logging.INFO,
    LogSeverity.success: logging.INFO,
    LogSeverity.warning: logging.WARNING,
    LogSeverity.error: logging.ERROR,
}


@dataclass
class PipelineOptions:
    component_max_attempts: int = 4
    attachment_max_attempts: int = 4
    component_settle_seconds: float = 0.2
    assembly_settle_seconds: float = 0.4

    @classmethod
    def from_settings(cls, settings: DreamMeshSettings) -> "PipelineOptions":
        return cls(
            component_max_attempts=settings.component_max_attempts,
            attachment_max_attempts=settings.attachment_max_attempts,
            component_settle_seconds=settings.component_settle_seconds,
            assembly_settle_seconds=settings.assembly_settle_seconds,
        )


# ---------------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------------

class PipelineRun:
    def __init__(
        self,
        oracles: Oracles,
        stage: RenderStage,
        sandbox: Sandbox | None = None,
        options: PipelineOptions | None = None,
        event_callback: EventCallback | None = None,
        session_id: str = "",
    ):
        self.oracles = oracles
        self.stage = stage
        self.sandbox = sandbox or Sandbox()
        self.options = options or PipelineOptions()
        self.event_callback = event_callback
        self.session_id = session_id

        self.phase = PipelinePhase.idle
        self.logs: list[LogEntry] = []
        self.plan: BuildPlan | None = None
        self.artifacts: dict[str, ComponentArtifact] = {}
        self.objects: dict[str, SceneNode] = {}
        self.context = ContextAccumulator()
        self.outcome: AssemblyOutcome | None = None
        self.error = ""
        self.elapsed = 0.0

    # -- phase & log ---------------------------------------------------------

    def set_phase(self, phase: PipelinePhase) -> None:
        if phase not in ALLOWED_TRANSITIONS[self.phase]:
            raise IllegalPhaseTransition(f"Illegal phase transition {self.phase.value} -> {phase.value}")
        logger.debug("[PHASE] %s -> %s", self.phase.value, phase.value)
        self.phase = phase

    def log(self, message: str, severity: LogSeverity = LogSeverity.info) -> LogEntry:
        entry = LogEntry(timestamp=time.time(), phase=self.phase, message=message, severity=severity)
        self.logs.append(entry)
        logger.log(_LOG_LEVELS[severity], "[%s] %s", self.phase.value, message)
        if self.event_callback:
            try:
                self.event_callback(entry)
            except Exception:
                logger.exception("Event callback failed")
        return entry

    @property
    def succeeded(self) -> bool:
        return self.phase == PipelinePhase.completed

    # -- run -----------------------------------------------------------------

    async def run(self, prompt: str) -> "PipelineRun":
        t0 = time.time()
        try:
            self.set_phase(PipelinePhase.planning)
            self.log(f"Planning: {prompt}")
            self.plan = await self.oracles.plan(prompt)
            self.artifacts = {c.id: ComponentArtifact(plan=c) for c in self.plan.components}
            self.log(
                f"Plan ready: {len(self.plan.components)} components "
                f"({', '.join(c.name for c in self.plan.components)})",
                LogSeverity.success,
            )

            for artifact in self.artifacts.values():
                await verify_component(self, artifact)

            self.outcome = await assemble(self)
            self.set_phase(PipelinePhase.completed)
            self.log(
                f"Assembly complete: {len(self.outcome.attached) + 1} parts attached, "
                f"{len(self.outcome.skipped)} skipped",
                LogSeverity.success,
            )
        except PipelineError as e:
            self._fail(e)
        except Exception as e:
            logger.exception("Unexpected pipeline error")
            self._fail(e)
        finally:
            self.elapsed = round(time.time() - t0, 2)
        return self

    def _fail(self, error: Exception) -> None:
        self.error = str(error) or type(error).__name__
        # ERROR is terminal and reachable from every running phase
        self.phase = PipelinePhase.error
        self.log(f"Critical Failure: {self.error}", LogSeverity.error)


# ---------------------------------------------------------------------------
# Service entry point
# ---------------------------------------------------------------------------

def _session_record(run: PipelineRun, request: GenerateRequest, result: GenerateResult) -> dict:
    return {
        "session_id": run.session_id,
        "prompt": request.prompt,
        "llm_name": result.llm_used,
        "created": datetime.now().isoformat(),
        "phase": run.phase.value,
        "error": run.error,
        "plan": run.plan.model_dump(by_alias=True) if run.plan else None,
        "components": result.components,
        "anchor_id": result.anchor_id,
        "assembly_order": result.assembly_order,
        "attached": result.attached,
        "skipped": result.skipped,
        "exports": result.exports,
        "logs": [e.model_dump(mode="json") for e in run.logs],
        "cost": result.cost_summary.model_dump(),
        "elapsed": result.elapsed,
        "metadata": request.metadata,
    }


async def generate_asset(
    request: GenerateRequest,
    settings: DreamMeshSettings,
    event_callback: EventCallback | None = None,
) -> GenerateResult:
    """End-to-end generation: prompt → plan → verified parts → assembly → exports."""
    session_id = safe_name(request.request_id or "", "") or f"s_{uuid.uuid4().hex[:10]}_{int(time.time())}"
    session_dir = ensure_dir(settings.sessions_dir / session_id)

    oracles = LLMOracles(settings, request.llm_name, request.qc_llm_name, request.max_cost_usd)
    run = PipelineRun(
        oracles=oracles,
        stage=BlenderStage.from_settings(settings, session_id),
        sandbox=Sandbox(timeout_seconds=settings.sandbox_timeout_seconds),
        options=PipelineOptions.from_settings(settings),
        event_callback=event_callback,
        session_id=session_id,
    )

    logger.info("=== GENERATE START: %s | llm=%s qc=%s ===", session_id, oracles.llm_name, oracles.qc_llm_name)
    await run.run(request.prompt)

    exports: dict[str, str] = {}
    if run.succeeded and run.outcome is not None:
        formats = request.export_formats or settings.default_export_formats
        loop = asyncio.get_running_loop()
        try:
            exports = await loop.run_in_executor(
                None, write_exports, run.outcome.root, session_dir, formats,
            )
        except Exception as e:
            logger.exception("Export failed for %s", session_id)
            run.log(f"Export failed: {e}", LogSeverity.warning)

    cost_summary: CostSummary = oracles.cost_summary()
    outcome = run.outcome
    result = GenerateResult(
        success=run.succeeded,
        session_id=session_id,
        phase=run.phase,
        error=run.error,
        overview=run.plan.overview if run.plan else "",
        components=[a.summary() for a in run.artifacts.values()],
        anchor_id=outcome.anchor_id if outcome else None,
        assembly_order=outcome.order if outcome else [],
        attached=outcome.attached if outcome else [],
        skipped=outcome.skipped if outcome else [],
        exports={fmt: f"{session_id}/{Path(path).name}" for fmt, path in exports.items()},
        logs=list(run.logs),
        cost_summary=cost_summary,
        llm_used=oracles.llm_name,
        elapsed=run.elapsed,
    )

    session_json = session_dir / "session.json"
    session_json.write_text(json.dumps(_session_record(run, request, result), indent=2))

    logger.info(
        "=== GENERATE %s: %s | phase=%s cost=$%.4f ===",
        "COMPLETE" if result.success else "FAILED", session_id, run.phase.value, cost_summary.total_usd,
    )
    return result
