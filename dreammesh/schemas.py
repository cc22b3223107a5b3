from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


LLM_NAMES = ("claude", "claude-sonnet", "claude-opus", "gemini")


class PipelinePhase(str, Enum):
    idle = "IDLE"
    planning = "PLANNING"
    generating = "GENERATING"
    qc_analysis = "QC_ANALYSIS"
    fixing = "FIXING"
    assembling = "ASSEMBLING"
    completed = "COMPLETED"
    error = "ERROR"


class ComponentStatus(str, Enum):
    pending = "PENDING"
    generated = "GENERATED"
    verified = "VERIFIED"
    failed = "FAILED"


class LogSeverity(str, Enum):
    info = "info"
    success = "success"
    warning = "warning"
    error = "error"


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


# ---------------------------------------------------------------------------
# Build plan (produced by the planning oracle)
# ---------------------------------------------------------------------------

class ComponentPlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    name: str
    description: str = ""
    geometry_type: str = Field(default="", alias="geometryType")
    material_type: str = Field(default="", alias="materialType")
    dependencies: list[str] = Field(default_factory=list)


class BuildPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    overview: str = ""
    components: list[ComponentPlan]

    @model_validator(mode="after")
    def _check_components(self) -> "BuildPlan":
        if not self.components:
            raise ValueError("Build plan has no components")
        seen: set[str] = set()
        for component in self.components:
            if component.id in seen:
                raise ValueError(f"Duplicate component id in plan: {component.id}")
            seen.add(component.id)
        return self

    def component(self, component_id: str) -> ComponentPlan | None:
        for c in self.components:
            if c.id == component_id:
                return c
        return None


# ---------------------------------------------------------------------------
# Per-component state
# ---------------------------------------------------------------------------

class QCResult(BaseModel):
    passed: bool
    feedback: str = ""
    score: int = 0

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> int:
        try:
            score = int(round(float(value)))
        except (TypeError, ValueError):
            return 0
        return max(0, min(100, score))


class ComponentArtifact(BaseModel):
    plan: ComponentPlan
    code: str = ""
    status: ComponentStatus = ComponentStatus.pending
    retry_count: int = 0
    qc_history: list[QCResult] = Field(default_factory=list)   # most recent first
    error_logs: list[str] = Field(default_factory=list)
    images: list[str] = Field(default_factory=list)

    def error_context(self) -> str | None:
        """Feedback for the next generation request. The last recorded error wins over QC feedback."""
        if self.error_logs:
            return self.error_logs[-1]
        if self.qc_history and not self.qc_history[0].passed:
            return self.qc_history[0].feedback
        return None

    def summary(self) -> dict[str, Any]:
        latest = self.qc_history[0] if self.qc_history else None
        return {
            "id": self.plan.id,
            "name": self.plan.name,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "score": latest.score if latest else None,
            "last_feedback": latest.feedback if latest else "",
            "errors": len(self.error_logs),
            "code": self.code,
        }


class LogEntry(BaseModel):
    timestamp: float
    phase: PipelinePhase
    message: str
    severity: LogSeverity = LogSeverity.info


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------

class GenerateRequest(BaseModel):
    """Input for the prompt-to-assembly pipeline."""

    prompt: str

    llm_name: str | None = None
    qc_llm_name: str | None = None
    max_cost_usd: float | None = None
    export_formats: list[str] | None = None

    request_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="allow")

    @model_validator(mode="after")
    def _validate(self) -> "GenerateRequest":
        if not self.prompt.strip():
            raise ValueError("Provide a non-empty text prompt.")
        for name in (self.llm_name, self.qc_llm_name):
            if name is not None and name not in LLM_NAMES:
                raise ValueError(f"llm names must be one of: {', '.join(LLM_NAMES)}")
        if self.export_formats is not None:
            self.export_formats = [f.lower() for f in self.export_formats]
            unknown = set(self.export_formats) - {"glb", "obj", "stl"}
            if unknown:
                raise ValueError(f"Unsupported export formats: {sorted(unknown)}")
        return self


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

class CostSummary(BaseModel):
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_usd: float = 0.0
    calls: int = 0
    details: list[dict[str, Any]] = Field(default_factory=list)


class GenerateResult(BaseModel):
    success: bool = False
    session_id: str = ""
    phase: PipelinePhase = PipelinePhase.idle
    error: str = ""

    overview: str = ""
    components: list[dict[str, Any]] = Field(default_factory=list)
    anchor_id: str | None = None
    assembly_order: list[str] = Field(default_factory=list)
    attached: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)

    exports: dict[str, str] = Field(default_factory=dict)
    logs: list[LogEntry] = Field(default_factory=list)
    cost_summary: CostSummary = Field(default_factory=CostSummary)
    llm_used: str = ""
    elapsed: float = 0.0


# ---------------------------------------------------------------------------
# Job views (for /jobs endpoints)
# ---------------------------------------------------------------------------

class JobRecordView(BaseModel):
    id: str
    status: JobStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    progress: int = 0
    phase: PipelinePhase = PipelinePhase.idle
    detail: str = ""

    request_summary: dict[str, Any] = Field(default_factory=dict)
    logs: list[LogEntry] = Field(default_factory=list)
    result: GenerateResult | None = None
    error: dict[str, Any] | None = None


class AsyncJobAccepted(BaseModel):
    job_id: str
    status: JobStatus = JobStatus.queued
    status_url: str
    result_url: str
