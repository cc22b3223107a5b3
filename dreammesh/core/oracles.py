"""
Oracles: the planning, generation and visual-judgement calls.

``Oracles`` is the protocol the pipeline depends on; ``LLMOracles`` is the
production implementation on top of ``llm_client.call_llm``. Generation
uses the request's main model, both judges use the QC model (a fast vision
model by default). Every call's usage is recorded and checked against the
request's cost budget.
"""

from __future__ import annotations

import logging
from typing import Protocol

from pydantic import ValidationError

from ..config import DreamMeshSettings
from ..schemas import BuildPlan, ComponentPlan, CostSummary, QCResult
from .code_processor import extract_code, extract_json
from .errors import BudgetExceeded, PlanningFailure
from .llm_client import LLMResponse, UsageInfo, call_llm
from .prompt_builder import (
    ATTACHMENT_SYSTEM,
    COMPONENT_SYSTEM,
    PLAN_SCHEMA,
    PLANNER_SYSTEM,
    QC_SCHEMA,
    build_assembly_qc_prompt,
    build_attachment_prompt,
    build_component_prompt,
    build_component_qc_prompt,
    build_plan_prompt,
)

logger = logging.getLogger(__name__)

PLANNING_THINKING_BUDGET = 2048
COMPONENT_TEMPERATURE = 0.4
ATTACHMENT_TEMPERATURE = 0.2


class Oracles(Protocol):
    async def plan(self, prompt: str) -> BuildPlan: ...

    async def generate(
        self,
        component: ComponentPlan,
        previous_code: str | None,
        error_context: str | None,
        context_images: list[str],
    ) -> str: ...

    async def judge(
        self,
        component: ComponentPlan,
        snapshots: list[str],
        context_images: list[str],
    ) -> QCResult: ...

    async def generate_attachment(
        self,
        overview: str,
        component: ComponentPlan,
        assembly_snapshots: list[str],
        part_snapshots: list[str],
        previous_code: str | None,
        error_context: str | None,
    ) -> str: ...

    async def judge_assembly(
        self,
        overview: str,
        component: ComponentPlan,
        snapshots: list[str],
    ) -> QCResult: ...


class LLMOracles:
    def __init__(
        self,
        settings: DreamMeshSettings,
        llm_name: str | None = None,
        qc_llm_name: str | None = None,
        max_cost_usd: float | None = None,
    ):
        self.settings = settings
        self.llm_name = llm_name or settings.default_llm_name
        self.qc_llm_name = qc_llm_name or settings.default_qc_llm_name
        self.max_cost_usd = max_cost_usd if max_cost_usd is not None else settings.max_cost_per_request_usd
        self.usage: list[tuple[str, UsageInfo]] = []

    # -- accounting ----------------------------------------------------------

    @property
    def total_cost(self) -> float:
        return round(sum(u.cost_usd for _, u in self.usage), 4)

    def cost_summary(self) -> CostSummary:
        return CostSummary(
            total_input_tokens=sum(u.input_tokens for _, u in self.usage),
            total_output_tokens=sum(u.output_tokens for _, u in self.usage),
            total_usd=self.total_cost,
            calls=len(self.usage),
            details=[{"step": step, **u.to_dict()} for step, u in self.usage],
        )

    async def _call(
        self,
        step: str,
        llm_name: str,
        gemini_model: str,
        system: str,
        parts: list[str],
        **kwargs,
    ) -> LLMResponse:
        response = await call_llm(
            llm_name,
            system,
            parts,
            anthropic_api_key=self.settings.anthropic_api_key,
            gemini_api_key=self.settings.gemini_api_key,
            gemini_model=gemini_model,
            **kwargs,
        )
        self.usage.append((step, response.usage))
        if self.total_cost > self.max_cost_usd:
            raise BudgetExceeded(self.total_cost, self.max_cost_usd)
        return response

    def _generation_call(self, step: str, system: str, parts: list[str], **kwargs):
        return self._call(step, self.llm_name, self.settings.gemini_model, system, parts, **kwargs)

    async def _qc_call(self, step: str, parts: list[str]) -> QCResult:
        response = await self._call(
            step, self.qc_llm_name, self.settings.gemini_qc_model, "", parts,
            response_schema=QC_SCHEMA,
        )
        return QCResult.model_validate(extract_json(response.text))

    # -- oracle calls --------------------------------------------------------

    async def plan(self, prompt: str) -> BuildPlan:
        try:
            response = await self._generation_call(
                "plan",
                PLANNER_SYSTEM,
                build_plan_prompt(prompt),
                response_schema=PLAN_SCHEMA,
                thinking_budget=PLANNING_THINKING_BUDGET if self.llm_name == "gemini" else None,
            )
            plan = BuildPlan.model_validate(extract_json(response.text))
            logger.info("[PLANNING] %d components: %s", len(plan.components), ", ".join(c.id for c in plan.components))
            return plan
        except BudgetExceeded:
            raise
        except (ValidationError, ValueError) as e:
            raise PlanningFailure(f"Unusable build plan: {e}") from e
        except Exception as e:
            raise PlanningFailure(f"Planning oracle failed: {e}") from e

    async def generate(self, component, previous_code, error_context, context_images) -> str:
        response = await self._generation_call(
            f"generate:{component.id}",
            COMPONENT_SYSTEM,
            build_component_prompt(component, previous_code, error_context, list(context_images)),
            temperature=COMPONENT_TEMPERATURE,
        )
        return extract_code(response.text)

    async def judge(self, component, snapshots, context_images) -> QCResult:
        return await self._qc_call(
            f"qc:{component.id}",
            build_component_qc_prompt(component, list(snapshots), list(context_images)),
        )

    async def generate_attachment(
        self, overview, component, assembly_snapshots, part_snapshots, previous_code, error_context,
    ) -> str:
        response = await self._generation_call(
            f"attach:{component.id}",
            ATTACHMENT_SYSTEM,
            build_attachment_prompt(
                overview, component, list(assembly_snapshots), list(part_snapshots),
                previous_code, error_context,
            ),
            temperature=ATTACHMENT_TEMPERATURE,
            thinking_budget=PLANNING_THINKING_BUDGET if self.llm_name == "gemini" else None,
        )
        return extract_code(response.text)

    async def judge_assembly(self, overview, component, snapshots) -> QCResult:
        return await self._qc_call(
            f"assembly_qc:{component.id}",
            build_assembly_qc_prompt(overview, component, list(snapshots)),
        )
