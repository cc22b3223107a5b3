import asyncio
import json

import pytest

from conftest import make_plan
from dreammesh.config import DreamMeshSettings
from dreammesh.core import oracles as oracles_mod
from dreammesh.core.errors import BudgetExceeded, PlanningFailure
from dreammesh.core.llm_client import LLMResponse, UsageInfo
from dreammesh.core.oracles import LLMOracles
from dreammesh.core.prompt_builder import build_attachment_prompt, build_component_prompt

PLAN_JSON = json.dumps({
    "overview": "stack two blocks",
    "components": [
        {"id": "base", "name": "Base", "description": "wide slab", "geometryType": "box", "dependencies": []},
        {"id": "top", "name": "Top", "description": "small cube", "dependencies": ["base"]},
    ],
})


class ScriptedLLM:
    def __init__(self, *replies, cost=0.01):
        self.replies = list(replies)
        self.cost = cost
        self.calls = []

    async def __call__(self, llm_name, system_prompt, parts, **kwargs):
        self.calls.append({"llm_name": llm_name, "system": system_prompt, "parts": parts, **kwargs})
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        usage = UsageInfo(model=llm_name, input_tokens=100, output_tokens=50, cost_usd=self.cost)
        return LLMResponse(text=reply, usage=usage)


@pytest.fixture
def settings(tmp_path):
    return DreamMeshSettings(
        storage_dir=tmp_path,
        anthropic_api_key="test-key",
        gemini_api_key="test-key",
        default_llm_name="gemini",
        default_qc_llm_name="gemini",
        max_cost_per_request_usd=1.0,
    )


def _oracles(monkeypatch, settings, llm, **kwargs):
    monkeypatch.setattr(oracles_mod, "call_llm", llm)
    return LLMOracles(settings, **kwargs)


def test_plan_parses_fenced_json(monkeypatch, settings):
    llm = ScriptedLLM(f"Here is the plan:\n```json\n{PLAN_JSON}\n```")
    oracles = _oracles(monkeypatch, settings, llm)

    plan = asyncio.run(oracles.plan("a stack"))

    assert [c.id for c in plan.components] == ["base", "top"]
    assert plan.components[0].geometry_type == "box"
    assert plan.components[1].dependencies == ["base"]
    assert llm.calls[0]["response_schema"] is not None
    assert llm.calls[0]["thinking_budget"] is not None  # default generation model is gemini


@pytest.mark.parametrize(
    "reply",
    [
        "no json here",
        json.dumps({"overview": "x", "components": []}),
        json.dumps({"components": [{"id": "a", "name": "A"}, {"id": "a", "name": "B"}]}),
        RuntimeError("service unavailable"),
    ],
    ids=["unparseable", "empty", "duplicate-ids", "unreachable"],
)
def test_plan_failures_become_planning_failure(monkeypatch, settings, reply):
    oracles = _oracles(monkeypatch, settings, ScriptedLLM(reply))
    with pytest.raises(PlanningFailure):
        asyncio.run(oracles.plan("anything"))


def test_budget_is_checked_after_every_call(monkeypatch, settings):
    llm = ScriptedLLM("```python\ndef create_part(kit):\n    return kit.box()\n```", cost=0.6)
    oracles = _oracles(monkeypatch, settings, llm)
    component = make_plan(("A", [])).components[0]

    code = asyncio.run(oracles.generate(component, None, None, []))
    assert code.startswith("def create_part")

    with pytest.raises(BudgetExceeded):
        asyncio.run(oracles.generate(component, None, None, []))
    assert oracles.cost_summary().calls == 2
    assert oracles.cost_summary().total_usd == pytest.approx(1.2)


def test_budget_exceeded_is_not_wrapped_by_planning(monkeypatch, settings):
    oracles = _oracles(monkeypatch, settings, ScriptedLLM(PLAN_JSON, cost=5.0))
    with pytest.raises(BudgetExceeded):
        asyncio.run(oracles.plan("a stack"))


def test_judges_use_the_qc_model(monkeypatch, settings):
    llm = ScriptedLLM('{"passed": false, "feedback": "too thin", "score": "42.6"}')
    oracles = _oracles(monkeypatch, settings, llm, llm_name="claude", qc_llm_name="gemini")
    component = make_plan(("A", [])).components[0]
    images = [f"data:image/png;base64,v{i}" for i in range(8)]

    verdict = asyncio.run(oracles.judge(component, images, ["data:image/png;base64,ctx"]))

    assert verdict.passed is False
    assert verdict.feedback == "too thin"
    assert verdict.score == 43
    call = llm.calls[0]
    assert call["llm_name"] == "gemini"
    assert call["gemini_model"] == settings.gemini_qc_model
    assert [p for p in call["parts"] if p.startswith("data:image/")] == images + ["data:image/png;base64,ctx"]

    asyncio.run(oracles.judge_assembly("overview", component, images))
    assert llm.calls[1]["llm_name"] == "gemini"


def test_generation_uses_the_main_model(monkeypatch, settings):
    llm = ScriptedLLM("def attach(root, part):\n    root.add(part)\n")
    oracles = _oracles(monkeypatch, settings, llm, llm_name="claude-sonnet", qc_llm_name="gemini")
    component = make_plan(("A", [])).components[0]

    code = asyncio.run(oracles.generate_attachment("overview", component, [], [], None, "it floats"))

    assert code.startswith("def attach")
    assert llm.calls[0]["llm_name"] == "claude-sonnet"
    assert llm.calls[0]["thinking_budget"] is None
    assert "it floats" in llm.calls[0]["parts"][-1]


def test_component_prompt_includes_fix_context_and_images():
    component = make_plan(("A", [])).components[0]
    parts = build_component_prompt(component, "old code", "too short", ["data:image/png;base64,a"])
    assert "PREVIOUS ATTEMPT FAILED" in parts[0]
    assert "old code" in parts[0]
    assert parts[-1] == "data:image/png;base64,a"

    fresh = build_component_prompt(component, "old code", None, [])
    assert fresh == [fresh[0]]
    assert "old code" not in fresh[0]


def test_attachment_prompt_orders_assembly_before_part_views():
    component = make_plan(("A", [])).components[0]
    parts = build_attachment_prompt(
        "overview", component, ["data:image/png;base64,asm"], ["data:image/png;base64,part"], None, None,
    )
    images = [p for p in parts if p.startswith("data:image/")]
    assert images == ["data:image/png;base64,asm", "data:image/png;base64,part"]
