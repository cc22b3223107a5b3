"""
Shared fixtures: scripted oracles and a recording render stage.

Neither touches the network or Blender. Snapshots are fake PNG data URIs
tagged with a capture counter so tests can tell captures apart.
"""

from __future__ import annotations

from collections import defaultdict

import pytest

from dreammesh.core.errors import CaptureError
from dreammesh.core.pipeline import PipelineOptions, PipelineRun
from dreammesh.core.sandbox import Sandbox
from dreammesh.schemas import BuildPlan, ComponentPlan, QCResult

PASS = QCResult(passed=True, feedback="looks right", score=90)


def reject(feedback: str = "geometry is broken", score: int = 20) -> QCResult:
    return QCResult(passed=False, feedback=feedback, score=score)


def box_code(name: str, size: float = 1.0) -> str:
    return (
        "def create_part(kit):\n"
        f"    mat = kit.material('#888888', metalness=0.2)\n"
        f"    return kit.box({size}, {size}, {size}, material=mat, name={name!r})\n"
    )


STACK_ATTACH = (
    "def attach(root, part):\n"
    "    top = kit.bounding_box(root).max[1]\n"
    "    part.position = (0.0, float(top) + 0.5, 0.0)\n"
    "    root.add(part)\n"
)

BROKEN_ATTACH = (
    "def attach(root, part):\n"
    "    root.add(part)\n"
    "    raise ValueError('cannot reach the mount point')\n"
)


def make_plan(*specs: tuple[str, list[str]], overview: str = "test object") -> BuildPlan:
    return BuildPlan(
        overview=overview,
        components=[
            ComponentPlan(id=cid, name=f"Part {cid}", description=f"component {cid}", dependencies=deps)
            for cid, deps in specs
        ],
    )


class FakeStage:
    """Render stage that records what it was asked to photograph."""

    def __init__(self, fail_on: set[int] | None = None):
        self._root = None
        self.captures = 0
        self.captured_roots: list[str | None] = []
        self.fail_on = fail_on or set()

    @property
    def root(self):
        return self._root

    def reset(self) -> None:
        self._root = None

    def add(self, node) -> None:
        self._root = node

    async def capture_snapshots(self) -> list[str]:
        self.captures += 1
        self.captured_roots.append(self._root.name if self._root is not None else None)
        if self.captures in self.fail_on:
            raise CaptureError("Capture Error: renderer unavailable")
        return [f"data:image/png;base64,cap{self.captures}v{i}" for i in range(8)]


class FakeOracles:
    """
    Scripted oracle. Per component id:
      codes[id]            construction code returned on each call (last one repeats)
      verdicts[id]         component QC verdicts in order (last one repeats)
      attach_codes[id]     attachment code (last one repeats)
      assembly_verdicts[id]
    """

    def __init__(self, plan: BuildPlan | Exception):
        self._plan = plan
        self.codes: dict[str, list[str]] = {}
        self.verdicts: dict[str, list[QCResult]] = {}
        self.attach_codes: dict[str, list[str]] = {}
        self.assembly_verdicts: dict[str, list[QCResult]] = {}
        self.calls: dict[str, list[dict]] = defaultdict(list)

    @staticmethod
    def _next(script: dict[str, list], key: str, count: int, default):
        items = script.get(key)
        if not items:
            return default
        return items[min(count, len(items) - 1)]

    async def plan(self, prompt):
        self.calls["plan"].append({"prompt": prompt})
        if isinstance(self._plan, Exception):
            raise self._plan
        return self._plan

    async def generate(self, component, previous_code, error_context, context_images):
        n = sum(1 for c in self.calls["generate"] if c["id"] == component.id)
        self.calls["generate"].append({
            "id": component.id,
            "previous_code": previous_code,
            "error_context": error_context,
            "context_images": context_images,
        })
        code = self._next(self.codes, component.id, n, box_code(component.id))
        if isinstance(code, Exception):
            raise code
        return code

    async def judge(self, component, snapshots, context_images):
        n = sum(1 for c in self.calls["judge"] if c["id"] == component.id)
        self.calls["judge"].append({"id": component.id, "snapshots": snapshots, "context_images": context_images})
        return self._next(self.verdicts, component.id, n, PASS)

    async def generate_attachment(
        self, overview, component, assembly_snapshots, part_snapshots, previous_code, error_context,
    ):
        n = sum(1 for c in self.calls["generate_attachment"] if c["id"] == component.id)
        self.calls["generate_attachment"].append({
            "id": component.id,
            "overview": overview,
            "assembly_snapshots": assembly_snapshots,
            "part_snapshots": part_snapshots,
            "previous_code": previous_code,
            "error_context": error_context,
        })
        return self._next(self.attach_codes, component.id, n, STACK_ATTACH)

    async def judge_assembly(self, overview, component, snapshots):
        n = sum(1 for c in self.calls["judge_assembly"] if c["id"] == component.id)
        self.calls["judge_assembly"].append({"id": component.id, "snapshots": snapshots})
        return self._next(self.assembly_verdicts, component.id, n, PASS)


@pytest.fixture
def stage():
    return FakeStage()


@pytest.fixture
def make_run(stage):
    def _make(oracles, **options):
        opts = PipelineOptions(component_settle_seconds=0.0, assembly_settle_seconds=0.0, **options)
        return PipelineRun(oracles=oracles, stage=stage, sandbox=Sandbox(timeout_seconds=5.0), options=opts)
    return _make
