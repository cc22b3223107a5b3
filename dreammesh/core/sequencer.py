"""
Dependency sequencing for assembly.

Depth-first, dependencies first, in plan order. Cycles never fail the run:
the back-edge is skipped and reported. Dependencies that name no plan member
are ignored and reported. The first component of the order is the anchor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from ..schemas import ComponentPlan


@dataclass
class AssemblyOrder:
    order: list[ComponentPlan] = field(default_factory=list)
    back_edges: list[tuple[str, str]] = field(default_factory=list)   # (component, dependency)
    dangling: list[tuple[str, str]] = field(default_factory=list)     # (component, missing id)

    @property
    def anchor_id(self) -> str | None:
        return self.order[0].id if self.order else None

    @property
    def ids(self) -> list[str]:
        return [c.id for c in self.order]


def sequence_components(components: Sequence[ComponentPlan]) -> AssemblyOrder:
    by_id = {c.id: c for c in components}
    visited: set[str] = set()
    in_progress: set[str] = set()
    result = AssemblyOrder()

    def visit(component: ComponentPlan) -> None:
        in_progress.add(component.id)
        for dep_id in component.dependencies:
            if dep_id in visited:
                continue
            if dep_id in in_progress:
                result.back_edges.append((component.id, dep_id))
                continue
            dep = by_id.get(dep_id)
            if dep is None:
                result.dangling.append((component.id, dep_id))
                continue
            visit(dep)
        in_progress.discard(component.id)
        visited.add(component.id)
        result.order.append(component)

    for component in components:
        if component.id not in visited:
            visit(component)
    return result
