"""
Scene graph for generated geometry.

``SceneNode`` is the constructed-object handle shared by the sandbox, the
render stage and the exporters: a local transform (position, XYZ Euler
rotation in radians, scale), an optional ``trimesh.Trimesh`` with a material,
and parent/child containment. Coordinates are Y-up, 1 unit = 1 metre.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator

import numpy as np
import trimesh


@dataclass(frozen=True)
class Material:
    color: tuple[float, float, float] = (0.8, 0.8, 0.8)
    metalness: float = 0.0
    roughness: float = 0.5
    opacity: float = 1.0

    @property
    def rgba(self) -> list[float]:
        return [*self.color, self.opacity]


DEFAULT_MATERIAL = Material()


@dataclass(frozen=True)
class BoundingBox:
    """World-space axis-aligned box. ``min > max`` on every axis means empty."""

    min: np.ndarray
    max: np.ndarray

    @classmethod
    def empty(cls) -> "BoundingBox":
        return cls(np.full(3, np.inf), np.full(3, -np.inf))

    @classmethod
    def from_points(cls, points: np.ndarray) -> "BoundingBox":
        if len(points) == 0:
            return cls.empty()
        return cls(points.min(axis=0), points.max(axis=0))

    @property
    def is_empty(self) -> bool:
        return bool(np.any(self.max < self.min))

    @property
    def size(self) -> np.ndarray:
        if self.is_empty:
            return np.zeros(3)
        return self.max - self.min

    @property
    def center(self) -> np.ndarray:
        if self.is_empty:
            return np.zeros(3)
        return (self.min + self.max) / 2.0

    @property
    def max_extent(self) -> float:
        return float(self.size.max())

    def union(self, other: "BoundingBox") -> "BoundingBox":
        return BoundingBox(np.minimum(self.min, other.min), np.maximum(self.max, other.max))


def _vec3(value, name: str) -> np.ndarray:
    if np.isscalar(value):
        arr = np.full(3, float(value))
    else:
        arr = np.asarray(value, dtype=float).reshape(-1)
        if arr.shape != (3,):
            raise ValueError(f"{name} needs 3 components, got {arr.shape[0]}")
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{name} must be finite")
    return arr


def euler_matrix(rotation: np.ndarray) -> np.ndarray:
    """3x3 rotation for intrinsic XYZ Euler angles (R = Rx · Ry · Rz)."""
    x, y, z = rotation
    cx, sx = math.cos(x), math.sin(x)
    cy, sy = math.cos(y), math.sin(y)
    cz, sz = math.cos(z), math.sin(z)
    rx = np.array([[1, 0, 0], [0, cx, -sx], [0, sx, cx]])
    ry = np.array([[cy, 0, sy], [0, 1, 0], [-sy, 0, cy]])
    rz = np.array([[cz, -sz, 0], [sz, cz, 0], [0, 0, 1]])
    return rx @ ry @ rz


class SceneNode:
    """A renderable sub-tree: a group, or a mesh with children."""

    def __init__(
        self,
        name: str = "node",
        mesh: trimesh.Trimesh | None = None,
        material: Material | None = None,
    ):
        self.name = name
        self.mesh = mesh
        self.material = material or DEFAULT_MATERIAL
        self.parent: SceneNode | None = None
        self.children: list[SceneNode] = []
        self._position = np.zeros(3)
        self._rotation = np.zeros(3)
        self._scale = np.ones(3)

    def __repr__(self) -> str:
        kind = "mesh" if self.mesh is not None else "group"
        return f"<SceneNode {self.name!r} {kind} children={len(self.children)}>"

    # -- transform -----------------------------------------------------------

    @property
    def position(self) -> np.ndarray:
        return self._position

    @position.setter
    def position(self, value) -> None:
        self._position = _vec3(value, "position")

    @property
    def rotation(self) -> np.ndarray:
        return self._rotation

    @rotation.setter
    def rotation(self, value) -> None:
        self._rotation = _vec3(value, "rotation")

    @property
    def scale(self) -> np.ndarray:
        return self._scale

    @scale.setter
    def scale(self, value) -> None:
        self._scale = _vec3(value, "scale")

    def local_matrix(self) -> np.ndarray:
        m = np.eye(4)
        m[:3, :3] = euler_matrix(self._rotation) * self._scale
        m[:3, 3] = self._position
        return m

    def world_matrix(self) -> np.ndarray:
        m = self.local_matrix()
        node = self.parent
        while node is not None:
            m = node.local_matrix() @ m
            node = node.parent
        return m

    # -- hierarchy -----------------------------------------------------------

    def add(self, *nodes: "SceneNode") -> "SceneNode":
        """Attach ``nodes`` as children, detaching them from any previous parent."""
        for node in nodes:
            if not isinstance(node, SceneNode):
                raise TypeError(f"can only add SceneNode, got {type(node).__name__}")
            ancestor: SceneNode | None = self
            while ancestor is not None:
                if ancestor is node:
                    raise ValueError(f"adding {node.name!r} to {self.name!r} would create a cycle")
                ancestor = ancestor.parent
            if node.parent is not None:
                node.parent.remove(node)
            node.parent = self
            self.children.append(node)
        return self

    def remove(self, node: "SceneNode") -> None:
        if node in self.children:
            self.children.remove(node)
            node.parent = None

    def clear(self) -> None:
        for child in self.children:
            child.parent = None
        self.children = []

    def traverse(self) -> Iterator["SceneNode"]:
        yield self
        for child in self.children:
            yield from child.traverse()

    def find(self, name: str) -> "SceneNode | None":
        for node in self.traverse():
            if node.name == name:
                return node
        return None

    def clone(self) -> "SceneNode":
        """Deep copy: transforms, children and mesh geometry are all copied."""
        copy = SceneNode(
            self.name,
            mesh=self.mesh.copy() if self.mesh is not None else None,
            material=self.material,
        )
        copy._position = self._position.copy()
        copy._rotation = self._rotation.copy()
        copy._scale = self._scale.copy()
        for child in self.children:
            copy.add(child.clone())
        return copy

    # -- geometry ------------------------------------------------------------

    def world_meshes(self) -> Iterator[tuple["SceneNode", np.ndarray]]:
        """Yield (node, world_matrix) for every mesh in this sub-tree."""
        stack = [(self, self.world_matrix())]
        while stack:
            node, matrix = stack.pop()
            if node.mesh is not None and len(node.mesh.vertices):
                yield node, matrix
            for child in reversed(node.children):
                stack.append((child, matrix @ child.local_matrix()))

    def bounding_box(self) -> BoundingBox:
        box = BoundingBox.empty()
        for node, matrix in self.world_meshes():
            points = trimesh.transformations.transform_points(node.mesh.vertices, matrix)
            box = box.union(BoundingBox.from_points(points))
        return box

    def mesh_count(self) -> int:
        return sum(1 for _ in self.world_meshes())

    def state(self) -> tuple:
        """Hashable snapshot of children identity and transform."""
        return (
            tuple(id(c) for c in self.children),
            tuple(self._position.tolist()),
            tuple(self._rotation.tolist()),
            tuple(self._scale.tolist()),
        )
