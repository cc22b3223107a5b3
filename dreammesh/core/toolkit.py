"""
Construction toolkit injected into generated code as ``kit``.

This is the entire capability surface generated construction and attachment
logic gets: primitive factories backed by ``trimesh.creation``, groups,
materials and bounding boxes. Every factory returns a ``SceneNode`` whose
geometry is centred on the local origin with Y as the up axis.
"""

from __future__ import annotations

import math
from typing import Any, Sequence

import numpy as np
import trimesh

from .scene import BoundingBox, Material, SceneNode

# trimesh builds axial primitives along +Z; rotate them onto +Y.
_Z_TO_Y = trimesh.transformations.rotation_matrix(-math.pi / 2, [1, 0, 0])

_MAX_SECTIONS = 256
_MAX_SUBDIVISIONS = 5


def _parse_color(color: Any) -> tuple[float, float, float]:
    if isinstance(color, str):
        value = color.strip().lstrip("#")
        if len(value) == 3:
            value = "".join(ch * 2 for ch in value)
        if len(value) != 6:
            raise ValueError(f"colour must be '#rrggbb', got {color!r}")
        return tuple(int(value[i:i + 2], 16) / 255.0 for i in (0, 2, 4))  # type: ignore[return-value]
    if isinstance(color, int):
        return ((color >> 16 & 0xFF) / 255.0, (color >> 8 & 0xFF) / 255.0, (color & 0xFF) / 255.0)
    rgb = [float(c) for c in color][:3]
    if len(rgb) != 3:
        raise ValueError("colour needs 3 channels")
    if max(rgb) > 1.0:
        rgb = [c / 255.0 for c in rgb]
    return tuple(min(1.0, max(0.0, c)) for c in rgb)  # type: ignore[return-value]


def _positive(value: float, name: str) -> float:
    value = float(value)
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"{name} must be a positive finite number, got {value}")
    return value


def _sections(value: int) -> int:
    return max(3, min(_MAX_SECTIONS, int(value)))


class Kit:
    """Geometry and material factory handed to generated code."""

    def material(
        self,
        color: Any = "#cccccc",
        metalness: float = 0.0,
        roughness: float = 0.5,
        opacity: float = 1.0,
    ) -> Material:
        return Material(
            color=_parse_color(color),
            metalness=min(1.0, max(0.0, float(metalness))),
            roughness=min(1.0, max(0.0, float(roughness))),
            opacity=min(1.0, max(0.0, float(opacity))),
        )

    def group(self, name: str = "group", children: Sequence[SceneNode] = ()) -> SceneNode:
        node = SceneNode(name)
        if children:
            node.add(*children)
        return node

    def mesh(
        self,
        vertices: Any,
        faces: Any,
        material: Material | None = None,
        name: str = "mesh",
    ) -> SceneNode:
        verts = np.asarray(vertices, dtype=float)
        tris = np.asarray(faces, dtype=np.int64)
        if verts.ndim != 2 or verts.shape[1] != 3:
            raise ValueError("vertices must be an (n, 3) array")
        if tris.ndim != 2 or tris.shape[1] != 3:
            raise ValueError("faces must be an (m, 3) array of vertex indices")
        if len(tris) and (tris.min() < 0 or tris.max() >= len(verts)):
            raise ValueError("face index out of range")
        return SceneNode(name, trimesh.Trimesh(vertices=verts, faces=tris, process=False), material)

    def box(self, width: float = 1.0, height: float = 1.0, depth: float = 1.0,
            material: Material | None = None, name: str = "box") -> SceneNode:
        extents = [_positive(width, "width"), _positive(height, "height"), _positive(depth, "depth")]
        return SceneNode(name, trimesh.creation.box(extents=extents), material)

    def sphere(self, radius: float = 0.5, subdivisions: int = 3,
               material: Material | None = None, name: str = "sphere") -> SceneNode:
        subdivisions = max(0, min(_MAX_SUBDIVISIONS, int(subdivisions)))
        mesh = trimesh.creation.icosphere(subdivisions=subdivisions, radius=_positive(radius, "radius"))
        return SceneNode(name, mesh, material)

    def cylinder(self, radius: float = 0.5, height: float = 1.0, sections: int = 32,
                 material: Material | None = None, name: str = "cylinder") -> SceneNode:
        mesh = trimesh.creation.cylinder(
            radius=_positive(radius, "radius"),
            height=_positive(height, "height"),
            sections=_sections(sections),
        )
        mesh.apply_transform(_Z_TO_Y)
        return SceneNode(name, mesh, material)

    def cone(self, radius: float = 0.5, height: float = 1.0, sections: int = 32,
             material: Material | None = None, name: str = "cone") -> SceneNode:
        height = _positive(height, "height")
        mesh = trimesh.creation.cone(radius=_positive(radius, "radius"), height=height,
                                     sections=_sections(sections))
        mesh.apply_translation([0, 0, -height / 2.0])
        mesh.apply_transform(_Z_TO_Y)
        return SceneNode(name, mesh, material)

    def capsule(self, radius: float = 0.25, height: float = 1.0,
                material: Material | None = None, name: str = "capsule") -> SceneNode:
        mesh = trimesh.creation.capsule(height=_positive(height, "height"), radius=_positive(radius, "radius"))
        mesh.apply_translation(-mesh.bounds.mean(axis=0))
        mesh.apply_transform(_Z_TO_Y)
        return SceneNode(name, mesh, material)

    def torus(self, major_radius: float = 0.5, minor_radius: float = 0.1, sections: int = 32,
              material: Material | None = None, name: str = "torus") -> SceneNode:
        """Ring lying in the XY plane, like a wheel facing +Z."""
        mesh = trimesh.creation.torus(
            major_radius=_positive(major_radius, "major_radius"),
            minor_radius=_positive(minor_radius, "minor_radius"),
            major_sections=_sections(sections),
            minor_sections=_sections(sections // 2),
        )
        return SceneNode(name, mesh, material)

    def lathe(self, profile: Any, sections: int = 32,
              material: Material | None = None, name: str = "lathe") -> SceneNode:
        """Revolve a list of (radius, y) points around the Y axis."""
        points = np.asarray(profile, dtype=float)
        if points.ndim != 2 or points.shape[1] != 2 or len(points) < 2:
            raise ValueError("profile must be at least two (radius, y) points")
        if np.any(points[:, 0] < 0):
            raise ValueError("lathe radii must be >= 0")
        mesh = trimesh.creation.revolve(points, sections=_sections(sections))
        mesh.apply_transform(_Z_TO_Y)
        return SceneNode(name, mesh, material)

    def bounding_box(self, node: SceneNode) -> BoundingBox:
        return node.bounding_box()
