"""
Scene-graph export via trimesh.

- ``tree_to_scene`` keeps one node per mesh (world transform, PBR material)
  and is what GLB captures and GLB exports use.
- ``flatten`` bakes every transform into a single mesh with per-face
  colours for OBJ / STL.
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import trimesh

from ..shared.files import ensure_dir
from .scene import Material, SceneNode

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("glb", "obj", "stl")


def _pbr(material: Material) -> trimesh.visual.material.PBRMaterial:
    return trimesh.visual.material.PBRMaterial(
        baseColorFactor=material.rgba,
        metallicFactor=material.metalness,
        roughnessFactor=material.roughness,
        alphaMode="BLEND" if material.opacity < 1.0 else "OPAQUE",
        doubleSided=True,
    )


def tree_to_scene(root: SceneNode) -> trimesh.Scene:
    scene = trimesh.Scene()
    used: dict[str, int] = {}
    for node, matrix in root.world_meshes():
        count = used.get(node.name, 0)
        used[node.name] = count + 1
        node_name = node.name if count == 0 else f"{node.name}_{count}"

        mesh = node.mesh.copy()
        mesh.visual = trimesh.visual.TextureVisuals(material=_pbr(node.material))
        scene.add_geometry(mesh, node_name=node_name, geom_name=node_name, transform=matrix)
    return scene


def flatten(root: SceneNode) -> trimesh.Trimesh:
    parts: list[trimesh.Trimesh] = []
    for node, matrix in root.world_meshes():
        mesh = node.mesh.copy()
        mesh.apply_transform(matrix)
        rgba = (np.asarray(node.material.rgba) * 255).round().astype(np.uint8)
        mesh.visual = trimesh.visual.ColorVisuals(mesh, face_colors=np.tile(rgba, (len(mesh.faces), 1)))
        parts.append(mesh)
    if not parts:
        raise ValueError(f"Nothing to export: '{root.name}' has no geometry")
    return trimesh.util.concatenate(parts)


def export_tree(root: SceneNode, fmt: str = "glb") -> bytes:
    fmt = fmt.lower()
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format: {fmt}")
    if fmt == "glb":
        scene = tree_to_scene(root)
        if not scene.geometry:
            raise ValueError(f"Nothing to export: '{root.name}' has no geometry")
        data = scene.export(file_type="glb")
    else:
        data = flatten(root).export(file_type=fmt)
    if isinstance(data, str):
        data = data.encode("utf-8")
    return data


def write_exports(root: SceneNode, out_dir: Path, formats: list[str], stem: str = "asset") -> dict[str, str]:
    """Write one file per format; returns {format: path}."""
    ensure_dir(out_dir)
    written: dict[str, str] = {}
    for fmt in formats:
        path = out_dir / f"{stem}.{fmt.lower()}"
        path.write_bytes(export_tree(root, fmt))
        written[fmt.lower()] = str(path)
        logger.info("Exported %s (%d bytes)", path.name, path.stat().st_size)
    return written
