"""
Render stage: the shared workspace every capture photographs.

The stage holds one root at a time. ``capture_snapshots`` frames the
current contents with the standard 8 views and returns them as PNG data
URIs in view order. Settle delays are the caller's business.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol

from ..config import DreamMeshSettings
from ..shared.files import ensure_dir
from .exporter import tree_to_scene
from .framing import frame_box
from .renderer import render_views
from .scene import BoundingBox, SceneNode

logger = logging.getLogger(__name__)


class RenderStage(Protocol):
    def reset(self) -> None: ...

    def add(self, node: SceneNode) -> None: ...

    @property
    def root(self) -> SceneNode | None: ...

    async def capture_snapshots(self) -> list[str]: ...


class BlenderStage:
    """Stage backed by a headless Blender render of the exported GLB."""

    def __init__(
        self,
        blender_executable: str,
        render_dir: Path,
        blender_timeout: int = 180,
        resolution: int = 512,
        fov_degrees: float = 45.0,
        padding: float = 1.5,
        fallback_distance: float = 5.0,
    ):
        self.blender_executable = blender_executable
        self.render_dir = render_dir
        self.blender_timeout = blender_timeout
        self.resolution = resolution
        self.fov_degrees = fov_degrees
        self.padding = padding
        self.fallback_distance = fallback_distance
        self._root: SceneNode | None = None
        self._captures = 0

    @classmethod
    def from_settings(cls, settings: DreamMeshSettings, session_id: str) -> "BlenderStage":
        return cls(
            blender_executable=str(settings.blender_executable),
            render_dir=settings.renders_dir / session_id,
            blender_timeout=settings.blender_timeout_seconds,
            resolution=settings.render_resolution,
            fov_degrees=settings.camera_fov_degrees,
            padding=settings.framing_padding,
            fallback_distance=settings.fallback_camera_distance,
        )

    @property
    def root(self) -> SceneNode | None:
        return self._root

    def reset(self) -> None:
        self._root = None

    def add(self, node: SceneNode) -> None:
        self._root = node

    async def capture_snapshots(self) -> list[str]:
        root = self._root
        box = root.bounding_box() if root is not None else BoundingBox.empty()
        framing = frame_box(box, self.fov_degrees, self.padding, self.fallback_distance)

        self._captures += 1
        label = f"capture{self._captures:03d}"
        capture_dir = ensure_dir(self.render_dir)

        glb_path: str | None = None
        if root is not None and root.mesh_count() > 0:
            glb_file = capture_dir / f"{label}.glb"
            loop = asyncio.get_running_loop()
            data = await loop.run_in_executor(None, lambda: tree_to_scene(root).export(file_type="glb"))
            glb_file.write_bytes(data)
            glb_path = str(glb_file)

        logger.info(
            "[CAPTURE] %s root=%s distance=%.2f",
            label, root.name if root is not None else "<empty>", framing.distance,
        )
        return await render_views(
            glb_path=glb_path,
            render_dir=capture_dir,
            framing=framing,
            blender_executable=self.blender_executable,
            blender_timeout=self.blender_timeout,
            resolution=self.resolution,
            label=label,
        )
