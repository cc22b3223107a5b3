"""
Standardized multi-view framing.

Every QC decision, component or assembly, is made from the same 8 views:
the normalised cube-corner directions around the bounding-box centre, at a
distance that fits the object in the camera's field of view with 50%
padding. The order is fixed so feedback stays comparable across retries.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

from .scene import BoundingBox

DEFAULT_FOV_DEGREES = 45.0
DEFAULT_PADDING = 1.5
DEFAULT_DISTANCE = 5.0
MIN_DISTANCE = 0.1


def _direction_name(x: int, y: int, z: int) -> str:
    return "".join(f"{'+' if s > 0 else '-'}{axis}" for s, axis in ((x, "x"), (y, "y"), (z, "z")))


VIEW_DIRECTIONS: list[tuple[str, np.ndarray]] = [
    (_direction_name(x, y, z), np.array([x, y, z], dtype=float) / math.sqrt(3.0))
    for x in (1, -1)
    for y in (1, -1)
    for z in (1, -1)
]


@dataclass(frozen=True)
class CameraView:
    name: str
    position: tuple[float, float, float]


@dataclass(frozen=True)
class Framing:
    center: tuple[float, float, float]
    distance: float
    near: float
    far: float
    fov_degrees: float
    views: tuple[CameraView, ...]


def camera_distance(
    max_extent: float,
    fov_degrees: float = DEFAULT_FOV_DEGREES,
    padding: float = DEFAULT_PADDING,
    fallback: float = DEFAULT_DISTANCE,
) -> float:
    """Distance that fits ``max_extent`` in the vertical FOV, or ``fallback`` when degenerate."""
    fov = math.radians(fov_degrees)
    try:
        distance = abs(max_extent / (2.0 * math.tan(fov / 2.0))) * padding
    except (ZeroDivisionError, OverflowError):
        return fallback
    if max_extent == 0 or not math.isfinite(distance) or distance < MIN_DISTANCE:
        return fallback
    return distance


def frame_box(
    box: BoundingBox,
    fov_degrees: float = DEFAULT_FOV_DEGREES,
    padding: float = DEFAULT_PADDING,
    fallback: float = DEFAULT_DISTANCE,
) -> Framing:
    center = box.center
    if not np.all(np.isfinite(center)):
        center = np.zeros(3)
    distance = camera_distance(box.max_extent, fov_degrees, padding, fallback)
    views = tuple(
        CameraView(name, tuple(float(v) for v in center + direction * distance))
        for name, direction in VIEW_DIRECTIONS
    )
    return Framing(
        center=tuple(float(v) for v in center),
        distance=distance,
        near=max(0.01, distance / 100.0),
        far=max(1000.0, distance * 10.0),
        fov_degrees=fov_degrees,
        views=views,
    )
