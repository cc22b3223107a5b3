import math

import numpy as np
import pytest

from dreammesh.core.framing import VIEW_DIRECTIONS, camera_distance, frame_box
from dreammesh.core.scene import BoundingBox


def test_eight_normalised_corner_directions_in_fixed_order():
    names = [name for name, _ in VIEW_DIRECTIONS]
    assert names == [
        "+x+y+z", "+x+y-z", "+x-y+z", "+x-y-z",
        "-x+y+z", "-x+y-z", "-x-y+z", "-x-y-z",
    ]
    for _, direction in VIEW_DIRECTIONS:
        assert np.linalg.norm(direction) == pytest.approx(1.0)
        assert np.allclose(np.abs(direction), 1 / math.sqrt(3))


def test_distance_fits_extent_in_fov_with_padding():
    expected = abs(2.0 / (2 * math.tan(math.radians(45) / 2))) * 1.5
    assert camera_distance(2.0, 45.0) == pytest.approx(expected)


@pytest.mark.parametrize("extent", [0.0, float("nan"), float("inf"), 0.01])
def test_degenerate_extent_falls_back(extent):
    assert camera_distance(extent, 45.0, fallback=5.0) == 5.0


def test_single_point_box_uses_fallback_distance():
    box = BoundingBox.from_points(np.array([[1.0, 1.0, 1.0]]))
    framing = frame_box(box, fov_degrees=45.0, fallback=5.0)
    assert framing.distance == 5.0
    assert framing.center == (1.0, 1.0, 1.0)
    for view in framing.views:
        offset = np.array(view.position) - np.array(framing.center)
        assert np.linalg.norm(offset) == pytest.approx(5.0)
        assert all(math.isfinite(v) for v in view.position)


def test_empty_box_frames_origin():
    framing = frame_box(BoundingBox.empty())
    assert framing.center == (0.0, 0.0, 0.0)
    assert framing.distance == 5.0


def test_clip_planes():
    box = BoundingBox(np.array([-50.0, -50.0, -50.0]), np.array([50.0, 50.0, 50.0]))
    framing = frame_box(box, fov_degrees=45.0)
    assert framing.near == pytest.approx(framing.distance / 100)
    assert framing.far == pytest.approx(max(1000.0, framing.distance * 10))

    small = frame_box(BoundingBox(np.zeros(3), np.full(3, 0.5)))
    assert small.near == pytest.approx(max(0.01, small.distance / 100))
    assert small.far == 1000.0


def test_views_surround_the_centre():
    box = BoundingBox(np.array([0.0, 0.0, 0.0]), np.array([2.0, 4.0, 2.0]))
    framing = frame_box(box)
    first = framing.views[0]
    assert first.name == "+x+y+z"
    offset = np.array(first.position) - np.array(framing.center)
    assert np.all(offset > 0)
    assert framing.views[-1].name == "-x-y-z"
