import io

import pytest
import trimesh

from dreammesh.core.exporter import export_tree, flatten, tree_to_scene, write_exports
from dreammesh.core.toolkit import Kit

kit = Kit()


def _assembly():
    body = kit.box(2, 1, 1, material=kit.material("#336699"), name="body")
    wheel = kit.cylinder(0.3, 0.2, name="wheel")
    wheel.position = (0.8, -0.5, 0.5)
    twin = wheel.clone()
    twin.position = (-0.8, -0.5, 0.5)
    body.add(wheel, twin)
    return body


def test_scene_keeps_one_node_per_mesh_with_unique_names():
    scene = tree_to_scene(_assembly())
    assert sorted(scene.graph.nodes_geometry) == ["body", "wheel", "wheel_1"]


def test_flatten_bakes_world_transforms():
    mesh = flatten(_assembly())
    assert mesh.bounds[0][1] == pytest.approx(-0.6)
    assert mesh.bounds[1][0] == pytest.approx(1.1)


def test_glb_round_trips_through_trimesh():
    data = export_tree(_assembly(), "glb")
    assert data[:4] == b"glTF"
    loaded = trimesh.load(io.BytesIO(data), file_type="glb")
    assert len(loaded.geometry) == 3


@pytest.mark.parametrize("fmt", ["obj", "stl", "STL"])
def test_mesh_formats_are_bytes(fmt):
    data = export_tree(_assembly(), fmt)
    assert isinstance(data, bytes) and len(data) > 0


def test_empty_tree_cannot_be_exported():
    with pytest.raises(ValueError):
        export_tree(kit.group("empty"), "glb")
    with pytest.raises(ValueError):
        export_tree(kit.group("empty"), "stl")


def test_unknown_format_is_rejected():
    with pytest.raises(ValueError, match="Unsupported"):
        export_tree(_assembly(), "fbx")


def test_write_exports(tmp_path):
    written = write_exports(_assembly(), tmp_path / "out", ["glb", "obj"])
    assert set(written) == {"glb", "obj"}
    assert (tmp_path / "out" / "asset.glb").stat().st_size > 0
    assert written["obj"].endswith("asset.obj")
