"""
Multi-view capture renderer using headless Blender.

The stage is exported to GLB, imported into a clean Blender scene and
photographed from the 8 standard views computed by ``framing.frame_box``.

Scene conventions during capture:
  Background: flat white world (no gradient, no HDRI).
  Lights (Y-up positions, converted to Blender Z-up):
    - Ambient 0.6 approximated by world strength
    - Hemisphere (0xffffff / 0x222222, 0.6) approximated by a soft top sun
    - Key DirectionalLight(0xffffff, 1.0) at (5, 10, 7)
    - Fill DirectionalLight(0xffeedd, 0.5) at (-5, 2, 5)
    - Back DirectionalLight(0xddeeff, 0.5) at (0, 5, -10)
    - Bottom DirectionalLight(0x888888, 0.8) at (0, -10, 0)
  Materials: kept from the GLB (the object's own colours are judged).
  Camera: perspective, vertical FOV from settings, looking at the box centre.

The glTF importer converts Y-up to Z-up, so every position handed to the
script is converted with (x, y, z) -> (x, -z, y).
"""

from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import Sequence

from ..shared.blender_exec import run_blender_script
from ..shared.files import ensure_dir, png_data_uri
from .errors import CaptureError
from .framing import Framing

logger = logging.getLogger(__name__)

VIEW_COUNT = 8

STAGE_LIGHTS = [
    {"name": "Hemi",   "energy": 0.6, "pos": (0, 20, 0),   "color": (1.0, 1.0, 1.0)},
    {"name": "Key",    "energy": 1.0, "pos": (5, 10, 7),   "color": (1.0, 1.0, 1.0)},
    {"name": "Fill",   "energy": 0.5, "pos": (-5, 2, 5),   "color": (1.0, 0.933, 0.867)},
    {"name": "Back",   "energy": 0.5, "pos": (0, 5, -10),  "color": (0.867, 0.933, 1.0)},
    {"name": "Bottom", "energy": 0.8, "pos": (0, -10, 0),  "color": (0.533, 0.533, 0.533)},
]

# Sun strength per unit of three.js DirectionalLight intensity
SUN_ENERGY_SCALE = 3.0
AMBIENT_WORLD_STRENGTH = 0.6


def to_blender(pos: Sequence[float]) -> tuple[float, float, float]:
    x, y, z = (float(v) for v in pos)
    return (x, -z, y)


def build_render_script(
    glb_input_path: str | None,
    output_dir: str,
    framing: Framing,
    resolution: int = 512,
) -> str:
    views = [{"name": v.name, "pos": to_blender(v.position)} for v in framing.views]
    lights = [
        {**light, "pos": to_blender(light["pos"]), "energy": light["energy"] * SUN_ENERGY_SCALE}
        for light in STAGE_LIGHTS
    ]
    target = to_blender(framing.center)

    return f'''
import bpy
import os
import math
from mathutils import Vector

# ─── Configuration ───
GLB_PATH = {glb_input_path!r}
OUTPUT_DIR = r"{output_dir}"
RESOLUTION = {resolution}
VIEWS = {views!r}
LIGHTS = {lights!r}
TARGET = Vector({target!r})
FOV_DEG = {framing.fov_degrees!r}
CLIP_START = {framing.near!r}
CLIP_END = {framing.far!r}

os.makedirs(OUTPUT_DIR, exist_ok=True)

# ─── Clean scene ───
bpy.ops.object.select_all(action='SELECT')
bpy.ops.object.delete(use_global=False)
for block in (bpy.data.meshes, bpy.data.materials, bpy.data.lights,
              bpy.data.cameras, bpy.data.worlds, bpy.data.images):
    for item in list(block):
        block.remove(item)

# ─── Import stage contents ───
if GLB_PATH:
    print(f"[CAPTURE] Importing GLB: {{GLB_PATH}}")
    bpy.ops.import_scene.gltf(filepath=GLB_PATH)
else:
    print("[CAPTURE] Empty stage")

# ─── White world ───
world = bpy.data.worlds.new("CaptureWorld")
bpy.context.scene.world = world
world.use_nodes = True
bg = world.node_tree.nodes.get("Background")
bg.inputs["Color"].default_value = (1.0, 1.0, 1.0, 1.0)
bg.inputs["Strength"].default_value = {AMBIENT_WORLD_STRENGTH!r}

# ─── Lights ───
def add_sun(name, energy, location, color):
    light_data = bpy.data.lights.new(name=name, type='SUN')
    light_data.energy = energy
    light_data.color = color
    light_obj = bpy.data.objects.new(name=name, object_data=light_data)
    bpy.context.collection.objects.link(light_obj)
    light_obj.location = Vector(location)
    direction = Vector((0, 0, 0)) - Vector(location)
    light_obj.rotation_euler = direction.to_track_quat('-Z', 'Y').to_euler()
    return light_obj

for light in LIGHTS:
    add_sun(light["name"], light["energy"], light["pos"], light["color"])

# ─── Camera ───
cam_data = bpy.data.cameras.new(name="CaptureCam")
cam_data.type = 'PERSP'
cam_data.sensor_fit = 'VERTICAL'
cam_data.angle = math.radians(FOV_DEG)
cam_data.clip_start = CLIP_START
cam_data.clip_end = CLIP_END

cam_obj = bpy.data.objects.new(name="CaptureCam", object_data=cam_data)
bpy.context.collection.objects.link(cam_obj)
bpy.context.scene.camera = cam_obj

# ─── Render settings ───
scene = bpy.context.scene
engines = [e.identifier for e in bpy.types.RenderSettings.bl_rna.properties['engine'].enum_items]
if 'BLENDER_EEVEE_NEXT' in engines:
    scene.render.engine = 'BLENDER_EEVEE_NEXT'
elif 'BLENDER_EEVEE' in engines:
    scene.render.engine = 'BLENDER_EEVEE'

scene.render.resolution_x = RESOLUTION
scene.render.resolution_y = RESOLUTION
scene.render.resolution_percentage = 100
scene.render.image_settings.file_format = 'PNG'
scene.render.image_settings.color_mode = 'RGB'
scene.render.film_transparent = False
scene.view_settings.view_transform = 'Standard'

# ─── Render each view ───
rendered_count = 0
for view in VIEWS:
    name = view["name"]
    pos = Vector(view["pos"])
    cam_obj.location = pos
    direction = TARGET - pos
    cam_obj.rotation_euler = direction.to_track_quat('-Z', 'Y').to_euler()
    bpy.context.view_layer.update()

    output_path = os.path.join(OUTPUT_DIR, f"{{name}}.png")
    scene.render.filepath = output_path
    bpy.ops.render.render(write_still=True)

    if os.path.isfile(output_path):
        rendered_count += 1
        print(f"[CAPTURE] OK: {{name}}.png")
    else:
        print(f"[CAPTURE] FAILED: {{name}}.png not written")

print(f"[CAPTURE] COMPLETE: {{rendered_count}}/{{len(VIEWS)}} views rendered")
'''


async def render_views(
    glb_path: str | None,
    render_dir: Path,
    framing: Framing,
    blender_executable: str,
    blender_timeout: int = 180,
    resolution: int = 512,
    label: str = "capture",
) -> list[str]:
    """
    Execute the capture script and return the 8 PNGs as data URIs, in view order.

    Raises ``CaptureError`` when Blender fails or fewer than 8 views come back.
    """
    render_id = f"{label}_{uuid.uuid4().hex[:10]}_{int(time.time())}"
    output_dir = ensure_dir(render_dir / render_id)

    script_path = output_dir / "render_script.py"
    script_path.write_text(build_render_script(
        glb_input_path=glb_path,
        output_dir=str(output_dir),
        framing=framing,
        resolution=resolution,
    ))

    exec_result = await run_blender_script(
        script_path=str(script_path),
        blender_executable=blender_executable,
        timeout=blender_timeout,
    )

    images: list[str] = []
    for view in framing.views:
        png_path = output_dir / f"{view.name}.png"
        if png_path.is_file():
            images.append(png_data_uri(png_path))
        else:
            logger.warning("Missing capture: %s", png_path)

    if len(images) < VIEW_COUNT:
        if exec_result.timed_out:
            detail = f"Blender timed out after {blender_timeout}s"
        else:
            detail = exec_result.tail(500) or "no output"
        logger.error(
            "Capture failed (code=%d, %.1fs, %d/%d views): %s",
            exec_result.returncode, exec_result.elapsed, len(images), VIEW_COUNT, detail,
        )
        raise CaptureError(f"Capture Error: only {len(images)}/{VIEW_COUNT} views rendered ({detail})")

    logger.info(
        "Captured %d views in %.1fs (res=%d, distance=%.2f)",
        len(images), exec_result.elapsed, resolution, framing.distance,
    )
    return images
