"""
Prompt templates for planning, component generation, visual QC and
attachment.

Builders return an ordered list of request parts: text strings and
``data:image/...`` URIs, in the order the oracle should read them.
"""

from __future__ import annotations

from ..schemas import ComponentPlan


# ---------------------------------------------------------------------------
# Shared toolkit reference
# ---------------------------------------------------------------------------

KIT_REFERENCE = """TOOLKIT (the only API available, passed in as `kit`; `math` and `np` are also in scope):
  kit.material(color="#rrggbb", metalness=0.0, roughness=0.5, opacity=1.0) -> Material
  kit.box(width, height, depth, material=None, name="box")
  kit.sphere(radius, subdivisions=3, material=None, name="sphere")
  kit.cylinder(radius, height, sections=32, material=None, name="cylinder")      # axis along +Y
  kit.cone(radius, height, sections=32, material=None, name="cone")              # tip at +Y
  kit.capsule(radius, height, material=None, name="capsule")                     # axis along +Y
  kit.torus(major_radius, minor_radius, sections=32, material=None, name="torus")  # ring in the XY plane
  kit.lathe([(radius, y), ...], sections=32, material=None, name="lathe")        # revolved around +Y
  kit.mesh(vertices, faces, material=None, name="mesh")                           # (n,3) floats, (m,3) ints
  kit.group(name="group", children=[...])
  kit.bounding_box(node) -> box with .min, .max, .size, .center (numpy arrays), .max_extent

  Every factory returns a node with:
    node.position = (x, y, z)      node.rotation = (rx, ry, rz)  # radians, XYZ order
    node.scale = (sx, sy, sz)      node.add(child, ...)          node.clone()
    node.children                  node.name

  `np` offers array math only (array/linspace/stack, trig, sqrt, min/max, dot/cross,
  linalg.norm and similar). There is no file access, no str.format and no imports;
  use f-strings.

  Coordinates are Y-up, 1 unit = 1 metre. Geometry is centred on the local origin."""


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

PLANNER_SYSTEM = """You are a Senior 3D Graphics Architect.
Your goal is to decompose a user's request for a 3D object into a structured build plan.
Nothing can be imported: every part is built procedurally from primitives, lathed profiles,
or math-based custom meshes using a small Python toolkit.

Break the object down into logical, distinct components (e.g. for a "Car": Chassis, Wheels, Body, Windows).
Limit to 5-7 major components to keep the build stable.
List the structural base first. `dependencies` holds the ids of the components a part attaches to."""

PLAN_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "overview": {"type": "STRING", "description": "Brief strategy for the procedural generation"},
        "components": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "id": {"type": "STRING"},
                    "name": {"type": "STRING"},
                    "description": {"type": "STRING", "description": "Detailed visual description for the generator"},
                    "geometryType": {"type": "STRING", "description": "e.g. box, lathe, custom mesh"},
                    "materialType": {"type": "STRING", "description": "e.g. brushed metal, matte plastic"},
                    "dependencies": {
                        "type": "ARRAY",
                        "items": {"type": "STRING"},
                        "description": "IDs of components this attaches to",
                    },
                },
                "required": ["id", "name", "description", "geometryType", "materialType", "dependencies"],
            },
        },
    },
    "required": ["overview", "components"],
}

QC_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "passed": {"type": "BOOLEAN"},
        "feedback": {"type": "STRING", "description": "Specific instructions on what to fix if failed, or praise if passed."},
        "score": {"type": "INTEGER"},
    },
    "required": ["passed", "feedback", "score"],
}


def build_plan_prompt(user_prompt: str) -> list[str]:
    return [f"Object to build: {user_prompt}"]


# ---------------------------------------------------------------------------
# Component generation
# ---------------------------------------------------------------------------

COMPONENT_SYSTEM = f"""You are an autonomous 3D component code generator.
Your task: write a Python function that builds one specific 3D component.

RULES:
- The function MUST be named `create_part` and take a single argument `kit`.
- It MUST return the node it built (a mesh node or a kit.group of nodes).
- Do NOT import anything. Do NOT read or write files. Do NOT use names starting with "_".
- Do NOT create cameras, lights or scenes. These are pre-configured.
- Give every part a material that reads well (kit.material with colour, metalness, roughness).
- Keep the component centred at (0, 0, 0) with a realistic size in metres.
- Return ONLY the Python code block.

{KIT_REFERENCE}"""


def build_component_prompt(
    component: ComponentPlan,
    previous_code: str | None,
    error_context: str | None,
    context_images: list[str],
) -> list[str]:
    text = f'Create a component: "{component.name}". Description: {component.description}.'
    if component.geometry_type:
        text += f"\nSuggested geometry: {component.geometry_type}."
    if component.material_type:
        text += f"\nSuggested material: {component.material_type}."

    if error_context:
        text += f"\n\nPREVIOUS ATTEMPT FAILED.\nError/Feedback: {error_context}"
        if previous_code:
            text += f"\n\nPrevious Code:\n```python\n{previous_code}\n```"
        text += "\n\nFIX THE CODE."

    parts = [text]
    if context_images:
        parts.append(
            "VISUAL CONTEXT: Below are images of the parts generated so far for this model. "
            "Keep the new part stylistically consistent (scale, detail level, aesthetics) with them."
        )
        parts.extend(context_images)
    return parts


# ---------------------------------------------------------------------------
# Component QC
# ---------------------------------------------------------------------------

def build_component_qc_prompt(
    component: ComponentPlan,
    images: list[str],
    context_images: list[str],
) -> list[str]:
    text = f"""You are a Visual Quality Control Agent for a 3D pipeline.
Subject: "{component.name}"

Analyze these 8 viewpoints captured from the corners of the object's bounding box.

CRITICAL INSTRUCTIONS:
1. IGNORE SHADOWS: the stage uses directional lighting. Dark areas and gradients are EXPECTED.
2. FOCUS ON GEOMETRY: only fail the part for clear geometric defects (fragmented mesh, exploded vertices, missing faces).
3. IGNORE COLOR/LIGHTING: do not judge the lighting quality.

Check for:
1. Structural integrity (is it a solid, coherent object?)
2. Visual artifacts (severe z-fighting, reversed normals)
3. Relevance (does it look like a {component.name}?)"""

    if context_images:
        text += (
            "\n4. CONSISTENCY: compare with the CONTEXT IMAGES. "
            "Does this part fit the style and scale of the rest of the model?"
        )
    text += "\n\nReturn JSON."

    parts = [*images, text]
    if context_images:
        parts.append("CONTEXT IMAGES (previously verified parts):")
        parts.extend(context_images)
    return parts


# ---------------------------------------------------------------------------
# Attachment
# ---------------------------------------------------------------------------

ATTACHMENT_SYSTEM = f"""You are an expert 3D Assembly Engineer.

TASK: write a Python function `attach(root, part)` that attaches a NEW PART to an EXISTING ASSEMBLY.

CONTEXT:
- `root` is the assembly so far. Do NOT move the root.
- `part` is the new component, currently at (0, 0, 0).
- You must MOVE, ROTATE and SCALE `part` to fit onto `root` correctly.

INSTRUCTIONS:
1. Analyze bounding boxes: `kit.bounding_box(root)` and `kit.bounding_box(part)`.
2. Rescale `part` to a logical size relative to `root` (e.g. a door fits within the height of a house).
3. Move `part` to the correct location on `root` and rotate it if needed (wheels face outward).
4. Duplication: if the part name implies several instances (wheels, headlights, propellers) and `part`
   is a single object, use `part.clone()` for each extra instance and position every copy.
   If the PART TO ATTACH images already show a pair or group, treat it as ONE unit.
5. Final step: add `part` (and any clones) to `root` with `root.add(...)`.

RETURN only the `attach` function. No imports.

{KIT_REFERENCE}"""


def build_attachment_prompt(
    overview: str,
    component: ComponentPlan,
    assembly_images: list[str],
    part_images: list[str],
    previous_code: str | None,
    error_context: str | None,
) -> list[str]:
    text = f"""Assembly Plan: {overview}
Task: attach "{component.name}" ({component.description}) to the current model.

CRITICAL: look at the PART TO ATTACH images.
- If `part` is ALREADY a composite (e.g. a pair of legs), do NOT clone it. Just position it.
- If it is a single item (e.g. one wheel) and the plan needs several, you MUST clone it.

Write the `attach` function."""

    if error_context:
        text += f"\n\nPREVIOUS ATTEMPT FAILED.\nFeedback: {error_context}"
        if previous_code:
            text += f"\n\nPrevious Code:\n```python\n{previous_code}\n```"
        text += "\n\nFIX THE CODE. Adjust position, scale or rotation based on the feedback."

    return [
        "CURRENT ASSEMBLY STATE (visual context):",
        *assembly_images,
        "PART TO ATTACH (visual context, 8 angles):",
        *part_images,
        text,
    ]


def build_assembly_qc_prompt(overview: str, component: ComponentPlan, images: list[str]) -> list[str]:
    name = component.name
    text = f"""You are a Visual QA Agent for a 3D assembler.
The model represents: "{overview}".

ACTION PERFORMED: added component "{name}".

Analyze the 8 viewpoints provided and verify that "{name}" is correctly attached.

Pass criteria:
1. "{name}" is physically connected to the main body (not floating far away).
2. "{name}" is scaled appropriately (not microscopic, not 100x too big).
3. "{name}" is oriented correctly (wheels touch the ground, a turret sits on top).

Fail criteria:
1. The new part is floating in the void.
2. The new part is clipped completely inside another part (invisible).
3. The new part is drastically mis-scaled.

Feedback must say how to fix the part (e.g. "Move wheel down 0.2", "Scale turret up 2x").
Return JSON."""
    return [*images, text]
