"""DreamMesh: prompt-to-3D assembly with per-part and per-attachment visual QC."""

__version__ = "1.0.0"
