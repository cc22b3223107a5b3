from __future__ import annotations

import base64
import re
from pathlib import Path


_SAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9._-]+")


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def safe_name(name: str, fallback: str = "file") -> str:
    value = _SAFE_NAME_RE.sub("_", (name or "").strip()).strip("._")
    return value or fallback


def png_data_uri(path: Path) -> str:
    """Read a PNG from disk as a ``data:image/png;base64,...`` string."""
    b64 = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:image/png;base64,{b64}"


def split_data_uri(value: str, default_mime: str = "image/png") -> tuple[str, str]:
    """
    Return (mime, base64_payload) for a data URI or a bare base64 string.
    """
    if value.startswith("data:") and "," in value:
        header, payload = value.split(",", 1)
        mime = header[5:].split(";")[0] or default_mime
        return mime, payload
    if "base64," in value:
        return default_mime, value.split("base64,", 1)[1]
    return default_mime, value
