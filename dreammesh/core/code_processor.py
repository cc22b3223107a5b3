"""
Extraction utilities for oracle output.

All functions here are pure/stateless: they pull Python from markdown
fences and JSON objects from chatty replies.
"""

from __future__ import annotations

import json
import re
from typing import Any

# ---------------------------------------------------------------------------
# Code extraction — pull Python from markdown fences or raw LLM output
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```[ \t]*(\w*)[^\n]*\n(.*?)(?:```|\Z)", re.DOTALL)
_PY_TAGS = frozenset({"python", "py", "python3"})


def extract_code(raw: str) -> str:
    """Return the first Python fence, else the first fence of any kind, else the raw text."""
    fences = _FENCE_RE.findall(raw or "")
    for tag, body in fences:
        if tag.lower() in _PY_TAGS:
            return body.strip()
    if fences:
        return fences[0][1].strip()
    return (raw or "").strip()


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def extract_json(raw: str) -> Any:
    """
    Parse a JSON value out of an oracle reply.

    Structured-output modes usually return bare JSON, but fenced or
    prose-wrapped replies still happen; fall back to the outermost
    ``{...}`` span. Raises ``ValueError`` when nothing parses.
    """
    text = (raw or "").strip()
    if not text:
        raise ValueError("empty response")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    fenced = extract_code(text)
    if fenced != text:
        try:
            return json.loads(fenced)
        except json.JSONDecodeError:
            pass

    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(text[start:end + 1])
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid JSON in response: {e}") from e
    raise ValueError("no JSON object found in response")
