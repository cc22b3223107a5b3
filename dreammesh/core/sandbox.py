"""
Execution sandbox for generated construction and attachment logic.

Generated code runs with a restricted builtins table and exactly three
injected names: ``kit`` (the construction toolkit), ``math`` and ``np`` (an
allow-listed view of numpy's array math, never the module itself).
Before execution the text is sanitized (module-boundary declarations are
stripped) and statically checked; failures of any kind surface as
``ExecutionError`` so the calling loop can count them against its budget.
The sandbox itself never retries.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import logging
import math
import re
import sys
import time
from types import SimpleNamespace
from typing import Any, Callable

import numpy as np

from .errors import ExecutionError
from .scene import SceneNode
from .toolkit import Kit

logger = logging.getLogger(__name__)

CONSTRUCTION_ENTRY = "create_part"
ATTACHMENT_ENTRY = "attach"

_CONSTRUCTION_FILENAME = "<construction>"
_ATTACHMENT_FILENAME = "<attachment>"

# ---------------------------------------------------------------------------
# Sanitization — strip module-boundary declarations
# ---------------------------------------------------------------------------

_IMPORT_BLOCK_RE = re.compile(
    r"^[ \t]*from[ \t]+[\w.]+[ \t]+import[ \t]*\([^)]*\)[^\n]*(?:\n|$)",
    re.MULTILINE,
)
_IMPORT_LINE_RE = re.compile(
    r"^[ \t]*(?:import[ \t]+[\w.]|from[ \t]+[\w.]+[ \t]+import\b)[^\n]*(?:\n|$)",
    re.MULTILINE,
)
_EXPORT_BLOCK_RE = re.compile(
    r"^[ \t]*__all__[ \t]*\+?=[ \t]*[\[(][^\])]*[\])][^\n]*(?:\n|$)",
    re.MULTILINE,
)
_EXPORT_LINE_RE = re.compile(r"^[ \t]*__all__[ \t]*\+?=[^\n]*(?:\n|$)", re.MULTILINE)
_MAIN_GUARD_RE = re.compile(
    r"^if[ \t]+__name__[ \t]*==[ \t]*['\"]__main__['\"][ \t]*:[^\n]*(?:\n|$)"
    r"(?:[ \t]+[^\n]*(?:\n|$)|[ \t]*\n)*",
    re.MULTILINE,
)


def sanitize_code(code: str) -> str:
    """Remove imports, ``__all__`` export lists and ``__main__`` guards. Idempotent."""
    code = _IMPORT_BLOCK_RE.sub("", code)
    code = _IMPORT_LINE_RE.sub("", code)
    code = _EXPORT_BLOCK_RE.sub("", code)
    code = _EXPORT_LINE_RE.sub("", code)
    code = _MAIN_GUARD_RE.sub("", code)
    return code


# ---------------------------------------------------------------------------
# Static check
# ---------------------------------------------------------------------------

# numpy / trimesh attributes that reach the filesystem or raw memory, plus the
# str.format family whose field syntax walks attributes the AST never sees
_DENIED_ATTRIBUTES = frozenset({
    "load", "loads", "save", "savez", "savez_compressed", "savetxt", "loadtxt",
    "genfromtxt", "fromfile", "fromregex", "tofile", "dump", "dumps", "memmap",
    "ctypes", "ctypeslib", "lib", "DataSource", "export", "exchange", "resolvers",
    "save_image", "show", "system", "popen", "format", "format_map",
})

# The ``np`` generated code sees: array math only, no I/O entry points
_NUMPY_NAMES = (
    "pi", "e", "inf", "newaxis", "float32", "float64", "int32", "int64",
    "array", "asarray", "zeros", "ones", "full", "empty", "eye", "identity",
    "zeros_like", "ones_like", "full_like", "arange", "linspace", "meshgrid",
    "concatenate", "stack", "vstack", "hstack", "column_stack", "repeat", "tile",
    "reshape", "transpose", "flip", "roll", "where", "clip", "unique", "sort", "argsort",
    "sin", "cos", "tan", "arcsin", "arccos", "arctan", "arctan2", "sinh", "cosh", "tanh",
    "sqrt", "exp", "log", "power", "hypot", "abs", "sign", "floor", "ceil", "round", "mod",
    "radians", "degrees", "deg2rad", "rad2deg", "interp",
    "sum", "cumsum", "prod", "mean", "min", "max", "minimum", "maximum", "argmin", "argmax",
    "dot", "cross", "outer", "matmul", "isclose", "allclose", "all", "any",
)
_NUMPY_LINALG_NAMES = ("norm", "inv", "det", "solve")


def _numpy_facade() -> SimpleNamespace:
    facade = SimpleNamespace(**{name: getattr(np, name) for name in _NUMPY_NAMES})
    facade.linalg = SimpleNamespace(**{name: getattr(np.linalg, name) for name in _NUMPY_LINALG_NAMES})
    return facade


_SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter", "float",
    "frozenset", "int", "isinstance", "len", "list", "map", "max", "min", "pow",
    "range", "reversed", "round", "set", "slice", "sorted", "str", "sum", "tuple",
    "zip", "True", "False", "None",
    "ArithmeticError", "AssertionError", "Exception", "IndexError", "KeyError",
    "RuntimeError", "TypeError", "ValueError", "ZeroDivisionError",
)


def check_code(tree: ast.AST) -> None:
    """Reject imports, underscore names/attributes and file-I/O attributes."""
    for node in ast.walk(tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            raise ExecutionError(f"Execution Error: import statements are not allowed (line {node.lineno})")
        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_"):
                raise ExecutionError(f"Execution Error: access to '{node.attr}' is not allowed (line {node.lineno})")
            if node.attr in _DENIED_ATTRIBUTES:
                raise ExecutionError(f"Execution Error: '{node.attr}' is not available (line {node.lineno})")
        elif isinstance(node, ast.Name) and node.id.startswith("__"):
            raise ExecutionError(f"Execution Error: name '{node.id}' is not allowed (line {node.lineno})")


def _sandbox_print(*args: Any, **_: Any) -> None:
    logger.debug("[SANDBOX] %s", " ".join(str(a) for a in args))


def _restricted_builtins() -> dict[str, Any]:
    table = {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES}
    table["print"] = _sandbox_print
    return table


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class _DeadlineExceeded(BaseException):
    """Trace-hook abort. Not an ``Exception``: generated ``except Exception`` blocks do not catch it."""


class _Deadline:
    """Trace hook that aborts generated frames once the wall-clock budget is spent."""

    def __init__(self, filename: str, seconds: float):
        self.filename = filename
        self.expires = time.monotonic() + seconds

    def global_trace(self, frame, event, arg):
        if frame.f_code.co_filename != self.filename:
            return None
        return self.local_trace

    def local_trace(self, frame, event, arg):
        if time.monotonic() > self.expires:
            raise _DeadlineExceeded()
        return self.local_trace


class Sandbox:
    def __init__(self, kit: Kit | None = None, timeout_seconds: float = 10.0):
        self.kit = kit or Kit()
        self.timeout_seconds = timeout_seconds

    def _load(self, code: str, entry: str, filename: str) -> tuple[Callable[..., Any], dict[str, Any]]:
        safe_code = sanitize_code(code)
        try:
            tree = ast.parse(safe_code, filename=filename)
        except SyntaxError as e:
            raise ExecutionError(f"Execution Error: syntax error at line {e.lineno}: {e.msg}") from e
        check_code(tree)

        defined = [
            n.name for n in tree.body
            if isinstance(n, (ast.FunctionDef, ast.AsyncFunctionDef)) and n.name == entry
        ]
        if len(defined) != 1:
            raise ExecutionError(
                f"Execution Error: code must define exactly one '{entry}' function (found {len(defined)})"
            )

        namespace: dict[str, Any] = {
            "__builtins__": _restricted_builtins(),
            "__name__": "generated",
            "kit": self.kit,
            "math": math,
            "np": _numpy_facade(),
        }
        compiled = compile(tree, filename, "exec")
        self._guarded(lambda: exec(compiled, namespace), filename)
        func = namespace.get(entry)
        if not callable(func):
            raise ExecutionError(f"Execution Error: '{entry}' is not callable")
        return func, namespace

    def _guarded(self, call: Callable[[], Any], filename: str) -> Any:
        deadline = _Deadline(filename, self.timeout_seconds)
        previous = sys.gettrace()
        sys.settrace(deadline.global_trace)
        try:
            return call()
        except ExecutionError:
            raise
        except _DeadlineExceeded as e:
            raise ExecutionError(f"Execution Error: timed out after {self.timeout_seconds:.1f}s") from e
        except Exception as e:
            raise ExecutionError(f"Execution Error: {type(e).__name__}: {e}") from e
        finally:
            sys.settrace(previous)

    def run_construction(self, code: str) -> SceneNode:
        """Execute construction logic and return the object ``create_part(kit)`` builds."""
        func, _ = self._load(code, CONSTRUCTION_ENTRY, _CONSTRUCTION_FILENAME)
        result = self._guarded(lambda: func(self.kit), _CONSTRUCTION_FILENAME)
        if not isinstance(result, SceneNode):
            raise ExecutionError(
                "Execution Error: create_part did not return a SceneNode "
                f"(got {type(result).__name__})"
            )
        if result.mesh_count() == 0:
            raise ExecutionError("Execution Error: create_part returned an object with no geometry")
        return result

    def run_attachment(self, code: str, root: SceneNode, part: SceneNode) -> None:
        """Execute attachment logic; ``attach(root, part)`` mutates ``root`` in place."""
        func, _ = self._load(code, ATTACHMENT_ENTRY, _ATTACHMENT_FILENAME)
        self._guarded(lambda: func(root, part), _ATTACHMENT_FILENAME)

    async def run_construction_async(self, code: str) -> SceneNode:
        """Async wrapper — offloads construction to the thread pool; the deadline traces that thread."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.run_construction, code)

    async def run_attachment_async(self, code: str, root: SceneNode, part: SceneNode) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.run_attachment, code, root, part)
