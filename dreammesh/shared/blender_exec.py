"""
Headless Blender subprocess execution.

Runs a generated Python script in ``blender -b`` and returns structured
output. Used by the render stage for every multi-view capture.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class BlenderExecResult:
    success: bool
    returncode: int = -1
    stdout: str = ""
    stderr: str = ""
    elapsed: float = 0.0
    script_path: str = ""
    timed_out: bool = False

    def tail(self, limit: int = 1500) -> str:
        """Last ``limit`` chars of stderr, falling back to stdout."""
        text = self.stderr or self.stdout
        return text[-limit:]


def run_blender_script_sync(
    script_path: str,
    blender_executable: str,
    timeout: int = 120,
) -> BlenderExecResult:
    """Execute a Python script in headless Blender (factory settings)."""
    logger.info("Blender exec: %s", script_path)
    t0 = time.time()

    try:
        result = subprocess.run(
            [blender_executable, "-b", "--factory-startup", "--python", script_path],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.error("Blender TIMEOUT (%ds): %s", timeout, script_path)
        return BlenderExecResult(
            success=False,
            elapsed=time.time() - t0,
            script_path=script_path,
            timed_out=True,
        )
    except OSError as e:
        logger.error("Blender could not be launched (%s): %s", blender_executable, e)
        return BlenderExecResult(
            success=False,
            stderr=str(e),
            elapsed=time.time() - t0,
            script_path=script_path,
        )

    return BlenderExecResult(
        success=result.returncode == 0,
        returncode=result.returncode,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
        elapsed=time.time() - t0,
        script_path=script_path,
    )


async def run_blender_script(
    script_path: str,
    blender_executable: str,
    timeout: int = 120,
) -> BlenderExecResult:
    """Async wrapper — offloads blocking subprocess to thread-pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        None,
        run_blender_script_sync,
        script_path,
        blender_executable,
        timeout,
    )
