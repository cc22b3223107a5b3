"""
DreamMesh Assembly Service — FastAPI entry point.

Endpoints:
  POST /run          Sync execution (plain body or {data, meta} envelope)
  POST /jobs         Async job submission
  GET  /jobs/{id}    Job status: progress, live phase, log stream
  GET  /jobs/{id}/result   Final result
  DELETE /jobs/{id}  Cancel queued job
  GET  /sessions/{id}         Session record
  GET  /sessions/{id}/{file}  Exported model file
  GET  /health       Service health check
  GET  /tool/schema  Tool schema for registry
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from . import __version__
from .config import settings
from .job_manager import AssetJobManager, QueueFull
from .schemas import (
    AsyncJobAccepted,
    GenerateRequest,
    GenerateResult,
    JobRecordView,
    JobStatus,
)
from .shared.files import ensure_dir, safe_name
from .shared.logging import configure_logging
from .shared.payloads import unwrap_tool_payload

configure_logging(settings.log_level)
logger = logging.getLogger("dreammesh.main")

EXPORT_MEDIA_TYPES = {
    ".glb": "model/gltf-binary",
    ".obj": "model/obj",
    ".stl": "model/stl",
    ".json": "application/json",
}


# ---------------------------------------------------------------------------
# Job manager (singleton)
# ---------------------------------------------------------------------------

jobs = AssetJobManager(settings)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _require_api_key(x_api_key: str | None) -> None:
    if settings.api_key and x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


def _parse_request(raw: Any) -> tuple[GenerateRequest, bool]:
    try:
        data, _, wrapped = unwrap_tool_payload(raw)
        return GenerateRequest.model_validate(data), wrapped
    except ValueError as e:
        # pydantic's ValidationError is a ValueError
        raise HTTPException(status_code=422, detail=str(e))


async def _submit(gen_request: GenerateRequest):
    try:
        return await jobs.submit(gen_request)
    except QueueFull as e:
        raise HTTPException(status_code=503, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))


async def _get_record(job_id: str):
    try:
        return await jobs.get(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")


def _session_dir(session_id: str):
    if safe_name(session_id, "") != session_id:
        raise HTTPException(status_code=404, detail="Session not found")
    return settings.sessions_dir / session_id


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(_: FastAPI):
    ensure_dir(settings.sessions_dir)
    ensure_dir(settings.renders_dir)
    await jobs.startup()
    yield
    await jobs.shutdown()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="DreamMesh Assembly Service",
    version=__version__,
    description=(
        "Turns a text prompt into an assembled 3D model. An LLM plans the "
        "object as components, writes construction code for each, a vision "
        "model checks every part from 8 rendered views, and verified parts "
        "are attached one at a time into the final assembly."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/")
async def root():
    return {
        "service": settings.service_name,
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": settings.service_name,
        "queue_size": jobs.queue.qsize(),
        "active_jobs": sum(
            1 for x in jobs.jobs.values()
            if x.status in {JobStatus.queued, JobStatus.running}
        ),
        "blender_exists": settings.blender_executable.exists(),
        "claude_available": settings.claude_available,
        "gemini_available": settings.gemini_available,
        "max_concurrent_jobs": settings.max_concurrent_jobs,
    }


# ---------------------------------------------------------------------------
# Tool schema
# ---------------------------------------------------------------------------

@app.get("/tool/schema")
async def tool_schema():
    return {
        "name": "dreammesh-generate",
        "description": (
            "Generates an assembled 3D model (GLB/OBJ/STL) from a text prompt "
            "through planning, per-component visual QC and incremental assembly."
        ),
        "input_schema": GenerateRequest.model_json_schema(),
        "output_schema": GenerateResult.model_json_schema(),
    }


# ---------------------------------------------------------------------------
# POST /run — sync endpoint
# ---------------------------------------------------------------------------

@app.post("/run")
async def run_sync(request: Request, x_api_key: str | None = Header(default=None)):
    """
    Accepts either:
      - plain GenerateRequest JSON
      - envelope shape: { "data": { ... }, "meta": { ... } }
    """
    _require_api_key(x_api_key)
    gen_request, wrapped = _parse_request(await request.json())

    record = await _submit(gen_request)
    try:
        finished = await jobs.wait_for_completion(record.id, timeout_seconds=settings.sync_wait_timeout_seconds)
    except RuntimeError as e:
        raise HTTPException(status_code=504, detail=str(e))

    if finished.status == JobStatus.succeeded and finished.result:
        result_dict = finished.result.model_dump(mode="json")
        if wrapped:
            return {"result": result_dict}
        return result_dict

    if finished.status == JobStatus.cancelled:
        raise HTTPException(status_code=409, detail="Job cancelled")

    error = finished.error or {"message": "Unknown generation error", "status_code": 500}
    raise HTTPException(
        status_code=int(error.get("status_code", 500)),
        detail=error.get("message", "Generation failed"),
    )


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@app.post("/jobs", response_model=AsyncJobAccepted)
async def enqueue_job(request: Request, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    gen_request, _ = _parse_request(await request.json())
    record = await _submit(gen_request)

    return AsyncJobAccepted(
        job_id=record.id,
        status=record.status,
        status_url=f"/jobs/{record.id}",
        result_url=f"/jobs/{record.id}/result",
    )


@app.get("/jobs/{job_id}", response_model=JobRecordView)
async def get_job(job_id: str, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    record = await _get_record(job_id)
    return record.as_view()


@app.get("/jobs/{job_id}/result")
async def get_job_result(job_id: str, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    record = await _get_record(job_id)

    if record.status == JobStatus.queued:
        return {"status": "queued", "progress": record.progress}
    if record.status == JobStatus.running:
        return {
            "status": "running",
            "progress": record.progress,
            "phase": record.phase.value,
            "detail": record.detail,
        }
    if record.status == JobStatus.cancelled:
        return {"status": "cancelled"}
    if record.status == JobStatus.failed:
        return {
            "status": "failed",
            "error": (record.error or {}).get("message", "unknown error"),
            "result": record.result.model_dump(mode="json") if record.result else None,
        }
    return {
        "status": "succeeded",
        "result": record.result.model_dump(mode="json") if record.result else None,
    }


@app.delete("/jobs/{job_id}")
async def cancel_job(job_id: str, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    try:
        record = await jobs.cancel(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "job_id": job_id, "status": record.status}


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@app.get("/sessions/{session_id}")
async def get_session(session_id: str):
    session_json = _session_dir(session_id) / "session.json"
    if not session_json.exists():
        raise HTTPException(status_code=404, detail="Session not found")
    return JSONResponse(content=json.loads(session_json.read_text()))


@app.get("/sessions/{session_id}/{filename}")
async def serve_session_file(session_id: str, filename: str):
    path = _session_dir(session_id) / filename
    media_type = EXPORT_MEDIA_TYPES.get(path.suffix.lower())
    if safe_name(filename, "") != filename or media_type is None or not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(str(path), media_type=media_type, filename=filename)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "dreammesh.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=bool(int(os.getenv("UVICORN_RELOAD", "0"))),
    )
