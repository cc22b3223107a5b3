"""
Async job manager for the prompt-to-assembly pipeline.

Provides:
  - Bounded work queue with configurable concurrency (each run owns its stage)
  - Per-job progress, live pipeline phase and log stream
  - TTL-based cleanup of completed job records
  - submit / get / cancel / wait operations
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .config import DreamMeshSettings
from .core.pipeline import generate_asset
from .schemas import (
    GenerateRequest,
    GenerateResult,
    JobRecordView,
    JobStatus,
    LogEntry,
    PipelinePhase,
)

logger = logging.getLogger(__name__)

_FINISHED = frozenset({JobStatus.succeeded, JobStatus.failed, JobStatus.cancelled})

PHASE_PROGRESS = {
    PipelinePhase.idle: 0,
    PipelinePhase.planning: 5,
    PipelinePhase.generating: 15,
    PipelinePhase.qc_analysis: 30,
    PipelinePhase.fixing: 30,
    PipelinePhase.assembling: 70,
    PipelinePhase.completed: 100,
    PipelinePhase.error: 100,
}


class QueueFull(RuntimeError):
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobRecord:
    id: str
    request: GenerateRequest
    status: JobStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    progress: int = 0
    phase: PipelinePhase = PipelinePhase.idle
    detail: str = ""
    logs: list[LogEntry] = field(default_factory=list)
    result: GenerateResult | None = None
    error: dict[str, Any] | None = None
    done_event: asyncio.Event = field(default_factory=asyncio.Event)

    def as_view(self) -> JobRecordView:
        return JobRecordView(
            id=self.id,
            status=self.status,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            progress=self.progress,
            phase=self.phase,
            detail=self.detail,
            request_summary={
                "prompt": self.request.prompt[:100],
                "llm_name": self.request.llm_name,
                "qc_llm_name": self.request.qc_llm_name,
            },
            logs=list(self.logs),
            result=self.result,
            error=self.error,
        )


class AssetJobManager:
    def __init__(self, settings: DreamMeshSettings):
        self.settings = settings
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=settings.max_queue_size)
        self.jobs: dict[str, JobRecord] = {}
        self._workers: list[asyncio.Task] = []
        self._cleanup_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    async def startup(self) -> None:
        worker_count = self.settings.max_concurrent_jobs
        for idx in range(worker_count):
            self._workers.append(
                asyncio.create_task(self._worker_loop(idx), name=f"dreammesh-worker-{idx}")
            )
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="dreammesh-cleanup")
        logger.info("dreammesh_job_manager_started workers=%s", worker_count)

    async def shutdown(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        if self._cleanup_task:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None

    async def submit(self, request: GenerateRequest, job_id: str | None = None) -> JobRecord:
        async with self._lock:
            if self.queue.full():
                raise QueueFull("Job queue is full, retry later")

            _id = job_id or request.request_id or str(uuid.uuid4())
            if _id in self.jobs:
                raise RuntimeError(f"Duplicate job_id: {_id}")

            record = JobRecord(
                id=_id,
                request=request,
                status=JobStatus.queued,
                created_at=_utc_now(),
            )
            self.jobs[_id] = record
            self.queue.put_nowait(_id)
            return record

    async def wait_for_completion(self, job_id: str, timeout_seconds: int) -> JobRecord:
        record = await self.get(job_id)
        try:
            await asyncio.wait_for(record.done_event.wait(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            raise RuntimeError(f"Job '{job_id}' did not finish within {timeout_seconds}s")
        return await self.get(job_id)

    async def get(self, job_id: str) -> JobRecord:
        record = self.jobs.get(job_id)
        if not record:
            raise KeyError(f"Job not found: {job_id}")
        return record

    async def cancel(self, job_id: str) -> JobRecord:
        record = await self.get(job_id)
        if record.status == JobStatus.queued:
            record.status = JobStatus.cancelled
            record.finished_at = _utc_now()
            record.done_event.set()
            return record
        if record.status in _FINISHED:
            return record
        raise RuntimeError("Running jobs cannot be force-cancelled safely")

    def _make_event_callback(self, record: JobRecord) -> Callable[[LogEntry], None]:
        def _cb(entry: LogEntry) -> None:
            record.logs.append(entry)
            record.phase = entry.phase
            record.progress = max(record.progress, PHASE_PROGRESS.get(entry.phase, record.progress))
            record.detail = entry.message[:200]
        return _cb

    async def _worker_loop(self, idx: int) -> None:
        while True:
            job_id = await self.queue.get()
            try:
                record = self.jobs.get(job_id)
                if not record or record.status == JobStatus.cancelled:
                    continue

                record.status = JobStatus.running
                record.started_at = _utc_now()
                record.progress = 1
                record.detail = "Starting pipeline..."

                try:
                    result = await generate_asset(
                        request=record.request,
                        settings=self.settings,
                        event_callback=self._make_event_callback(record),
                    )
                    record.result = result
                    record.phase = result.phase
                    record.progress = 100
                    if result.success:
                        record.status = JobStatus.succeeded
                        record.detail = "Assembly complete"
                    else:
                        record.status = JobStatus.failed
                        record.error = {
                            "message": result.error or "Asset generation failed",
                            "status_code": 500,
                        }
                        record.detail = f"Failed: {(result.error or 'unknown error')[:200]}"

                except Exception as exc:
                    record.status = JobStatus.failed
                    record.error = {"message": str(exc), "status_code": 500}
                    record.progress = 100
                    record.detail = f"Error: {str(exc)[:200]}"
                    logger.exception("Worker %d: job %s failed", idx, job_id)

                finally:
                    record.finished_at = _utc_now()
                    record.done_event.set()

            finally:
                self.queue.task_done()

    def prune(self, now: datetime | None = None) -> list[str]:
        """Drop expired finished records, then the oldest beyond ``max_job_records``."""
        now = now or _utc_now()
        ttl = timedelta(seconds=self.settings.finished_job_ttl_seconds)

        expired = [
            jid
            for jid, job in self.jobs.items()
            if job.status in _FINISHED and job.finished_at and now - job.finished_at > ttl
        ]
        for jid in expired:
            self.jobs.pop(jid, None)

        completed_ids = [jid for jid, job in self.jobs.items() if job.status in _FINISHED]
        overflow = max(0, len(completed_ids) - self.settings.max_job_records)
        if overflow > 0:
            completed_sorted = sorted(
                completed_ids,
                key=lambda i: self.jobs[i].finished_at or self.jobs[i].created_at,
            )
            for jid in completed_sorted[:overflow]:
                self.jobs.pop(jid, None)
                expired.append(jid)
        return expired

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.cleanup_interval_seconds)
            removed = self.prune()
            if removed:
                logger.debug("Pruned %d finished job records", len(removed))
