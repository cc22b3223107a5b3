import asyncio
from datetime import timedelta

import pytest

from dreammesh import job_manager
from dreammesh.config import DreamMeshSettings
from dreammesh.job_manager import AssetJobManager, QueueFull
from dreammesh.schemas import GenerateRequest, JobStatus, LogEntry, PipelinePhase


@pytest.fixture
def settings(tmp_path):
    return DreamMeshSettings(storage_dir=tmp_path, max_queue_size=2, max_job_records=10, finished_job_ttl_seconds=60)


def test_queue_limits_and_duplicates(settings):
    async def scenario():
        manager = AssetJobManager(settings)
        await manager.submit(GenerateRequest(prompt="a"), job_id="a")
        with pytest.raises(RuntimeError, match="Duplicate"):
            await manager.submit(GenerateRequest(prompt="a"), job_id="a")
        await manager.submit(GenerateRequest(prompt="b"), job_id="b")
        with pytest.raises(QueueFull):
            await manager.submit(GenerateRequest(prompt="c"), job_id="c")
        with pytest.raises(KeyError):
            await manager.get("missing")

    asyncio.run(scenario())


def test_cancel_queued_job_skips_it(settings, monkeypatch):
    ran = []

    async def fake_generate_asset(request, settings, event_callback=None):
        ran.append(request.prompt)
        raise AssertionError("cancelled job must not run")

    monkeypatch.setattr(job_manager, "generate_asset", fake_generate_asset)

    async def scenario():
        manager = AssetJobManager(settings)
        await manager.submit(GenerateRequest(prompt="later"), job_id="j1")
        record = await manager.cancel("j1")
        assert record.status == JobStatus.cancelled
        assert record.done_event.is_set()
        await manager.startup()
        await manager.queue.join()
        await manager.shutdown()

    asyncio.run(scenario())
    assert ran == []


def test_progress_follows_phase_and_never_moves_back(settings):
    manager = AssetJobManager(settings)
    record = job_manager.JobRecord(
        id="j", request=GenerateRequest(prompt="x"), status=JobStatus.running, created_at=job_manager._utc_now(),
    )
    callback = manager._make_event_callback(record)

    callback(LogEntry(timestamp=0, phase=PipelinePhase.planning, message="plan"))
    assert (record.progress, record.phase) == (5, PipelinePhase.planning)
    callback(LogEntry(timestamp=0, phase=PipelinePhase.assembling, message="attach"))
    callback(LogEntry(timestamp=0, phase=PipelinePhase.qc_analysis, message="x" * 500))
    assert record.progress == 70
    assert record.phase == PipelinePhase.qc_analysis
    assert len(record.detail) == 200
    assert len(record.logs) == 3


def test_worker_records_unexpected_errors(settings, monkeypatch):
    async def exploding(request, settings, event_callback=None):
        raise RuntimeError("renderer vanished")

    monkeypatch.setattr(job_manager, "generate_asset", exploding)

    async def scenario():
        manager = AssetJobManager(settings)
        await manager.startup()
        await manager.submit(GenerateRequest(prompt="x"), job_id="boom")
        record = await manager.wait_for_completion("boom", timeout_seconds=5)
        await manager.shutdown()
        return record

    record = asyncio.run(scenario())
    assert record.status == JobStatus.failed
    assert record.error == {"message": "renderer vanished", "status_code": 500}
    assert record.finished_at is not None


def test_prune_drops_expired_then_oldest(settings):
    manager = AssetJobManager(settings)
    now = job_manager._utc_now()

    def add(job_id, status, finished_ago):
        record = job_manager.JobRecord(
            id=job_id, request=GenerateRequest(prompt="x"), status=status, created_at=now - timedelta(hours=2),
        )
        if finished_ago is not None:
            record.finished_at = now - timedelta(seconds=finished_ago)
        manager.jobs[job_id] = record

    add("old", JobStatus.succeeded, 120)
    add("running", JobStatus.running, None)
    for i in range(12):
        add(f"done{i}", JobStatus.failed, 30 - i)

    removed = manager.prune(now)

    assert removed[0] == "old"
    assert set(removed[1:]) == {"done0", "done1"}
    assert "running" in manager.jobs
    assert len([j for j in manager.jobs.values() if j.status == JobStatus.failed]) == 10
