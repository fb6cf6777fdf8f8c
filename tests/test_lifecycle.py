"""Tests for persisted job transitions (guards, logs, audit, events)."""

import asyncio

import pytest

from core.errors import ConflictError, NotFoundError
from core.event_bus import JobEventBus
from integrations.builtin import MemoryAuditSink
from jobs.lifecycle import JobLifecycle
from jobs.models import JobOrigin, JobStatus, LogLevel
from jobs.state_machine import JobEvent


@pytest.fixture
def bus():
    return JobEventBus()


@pytest.fixture
def lifecycle(job_store, audit, bus):
    return JobLifecycle(job_store, audit, bus)


async def create_job(lifecycle, total=100):
    job = lifecycle.machine.create(
        organization_id="org-1",
        user_id="u-1",
        origin=JobOrigin.BULK,
        format="pdf",
        options={"item_ids": [f"i{n}" for n in range(total)], "template": "default"},
        total_items=total,
    )
    return await lifecycle.create(job, actor_id="u-1")


async def test_create_logs_and_audits(lifecycle, job_store, audit):
    job = await create_job(lifecycle)
    logs = await job_store.list_logs(job_id=job.id)
    assert [e.message for e in logs] == ["Export job created"]
    assert audit.events[-1].action == "export_job_created"
    assert audit.events[-1].resource_id == job.id


async def test_load_missing_is_not_found(lifecycle):
    with pytest.raises(NotFoundError):
        await lifecycle.load("missing")


async def test_cancel_completed_is_conflict_and_unchanged(lifecycle, job_store):
    job = await create_job(lifecycle, total=2)
    job = await lifecycle.apply(job, JobEvent.PROGRESS, progress=0, processed_items=0)
    job = await lifecycle.apply(job, JobEvent.COMPLETE, download_url="file:///out.pdf")
    before = (await job_store.load(job.id)).model_dump_json()

    with pytest.raises(ConflictError, match="completed"):
        await lifecycle.advance(job.id, JobEvent.CANCEL, "u-1")
    assert (await job_store.load(job.id)).model_dump_json() == before


async def test_progress_then_concurrent_cancel_freezes_progress(lifecycle, job_store):
    job = await create_job(lifecycle, total=100)
    worker_view = await lifecycle.apply(job, JobEvent.PROGRESS, progress=0, processed_items=0)
    worker_view = await lifecycle.apply(worker_view, JobEvent.PROGRESS, progress=40, processed_items=40)

    cancelled = await lifecycle.advance(job.id, JobEvent.CANCEL, "u-1")
    assert cancelled.status == JobStatus.CANCELLED

    # the worker's next write is based on a stale snapshot and must lose
    with pytest.raises(ConflictError):
        await lifecycle.apply(worker_view, JobEvent.PROGRESS, progress=50, processed_items=50)

    final = await job_store.load(job.id)
    assert final.status == JobStatus.CANCELLED
    assert final.processed_items == 40
    assert final.progress == 40
    assert final.error_message == "cancelled by user"


async def test_cancel_records_progress_in_log(lifecycle, job_store, audit):
    job = await create_job(lifecycle, total=10)
    job = await lifecycle.apply(job, JobEvent.PROGRESS, progress=30, processed_items=3)
    await lifecycle.advance(job.id, JobEvent.CANCEL, "u-1")
    entry = (await job_store.list_logs(job_id=job.id))[0]
    assert entry.message == "Export job cancelled by user"
    assert entry.details["progress_at_cancellation"] == 30
    assert audit.events[-1].action == "export_job_cancelled"


async def test_progress_ticks_are_not_logged(lifecycle, job_store):
    job = await create_job(lifecycle, total=10)
    job = await lifecycle.apply(job, JobEvent.PROGRESS, progress=0, processed_items=0)
    for n in range(1, 5):
        job = await lifecycle.apply(job, JobEvent.PROGRESS, progress=n * 10, processed_items=n)
    messages = [e.message for e in await job_store.list_logs(job_id=job.id)]
    assert messages == ["Export job started", "Export job created"]


async def test_fail_is_logged_as_error(lifecycle, job_store):
    job = await create_job(lifecycle, total=1)
    job = await lifecycle.apply(job, JobEvent.PROGRESS, progress=0, processed_items=0)
    await lifecycle.apply(job, JobEvent.FAIL, error_message="renderer down")
    entry = (await job_store.list_logs(job_id=job.id))[0]
    assert entry.level == LogLevel.ERROR
    assert entry.details["error_message"] == "renderer down"


async def test_retry_is_idempotent_reset(lifecycle, job_store):
    job = await create_job(lifecycle, total=5)
    job = await lifecycle.apply(job, JobEvent.PROGRESS, progress=0, processed_items=0)
    job = await lifecycle.apply(job, JobEvent.PROGRESS, progress=60, processed_items=3)
    failed = await lifecycle.apply(job, JobEvent.FAIL, error_message="boom")

    retried = await lifecycle.advance(job.id, JobEvent.RETRY, "u-1")
    stored = await job_store.load(job.id)
    for j in (retried, stored):
        assert j.status == JobStatus.PENDING
        assert j.progress == 0
        assert j.processed_items == 0
        assert j.error_message is None
        assert j.download_url is None
        assert j.total_items == failed.total_items
        assert j.options == failed.options


async def test_archive_terminal_job(lifecycle, job_store):
    job = await create_job(lifecycle, total=1)
    await lifecycle.advance(job.id, JobEvent.CANCEL, "u-1")
    archived = await lifecycle.advance(job.id, JobEvent.ARCHIVE, "u-1")
    assert archived.archived
    assert archived.status == JobStatus.CANCELLED
    with pytest.raises(ConflictError):
        await lifecycle.advance(job.id, JobEvent.RETRY, "u-1")


async def test_advance_retries_after_lost_race(lifecycle, job_store):
    job = await create_job(lifecycle, total=10)
    # a worker moves the job to processing between our read and write
    original_load = lifecycle.load
    calls = {"n": 0}

    async def stale_then_fresh(job_id, organization_id=None):
        calls["n"] += 1
        if calls["n"] == 1:
            stale = await original_load(job_id)
            await lifecycle.apply(stale, JobEvent.PROGRESS, progress=10, processed_items=1)
            return stale
        return await original_load(job_id)

    lifecycle.load = stale_then_fresh
    updated = await lifecycle.advance(job.id, JobEvent.SET_PRIORITY, "u-1", priority="urgent")
    assert updated.priority.value == "urgent"
    assert updated.status == JobStatus.PROCESSING


async def test_concurrent_cancels_exactly_one_wins(lifecycle, job_store):
    job = await create_job(lifecycle, total=10)
    results = await asyncio.gather(
        *[lifecycle.apply(job, JobEvent.CANCEL, "u-1") for _ in range(3)],
        return_exceptions=True,
    )
    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert all(isinstance(r, ConflictError) for r in results if isinstance(r, Exception))


async def test_transitions_are_published(lifecycle, bus):
    job = await create_job(lifecycle, total=2)
    q = bus.subscribe(job.id)
    await lifecycle.apply(job, JobEvent.CANCEL, "u-1")
    event = q.get_nowait()
    assert event["status"] == "cancelled"
    assert event["job_id"] == job.id


async def test_audit_failure_does_not_break_transition(job_store, bus):
    class BrokenSink(MemoryAuditSink):
        async def record(self, event):
            raise RuntimeError("audit store offline")

    lifecycle = JobLifecycle(job_store, BrokenSink(), bus)
    job = await create_job(lifecycle, total=1)
    cancelled = await lifecycle.advance(job.id, JobEvent.CANCEL, "u-1")
    assert cancelled.status == JobStatus.CANCELLED
