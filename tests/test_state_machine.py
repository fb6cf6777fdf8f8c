"""Tests for the export job state machine (pure, no store)."""

from datetime import datetime, timezone

import pytest

from core.errors import ConflictError, ValidationError
from jobs.models import ExportJob, JobOrigin, JobPriority, JobStatus
from jobs.state_machine import CANCEL_MESSAGE, TRANSITIONS, JobEvent, JobStateMachine

NOW = datetime(2024, 1, 1, 12, tzinfo=timezone.utc)

_VALID_PARAMS = {
    JobEvent.CANCEL: {},
    JobEvent.PROGRESS: {"progress": 50, "processed_items": 5},
    JobEvent.COMPLETE: {"download_url": "file:///tmp/out.pdf", "file_size": 10},
    JobEvent.FAIL: {"error_message": "boom"},
    JobEvent.RETRY: {},
    JobEvent.SET_PRIORITY: {"priority": "urgent"},
    JobEvent.ARCHIVE: {},
}


@pytest.fixture
def machine():
    return JobStateMachine()


def make_job(machine, status=JobStatus.PENDING, **fields) -> ExportJob:
    job = machine.create(
        organization_id="org-1",
        user_id="u-1",
        origin=JobOrigin.BULK,
        format="pdf",
        options={"item_ids": [f"i{n}" for n in range(10)]},
        total_items=10,
        now=NOW,
    )
    return job.model_copy(update={"status": status, **fields})


# ── create ────────────────────────────────────────────────────────────────────

def test_create_is_pending_with_zero_progress(machine):
    job = make_job(machine)
    assert job.status == JobStatus.PENDING
    assert job.progress == 0
    assert job.processed_items == 0
    assert job.total_items == 10
    assert job.priority == JobPriority.NORMAL


def test_create_rejects_negative_total(machine):
    with pytest.raises(ValidationError):
        machine.create(organization_id="o", user_id="u", origin=JobOrigin.BULK,
                       format="pdf", options={}, total_items=-1)


def test_create_rejects_unknown_format(machine):
    with pytest.raises(ValidationError, match="xlsx"):
        machine.create(organization_id="o", user_id="u", origin=JobOrigin.BULK,
                       format="xlsx", options={}, total_items=1)


def test_create_scheduled_needs_schedule_id(machine):
    with pytest.raises(ValidationError):
        machine.create(organization_id="o", user_id="u", origin=JobOrigin.SCHEDULED,
                       format="pdf", options={}, total_items=1)


# ── Legal transitions ─────────────────────────────────────────────────────────

def test_cancel_sets_message_and_completed_at(machine):
    job = make_job(machine, JobStatus.PROCESSING, progress=40, processed_items=4)
    changes = machine.plan(job, JobEvent.CANCEL, NOW)
    assert changes["status"] == JobStatus.CANCELLED
    assert changes["error_message"] == CANCEL_MESSAGE
    assert changes["completed_at"] == NOW
    assert "progress" not in changes


def test_cancel_custom_reason(machine):
    changes = machine.plan(make_job(machine), JobEvent.CANCEL, NOW, reason="wrong filter")
    assert changes["error_message"] == "wrong filter"


def test_first_progress_moves_to_processing_and_stamps_start(machine):
    changes = machine.plan(make_job(machine), JobEvent.PROGRESS, NOW, progress=0, processed_items=0)
    assert changes["status"] == JobStatus.PROCESSING
    assert changes["started_at"] == NOW


def test_later_progress_keeps_started_at(machine):
    job = make_job(machine, JobStatus.PROCESSING, progress=10, started_at=NOW)
    changes = machine.plan(job, JobEvent.PROGRESS, NOW, progress=20, processed_items=2)
    assert "started_at" not in changes
    assert changes["progress"] == 20


def test_progress_regression_is_conflict(machine):
    job = make_job(machine, JobStatus.PROCESSING, progress=50)
    with pytest.raises(ConflictError, match="backwards"):
        machine.plan(job, JobEvent.PROGRESS, NOW, progress=40)


def test_progress_out_of_range_is_validation_error(machine):
    job = make_job(machine, JobStatus.PROCESSING)
    with pytest.raises(ValidationError):
        machine.plan(job, JobEvent.PROGRESS, NOW, progress=101)


def test_complete_finalizes_progress(machine):
    job = make_job(machine, JobStatus.PROCESSING, progress=90, processed_items=9)
    changes = machine.plan(job, JobEvent.COMPLETE, NOW, download_url="file:///x", file_size=3)
    assert changes["status"] == JobStatus.COMPLETED
    assert changes["progress"] == 100
    assert changes["processed_items"] == 10
    assert changes["download_url"] == "file:///x"


def test_complete_requires_download_url(machine):
    job = make_job(machine, JobStatus.PROCESSING)
    with pytest.raises(ValidationError):
        machine.plan(job, JobEvent.COMPLETE, NOW)


def test_retry_resets_run_fields(machine):
    job = make_job(machine, JobStatus.FAILED, progress=30, processed_items=3,
                   error_message="boom", completed_at=NOW, started_at=NOW)
    updated = machine.apply(job, machine.plan(job, JobEvent.RETRY, NOW))
    assert updated.status == JobStatus.PENDING
    assert updated.progress == 0
    assert updated.processed_items == 0
    assert updated.error_message is None
    assert updated.download_url is None
    assert updated.completed_at is None
    assert updated.started_at is None
    assert updated.total_items == job.total_items
    assert updated.options == job.options


def test_set_priority_keeps_status(machine):
    job = make_job(machine, JobStatus.PROCESSING)
    changes = machine.plan(job, JobEvent.SET_PRIORITY, NOW, priority="high")
    assert changes["priority"] == JobPriority.HIGH
    assert "status" not in changes


def test_set_priority_rejects_unknown_level(machine):
    with pytest.raises(ValidationError, match="priority"):
        machine.plan(make_job(machine), JobEvent.SET_PRIORITY, NOW, priority="asap")


def test_archive_only_flags(machine):
    job = make_job(machine, JobStatus.COMPLETED)
    changes = machine.plan(job, JobEvent.ARCHIVE, NOW)
    assert changes["archived"] is True
    assert "status" not in changes


# ── Closure ───────────────────────────────────────────────────────────────────

def test_every_pair_outside_the_table_is_a_conflict(machine):
    checked = 0
    for status in JobStatus:
        for event in JobEvent:
            if status in TRANSITIONS[event].sources:
                continue
            job = make_job(machine, status, progress=40, processed_items=4)
            before = job.model_dump_json()
            with pytest.raises(ConflictError) as exc:
                machine.plan(job, event, NOW, **_VALID_PARAMS[event])
            assert status.value in exc.value.message
            assert job.model_dump_json() == before
            checked += 1
    assert checked > 0


def test_cancel_completed_names_status(machine):
    job = make_job(machine, JobStatus.COMPLETED)
    with pytest.raises(ConflictError, match="Cannot cancel job with status: completed"):
        machine.plan(job, JobEvent.CANCEL, NOW)


def test_allowed_matches_table(machine):
    assert machine.allowed(JobStatus.PENDING, JobEvent.CANCEL)
    assert machine.allowed(JobStatus.FAILED, JobEvent.RETRY)
    assert not machine.allowed(JobStatus.COMPLETED, JobEvent.RETRY)
    assert not machine.allowed(JobStatus.PENDING, JobEvent.ARCHIVE)
