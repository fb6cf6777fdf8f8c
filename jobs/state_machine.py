"""Export job state machine.

Pure: given a job snapshot and an event, decide whether the transition is
legal and which fields change.  Persisting the change (guarded on the prior
status) is left to :class:`jobs.lifecycle.JobLifecycle`.

    pending ──progress──▶ processing ──complete──▶ completed
       │                     │  └─────fail──────▶ failed ──retry──▶ pending
       └──────cancel─────────┴──cancel──▶ cancelled

``set_priority`` is legal while pending/processing; ``archive`` once terminal.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from core.errors import ConflictError, ValidationError
from jobs.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    ExportJob,
    JobOrigin,
    JobPriority,
    JobStatus,
)
from scheduler.models import ExportFormat

CANCEL_MESSAGE = "cancelled by user"


class JobEvent(str, Enum):
    CANCEL = "cancel"
    PROGRESS = "progress"
    COMPLETE = "complete"
    FAIL = "fail"
    RETRY = "retry"
    SET_PRIORITY = "set_priority"
    ARCHIVE = "archive"


@dataclass(frozen=True)
class Transition:
    sources: frozenset[JobStatus]
    target: JobStatus | None        # None: status unchanged


TRANSITIONS: dict[JobEvent, Transition] = {
    JobEvent.CANCEL:       Transition(ACTIVE_STATUSES, JobStatus.CANCELLED),
    JobEvent.PROGRESS:     Transition(ACTIVE_STATUSES, JobStatus.PROCESSING),
    JobEvent.COMPLETE:     Transition(frozenset({JobStatus.PROCESSING}), JobStatus.COMPLETED),
    JobEvent.FAIL:         Transition(frozenset({JobStatus.PROCESSING}), JobStatus.FAILED),
    JobEvent.RETRY:        Transition(frozenset({JobStatus.FAILED}), JobStatus.PENDING),
    JobEvent.SET_PRIORITY: Transition(ACTIVE_STATUSES, None),
    JobEvent.ARCHIVE:      Transition(TERMINAL_STATUSES, None),
}


class JobStateMachine:
    def create(
        self,
        *,
        organization_id: str,
        user_id: str,
        origin: JobOrigin,
        format: str,
        options: dict[str, Any],
        total_items: int,
        schedule_id: str | None = None,
        priority: JobPriority = JobPriority.NORMAL,
        now: datetime | None = None,
    ) -> ExportJob:
        """Build a new ``pending`` job. Nothing is persisted here."""
        if total_items < 0:
            raise ValidationError("total_items must be >= 0", total_items=total_items)
        try:
            fmt = ExportFormat(format)
        except ValueError:
            raise ValidationError(f"Unsupported export format '{format}'", format=format)
        if not isinstance(options, dict):
            raise ValidationError("options must be a mapping")
        if origin == JobOrigin.SCHEDULED and not schedule_id:
            raise ValidationError("scheduled jobs need a schedule_id")
        now = now or datetime.now(timezone.utc)
        return ExportJob(
            organization_id=organization_id,
            user_id=user_id,
            origin=origin,
            schedule_id=schedule_id,
            format=fmt.value,
            priority=priority,
            status=JobStatus.PENDING,
            progress=0,
            processed_items=0,
            total_items=total_items,
            options=dict(options),
            created_at=now,
            updated_at=now,
        )

    def allowed(self, status: JobStatus, event: JobEvent) -> bool:
        return status in TRANSITIONS[event].sources

    def plan(
        self,
        job: ExportJob,
        event: JobEvent,
        now: datetime | None = None,
        **params: Any,
    ) -> dict[str, Any]:
        """Return the field changes *event* applies to *job*.

        Raises ConflictError when the event is illegal in the job's current
        status (or would move progress backwards).
        """
        transition = TRANSITIONS[event]
        if job.status not in transition.sources:
            raise ConflictError(
                f"Cannot {event.value.replace('_', ' ')} job with status: {job.status.value}",
                job_id=job.id,
                status=job.status.value,
                action=event.value,
            )
        now = now or datetime.now(timezone.utc)
        changes: dict[str, Any] = {"updated_at": now}
        if transition.target is not None and transition.target != job.status:
            changes["status"] = transition.target

        if event == JobEvent.CANCEL:
            changes["error_message"] = params.get("reason") or CANCEL_MESSAGE
            changes["completed_at"] = now

        elif event == JobEvent.PROGRESS:
            changes.update(self._progress(job, params))
            changes["status"] = JobStatus.PROCESSING
            if job.started_at is None:
                changes["started_at"] = now

        elif event == JobEvent.COMPLETE:
            url = params.get("download_url")
            if not url:
                raise ValidationError("download_url is required to complete a job")
            changes.update(
                progress=100,
                processed_items=max(job.processed_items, job.total_items),
                download_url=url,
                file_size=params.get("file_size"),
                completed_at=now,
            )

        elif event == JobEvent.FAIL:
            changes["error_message"] = params.get("error_message") or "Processing failed"
            changes["completed_at"] = now

        elif event == JobEvent.RETRY:
            changes.update(
                progress=0,
                processed_items=0,
                error_message=None,
                completed_at=None,
                started_at=None,
                download_url=None,
                file_size=None,
            )

        elif event == JobEvent.SET_PRIORITY:
            try:
                changes["priority"] = JobPriority(params.get("priority"))
            except ValueError:
                raise ValidationError(
                    f"Invalid priority level '{params.get('priority')}'",
                    priority=params.get("priority"),
                )

        elif event == JobEvent.ARCHIVE:
            changes["archived"] = True

        return changes

    def apply(self, job: ExportJob, changes: dict[str, Any]) -> ExportJob:
        return job.model_copy(update=changes)

    def _progress(self, job: ExportJob, params: dict[str, Any]) -> dict[str, Any]:
        progress = params.get("progress")
        processed = params.get("processed_items", job.processed_items)
        if progress is None or not 0 <= progress <= 100:
            raise ValidationError(f"progress must be within 0..100, got {progress}")
        if processed < 0:
            raise ValidationError(f"processed_items must be >= 0, got {processed}")
        if progress < job.progress:
            raise ConflictError(
                f"Progress may not move backwards ({job.progress} -> {progress})",
                job_id=job.id,
                status=job.status.value,
                action=JobEvent.PROGRESS.value,
            )
        return {"progress": int(progress), "processed_items": int(processed)}
