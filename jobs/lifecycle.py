"""JobLifecycle — persists state-machine transitions with optimistic guards.

Each transition is: read the row, let :class:`JobStateMachine` plan the
change, write it conditioned on the status that was read, then append a job
log entry, emit an audit event and publish the new snapshot.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from core.errors import ConflictError, NotFoundError
from integrations.base import AuditEvent
from jobs.models import ExportJob, JobLogEntry, LogLevel
from jobs.state_machine import JobEvent, JobStateMachine

if TYPE_CHECKING:
    from core.event_bus import JobEventBus
    from integrations.base import AuditSink
    from store.job_store import JobStore

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

_LOG_MESSAGES = {
    JobEvent.CANCEL:       "Export job cancelled by user",
    JobEvent.PROGRESS:     "Export job started",
    JobEvent.COMPLETE:     "Export job completed",
    JobEvent.FAIL:         "Export job failed",
    JobEvent.RETRY:        "Job retry by user",
    JobEvent.SET_PRIORITY: "Job priority by user",
    JobEvent.ARCHIVE:      "Job archive by user",
}

_AUDIT_ACTIONS = {
    JobEvent.CANCEL:       "export_job_cancelled",
    JobEvent.PROGRESS:     "export_job_started",
    JobEvent.COMPLETE:     "export_job_completed",
    JobEvent.FAIL:         "export_job_failed",
    JobEvent.RETRY:        "export_job_retried",
    JobEvent.SET_PRIORITY: "export_job_priority_changed",
    JobEvent.ARCHIVE:      "export_job_archived",
}

# Re-read attempts when a guarded write loses a race with a legal transition.
_MAX_ATTEMPTS = 3


def _json_safe(params: dict[str, Any]) -> dict[str, Any]:
    return {k: (v.value if hasattr(v, "value") else v) for k, v in params.items()}


class JobLifecycle:
    def __init__(
        self,
        store: JobStore,
        audit: AuditSink,
        event_bus: JobEventBus | None = None,
        state_machine: JobStateMachine | None = None,
    ):
        self.store = store
        self.audit = audit
        self.event_bus = event_bus
        self.machine = state_machine or JobStateMachine()

    # ── Reads ────────────────────────────────────────────────────────────────

    async def load(self, job_id: str, organization_id: str | None = None) -> ExportJob:
        try:
            return await self.store.load(job_id, organization_id)
        except KeyError:
            raise NotFoundError(f"Export job '{job_id}' not found", job_id=job_id)

    # ── Transitions ──────────────────────────────────────────────────────────

    async def create(self, job: ExportJob, actor_id: str = SYSTEM_ACTOR) -> ExportJob:
        """Persist a job built by :meth:`JobStateMachine.create`."""
        await self.store.insert(job)
        await self._log(job, LogLevel.INFO, "Export job created", {
            "origin": job.origin.value,
            "schedule_id": job.schedule_id,
            "total_items": job.total_items,
            "format": job.format,
            "created_by": actor_id,
        })
        await self._audit(job, actor_id, "export_job_created", {
            "origin": job.origin.value,
            "item_count": job.total_items,
            "format": job.format,
        })
        self._publish(job)
        logger.info(
            "Job created",
            extra={"job_id": job.id, "origin": job.origin.value, "total_items": job.total_items},
        )
        return job

    async def apply(
        self,
        job: ExportJob,
        event: JobEvent,
        actor_id: str = SYSTEM_ACTOR,
        now: datetime | None = None,
        **params: Any,
    ) -> ExportJob:
        """Apply *event* to the snapshot *job*.

        The write only lands if the stored row still has the snapshot's
        status; otherwise ConflictError is raised and nothing changes.
        """
        now = now or datetime.now(timezone.utc)
        changes = self.machine.plan(job, event, now, **params)
        ok = await self.store.guarded_update(
            job.id,
            expected_status=job.status,
            changes=changes,
            max_prior_progress=changes.get("progress") if event == JobEvent.PROGRESS else None,
        )
        if not ok:
            raise ConflictError(
                f"Export job '{job.id}' was modified concurrently; re-read and retry",
                job_id=job.id,
                status=job.status.value,
                action=event.value,
            )
        updated = self.machine.apply(job, changes)
        self._publish(updated)

        # plain progress ticks are not transitions worth recording
        if event == JobEvent.PROGRESS and job.status == updated.status:
            return updated

        details = {"previous_status": job.status.value, "actor": actor_id, **_json_safe(params)}
        if event == JobEvent.CANCEL:
            details["progress_at_cancellation"] = job.progress
        level = LogLevel.ERROR if event == JobEvent.FAIL else LogLevel.INFO
        await self._log(updated, level, _LOG_MESSAGES[event], details)
        await self._audit(updated, actor_id, _AUDIT_ACTIONS[event], details)
        logger.info(
            "Job transition",
            extra={"job_id": job.id, "event": event.value,
                   "from": job.status.value, "to": updated.status.value},
        )
        return updated

    async def advance(
        self,
        job_id: str,
        event: JobEvent,
        actor_id: str = SYSTEM_ACTOR,
        **params: Any,
    ) -> ExportJob:
        """Re-read the job and apply *event*, retrying lost races.

        Illegal transitions still raise ConflictError straight away.
        """
        attempt = 0
        while True:
            attempt += 1
            job = await self.load(job_id)
            try:
                return await self.apply(job, event, actor_id, **params)
            except ConflictError:
                current = await self.load(job_id)
                if attempt == _MAX_ATTEMPTS or not self.machine.allowed(current.status, event):
                    raise
                logger.warning(
                    "Job write lost a race, retrying",
                    extra={"job_id": job_id, "event": event.value, "attempt": attempt},
                )

    # ── Side records ─────────────────────────────────────────────────────────

    async def _log(self, job: ExportJob, level: LogLevel, message: str, details: dict) -> None:
        await self.store.append_log(JobLogEntry(
            job_id=job.id,
            schedule_id=job.schedule_id,
            organization_id=job.organization_id,
            level=level,
            message=message,
            details=details,
        ))

    async def _audit(self, job: ExportJob, actor_id: str, action: str, details: dict) -> None:
        try:
            await self.audit.record(AuditEvent(
                actor_id=actor_id,
                organization_id=job.organization_id,
                action=action,
                resource_type="export_job",
                resource_id=job.id,
                details=details,
            ))
        except Exception:
            logger.exception("Audit sink failed", extra={"job_id": job.id, "action": action})

    def _publish(self, job: ExportJob) -> None:
        if self.event_bus:
            self.event_bus.publish(job)
