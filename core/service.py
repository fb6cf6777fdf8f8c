"""ExportService: the operations the API and CLI expose.

Wires the stores, the job lifecycle, the dispatcher and the schedule firing
loop together and applies the capability policy to every caller.  Callers
pass an already-resolved :class:`core.policy.Actor`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, Field

from core.config import EngineSettings
from core.errors import (
    LimitExceededError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from core.event_bus import JobEventBus
from core.policy import DEFAULT_POLICY, Actor, Capability, CapabilityPolicy
from integrations.base import (
    ArtifactRenderer,
    AuditEvent,
    AuditSink,
    DeliveryChannel,
    IdentityProvider,
)
from integrations.builtin import LoggingAuditSink, LoggingDeliveryChannel, ManifestRenderer
from jobs.dispatcher import JobDispatcher
from jobs.lifecycle import JobLifecycle
from jobs.metrics import JobMetrics, compute_metrics, estimate_duration, humanize_duration
from jobs.models import ExportJob, JobLogEntry, JobOrigin, JobPriority, JobStatus
from jobs.selection import DEFAULT_MAX_ITEMS, ItemFilter, Selection, SelectionResolver
from jobs.state_machine import JobEvent
from jobs.worker import ExportWorker
from scheduler.calculator import NextExecutionCalculator
from scheduler.firing_loop import FiringResult, ScheduleFiringLoop, ScheduleTicker
from scheduler.models import ScheduleDefinition, ScheduleDraft, ScheduleType
from scheduler.schedule_store import ScheduleStore
from store.item_store import ItemStore
from store.job_store import JobStore

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


# ── Request / result models ──────────────────────────────────────────────────

class BulkExportRequest(BaseModel):
    item_ids: list[str] | None = None
    filter: ItemFilter = ItemFilter()
    max_items: int = Field(default=DEFAULT_MAX_ITEMS, ge=1)
    format: str = "pdf"
    priority: JobPriority = JobPriority.NORMAL
    options: dict[str, Any] = {}


class SingleExportRequest(BaseModel):
    item_id: str
    format: str = "pdf"
    priority: JobPriority = JobPriority.NORMAL
    options: dict[str, Any] = {}


class BulkJobReceipt(BaseModel):
    job: ExportJob
    estimated_seconds: float
    estimated_time: str


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class ScheduleQuota(BaseModel):
    used: int
    limit: int


class SchedulePage(BaseModel):
    schedules: list[ScheduleDefinition]
    pagination: Pagination
    quota: ScheduleQuota


class ScheduleStats(BaseModel):
    total_schedules: int
    active_schedules: int
    total_executions: int
    successful_exports: int
    failed_exports: int
    success_rate: float            # percent, one decimal
    next_upcoming: datetime | None = None


class JobStatusReport(BaseModel):
    job: ExportJob
    metrics: JobMetrics
    estimated_completion: datetime | None = None
    logs: list[JobLogEntry] = []


# ── Service ──────────────────────────────────────────────────────────────────

class ExportService:
    def __init__(
        self,
        *,
        schedules: ScheduleStore,
        jobs: JobStore,
        items: ItemStore,
        lifecycle: JobLifecycle,
        resolver: SelectionResolver,
        dispatcher: JobDispatcher,
        firing_loop: ScheduleFiringLoop,
        identity: IdentityProvider,
        audit: AuditSink,
        event_bus: JobEventBus,
        policy: CapabilityPolicy = DEFAULT_POLICY,
        calculator: NextExecutionCalculator | None = None,
        ticker: ScheduleTicker | None = None,
        stuck_after: timedelta = timedelta(minutes=10),
    ):
        self.schedules = schedules
        self.jobs = jobs
        self.items = items
        self.lifecycle = lifecycle
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.firing_loop = firing_loop
        self.identity = identity
        self.audit = audit
        self.event_bus = event_bus
        self.policy = policy
        self.calculator = calculator or NextExecutionCalculator()
        self.ticker = ticker
        self.stuck_after = stuck_after

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def init(self) -> None:
        """Create tables. Safe to call repeatedly."""
        await self.schedules.init()
        await self.jobs.init()
        await self.items.init()

    async def start(self) -> None:
        """Start workers (re-queuing leftover pending jobs) and the ticker."""
        await self.dispatcher.start()
        for job in await self.jobs.list_pending():
            self.dispatcher.enqueue(job)
        if self.ticker is not None:
            await self.ticker.start()

    async def shutdown(self) -> None:
        if self.ticker is not None:
            await self.ticker.shutdown()
        await self.dispatcher.shutdown()
        await self.schedules.dispose()
        await self.jobs.dispose()
        await self.items.dispose()

    async def resolve_actor(self, user_id: str) -> Actor:
        return await self.identity.resolve(user_id)

    # ── Schedules ────────────────────────────────────────────────────────────

    async def create_schedule(
        self,
        actor: Actor,
        draft: ScheduleDraft,
        now: datetime | None = None,
    ) -> ScheduleDefinition:
        self.policy.require(actor, Capability.CREATE_SCHEDULE, "create scheduled exports")
        # quota counts active schedules only; a paused draft is checked on resume
        if draft.is_active:
            await self._check_quota(actor)
        now = now or datetime.now(timezone.utc)
        definition = ScheduleDefinition(
            **draft.model_dump(),
            organization_id=actor.organization_id,
            created_by=actor.user_id,
            next_execution=self.calculator.compute(draft.schedule, now) if draft.is_active else None,
            created_at=now,
            updated_at=now,
        )
        await self.schedules.insert(definition)
        await self._audit(actor, "scheduled_export_created", "scheduled_export", definition.id, {
            "name": definition.name,
            "schedule_type": definition.schedule.type.value,
            "format": definition.export.format.value,
        })
        logger.info(
            "Schedule created",
            extra={"schedule_id": definition.id, "organization_id": actor.organization_id,
                   "next_execution": definition.next_execution.isoformat()
                   if definition.next_execution else None},
        )
        return definition

    async def list_schedules(
        self,
        actor: Actor,
        is_active: bool | None = None,
        schedule_type: ScheduleType | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> SchedulePage:
        if page < 1:
            raise ValidationError("page must be >= 1", page=page)
        if limit < 1:
            raise ValidationError("limit must be >= 1", limit=limit)
        limit = min(limit, MAX_PAGE_SIZE)
        created_by = None if self.policy.allows(actor, Capability.VIEW_ALL) else actor.user_id
        schedules, total = await self.schedules.list_for_org(
            actor.organization_id,
            created_by=created_by,
            is_active=is_active,
            schedule_type=schedule_type,
            limit=limit,
            offset=(page - 1) * limit,
        )
        return SchedulePage(
            schedules=schedules,
            pagination=Pagination(page=page, limit=limit, total=total, pages=-(-total // limit)),
            quota=ScheduleQuota(
                used=await self.schedules.count_active(actor.organization_id),
                limit=self.policy.schedule_quota(actor.role),
            ),
        )

    async def get_schedule(self, actor: Actor, schedule_id: str) -> ScheduleDefinition:
        try:
            definition = await self.schedules.load(schedule_id, actor.organization_id)
        except KeyError:
            raise NotFoundError(f"Scheduled export '{schedule_id}' not found", schedule_id=schedule_id)
        if definition.created_by != actor.user_id and not self.policy.allows(actor, Capability.VIEW_ALL):
            raise PermissionDeniedError("Not authorized to view this scheduled export")
        return definition

    async def set_schedule_active(
        self,
        actor: Actor,
        schedule_id: str,
        active: bool,
        now: datetime | None = None,
    ) -> ScheduleDefinition:
        """Pause or resume a schedule. Resuming recomputes ``next_execution`` from *now*."""
        definition = await self.get_schedule(actor, schedule_id)
        if not self.policy.can_manage_job(actor, definition.created_by):
            raise PermissionDeniedError("Not authorized to modify this scheduled export")
        if definition.is_active == active:
            return definition
        if active:
            await self._check_quota(actor)
        now = now or datetime.now(timezone.utc)
        next_execution = self.calculator.compute(definition.schedule, now) if active else None
        await self.schedules.set_active(schedule_id, active, next_execution, now)
        action = "scheduled_export_activated" if active else "scheduled_export_deactivated"
        await self._audit(actor, action, "scheduled_export", schedule_id, {"name": definition.name})
        logger.info("Schedule toggled", extra={"schedule_id": schedule_id, "active": active})
        return await self.schedules.load(schedule_id)

    async def schedule_stats(self, actor: Actor) -> ScheduleStats:
        summary = await self.schedules.org_summary(actor.organization_id)
        outcomes = await self.jobs.scheduled_outcomes(actor.organization_id)
        successful = outcomes.get(JobStatus.COMPLETED.value, 0)
        failed = outcomes.get(JobStatus.FAILED.value, 0) + summary["failures"]
        finished = successful + failed
        return ScheduleStats(
            total_schedules=summary["total"],
            active_schedules=summary["active"],
            total_executions=summary["executions"],
            successful_exports=successful,
            failed_exports=failed,
            success_rate=round(successful / finished * 100, 1) if finished else 0.0,
            next_upcoming=summary["next_upcoming"],
        )

    async def run_due_schedules(self, now: datetime | None = None) -> list[FiringResult]:
        return await self.firing_loop.run_due_schedules(now)

    # ── Job creation ─────────────────────────────────────────────────────────

    async def create_bulk_job(self, actor: Actor, request: BulkExportRequest) -> BulkJobReceipt:
        self.policy.require(actor, Capability.BULK_EXPORT, "run bulk exports")
        selection = Selection(
            item_ids=request.item_ids,
            filter=request.filter,
            max_items=request.max_items,
        )
        item_ids = await self.resolver.resolve(actor.organization_id, selection)
        job = self.lifecycle.machine.create(
            organization_id=actor.organization_id,
            user_id=actor.user_id,
            origin=JobOrigin.BULK,
            format=request.format,
            options={**request.options, "item_ids": item_ids},
            total_items=len(item_ids),
            priority=request.priority,
        )
        job = await self._submit(job, actor)
        seconds = estimate_duration(len(item_ids))
        return BulkJobReceipt(job=job, estimated_seconds=seconds, estimated_time=humanize_duration(seconds))

    async def create_single_job(self, actor: Actor, request: SingleExportRequest) -> ExportJob:
        try:
            await self.items.load(request.item_id, actor.organization_id)
        except KeyError:
            raise NotFoundError(f"Item '{request.item_id}' not found", item_id=request.item_id)
        job = self.lifecycle.machine.create(
            organization_id=actor.organization_id,
            user_id=actor.user_id,
            origin=JobOrigin.SINGLE,
            format=request.format,
            options={**request.options, "item_ids": [request.item_id]},
            total_items=1,
            priority=request.priority,
        )
        return await self._submit(job, actor)

    # ── Job queries ──────────────────────────────────────────────────────────

    async def get_job(self, actor: Actor, job_id: str) -> ExportJob:
        job = await self.lifecycle.load(job_id, actor.organization_id)
        if job.user_id != actor.user_id and not self.policy.allows(actor, Capability.VIEW_ALL):
            raise PermissionDeniedError("Not authorized to view this export job")
        return job

    async def get_job_status(
        self,
        actor: Actor,
        job_id: str,
        now: datetime | None = None,
    ) -> JobStatusReport:
        job = await self.get_job(actor, job_id)
        now = now or datetime.now(timezone.utc)
        metrics = compute_metrics(job, now, self.stuck_after)
        eta = None
        if metrics.eta_seconds is not None:
            eta = now + timedelta(seconds=metrics.eta_seconds)
        return JobStatusReport(
            job=job,
            metrics=metrics,
            estimated_completion=eta,
            logs=await self.jobs.list_logs(job_id=job.id, limit=10),
        )

    async def job_logs(self, actor: Actor, job_id: str, limit: int = 10) -> list[JobLogEntry]:
        job = await self.get_job(actor, job_id)
        return await self.jobs.list_logs(job_id=job.id, limit=min(limit, MAX_PAGE_SIZE))

    async def list_jobs(
        self,
        actor: Actor,
        status: JobStatus | None = None,
        include_archived: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ExportJob]:
        user_id = None if self.policy.allows(actor, Capability.VIEW_ALL) else actor.user_id
        return await self.jobs.list_jobs(
            actor.organization_id,
            user_id=user_id,
            status=status,
            include_archived=include_archived,
            limit=min(max(limit, 1), MAX_PAGE_SIZE),
            offset=max(offset, 0),
        )

    # ── Job actions ──────────────────────────────────────────────────────────

    async def cancel_job(self, actor: Actor, job_id: str, reason: str | None = None) -> ExportJob:
        await self._managed_job(actor, job_id, "cancel")
        job = await self.lifecycle.advance(job_id, JobEvent.CANCEL, actor.user_id, reason=reason)
        self.dispatcher.request_cancel(job_id)
        return job

    async def retry_job(self, actor: Actor, job_id: str) -> ExportJob:
        await self._managed_job(actor, job_id, "retry")
        job = await self.lifecycle.advance(job_id, JobEvent.RETRY, actor.user_id)
        self.dispatcher.enqueue(job)
        return job

    async def set_priority(self, actor: Actor, job_id: str, priority: JobPriority | str) -> ExportJob:
        await self._managed_job(actor, job_id, "prioritize")
        job = await self.lifecycle.advance(
            job_id, JobEvent.SET_PRIORITY, actor.user_id, priority=priority
        )
        # the new queue entry supersedes the old one
        if job.status == JobStatus.PENDING:
            self.dispatcher.enqueue(job)
        return job

    async def archive_job(self, actor: Actor, job_id: str) -> ExportJob:
        await self._managed_job(actor, job_id, "archive")
        return await self.lifecycle.advance(job_id, JobEvent.ARCHIVE, actor.user_id)

    # ── Internal ─────────────────────────────────────────────────────────────

    async def _submit(self, job: ExportJob, actor: Actor) -> ExportJob:
        job = await self.lifecycle.create(job, actor_id=actor.user_id)
        self.dispatcher.enqueue(job)
        return job

    async def _managed_job(self, actor: Actor, job_id: str, action: str) -> ExportJob:
        job = await self.lifecycle.load(job_id, actor.organization_id)
        if not self.policy.can_manage_job(actor, job.user_id):
            raise PermissionDeniedError(f"Not authorized to {action} this job", job_id=job_id)
        return job

    async def _check_quota(self, actor: Actor) -> None:
        quota = self.policy.schedule_quota(actor.role)
        active = await self.schedules.count_active(actor.organization_id)
        if active >= quota:
            raise LimitExceededError(
                f"Maximum {quota} scheduled exports allowed for role {actor.role}",
                limit=quota,
                active=active,
            )

    async def _audit(
        self,
        actor: Actor,
        action: str,
        resource_type: str,
        resource_id: str,
        details: dict,
    ) -> None:
        try:
            await self.audit.record(AuditEvent(
                actor_id=actor.user_id,
                organization_id=actor.organization_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                details=details,
            ))
        except Exception:
            logger.exception("Audit sink failed", extra={"action": action})


def build_service(
    settings: EngineSettings,
    identity: IdentityProvider,
    *,
    renderer: ArtifactRenderer | None = None,
    delivery: DeliveryChannel | None = None,
    audit: AuditSink | None = None,
    policy: CapabilityPolicy = DEFAULT_POLICY,
    with_ticker: bool = True,
) -> ExportService:
    """Assemble an :class:`ExportService` from settings and collaborators."""
    schedules = ScheduleStore(settings.database_url)
    jobs = JobStore(settings.database_url)
    items = ItemStore(settings.database_url)
    audit = audit or LoggingAuditSink()
    event_bus = JobEventBus()

    lifecycle = JobLifecycle(jobs, audit, event_bus)
    resolver = SelectionResolver(items, absolute_max_items=settings.max_bulk_items)
    worker = ExportWorker(
        lifecycle,
        renderer or ManifestRenderer(items, settings.export_dir),
        delivery or LoggingDeliveryChannel(),
    )
    dispatcher = JobDispatcher(worker.process, workers=settings.worker_count)
    calculator = NextExecutionCalculator()
    firing_loop = ScheduleFiringLoop(schedules, lifecycle, resolver, dispatcher, calculator)
    ticker = ScheduleTicker(firing_loop, seconds=settings.tick_seconds) if with_ticker else None

    return ExportService(
        schedules=schedules,
        jobs=jobs,
        items=items,
        lifecycle=lifecycle,
        resolver=resolver,
        dispatcher=dispatcher,
        firing_loop=firing_loop,
        identity=identity,
        audit=audit,
        event_bus=event_bus,
        policy=policy,
        calculator=calculator,
        ticker=ticker,
        stuck_after=timedelta(minutes=settings.stuck_after_minutes),
    )
