"""Turns due schedule definitions into export jobs.

A tick claims each due schedule with a compare-and-set on its
``next_execution`` before doing anything else, so concurrent ticks (several
engine processes, or a slow tick overlapping the next one) fire a schedule
at most once per due instant.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.logging_config import reset_trace_id, set_trace_id
from jobs.models import JobLogEntry, JobOrigin, LogLevel
from jobs.selection import ItemFilter, Selection
from scheduler.calculator import NextExecutionCalculator
from scheduler.models import ExecutionStatus, ScheduleDefinition

if TYPE_CHECKING:
    from jobs.dispatcher import JobDispatcher
    from jobs.lifecycle import JobLifecycle
    from jobs.selection import SelectionResolver
    from scheduler.schedule_store import ScheduleStore

logger = logging.getLogger(__name__)


@dataclass
class FiringResult:
    schedule_id: str
    status: ExecutionStatus
    job_id: str | None = None
    error: str | None = None


def job_options(definition: ScheduleDefinition, item_ids: list[str]) -> dict:
    """Everything a worker needs to run one scheduled export, JSON-safe."""
    return {
        **definition.export.model_dump(mode="json"),
        "filters": definition.filters.model_dump(mode="json"),
        "delivery": definition.delivery.model_dump(mode="json"),
        "schedule_name": definition.name,
        "item_ids": item_ids,
    }


class ScheduleFiringLoop:
    def __init__(
        self,
        schedule_store: ScheduleStore,
        lifecycle: JobLifecycle,
        resolver: SelectionResolver,
        dispatcher: JobDispatcher | None = None,
        calculator: NextExecutionCalculator | None = None,
    ):
        self._schedules = schedule_store
        self._lifecycle = lifecycle
        self._resolver = resolver
        self._dispatcher = dispatcher
        self._calculator = calculator or NextExecutionCalculator()

    async def run_due_schedules(self, now: datetime | None = None) -> list[FiringResult]:
        """Fire every active schedule whose ``next_execution`` is <= *now*."""
        now = now or datetime.now(timezone.utc)
        token = set_trace_id(f"tick-{uuid.uuid4().hex[:12]}")
        try:
            due = await self._schedules.due(now)
            results = []
            for definition in due:
                try:
                    result = await self._fire(definition, now)
                except Exception as e:
                    logger.exception("Schedule firing failed", extra={"schedule_id": definition.id})
                    result = FiringResult(
                        definition.id, ExecutionStatus.FAILED, error=str(e) or e.__class__.__name__
                    )
                if result is not None:
                    results.append(result)
            if due:
                logger.info(
                    "Scheduler tick",
                    extra={"due": len(due), "fired": len(results)},
                )
            return results
        finally:
            reset_trace_id(token)

    async def _fire(self, definition: ScheduleDefinition, now: datetime) -> FiringResult | None:
        next_execution = self._calculator.compute(definition.schedule, now)
        claimed = await self._schedules.claim(
            definition.id,
            expected_next=definition.next_execution,
            new_next=next_execution,
            now=now,
        )
        if not claimed:
            logger.debug("Schedule claimed elsewhere", extra={"schedule_id": definition.id})
            return None

        try:
            job = await self._create_job(definition, now)
        except Exception as e:
            logger.error(
                "Scheduled export failed",
                extra={"schedule_id": definition.id, "error": str(e)},
            )
            await self._record_failure(definition, e, now)
            return FiringResult(definition.id, ExecutionStatus.FAILED, error=str(e))

        try:
            await self._schedules.record_outcome(definition.id, ExecutionStatus.SUCCESS, now)
        except Exception:
            # the job exists and is queued; only the counters are behind
            logger.exception("Recording schedule outcome failed", extra={"schedule_id": definition.id})
        logger.info(
            "Schedule fired",
            extra={"schedule_id": definition.id, "job_id": job.id,
                   "next_execution": next_execution.isoformat()},
        )
        return FiringResult(definition.id, ExecutionStatus.SUCCESS, job_id=job.id)

    async def _record_failure(self, definition: ScheduleDefinition, error: Exception, now: datetime) -> None:
        try:
            await self._schedules.record_outcome(definition.id, ExecutionStatus.FAILED, now)
            await self._lifecycle.store.append_log(JobLogEntry(
                schedule_id=definition.id,
                organization_id=definition.organization_id,
                level=LogLevel.ERROR,
                message="Scheduled export failed",
                details={"error": str(error), "error_type": error.__class__.__name__},
            ))
        except Exception:
            logger.exception("Recording schedule failure failed", extra={"schedule_id": definition.id})

    async def _create_job(self, definition: ScheduleDefinition, now: datetime):
        date_from, date_to = definition.filters.window(now)
        selection = Selection(
            filter=ItemFilter(
                date_from=date_from,
                date_to=date_to,
                categories=definition.filters.categories,
                user_ids=definition.filters.user_ids,
                compliance_score_min=definition.filters.compliance_score_min,
            ),
            max_items=self._resolver.absolute_max_items,
        )
        item_ids = await self._resolver.resolve(definition.organization_id, selection)
        job = self._lifecycle.machine.create(
            organization_id=definition.organization_id,
            user_id=definition.created_by,
            origin=JobOrigin.SCHEDULED,
            schedule_id=definition.id,
            format=definition.export.format.value,
            options=job_options(definition, item_ids),
            total_items=len(item_ids),
            now=now,
        )
        job = await self._lifecycle.create(job, actor_id=definition.created_by)
        if self._dispatcher is not None:
            self._dispatcher.enqueue(job)
        return job


class ScheduleTicker:
    """Runs :meth:`ScheduleFiringLoop.run_due_schedules` on a fixed interval."""

    def __init__(self, loop: ScheduleFiringLoop, seconds: float = 60):
        self._loop = loop
        self._seconds = seconds
        self._aps = AsyncIOScheduler()

    async def start(self) -> None:
        self._aps.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self._seconds),
            id="export-schedule-tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._aps.start()
        logger.info("Schedule ticker started", extra={"interval_seconds": self._seconds})

    async def shutdown(self) -> None:
        if self._aps.running:
            self._aps.shutdown(wait=False)
        logger.info("Schedule ticker stopped")

    async def _tick(self) -> None:
        try:
            await self._loop.run_due_schedules()
        except Exception:
            logger.exception("Scheduler tick failed")
