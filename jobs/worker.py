"""ExportWorker — executes one export job handed over by the dispatcher."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from core.errors import ConflictError
from core.logging_config import reset_trace_id, set_trace_id
from jobs.dispatcher import CancelToken
from jobs.models import ExportJob, JobStatus
from jobs.state_machine import JobEvent
from scheduler.models import DeliveryConfig

if TYPE_CHECKING:
    from integrations.base import ArtifactRenderer, DeliveryChannel
    from jobs.lifecycle import JobLifecycle

logger = logging.getLogger(__name__)


class ExportWorker:
    def __init__(
        self,
        lifecycle: JobLifecycle,
        renderer: ArtifactRenderer,
        delivery: DeliveryChannel | None = None,
    ):
        self.lifecycle = lifecycle
        self.renderer = renderer
        self.delivery = delivery

    async def process(self, job_id: str, cancel: CancelToken) -> None:
        """Run *job_id* from pending to a terminal status.

        The worker stops quietly as soon as a guarded write reports that the
        job moved on without it (most often: cancelled by a user).
        """
        token = set_trace_id(job_id)
        try:
            job = await self.lifecycle.load(job_id)
            if job.status != JobStatus.PENDING:
                logger.info("Job no longer pending, skipping",
                            extra={"job_id": job_id, "status": job.status.value})
                return
            try:
                job = await self._run(job, cancel)
            except ConflictError as e:
                logger.info("Job changed underneath worker, stopping",
                            extra={"job_id": job_id, "reason": str(e)})
                return
            except Exception as e:
                logger.error("Export failed", extra={"job_id": job_id, "error": str(e)})
                job = await self._fail(job_id, str(e) or e.__class__.__name__)
            if job is not None:
                await self._notify(job)
        finally:
            reset_trace_id(token)

    async def _run(self, job: ExportJob, cancel: CancelToken) -> ExportJob | None:
        job = await self.lifecycle.apply(job, JobEvent.PROGRESS, progress=0, processed_items=0)
        item_ids = job.item_ids
        total = len(item_ids)
        logger.info("Export started", extra={"job_id": job.id, "total_items": total})

        items = []
        for done, item_id in enumerate(item_ids, start=1):
            if cancel.cancelled:
                return await self._honour_cancel(job.id)
            items.append(await self.renderer.fetch(job.organization_id, item_id))
            job = await self.lifecycle.apply(
                job,
                JobEvent.PROGRESS,
                progress=done * 100 // total,
                processed_items=done,
            )

        if cancel.cancelled:
            return await self._honour_cancel(job.id)
        artifact = await self.renderer.render(job, items)
        job = await self.lifecycle.apply(
            job,
            JobEvent.COMPLETE,
            download_url=artifact.download_url,
            file_size=artifact.file_size,
        )
        logger.info("Export completed", extra={"job_id": job.id, "download_url": job.download_url})
        return job

    async def _honour_cancel(self, job_id: str) -> None:
        try:
            await self.lifecycle.advance(job_id, JobEvent.CANCEL)
        except ConflictError:
            pass        # already cancelled by the requester
        logger.info("Export cancelled at checkpoint", extra={"job_id": job_id})
        return None

    async def _fail(self, job_id: str, message: str) -> ExportJob | None:
        try:
            job = await self.lifecycle.load(job_id)
            if job.status == JobStatus.PENDING:
                # broke before the start was recorded; FAIL is only legal from processing
                await self.lifecycle.apply(job, JobEvent.PROGRESS, progress=0, processed_items=0)
            return await self.lifecycle.advance(job_id, JobEvent.FAIL, error_message=message)
        except ConflictError:
            logger.warning("Could not record failure, job already left processing",
                           extra={"job_id": job_id})
            return None

    async def _notify(self, job: ExportJob) -> None:
        raw = job.options.get("delivery")
        if self.delivery is None or not raw:
            return
        delivery = DeliveryConfig.model_validate(raw)
        wanted = (
            (job.status == JobStatus.COMPLETED and delivery.notify_on_completion)
            or (job.status == JobStatus.FAILED and delivery.notify_on_failure)
        )
        if not wanted:
            return
        try:
            await self.delivery.deliver(job, delivery)
        except Exception:
            logger.exception("Delivery failed", extra={"job_id": job.id})
