"""FastAPI service layer for the export engine."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from api.models import (
    BulkExportRequest,
    BulkJobReceipt,
    CancelRequest,
    CreateScheduleRequest,
    FiringResultResponse,
    JobStatusReport,
    PriorityRequest,
    SchedulePage,
    ScheduleStats,
    SingleExportRequest,
)
from core.config import EngineSettings
from core.errors import EngineError, InternalError
from core.event_bus import job_event
from core.logging_config import setup_logging
from core.policy import Actor, Capability
from core.service import ExportService, build_service
from integrations.builtin import StaticIdentityProvider
from jobs.models import ExportJob, JobLogEntry, JobStatus
from scheduler.models import ScheduleDefinition, ScheduleType

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    "validation_error": 400,
    "limit_exceeded": 400,
    "permission_denied": 403,
    "not_found": 404,
    "conflict": 409,
    "internal_error": 500,
}

_SSE_TERMINAL = {s.value for s in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)}
_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


# ── Dependencies ──────────────────────────────────────────────────────────────

def get_service(request: Request) -> ExportService:
    return request.app.state.service


async def current_actor(
    x_user_id: str | None = Header(default=None),
    service: ExportService = Depends(get_service),
) -> Actor:
    """Resolve the caller from the ``X-User-Id`` header set by the gateway."""
    if not x_user_id:
        raise HTTPException(401, detail="Unauthorized")
    return await service.resolve_actor(x_user_id)


# ── App factory ───────────────────────────────────────────────────────────────

def create_app(service: ExportService) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.init()
        await service.start()
        yield
        await service.shutdown()

    app = FastAPI(
        title="Export Engine API",
        description="Scheduled and bulk exports with a tracked job lifecycle.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.service = service

    @app.exception_handler(EngineError)
    async def engine_error(request: Request, exc: EngineError):
        status = _STATUS_CODES.get(exc.code, 500)
        if status >= 500:
            logger.error("Engine error", extra={"path": request.url.path, "error": exc.message})
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error", extra={"path": request.url.path})
        return JSONResponse(status_code=500, content=InternalError(str(exc)).to_dict())

    _register_routes(app)
    return app


def app_from_env() -> FastAPI:
    """Factory for ``uvicorn --factory api.server:app_from_env``."""
    settings = EngineSettings.from_env()
    setup_logging(settings.log_level, settings.log_json)
    identity = (
        StaticIdentityProvider.from_yaml(settings.members_file)
        if settings.members_file else StaticIdentityProvider()
    )
    return create_app(build_service(settings, identity))


# ── Routes ────────────────────────────────────────────────────────────────────

def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health(service: ExportService = Depends(get_service)):
        return {
            "status": "ok",
            "workers_running": service.dispatcher.running,
            "queued_jobs": service.dispatcher.queued,
        }

    # ── Schedules ────────────────────────────────────────────────────────────

    @app.post("/schedules", response_model=ScheduleDefinition, status_code=201)
    async def create_schedule(
        req: CreateScheduleRequest,
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        """Create a recurring export definition."""
        return await service.create_schedule(actor, req)

    @app.get("/schedules", response_model=SchedulePage)
    async def list_schedules(
        is_active: bool | None = None,
        schedule_type: ScheduleType | None = None,
        page: int = 1,
        limit: int = 20,
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        return await service.list_schedules(actor, is_active, schedule_type, page, limit)

    @app.get("/schedules/stats", response_model=ScheduleStats)
    async def schedule_stats(
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        return await service.schedule_stats(actor)

    @app.post("/schedules/run-due", response_model=list[FiringResultResponse])
    async def run_due_schedules(
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        """Run one scheduler tick now instead of waiting for the ticker."""
        service.policy.require(actor, Capability.MANAGE_ANY_JOB, "trigger scheduled exports")
        results = await service.run_due_schedules()
        return [FiringResultResponse(**vars(r)) for r in results]

    @app.get("/schedules/{schedule_id}", response_model=ScheduleDefinition)
    async def get_schedule(
        schedule_id: str,
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        return await service.get_schedule(actor, schedule_id)

    @app.post("/schedules/{schedule_id}/pause", response_model=ScheduleDefinition)
    async def pause_schedule(
        schedule_id: str,
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        """Deactivate a schedule (it stays in the store but stops firing)."""
        return await service.set_schedule_active(actor, schedule_id, False)

    @app.post("/schedules/{schedule_id}/resume", response_model=ScheduleDefinition)
    async def resume_schedule(
        schedule_id: str,
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        """Reactivate a schedule; its next execution is recomputed from now."""
        return await service.set_schedule_active(actor, schedule_id, True)

    # ── Exports ──────────────────────────────────────────────────────────────

    @app.post("/exports/bulk", response_model=BulkJobReceipt, status_code=202)
    async def create_bulk_export(
        req: BulkExportRequest,
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        """Queue a bulk export. Returns the pending job immediately."""
        return await service.create_bulk_job(actor, req)

    @app.post("/exports/single", response_model=ExportJob, status_code=202)
    async def create_single_export(
        req: SingleExportRequest,
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        return await service.create_single_job(actor, req)

    # ── Jobs ─────────────────────────────────────────────────────────────────

    @app.get("/jobs", response_model=list[ExportJob])
    async def list_jobs(
        status: JobStatus | None = None,
        include_archived: bool = False,
        limit: int = 50,
        offset: int = 0,
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        return await service.list_jobs(actor, status, include_archived, limit, offset)

    @app.get("/jobs/{job_id}", response_model=JobStatusReport)
    async def get_job_status(
        job_id: str,
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        """Job snapshot with progress metrics and its most recent log entries."""
        return await service.get_job_status(actor, job_id)

    @app.get("/jobs/{job_id}/logs", response_model=list[JobLogEntry])
    async def job_logs(
        job_id: str,
        limit: int = 10,
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        return await service.job_logs(actor, job_id, limit)

    @app.post("/jobs/{job_id}/cancel", response_model=ExportJob)
    async def cancel_job(
        job_id: str,
        req: CancelRequest | None = None,
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        return await service.cancel_job(actor, job_id, req.reason if req else None)

    @app.post("/jobs/{job_id}/retry", response_model=ExportJob)
    async def retry_job(
        job_id: str,
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        return await service.retry_job(actor, job_id)

    @app.post("/jobs/{job_id}/priority", response_model=ExportJob)
    async def set_priority(
        job_id: str,
        req: PriorityRequest,
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        return await service.set_priority(actor, job_id, req.priority)

    @app.post("/jobs/{job_id}/archive", response_model=ExportJob)
    async def archive_job(
        job_id: str,
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        return await service.archive_job(actor, job_id)

    @app.get("/jobs/{job_id}/stream")
    async def stream_job(
        job_id: str,
        actor: Actor = Depends(current_actor),
        service: ExportService = Depends(get_service),
    ):
        """Stream live job state changes as Server-Sent Events.

        Immediately sends the current snapshot, then pushes every subsequent
        change until the job reaches a terminal status or the client
        disconnects.  A comment line (``: heartbeat``) is sent every 30 s.
        """
        await service.get_job(actor, job_id)
        bus = service.event_bus

        async def generator():
            # subscribe before reading the snapshot so no change falls in between
            q = bus.subscribe(job_id)
            try:
                job = await service.lifecycle.load(job_id, actor.organization_id)
                snapshot = job_event(job)
                yield f"data: {json.dumps(snapshot)}\n\n"
                if snapshot["status"] in _SSE_TERMINAL:
                    return
                while True:
                    try:
                        event = await asyncio.wait_for(q.get(), timeout=30.0)
                        yield f"data: {json.dumps(event)}\n\n"
                        if event.get("status") in _SSE_TERMINAL:
                            return
                    except asyncio.TimeoutError:
                        yield ": heartbeat\n\n"
            except asyncio.CancelledError:
                pass
            finally:
                bus.unsubscribe(job_id, q)

        return StreamingResponse(generator(), media_type="text/event-stream", headers=_SSE_HEADERS)
