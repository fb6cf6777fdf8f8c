"""API request and response models."""

from pydantic import BaseModel

from core.service import (
    BulkExportRequest,
    BulkJobReceipt,
    JobStatusReport,
    SchedulePage,
    ScheduleStats,
    SingleExportRequest,
)
from scheduler.models import ExecutionStatus, ScheduleDraft

# Bodies shared with the service layer are re-exported as-is.
CreateScheduleRequest = ScheduleDraft

__all__ = [
    "BulkExportRequest",
    "BulkJobReceipt",
    "CancelRequest",
    "CreateScheduleRequest",
    "FiringResultResponse",
    "JobStatusReport",
    "PriorityRequest",
    "SchedulePage",
    "ScheduleStats",
    "SingleExportRequest",
]


class CancelRequest(BaseModel):
    reason: str | None = None


class PriorityRequest(BaseModel):
    priority: str        # checked by the state machine


class FiringResultResponse(BaseModel):
    schedule_id: str
    status: ExecutionStatus
    job_id: str | None = None
    error: str | None = None
