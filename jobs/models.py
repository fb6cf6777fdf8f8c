"""Export job data models."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Dispatch order: lower ranks are served first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    JobPriority.URGENT: 0,
    JobPriority.HIGH: 1,
    JobPriority.NORMAL: 2,
    JobPriority.LOW: 3,
}


class JobOrigin(str, Enum):
    SINGLE = "single"
    BULK = "bulk"
    SCHEDULED = "scheduled"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ExportJob(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    organization_id: str
    user_id: str
    origin: JobOrigin
    schedule_id: str | None = None
    status: JobStatus = JobStatus.PENDING
    archived: bool = False
    format: str
    priority: JobPriority = JobPriority.NORMAL
    progress: int = Field(default=0, ge=0, le=100)
    total_items: int = Field(default=0, ge=0)
    processed_items: int = Field(default=0, ge=0)
    error_message: str | None = None
    download_url: str | None = None
    file_size: int | None = None
    options: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def item_ids(self) -> list[str]:
        return list(self.options.get("item_ids", []))


class JobLogEntry(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_id: str | None = None
    schedule_id: str | None = None
    organization_id: str
    level: LogLevel = LogLevel.INFO
    message: str
    details: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
