"""Scheduler data models."""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator


class ScheduleType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class ExportFormat(str, Enum):
    PDF = "pdf"
    DOCX = "docx"
    HTML = "html"


class DateRange(str, Enum):
    LAST_WEEK = "last_week"
    LAST_MONTH = "last_month"
    LAST_QUARTER = "last_quarter"
    CUSTOM = "custom"


class DeliveryMethod(str, Enum):
    EMAIL = "email"
    STORAGE = "storage"
    BOTH = "both"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ScheduleConfig(BaseModel):
    type: ScheduleType
    day_of_week: int | None = Field(default=None, ge=0, le=6)     # 0 = Sunday
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    hour: int = Field(ge=0, le=23)
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone '{value}'")
        return value


_RANGE_DAYS = {
    DateRange.LAST_WEEK: 7,
    DateRange.LAST_MONTH: 30,
    DateRange.LAST_QUARTER: 90,
}


class FilterConfig(BaseModel):
    date_range: DateRange = DateRange.LAST_WEEK
    custom_date_from: datetime | None = None
    custom_date_to: datetime | None = None
    categories: list[str] = []
    user_ids: list[str] = []
    compliance_score_min: float | None = Field(default=None, ge=0, le=1)

    @model_validator(mode="after")
    def check_custom_range(self):
        if self.date_range == DateRange.CUSTOM and not (
            self.custom_date_from or self.custom_date_to
        ):
            raise ValueError("custom date range needs custom_date_from or custom_date_to")
        return self

    def window(self, now: datetime) -> tuple[datetime | None, datetime | None]:
        """Concrete (from, to) bounds of the date range as seen at *now*."""
        if self.date_range == DateRange.CUSTOM:
            return self.custom_date_from, self.custom_date_to
        return now - timedelta(days=_RANGE_DAYS[self.date_range]), now


class ExportConfig(BaseModel):
    format: ExportFormat = ExportFormat.PDF
    template: str = "default"
    language: str = Field(default="ar", pattern="^(ar|en)$")
    include_metadata: bool = True
    include_sources: bool = True
    include_user_feedback: bool = True
    include_compliance_analysis: bool = False
    include_cost_breakdown: bool = False
    organization_branding: bool = True
    watermark: str | None = None


class DeliveryConfig(BaseModel):
    method: DeliveryMethod = DeliveryMethod.STORAGE
    email_recipients: list[str] = []
    storage_location: str | None = None
    notify_on_completion: bool = True
    notify_on_failure: bool = True

    @model_validator(mode="after")
    def check_recipients(self):
        if self.method in (DeliveryMethod.EMAIL, DeliveryMethod.BOTH) and not self.email_recipients:
            raise ValueError("email delivery needs at least one recipient")
        return self


class ScheduleDraft(BaseModel):
    """Caller-supplied part of a schedule definition."""

    name: str = Field(min_length=1)
    description: str | None = None
    schedule: ScheduleConfig
    filters: FilterConfig = FilterConfig()
    export: ExportConfig = ExportConfig()
    delivery: DeliveryConfig = DeliveryConfig()
    is_active: bool = True

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Export name is required")
        return value


class ScheduleDefinition(ScheduleDraft):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    organization_id: str
    created_by: str
    next_execution: datetime | None = None
    last_execution: datetime | None = None
    last_execution_status: ExecutionStatus | None = None
    execution_count: int = 0
    failure_count: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
