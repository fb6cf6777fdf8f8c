"""Progress metrics derived from a job snapshot.

Pure functions of their arguments: the snapshot and the reference instant are
always passed in explicitly.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel

from jobs.models import ACTIVE_STATUSES, ExportJob, JobStatus

STUCK_AFTER = timedelta(minutes=10)
SECONDS_PER_ITEM = 2.0


class JobMetrics(BaseModel):
    elapsed_seconds: float
    rate: float                     # items per second
    eta_seconds: float | None
    is_stuck: bool
    remaining_items: int
    can_cancel: bool
    can_retry: bool


def compute_metrics(
    job: ExportJob,
    now: datetime,
    stuck_after: timedelta = STUCK_AFTER,
) -> JobMetrics:
    created = job.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    elapsed = max(0.0, (now - created).total_seconds())
    rate = job.processed_items / elapsed if elapsed > 0 else 0.0

    eta = None
    if job.status == JobStatus.PROCESSING and job.progress > 0:
        eta = max(0.0, elapsed / (job.progress / 100) - elapsed)

    return JobMetrics(
        elapsed_seconds=elapsed,
        rate=rate,
        eta_seconds=eta,
        is_stuck=(
            job.status == JobStatus.PROCESSING
            and job.progress == 0
            and elapsed > stuck_after.total_seconds()
        ),
        remaining_items=max(0, job.total_items - job.processed_items),
        can_cancel=job.status in ACTIVE_STATUSES,
        can_retry=job.status == JobStatus.FAILED,
    )


def estimate_duration(item_count: int, seconds_per_item: float = SECONDS_PER_ITEM) -> float:
    """Rough up-front processing estimate for a bulk export, in seconds."""
    return max(0, item_count) * seconds_per_item


def humanize_duration(seconds: float) -> str:
    minutes = math.ceil(seconds / 60)
    if minutes < 1:
        return "Less than 1 minute"
    if minutes == 1:
        return "1 minute"
    if minutes < 60:
        return f"{minutes} minutes"

    hours, rest = divmod(minutes, 60)
    if hours == 1 and rest == 0:
        return "1 hour"
    if rest == 0:
        return f"{hours} hours"
    return (
        f"{hours} hour{'s' if hours > 1 else ''} and "
        f"{rest} minute{'s' if rest > 1 else ''}"
    )
