"""JobStore — SQL persistence for export jobs and their append-only log."""

from __future__ import annotations

from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import create_async_engine

from jobs.models import ExportJob, JobLogEntry, JobOrigin, JobStatus
from store.timestamps import from_db, to_db

# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

_jobs = sa.Table(
    "export_jobs",
    _metadata,
    sa.Column("id",              sa.String,  primary_key=True),
    sa.Column("organization_id", sa.String,  nullable=False, index=True),
    sa.Column("user_id",         sa.String,  nullable=False, index=True),
    sa.Column("origin",          sa.String,  nullable=False),
    sa.Column("schedule_id",     sa.String,  nullable=True, index=True),
    sa.Column("status",          sa.String,  nullable=False, index=True),
    sa.Column("archived",        sa.Boolean, nullable=False, default=False),
    sa.Column("format",          sa.String,  nullable=False),
    sa.Column("priority",        sa.String,  nullable=False),
    sa.Column("progress",        sa.Integer, nullable=False, default=0),
    sa.Column("total_items",     sa.Integer, nullable=False, default=0),
    sa.Column("processed_items", sa.Integer, nullable=False, default=0),
    sa.Column("error_message",   sa.Text,    nullable=True),
    sa.Column("download_url",    sa.Text,    nullable=True),
    sa.Column("file_size",       sa.Integer, nullable=True),
    sa.Column("options",         sa.JSON,    nullable=False),
    sa.Column("created_at",      sa.String,  nullable=False, index=True),
    sa.Column("updated_at",      sa.String,  nullable=False),
    sa.Column("started_at",      sa.String,  nullable=True),
    sa.Column("completed_at",    sa.String,  nullable=True),
    sa.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_export_jobs_progress"),
)

_logs = sa.Table(
    "export_job_logs",
    _metadata,
    sa.Column("id",              sa.String, primary_key=True),
    sa.Column("job_id",          sa.String, nullable=True, index=True),
    sa.Column("schedule_id",     sa.String, nullable=True, index=True),
    sa.Column("organization_id", sa.String, nullable=False, index=True),
    sa.Column("level",           sa.String, nullable=False),
    sa.Column("message",         sa.Text,   nullable=False),
    sa.Column("details",         sa.JSON,   nullable=True),
    sa.Column("created_at",      sa.String, nullable=False, index=True),
)

_TIMESTAMPS = ("created_at", "updated_at", "started_at", "completed_at")


def _encode(values: dict[str, Any]) -> dict[str, Any]:
    row = {}
    for key, val in values.items():
        if key in _TIMESTAMPS:
            row[key] = to_db(val)
        elif hasattr(val, "value"):         # enums
            row[key] = val.value
        else:
            row[key] = val
    return row


def _job_from_row(row) -> ExportJob:
    data = dict(row._mapping)
    for key in _TIMESTAMPS:
        data[key] = from_db(data[key])
    return ExportJob.model_validate(data)


# ── Store ────────────────────────────────────────────────────────────────────

class JobStore:
    """Persist export jobs. Every mutation is a guarded (optimistic) update."""

    def __init__(self, db_url: str = "sqlite+aiosqlite:///export_engine.db"):
        self._engine = create_async_engine(db_url, echo=False)

    async def init(self) -> None:
        """Create tables if they don't exist. Call once at startup."""
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def dispose(self) -> None:
        await self._engine.dispose()

    # ── Jobs ─────────────────────────────────────────────────────────────────

    async def insert(self, job: ExportJob) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(sa.insert(_jobs).values(**_encode(job.model_dump())))

    async def load(self, job_id: str, organization_id: str | None = None) -> ExportJob:
        """Load a job by ID, optionally scoped to an organization. Raises KeyError."""
        query = sa.select(_jobs).where(_jobs.c.id == job_id)
        if organization_id is not None:
            query = query.where(_jobs.c.organization_id == organization_id)
        async with self._engine.connect() as conn:
            row = (await conn.execute(query)).fetchone()
        if row is None:
            raise KeyError(f"Export job '{job_id}' not found")
        return _job_from_row(row)

    async def guarded_update(
        self,
        job_id: str,
        expected_status: JobStatus,
        changes: dict[str, Any],
        max_prior_progress: int | None = None,
    ) -> bool:
        """Apply *changes* only if the row still has *expected_status*.

        With *max_prior_progress* the row's progress must also not exceed that
        value, so concurrent progress writes can never move it backwards.
        Returns False when the guard did not match (nothing was written).
        """
        query = (
            sa.update(_jobs)
            .where(_jobs.c.id == job_id)
            .where(_jobs.c.status == expected_status.value)
        )
        if max_prior_progress is not None:
            query = query.where(_jobs.c.progress <= max_prior_progress)
        async with self._engine.begin() as conn:
            result = await conn.execute(query.values(**_encode(changes)))
        return result.rowcount == 1

    async def list_jobs(
        self,
        organization_id: str,
        user_id: str | None = None,
        status: JobStatus | None = None,
        include_archived: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ExportJob]:
        """Jobs of one organization, most recent first."""
        query = sa.select(_jobs).where(_jobs.c.organization_id == organization_id)
        if user_id is not None:
            query = query.where(_jobs.c.user_id == user_id)
        if status is not None:
            query = query.where(_jobs.c.status == status.value)
        if not include_archived:
            query = query.where(_jobs.c.archived == sa.false())
        query = query.order_by(_jobs.c.created_at.desc()).limit(limit).offset(offset)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return [_job_from_row(r) for r in rows]

    async def list_pending(self, limit: int = 1000) -> list[ExportJob]:
        """Pending jobs across all organizations, oldest first."""
        query = (
            sa.select(_jobs)
            .where(_jobs.c.status == JobStatus.PENDING.value)
            .order_by(_jobs.c.created_at)
            .limit(limit)
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return [_job_from_row(r) for r in rows]

    async def scheduled_outcomes(self, organization_id: str) -> dict[str, int]:
        """Count scheduled-origin jobs per status for one organization."""
        query = (
            sa.select(_jobs.c.status, sa.func.count())
            .where(_jobs.c.organization_id == organization_id)
            .where(_jobs.c.origin == JobOrigin.SCHEDULED.value)
            .group_by(_jobs.c.status)
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return {status: count for status, count in rows}

    # ── Log ──────────────────────────────────────────────────────────────────

    async def append_log(self, entry: JobLogEntry) -> None:
        row = entry.model_dump()
        row["level"] = entry.level.value
        row["created_at"] = to_db(entry.created_at)
        async with self._engine.begin() as conn:
            await conn.execute(sa.insert(_logs).values(**row))

    async def list_logs(
        self,
        job_id: str | None = None,
        schedule_id: str | None = None,
        limit: int = 10,
    ) -> list[JobLogEntry]:
        """Most recent log entries for a job or a schedule."""
        query = sa.select(_logs)
        if job_id is not None:
            query = query.where(_logs.c.job_id == job_id)
        if schedule_id is not None:
            query = query.where(_logs.c.schedule_id == schedule_id)
        query = query.order_by(_logs.c.created_at.desc()).limit(limit)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        entries = []
        for r in rows:
            data = dict(r._mapping)
            data["created_at"] = from_db(data["created_at"])
            data["details"] = data["details"] or {}
            entries.append(JobLogEntry.model_validate(data))
        return entries
