"""SQL persistence for ScheduleDefinition objects."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import create_async_engine

from scheduler.models import ExecutionStatus, ScheduleDefinition, ScheduleType
from store.timestamps import from_db, to_db

_metadata = sa.MetaData()

_schedules = sa.Table(
    "scheduled_exports",
    _metadata,
    sa.Column("id",                    sa.String,  primary_key=True),
    sa.Column("organization_id",       sa.String,  nullable=False, index=True),
    sa.Column("created_by",            sa.String,  nullable=False, index=True),
    sa.Column("name",                  sa.String,  nullable=False),
    sa.Column("schedule_type",         sa.String,  nullable=False),
    sa.Column("is_active",             sa.Boolean, nullable=False),
    sa.Column("next_execution",        sa.String,  nullable=True, index=True),
    sa.Column("last_execution",        sa.String,  nullable=True),
    sa.Column("last_execution_status", sa.String,  nullable=True),
    sa.Column("execution_count",       sa.Integer, nullable=False, default=0),
    sa.Column("failure_count",         sa.Integer, nullable=False, default=0),
    sa.Column("created_at",            sa.String,  nullable=False),
    sa.Column("updated_at",            sa.String,  nullable=False),
    sa.Column("data",                  sa.Text,    nullable=False),   # full Pydantic JSON
)


def _row(record: ScheduleDefinition) -> dict:
    return {
        "id":                    record.id,
        "organization_id":       record.organization_id,
        "created_by":            record.created_by,
        "name":                  record.name,
        "schedule_type":         record.schedule.type.value,
        "is_active":             record.is_active,
        "next_execution":        to_db(record.next_execution),
        "last_execution":        to_db(record.last_execution),
        "last_execution_status": record.last_execution_status.value if record.last_execution_status else None,
        "execution_count":       record.execution_count,
        "failure_count":         record.failure_count,
        "created_at":            to_db(record.created_at),
        "updated_at":            to_db(record.updated_at),
        "data":                  record.model_dump_json(),
    }


def _from_row(row) -> ScheduleDefinition:
    record = ScheduleDefinition.model_validate_json(row.data)
    return record.model_copy(update={
        "is_active":             row.is_active,
        "next_execution":        from_db(row.next_execution),
        "last_execution":        from_db(row.last_execution),
        "last_execution_status": ExecutionStatus(row.last_execution_status) if row.last_execution_status else None,
        "execution_count":       row.execution_count,
        "failure_count":         row.failure_count,
        "updated_at":            from_db(row.updated_at),
    })


class ScheduleStore:
    def __init__(self, db_url: str = "sqlite+aiosqlite:///export_engine.db"):
        self._engine = create_async_engine(db_url, echo=False)

    async def init(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def dispose(self) -> None:
        await self._engine.dispose()

    async def insert(self, record: ScheduleDefinition) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(sa.insert(_schedules).values(**_row(record)))

    async def load(self, schedule_id: str, organization_id: str | None = None) -> ScheduleDefinition:
        """Raises KeyError if the schedule does not exist (in that organization)."""
        query = sa.select(_schedules).where(_schedules.c.id == schedule_id)
        if organization_id is not None:
            query = query.where(_schedules.c.organization_id == organization_id)
        async with self._engine.connect() as conn:
            row = (await conn.execute(query)).fetchone()
        if row is None:
            raise KeyError(schedule_id)
        return _from_row(row)

    async def list_for_org(
        self,
        organization_id: str,
        created_by: str | None = None,
        is_active: bool | None = None,
        schedule_type: ScheduleType | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ScheduleDefinition], int]:
        """Return one page of schedules (newest first) and the total match count."""
        conditions = [_schedules.c.organization_id == organization_id]
        if created_by is not None:
            conditions.append(_schedules.c.created_by == created_by)
        if is_active is not None:
            conditions.append(_schedules.c.is_active == is_active)
        if schedule_type is not None:
            conditions.append(_schedules.c.schedule_type == schedule_type.value)

        page = (
            sa.select(_schedules)
            .where(*conditions)
            .order_by(_schedules.c.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        total = sa.select(sa.func.count()).select_from(_schedules).where(*conditions)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(page)).fetchall()
            count = (await conn.execute(total)).scalar_one()
        return [_from_row(r) for r in rows], count

    async def count_active(self, organization_id: str) -> int:
        query = (
            sa.select(sa.func.count())
            .select_from(_schedules)
            .where(_schedules.c.organization_id == organization_id)
            .where(_schedules.c.is_active == sa.true())
        )
        async with self._engine.connect() as conn:
            return (await conn.execute(query)).scalar_one()

    async def org_summary(self, organization_id: str) -> dict:
        """Totals over every schedule of an organization."""
        query = (
            sa.select(
                sa.func.count(),
                sa.func.count().filter(_schedules.c.is_active == sa.true()),
                sa.func.coalesce(sa.func.sum(_schedules.c.execution_count), 0),
                sa.func.coalesce(sa.func.sum(_schedules.c.failure_count), 0),
                sa.func.min(_schedules.c.next_execution).filter(_schedules.c.is_active == sa.true()),
            )
            .where(_schedules.c.organization_id == organization_id)
        )
        async with self._engine.connect() as conn:
            total, active, executions, failures, upcoming = (await conn.execute(query)).one()
        return {
            "total": total,
            "active": active,
            "executions": executions,
            "failures": failures,
            "next_upcoming": from_db(upcoming),
        }

    async def due(self, now: datetime) -> list[ScheduleDefinition]:
        """Active schedules whose next_execution has arrived, oldest first."""
        query = (
            sa.select(_schedules)
            .where(_schedules.c.is_active == sa.true())
            .where(_schedules.c.next_execution.is_not(None))
            .where(_schedules.c.next_execution <= to_db(now))
            .order_by(_schedules.c.next_execution)
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return [_from_row(r) for r in rows]

    async def claim(
        self,
        schedule_id: str,
        expected_next: datetime,
        new_next: datetime,
        now: datetime,
    ) -> bool:
        """Atomically advance a due schedule.

        Compare-and-set on ``next_execution``: exactly one caller observing
        *expected_next* wins; everyone else gets False and must not fire.
        """
        query = (
            sa.update(_schedules)
            .where(_schedules.c.id == schedule_id)
            .where(_schedules.c.is_active == sa.true())
            .where(_schedules.c.next_execution == to_db(expected_next))
            .values(
                next_execution=to_db(new_next),
                last_execution=to_db(now),
                execution_count=_schedules.c.execution_count + 1,
                updated_at=to_db(now),
            )
        )
        async with self._engine.begin() as conn:
            result = await conn.execute(query)
        return result.rowcount == 1

    async def record_outcome(
        self,
        schedule_id: str,
        status: ExecutionStatus,
        now: datetime,
    ) -> None:
        values: dict = {"last_execution_status": status.value, "updated_at": to_db(now)}
        if status == ExecutionStatus.FAILED:
            values["failure_count"] = _schedules.c.failure_count + 1
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.update(_schedules).where(_schedules.c.id == schedule_id).values(**values)
            )

    async def set_active(
        self,
        schedule_id: str,
        active: bool,
        next_execution: datetime | None,
        now: datetime,
    ) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.update(_schedules)
                .where(_schedules.c.id == schedule_id)
                .values(
                    is_active=active,
                    next_execution=to_db(next_execution),
                    updated_at=to_db(now),
                )
            )
