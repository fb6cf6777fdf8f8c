"""ItemStore — read access to the catalog of exportable items."""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import create_async_engine

from jobs.selection import ExportItem, ItemFilter
from store.timestamps import from_db, to_db

_metadata = sa.MetaData()

_items = sa.Table(
    "export_items",
    _metadata,
    sa.Column("id",               sa.String, primary_key=True),
    sa.Column("organization_id",  sa.String, nullable=False, index=True),
    sa.Column("user_id",          sa.String, nullable=False, index=True),
    sa.Column("title",            sa.String, nullable=False, default=""),
    sa.Column("category",         sa.String, nullable=True, index=True),
    sa.Column("compliance_score", sa.Float,  nullable=True),
    sa.Column("created_at",       sa.String, nullable=False, index=True),
)


class ItemStore:
    def __init__(self, db_url: str = "sqlite+aiosqlite:///export_engine.db"):
        self._engine = create_async_engine(db_url, echo=False)

    async def init(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def dispose(self) -> None:
        await self._engine.dispose()

    async def add(self, item: ExportItem) -> None:
        row = item.model_dump()
        row["created_at"] = to_db(item.created_at)
        async with self._engine.begin() as conn:
            await conn.execute(sa.insert(_items).values(**row))

    async def load(self, item_id: str, organization_id: str) -> ExportItem:
        query = (
            sa.select(_items)
            .where(_items.c.id == item_id)
            .where(_items.c.organization_id == organization_id)
        )
        async with self._engine.connect() as conn:
            row = (await conn.execute(query)).fetchone()
        if row is None:
            raise KeyError(f"Item '{item_id}' not found")
        data = dict(row._mapping)
        data["created_at"] = from_db(data["created_at"])
        return ExportItem.model_validate(data)

    async def existing_ids(self, organization_id: str, ids: list[str]) -> set[str]:
        """Subset of *ids* that belong to *organization_id*."""
        if not ids:
            return set()
        query = (
            sa.select(_items.c.id)
            .where(_items.c.organization_id == organization_id)
            .where(_items.c.id.in_(ids))
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return {r.id for r in rows}

    async def query_ids(self, organization_id: str, item_filter: ItemFilter, limit: int) -> list[str]:
        """Ids matching *item_filter*, most recent first, at most *limit*."""
        query = sa.select(_items.c.id).where(_items.c.organization_id == organization_id)
        if item_filter.date_from:
            query = query.where(_items.c.created_at >= to_db(item_filter.date_from))
        if item_filter.date_to:
            query = query.where(_items.c.created_at <= to_db(item_filter.date_to))
        if item_filter.categories:
            query = query.where(_items.c.category.in_(item_filter.categories))
        if item_filter.user_ids:
            query = query.where(_items.c.user_id.in_(item_filter.user_ids))
        if item_filter.compliance_score_min is not None:
            query = query.where(_items.c.compliance_score >= item_filter.compliance_score_min)
        query = query.order_by(_items.c.created_at.desc(), _items.c.id).limit(limit)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query)).fetchall()
        return [r.id for r in rows]
