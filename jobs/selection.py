"""Which items a bulk or scheduled export acts on."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, model_validator

from core.errors import LimitExceededError, PermissionDeniedError, ValidationError

if TYPE_CHECKING:
    from store.item_store import ItemStore

logger = logging.getLogger(__name__)

ABSOLUTE_MAX_ITEMS = 500
DEFAULT_MAX_ITEMS = 100


class ExportItem(BaseModel):
    """An exportable item owned by the data platform (e.g. a conversation)."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    organization_id: str
    user_id: str
    title: str = ""
    category: str | None = None
    compliance_score: float | None = Field(default=None, ge=0, le=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ItemFilter(BaseModel):
    date_from: datetime | None = None
    date_to: datetime | None = None
    categories: list[str] = []
    user_ids: list[str] = []
    compliance_score_min: float | None = Field(default=None, ge=0, le=1)


class Selection(BaseModel):
    """Either explicit ``item_ids`` or a ``filter``; ids win when both are given."""

    item_ids: list[str] | None = None
    filter: ItemFilter = ItemFilter()
    max_items: int = Field(default=DEFAULT_MAX_ITEMS, ge=1)

    @model_validator(mode="after")
    def blank_ids_mean_filter(self):
        if self.item_ids is not None and len(self.item_ids) == 0:
            self.item_ids = None
        return self


class SelectionResolver:
    def __init__(self, catalog: ItemStore, absolute_max_items: int = ABSOLUTE_MAX_ITEMS):
        self._catalog = catalog
        self.absolute_max_items = absolute_max_items

    async def resolve(self, organization_id: str, selection: Selection) -> list[str]:
        """Return the ordered, de-duplicated item ids to export.

        Raises LimitExceededError when the request is over a ceiling,
        PermissionDeniedError when an explicit id lies outside the
        organization, and ValidationError when nothing matches.
        """
        if selection.max_items > self.absolute_max_items:
            raise LimitExceededError(
                f"Maximum items limit is {self.absolute_max_items}",
                limit=self.absolute_max_items,
            )

        if selection.item_ids is not None:
            ids = list(dict.fromkeys(selection.item_ids))
            if len(ids) > selection.max_items:
                raise LimitExceededError(
                    f"Too many items selected. Maximum is {selection.max_items}",
                    limit=selection.max_items,
                    requested=len(ids),
                )
            owned = await self._catalog.existing_ids(organization_id, ids)
            outside = [i for i in ids if i not in owned]
            if outside:
                logger.warning(
                    "Selection outside organization",
                    extra={"organization_id": organization_id, "rejected": len(outside)},
                )
                raise PermissionDeniedError(
                    f"{len(outside)} item(s) not found or access denied",
                    item_ids=outside,
                )
        else:
            ids = await self._catalog.query_ids(
                organization_id, selection.filter, limit=selection.max_items
            )

        if not ids:
            raise ValidationError("No items found matching criteria")
        return ids
