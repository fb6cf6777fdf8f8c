"""Default collaborator implementations for local runs and tests."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import yaml

from core.errors import PermissionDeniedError
from core.policy import Actor
from integrations.base import (
    Artifact,
    ArtifactRenderer,
    AuditEvent,
    AuditSink,
    DeliveryChannel,
    IdentityProvider,
)
from jobs.models import ExportJob
from scheduler.models import DeliveryConfig, DeliveryMethod
from store.item_store import ItemStore

audit_logger = logging.getLogger("audit")
logger = logging.getLogger(__name__)


class StaticIdentityProvider(IdentityProvider):
    """Membership table held in memory: user_id → Actor."""

    def __init__(self, members: dict[str, Actor] | None = None):
        self._members = dict(members or {})

    @classmethod
    def from_yaml(cls, path: str | Path) -> "StaticIdentityProvider":
        """Load ``user_id: {organization_id, role}`` entries from a YAML file."""
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        return cls({
            user_id: Actor(user_id=user_id, **entry)
            for user_id, entry in raw.items()
        })

    def add(self, actor: Actor) -> None:
        self._members[actor.user_id] = actor

    async def resolve(self, user_id: str) -> Actor:
        try:
            return self._members[user_id]
        except KeyError:
            raise PermissionDeniedError("No active organization found", user_id=user_id)


class ManifestRenderer(ArtifactRenderer):
    """Writes a JSON manifest of the exported items under *output_dir*.

    Stands in for the real PDF/DOCX generators.
    """

    def __init__(self, items: ItemStore, output_dir: str | Path = "exports"):
        self._items = items
        self._output_dir = Path(output_dir)

    async def fetch(self, organization_id: str, item_id: str) -> Any:
        item = await self._items.load(item_id, organization_id)
        return item.model_dump(mode="json")

    async def render(self, job: ExportJob, items: list[Any]) -> Artifact:
        folder = self._output_dir / job.organization_id
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / f"{job.id}.{job.format}.json"
        payload = {"job_id": job.id, "format": job.format, "options": job.options, "items": items}
        await asyncio.to_thread(path.write_text, json.dumps(payload, default=str, ensure_ascii=False))
        size = (await asyncio.to_thread(path.stat)).st_size
        return Artifact(download_url=path.resolve().as_uri(), file_size=size)


class LoggingDeliveryChannel(DeliveryChannel):
    async def deliver(self, job: ExportJob, delivery: DeliveryConfig) -> None:
        recipients = delivery.email_recipients if delivery.method != DeliveryMethod.STORAGE else []
        logger.info(
            "Export delivered",
            extra={
                "job_id": job.id,
                "status": job.status.value,
                "method": delivery.method.value,
                "recipients": recipients,
                "download_url": job.download_url,
            },
        )


class LoggingAuditSink(AuditSink):
    async def record(self, event: AuditEvent) -> None:
        audit_logger.info(event.action, extra=event.model_dump(mode="json"))


class MemoryAuditSink(AuditSink):
    """Keeps events in a list for inspection in tests."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)
