"""Collaborator interfaces the engine consumes but does not implement.

Identity, rendering, delivery and audit belong to the surrounding platform;
deployments plug in concrete classes.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from core.policy import Actor
from jobs.models import ExportJob
from scheduler.models import DeliveryConfig


class Artifact(BaseModel):
    download_url: str
    file_size: int | None = None


class AuditEvent(BaseModel):
    actor_id: str
    organization_id: str
    action: str
    resource_type: str
    resource_id: str
    details: dict[str, Any] = {}
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class IdentityProvider(ABC):
    @abstractmethod
    async def resolve(self, user_id: str) -> Actor:
        """Return the caller's organization and role.

        Raise PermissionDeniedError when the user has no active membership.
        """
        ...


class ArtifactRenderer(ABC):
    @abstractmethod
    async def fetch(self, organization_id: str, item_id: str) -> Any:
        """Load one item's exportable content."""
        ...

    @abstractmethod
    async def render(self, job: ExportJob, items: list[Any]) -> Artifact:
        """Turn fetched items into a downloadable artifact."""
        ...


class DeliveryChannel(ABC):
    @abstractmethod
    async def deliver(self, job: ExportJob, delivery: DeliveryConfig) -> None:
        """Notify recipients about a finished (completed or failed) job."""
        ...


class AuditSink(ABC):
    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        ...
