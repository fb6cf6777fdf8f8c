"""Capability policy: maps deployment roles to engine capabilities."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel

from core.errors import PermissionDeniedError


class Capability(str, Enum):
    CREATE_SCHEDULE = "create_schedule"
    BULK_EXPORT     = "bulk_export"
    MANAGE_ANY_JOB  = "manage_any_job"   # cancel/retry/prioritize/archive others' jobs
    VIEW_ALL        = "view_all"         # see every schedule and job in the org


class Actor(BaseModel):
    """Caller identity as resolved by the identity provider."""

    user_id: str
    organization_id: str
    role: str


class CapabilityPolicy:
    def __init__(
        self,
        capabilities: dict[str, set[Capability]],
        schedule_quotas: dict[str, int],
    ):
        self._capabilities = {role: frozenset(caps) for role, caps in capabilities.items()}
        self._quotas = dict(schedule_quotas)

    def allows(self, actor: Actor, capability: Capability) -> bool:
        return capability in self._capabilities.get(actor.role, frozenset())

    def require(self, actor: Actor, capability: Capability, action: str | None = None) -> None:
        if not self.allows(actor, capability):
            raise PermissionDeniedError(
                f"Role '{actor.role}' may not {action or capability.value.replace('_', ' ')}",
                role=actor.role,
                capability=capability.value,
            )

    def can_manage_job(self, actor: Actor, owner_id: str) -> bool:
        return actor.user_id == owner_id or self.allows(actor, Capability.MANAGE_ANY_JOB)

    def schedule_quota(self, role: str) -> int:
        """Maximum number of active schedules an org may hold when this role creates one."""
        return self._quotas.get(role, 0)


_PRIVILEGED = {
    Capability.CREATE_SCHEDULE,
    Capability.BULK_EXPORT,
    Capability.MANAGE_ANY_JOB,
    Capability.VIEW_ALL,
}

DEFAULT_POLICY = CapabilityPolicy(
    capabilities={
        "owner":      _PRIVILEGED,
        "admin":      _PRIVILEGED,
        "hr_manager": _PRIVILEGED,
        "hr_analyst": {Capability.CREATE_SCHEDULE},
    },
    schedule_quotas={
        "owner": 50,
        "admin": 25,
        "hr_manager": 15,
        "hr_analyst": 10,
        "hr_specialist": 5,
        "employee": 0,
    },
)
