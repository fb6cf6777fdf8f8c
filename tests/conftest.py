"""Shared fixtures: per-test SQLite stores and a fully wired service."""

from datetime import datetime, timedelta, timezone

import pytest

from core.config import EngineSettings
from core.policy import Actor
from core.service import build_service
from integrations.builtin import MemoryAuditSink, StaticIdentityProvider
from jobs.selection import ExportItem
from store.item_store import ItemStore
from store.job_store import JobStore

ORG = "org-1"
OTHER_ORG = "org-2"

OWNER = Actor(user_id="u-owner", organization_id=ORG, role="owner")
ANALYST = Actor(user_id="u-analyst", organization_id=ORG, role="hr_analyst")
EMPLOYEE = Actor(user_id="u-employee", organization_id=ORG, role="employee")
OUTSIDER = Actor(user_id="u-outsider", organization_id=OTHER_ORG, role="owner")


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path}/engine.db"


@pytest.fixture
async def job_store(db_url):
    store = JobStore(db_url)
    await store.init()
    yield store
    await store.dispose()


@pytest.fixture
async def item_store(db_url):
    store = ItemStore(db_url)
    await store.init()
    yield store
    await store.dispose()


async def seed_items(store: ItemStore, count: int, org: str = ORG, **fields) -> list[str]:
    """Add *count* items, newest last; returns their ids in insertion order."""
    base = datetime.now(timezone.utc) - timedelta(days=1)
    ids = []
    for n in range(count):
        item = ExportItem(
            organization_id=org,
            user_id=fields.get("user_id", "u-owner"),
            title=f"conversation {n}",
            category=fields.get("category", "policy"),
            compliance_score=fields.get("compliance_score", 0.9),
            created_at=base + timedelta(seconds=n),
        )
        await store.add(item)
        ids.append(item.id)
    return ids


@pytest.fixture
def audit():
    return MemoryAuditSink()


@pytest.fixture
def identity():
    return StaticIdentityProvider({a.user_id: a for a in (OWNER, ANALYST, EMPLOYEE, OUTSIDER)})


@pytest.fixture
async def service(db_url, tmp_path, identity, audit):
    settings = EngineSettings(database_url=db_url, export_dir=str(tmp_path / "exports"))
    svc = build_service(settings, identity, audit=audit, with_ticker=False)
    await svc.init()
    yield svc
    await svc.shutdown()
