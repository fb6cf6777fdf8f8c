"""Tests for settings, logging, policy, errors, event bus and identity."""

import json
import logging
import sys

import pytest

from conftest import ANALYST, EMPLOYEE, OWNER
from core.config import EngineSettings
from core.errors import (
    ConflictError,
    InternalError,
    LimitExceededError,
    PermissionDeniedError,
    ValidationError,
)
from core.event_bus import JobEventBus
from core.logging_config import JsonFormatter, get_trace_id, reset_trace_id, set_trace_id
from core.policy import DEFAULT_POLICY, Capability
from integrations.builtin import StaticIdentityProvider
from jobs.models import ExportJob, JobOrigin


def _make_record(msg: str, level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="test", level=level, pathname="", lineno=0,
        msg=msg, args=(), exc_info=None,
    )
    for k, v in extra.items():
        setattr(record, k, v)
    return record


# ── Settings ──────────────────────────────────────────────────────────────────

def test_settings_defaults(monkeypatch):
    monkeypatch.delenv("EXPORT_ENGINE_WORKER_COUNT", raising=False)
    settings = EngineSettings.from_env(dotenv=False)
    assert settings.worker_count == 2
    assert settings.max_bulk_items == 500
    assert settings.tick_seconds == 60.0


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("EXPORT_ENGINE_WORKER_COUNT", "4")
    monkeypatch.setenv("EXPORT_ENGINE_TICK_SECONDS", "15")
    monkeypatch.setenv("EXPORT_ENGINE_LOG_JSON", "false")
    settings = EngineSettings.from_env(dotenv=False)
    assert settings.worker_count == 4
    assert settings.tick_seconds == 15.0
    assert settings.log_json is False


def test_settings_reject_bad_values(monkeypatch):
    monkeypatch.setenv("EXPORT_ENGINE_WORKER_COUNT", "0")
    with pytest.raises(ValueError):
        EngineSettings.from_env(dotenv=False)


# ── Logging ───────────────────────────────────────────────────────────────────

def test_json_formatter_fields():
    parsed = json.loads(JsonFormatter().format(_make_record("Job enqueued", job_id="j-1", queued=3)))
    assert parsed["msg"] == "Job enqueued"
    assert parsed["level"] == "INFO"
    assert parsed["job_id"] == "j-1"
    assert parsed["queued"] == 3


def test_trace_id_is_bound_and_reset():
    token = set_trace_id("tick-abc")
    try:
        assert get_trace_id() == "tick-abc"
        parsed = json.loads(JsonFormatter().format(_make_record("hi")))
        assert parsed["trace_id"] == "tick-abc"
    finally:
        reset_trace_id(token)
    assert get_trace_id() == "-"


def test_json_formatter_includes_exception():
    try:
        raise RuntimeError("renderer down")
    except RuntimeError:
        record = logging.LogRecord(
            name="test", level=logging.ERROR, pathname="", lineno=0,
            msg="Job handler crashed", args=(), exc_info=sys.exc_info(),
        )
    parsed = json.loads(JsonFormatter().format(record))
    assert "renderer down" in parsed["exc"]


# ── Policy ────────────────────────────────────────────────────────────────────

def test_default_policy_capabilities():
    assert DEFAULT_POLICY.allows(OWNER, Capability.BULK_EXPORT)
    assert DEFAULT_POLICY.allows(ANALYST, Capability.CREATE_SCHEDULE)
    assert not DEFAULT_POLICY.allows(ANALYST, Capability.BULK_EXPORT)
    assert not DEFAULT_POLICY.allows(EMPLOYEE, Capability.CREATE_SCHEDULE)


def test_policy_require_raises_with_role():
    with pytest.raises(PermissionDeniedError, match="employee"):
        DEFAULT_POLICY.require(EMPLOYEE, Capability.BULK_EXPORT)


def test_owner_of_job_can_manage_it():
    assert DEFAULT_POLICY.can_manage_job(EMPLOYEE, EMPLOYEE.user_id)
    assert not DEFAULT_POLICY.can_manage_job(EMPLOYEE, OWNER.user_id)
    assert DEFAULT_POLICY.can_manage_job(OWNER, EMPLOYEE.user_id)


def test_schedule_quotas():
    assert DEFAULT_POLICY.schedule_quota("owner") == 50
    assert DEFAULT_POLICY.schedule_quota("hr_analyst") == 10
    assert DEFAULT_POLICY.schedule_quota("unknown-role") == 0


# ── Errors ────────────────────────────────────────────────────────────────────

def test_error_codes():
    assert ValidationError("x").to_dict() == {"error": "validation_error", "detail": "x"}
    assert ConflictError("y").code == "conflict"
    assert isinstance(LimitExceededError("too many", limit=5), ValidationError)


def test_limit_exceeded_carries_limit():
    err = LimitExceededError("Maximum items limit is 500", limit=500)
    assert err.to_dict()["limit"] == 500
    assert err.context["limit"] == 500


def test_internal_error_hides_message():
    assert InternalError("connection string leaked").to_dict()["detail"] == "Internal server error"


# ── Event bus ─────────────────────────────────────────────────────────────────

def _job() -> ExportJob:
    return ExportJob(organization_id="org-1", user_id="u-1", origin=JobOrigin.BULK, format="pdf")


async def test_event_bus_fans_out_to_subscribers():
    bus = JobEventBus()
    job = _job()
    a, b = bus.subscribe(job.id), bus.subscribe(job.id)
    bus.publish(job)
    assert a.get_nowait()["job_id"] == job.id
    assert b.get_nowait()["status"] == "pending"


async def test_event_bus_unsubscribe_cleans_up():
    bus = JobEventBus()
    job = _job()
    q = bus.subscribe(job.id)
    bus.unsubscribe(job.id, q)
    assert bus.listener_count(job.id) == 0
    bus.publish(job)
    assert q.empty()
    bus.unsubscribe(job.id, q)


# ── Identity ──────────────────────────────────────────────────────────────────

async def test_identity_from_yaml(tmp_path):
    members = tmp_path / "members.yaml"
    members.write_text(
        "u-1:\n  organization_id: org-1\n  role: owner\n"
        "u-2:\n  organization_id: org-1\n  role: employee\n"
    )
    identity = StaticIdentityProvider.from_yaml(members)
    actor = await identity.resolve("u-2")
    assert actor.organization_id == "org-1"
    assert actor.role == "employee"


async def test_unknown_user_has_no_organization():
    with pytest.raises(PermissionDeniedError, match="No active organization found"):
        await StaticIdentityProvider().resolve("ghost")
