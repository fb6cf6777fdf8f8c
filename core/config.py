"""Runtime settings loaded from the environment (and a local .env file)."""

from __future__ import annotations

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

_PREFIX = "EXPORT_ENGINE_"


class EngineSettings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///export_engine.db"
    tick_seconds: float = Field(default=60.0, gt=0)
    worker_count: int = Field(default=2, ge=1)
    max_bulk_items: int = Field(default=500, ge=1)
    stuck_after_minutes: float = Field(default=10.0, gt=0)
    export_dir: str = "exports"
    members_file: str | None = None
    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "EngineSettings":
        """Build settings from ``EXPORT_ENGINE_*`` variables.

        Unset variables fall back to the field defaults.
        """
        if dotenv:
            load_dotenv()
        values: dict = {}
        for name in cls.model_fields:
            raw = os.getenv(_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        return cls.model_validate(values)
