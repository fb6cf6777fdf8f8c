"""In-process fan-out of job state changes to live listeners."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timezone

from jobs.models import ExportJob


def job_event(job: ExportJob) -> dict:
    """Serialise a job snapshot into an SSE-friendly dict."""
    return {
        "type": "state_change",
        "job_id": job.id,
        "status": job.status.value,
        "progress": job.progress,
        "processed_items": job.processed_items,
        "total_items": job.total_items,
        "priority": job.priority.value,
        "archived": job.archived,
        "error_message": job.error_message,
        "download_url": job.download_url,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class JobEventBus:
    """Per-job subscriber queues.

    Listeners only ever see snapshots; the persisted job row stays the
    source of truth and nobody reads job state back from here.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, job_id: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue()
        self._listeners[job_id].append(q)
        return q

    def unsubscribe(self, job_id: str, q: asyncio.Queue) -> None:
        listeners = self._listeners.get(job_id)
        if not listeners:
            return
        if q in listeners:
            listeners.remove(q)
        if not listeners:
            del self._listeners[job_id]

    def listener_count(self, job_id: str) -> int:
        return len(self._listeners.get(job_id, ()))

    def publish(self, job: ExportJob) -> None:
        event = job_event(job)
        for q in list(self._listeners.get(job.id, ())):
            q.put_nowait(event)
