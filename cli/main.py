"""Export Engine CLI — interact with a running Export Engine API server."""

from __future__ import annotations

import json
import sys
from typing import Any

import click
import httpx
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

_TERMINAL = {"completed", "failed", "cancelled"}

_STATUS_COLOR: dict[str, str] = {
    "completed": "green",
    "failed": "red",
    "cancelled": "magenta",
    "processing": "yellow",
    "pending": "blue",
    "success": "green",
    "active": "green",
    "paused": "yellow",
}

_PRIORITIES = ["low", "normal", "high", "urgent"]
_FORMATS = ["pdf", "docx", "html"]


# ── Internal helpers ──────────────────────────────────────────────────────────


def _color(status: str) -> str:
    return _STATUS_COLOR.get(status, "white")


def _client(url: str, user: str | None = None) -> httpx.Client:
    headers = {"X-User-Id": user} if user else {}
    return httpx.Client(base_url=url.rstrip("/"), timeout=30, headers=headers)


def _load_file(path: str) -> dict:
    with open(path) as f:
        return yaml.safe_load(f) if path.endswith((".yaml", ".yml")) else json.load(f)


def _die(msg: str, code: int = 1) -> None:
    err_console.print(f"[red]Error:[/] {msg}")
    sys.exit(code)


def _check(resp: httpx.Response) -> None:
    if not resp.is_error:
        return
    try:
        detail = resp.json().get("detail")
    except (ValueError, AttributeError):
        detail = None
    if resp.status_code == 404:
        _die(detail or "Not found")
    _die(f"HTTP {resp.status_code}: {detail or resp.text}")


def _emit(obj: dict, data: Any) -> bool:
    """Print raw JSON when --json is set. Returns True if it did."""
    if obj["json_output"]:
        click.echo(json.dumps(data, indent=2, default=str))
        return True
    return False


def _request(obj: dict, method: str, path: str, **kwargs) -> Any:
    with _client(obj["url"], obj["user"]) as c:
        resp = getattr(c, method)(path, **kwargs)
    _check(resp)
    return resp.json()


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.option(
    "--url", "-u",
    default="http://localhost:8000",
    envvar="ENGINE_URL",
    show_default=True,
    help="Export Engine API base URL.",
)
@click.option("--user", envvar="ENGINE_USER", help="Caller user id (sent as X-User-Id).")
@click.option("--json", "json_output", is_flag=True, help="Output raw JSON.")
@click.pass_context
def cli(ctx: click.Context, url: str, user: str | None, json_output: bool) -> None:
    """Export Engine — scheduled and bulk export CLI."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["user"] = user
    ctx.obj["json_output"] = json_output


# ── engine schedule ───────────────────────────────────────────────────────────


@cli.group("schedule")
def schedule() -> None:
    """Manage recurring export schedules."""


@schedule.command("list")
@click.option("--active/--inactive", "is_active", default=None, help="Filter by state.")
@click.option("--type", "schedule_type",
              type=click.Choice(["daily", "weekly", "monthly", "quarterly"]))
@click.option("--page", default=1, show_default=True)
@click.option("--limit", default=20, show_default=True)
@click.pass_obj
def schedule_list(obj: dict, is_active: bool | None, schedule_type: str | None,
                  page: int, limit: int) -> None:
    """List schedules of your organization."""
    params: dict[str, Any] = {"page": page, "limit": limit}
    if is_active is not None:
        params["is_active"] = str(is_active).lower()
    if schedule_type:
        params["schedule_type"] = schedule_type
    data = _request(obj, "get", "/schedules", params=params)
    if _emit(obj, data):
        return

    rows = data.get("schedules", [])
    if not rows:
        click.echo("No schedules found.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Schedule ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Next Run")
    table.add_column("Runs", justify="right")
    for row in rows:
        status = "active" if row.get("is_active") else "paused"
        table.add_row(
            row["id"],
            row.get("name", ""),
            row.get("schedule", {}).get("type", "?"),
            f"[{_color(status)}]{status}[/]",
            row.get("next_execution") or "-",
            str(row.get("execution_count", 0)),
        )
    console.print(table)
    pagination, quota = data.get("pagination", {}), data.get("quota", {})
    click.echo(
        f"Page {pagination.get('page')}/{max(pagination.get('pages', 1), 1)}"
        f"  total: {pagination.get('total')}"
        f"  quota: {quota.get('used')}/{quota.get('limit')}"
    )


@schedule.command("create")
@click.argument("file", type=click.Path(exists=True))
@click.pass_obj
def schedule_create(obj: dict, file: str) -> None:
    """Create a schedule from a YAML or JSON file.

    \b
    File format (YAML example):
      name: weekly-compliance
      schedule:
        type: weekly
        day_of_week: 1
        hour: 9
        timezone: Asia/Riyadh
      export:
        format: pdf
      filters:
        date_range: last_week
    """
    data = _request(obj, "post", "/schedules", json=_load_file(file))
    if _emit(obj, data):
        return
    click.echo(f"Created  {data['id']}  next: {data.get('next_execution') or '-'}")


@schedule.command("show")
@click.argument("schedule_id")
@click.pass_obj
def schedule_show(obj: dict, schedule_id: str) -> None:
    """Show one schedule definition."""
    data = _request(obj, "get", f"/schedules/{schedule_id}")
    if _emit(obj, data):
        return
    status = "active" if data.get("is_active") else "paused"
    sched = data.get("schedule", {})
    console.print(f"[cyan]{data['id']}[/]  {data.get('name', '')}  [{_color(status)}]{status}[/]")
    console.print(
        f"  {sched.get('type')} at {sched.get('hour')}:00 {sched.get('timezone', 'UTC')}"
        f"  format: {data.get('export', {}).get('format')}"
    )
    last = data.get("last_execution_status") or "-"
    console.print(
        f"  next: {data.get('next_execution') or '-'}  last: {data.get('last_execution') or '-'}"
        f" [{_color(last)}]{last}[/]"
    )
    console.print(
        f"  runs: {data.get('execution_count', 0)}  failures: {data.get('failure_count', 0)}"
    )


@schedule.command("pause")
@click.argument("schedule_id")
@click.pass_obj
def schedule_pause(obj: dict, schedule_id: str) -> None:
    """Pause a schedule."""
    _request(obj, "post", f"/schedules/{schedule_id}/pause")
    click.echo(f"Paused  {schedule_id}")


@schedule.command("resume")
@click.argument("schedule_id")
@click.pass_obj
def schedule_resume(obj: dict, schedule_id: str) -> None:
    """Resume a paused schedule."""
    data = _request(obj, "post", f"/schedules/{schedule_id}/resume")
    click.echo(f"Resumed  {schedule_id}  next: {data.get('next_execution') or '-'}")


@schedule.command("stats")
@click.pass_obj
def schedule_stats(obj: dict) -> None:
    """Show schedule statistics for your organization."""
    data = _request(obj, "get", "/schedules/stats")
    if _emit(obj, data):
        return
    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Schedules", str(data["total_schedules"]))
    table.add_row("Active", str(data["active_schedules"]))
    table.add_row("Executions", str(data["total_executions"]))
    table.add_row("Successful exports", f"[green]{data['successful_exports']}[/]")
    table.add_row("Failed exports", f"[red]{data['failed_exports']}[/]")
    table.add_row("Success rate", f"{data['success_rate']}%")
    table.add_row("Next upcoming", data.get("next_upcoming") or "-")
    console.print(table)


@cli.command("tick")
@click.pass_obj
def tick(obj: dict) -> None:
    """Fire every due schedule now."""
    data = _request(obj, "post", "/schedules/run-due")
    if _emit(obj, data):
        return
    if not data:
        click.echo("No schedules due.")
        return
    for row in data:
        s = row.get("status", "?")
        console.print(
            f"[{_color(s)}]{s}[/]  {row['schedule_id']}  job: {row.get('job_id') or '-'}"
            + (f"  [red]{row['error']}[/]" if row.get("error") else "")
        )


# ── engine export ─────────────────────────────────────────────────────────────


@cli.group("export")
def export() -> None:
    """Start exports."""


@export.command("bulk")
@click.option("--id", "item_ids", multiple=True, help="Explicit item id (repeatable).")
@click.option("--file", "request_file", type=click.Path(exists=True),
              help="YAML/JSON bulk request body.")
@click.option("--category", "categories", multiple=True)
@click.option("--owner", "user_ids", multiple=True, help="Only items of this user id.")
@click.option("--from", "date_from", help="ISO date lower bound.")
@click.option("--to", "date_to", help="ISO date upper bound.")
@click.option("--min-score", type=float, help="Minimum compliance score (0..1).")
@click.option("--max-items", type=int, default=100, show_default=True)
@click.option("--format", "fmt", type=click.Choice(_FORMATS), default="pdf", show_default=True)
@click.option("--priority", type=click.Choice(_PRIORITIES), default="normal", show_default=True)
@click.pass_obj
def export_bulk(obj: dict, item_ids: tuple[str, ...], request_file: str | None,
                categories: tuple[str, ...], user_ids: tuple[str, ...],
                date_from: str | None, date_to: str | None, min_score: float | None,
                max_items: int, fmt: str, priority: str) -> None:
    """Queue a bulk export by explicit ids or by filter."""
    if request_file:
        payload = _load_file(request_file)
    else:
        item_filter: dict[str, Any] = {
            "categories": list(categories),
            "user_ids": list(user_ids),
        }
        if date_from:
            item_filter["date_from"] = date_from
        if date_to:
            item_filter["date_to"] = date_to
        if min_score is not None:
            item_filter["compliance_score_min"] = min_score
        payload = {
            "item_ids": list(item_ids) or None,
            "filter": item_filter,
            "max_items": max_items,
            "format": fmt,
            "priority": priority,
        }
    data = _request(obj, "post", "/exports/bulk", json=payload)
    if _emit(obj, data):
        return
    job = data["job"]
    click.echo(
        f"Queued  {job['id']}  [{job['status']}]  {job['total_items']} items"
        f"  ~{data['estimated_time']}"
    )


@export.command("single")
@click.argument("item_id")
@click.option("--format", "fmt", type=click.Choice(_FORMATS), default="pdf", show_default=True)
@click.option("--priority", type=click.Choice(_PRIORITIES), default="normal", show_default=True)
@click.pass_obj
def export_single(obj: dict, item_id: str, fmt: str, priority: str) -> None:
    """Export a single item."""
    data = _request(obj, "post", "/exports/single",
                    json={"item_id": item_id, "format": fmt, "priority": priority})
    if _emit(obj, data):
        return
    click.echo(f"Queued  {data['id']}  [{data['status']}]")


# ── engine job ────────────────────────────────────────────────────────────────


@cli.group("job")
def job() -> None:
    """Inspect and manage export jobs."""


@job.command("list")
@click.option("--status", type=click.Choice(["pending", "processing", "completed", "failed", "cancelled"]))
@click.option("--archived", is_flag=True, help="Include archived jobs.")
@click.option("--limit", default=50, show_default=True)
@click.pass_obj
def job_list(obj: dict, status: str | None, archived: bool, limit: int) -> None:
    """List export jobs, newest first."""
    params: dict[str, Any] = {"limit": limit, "include_archived": str(archived).lower()}
    if status:
        params["status"] = status
    data = _request(obj, "get", "/jobs", params=params)
    if _emit(obj, data):
        return

    if not data:
        click.echo("No jobs found.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Job ID", style="cyan")
    table.add_column("Origin")
    table.add_column("Status")
    table.add_column("Priority")
    table.add_column("Progress", justify="right")
    table.add_column("Created")
    for row in data:
        s = row.get("status", "?")
        table.add_row(
            row["id"],
            row.get("origin", ""),
            f"[{_color(s)}]{s}[/]",
            row.get("priority", ""),
            f"{row.get('processed_items', 0)}/{row.get('total_items', 0)} ({row.get('progress', 0)}%)",
            row.get("created_at", ""),
        )
    console.print(table)


@job.command("status")
@click.argument("job_id")
@click.pass_obj
def job_status(obj: dict, job_id: str) -> None:
    """Show a job with progress metrics and recent log entries."""
    data = _request(obj, "get", f"/jobs/{job_id}")
    _print_status(data, obj["json_output"])


def _print_status(report: dict, json_output: bool) -> None:
    if json_output:
        click.echo(json.dumps(report, indent=2, default=str))
        return

    job_ = report["job"]
    metrics = report.get("metrics", {})
    s = job_.get("status", "?")
    console.print(
        f"Status: [{_color(s)}]{s}[/]  {job_.get('progress', 0)}%"
        f"  ({job_.get('processed_items', 0)}/{job_.get('total_items', 0)} items)"
    )
    if metrics.get("eta_seconds") is not None:
        console.print(f"ETA: {metrics['eta_seconds']:.0f}s")
    if metrics.get("is_stuck"):
        console.print("[red]Job appears stuck[/]")
    if job_.get("error_message"):
        console.print(f"[red]{job_['error_message']}[/]")
    if job_.get("download_url"):
        console.print(f"Download: {job_['download_url']}")

    logs = report.get("logs", [])
    if logs:
        table = Table(box=box.SIMPLE)
        table.add_column("Time")
        table.add_column("Level")
        table.add_column("Message")
        for entry in logs:
            table.add_row(entry.get("created_at", ""), entry.get("level", ""), entry.get("message", ""))
        console.print(table)


@job.command("cancel")
@click.argument("job_id")
@click.option("--reason", help="Recorded as the job's error message.")
@click.pass_obj
def job_cancel(obj: dict, job_id: str, reason: str | None) -> None:
    """Cancel a pending or processing job."""
    data = _request(obj, "post", f"/jobs/{job_id}/cancel", json={"reason": reason})
    click.echo(f"Cancelled  {job_id}  at {data.get('progress', 0)}%")


@job.command("retry")
@click.argument("job_id")
@click.pass_obj
def job_retry(obj: dict, job_id: str) -> None:
    """Re-queue a failed job."""
    data = _request(obj, "post", f"/jobs/{job_id}/retry")
    click.echo(f"Retrying  {job_id}  [{data['status']}]")


@job.command("priority")
@click.argument("job_id")
@click.argument("level", type=click.Choice(_PRIORITIES))
@click.pass_obj
def job_priority(obj: dict, job_id: str, level: str) -> None:
    """Change the priority of a pending or processing job."""
    _request(obj, "post", f"/jobs/{job_id}/priority", json={"priority": level})
    click.echo(f"Priority  {job_id}  → {level}")


@job.command("archive")
@click.argument("job_id")
@click.pass_obj
def job_archive(obj: dict, job_id: str) -> None:
    """Archive a finished job."""
    _request(obj, "post", f"/jobs/{job_id}/archive")
    click.echo(f"Archived  {job_id}")


@job.command("stream")
@click.argument("job_id")
@click.pass_obj
def job_stream(obj: dict, job_id: str) -> None:
    """Stream live job state changes (SSE)."""
    url = obj["url"].rstrip("/") + f"/jobs/{job_id}/stream"
    headers = {"X-User-Id": obj["user"]} if obj["user"] else {}
    try:
        with httpx.Client(timeout=None, headers=headers) as c:
            with c.stream("GET", url) as resp:
                if resp.status_code == 404:
                    _die(f"Job '{job_id}' not found")
                resp.raise_for_status()
                for line in resp.iter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        event = json.loads(line[6:])
                    except json.JSONDecodeError:
                        continue
                    if obj["json_output"]:
                        click.echo(json.dumps(event))
                    else:
                        s = event.get("status", "?")
                        console.print(
                            f"[{_color(s)}][{s}][/] {event.get('progress', 0)}%"
                            f"  {event.get('processed_items', 0)}/{event.get('total_items', 0)}"
                        )
                    if event.get("status") in _TERMINAL:
                        break
    except httpx.ConnectError:
        _die(f"Cannot connect to {obj['url']}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
