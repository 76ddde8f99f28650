from __future__ import annotations

import json
from dataclasses import asdict

import typer
import uvicorn

from resumatch.api.app import create_app
from resumatch.config import get_settings
from resumatch.core.workers import WorkerPool
from resumatch.db.base import as_utc
from resumatch.db.init import init_database
from resumatch.db.models import QueueKind
from resumatch.db.queue import RetryQueue
from resumatch.db.session import SessionLocal
from resumatch.logging_config import configure_logging

app = typer.Typer(help="Resumatch CLI")
queues_app = typer.Typer(help="Inspect and manage the retry queues")
worker_app = typer.Typer(help="Run queue workers by hand")

app.add_typer(queues_app, name="queues")
app.add_typer(worker_app, name="worker")

_INITIALIZED = False


def ensure_initialized() -> None:
    global _INITIALIZED
    if _INITIALIZED:
        return
    init_database()
    _INITIALIZED = True


def _parse_kind(kind: str) -> QueueKind:
    try:
        return QueueKind(kind)
    except ValueError as exc:
        choices = ", ".join(k.value for k in QueueKind)
        raise typer.BadParameter(f"unknown queue kind '{kind}' (choose from {choices})") from exc


@app.command("init")
def init_cmd() -> None:
    """Initialize database and data directories."""
    configure_logging()
    result = init_database()
    typer.echo(json.dumps({"ok": True, **result}, indent=2))


@queues_app.command("status")
def queues_status() -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        typer.echo(json.dumps(RetryQueue(db).counts(), indent=2))


@queues_app.command("list")
def queues_list(
    kind: str = typer.Argument(...),
    status: str | None = typer.Option(None, "--status"),
) -> None:
    """List queue rows for one kind, dormant rows included."""
    configure_logging()
    ensure_initialized()
    queue_kind = _parse_kind(kind)
    with SessionLocal() as db:
        try:
            rows = RetryQueue(db).list_items(kind=queue_kind, status=status)
        except ValueError as exc:
            raise typer.BadParameter(f"unknown queue status '{status}'") from exc
        payload = [
            {
                "id": row.id,
                "owner_id": row.owner_id,
                "related_id": row.related_id,
                "status": row.status.value,
                "attempt_count": row.attempt_count,
                "next_retry_at": row.next_retry_at and as_utc(row.next_retry_at).isoformat(),
                "last_error": row.last_error,
            }
            for row in rows
        ]
    typer.echo(json.dumps(payload, indent=2))


@queues_app.command("requeue")
def queues_requeue(
    kind: str = typer.Argument(...),
    owner_id: int = typer.Argument(...),
    related_id: int = typer.Option(0, "--related-id"),
) -> None:
    """Reset a unit of work to pending, reviving it if it went dormant."""
    configure_logging()
    ensure_initialized()
    queue_kind = _parse_kind(kind)
    with SessionLocal() as db:
        item = RetryQueue(db).enqueue(queue_kind, owner_id, related_id)
        typer.echo(json.dumps({"id": item.id, "kind": queue_kind.value, "status": item.status.value}, indent=2))


@worker_app.command("tick")
def worker_tick(kind: str = typer.Argument(...)) -> None:
    """Run a single worker cycle for one queue kind."""
    configure_logging()
    ensure_initialized()
    worker = WorkerPool().get(_parse_kind(kind))
    report = worker.tick()
    if report is None:
        typer.echo(json.dumps({"skipped": True}, indent=2))
        return
    summary = asdict(report)
    summary.pop("inference_ms")
    summary["kind"] = report.kind.value
    summary["inference_avg_ms"] = round(report.inference_avg_ms, 1)
    typer.echo(json.dumps(summary, indent=2, default=str))


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port"),
) -> None:
    configure_logging()
    ensure_initialized()
    settings = get_settings()
    app_instance = create_app()
    uvicorn.run(app_instance, host=host or settings.app_host, port=port or settings.app_port)
