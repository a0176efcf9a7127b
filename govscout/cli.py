from __future__ import annotations

import json
import logging
import os
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from sqlalchemy.orm import Session, sessionmaker

from govscout.alerts import AlertJob
from govscout.config import Settings, get_settings
from govscout.db import create_session_factory, session_scope
from govscout.digest import DigestJob, gather_stats
from govscout.importer import ImportSourceError, import_directory, run_import
from govscout.models import SYNC_SUCCESS
from govscout.notifier import Notifier
from govscout.scorer import ScoringClient
from govscout.scoring import run_scoring
from govscout.store import RecordStore
from govscout.utils import utc_now

app = typer.Typer(help="Government contract opportunity ingestion and intelligence pipeline")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.ERROR
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    config: str | None = typer.Option(None, "--config", help="YAML settings file."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if config:
        os.environ["GOVSCOUT_CONFIG"] = str(Path(config).expanduser().resolve())
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _settings(db_url: str | None) -> Settings:
    settings = get_settings()
    if db_url:
        settings = settings.model_copy(update={"database_url": db_url})
    return settings


def _factory(settings: Settings) -> sessionmaker[Session]:
    return create_session_factory(settings.database_url)


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    if value is None:
        return "-"
    return str(value)


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
        return

    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for key, value in payload.items():
        if isinstance(value, list):
            table.add_row(key, str(len(value)))
            for item in value[:5]:
                table.add_row("", f"[red]{item}[/red]")
        else:
            table.add_row(key, _format_scalar(value))
    console.print(Panel(table, title=title, border_style="cyan"))


def _run_stage(ctx: typer.Context, stage_name: str, runner: Callable[[], Any]) -> Any:
    if _wants_json(ctx):
        return runner()
    started = time.perf_counter()
    with console.status(f"[bold cyan]{stage_name}[/bold cyan]", spinner="dots"):
        result = runner()
    console.print(f"[green]✓[/green] {stage_name} ({time.perf_counter() - started:.2f}s)")
    return result


DbUrlOption = typer.Option(default=None, help="Optional SQLAlchemy DB URL")


@app.command("init-db")
def init_db_command(ctx: typer.Context, db_url: str | None = DbUrlOption) -> None:
    settings = _settings(db_url)
    _factory(settings)
    _print("init-db", {"status": "ok", "database_url": settings.database_url}, ctx)


@app.command("import")
def import_command(
    ctx: typer.Context,
    source: str | None = typer.Argument(None, help="JSON file or directory. Defaults to the data directory."),
    chunk_size: int | None = typer.Option(None, help="Opportunities per commit."),
    db_url: str | None = DbUrlOption,
) -> None:
    settings = _settings(db_url)
    path = Path(source).expanduser() if source else settings.imports.data_directory
    size = chunk_size or settings.imports.chunk_size

    def runner():
        with session_scope(_factory(settings)) as session:
            store = RecordStore(session)
            if path.is_dir():
                return import_directory(path, store, size)
            return run_import(path, store, size)

    try:
        result = _run_stage(ctx, f"import {path}", runner)
    except ImportSourceError as exc:
        console.print(f"[red]Import failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    _print("import", result.model_dump(), ctx)


@app.command("score")
def score_command(ctx: typer.Context, db_url: str | None = DbUrlOption) -> None:
    settings = _settings(db_url)
    client = ScoringClient(settings.scoring)

    def runner():
        with session_scope(_factory(settings)) as session:
            return run_scoring(RecordStore(session), client, settings.scoring)

    result = _run_stage(ctx, f"score ({client.provider}/{client.model})", runner)
    _print("score", result.model_dump(), ctx)


@app.command("alerts")
def alerts_command(ctx: typer.Context, db_url: str | None = DbUrlOption) -> None:
    settings = _settings(db_url)
    job = AlertJob(_factory(settings), Notifier.from_settings(settings.notifications), settings.alerts)
    result = _run_stage(ctx, "high-score alerts", job.run)
    if result is None:
        _print("alerts", {"status": "disabled"}, ctx)
        return
    _print("alerts", result.model_dump(), ctx)


@app.command("digest")
def digest_command(ctx: typer.Context, db_url: str | None = DbUrlOption) -> None:
    settings = _settings(db_url)
    job = DigestJob(_factory(settings), Notifier.from_settings(settings.notifications), settings.digest)
    if not settings.digest.enabled:
        _print("digest", {"status": "disabled"}, ctx)
        return
    entry = _run_stage(ctx, "weekly digest", job.run)
    if entry is None:
        raise typer.Exit(code=1)
    _print("digest", {
        "status": entry.status,
        "records_processed": entry.records_processed,
        "error_log": entry.error_log or None,
    }, ctx)
    if entry.status != SYNC_SUCCESS:
        raise typer.Exit(code=1)


@app.command("schedule")
def schedule_command(ctx: typer.Context, db_url: str | None = DbUrlOption) -> None:
    """Run the alert and digest jobs on their cron schedules until interrupted."""
    from apscheduler.schedulers.blocking import BlockingScheduler

    from govscout.scheduler import TIMEZONE, build_scheduler

    settings = _settings(db_url)
    scheduler = build_scheduler(
        settings,
        _factory(settings),
        Notifier.from_settings(settings.notifications),
        BlockingScheduler(timezone=TIMEZONE),
    )
    if not _wants_json(ctx):
        console.print(Panel(
            f"alerts: [bold]{settings.alerts.cron}[/bold]\ndigest: [bold]{settings.digest.cron}[/bold]",
            title="scheduler", border_style="green",
        ))
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown(wait=False)


@app.command("sync-logs")
def sync_logs_command(
    ctx: typer.Context,
    limit: int = typer.Option(20, help="Number of entries."),
    sync_type: str | None = typer.Option(None, "--type", help="Filter by sync type."),
    db_url: str | None = DbUrlOption,
) -> None:
    settings = _settings(db_url)
    with session_scope(_factory(settings)) as session:
        rows = [
            {
                "id": entry.id,
                "sync_type": entry.sync_type,
                "status": entry.status,
                "records_processed": entry.records_processed,
                "error_count": entry.error_count,
                "started_at": entry.started_at.isoformat() if entry.started_at else None,
                "completed_at": entry.completed_at.isoformat() if entry.completed_at else None,
            }
            for entry in RecordStore(session).recent_sync_logs(limit, sync_type)
        ]

    if _wants_json(ctx):
        typer.echo(json.dumps(rows, indent=2))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for column in ("ID", "Type", "Status", "Processed", "Errors", "Started"):
        table.add_column(column)
    for row in rows:
        status = "[green]SUCCESS[/green]" if row["status"] == SYNC_SUCCESS else f"[red]{row['status']}[/red]"
        table.add_row(str(row["id"]), row["sync_type"], status, str(row["records_processed"]),
                      str(row["error_count"]), row["started_at"] or "-")
    console.print(Panel(table, title="sync logs", border_style="cyan"))


@app.command("stats")
def stats_command(
    ctx: typer.Context,
    days: int = typer.Option(7, help="Trailing window in days."),
    db_url: str | None = DbUrlOption,
) -> None:
    settings = _settings(db_url)
    end = utc_now()
    with session_scope(_factory(settings)) as session:
        stats = gather_stats(RecordStore(session), end - timedelta(days=days), end)
    _print(f"stats (last {days} days)", stats.model_dump(), ctx)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
