from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from cadence.burndown import BurndownSnapshotService, capture_active_sprints
from cadence.config import get_settings
from cadence.db import init_db, session_scope
from cadence.errors import NotFoundError
from cadence.metrics import SprintMetricsCalculator
from cadence.risk import RiskSignalDetector

app = typer.Typer(help="Sprint analytics and git activity attribution")
console = Console()

_SEVERITY_STYLE = {"low": "dim", "medium": "yellow", "high": "red", "critical": "bold red"}


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=False)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


def _emit(ctx: typer.Context, payload: Any, render) -> None:
    if ctx.obj["json_output"]:
        typer.echo(json.dumps(payload, default=str))
    else:
        render()


def _db_url(ctx: typer.Context) -> str | None:
    return ctx.obj.get("db_url")


@app.callback()
def app_callback(
    ctx: typer.Context,
    db_url: str | None = typer.Option(None, "--db-url", help="SQLAlchemy URL, overrides CADENCE_DB_URL."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    ctx.obj = {"json_output": json_output, "verbose": verbose, "db_url": db_url}
    _configure_logging(verbose=verbose, json_output=json_output)


@app.command("init-db")
def init_db_command(ctx: typer.Context) -> None:
    """Create all tables."""
    init_db(_db_url(ctx))
    _emit(ctx, {"ok": True}, lambda: console.print("[green]Database ready[/green]"))


@app.command("capture-snapshots")
def capture_snapshots_command(ctx: typer.Context) -> None:
    """Capture today's snapshot for every active sprint (run once a day)."""
    init_db(_db_url(ctx))
    with session_scope(_db_url(ctx)) as session:
        outcome = capture_active_sprints(session)

    def render() -> None:
        console.print(f"Captured {len(outcome['captured'])} sprint snapshot(s)")
        for sprint_id in outcome["failed"]:
            console.print(f"[red]Failed:[/red] {sprint_id}")

    _emit(ctx, outcome, render)
    if outcome["failed"]:
        raise typer.Exit(code=1)


@app.command("metrics")
def metrics_command(ctx: typer.Context, sprint_id: str = typer.Argument(...)) -> None:
    """Show live metrics for a sprint."""
    try:
        with session_scope(_db_url(ctx)) as session:
            result = SprintMetricsCalculator(session).compute(sprint_id)
    except NotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    def render() -> None:
        table = Table(title=f"{result.sprint_name} ({result.sprint_id})")
        table.add_column("Metric")
        table.add_column("Value", justify="right")
        table.add_row("Velocity", f"{result.velocity:g}")
        table.add_row("Planned effort", f"{result.planned_effort:g}")
        table.add_row("Completed effort", f"{result.completed_effort:g}")
        table.add_row("Planned / added actions", f"{result.planned_actions} / {result.added_actions}")
        table.add_row("Completed actions", str(result.completed_actions))
        table.add_row("Completion rate", f"{result.completion_rate:.1f}%")
        for status, count in result.kanban_counts.items():
            table.add_row(status, str(count))
        console.print(table)

    _emit(ctx, result.model_dump(mode="json"), render)


@app.command("burndown")
def burndown_command(ctx: typer.Context, sprint_id: str = typer.Argument(...)) -> None:
    """Show the burndown series reconstructed from stored snapshots."""
    try:
        with session_scope(_db_url(ctx)) as session:
            points = BurndownSnapshotService(session).get_burndown_series(sprint_id)
    except NotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    def render() -> None:
        if not points:
            console.print("No burndown data (missing dates or snapshots)")
            return
        table = Table(title=f"Burndown {sprint_id}")
        for column in ("Date", "Remaining", "Ideal", "Completed"):
            table.add_column(column, justify="right")
        for p in points:
            table.add_row(
                p.date.isoformat(), f"{p.remaining_effort:g}",
                f"{p.ideal_remaining:.1f}", f"{p.completed_effort:g}",
            )
        console.print(table)

    _emit(ctx, [p.model_dump(mode="json") for p in points], render)


@app.command("risks")
def risks_command(ctx: typer.Context, sprint_id: str = typer.Argument(...)) -> None:
    """Show risk signals for a sprint."""
    stale_after = timedelta(days=get_settings().stale_after_days)
    try:
        with session_scope(_db_url(ctx)) as session:
            signals = RiskSignalDetector(session, stale_after=stale_after).detect(sprint_id)
    except NotFoundError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc

    def render() -> None:
        if not signals:
            console.print("[green]No risk signals[/green]")
            return
        for s in signals:
            style = _SEVERITY_STYLE[s.severity]
            console.print(f"[{style}]{s.severity.upper():<8}[/{style}] {s.type}: {s.message}")

    _emit(ctx, [s.model_dump(mode="json") for s in signals], render)


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8002, "--port"),
) -> None:
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("cadence.app:app", host=host, port=port)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
