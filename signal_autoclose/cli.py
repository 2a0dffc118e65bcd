"""
CLI entrypoint for the signal expiration & auto-close engine.

Provides commands for schema setup, one-shot task runs, the scheduler and
the HTTP server.
"""
import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import typer

from signal_autoclose.app import ExpirationEngine, build_engine
from signal_autoclose.config.config import load_config
from signal_autoclose.domain.models import to_dict
from signal_autoclose.exceptions import DataError
from signal_autoclose.monitoring.logger import get_logger, setup_logging
from signal_autoclose.storage.db import init_db
from signal_autoclose.tasks.definitions import TaskName

app = typer.Typer(
    name="signal-autoclose",
    help="Signal expiration & auto-close engine",
    add_completion=False,
)

logger = get_logger(__name__)

ConfigOption = typer.Option(None, "--config", help="Path to config file (defaults to the bundled config.yaml)")


def _engine(config_path: Optional[Path]) -> ExpirationEngine:
    config = load_config(str(config_path) if config_path else None)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    if not config.database.url:
        typer.echo("DATABASE_URL is not configured", err=True)
        raise typer.Exit(1)
    db = init_db(config.database.url, echo=config.database.echo)
    return build_engine(config, db)


def _echo(result: Any) -> None:
    if hasattr(result, "__dataclass_fields__"):
        result = to_dict(result)
    typer.echo(json.dumps(result, indent=2, default=str))


def _run_task(engine: ExpirationEngine, name: TaskName, payload: Optional[dict] = None) -> Any:
    try:
        return engine.processor.dispatch(name.value, payload or {})
    except DataError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command("init-db")
def init_db_command(config_path: Optional[Path] = ConfigOption):
    """Create all tables."""
    _engine(config_path)
    typer.echo("Database initialized")


@app.command()
def summary(config_path: Optional[Path] = ConfigOption):
    """Show expired and in-grace signals."""
    engine = _engine(config_path)
    _echo(engine.queries.expiration_summary())


@app.command()
def check(
    signal_id: str = typer.Argument(..., help="Signal id"),
    grace_period_minutes: Optional[int] = typer.Option(None, "--grace", min=0, max=1440, help="Grace window override"),
    config_path: Optional[Path] = ConfigOption,
):
    """Check one signal and expire it if due."""
    engine = _engine(config_path)
    payload = {"signal_id": signal_id}
    if grace_period_minutes is not None:
        payload["grace_period_minutes"] = grace_period_minutes
    outcome = _run_task(engine, TaskName.CHECK_SIGNAL_EXPIRATION, payload)
    _echo(outcome)
    if not outcome.success:
        raise typer.Exit(1)


@app.command("check-all")
def check_all(config_path: Optional[Path] = ConfigOption):
    """Expire every due ACTIVE signal and apply user policies."""
    engine = _engine(config_path)
    _echo(_run_task(engine, TaskName.CHECK_ALL_EXPIRATIONS))


@app.command("check-grace")
def check_grace(config_path: Optional[Path] = ConfigOption):
    """Close positions whose grace period has ended."""
    engine = _engine(config_path)
    _echo(_run_task(engine, TaskName.CHECK_GRACE_PERIODS))


@app.command("send-warnings")
def send_warnings(
    minutes_before: int = typer.Option(60, "--minutes", min=5, max=1440, help="Warning horizon in minutes"),
    config_path: Optional[Path] = ConfigOption,
):
    """Warn holders of positions on signals expiring soon."""
    engine = _engine(config_path)
    _echo(_run_task(engine, TaskName.SEND_EXPIRATION_WARNINGS, {"minutes_before": minutes_before}))


@app.command()
def cancel(
    signal_id: str = typer.Argument(..., help="Signal id"),
    config_path: Optional[Path] = ConfigOption,
):
    """Cancel a signal and close all its open positions."""
    engine = _engine(config_path)
    outcome = _run_task(engine, TaskName.HANDLE_SIGNAL_CANCELLATION, {"signal_id": signal_id})
    _echo(outcome)
    if not outcome.success:
        raise typer.Exit(1)


@app.command("run-scheduler")
def run_scheduler(
    max_cycles: int = typer.Option(0, "--max-cycles", min=0, help="Stop after N cycles (0 = run forever)"),
    config_path: Optional[Path] = ConfigOption,
):
    """Run the periodic expiration scheduler in the foreground."""
    engine = _engine(config_path)
    scheduler = engine.scheduler()
    try:
        asyncio.run(scheduler.run(max_cycles=max_cycles))
    except KeyboardInterrupt:
        logger.info("Scheduler stopped by user")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind host (defaults to api.host)"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (defaults to api.port)"),
    with_scheduler: bool = typer.Option(True, "--with-scheduler/--no-scheduler", help="Run the scheduler in-process"),
    config_path: Optional[Path] = ConfigOption,
):
    """Serve the HTTP API."""
    import uvicorn
    from signal_autoclose.api.server import create_app

    engine = _engine(config_path)
    api = create_app(engine, run_scheduler=with_scheduler)
    uvicorn.run(api, host=host or engine.config.api.host, port=port or engine.config.api.port)


if __name__ == "__main__":
    app()
