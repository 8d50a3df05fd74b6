"""CLI for planner-sync: serve the API and run one-off planner actions."""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import date, datetime
from pathlib import Path

import click
import uvicorn

from planner_sync.config import ConfigError, PlannerConfig, load_config
from planner_sync.core.logging import configure_logging, resolve_log_root
from planner_sync.errors import PlannerSyncError
from planner_sync.models import format_minutes, parse_hhmm
from planner_sync.service import PlannerService

logger = logging.getLogger(__name__)


def _load(config_path: Path | None) -> PlannerConfig:
    if config_path is None:
        return PlannerConfig()
    try:
        return load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    envvar="PLANNER_CONFIG",
    help="Path to planner.toml (defaults apply when omitted)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Planner calendar sync and conflict resolution."""
    config = _load(config_path)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=resolve_log_root(config.logging.log_root),
    )
    ctx.obj = config


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides planner.api.host)")
@click.option("--port", type=int, default=None, help="Port (overrides planner.api.port)")
@click.pass_obj
def serve(config: PlannerConfig, host: str | None, port: int | None) -> None:
    """Run the HTTP API and the background sync scheduler."""
    from planner_sync.api.app import create_app

    server_config = uvicorn.Config(
        create_app(config),
        host=host or config.api.host,
        port=port or config.api.port,
        log_config=None,
    )
    click.echo(f"Serving planner API on {server_config.host}:{server_config.port}")
    asyncio.run(uvicorn.Server(server_config).serve())


async def _with_service(config: PlannerConfig, action):
    service = await PlannerService.create(config)
    try:
        return await action(service)
    finally:
        await service.close()


def _run(config: PlannerConfig, action):
    try:
        return asyncio.run(_with_service(config, action))
    except PlannerSyncError as exc:
        click.echo(f"Error ({exc.error_code}): {exc.message}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_obj
def sync(config: PlannerConfig) -> None:
    """Run one sync cycle for every connected provider."""

    async def action(service: PlannerService):
        return await service.scheduler.sync_now()

    report = _run(config, action)
    if report.skipped:
        click.echo("No calendar is connected.")
        return
    for provider in report.succeeded:
        click.echo(f"{provider.label:<20} ok ({report.event_counts.get(provider, 0)} events)")
    for provider, message in report.failures.items():
        click.echo(f"{provider.label:<20} FAILED: {message}")
    if report.failures:
        sys.exit(1)


@cli.command("import-ics")
@click.argument("source")
@click.pass_obj
def import_ics(config: PlannerConfig, source: str) -> None:
    """Import a calendar feed from a file path or an http(s)/webcal URL."""
    if source.lower().startswith(("http://", "https://", "webcal://")):

        async def action(service: PlannerService):
            return await service.ics.import_url(source)

    else:
        path = Path(source)
        if not path.is_file():
            raise click.ClickException(f"Feed file not found: {path}")
        text = path.read_text(encoding="utf-8")

        async def action(service: PlannerService):
            return await service.ics.import_text(text)

    imported = _run(config, action)
    click.echo(f"Imported {len(imported)} events.")


@cli.command()
@click.option(
    "--date",
    "day",
    required=True,
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="Calendar day (YYYY-MM-DD)",
)
@click.option("--start", required=True, help="Desired start (HH:MM)")
@click.option("--end", required=True, help="Desired end (HH:MM)")
@click.option("--exclude", "exclude_event_id", default=None, help="Event id being edited")
@click.pass_obj
def fit(
    config: PlannerConfig,
    day: datetime,
    start: str,
    end: str,
    exclude_event_id: str | None,
) -> None:
    """Show where an event would be placed on DATE without saving it."""
    try:
        desired_start, desired_end = parse_hhmm(start), parse_hhmm(end)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    target: date = day.date()

    async def action(service: PlannerService):
        return service.resolver.fit_event(target, desired_start, desired_end, exclude_event_id)

    result = _run(config, action)
    suffix = " (shifted)" if result.shifted else ""
    click.echo(f"{format_minutes(result.start)}-{format_minutes(result.end)}{suffix}")


@cli.command("events")
@click.option(
    "--date",
    "day",
    default=None,
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="Only events on this day (YYYY-MM-DD)",
)
@click.pass_obj
def events_cmd(config: PlannerConfig, day: datetime | None) -> None:
    """List stored events in display order."""
    target = day.date() if day is not None else None

    async def action(service: PlannerService):
        return service.list_events(on=target)

    rows = _run(config, action)
    if not rows:
        click.echo("No events.")
        return

    click.echo(f"{'Date':<12} {'Time':<12} {'Source':<18} {'Title'}")
    click.echo("-" * 72)
    for event in rows:
        if event.all_day:
            when = "all day"
        else:
            when = f"{format_minutes(event.start)}-{format_minutes(event.end)}"
        source = event.source.value
        click.echo(f"{event.date.isoformat():<12} {when:<12} {source:<18} {event.title}")
