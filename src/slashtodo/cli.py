"""Administrative CLI for the event store."""

from __future__ import annotations

import asyncio

import click

from .core.config import Settings, load_settings
from .infrastructure.event_store import build_event_store
from .observability.logger import new_trace_id, setup_logging


@click.group()
@click.option("--config", default=None, help="Config file path")
@click.option("--log-level", default=None, help="Override the configured log level")
@click.pass_context
def main(ctx: click.Context, config: str | None, log_level: str | None) -> None:
    """SlashTodo event store administration."""
    settings = load_settings(config_path=config)
    setup_logging(
        level=log_level or settings.observability.log_level,
        format=settings.observability.log_format,
    )
    new_trace_id()
    ctx.obj = settings


@main.command()
@click.argument("aggregate_id")
@click.pass_obj
def history(settings: Settings, aggregate_id: str) -> None:
    """Print the stored events of AGGREGATE_ID, oldest first."""
    store = build_event_store(settings.event_store)
    events = asyncio.run(store.get_by_id(aggregate_id))
    if not events:
        click.echo(f"No events for {aggregate_id}", err=True)
        raise SystemExit(1)
    for event in events:
        click.echo(
            f"{event.original_version}\t{type(event).__name__}\t"
            f"{event.timestamp.isoformat()}\t{event.user_id}"
        )


@main.command()
@click.argument("aggregate_id")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def purge(settings: Settings, aggregate_id: str, yes: bool) -> None:
    """Delete the whole event history of AGGREGATE_ID."""
    if not yes:
        click.confirm(f"Delete all events of {aggregate_id}?", abort=True)
    store = build_event_store(settings.event_store)
    asyncio.run(store.delete(aggregate_id))
    click.echo(f"Deleted {aggregate_id}")
