"""CLI for questline: run the daemon and one-off maintenance commands."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click

from questline import __version__
from questline.config import DEFAULT_CONFIG_PATH, ConfigError, QuestlineConfig, load_config

logger = logging.getLogger(__name__)

_SOURCES = ("meetup", "swissrpg", "all")


def _load(config_path: Path) -> QuestlineConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Invalid config: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to the questline TOML config",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path) -> None:
    """Questline: event reconciliation and session scheduling."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")
    ctx.obj = config_path


@cli.command()
@click.pass_obj
def run(config_path: Path) -> None:
    """Start the daemon: sync loops plus the schedule-session web server."""
    config = _load(config_path)
    click.echo(f"Starting questline from {config_path}")
    asyncio.run(_run_daemon(config))


async def _run_daemon(config: QuestlineConfig) -> None:
    from questline.daemon import QuestlineDaemon

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    daemon = QuestlineDaemon(config)
    await daemon.start()
    click.echo(f"Questline running on {config.web.host}:{config.web.port}")

    await shutdown_event.wait()
    await daemon.shutdown()


@cli.command("sync-once")
@click.option(
    "--source",
    type=click.Choice(_SOURCES),
    default="all",
    show_default=True,
    help="Which source to reconcile",
)
@click.pass_obj
def sync_once(config_path: Path, source: str) -> None:
    """Run one reconciliation pass and print its summary."""
    config = _load(config_path)
    failed = asyncio.run(_sync_once(config, source))
    if failed:
        sys.exit(1)


async def _sync_once(config: QuestlineConfig, source: str) -> bool:
    from questline.daemon import QuestlineDaemon

    daemon = QuestlineDaemon(config)
    await daemon.open(migrate=False)
    failed = False
    try:
        assert daemon.sync_scheduler is not None
        selected = [
            adapter.source
            for adapter in daemon.adapters
            if source == "all" or adapter.source == source
        ]
        if not selected:
            click.echo(f"Source {source!r} is not enabled", err=True)
            return True
        for selected_source in selected:
            ok = await daemon.sync_scheduler.run_with_timeout(
                f"sync-{selected_source}",
                lambda s=selected_source: daemon.sync_scheduler.run_source_pass(s),
            )
            summary = daemon.sync_scheduler.state.summaries.get(selected_source)
            if not ok or summary is None:
                click.echo(f"{selected_source}: pass failed")
                failed = True
                continue
            click.echo(
                f"{selected_source}: {summary.fetched} fetched, {summary.created} created, "
                f"{summary.updated} updated, {summary.skipped} skipped, "
                f"{summary.conflicts} conflicts, {summary.failed} failed"
            )
    finally:
        await daemon.close()
    return failed


@cli.command()
@click.pass_obj
def migrate(config_path: Path) -> None:
    """Upgrade the database schema to the latest revision."""
    from questline.db import Database
    from questline.migrations import run_migrations

    config = _load(config_path)
    db = Database.from_url(config.database.url, default_db_name=config.database.name)
    asyncio.run(db.provision())
    run_migrations(db.dsn)
    click.echo(f"Database {db.db_name} is up to date")


@cli.command("new-flow")
@click.argument("series_id", type=int)
@click.pass_obj
def new_flow(config_path: Path, series_id: int) -> None:
    """Create a schedule-session flow for SERIES_ID and print its link."""
    config = _load(config_path)
    link = asyncio.run(_new_flow(config, series_id))
    click.echo(link)


async def _new_flow(config: QuestlineConfig, series_id: int) -> str:
    from redis import asyncio as aioredis

    from questline.flow.schedule_session import ScheduleSessionFlow

    redis = aioredis.from_url(config.redis.url, decode_responses=True)
    try:
        flow = await ScheduleSessionFlow.new(redis, series_id, ttl_s=config.flow.ttl_s)
    finally:
        await redis.aclose()
    return f"{config.web.base_url.rstrip('/')}/schedule_session/{flow.id}"


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
