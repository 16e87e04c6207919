"""CLI for threadline: serve the operator API, run sweeps, route messages."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import click

from threadline.config import ConfigError, ThreadlineConfig, load_config
from threadline.core.logging import configure_logging
from threadline.core.scheduler import Scheduler
from threadline.core.telemetry import init_telemetry
from threadline.db import ConnectionSettings
from threadline.engine import RoutingEngine, build_memory_engine, connect_engine

logger = logging.getLogger(__name__)


def _load(config_path: Path | None) -> ThreadlineConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
    )
    init_telemetry()
    return config


async def _open_engine(config: ThreadlineConfig, memory: bool) -> RoutingEngine:
    if memory:
        return build_memory_engine(config)
    return await connect_engine(config)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to threadline.toml (defaults to $THREADLINE_CONFIG, then ./threadline.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Threadline: route inbound messages to conversation threads."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides [threadline.api].host)")
@click.option("--port", type=int, default=None, help="Port (overrides [threadline.api].port)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Serve the operator API with uvicorn."""
    import uvicorn

    from threadline.api.app import create_app

    config = _load(ctx.obj["config_path"])
    app = create_app(config=config)
    uvicorn.run(
        app,
        host=host or config.api.host,
        port=port or config.api.port,
        log_config=None,
    )


@cli.command()
@click.option("--memory", is_flag=True, help="Use the in-process backend instead of PostgreSQL")
@click.pass_context
def sweep(ctx: click.Context, memory: bool) -> None:
    """Run one retry sweep and print its summary."""
    config = _load(ctx.obj["config_path"])

    async def _run() -> dict:
        engine = await _open_engine(config, memory)
        try:
            summary = await engine.sweeper.sweep()
        finally:
            await engine.close()
        return summary.as_dict()

    click.echo(json.dumps(asyncio.run(_run()), indent=2))


@cli.command("expire-verifications")
@click.pass_context
def expire_verifications(ctx: click.Context) -> None:
    """Clear lapsed identity verifications in every organization."""
    from threadline.jobs import run_verification_expiry_job

    config = _load(ctx.obj["config_path"])

    async def _run() -> dict:
        engine = await connect_engine(config)
        try:
            return await run_verification_expiry_job(engine)
        finally:
            await engine.close()

    click.echo(json.dumps(asyncio.run(_run()), indent=2))


@cli.command()
@click.option(
    "--poll-interval",
    type=float,
    default=30.0,
    show_default=True,
    help="Seconds between scheduler ticks",
)
@click.pass_context
def scheduler(ctx: click.Context, poll_interval: float) -> None:
    """Run the retry sweep and verification expiry on their crons until stopped."""
    config = _load(ctx.obj["config_path"])
    asyncio.run(_run_scheduler(config, poll_interval))


async def _run_scheduler(config: ThreadlineConfig, poll_interval: float) -> None:
    from threadline.jobs import register_jobs

    engine = await connect_engine(config)
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    runner = register_jobs(Scheduler(), engine)
    for job in runner.jobs:
        click.echo(f"  scheduled: {job.name} ({job.cron}), next run {job.next_run_at}")
    task = asyncio.create_task(runner.run_forever(poll_interval_seconds=poll_interval))
    try:
        await shutdown_event.wait()
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await engine.close()


@cli.command()
@click.option("--chain", default="routing", show_default=True, help="Migration chain, or 'all'")
@click.pass_context
def migrate(ctx: click.Context, chain: str) -> None:
    """Upgrade the database schema to head."""
    from threadline.migrations import run_migrations

    config = _load(ctx.obj["config_path"])
    settings = ConnectionSettings.from_config(config.database)
    click.echo(f"Migrating {settings.label} (chain={chain})")
    asyncio.run(run_migrations(settings.url, chain=chain))
    click.echo("Migrations complete")


@cli.command()
@click.argument("message_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--organization",
    "organization_id",
    default=None,
    help="Organization id (defaults to [threadline].default_organization_id)",
)
@click.option("--memory", is_flag=True, help="Use the in-process backend instead of PostgreSQL")
@click.option("--dry-run", is_flag=True, help="Only pick a thread; do not attach or create")
@click.pass_context
def route(
    ctx: click.Context,
    message_file: Path,
    organization_id: str | None,
    memory: bool,
    dry_run: bool,
) -> None:
    """Route one normalized message read from a JSON file."""
    from threadline.models import NormalizedMessage

    config = _load(ctx.obj["config_path"])
    organization_id = organization_id or config.default_organization_id
    if not organization_id:
        click.echo("No organization given and no default_organization_id configured", err=True)
        sys.exit(2)
    message = NormalizedMessage.model_validate_json(message_file.read_text())

    async def _run() -> dict:
        engine = await _open_engine(config, memory)
        try:
            if dry_run:
                result = await engine.orchestrator.route_message(message, organization_id)
                return {
                    "matched": result is not None,
                    "thread_id": result.thread_id if result else None,
                    "method": str(result.method) if result else None,
                    "confidence": result.confidence if result else None,
                    "reason": result.reason if result else None,
                }
            ack = await engine.ingest.handle(message, organization_id)
            return ack.model_dump(mode="json", by_alias=True)
        finally:
            await engine.close()

    click.echo(json.dumps(asyncio.run(_run()), indent=2))
