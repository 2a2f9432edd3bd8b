"""
dualstore CLI: dualstore migrate | rollback | status | doctor | sync-search
"""
import asyncio
import json
import sys

import click

from dualstore.config.settings import DatabaseType, Settings, load_settings
from dualstore.core.exceptions import StoreError
from dualstore.core.structured_logger import configure_logging


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _require_postgres(settings: Settings) -> None:
    if settings.database_type != DatabaseType.POSTGRESQL:
        click.echo("Migrations only apply to the postgresql backend.", err=True)
        raise SystemExit(1)


def _runner(settings: Settings):
    from dualstore.migrations.runner import SchemaMigrationRunner
    return SchemaMigrationRunner(dsn=settings.postgres.build_dsn())


@click.group()
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="YAML settings file (environment variables still override)")
@click.version_option(package_name="dualstore")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """dualstore: database abstraction layer management."""
    settings = load_settings(config_path)
    configure_logging(settings.logging.level, settings.logging.format)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.pass_context
def migrate(ctx: click.Context) -> None:
    """Apply pending PostgreSQL migrations."""
    settings = _settings(ctx)
    _require_postgres(settings)

    async def _run():
        runner = _runner(settings)
        try:
            return await runner.run_migrations()
        finally:
            await runner.close()

    try:
        result = asyncio.run(_run())
    except StoreError as e:
        click.echo(f"Migration failed: {e.message}", err=True)
        sys.exit(1)
    if result.applied:
        for name in result.applied:
            click.echo(f"  applied {name}")
    else:
        click.echo("Schema is up to date.")


@cli.command()
@click.pass_context
def rollback(ctx: click.Context) -> None:
    """Roll back the most recently applied migration."""
    settings = _settings(ctx)
    _require_postgres(settings)

    async def _run():
        runner = _runner(settings)
        try:
            return await runner.rollback_last_migration()
        finally:
            await runner.close()

    try:
        filename = asyncio.run(_run())
    except StoreError as e:
        click.echo(f"Rollback failed: {e.message}", err=True)
        sys.exit(1)
    click.echo(f"Rolled back {filename}" if filename else "Nothing to roll back.")


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show applied and pending migrations."""
    settings = _settings(ctx)
    _require_postgres(settings)

    async def _run():
        runner = _runner(settings)
        try:
            return await runner.get_migration_status()
        finally:
            await runner.close()

    try:
        state = asyncio.run(_run())
    except StoreError as e:
        click.echo(f"Status unavailable: {e.message}", err=True)
        sys.exit(1)
    for name in state["applied"]:
        click.echo(f"  [applied] {name}")
    for name in state["pending"]:
        click.echo(f"  [pending] {name}")
    click.echo(f"{state['applied_count']}/{state['total']} applied")


def _echo_metrics(metrics) -> None:
    body, _ = metrics.get_metrics()
    click.echo(body.decode())


@cli.command()
@click.option("--metrics", "show_metrics", is_flag=True, help="Print Prometheus metrics after the check")
@click.pass_context
def doctor(ctx: click.Context, show_metrics: bool) -> None:
    """Health check the store, the search engine and this process."""
    from dualstore.manager import DatabaseManager
    from dualstore.observability.health import run_health_check
    from dualstore.observability.metrics import MetricsCollector

    metrics = MetricsCollector()

    async def _run() -> bool:
        manager = DatabaseManager(_settings(ctx), metrics=metrics)
        try:
            await manager.initialize()
        except StoreError as e:
            click.echo(f"  [DOWN] database: {e.message}")
            return False
        try:
            return await run_health_check(manager)
        finally:
            await manager.disconnect()

    healthy = asyncio.run(_run())
    if show_metrics:
        _echo_metrics(metrics)
    if not healthy:
        sys.exit(1)


@cli.command("sync-search")
@click.option("--batch-size", default=100, show_default=True, type=click.IntRange(min=1))
@click.option("--metrics", "show_metrics", is_flag=True, help="Print Prometheus metrics after the sync")
@click.pass_context
def sync_search(ctx: click.Context, batch_size: int, show_metrics: bool) -> None:
    """Index every document not yet mirrored into the search engine."""
    from dualstore.manager import DatabaseManager
    from dualstore.observability.metrics import MetricsCollector

    metrics = MetricsCollector()

    async def _run():
        manager = DatabaseManager(_settings(ctx), metrics=metrics)
        await manager.initialize()
        try:
            return await manager.sync_search_index(batch_size=batch_size)
        finally:
            await manager.disconnect()

    try:
        results = asyncio.run(_run())
    except StoreError as e:
        click.echo(f"Search sync failed: {e.message}", err=True)
        sys.exit(1)
    click.echo(json.dumps(results, indent=2, default=str))
    if show_metrics:
        _echo_metrics(metrics)


if __name__ == "__main__":
    cli()
