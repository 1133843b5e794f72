"""
Command line entry point.

    reback [-c SETTINGS] [-v] backup
    reback [-c SETTINGS] [-v] restore [TITLE ...] [--artifact NAME]
    reback [-c SETTINGS] [-v] prune
    reback [-c SETTINGS] [-v] list [TITLE ...]
    reback [-c SETTINGS] [-v] check
    reback [-c SETTINGS] [-v] schedule

Exit status: 0 on success, 1 when any element failed, 2 on a fatal
configuration error.
"""

import logging
from typing import Optional

import click

from reback import __version__, configure_logging
from reback.config import Settings, load_settings, resolve_settings_path
from reback.models import ConfigError
from reback.backup.executor import create_placement, run_backup, run_restore, run_retention
from reback.backup.placement import PlacementError
from reback.backup.storage import StorageError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def _load(ctx: click.Context) -> Settings:
    """Load settings and apply their logging options; exit 2 when unusable."""
    verbose = ctx.obj['verbose']
    configure_logging('DEBUG' if verbose else 'INFO')

    try:
        settings = load_settings(ctx.obj['config'])
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        ctx.exit(EXIT_CONFIG)

    if not verbose:
        configure_logging(settings.log_level, settings.log_dir)
    elif settings.log_dir:
        configure_logging('DEBUG', settings.log_dir)

    return settings


def _finish(ctx: click.Context, result):
    if not result.ok:
        logger.error(f"Failed elements: {', '.join(result.failed_titles())}")
        ctx.exit(EXIT_FAILED)
    ctx.exit(EXIT_OK)


@click.group()
@click.version_option(__version__, prog_name='reback')
@click.option('--config', '-c', 'config', metavar='SETTINGS', help='Settings file (default: $REBACK_SETTINGS or ./settings.json)')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], verbose: bool):
    """
    Back up databases and folders to local disk and S3-compatible storage.
    """
    ctx.ensure_object(dict)
    ctx.obj['config'] = config
    ctx.obj['verbose'] = verbose


@cli.command()
@click.pass_context
def backup(ctx: click.Context):
    """Back up all enabled elements."""
    settings = _load(ctx)
    try:
        result = run_backup(settings)
    except StorageError as e:
        logger.error(f"Storage unavailable: {e}")
        ctx.exit(EXIT_FAILED)
    _finish(ctx, result)


@cli.command()
@click.argument('titles', nargs=-1)
@click.option('--artifact', metavar='NAME', help='Artifact name to restore (single title only)')
@click.pass_context
def restore(ctx: click.Context, titles, artifact: Optional[str]):
    """Restore elements from their latest (or chosen) backup."""
    if artifact and len(titles) != 1:
        raise click.UsageError('--artifact needs exactly one TITLE')

    settings = _load(ctx)
    try:
        result = run_restore(settings, titles=list(titles) or None, selector=artifact)
    except StorageError as e:
        logger.error(f"Storage unavailable: {e}")
        ctx.exit(EXIT_FAILED)
    _finish(ctx, result)


@cli.command()
@click.pass_context
def prune(ctx: click.Context):
    """Apply retention without taking a backup."""
    settings = _load(ctx)
    try:
        result = run_retention(settings)
    except StorageError as e:
        logger.error(f"Storage unavailable: {e}")
        ctx.exit(EXIT_FAILED)
    _finish(ctx, result)


@cli.command('list')
@click.argument('titles', nargs=-1)
@click.pass_context
def list_artifacts(ctx: click.Context, titles):
    """List stored artifacts per element."""
    settings = _load(ctx)
    status = EXIT_OK

    try:
        placement = create_placement(settings)
    except StorageError as e:
        logger.error(f"Storage unavailable: {e}")
        ctx.exit(EXIT_FAILED)

    for title in titles or settings.titles:
        element = settings.get_element(title)
        if element is None:
            logger.error(f"No configured element named {title!r}")
            status = EXIT_FAILED
            continue

        click.echo(f"{title} ({element.kind.value})")
        try:
            for artifact in placement.list_local(element):
                click.echo(f"  local   {artifact.name}")
            for artifact in placement.list_remote(element):
                click.echo(f"  remote  {artifact.remote_key}")
        except PlacementError as e:
            logger.error(f"Failed to list artifacts for {title}: {e}")
            status = EXIT_FAILED

    ctx.exit(status)


@cli.command()
@click.pass_context
def check(ctx: click.Context):
    """Validate settings and test the bucket connection."""
    settings = _load(ctx)
    status = EXIT_OK

    for element in settings.elements:
        state = 'enabled' if element.enabled else 'disabled'
        click.echo(
            f"{element.title}: {element.kind.value}, {state}, "
            f"local {element.local_retention_days}d, remote {element.remote_retention_days}d"
        )

    for rejected in settings.rejected:
        click.echo(f"{rejected.label}: INVALID ({rejected.reason})")
        status = EXIT_FAILED

    if settings.remote is None:
        click.echo("remote: not configured")
        ctx.exit(status)

    try:
        create_placement(settings).remote.test_connection()
        click.echo(f"remote: bucket {settings.remote.bucket} reachable")
    except StorageError as e:
        click.echo(f"remote: {e}")
        status = EXIT_FAILED

    ctx.exit(status)


@cli.command()
@click.pass_context
def schedule(ctx: click.Context):
    """Run backups on the configured cron schedule until interrupted."""
    from reback.scheduler import init_scheduler, start_scheduler

    settings = _load(ctx)
    try:
        init_scheduler(settings.source_path or resolve_settings_path(ctx.obj['config']), settings)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        ctx.exit(EXIT_CONFIG)

    start_scheduler()
    ctx.exit(EXIT_OK)


if __name__ == '__main__':
    cli()
