"""CLI commands for Plume."""

import asyncio
import json
import os
import sys
from pathlib import Path

import click

from plume.lib.exceptions import MediaError


@click.group()
@click.version_option(package_name="plume")
@click.option(
    "-f",
    "--config-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Read settings from this YAML file instead of ./app.yaml",
)
def cli(config_file):
    """Plume - media ingestion and publication pipeline."""
    if config_file is not None:
        from plume.config import clear_settings_cache

        os.environ["PLUME_CONFIG"] = str(config_file.resolve())
        clear_settings_cache()


def _services():
    from plume.config import get_settings
    from plume.services import MediaServices

    return MediaServices.from_settings(get_settings())


def _run(coro):
    """Run a pipeline coroutine, reporting media errors as JSON on stderr."""
    try:
        return asyncio.run(coro)
    except MediaError as exc:
        click.echo(json.dumps(exc.to_dict(), indent=2), err=True)
        sys.exit(1)


def build_server_config(host, port, *, workers=1, log_level="info", reload=False, graceful_timeout=30.0):
    """Hypercorn configuration serving ``plume.asgi:app``."""
    from hypercorn.config import Config

    config = Config()
    config.application_path = "plume.asgi:app"
    config.bind = [f"{host}:{port}"]
    config.workers = 1 if reload else workers
    config.loglevel = log_level.upper()
    config.include_server_header = False
    config.use_reloader = reload
    # In-flight batches roll back on shutdown and need time to do it
    config.graceful_timeout = graceful_timeout
    return config


async def _serve_until_signalled(config) -> None:
    import signal

    from hypercorn.asyncio import serve as hypercorn_serve

    from plume.asgi import app

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)
    await hypercorn_serve(app, config, shutdown_trigger=stop.wait)


@cli.command()
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8080, type=int, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
@click.option("--workers", default=1, type=int, help="Number of worker processes")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["debug", "info", "warning", "error"]),
    help="Logging level (defaults to log_level from settings)",
)
@click.option(
    "--graceful-timeout",
    default=30.0,
    type=float,
    help="Seconds to let in-flight batches finish or roll back on shutdown",
)
def serve(host, port, reload, workers, log_level, graceful_timeout):
    """Run the Plume HTTP API."""
    if log_level is None:
        from plume.config import get_settings

        log_level = get_settings().log_level

    config = build_server_config(
        host,
        port,
        workers=workers,
        log_level=log_level,
        reload=reload,
        graceful_timeout=graceful_timeout,
    )
    click.echo(f"Serving plume.asgi:app on http://{host}:{port}")

    if reload:
        from hypercorn.run import run

        run(config)
        return

    asyncio.run(_serve_until_signalled(config))


@cli.command()
@click.argument("paths", nargs=-1, required=True)
def validate(paths):
    """Check that every PATH exists and is a non-empty file."""
    services = _services()
    _run(services.validator.validate_exists_batch(paths))
    click.echo(f"{len(set(paths))} file(s) OK")


@cli.command()
@click.argument("scene")
@click.argument("paths", nargs=-1, required=True)
@click.option("--delete-temp", is_flag=True, help="Remove the temp files after promotion")
def promote(scene, paths, delete_temp):
    """Promote temp PATHS into SCENE storage (all or nothing)."""
    services = _services()

    async def _promote():
        assets = await services.promotion.promote_batch([(path, scene) for path in paths])
        if delete_temp:
            await _delete_temp(services, paths)
        return assets

    for asset in _run(_promote()):
        line = asset.web_path
        if asset.thumbnail:
            line += f" (thumbnail {asset.thumbnail})"
        click.echo(line)


async def _delete_temp(services, paths) -> None:
    """Remove temp files; the assets are published, so problems only warn."""
    try:
        report = await services.promotion.delete_assets(paths)
    except MediaError as exc:
        click.echo(f"Warning: temp files kept: {exc.message}", err=True)
        return
    for action, error in report.failed:
        click.echo(f"Warning: could not delete {action.target}: {error}", err=True)


@cli.command()
@click.argument("path")
@click.option("--scene", default=None, help="Write into this scene's thumbnail directory")
@click.option("--width", type=int, default=None, help="Thumbnail width")
@click.option("--height", type=int, default=None, help="Thumbnail height")
def thumbnail(path, scene, width, height):
    """Generate a thumbnail for PATH and print its web path."""
    from dataclasses import replace

    services = _services()
    spec = services.thumbnails.spec_for(scene)
    if width or height:
        spec = replace(spec, width=width or spec.width, height=height or spec.height)

    result = _run(services.thumbnails.generate(path, spec, scene, strict=True))
    click.echo(result)
