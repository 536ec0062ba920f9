"""CLI entrypoint for satellite plugin processes."""

import asyncio
import logging
import sys

import rich_click as click

from satellite import __version__
from satellite.config import Settings
from satellite.plugins import PLUGINS, get_plugin
from satellite.runtime.runner import open_stdio_stream, run_plugin

click.rich_click.USE_MARKDOWN = True


@click.group()
@click.version_option(version=__version__, prog_name="satellite")
def satellite() -> None:
    """Satellite plugin runtime.

    Plugins read one job as a JSON line on stdin and write progress and
    completion records as JSON lines on stdout.
    """


@satellite.command("plugin")
@click.argument("name")
def plugin(name: str) -> None:
    """Run plugin NAME against the job arriving on stdin."""

    settings = _load_settings()
    try:
        selected = get_plugin(name)
    except KeyError as error:
        raise click.ClickException(str(error.args[0])) from error

    update = asyncio.run(_run(selected, settings))
    sys.stdout.flush()
    if update is None:
        raise SystemExit(1)


@satellite.command("plugins")
def list_plugins() -> None:
    """List available plugin names."""

    for name in sorted(PLUGINS):
        click.echo(name)


async def _run(selected, settings: Settings):
    stream = await open_stdio_stream()
    return await run_plugin(selected, settings, stream)


def _load_settings() -> Settings:
    try:
        settings = Settings.from_env()
        settings.validate()
    except ValueError as error:
        raise click.ClickException(f"Invalid configuration: {error}") from error
    # stdout carries the protocol; diagnostics go to stderr.
    logging.basicConfig(
        level=settings.log_level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return settings


if __name__ == "__main__":  # pragma: no cover
    satellite()
