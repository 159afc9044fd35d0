"""Start command."""

import asyncio
import click

from . import cli
from .shared import console


@cli.command()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--port", type=int, default=None, help="Override HTTP port")
def start(debug, port):
    """Start the gateway."""
    from wagate.config import load_settings
    from wagate.main import run

    settings = load_settings()
    if debug:
        settings.debug = True
    if port:
        settings.port = port

    console.print("[bold blue]Starting wagate...[/bold blue]")
    asyncio.run(run(settings))
