"""wagate CLI — command line interface."""

import click
from wagate import __version__
from .shared import console


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="wagate")
@click.pass_context
def cli(ctx):
    """wagate — WhatsApp session gateway"""
    if ctx.invoked_subcommand is None:
        _show_help()


def _show_help():
    """Show all available commands."""
    console.print(f"[bold]wagate v{__version__}[/bold] — WhatsApp session gateway\n")

    commands = [
        ("start", "Start the gateway (HTTP server + WhatsApp session)"),
        ("status", "Show connection status of a running gateway"),
        ("send", "Send a text message through a running gateway"),
    ]
    for name, desc in commands:
        console.print(f"  [bold]wagate {name:8s}[/bold] {desc}")
    console.print()
    console.print("[dim]Run 'wagate <command> --help' for details on a specific command.[/dim]")


# Import all command modules (registers commands onto cli group)
from . import cmd_start  # noqa: E402, F401
from . import cmd_status  # noqa: E402, F401
from . import cmd_send  # noqa: E402, F401


@cli.command(name="help", hidden=True)
def help_cmd():
    """Show all available commands."""
    _show_help()
