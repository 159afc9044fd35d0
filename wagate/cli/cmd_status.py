"""Status command."""

import click
import httpx

from . import cli
from .shared import DEFAULT_TIMEOUT, console, default_base_url

from rich.table import Table


@cli.command()
@click.option("--url", default=None, help="Gateway base URL (default: local gateway)")
def status(url):
    """Show connection status of a running gateway."""
    base = (url or default_base_url()).rstrip("/")

    table = Table(title="wagate Status", show_header=False, padding=(0, 2))
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Gateway", base)

    try:
        resp = httpx.get(f"{base}/whatsapp/status", timeout=DEFAULT_TIMEOUT)
        resp.raise_for_status()
        data = resp.json()
    except httpx.HTTPError as e:
        table.add_row("Error", f"[red]Unreachable: {e}[/red]")
        console.print(table)
        raise SystemExit(1)

    if data.get("connected"):
        table.add_row("WhatsApp", "[green]Connected[/green]")
    else:
        table.add_row("WhatsApp", "[yellow]Not connected[/yellow]")
    table.add_row("Checked at", str(data.get("timestamp", "")))
    console.print(table)

    pairing_code = data.get("pairing_code")
    if pairing_code:
        console.print("\n[bold]Scan this QR code with WhatsApp (Linked Devices):[/bold]")
        console.print(pairing_code, markup=False, highlight=False)
