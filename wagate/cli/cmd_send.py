"""Send command."""

import click
import httpx

from . import cli
from .shared import DEFAULT_TIMEOUT, console, default_base_url


@cli.command()
@click.argument("phone")
@click.argument("message")
@click.option("--url", default=None, help="Gateway base URL (default: local gateway)")
def send(phone, message, url):
    """Send MESSAGE to PHONE (bare number or full JID)."""
    base = (url or default_base_url()).rstrip("/")
    try:
        resp = httpx.post(
            f"{base}/whatsapp/sendMessage",
            json={"phone": phone, "message": message},
            timeout=DEFAULT_TIMEOUT,
        )
        resp.raise_for_status()
        data = resp.json()
    except httpx.HTTPError as e:
        console.print(f"[red]Gateway unreachable: {e}[/red]")
        raise SystemExit(1)

    if data.get("success"):
        console.print(f"[green]✓[/green] {data.get('message', '')}")
    else:
        console.print(f"[red]✗[/red] {data.get('message', '')}")
        raise SystemExit(1)
