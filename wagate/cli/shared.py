"""Shared utilities for wagate CLI commands."""

from rich.console import Console

from ..config import GatewaySettings

console = Console()

DEFAULT_TIMEOUT = 35.0

_WILDCARD_HOSTS = ("", "0.0.0.0", "::")


def default_base_url() -> str:
    """Base URL of the local gateway, from WAGATE_URL or host/port settings."""
    settings = GatewaySettings()
    if settings.url:
        return settings.url.rstrip("/")
    host = "127.0.0.1" if settings.host in _WILDCARD_HOSTS else settings.host
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{settings.port}"
