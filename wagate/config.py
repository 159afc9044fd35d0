"""wagate configuration management."""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings
from typing import Optional


class GatewaySettings(BaseSettings):
    """Settings loaded from environment variables or .env file."""

    # Identity: default send target for blank recipients
    my_number: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("WAGATE_MY_NUMBER", "MY_NUMBER"),
        description="Own phone number (digits only), used as default send target",
    )

    # Session persistence
    auth_dir: str = Field(default="auth_info", description="Directory holding session credentials")

    # Server
    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=3000, description="HTTP port")
    debug: bool = Field(default=False, description="Debug mode")
    url: Optional[str] = Field(default=None, description="Base URL the CLI uses to reach a running gateway")

    # Reconnect policy (constant delays)
    reconnect_delay: float = Field(default=3.0, description="Delay after a retryable close (seconds)")
    connect_retry_delay: float = Field(default=5.0, description="Delay after a failed connect attempt (seconds)")

    # wacli transport
    wacli_path: str = Field(default="wacli", description="wacli binary")
    wacli_store_dir: str = Field(default="~/.wacli", description="wacli store directory")
    poll_interval: float = Field(default=2.0, description="Inbound poll interval (seconds)")

    # Logging
    log_file: Optional[str] = Field(default="~/wagate.log", description="Log file path (empty disables)")

    model_config = {
        "env_prefix": "WAGATE_",
        "env_file": ".env",
        "extra": "ignore",
        "populate_by_name": True,
    }


def load_settings() -> GatewaySettings:
    """Load settings from environment."""
    settings = GatewaySettings()

    import logging
    logger = logging.getLogger("wagate.config")
    number = settings.my_number
    if not number:
        logger.warning(
            "WAGATE_MY_NUMBER is not set — messages sent without a recipient "
            "will be rejected as invalid addresses."
        )
    elif not number.lstrip("+").isdigit():
        logger.warning(f"WAGATE_MY_NUMBER does not look like a phone number: {number!r}")

    return settings
