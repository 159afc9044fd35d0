"""Gateway error taxonomy.

Connection-level errors (ConnectError, RetryableDisconnect, FatalDisconnect)
never reach callers. The reconnect loop handles them and they only show
up as `connected: false`. Send-path errors (SendError subclasses) are
raised to the caller of send and turned into data by the facade.
"""

import asyncio
from typing import Optional


class GatewayError(Exception):
    """Base class for all gateway errors."""
    pass


# ── Connection level ──────────────────────────────────────

class ConnectError(GatewayError):
    """Transport failed while opening a session."""
    pass

class RetryableDisconnect(GatewayError):
    """Session closed for a recoverable reason."""
    pass

class FatalDisconnect(GatewayError):
    """Session was explicitly logged out by the remote party."""
    pass

class PersistenceError(GatewayError):
    """Credential load/save failure."""
    pass


# ── Send path ─────────────────────────────────────────────

class SendError(GatewayError):
    """Base class for errors returned to send callers."""
    pass

class NotConnected(SendError):
    def __init__(self, message: str = "There is no connection to WhatsApp"):
        super().__init__(message)

class InvalidAddress(SendError):
    def __init__(self, address: str):
        self.address = address
        super().__init__("Invalid JID format")

class InvalidMessage(SendError):
    def __init__(self, message: str = "Message text is empty"):
        super().__init__(message)

class TransportSendFailed(SendError):
    def __init__(self, cause: Optional[BaseException] = None):
        self.cause = cause
        detail = str(cause) if cause is not None else ""
        super().__init__(detail or "Failed to send message to WhatsApp")


def describe_error(e: BaseException) -> str:
    """Turn any exception into the message string returned to HTTP callers.

    Gateway errors carry their own description. Anything else gets a
    short fallback that includes the type name for log correlation.
    """
    if isinstance(e, GatewayError):
        msg = str(e)
        if msg:
            return msg
    if isinstance(e, asyncio.TimeoutError):
        return "Request timed out. Please try again."

    type_name = type(e).__name__
    detail = str(e)
    if detail:
        return f"{type_name}: {detail}"
    return f"Something went wrong ({type_name}). Check logs for details."
