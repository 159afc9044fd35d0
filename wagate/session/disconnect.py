"""Disconnect classification.

The split is binary on purpose: an explicit logout revokes the session,
anything else is assumed recoverable by reconnecting with the same
credentials.
"""

from enum import Enum, IntEnum
from typing import Optional, Union

from .transport import DisconnectInfo


class DisconnectReason(IntEnum):
    """Status codes the network reports when a connection ends."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    TIMED_OUT = 408
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


class DisconnectClass(str, Enum):
    FATAL = "fatal"
    RETRYABLE = "retryable"


Cause = Union[DisconnectInfo, int, None]


def _status_code(cause: Cause) -> Optional[int]:
    if isinstance(cause, DisconnectInfo):
        return cause.status_code
    return cause


def classify_disconnect(cause: Cause) -> DisconnectClass:
    """Map a disconnect cause to FATAL or RETRYABLE.

    Only LOGGED_OUT is fatal. Missing or unknown causes are retryable.
    """
    if _status_code(cause) == DisconnectReason.LOGGED_OUT:
        return DisconnectClass.FATAL
    return DisconnectClass.RETRYABLE


def should_reconnect(cause: Cause) -> bool:
    return classify_disconnect(cause) is DisconnectClass.RETRYABLE
