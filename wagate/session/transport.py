"""Messaging transport contract.

The transport owns the network wire protocol (pairing, session keys,
framing). The gateway only drives it through this interface and treats
its events as the sole source of truth for network reality.

Every event is delivered as `await callback(generation, payload)`, where
`generation` is the value passed to the `open()` call that produced the
event. Consumers use it to discard events from superseded attempts.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("wagate.transport")

# Event names
STATE_CHANGE = "state-change"
CREDS_UPDATED = "creds-updated"
INBOUND_BATCH = "inbound-batch"

EVENTS = (STATE_CHANGE, CREDS_UPDATED, INBOUND_BATCH)

EventCallback = Callable[[int, Any], Awaitable[None]]


@dataclass
class DisconnectInfo:
    status_code: Optional[int] = None
    error: Optional[str] = None

    def __str__(self) -> str:
        if self.error and self.status_code is not None:
            return f"{self.error} (status {self.status_code})"
        if self.error:
            return self.error
        if self.status_code is not None:
            return f"status {self.status_code}"
        return "unknown cause"


@dataclass
class ConnectionUpdate:
    """Payload of a state-change event. Any field may be absent."""

    connection: Optional[str] = None    # 'connecting', 'open', 'close'
    qr: Optional[str] = None            # pairing challenge, if one was issued
    last_disconnect: Optional[DisconnectInfo] = None


@dataclass
class TransportHandle:
    """Live handle for one connect attempt. Opaque outside the manager."""

    generation: int
    session: Any = None
    closed: bool = False


class MessagingTransport(ABC):
    """Base class for transports.

    Subclasses implement open/send/close/logout and call `_emit()` to
    deliver events. Listener registration is shared.
    """

    def __init__(self):
        self._listeners: dict[str, list[EventCallback]] = {name: [] for name in EVENTS}

    def on(self, event: str, callback: EventCallback) -> None:
        """Register an async callback for one of EVENTS."""
        if event not in self._listeners:
            raise ValueError(f"Unknown transport event: {event}")
        self._listeners[event].append(callback)

    def off(self, event: str, callback: EventCallback) -> None:
        try:
            self._listeners[event].remove(callback)
        except (KeyError, ValueError):
            pass

    async def _emit(self, event: str, generation: int, payload: Any) -> None:
        """Deliver an event to every listener, in registration order."""
        for callback in list(self._listeners.get(event, [])):
            try:
                await callback(generation, payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Listener for {event} failed: {e}", exc_info=True)

    @abstractmethod
    async def open(self, credentials: Optional[dict], generation: int) -> TransportHandle:
        """Start a connect attempt. Emits lifecycle events tagged with generation.

        Raises on immediate setup failure. Later failures are reported as a
        state-change with connection='close'.
        """
        ...

    @abstractmethod
    async def send(self, handle: TransportHandle, address: str, text: str) -> None:
        """Send a text message. Raises on failure."""
        ...

    @abstractmethod
    async def close(self, handle: TransportHandle) -> None:
        """Close the handle without revoking the session."""
        ...

    @abstractmethod
    async def logout(self, handle: TransportHandle) -> None:
        """Revoke the session on the network and close the handle."""
        ...
