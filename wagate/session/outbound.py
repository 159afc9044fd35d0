"""Outbound gateway — validates and forwards send requests.

Delivery is not retried here; the caller decides whether to resend.
"""

import asyncio
import logging
from dataclasses import dataclass

from .connection import ConnectionManager
from .errors import InvalidAddress, InvalidMessage, NotConnected, TransportSendFailed
from .jid import is_valid_recipient
from .transport import MessagingTransport

logger = logging.getLogger("wagate.outbound")


@dataclass
class OutboundRequest:
    address: str
    text: str


class OutboundGateway:
    def __init__(self, manager: ConnectionManager, transport: MessagingTransport):
        self._manager = manager
        self._transport = transport

    async def send(self, address: str, text: str) -> None:
        """Send text to address.

        Raises:
            NotConnected: session is not READY (checked first).
            InvalidAddress: address is neither a private nor a group JID.
            InvalidMessage: text is empty.
            TransportSendFailed: the transport rejected the send.
        """
        request = OutboundRequest(address=address, text=text)

        handle = await self._manager.live_handle()
        if handle is None:
            raise NotConnected()

        if not is_valid_recipient(request.address):
            raise InvalidAddress(request.address)
        if not request.text or not request.text.strip():
            raise InvalidMessage()

        try:
            await self._transport.send(handle, request.address, request.text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error sending message to WhatsApp: {e}")
            raise TransportSendFailed(e) from e

        logger.info(f"Sent message to {request.address} (attempt {handle.generation})")
