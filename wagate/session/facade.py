"""Gateway facade — the only entry point external callers use."""

import logging
from dataclasses import dataclass
from typing import Optional

from .connection import ConnectionManager
from .errors import GatewayError, describe_error
from .jid import resolve_address
from .outbound import OutboundGateway

logger = logging.getLogger("wagate.facade")

SEND_OK_MESSAGE = "message sent successfully"


@dataclass
class SendResult:
    success: bool
    message: str

    def to_dict(self) -> dict:
        return {"success": self.success, "message": self.message}


class GatewayFacade:
    def __init__(
        self,
        manager: ConnectionManager,
        outbound: OutboundGateway,
        own_number: Optional[str] = None,
    ):
        self._manager = manager
        self._outbound = outbound
        self.own_number = own_number

    def status(self) -> dict:
        return {"connected": self._manager.is_ready()}

    def pairing_code(self) -> Optional[str]:
        """QR code to scan while the session waits for pairing, else None."""
        challenge = self._manager.pairing_challenge()
        return challenge.code if challenge else None

    async def send_message(self, address: Optional[str], text: str) -> SendResult:
        """Send a message; failures come back as data, never as exceptions."""
        jid = resolve_address(address, self.own_number)
        try:
            await self._outbound.send(jid, text)
        except GatewayError as e:
            logger.info(f"Send to {jid or '<empty>'} failed: {e}")
            return SendResult(success=False, message=describe_error(e))
        except Exception as e:
            logger.error(f"Unexpected send failure: {e}", exc_info=True)
            return SendResult(success=False, message=describe_error(e))
        return SendResult(success=True, message=SEND_OK_MESSAGE)

    async def logout(self) -> SendResult:
        try:
            await self._manager.logout()
        except GatewayError as e:
            return SendResult(success=False, message=describe_error(e))
        return SendResult(success=True, message="logged out")
