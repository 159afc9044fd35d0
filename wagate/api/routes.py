from datetime import datetime, timezone
import logging
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ..session.errors import describe_error
from ..session.facade import GatewayFacade

logger = logging.getLogger("wagate.api")

router = APIRouter(prefix="/whatsapp")


class SendMessageRequest(BaseModel):
    phone: str = ""
    message: str = ""


class SendMessageResponse(BaseModel):
    success: bool
    message: str


class StatusResponse(BaseModel):
    connected: bool
    timestamp: str
    pairing_code: Optional[str] = None


def _facade(request: Request) -> GatewayFacade:
    return request.app.state.facade


@router.get("/status", response_model=StatusResponse)
async def get_status(request: Request):
    """Connection status. Always answers with a boolean, never an error."""
    pairing_code = None
    try:
        facade = _facade(request)
        connected = bool(facade.status()["connected"])
        if not connected:
            pairing_code = facade.pairing_code()
    except Exception as e:
        logger.error(f"Status check failed: {e}", exc_info=True)
        connected = False
    return StatusResponse(
        connected=connected,
        pairing_code=pairing_code,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.post("/sendMessage", response_model=SendMessageResponse)
async def send_message(body: SendMessageRequest, request: Request):
    """Send a text message.

    Always returns 200; failures are reported with success=false and the
    error description in `message`.
    """
    try:
        result = await _facade(request).send_message(body.phone, body.message)
    except Exception as e:
        logger.error(f"sendMessage failed: {e}", exc_info=True)
        return SendMessageResponse(success=False, message=describe_error(e))
    return SendMessageResponse(success=result.success, message=result.message)


@router.post("/logout", response_model=SendMessageResponse)
async def logout(request: Request):
    """Log the session out. Automatic reconnect stays off until restart."""
    try:
        result = await _facade(request).logout()
    except Exception as e:
        logger.error(f"logout failed: {e}", exc_info=True)
        return SendMessageResponse(success=False, message=describe_error(e))
    return SendMessageResponse(success=result.success, message=result.message)
