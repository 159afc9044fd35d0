"""Inbound message routing.

Raw batches come from the transport in the network's message-record
shape:

    {"key": {"remoteJid": "...", "fromMe": False, "id": "..."},
     "pushName": "...",
     "message": {"conversation": "..."}                    # plain text
              | {"extendedTextMessage": {"text": "..."}}}  # extended text

Only direct messages from other people are dispatched. Order within a
batch is preserved.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .jid import is_broadcast, is_private, phone_from_jid

logger = logging.getLogger("wagate.inbound")

InboundHandler = Callable[["InboundMessage"], Awaitable[None]]


@dataclass
class InboundMessage:
    sender_address: str
    text: str
    is_from_self: bool = False
    is_broadcast: bool = False
    message_id: Optional[str] = None
    push_name: Optional[str] = None

    @property
    def phone_number(self) -> str:
        return phone_from_jid(self.sender_address)


def extract_text(raw: dict) -> Optional[str]:
    """Collapse the plain/extended text variants into one string."""
    content = raw.get("message") or {}
    if not isinstance(content, dict):
        return None
    text = content.get("conversation")
    if not text:
        extended = content.get("extendedTextMessage") or {}
        if isinstance(extended, dict):
            text = extended.get("text")
    return text or None


def normalize(raw: dict) -> Optional[InboundMessage]:
    """Build an InboundMessage from a raw record, or None if it should be skipped."""
    key = raw.get("key") or {}
    sender = key.get("remoteJid") or ""
    from_me = bool(key.get("fromMe"))

    if from_me:
        return None
    if is_broadcast(sender):
        return None
    if not is_private(sender):
        return None

    text = extract_text(raw)
    if not text:
        return None

    return InboundMessage(
        sender_address=sender,
        text=text,
        is_from_self=from_me,
        is_broadcast=False,
        message_id=key.get("id"),
        push_name=raw.get("pushName"),
    )


class InboundRouter:
    """Filters inbound batches and dispatches normalized messages to handlers."""

    def __init__(self):
        self._handlers: list[InboundHandler] = []

    def add_handler(self, handler: InboundHandler):
        if handler not in self._handlers:
            self._handlers.append(handler)

    def remove_handler(self, handler: InboundHandler):
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def route(self, batch: list) -> list[InboundMessage]:
        """Dispatch every eligible message in batch. Returns what was emitted."""
        emitted = []
        for raw in batch or []:
            if not isinstance(raw, dict):
                logger.debug(f"Skipping non-dict inbound record: {type(raw).__name__}")
                continue
            msg = normalize(raw)
            if msg is None:
                continue
            emitted.append(msg)
            for handler in list(self._handlers):
                try:
                    await handler(msg)
                except Exception as e:
                    logger.error(f"Inbound handler error for {msg.sender_address}: {e}", exc_info=True)
        return emitted


async def log_inbound(msg: InboundMessage):
    """Default handler: write received messages to the log."""
    logger.info(
        "\n=== MESSAGE RECEIVED ===\n"
        f"From: +{msg.phone_number}\n"
        f"Message: {msg.text}\n"
        "========================"
    )
