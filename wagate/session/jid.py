"""WhatsApp address (JID) helpers."""

import re
from typing import Optional

PRIVATE_SUFFIX = "@s.whatsapp.net"
GROUP_SUFFIX = "@g.us"
BROADCAST_JID = "status@broadcast"

_PRIVATE_RE = re.compile(r"[^@\s]+@s\.whatsapp\.net")
_GROUP_RE = re.compile(r"[^@\s]+@g\.us")
_PHONE_RE = re.compile(r"\+?[0-9]+")


def is_private(jid: Optional[str]) -> bool:
    """True for one-to-one (direct message) addresses."""
    return bool(jid) and _PRIVATE_RE.fullmatch(jid) is not None


def is_group(jid: Optional[str]) -> bool:
    return bool(jid) and _GROUP_RE.fullmatch(jid) is not None


def is_broadcast(jid: Optional[str]) -> bool:
    return jid == BROADCAST_JID


def is_valid_recipient(jid: Optional[str]) -> bool:
    """True if jid has one of the two sendable shapes (private or group)."""
    return is_private(jid) or is_group(jid)


def phone_from_jid(jid: str) -> str:
    """Strip the private suffix: '5511...@s.whatsapp.net' -> '5511...'."""
    if jid.endswith(PRIVATE_SUFFIX):
        return jid[: -len(PRIVATE_SUFFIX)]
    return jid


def _normalize_phone(value: str) -> Optional[str]:
    """Return bare digits if value looks like a phone number, else None."""
    compact = re.sub(r"[\s\-()]", "", value)
    if not _PHONE_RE.fullmatch(compact):
        return None
    return compact.lstrip("+")


def resolve_address(address: Optional[str], own_number: Optional[str] = None) -> str:
    """Qualify a caller-supplied recipient.

    - fully qualified (contains '@') -> unchanged
    - blank -> own number as a private address (self-send)
    - bare phone number -> private address for that number
    - anything else -> unchanged (rejected later as an invalid address)
    """
    address = (address or "").strip()
    if "@" in address:
        return address

    if not address:
        if not own_number:
            return address
        digits = _normalize_phone(own_number)
        return f"{digits or own_number}{PRIVATE_SUFFIX}"

    digits = _normalize_phone(address)
    if digits is None:
        return address
    return f"{digits}{PRIVATE_SUFFIX}"
