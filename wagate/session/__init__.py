"""Session core — lifecycle, resilience and send gating for one WhatsApp session.

- CredentialStore: atomic credential persistence
- classify_disconnect: fatal vs retryable close causes
- ConnectionManager: generation-tagged state machine + reconnect loop
- InboundRouter: inbound filtering and dispatch
- OutboundGateway: readiness-gated sends
- GatewayFacade: status / send_message for external callers
"""

from .connection import ConnectionManager, PairingChallenge, SessionState
from .credentials import CredentialStore
from .disconnect import DisconnectClass, DisconnectReason, classify_disconnect, should_reconnect
from .errors import (
    ConnectError,
    FatalDisconnect,
    GatewayError,
    InvalidAddress,
    InvalidMessage,
    NotConnected,
    PersistenceError,
    RetryableDisconnect,
    SendError,
    TransportSendFailed,
    describe_error,
)
from .facade import GatewayFacade, SendResult
from .inbound import InboundMessage, InboundRouter, log_inbound
from .outbound import OutboundGateway, OutboundRequest
from .transport import ConnectionUpdate, DisconnectInfo, MessagingTransport, TransportHandle

__all__ = [
    "ConnectionManager",
    "PairingChallenge",
    "SessionState",
    "CredentialStore",
    "DisconnectClass",
    "DisconnectReason",
    "classify_disconnect",
    "should_reconnect",
    "ConnectError",
    "FatalDisconnect",
    "GatewayError",
    "InvalidAddress",
    "InvalidMessage",
    "NotConnected",
    "PersistenceError",
    "RetryableDisconnect",
    "SendError",
    "TransportSendFailed",
    "describe_error",
    "GatewayFacade",
    "SendResult",
    "InboundMessage",
    "InboundRouter",
    "log_inbound",
    "OutboundGateway",
    "OutboundRequest",
    "ConnectionUpdate",
    "DisconnectInfo",
    "MessagingTransport",
    "TransportHandle",
]
