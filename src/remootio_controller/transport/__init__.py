"""Transport layer - websocket adapter, transport errors and pending-action types."""

from remootio_controller.transport.exceptions import (
    TransportClosedError,
    TransportConnectError,
    TransportError,
    TransportSendError,
)
from remootio_controller.transport.types import ActionOutcome, PendingAction, Transport
from remootio_controller.transport.websocket import WebSocketTransport

__all__ = [
    "ActionOutcome",
    "PendingAction",
    "Transport",
    "TransportClosedError",
    "TransportConnectError",
    "TransportError",
    "TransportSendError",
    "WebSocketTransport",
]
