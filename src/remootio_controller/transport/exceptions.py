"""Exception types for websocket transport errors.

Any ``TransportError`` reaching the protocol engine collapses the connection
to DISCONNECTED and fails every pending action.
"""

from __future__ import annotations

from remootio_controller.protocol.exceptions import RemootioError


class TransportError(RemootioError):
    """Base exception for transport failures (refused, dropped, send failed).

    Attributes:
        reason: Specific failure reason

    """

    def __init__(self, reason: str) -> None:
        """Initialize transport error with reason."""
        self.reason: str = reason
        super().__init__(f"Transport error: {reason}")


class TransportConnectError(TransportError):
    """Opening the websocket failed.

    Raised when:
    - The device refused the connection
    - The connect timeout expired
    - The websocket upgrade was rejected

    Attributes:
        reason: Specific failure reason
        url: Endpoint that was dialled

    """

    def __init__(self, reason: str, url: str = "") -> None:
        """Initialize connect error with reason and endpoint."""
        super().__init__(reason)
        self.url: str = url
        self.args = (f"Connect to {url or '?'} failed: {reason}",)


class TransportClosedError(TransportError):
    """The websocket closed, or an operation was attempted while closed.

    Attributes:
        reason: Specific failure reason
        close_code: Websocket close code if the peer sent one

    """

    def __init__(self, reason: str, close_code: int | None = None) -> None:
        """Initialize closed error with reason and close code."""
        super().__init__(reason)
        self.close_code: int | None = close_code
        self.args = (f"Connection closed: {reason} (code: {close_code})",)


class TransportSendError(TransportError):
    """Writing a frame to an open websocket failed.

    Attributes:
        reason: Specific failure reason

    """
