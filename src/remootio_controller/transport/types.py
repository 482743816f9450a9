"""Core types for the transport layer and action correlation.

``Transport`` is the seam between the protocol engine and the network;
``PendingAction`` tracks one in-flight action until its response arrives.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Protocol

from remootio_controller.structs import ActionKind


class Transport(Protocol):
    """One persistent, message-oriented connection to a device."""

    url: str

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> None:
        """Open the connection; raise ``TransportConnectError`` on failure."""
        ...

    async def send_text(self, text: str) -> None:
        """Send one text frame; raise ``TransportError`` on failure."""
        ...

    def frames(self) -> AsyncIterator[str]:
        """Yield inbound text frames until the connection ends.

        Ends by raising ``TransportClosedError``.
        """
        ...

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        ...


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    """Result of one action.

    Attributes:
        success: Whether the device accepted the action
        message: Device error code or failure reason (empty on success)

    """

    success: bool
    message: str = ""


@dataclass
class PendingAction:
    """Tracks an action awaiting its correlated response.

    Attributes:
        action_id: Wire id the device will echo back
        kind: Action type that was sent
        issued_at: Timestamp when the action was sent (time.time())
        future: Completion future, resolved exactly once

    """

    action_id: int
    kind: ActionKind
    issued_at: float
    future: asyncio.Future[ActionOutcome] = field(repr=False)

    @property
    def done(self) -> bool:
        return self.future.done()

    def resolve(self, outcome: ActionOutcome) -> bool:
        """Complete the action; later calls are ignored.

        Returns:
            True if this call resolved the action

        """
        if self.future.done():
            return False
        self.future.set_result(outcome)
        return True
