"""Exception hierarchy for Remootio protocol errors.

Every error raised by this package derives from ``RemootioError``. Protocol
level failures (bad tags, malformed frames, device ``ERROR`` envelopes,
device-rejected actions) derive from ``RemootioProtocolError``; transport
failures live in ``remootio_controller.transport.exceptions``.
"""

from __future__ import annotations


class RemootioError(Exception):
    """Base exception for all Remootio controller errors."""


class RemootioProtocolError(RemootioError):
    """Base exception for protocol-level errors.

    Enables catch-all handling of frame, crypto and device errors while
    keeping specific types for detailed handling.
    """


class CryptoError(RemootioProtocolError):
    """Encryption, decryption or authentication-tag failure.

    Raised when:
    - Key or IV has the wrong length for AES-256-CBC
    - Ciphertext is not a whole number of blocks or padding is invalid
    - A frame's HMAC does not match the canonical MAC base

    Attributes:
        reason: Specific failure reason (e.g., "bad_padding", "mac_mismatch")

    """

    def __init__(self, reason: str) -> None:
        """Initialize crypto error with reason."""
        self.reason: str = reason
        super().__init__(f"Crypto failure: {reason}")


class MalformedFrameError(RemootioProtocolError):
    """Frame does not match the expected schema.

    Raised when an envelope or decrypted inner payload is not valid JSON,
    lacks a required field, or carries a field of the wrong type.

    Attributes:
        reason: Specific failure reason
        data_preview: First 64 characters of the offending text

    """

    def __init__(self, reason: str, data: str | bytes = "") -> None:
        """Initialize malformed frame error with reason and a short preview."""
        self.reason: str = reason
        preview = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
        # Only keep a short preview so decrypted payloads never land in logs whole
        self.data_preview: str = preview[:64]
        super().__init__(f"Malformed frame: {reason}")


class DeviceErrorFrame(RemootioProtocolError):
    """The device sent an ``ERROR`` envelope.

    Non-fatal: surfaced as a diagnostic, the connection stays open.

    Attributes:
        reason: The device's ``errorMessage``

    """

    def __init__(self, reason: str) -> None:
        """Initialize device error with the device's message."""
        self.reason: str = reason
        super().__init__(f"Device error: {reason}")


class ActionError(RemootioProtocolError):
    """The device rejected a specific action.

    Attributes:
        reason: Device error code, or a generic failure reason
        action_id: Id of the rejected action
        kind: Action type (``OPEN``, ``CLOSE`` ...)

    """

    def __init__(self, reason: str, action_id: int | None = None, kind: str = "") -> None:
        """Initialize action error with reason, id and kind."""
        self.reason: str = reason
        self.action_id: int | None = action_id
        self.kind: str = kind
        label = f"{kind or '?'} #{action_id}" if action_id is not None else kind or "?"
        super().__init__(f"Action {label} failed: {reason}")


class NotAuthenticatedError(RemootioProtocolError):
    """An action was requested before a session key was negotiated.

    Attributes:
        reason: Specific failure reason
        state: Connection state at the time of the request

    """

    def __init__(self, reason: str = "Not authenticated", state: str = "unknown") -> None:
        """Initialize with reason and the engine's connection state."""
        self.reason: str = reason
        self.state: str = state
        super().__init__(f"{reason} (state: {state})")
