"""Remootio websocket API v3 protocol package - crypto, frame schema and errors.

Public API:
- Crypto primitives (encrypt, decrypt, authenticate, verify, mac_base)
- Frame parsing and builders (parse_envelope, open_encrypted_frame, build_encrypted_frame)
- Protocol exceptions
"""

from remootio_controller.protocol.crypto import authenticate, decrypt, encrypt, mac_base, verify
from remootio_controller.protocol.exceptions import (
    ActionError,
    CryptoError,
    DeviceErrorFrame,
    MalformedFrameError,
    NotAuthenticatedError,
    RemootioError,
    RemootioProtocolError,
)
from remootio_controller.protocol.frames import (
    build_encrypted_frame,
    open_encrypted_frame,
    parse_envelope,
    parse_inner,
)

__all__ = [
    # Crypto
    "authenticate",
    "decrypt",
    "encrypt",
    "mac_base",
    "verify",
    # Frames
    "build_encrypted_frame",
    "open_encrypted_frame",
    "parse_envelope",
    "parse_inner",
    # Exceptions
    "ActionError",
    "CryptoError",
    "DeviceErrorFrame",
    "MalformedFrameError",
    "NotAuthenticatedError",
    "RemootioError",
    "RemootioProtocolError",
]
