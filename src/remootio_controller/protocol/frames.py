"""Typed schema for Remootio websocket frames.

Outer envelopes travel in clear text: ``AUTH``, ``PING``/``PONG``,
``SERVER_HELLO``, ``ERROR`` and ``ENCRYPTED``. An ``ENCRYPTED`` envelope
carries an AES-256-CBC encrypted inner payload (``CHALLENGE``, an action
response, or an ``EVENT``) authenticated with HMAC-SHA256.

Parsing is strict: anything that does not match the schema raises
``MalformedFrameError`` instead of being silently skipped.
"""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from remootio_controller.protocol import crypto
from remootio_controller.protocol.exceptions import CryptoError, MalformedFrameError
from remootio_controller.structs import ActionKind

__all__ = [
    "ActionResponse",
    "ChallengePayload",
    "ControlFrame",
    "EncryptedFrame",
    "ErrorFrame",
    "EventPayload",
    "FrameType",
    "InnerPayload",
    "ResponsePayload",
    "UnknownPayload",
    "action_plaintext",
    "auth_frame",
    "build_encrypted_frame",
    "open_encrypted_frame",
    "parse_envelope",
    "parse_inner",
    "ping_frame",
]


class FrameType(StrEnum):
    AUTH = "AUTH"
    PING = "PING"
    PONG = "PONG"
    SERVER_HELLO = "SERVER_HELLO"
    ERROR = "ERROR"
    ENCRYPTED = "ENCRYPTED"
    CHALLENGE = "CHALLENGE"
    EVENT = "EVENT"


class _Frame(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class ControlFrame(_Frame):
    """Body-less envelope (``PONG``, ``SERVER_HELLO``, or a type we do not handle)."""

    type: str


class ErrorFrame(_Frame):
    type: Literal["ERROR"]
    error_message: str = Field(default="", alias="errorMessage")


class EncryptedData(_Frame):
    iv: str
    payload: str


class EncryptedFrame(_Frame):
    type: Literal["ENCRYPTED"]
    data: EncryptedData
    mac: str


Envelope = ControlFrame | ErrorFrame | EncryptedFrame


class Challenge(_Frame):
    session_key: str = Field(alias="sessionKey")
    initial_action_id: int = Field(alias="initialActionId")


class ChallengePayload(_Frame):
    type: Literal["CHALLENGE"]
    challenge: Challenge


class ActionResponse(_Frame):
    """Device answer to QUERY/OPEN/CLOSE/TRIGGER."""

    id: int | None = None
    success: bool = False
    relay_triggered: bool = Field(default=False, alias="relayTriggered")
    error_code: str | None = Field(default=None, alias="errorCode")
    state: str | None = None

    @property
    def accepted(self) -> bool:
        """A relay pulse counts as an accepted action even without confirmation."""
        return self.success or self.relay_triggered


class ResponsePayload(_Frame):
    type: ActionKind
    response: ActionResponse


class Event(_Frame):
    state: str | None = None


class EventPayload(_Frame):
    type: Literal["EVENT"]
    event: Event


class UnknownPayload(_Frame):
    type: str


InnerPayload = ChallengePayload | ResponsePayload | EventPayload | UnknownPayload


def _load_object(text: str | bytes) -> tuple[dict[str, object], str]:
    try:
        obj = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedFrameError("invalid_json", text) from e
    if not isinstance(obj, dict):
        raise MalformedFrameError("not_an_object", text)
    frame_type = obj.get("type")
    if not isinstance(frame_type, str):
        raise MalformedFrameError("missing_type", text)
    return obj, frame_type


def parse_envelope(text: str | bytes) -> Envelope:
    """Parse one clear-text websocket frame.

    Raises:
        MalformedFrameError: not JSON, no ``type``, or a known type with a bad body

    """
    obj, frame_type = _load_object(text)
    model: type[_Frame]
    if frame_type == FrameType.ENCRYPTED:
        model = EncryptedFrame
    elif frame_type == FrameType.ERROR:
        model = ErrorFrame
    else:
        model = ControlFrame
    try:
        return model.model_validate(obj)  # type: ignore[return-value]
    except ValidationError as e:
        raise MalformedFrameError(f"invalid_{frame_type.lower()}_frame", text) from e


def parse_inner(plaintext: bytes) -> InnerPayload:
    """Parse a decrypted inner payload.

    Raises:
        MalformedFrameError: the payload does not match its type's schema

    """
    obj, payload_type = _load_object(plaintext)
    model: type[_Frame]
    if payload_type == FrameType.CHALLENGE:
        model = ChallengePayload
    elif payload_type == FrameType.EVENT:
        model = EventPayload
    elif payload_type in ActionKind.__members__.values():
        model = ResponsePayload
    else:
        model = UnknownPayload
    try:
        return model.model_validate(obj)  # type: ignore[return-value]
    except ValidationError as e:
        raise MalformedFrameError(f"invalid_{payload_type.lower()}_payload", plaintext) from e


def open_encrypted_frame(frame: EncryptedFrame, key: bytes, auth_key: bytes) -> InnerPayload:
    """Verify, decrypt and parse an ``ENCRYPTED`` envelope.

    The tag is checked before anything is decrypted.

    Raises:
        CryptoError: tag mismatch, bad base64, or decryption failure
        MalformedFrameError: decrypted payload does not match the schema

    """
    iv_b64 = frame.data.iv
    payload_b64 = frame.data.payload
    received_mac = crypto.b64decode(frame.mac)
    if not crypto.verify(auth_key, crypto.mac_base(iv_b64, payload_b64), received_mac):
        raise CryptoError("mac_mismatch")
    plaintext = crypto.decrypt(crypto.b64decode(payload_b64), key, crypto.b64decode(iv_b64))
    return parse_inner(plaintext)


def build_encrypted_frame(plaintext: bytes, key: bytes, auth_key: bytes, iv: bytes | None = None) -> str:
    """Encrypt ``plaintext`` under ``key`` and wrap it in an authenticated envelope.

    A fresh random IV is used unless one is given.
    """
    iv = iv if iv is not None else crypto.generate_iv()
    iv_b64 = crypto.b64encode(iv)
    payload_b64 = crypto.b64encode(crypto.encrypt(plaintext, key, iv))
    mac = crypto.authenticate(auth_key, crypto.mac_base(iv_b64, payload_b64))
    return json.dumps(
        {
            "type": FrameType.ENCRYPTED.value,
            "data": {"iv": iv_b64, "payload": payload_b64},
            "mac": crypto.b64encode(mac),
        },
        separators=(",", ":"),
    )


def action_plaintext(kind: ActionKind, action_id: int) -> bytes:
    return json.dumps({"type": kind.value, "id": action_id}, separators=(",", ":")).encode()


def auth_frame() -> str:
    return json.dumps({"type": FrameType.AUTH.value})


def ping_frame() -> str:
    return json.dumps({"type": FrameType.PING.value})
