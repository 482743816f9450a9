"""Core data structures for the Remootio controller."""

from __future__ import annotations

import string
import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from remootio_controller.const import DEVICE_KEY_HEX_LENGTH, REMOOTIO_PORT

_HEX_DIGITS = frozenset(string.hexdigits)


class ConnectionState(StrEnum):
    """Connection lifecycle of one protocol engine.

    Progresses forward within one connection attempt; any transport error or
    explicit disconnect collapses it back to DISCONNECTED.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    TRANSPORT_CONNECTED = "transport_connected"
    AUTHENTICATING = "authenticating"
    READY = "ready"

    @property
    def label(self) -> str:
        return _CONNECTION_LABELS[self]


_CONNECTION_LABELS: dict[ConnectionState, str] = {
    ConnectionState.DISCONNECTED: "Disconnected",
    ConnectionState.CONNECTING: "Connecting…",
    ConnectionState.TRANSPORT_CONNECTED: "Connected",
    ConnectionState.AUTHENTICATING: "Authenticating…",
    ConnectionState.READY: "Ready",
}


class GateStatus(StrEnum):
    """Last known gate position, as reported by the device."""

    OPEN = "open"
    CLOSED = "closed"
    NO_SENSOR = "no sensor"
    UNKNOWN = "unknown"

    @classmethod
    def from_wire(cls, value: str | None) -> GateStatus:
        """Map a device ``state`` string to a status; anything unrecognized is UNKNOWN."""
        if value is None:
            return cls.UNKNOWN
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class ActionKind(StrEnum):
    """Authenticated actions the device accepts."""

    QUERY = "QUERY"
    OPEN = "OPEN"
    CLOSE = "CLOSE"
    TRIGGER = "TRIGGER"

    @property
    def success_message(self) -> str:
        return _SUCCESS_MESSAGES[self]


_SUCCESS_MESSAGES: dict[ActionKind, str] = {
    ActionKind.QUERY: "Status updated",
    ActionKind.OPEN: "Opening…",
    ActionKind.CLOSE: "Closing…",
    ActionKind.TRIGGER: "Triggered",
}


class DeviceColor(StrEnum):
    """Display accent for a device."""

    BLUE = "blue"
    ORANGE = "orange"
    GREEN = "green"
    RED = "red"
    PURPLE = "purple"
    TEAL = "teal"
    INDIGO = "indigo"
    PINK = "pink"
    YELLOW = "yellow"
    GRAY = "gray"
    CYAN = "cyan"
    MINT = "mint"


class DeviceType(StrEnum):
    """Category of the actuated device (drives display name and default accent)."""

    GARAGE = "garage"
    GATE = "gate"
    BARRIER = "barrier"
    SHUTTER = "shutter"
    DOOR = "door"
    OTHER = "other"

    @property
    def display_name(self) -> str:
        return _TYPE_DISPLAY_NAMES[self]

    @property
    def default_color(self) -> DeviceColor:
        return _TYPE_DEFAULT_COLORS[self]


_TYPE_DISPLAY_NAMES: dict[DeviceType, str] = {
    DeviceType.GARAGE: "Garage Door",
    DeviceType.GATE: "Gate",
    DeviceType.BARRIER: "Barrier",
    DeviceType.SHUTTER: "Shutter",
    DeviceType.DOOR: "Door",
    DeviceType.OTHER: "Other",
}

_TYPE_DEFAULT_COLORS: dict[DeviceType, DeviceColor] = {
    DeviceType.GARAGE: DeviceColor.BLUE,
    DeviceType.GATE: DeviceColor.ORANGE,
    DeviceType.BARRIER: DeviceColor.PURPLE,
    DeviceType.SHUTTER: DeviceColor.TEAL,
    DeviceType.DOOR: DeviceColor.INDIGO,
    DeviceType.OTHER: DeviceColor.GRAY,
}


def is_device_key(value: str) -> bool:
    """Return True when ``value`` is a 64 character hexadecimal key (32 bytes)."""
    return len(value) == DEVICE_KEY_HEX_LENGTH and all(c in _HEX_DIGITS for c in value)


@dataclass(frozen=True, slots=True)
class DeviceIdentity:
    """Immutable connection identity of one configured device.

    Reconfiguration produces a new value; engines never mutate it.
    """

    device_id: uuid.UUID
    name: str
    host: str
    secret_key: bytes = field(repr=False)
    auth_key: bytes = field(repr=False)
    port: int = REMOOTIO_PORT

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"


class DeviceRecord(BaseModel):
    """A device entry as supplied by the configuration store.

    Keys are kept as hex strings exactly as entered; ``to_identity`` decodes
    them once the record is valid.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    name: str = ""
    device_type: DeviceType = DeviceType.GARAGE
    host: str = ""
    secret_key: str = Field(default="", repr=False)
    auth_key: str = Field(default="", repr=False)
    accent_color: DeviceColor = DeviceColor.BLUE
    sort_order: int = 0

    @property
    def is_valid(self) -> bool:
        """Name and host are set and both keys are 64 hex characters."""
        return (
            bool(self.name)
            and bool(self.host)
            and is_device_key(self.secret_key)
            and is_device_key(self.auth_key)
        )

    def to_identity(self, port: int = REMOOTIO_PORT) -> DeviceIdentity:
        """Build the immutable identity used by a protocol engine.

        Raises:
            ValueError: the record is not valid

        """
        if not self.is_valid:
            msg = f"Device record {self.id} is not fully configured"
            raise ValueError(msg)
        return DeviceIdentity(
            device_id=self.id,
            name=self.name,
            host=self.host,
            secret_key=bytes.fromhex(self.secret_key),
            auth_key=bytes.fromhex(self.auth_key),
            port=port,
        )

    def icon_state(self, status: GateStatus) -> GateStatus:
        """Appearance to render for ``status``; unknown and no-sensor look closed."""
        return GateStatus.OPEN if status is GateStatus.OPEN else GateStatus.CLOSED

    @classmethod
    def new_device(cls, sort_order: int) -> DeviceRecord:
        """Blank garage record appended at ``sort_order``."""
        return cls(
            device_type=DeviceType.GARAGE,
            accent_color=DeviceType.GARAGE.default_color,
            sort_order=sort_order,
        )


@dataclass(frozen=True, slots=True)
class ActionResult:
    """Timestamped outcome of one orchestrator action."""

    success: bool
    message: str
    timestamp: float = field(default_factory=time.time)
