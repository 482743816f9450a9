"""Device configuration store interface and in-memory implementation.

The orchestrator only depends on the ``ConfigStore`` protocol: a list of
``DeviceRecord`` values plus discrete change notifications. Durable storage is
left to the embedding application; ``load_devices`` reads a YAML device list
for the CLI.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import ValidationError

from remootio_controller.logging_abstraction import get_logger
from remootio_controller.structs import DeviceRecord

logger = get_logger(__name__)

DevicesCallback = Callable[[list[DeviceRecord]], None]


class ConfigStore(Protocol):
    """Source of device records for the orchestrator."""

    @property
    def devices(self) -> list[DeviceRecord]:
        """All records, valid or not, in storage order."""
        ...

    @property
    def configured_devices(self) -> list[DeviceRecord]:
        """Valid records sorted by sort position."""
        ...

    def subscribe(self, callback: DevicesCallback) -> Callable[[], None]:
        """Deliver the new device list after every change; returns an unsubscribe callable."""
        ...


class InMemoryConfigStore:
    """Mutable device list with CRUD helpers and change notifications."""

    lp: str = "InMemoryConfigStore:"

    def __init__(self, devices: list[DeviceRecord] | None = None) -> None:
        self._devices: list[DeviceRecord] = list(devices or [])
        self._subscribers: list[DevicesCallback] = []

    @property
    def devices(self) -> list[DeviceRecord]:
        return list(self._devices)

    @property
    def configured_devices(self) -> list[DeviceRecord]:
        return sorted((d for d in self._devices if d.is_valid), key=lambda d: d.sort_order)

    @property
    def is_configured(self) -> bool:
        return any(d.is_valid for d in self._devices)

    def get(self, device_id: uuid.UUID) -> DeviceRecord | None:
        return next((d for d in self._devices if d.id == device_id), None)

    def subscribe(self, callback: DevicesCallback) -> Callable[[], None]:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def add_device(self) -> DeviceRecord:
        """Append a blank record at the next sort position and return it."""
        device = DeviceRecord.new_device(sort_order=len(self._devices))
        self._devices.append(device)
        self._notify()
        return device

    def update_device(self, device: DeviceRecord) -> bool:
        """Replace the record with the same id. Returns False when no such record exists."""
        for idx, existing in enumerate(self._devices):
            if existing.id == device.id:
                self._devices[idx] = device.model_copy()
                self._notify()
                return True
        logger.debug("%s update for unknown device %s ignored", self.lp, device.id)
        return False

    def remove_device(self, device_id: uuid.UUID) -> bool:
        """Remove a record and renumber the remaining sort positions."""
        remaining = [d for d in self._devices if d.id != device_id]
        if len(remaining) == len(self._devices):
            return False
        self._devices = remaining
        self._renumber()
        self._notify()
        return True

    def move_device(self, source: int, destination: int) -> None:
        """Move the record at index ``source`` so it lands at index ``destination``, then renumber.

        Raises:
            IndexError: ``source`` is out of range

        """
        device = self._devices.pop(source)
        destination = max(0, min(destination, len(self._devices)))
        self._devices.insert(destination, device)
        self._renumber()
        self._notify()

    def set_devices(self, devices: list[DeviceRecord]) -> None:
        self._devices = list(devices)
        self._notify()

    def _renumber(self) -> None:
        for idx, device in enumerate(self._devices):
            if device.sort_order != idx:
                self._devices[idx] = device.model_copy(update={"sort_order": idx})

    def _notify(self) -> None:
        snapshot = self.devices
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("%s device change subscriber failed", self.lp)


def _parse_device(index: int, raw: Any) -> DeviceRecord | None:
    if not isinstance(raw, dict):
        logger.warning("Skipping device entry %d: not a mapping", index)
        return None
    data = dict(raw)
    # Accept the short YAML keys used in example configs
    if "type" in data and "device_type" not in data:
        data["device_type"] = data.pop("type")
    if "color" in data and "accent_color" not in data:
        data["accent_color"] = data.pop("color")
    data.setdefault("sort_order", index)
    for key_field in ("secret_key", "auth_key"):
        value = data.get(key_field)
        if value is not None and not isinstance(value, str):
            data[key_field] = str(value)
            logger.warning(
                "Device entry %d %s converted from %s to string; quote keys in YAML",
                index,
                key_field,
                type(value).__name__,
            )

    try:
        record = DeviceRecord.model_validate(data)
    except ValidationError:
        logger.exception("Skipping device entry %d: invalid fields", index)
        return None
    if "accent_color" not in data:
        record = record.model_copy(update={"accent_color": record.device_type.default_color})
    return record


def load_devices(config_file: Path) -> list[DeviceRecord]:
    """Parse a YAML device list.

    Expected layout::

        devices:
          - name: Garage
            type: garage
            host: 192.168.1.20
            secret_key: <64 hex>
            auth_key: <64 hex>

    Entries that fail validation are logged and skipped; incomplete entries
    are returned (the orchestrator ignores them until they are valid).

    Raises:
        OSError: the file cannot be read
        yaml.YAMLError: the file is not valid YAML

    """
    logger.debug("Parsing device config file: %s", config_file)
    try:
        with config_file.open() as f:
            config_data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        logger.exception("Failed to parse config file: %s", config_file)
        raise

    if not config_data or not isinstance(config_data, dict) or "devices" not in config_data:
        logger.warning("No 'devices' section found in config file", extra={"path": str(config_file)})
        return []

    raw_devices = config_data["devices"] or []
    if not isinstance(raw_devices, list):
        logger.warning("'devices' section is not a list", extra={"path": str(config_file)})
        return []

    devices = [d for i, raw in enumerate(raw_devices) if (d := _parse_device(i, raw)) is not None]
    logger.info(
        "Parsed config: %d devices (%d valid)",
        len(devices),
        sum(1 for d in devices if d.is_valid),
        extra={"path": str(config_file)},
    )
    return devices
