"""Unit tests for core data structures."""

from __future__ import annotations

import uuid
from collections.abc import Callable

import pytest
from pydantic import ValidationError

from remootio_controller.structs import (
    ActionKind,
    ConnectionState,
    DeviceColor,
    DeviceIdentity,
    DeviceRecord,
    DeviceType,
    GateStatus,
    is_device_key,
)
from tests.helpers.remootio_fakes import make_device_key


class TestGateStatus:
    """Tests for mapping device state strings."""

    @pytest.mark.parametrize(
        ("wire", "expected"),
        [
            ("open", GateStatus.OPEN),
            ("closed", GateStatus.CLOSED),
            ("no sensor", GateStatus.NO_SENSOR),
            ("half-open", GateStatus.UNKNOWN),
            (None, GateStatus.UNKNOWN),
        ],
    )
    def test_from_wire(self, wire: str | None, expected: GateStatus):
        assert GateStatus.from_wire(wire) is expected


class TestEnumLabels:
    """Tests for display strings attached to enums."""

    def test_connection_state_labels(self):
        assert ConnectionState.DISCONNECTED.label == "Disconnected"
        assert ConnectionState.READY.label == "Ready"
        assert all(state.label for state in ConnectionState)

    def test_action_success_messages(self):
        assert ActionKind.QUERY.success_message == "Status updated"
        assert ActionKind.OPEN.success_message == "Opening…"
        assert ActionKind.CLOSE.success_message == "Closing…"
        assert ActionKind.TRIGGER.success_message == "Triggered"

    def test_device_type_defaults(self):
        assert DeviceType.GARAGE.display_name == "Garage Door"
        assert DeviceType.GATE.default_color is DeviceColor.ORANGE
        assert all(t.default_color in DeviceColor for t in DeviceType)


class TestIsDeviceKey:
    """Tests for key validation."""

    def test_accepts_64_hex_characters(self):
        assert is_device_key(make_device_key())
        assert is_device_key("AB" * 32)

    @pytest.mark.parametrize("value", ["", "ab" * 31, "ab" * 33, "zz" * 32])
    def test_rejects_invalid_keys(self, value: str):
        assert not is_device_key(value)


class TestDeviceRecord:
    """Tests for DeviceRecord validation and identity conversion."""

    def test_valid_record(self, record_factory: Callable[..., DeviceRecord]):
        assert record_factory().is_valid

    @pytest.mark.parametrize("field", ["name", "host", "secret_key", "auth_key"])
    def test_missing_field_is_invalid(self, record_factory: Callable[..., DeviceRecord], field: str):
        assert not record_factory(**{field: ""}).is_valid

    def test_to_identity_decodes_keys(self, record_factory: Callable[..., DeviceRecord]):
        record = record_factory(host="10.0.0.5")

        identity = record.to_identity(port=8081)

        assert identity.device_id == record.id
        assert identity.secret_key == bytes.fromhex(record.secret_key)
        assert identity.auth_key == bytes.fromhex(record.auth_key)
        assert identity.url == "ws://10.0.0.5:8081"

    def test_to_identity_rejects_invalid_record(self):
        with pytest.raises(ValueError, match="not fully configured"):
            _ = DeviceRecord(name="Garage").to_identity()

    def test_icon_state(self):
        record = DeviceRecord()
        assert record.icon_state(GateStatus.OPEN) is GateStatus.OPEN
        assert record.icon_state(GateStatus.CLOSED) is GateStatus.CLOSED
        assert record.icon_state(GateStatus.NO_SENSOR) is GateStatus.CLOSED
        assert record.icon_state(GateStatus.UNKNOWN) is GateStatus.CLOSED

    def test_new_device(self):
        device = DeviceRecord.new_device(sort_order=4)
        assert device.device_type is DeviceType.GARAGE
        assert device.accent_color is DeviceColor.BLUE
        assert device.sort_order == 4
        assert not device.is_valid

    def test_assignment_is_validated(self):
        record = DeviceRecord()
        with pytest.raises(ValidationError):
            record.device_type = "spaceship"  # type: ignore[assignment]

    def test_ids_are_unique(self):
        assert DeviceRecord().id != DeviceRecord().id


class TestDeviceIdentity:
    """Tests for the immutable identity."""

    def test_repr_hides_keys(self, identity: DeviceIdentity):
        text = repr(identity)
        assert identity.secret_key.hex() not in text
        assert "auth_key" not in text

    def test_equal_identities_compare_equal(self):
        device_id = uuid.uuid4()
        key = bytes(32)
        first = DeviceIdentity(device_id, "Garage", "10.0.0.1", key, key)
        second = DeviceIdentity(device_id, "Garage", "10.0.0.1", key, key)
        assert first == second
        assert first != DeviceIdentity(device_id, "Garage", "10.0.0.2", key, key)
