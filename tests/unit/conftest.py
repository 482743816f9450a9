"""Shared fixtures for unit tests.

This module provides reusable fixtures for testing Remootio components.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any

import pytest
import pytest_asyncio

from remootio_controller.engine import ProtocolEngine
from remootio_controller.structs import DeviceIdentity, DeviceRecord, DeviceType
from tests.helpers.remootio_fakes import FakeTransport, JSONDict, RemootioSimulator, make_device_key


@pytest.fixture
def identity() -> DeviceIdentity:
    return DeviceIdentity(
        device_id=uuid.uuid4(),
        name="Garage",
        host="192.168.1.20",
        secret_key=bytes.fromhex(make_device_key()),
        auth_key=bytes.fromhex(make_device_key()),
    )


@pytest.fixture
def simulator(identity: DeviceIdentity) -> RemootioSimulator:
    return RemootioSimulator(identity)


@pytest.fixture
def transport(simulator: RemootioSimulator) -> FakeTransport:
    return FakeTransport(device=simulator)


@pytest.fixture
def engine(identity: DeviceIdentity, transport: FakeTransport) -> ProtocolEngine:
    return ProtocolEngine(identity, lambda _identity: transport, keepalive_interval=60.0, action_timeout=None)


@pytest_asyncio.fixture
async def ready_engine(engine: ProtocolEngine):
    """Engine that completed the handshake; disconnected on teardown."""
    assert await engine.connect()
    assert await engine.wait_ready(1)
    yield engine
    await engine.disconnect()


@pytest.fixture
def record_factory() -> Callable[..., DeviceRecord]:
    """Build valid device records; override any field by keyword."""

    def _make(name: str = "Garage", host: str = "192.168.1.20", **fields: Any) -> DeviceRecord:
        data: JSONDict = {
            "name": name,
            "host": host,
            "device_type": DeviceType.GARAGE,
            "secret_key": make_device_key(),
            "auth_key": make_device_key(),
        }
        data.update(fields)
        return DeviceRecord(**data)

    return _make
