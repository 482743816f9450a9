"""In-memory transport and simulated Remootio device for tests.

``RemootioSimulator`` answers AUTH with an encrypted CHALLENGE and every
action with a response encrypted under the session key.
"""

from __future__ import annotations

import asyncio
import json
import secrets
from collections.abc import Callable
from typing import Any

from remootio_controller.protocol import crypto, frames
from remootio_controller.structs import DeviceIdentity
from remootio_controller.transport.exceptions import (
    TransportClosedError,
    TransportConnectError,
    TransportError,
)

JSONDict = dict[str, Any]


def make_device_key() -> str:
    """Return a random 64 character hex key (never a literal secret)."""
    return secrets.token_hex(32)


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll ``predicate`` on the event loop until it holds or ``timeout`` expires."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            msg = "condition not met before timeout"
            raise AssertionError(msg)
        await asyncio.sleep(0.005)


class RemootioSimulator:
    """Device side of the protocol, driven by frames the engine sends."""

    def __init__(
        self,
        identity: DeviceIdentity,
        *,
        initial_action_id: int = 10,
        state: str = "closed",
        session_key: bytes | None = None,
    ) -> None:
        self.secret_key: bytes = identity.secret_key
        self.auth_key: bytes = identity.auth_key
        self.session_key: bytes = session_key if session_key is not None else secrets.token_bytes(32)
        self.initial_action_id: int = initial_action_id
        self.state: str = state
        self.auto_respond: bool = True
        self.overrides: dict[str, JSONDict] = {}
        self.received: list[JSONDict] = []

    def encrypted(self, payload: JSONDict, key: bytes | None = None, auth_key: bytes | None = None) -> str:
        return frames.build_encrypted_frame(
            json.dumps(payload).encode(),
            key if key is not None else self.session_key,
            auth_key if auth_key is not None else self.auth_key,
        )

    def challenge_frame(self) -> str:
        payload = {
            "type": "CHALLENGE",
            "challenge": {
                "sessionKey": crypto.b64encode(self.session_key),
                "initialActionId": self.initial_action_id,
            },
        }
        return self.encrypted(payload, key=self.secret_key)

    def response_frame(self, kind: str, action_id: int | None, **fields: Any) -> str:
        response: JSONDict = {"id": action_id, "success": True, "state": self.state}
        response.update(fields)
        return self.encrypted({"type": kind, "response": response})

    def event_frame(self, state: str) -> str:
        return self.encrypted({"type": "EVENT", "event": {"state": state}})

    def decrypt_action(self, text: str) -> JSONDict:
        envelope = frames.parse_envelope(text)
        assert isinstance(envelope, frames.EncryptedFrame)
        plaintext = crypto.decrypt(
            crypto.b64decode(envelope.data.payload),
            self.session_key,
            crypto.b64decode(envelope.data.iv),
        )
        return json.loads(plaintext)

    def handle(self, text: str) -> list[str]:
        """Return the frames the device would send back for ``text``."""
        frame_type = json.loads(text)["type"]
        if frame_type == "AUTH":
            return [self.challenge_frame()]
        if frame_type == "PING":
            return [json.dumps({"type": "PONG"})]
        if frame_type != "ENCRYPTED":
            return []
        action = self.decrypt_action(text)
        self.received.append(action)
        if not self.auto_respond:
            return []
        return [self.response_frame(action["type"], action["id"], **self.overrides.get(action["type"], {}))]


class FakeTransport:
    """In-memory ``Transport`` whose inbound frames come from a queue."""

    def __init__(
        self,
        url: str = "ws://192.168.1.20:8080",
        device: RemootioSimulator | None = None,
        *,
        fail_connect: bool = False,
    ) -> None:
        self.url: str = url
        self.device: RemootioSimulator | None = device
        self.fail_connect: bool = fail_connect
        self.send_error: TransportError | None = None
        self.sent: list[str] = []
        self.connected: bool = False
        self.close_calls: int = 0
        self.close_delay: float = 0.0
        self._inbound: asyncio.Queue[str | None] = asyncio.Queue()

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        if self.fail_connect:
            raise TransportConnectError("Connection refused", self.url)
        self.connected = True

    async def send_text(self, text: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        if not self.connected:
            raise TransportClosedError("not_connected")
        self.sent.append(text)
        if self.device is not None:
            for reply in self.device.handle(text):
                self.feed(reply)

    async def frames(self):
        while True:
            text = await self._inbound.get()
            if text is None:
                raise TransportClosedError("closed_by_peer", 1006)
            yield text

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_delay:
            # A real websocket close waits for the peer's close frame
            await asyncio.sleep(self.close_delay)
        self.connected = False

    def feed(self, text: str) -> None:
        self._inbound.put_nowait(text)

    def drop(self) -> None:
        """Simulate the device closing the connection."""
        self.connected = False
        self._inbound.put_nowait(None)

    def sent_types(self) -> list[str]:
        return [json.loads(text)["type"] for text in self.sent]
