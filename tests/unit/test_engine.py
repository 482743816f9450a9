"""Unit tests for ProtocolEngine.

Drives the engine against a simulated device covering:
- CHALLENGE handshake and bootstrap QUERY
- Action id sequencing and wraparound
- Response correlation, relay-triggered success and device error codes
- Disconnect, peer drop and timeout completion of pending actions
- Authentication-tag failures, ERROR envelopes and malformed frames
"""

from __future__ import annotations

import asyncio
import json

import pytest

from remootio_controller.const import ACTION_ID_MODULUS
from remootio_controller.engine import (
    DISCONNECT_REASON,
    TIMEOUT_REASON,
    ProtocolEngine,
    is_newer_action_id,
)
from remootio_controller.events import ConnectionStateChanged, DiagnosticRaised, Event, GateStatusChanged
from remootio_controller.structs import ActionKind, ConnectionState, DeviceIdentity, GateStatus
from remootio_controller.transport.exceptions import TransportSendError
from tests.helpers.remootio_fakes import FakeTransport, RemootioSimulator, make_device_key, wait_until

BOOTSTRAP_ACTION_ID = 11


class TestActionIdRing:
    """Tests for is_newer_action_id."""

    def test_next_id_is_newer(self):
        assert is_newer_action_id(12, 11)

    def test_same_or_older_id_is_not_newer(self):
        assert not is_newer_action_id(11, 11)
        assert not is_newer_action_id(5, 11)

    def test_wraparound_counts_as_newer(self):
        assert is_newer_action_id(0, ACTION_ID_MODULUS - 1)
        assert is_newer_action_id(3, ACTION_ID_MODULUS - 2)

    def test_far_ahead_id_counts_as_older(self):
        assert not is_newer_action_id(ACTION_ID_MODULUS - 5, 10)


class TestHandshake:
    """Tests for connect, CHALLENGE handling and bootstrap."""

    @pytest.mark.asyncio
    async def test_handshake_reaches_ready(self, engine: ProtocolEngine, simulator: RemootioSimulator):
        """AUTH → CHALLENGE → QUERY(initial + 1) → READY with the reported status."""
        assert await engine.connect()
        assert await engine.wait_ready(1)

        assert engine.state is ConnectionState.READY
        assert engine.status is GateStatus.CLOSED
        assert engine.has_session
        assert engine.last_action_id == BOOTSTRAP_ACTION_ID
        assert simulator.received == [{"type": "QUERY", "id": BOOTSTRAP_ACTION_ID}]
        await engine.disconnect()

    @pytest.mark.asyncio
    async def test_auth_frame_sent_first(self, engine: ProtocolEngine, transport: FakeTransport):
        assert await engine.connect()
        assert await engine.wait_ready(1)

        assert json.loads(transport.sent[0]) == {"type": "AUTH"}
        assert transport.sent_types()[1] == "ENCRYPTED"
        await engine.disconnect()

    @pytest.mark.asyncio
    async def test_state_transitions_are_published_in_order(self, engine: ProtocolEngine):
        events: list[Event] = []
        _ = engine.subscribe(events.append)

        assert await engine.connect()
        assert await engine.wait_ready(1)

        states = [e.new for e in events if isinstance(e, ConnectionStateChanged)]
        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.TRANSPORT_CONNECTED,
            ConnectionState.AUTHENTICATING,
            ConnectionState.READY,
        ]
        assert any(isinstance(e, GateStatusChanged) and e.new is GateStatus.CLOSED for e in events)
        await engine.disconnect()

    @pytest.mark.asyncio
    async def test_initial_action_id_wraps(self, engine: ProtocolEngine, simulator: RemootioSimulator):
        simulator.initial_action_id = ACTION_ID_MODULUS - 1

        assert await engine.connect()
        assert await engine.wait_ready(1)

        assert simulator.received[0]["id"] == 0
        assert engine.last_action_id == 0
        await engine.disconnect()

    @pytest.mark.asyncio
    async def test_connect_failure_reports_diagnostic(self, identity: DeviceIdentity):
        transport = FakeTransport(fail_connect=True)
        engine = ProtocolEngine(identity, lambda _identity: transport)

        assert not await engine.connect()

        assert engine.state is ConnectionState.DISCONNECTED
        assert engine.last_error is not None
        assert "Connection refused" in engine.last_error

    @pytest.mark.asyncio
    async def test_invalid_session_key_blocks_ready(self, identity: DeviceIdentity):
        simulator = RemootioSimulator(identity, session_key=b"short")
        transport = FakeTransport(device=simulator)
        engine = ProtocolEngine(identity, lambda _identity: transport)

        assert await engine.connect()
        assert not await engine.wait_ready(0.1)

        assert engine.last_error == "Invalid auth challenge"
        assert engine.state is ConnectionState.AUTHENTICATING
        assert not engine.has_session
        await engine.disconnect()

    @pytest.mark.asyncio
    async def test_failed_bootstrap_query_blocks_ready(self, engine: ProtocolEngine, simulator: RemootioSimulator):
        simulator.overrides["QUERY"] = {"success": False, "errorCode": "NOT_ALLOWED"}

        assert await engine.connect()
        assert not await engine.wait_ready(0.1)

        assert engine.last_error == "Status query failed: NOT_ALLOWED"
        assert engine.state is ConnectionState.AUTHENTICATING
        await engine.disconnect()

    @pytest.mark.asyncio
    async def test_reconnect_tears_down_previous_session(self, ready_engine: ProtocolEngine, transport: FakeTransport):
        assert await ready_engine.connect()
        assert await ready_engine.wait_ready(1)

        assert transport.close_calls == 1
        assert transport.sent_types().count("AUTH") == 2
        assert ready_engine.is_ready


class TestActions:
    """Tests for sending actions and correlating responses."""

    @pytest.mark.asyncio
    async def test_open_uses_next_action_id(self, ready_engine: ProtocolEngine, simulator: RemootioSimulator):
        outcome = await ready_engine.open()

        assert outcome.success
        assert outcome.message == ""
        assert simulator.received[-1] == {"type": "OPEN", "id": BOOTSTRAP_ACTION_ID + 1}
        assert ready_engine.pending_count == 0

    @pytest.mark.asyncio
    async def test_consecutive_actions_increment_ids(self, ready_engine: ProtocolEngine, simulator: RemootioSimulator):
        _ = await ready_engine.close()
        _ = await ready_engine.trigger()
        _ = await ready_engine.query()

        ids = [action["id"] for action in simulator.received]
        assert ids == [11, 12, 13, 14]

    @pytest.mark.asyncio
    async def test_relay_triggered_counts_as_success(self, ready_engine: ProtocolEngine, simulator: RemootioSimulator):
        simulator.overrides["TRIGGER"] = {"success": False, "relayTriggered": True}

        outcome = await ready_engine.trigger()

        assert outcome.success

    @pytest.mark.asyncio
    async def test_error_code_is_reported(self, ready_engine: ProtocolEngine, simulator: RemootioSimulator):
        simulator.overrides["OPEN"] = {"success": False, "errorCode": "ALREADY_OPEN"}

        outcome = await ready_engine.open()

        assert not outcome.success
        assert outcome.message == "ALREADY_OPEN"

    @pytest.mark.asyncio
    async def test_response_state_updates_status(self, ready_engine: ProtocolEngine, simulator: RemootioSimulator):
        simulator.state = "open"

        _ = await ready_engine.query()

        assert ready_engine.status is GateStatus.OPEN

    @pytest.mark.asyncio
    async def test_out_of_order_responses_resolve_their_own_actions(
        self,
        ready_engine: ProtocolEngine,
        simulator: RemootioSimulator,
        transport: FakeTransport,
    ):
        simulator.auto_respond = False
        open_future = await ready_engine.send_action(ActionKind.OPEN)
        close_future = await ready_engine.send_action(ActionKind.CLOSE)
        assert ready_engine.pending_count == 2

        transport.feed(simulator.response_frame("CLOSE", 13, success=False, errorCode="BUSY"))
        transport.feed(simulator.response_frame("OPEN", 12))

        assert (await asyncio.wait_for(close_future, 1)).message == "BUSY"
        assert (await asyncio.wait_for(open_future, 1)).success
        assert ready_engine.pending_count == 0

    @pytest.mark.asyncio
    async def test_newer_response_id_advances_counter(
        self,
        ready_engine: ProtocolEngine,
        simulator: RemootioSimulator,
        transport: FakeTransport,
    ):
        transport.feed(simulator.response_frame("QUERY", 50))
        await wait_until(lambda: ready_engine.last_action_id == 50)

        _ = await ready_engine.open()

        assert simulator.received[-1]["id"] == 51

    @pytest.mark.asyncio
    async def test_older_response_id_is_ignored(
        self,
        ready_engine: ProtocolEngine,
        simulator: RemootioSimulator,
        transport: FakeTransport,
    ):
        transport.feed(simulator.response_frame("QUERY", 5))
        transport.feed(simulator.event_frame("open"))
        await wait_until(lambda: ready_engine.status is GateStatus.OPEN)

        assert ready_engine.last_action_id == BOOTSTRAP_ACTION_ID

    @pytest.mark.asyncio
    async def test_action_without_session_fails_immediately(self, engine: ProtocolEngine, transport: FakeTransport):
        outcome = await engine.open()

        assert not outcome.success
        assert outcome.message == "Not authenticated"
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_send_failure_fails_action(self, ready_engine: ProtocolEngine, transport: FakeTransport):
        transport.send_error = TransportSendError("broken pipe")

        outcome = await ready_engine.open()

        assert not outcome.success
        assert outcome.message == "broken pipe"
        assert ready_engine.pending_count == 0
        assert ready_engine.last_error == "Transport error: broken pipe"

    @pytest.mark.asyncio
    async def test_timeout_resolves_action(self, ready_engine: ProtocolEngine, simulator: RemootioSimulator):
        simulator.auto_respond = False

        outcome = await ready_engine.perform(ActionKind.OPEN, timeout=0.05)

        assert not outcome.success
        assert outcome.message == TIMEOUT_REASON
        assert ready_engine.pending_count == 0

    @pytest.mark.asyncio
    async def test_late_response_after_timeout_is_harmless(
        self,
        ready_engine: ProtocolEngine,
        simulator: RemootioSimulator,
        transport: FakeTransport,
    ):
        simulator.auto_respond = False
        _ = await ready_engine.perform(ActionKind.OPEN, timeout=0.05)
        action_id = simulator.received[-1]["id"]

        transport.feed(simulator.response_frame("OPEN", action_id, state="open"))
        await wait_until(lambda: ready_engine.status is GateStatus.OPEN)

        assert ready_engine.is_ready


class TestTeardown:
    """Tests for disconnect and connection loss."""

    @pytest.mark.asyncio
    async def test_disconnect_fails_pending_exactly_once(
        self,
        ready_engine: ProtocolEngine,
        simulator: RemootioSimulator,
    ):
        simulator.auto_respond = False
        future = await ready_engine.send_action(ActionKind.OPEN)

        await ready_engine.disconnect()

        outcome = await future
        assert not outcome.success
        assert outcome.message == DISCONNECT_REASON
        assert ready_engine.pending_count == 0
        assert ready_engine.state is ConnectionState.DISCONNECTED
        assert ready_engine.status is GateStatus.UNKNOWN
        assert not ready_engine.has_session

    @pytest.mark.asyncio
    async def test_cancelled_disconnect_still_fails_pending(
        self,
        ready_engine: ProtocolEngine,
        simulator: RemootioSimulator,
        transport: FakeTransport,
    ):
        simulator.auto_respond = False
        future = await ready_engine.send_action(ActionKind.OPEN)
        transport.close_delay = 5.0

        task = asyncio.create_task(ready_engine.disconnect())
        await wait_until(lambda: transport.close_calls == 1)
        _ = task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert future.done()
        outcome = future.result()
        assert not outcome.success
        assert outcome.message == DISCONNECT_REASON
        assert ready_engine.pending_count == 0
        assert ready_engine.state is ConnectionState.DISCONNECTED
        assert ready_engine.status is GateStatus.UNKNOWN
        assert not ready_engine.has_session

    @pytest.mark.asyncio
    async def test_peer_close_fails_pending(
        self,
        ready_engine: ProtocolEngine,
        simulator: RemootioSimulator,
        transport: FakeTransport,
    ):
        simulator.auto_respond = False
        future = await ready_engine.send_action(ActionKind.CLOSE)

        transport.drop()
        outcome = await asyncio.wait_for(future, 1)

        assert outcome.message == "closed_by_peer"
        assert ready_engine.state is ConnectionState.DISCONNECTED
        assert ready_engine.last_error is not None

    @pytest.mark.asyncio
    async def test_disconnect_without_connection_is_noop(self, engine: ProtocolEngine):
        await engine.disconnect()

        assert engine.state is ConnectionState.DISCONNECTED
        assert not await engine.wait_ready(0.01)

    @pytest.mark.asyncio
    async def test_keepalive_sends_ping_when_ready(self, identity: DeviceIdentity, transport: FakeTransport):
        engine = ProtocolEngine(identity, lambda _identity: transport, keepalive_interval=0.01)
        assert await engine.connect()
        assert await engine.wait_ready(1)

        await wait_until(lambda: "PING" in transport.sent_types())

        await engine.disconnect()


class TestInboundErrors:
    """Tests for rejected inbound frames."""

    @pytest.mark.asyncio
    async def test_mac_mismatch_keeps_connection(
        self,
        ready_engine: ProtocolEngine,
        simulator: RemootioSimulator,
        transport: FakeTransport,
    ):
        events: list[Event] = []
        _ = ready_engine.subscribe(events.append)
        forged_auth_key = bytes.fromhex(make_device_key())

        transport.feed(simulator.encrypted({"type": "EVENT", "event": {"state": "open"}}, auth_key=forged_auth_key))
        await wait_until(lambda: ready_engine.last_error is not None)

        assert ready_engine.last_error == "MAC verification failed"
        diagnostics = [e.message for e in events if isinstance(e, DiagnosticRaised)]
        assert diagnostics == ["MAC verification failed"]
        assert ready_engine.is_ready
        assert ready_engine.status is GateStatus.CLOSED

    @pytest.mark.asyncio
    async def test_mac_mismatch_can_drop_connection(self, identity: DeviceIdentity, simulator: RemootioSimulator):
        transport = FakeTransport(device=simulator)
        engine = ProtocolEngine(identity, lambda _identity: transport, drop_on_mac_failure=True)
        assert await engine.connect()
        assert await engine.wait_ready(1)

        transport.feed(simulator.event_frame("open").replace('"mac":"', '"mac":"AAAA'))
        await wait_until(lambda: engine.state is ConnectionState.DISCONNECTED)

        assert engine.last_error == "MAC verification failed"
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_error_envelope_sets_last_error(self, ready_engine: ProtocolEngine, transport: FakeTransport):
        transport.feed(json.dumps({"type": "ERROR", "errorMessage": "Connection rejected"}))
        await wait_until(lambda: ready_engine.last_error is not None)

        assert ready_engine.last_error == "Connection rejected"
        assert ready_engine.is_ready

    @pytest.mark.asyncio
    async def test_malformed_frame_sets_last_error(self, ready_engine: ProtocolEngine, transport: FakeTransport):
        transport.feed("not json at all")
        await wait_until(lambda: ready_engine.last_error is not None)

        assert ready_engine.last_error == "Malformed frame: invalid_json"

    @pytest.mark.asyncio
    async def test_control_frames_are_ignored(self, ready_engine: ProtocolEngine, transport: FakeTransport):
        transport.feed(json.dumps({"type": "SERVER_HELLO"}))
        transport.feed(json.dumps({"type": "PONG"}))

        outcome = await ready_engine.query()

        assert outcome.success
        assert ready_engine.last_error is None

    @pytest.mark.asyncio
    async def test_event_updates_status(
        self,
        ready_engine: ProtocolEngine,
        simulator: RemootioSimulator,
        transport: FakeTransport,
    ):
        transport.feed(simulator.event_frame("no sensor"))
        await wait_until(lambda: ready_engine.status is GateStatus.NO_SENSOR)
