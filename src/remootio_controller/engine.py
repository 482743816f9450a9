"""Per-device protocol engine: handshake, encrypted actions, correlation and keepalive.

This module implements the ProtocolEngine class which owns one transport to a
Remootio device, authenticates against it, issues encrypted actions and
correlates the device's responses back to their callers.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from remootio_controller.const import (
    ACTION_ID_MODULUS,
    CRYPTO_KEY_BYTES,
    REMOOTIO_ACTION_TIMEOUT,
    REMOOTIO_DROP_ON_MAC_FAILURE,
    REMOOTIO_KEEPALIVE_INTERVAL,
)
from remootio_controller.correlation import ensure_correlation_id
from remootio_controller.events import (
    ConnectionStateChanged,
    DiagnosticRaised,
    GateStatusChanged,
    Observable,
)
from remootio_controller.instrumentation import timed_async
from remootio_controller.logging_abstraction import get_logger
from remootio_controller.metrics import registry
from remootio_controller.protocol import crypto, frames
from remootio_controller.protocol.exceptions import (
    CryptoError,
    DeviceErrorFrame,
    MalformedFrameError,
    NotAuthenticatedError,
    RemootioError,
)
from remootio_controller.structs import ActionKind, ConnectionState, DeviceIdentity, GateStatus
from remootio_controller.transport.exceptions import TransportError
from remootio_controller.transport.types import ActionOutcome, PendingAction, Transport
from remootio_controller.transport.websocket import WebSocketTransport

logger = get_logger(__name__)

TransportFactory = Callable[[DeviceIdentity], Transport]

DISCONNECT_REASON = "Disconnected"
TIMEOUT_REASON = "Timed out"


def default_transport_factory(identity: DeviceIdentity) -> Transport:
    return WebSocketTransport(identity.url)


def is_newer_action_id(candidate: int, current: int) -> bool:
    """Return True when ``candidate`` is ahead of ``current`` on the wrapping id ring."""
    distance = (candidate - current) % ACTION_ID_MODULUS
    return 0 < distance < ACTION_ID_MODULUS // 2


class ProtocolEngine(Observable):
    """Manages one device's connection lifecycle, session and pending actions.

    **State machine**: DISCONNECTED → CONNECTING → TRANSPORT_CONNECTED →
    AUTHENTICATING → READY, collapsing to DISCONNECTED on transport failure or
    explicit disconnect. READY requires both a decrypted CHALLENGE and a
    successful bootstrap QUERY.

    **Locking**: the session key, last action id and pending-action table are
    guarded by ``_state_lock``. The lock is never held across transport I/O.

    **Completion**: every action gets a ``PendingAction`` wrapping an
    ``asyncio.Future[ActionOutcome]`` resolved exactly once, by its correlated
    response, by the optional timeout, or by disconnect.
    """

    def __init__(
        self,
        identity: DeviceIdentity,
        transport_factory: TransportFactory | None = None,
        *,
        keepalive_interval: float = REMOOTIO_KEEPALIVE_INTERVAL,
        action_timeout: float | None = REMOOTIO_ACTION_TIMEOUT,
        drop_on_mac_failure: bool = REMOOTIO_DROP_ON_MAC_FAILURE,
    ) -> None:
        """Initialize protocol engine.

        Args:
            identity: Immutable device identity (endpoint and keys)
            transport_factory: Builds a fresh transport per connection attempt
            keepalive_interval: Seconds between PINGs once READY
            action_timeout: Default bounded wait for action responses (None waits until disconnect)
            drop_on_mac_failure: Tear the connection down on an authentication-tag mismatch

        """
        super().__init__()
        self.identity: DeviceIdentity = identity
        self.lp: str = f"{identity.name}:"
        self.transport_factory: TransportFactory = transport_factory or default_transport_factory
        self.keepalive_interval: float = keepalive_interval
        self.action_timeout: float | None = action_timeout
        self.drop_on_mac_failure: bool = drop_on_mac_failure

        self.state: ConnectionState = ConnectionState.DISCONNECTED
        self.status: GateStatus = GateStatus.UNKNOWN
        self.last_error: str | None = None

        self._state_lock: asyncio.Lock = asyncio.Lock()
        self._transport: Transport | None = None
        self._session_key: bytes | None = None
        self._last_action_id: int = 0
        self._pending: dict[int, PendingAction] = {}
        self._ready_event: asyncio.Event = asyncio.Event()

        self._receive_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._bootstrap_task: asyncio.Task[None] | None = None

    @property
    def device_id(self) -> str:
        return str(self.identity.device_id)

    @property
    def is_ready(self) -> bool:
        return self.state is ConnectionState.READY

    @property
    def has_session(self) -> bool:
        return self._session_key is not None

    @property
    def last_action_id(self) -> int:
        return self._last_action_id

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @timed_async("engine_connect")
    async def connect(self) -> bool:
        """Open the transport and begin authentication.

        Any existing session is torn down first. Returns once AUTH has been
        sent; READY is reached asynchronously (see ``wait_ready``).

        Returns:
            True if the transport opened and AUTH was sent, False otherwise

        """
        if self._transport is not None or self.state is not ConnectionState.DISCONNECTED:
            await self._teardown(DISCONNECT_REASON)

        self.last_error = None
        self._set_state(ConnectionState.CONNECTING)
        logger.info("%s → Connecting to %s", self.lp, self.identity.url, extra={"device_id": self.device_id})

        transport = self.transport_factory(self.identity)
        try:
            await transport.connect()
        except TransportError as e:
            self._diagnose(e)
            self._set_state(ConnectionState.DISCONNECTED)
            logger.warning(
                "%s ✗ Transport connect failed: %s",
                self.lp,
                e.reason,
                extra={"device_id": self.device_id, "reason": e.reason},
            )
            return False

        async with self._state_lock:
            self._transport = transport
        self._set_state(ConnectionState.TRANSPORT_CONNECTED)
        self._receive_task = asyncio.create_task(self._receive_loop(transport), name=f"remootio-rx-{self.device_id}")

        self._set_state(ConnectionState.AUTHENTICATING)
        try:
            await self._send_frame(transport, frames.auth_frame(), "AUTH")
        except TransportError as e:
            self._diagnose(e)
            await self._teardown(e.reason)
            return False
        return True

    async def disconnect(self, reason: str = DISCONNECT_REASON) -> None:
        """Cancel keepalive, close the transport, drop the session and fail all pending actions."""
        logger.info("%s → Disconnecting (%s)", self.lp, reason, extra={"device_id": self.device_id})
        await self._teardown(reason)

    async def wait_ready(self, timeout: float | None = None) -> bool:
        if self.is_ready:
            return True
        try:
            _ = await asyncio.wait_for(self._ready_event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return self.is_ready

    async def _teardown(self, reason: str) -> None:
        """Collapse to DISCONNECTED. Safe to call from the engine's own tasks.

        Pending actions are failed and state is reset even when the caller is
        cancelled while background tasks or the transport are still closing.
        """
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._keepalive_task, self._bootstrap_task, self._receive_task)
            if task is not None and task is not current and not task.done()
        ]
        self._keepalive_task = self._bootstrap_task = self._receive_task = None
        for task in tasks:
            _ = task.cancel()

        # No await between detaching and clearing; lock holders never await either
        transport, self._transport = self._transport, None
        self._session_key = None
        pending = list(self._pending.values())
        self._pending.clear()

        try:
            for task in tasks:
                try:
                    await task
                except asyncio.CancelledError:
                    if current is not None and current.cancelling():
                        raise
            if transport is not None:
                try:
                    await transport.close()
                except TransportError as e:
                    logger.debug(
                        "%s Transport close failed: %s",
                        self.lp,
                        e.reason,
                        extra={"device_id": self.device_id},
                    )
        finally:
            self._fail_pending(pending, reason)
            self._ready_event.clear()
            self._set_state(ConnectionState.DISCONNECTED)
            self._set_status(GateStatus.UNKNOWN)

    def _fail_pending(self, pending: list[PendingAction], reason: str) -> None:
        for action in pending:
            if action.resolve(ActionOutcome(success=False, message=reason)):
                registry.record_action(self.device_id, action.kind.value, "disconnected")
        if pending:
            logger.info(
                "%s Failed %d pending action(s): %s",
                self.lp,
                len(pending),
                reason,
                extra={"device_id": self.device_id, "pending": len(pending)},
            )
        registry.record_pending_actions(self.device_id, 0)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def send_action(self, kind: ActionKind) -> asyncio.Future[ActionOutcome]:
        """Encrypt and send one action; the returned future resolves with its outcome.

        Fails immediately (already-resolved future) when no session exists,
        when encryption fails, or when the transport rejects the frame.
        """
        future: asyncio.Future[ActionOutcome] = asyncio.get_running_loop().create_future()
        async with self._state_lock:
            try:
                session_key, transport = self._require_session()
            except NotAuthenticatedError as e:
                future.set_result(ActionOutcome(success=False, message=e.reason))
                registry.record_action(self.device_id, kind.value, "not_authenticated")
                return future
            action_id = self._next_action_id()
            pending = PendingAction(action_id=action_id, kind=kind, issued_at=time.time(), future=future)
            self._pending[action_id] = pending
            registry.record_pending_actions(self.device_id, len(self._pending))

        logger.debug(
            "%s → Sending %s #%d",
            self.lp,
            kind.value,
            action_id,
            extra={"device_id": self.device_id, "action": kind.value, "action_id": action_id},
        )
        try:
            text = frames.build_encrypted_frame(
                frames.action_plaintext(kind, action_id),
                session_key,
                self.identity.auth_key,
            )
        except CryptoError as e:
            await self._abandon(pending, "Encryption failed")
            self._diagnose(e, "Encryption failed")
            return future

        try:
            await self._send_frame(transport, text, kind.value)
        except TransportError as e:
            await self._abandon(pending, e.reason)
            self._diagnose(e)
        return future

    async def perform(self, kind: ActionKind, timeout: float | None = None) -> ActionOutcome:
        """Send ``kind`` and wait for its outcome.

        Args:
            kind: Action to send
            timeout: Bounded wait in seconds; defaults to ``action_timeout``.
                On expiry the action is dropped and resolved as "Timed out".

        """
        future = await self.send_action(kind)
        timeout = timeout if timeout is not None else self.action_timeout
        if timeout is None:
            return await future
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        except TimeoutError:
            async with self._state_lock:
                stale = [a for a in self._pending.values() if a.future is future]
                for action in stale:
                    del self._pending[action.action_id]
                    registry.record_action(self.device_id, action.kind.value, "timeout")
            if not future.done():
                future.set_result(ActionOutcome(success=False, message=TIMEOUT_REASON))
            logger.warning(
                "%s ✗ %s timed out after %.1fs",
                self.lp,
                kind.value,
                timeout,
                extra={"device_id": self.device_id, "action": kind.value, "timeout": timeout},
            )
            return future.result()

    async def query(self, timeout: float | None = None) -> ActionOutcome:
        return await self.perform(ActionKind.QUERY, timeout)

    async def open(self, timeout: float | None = None) -> ActionOutcome:
        return await self.perform(ActionKind.OPEN, timeout)

    async def close(self, timeout: float | None = None) -> ActionOutcome:
        return await self.perform(ActionKind.CLOSE, timeout)

    async def trigger(self, timeout: float | None = None) -> ActionOutcome:
        return await self.perform(ActionKind.TRIGGER, timeout)

    def _require_session(self) -> tuple[bytes, Transport]:
        if self._session_key is None or self._transport is None:
            raise NotAuthenticatedError(state=self.state.value)
        return self._session_key, self._transport

    def _next_action_id(self) -> int:
        """Advance the action id, skipping ids that are still pending. Caller holds the lock."""
        candidate = (self._last_action_id + 1) % ACTION_ID_MODULUS
        while candidate in self._pending:
            candidate = (candidate + 1) % ACTION_ID_MODULUS
        self._last_action_id = candidate
        return candidate

    async def _abandon(self, pending: PendingAction, reason: str) -> None:
        async with self._state_lock:
            _ = self._pending.pop(pending.action_id, None)
            registry.record_pending_actions(self.device_id, len(self._pending))
        if pending.resolve(ActionOutcome(success=False, message=reason)):
            registry.record_action(self.device_id, pending.kind.value, "send_failed")

    async def _send_frame(self, transport: Transport, text: str, frame_type: str) -> None:
        try:
            await transport.send_text(text)
        except TransportError:
            registry.record_frame_sent(self.device_id, frame_type, "failed")
            raise
        registry.record_frame_sent(self.device_id, frame_type, "success")

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _receive_loop(self, transport: Transport) -> None:
        """Route inbound frames until the transport ends."""
        _ = ensure_correlation_id()
        try:
            async for text in transport.frames():
                await self._handle_frame(text)
                if transport is not self._transport:
                    # Torn down while handling the frame
                    return
        except asyncio.CancelledError:
            logger.debug("%s Receive loop cancelled (clean shutdown)", self.lp)
            raise
        except TransportError as e:
            if transport is not self._transport:
                return
            logger.warning(
                "%s ✗ Connection lost: %s",
                self.lp,
                e.reason,
                extra={"device_id": self.device_id, "reason": e.reason},
            )
            self._diagnose(e)
            await self._teardown(e.reason)

    async def _handle_frame(self, text: str) -> None:
        try:
            envelope = frames.parse_envelope(text)
        except MalformedFrameError as e:
            registry.record_frame_error(self.device_id, e.reason)
            self._diagnose(e)
            return

        registry.record_frame_received(self.device_id, envelope.type)
        if isinstance(envelope, frames.EncryptedFrame):
            await self._handle_encrypted(envelope)
        elif isinstance(envelope, frames.ErrorFrame):
            registry.record_device_error(self.device_id)
            error = DeviceErrorFrame(envelope.error_message)
            self._diagnose(error, envelope.error_message)
        else:
            logger.debug("%s Ignoring %s frame", self.lp, envelope.type, extra={"device_id": self.device_id})

    async def _handle_encrypted(self, envelope: frames.EncryptedFrame) -> None:
        async with self._state_lock:
            session_key = self._session_key
        # The pre-shared secret only ever decrypts the initial challenge
        key = session_key if session_key is not None else self.identity.secret_key

        try:
            payload = frames.open_encrypted_frame(envelope, key, self.identity.auth_key)
        except CryptoError as e:
            if e.reason == "mac_mismatch":
                registry.record_mac_failure(self.device_id)
                self._diagnose(e, "MAC verification failed")
                if self.drop_on_mac_failure:
                    await self._teardown("MAC verification failed")
            else:
                registry.record_frame_error(self.device_id, e.reason)
                self._diagnose(e, "Decryption failed")
            return
        except MalformedFrameError as e:
            registry.record_frame_error(self.device_id, e.reason)
            if session_key is None:
                registry.record_handshake(self.device_id, "bad_challenge")
                self._diagnose(e, "Invalid auth challenge")
            else:
                self._diagnose(e)
            return

        if isinstance(payload, frames.ChallengePayload):
            if session_key is None:
                await self._handle_challenge(payload)
            else:
                logger.debug("%s Ignoring CHALLENGE on an established session", self.lp)
        elif isinstance(payload, frames.ResponsePayload):
            await self._handle_response(payload)
        elif isinstance(payload, frames.EventPayload):
            if payload.event.state is not None:
                self._set_status(GateStatus.from_wire(payload.event.state))
        else:
            logger.debug("%s Ignoring %s payload", self.lp, payload.type, extra={"device_id": self.device_id})

    async def _handle_challenge(self, payload: frames.ChallengePayload) -> None:
        challenge = payload.challenge
        try:
            session_key = crypto.b64decode(challenge.session_key)
        except CryptoError as e:
            registry.record_handshake(self.device_id, "bad_challenge")
            self._diagnose(e, "Invalid auth challenge")
            return
        if len(session_key) != CRYPTO_KEY_BYTES:
            registry.record_handshake(self.device_id, "bad_challenge")
            self._diagnose(CryptoError(f"invalid_session_key_length:{len(session_key)}"), "Invalid auth challenge")
            return

        async with self._state_lock:
            self._session_key = session_key
            self._last_action_id = challenge.initial_action_id % ACTION_ID_MODULUS
        logger.info(
            "%s ✓ Session key received, bootstrapping with QUERY",
            self.lp,
            extra={"device_id": self.device_id, "initial_action_id": challenge.initial_action_id},
        )
        future = await self.send_action(ActionKind.QUERY)
        self._bootstrap_task = asyncio.create_task(
            self._complete_bootstrap(future),
            name=f"remootio-bootstrap-{self.device_id}",
        )

    async def _complete_bootstrap(self, future: asyncio.Future[ActionOutcome]) -> None:
        outcome = await asyncio.shield(future)
        if not self.has_session:
            return
        if not outcome.success:
            registry.record_handshake(self.device_id, "query_failed")
            self._diagnose(
                RemootioError(f"Status query failed: {outcome.message or 'Failed'}"),
            )
            return
        self._ready_event.set()
        self._set_state(ConnectionState.READY)
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(), name=f"remootio-ping-{self.device_id}")
        registry.record_handshake(self.device_id, "success")
        logger.info("%s ✓ Authenticated and ready", self.lp, extra={"device_id": self.device_id})

    async def _handle_response(self, payload: frames.ResponsePayload) -> None:
        response = payload.response
        pending: PendingAction | None = None
        async with self._state_lock:
            if response.id is not None:
                if is_newer_action_id(response.id, self._last_action_id):
                    self._last_action_id = response.id
                pending = self._pending.pop(response.id, None)
                registry.record_pending_actions(self.device_id, len(self._pending))

        if response.state is not None:
            self._set_status(GateStatus.from_wire(response.state))

        if pending is None:
            logger.debug(
                "%s Uncorrelated %s response #%s",
                self.lp,
                payload.type.value,
                response.id,
                extra={"device_id": self.device_id, "action_id": response.id},
            )
            return

        if response.accepted:
            outcome = ActionOutcome(success=True)
        else:
            outcome = ActionOutcome(success=False, message=response.error_code or "")
        if pending.resolve(outcome):
            registry.record_action(self.device_id, pending.kind.value, "success" if outcome.success else "failed")
            registry.record_action_latency(self.device_id, pending.kind.value, time.time() - pending.issued_at)
        logger.info(
            "%s %s %s #%d%s",
            self.lp,
            "✓" if outcome.success else "✗",
            pending.kind.value,
            pending.action_id,
            f" ({outcome.message})" if outcome.message else "",
            extra={
                "device_id": self.device_id,
                "action": pending.kind.value,
                "action_id": pending.action_id,
                "success": outcome.success,
                "relay_triggered": response.relay_triggered,
            },
        )

    async def _keepalive_loop(self) -> None:
        _ = ensure_correlation_id()
        while True:
            await asyncio.sleep(self.keepalive_interval)
            transport = self._transport
            if transport is None:
                return
            try:
                await self._send_frame(transport, frames.ping_frame(), "PING")
            except TransportError as e:
                registry.record_keepalive(self.device_id, "failed")
                logger.warning("%s ✗ Keepalive failed: %s", self.lp, e.reason, extra={"device_id": self.device_id})
            else:
                registry.record_keepalive(self.device_id, "sent")

    # ------------------------------------------------------------------
    # Published state
    # ------------------------------------------------------------------

    def _set_state(self, new: ConnectionState) -> None:
        old = self.state
        if old is new:
            return
        self.state = new
        registry.record_connection_state(self.device_id, new.value)
        logger.debug(
            "%s State %s → %s",
            self.lp,
            old.value,
            new.value,
            extra={"device_id": self.device_id, "old": old.value, "new": new.value},
        )
        self._publish(ConnectionStateChanged(self.identity.device_id, old=old, new=new))

    def _set_status(self, new: GateStatus) -> None:
        old = self.status
        if old is new:
            return
        self.status = new
        self._publish(GateStatusChanged(self.identity.device_id, old=old, new=new))

    def _diagnose(self, error: Exception, message: str | None = None) -> None:
        """Replace the last-error value (latest wins) and publish it."""
        text = message if message is not None else str(error)
        self.last_error = text
        logger.warning(
            "%s ✗ %s",
            self.lp,
            text,
            extra={"device_id": self.device_id, "error_type": type(error).__name__},
        )
        self._publish(DiagnosticRaised(self.identity.device_id, message=text, error=error))
