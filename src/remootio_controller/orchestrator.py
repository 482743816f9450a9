"""Device orchestrator: one protocol engine per configured device.

Engines are reconciled against the configuration store (debounced), fleet-wide
operations fan out with full parallelism, and per-device actions record a
timestamped result keyed by device id.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from remootio_controller.config_store import ConfigStore
from remootio_controller.const import REMOOTIO_PORT, REMOOTIO_RECONCILE_DEBOUNCE
from remootio_controller.correlation import correlation_context
from remootio_controller.engine import ProtocolEngine
from remootio_controller.events import ActionCompleted, ActionStarted, DevicesReconciled, Observable
from remootio_controller.logging_abstraction import get_logger
from remootio_controller.metrics import registry
from remootio_controller.structs import (
    ActionKind,
    ActionResult,
    ConnectionState,
    DeviceIdentity,
    DeviceRecord,
    GateStatus,
)

logger = get_logger(__name__)

EngineFactory = Callable[[DeviceIdentity], ProtocolEngine]


def toggle_action(status: GateStatus) -> ActionKind:
    """Pick the action a toggle issues for ``status``."""
    if status is GateStatus.OPEN:
        return ActionKind.CLOSE
    if status is GateStatus.CLOSED:
        return ActionKind.OPEN
    return ActionKind.TRIGGER


@dataclass(frozen=True, slots=True)
class DeviceSnapshot:
    """Point-in-time view of one managed device."""

    device_id: uuid.UUID
    name: str
    state: ConnectionState
    status: GateStatus
    action_in_progress: bool
    last_error: str | None
    last_result: ActionResult | None


class DeviceOrchestrator(Observable):
    """Registry that creates, supervises and fans operations out across protocol engines.

    Engines are created for newly configured devices but not connected;
    callers decide when to ``connect_all``. Engines of removed devices are
    disconnected and evicted, and an engine whose identity changed (host or
    keys edited) is replaced by a fresh one.
    """

    lp: str = "DeviceOrchestrator:"

    def __init__(
        self,
        store: ConfigStore,
        engine_factory: EngineFactory | None = None,
        *,
        debounce_seconds: float = REMOOTIO_RECONCILE_DEBOUNCE,
        port: int = REMOOTIO_PORT,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Source of device records and change notifications
            engine_factory: Builds an engine for an identity (defaults to ProtocolEngine)
            debounce_seconds: Quiescence window before reconciling after a change
            port: Device websocket port

        """
        super().__init__()
        self.store: ConfigStore = store
        self.engine_factory: EngineFactory = engine_factory or ProtocolEngine
        self.debounce_seconds: float = debounce_seconds
        self.port: int = port

        self._engines: dict[uuid.UUID, ProtocolEngine] = {}
        self._engine_unsubscribers: dict[uuid.UUID, Callable[[], None]] = {}
        self._records: dict[uuid.UUID, DeviceRecord] = {}
        self._in_progress: dict[uuid.UUID, int] = {}
        self._last_results: dict[uuid.UUID, ActionResult] = {}

        self._reconcile_lock: asyncio.Lock = asyncio.Lock()
        self._debounce_task: asyncio.Task[None] | None = None
        self._reconcile_tasks: set[asyncio.Task[None]] = set()
        self._store_unsubscribe: Callable[[], None] | None = None

    @property
    def device_ids(self) -> list[uuid.UUID]:
        """Managed device ids in sort order."""
        return [r.id for r in sorted(self._records.values(), key=lambda r: r.sort_order)]

    @property
    def engines(self) -> dict[uuid.UUID, ProtocolEngine]:
        return dict(self._engines)

    def engine(self, device_id: uuid.UUID) -> ProtocolEngine | None:
        return self._engines.get(device_id)

    def record(self, device_id: uuid.UUID) -> DeviceRecord | None:
        return self._records.get(device_id)

    def is_action_in_progress(self, device_id: uuid.UUID) -> bool:
        return self._in_progress.get(device_id, 0) > 0

    def last_result(self, device_id: uuid.UUID) -> ActionResult | None:
        return self._last_results.get(device_id)

    def status_snapshot(self) -> dict[uuid.UUID, DeviceSnapshot]:
        snapshot: dict[uuid.UUID, DeviceSnapshot] = {}
        for device_id in self.device_ids:
            engine = self._engines[device_id]
            snapshot[device_id] = DeviceSnapshot(
                device_id=device_id,
                name=self._records[device_id].name,
                state=engine.state,
                status=engine.status,
                action_in_progress=self.is_action_in_progress(device_id),
                last_error=engine.last_error,
                last_result=self.last_result(device_id),
            )
        return snapshot

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Build engines for the current configuration and follow later changes."""
        _ = await self.reconcile()
        if self._store_unsubscribe is None:
            self._store_unsubscribe = self.store.subscribe(self._on_devices_changed)

    async def stop(self) -> None:
        """Stop following the store, drop a queued reconcile, finish running ones and disconnect every engine."""
        if self._store_unsubscribe is not None:
            self._store_unsubscribe()
            self._store_unsubscribe = None
        if self._debounce_task is not None:
            _ = self._debounce_task.cancel()
            self._debounce_task = None
        if self._reconcile_tasks:
            _ = await asyncio.gather(*self._reconcile_tasks, return_exceptions=True)
        await self.disconnect_all()

    def _on_devices_changed(self, _devices: list[DeviceRecord]) -> None:
        self._queue_reconcile()

    def _queue_reconcile(self) -> None:
        """Restart the quiescence window; reconcile once changes stop arriving.

        Only a reconcile still waiting out the window is cancelled. One that
        already started runs to completion and the new one queues behind it.
        """
        if self._debounce_task is not None and not self._debounce_task.done():
            _ = self._debounce_task.cancel()
        task = asyncio.create_task(self._debounced_reconcile(), name="remootio-reconcile")
        self._debounce_task = task
        self._reconcile_tasks.add(task)
        task.add_done_callback(self._reconcile_tasks.discard)

    async def _debounced_reconcile(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        if self._debounce_task is asyncio.current_task():
            self._debounce_task = None
        _ = await self.reconcile()

    async def reconcile(self) -> DevicesReconciled:
        """Bring the engine map in line with the store's valid devices."""
        async with self._reconcile_lock:
            wanted = {record.id: record for record in self.store.configured_devices}
            retired: list[ProtocolEngine] = []
            removed: list[uuid.UUID] = []
            replaced: list[uuid.UUID] = []
            added: list[uuid.UUID] = []

            for device_id in list(self._engines):
                if device_id not in wanted:
                    retired.append(self._evict(device_id))
                    removed.append(device_id)

            for device_id, record in wanted.items():
                identity = record.to_identity(self.port)
                existing = self._engines.get(device_id)
                if existing is not None and existing.identity == identity:
                    continue
                if existing is not None:
                    retired.append(self._evict(device_id))
                    replaced.append(device_id)
                else:
                    added.append(device_id)
                self._adopt(device_id, self.engine_factory(identity))

            self._records = wanted
            for device_id in removed:
                _ = self._in_progress.pop(device_id, None)
                _ = self._last_results.pop(device_id, None)

            if retired:
                # Evicted engines finish tearing down even if this reconcile is cancelled
                results = await asyncio.shield(
                    asyncio.gather(*(e.disconnect() for e in retired), return_exceptions=True),
                )
                for engine, result in zip(retired, results, strict=True):
                    if isinstance(result, Exception):
                        logger.error(
                            "%s ✗ Disconnect of retired engine %s failed: %s",
                            self.lp,
                            engine.identity.name,
                            result,
                            extra={"device_id": engine.device_id, "error": str(result)},
                        )

        registry.record_reconcile()
        registry.record_managed_engines(len(self._engines))
        event = DevicesReconciled(None, added=tuple(added), removed=tuple(removed), replaced=tuple(replaced))
        if added or removed or replaced:
            logger.info(
                "%s ✓ Reconciled: %d added, %d removed, %d replaced (%d managed)",
                self.lp,
                len(added),
                len(removed),
                len(replaced),
                len(self._engines),
                extra={"added": len(added), "removed": len(removed), "replaced": len(replaced)},
            )
        self._publish(event)
        return event

    def _adopt(self, device_id: uuid.UUID, engine: ProtocolEngine) -> None:
        self._engines[device_id] = engine
        self._engine_unsubscribers[device_id] = engine.subscribe(self._publish)

    def _evict(self, device_id: uuid.UUID) -> ProtocolEngine:
        unsubscribe = self._engine_unsubscribers.pop(device_id, None)
        if unsubscribe is not None:
            unsubscribe()
        return self._engines.pop(device_id)

    # ------------------------------------------------------------------
    # Fleet-wide operations
    # ------------------------------------------------------------------

    async def connect_all(self) -> dict[uuid.UUID, bool]:
        """Connect every engine in parallel; one device's failure never blocks another.

        Returns:
            Device id → whether the transport opened and authentication began

        """
        engines = dict(self._engines)
        logger.info("%s → Connecting %d device(s)", self.lp, len(engines))
        results = await asyncio.gather(*(e.connect() for e in engines.values()), return_exceptions=True)
        outcome: dict[uuid.UUID, bool] = {}
        for (device_id, engine), result in zip(engines.items(), results, strict=True):
            if isinstance(result, Exception):
                logger.error(
                    "%s ✗ Connect of %s raised: %s",
                    self.lp,
                    engine.identity.name,
                    result,
                    extra={"device_id": str(device_id), "error_type": type(result).__name__},
                )
                outcome[device_id] = False
            else:
                outcome[device_id] = bool(result)
        return outcome

    async def disconnect_all(self) -> None:
        engines = list(self._engines.values())
        results = await asyncio.gather(*(e.disconnect() for e in engines), return_exceptions=True)
        for engine, result in zip(engines, results, strict=True):
            if isinstance(result, Exception):
                logger.error(
                    "%s ✗ Disconnect of %s raised: %s",
                    self.lp,
                    engine.identity.name,
                    result,
                    extra={"device_id": engine.device_id, "error_type": type(result).__name__},
                )

    # ------------------------------------------------------------------
    # Per-device actions
    # ------------------------------------------------------------------

    async def open(self, device_id: uuid.UUID, timeout: float | None = None) -> ActionResult | None:
        return await self._run(device_id, ActionKind.OPEN, timeout)

    async def close(self, device_id: uuid.UUID, timeout: float | None = None) -> ActionResult | None:
        return await self._run(device_id, ActionKind.CLOSE, timeout)

    async def trigger(self, device_id: uuid.UUID, timeout: float | None = None) -> ActionResult | None:
        return await self._run(device_id, ActionKind.TRIGGER, timeout)

    async def query(self, device_id: uuid.UUID, timeout: float | None = None) -> ActionResult | None:
        return await self._run(device_id, ActionKind.QUERY, timeout)

    async def toggle(self, device_id: uuid.UUID, timeout: float | None = None) -> ActionResult | None:
        """Close when open, open when closed, otherwise trigger.

        The decision uses the status known at the moment of the call.
        """
        engine = self._engines.get(device_id)
        if engine is None:
            logger.debug("%s toggle for unmanaged device %s ignored", self.lp, device_id)
            return None
        return await self._run(device_id, toggle_action(engine.status), timeout)

    async def _run(self, device_id: uuid.UUID, kind: ActionKind, timeout: float | None) -> ActionResult | None:
        engine = self._engines.get(device_id)
        if engine is None:
            logger.debug("%s %s for unmanaged device %s ignored", self.lp, kind.value, device_id)
            return None

        with correlation_context():
            logger.info(
                "%s → %s on %s",
                self.lp,
                kind.value,
                engine.identity.name,
                extra={"device_id": str(device_id), "action": kind.value},
            )
            self._in_progress[device_id] = self._in_progress.get(device_id, 0) + 1
            self._publish(ActionStarted(device_id, kind=kind))
            try:
                outcome = await engine.perform(kind, timeout)
            finally:
                remaining = self._in_progress.get(device_id, 0) - 1
                if remaining > 0:
                    self._in_progress[device_id] = remaining
                else:
                    _ = self._in_progress.pop(device_id, None)

            message = kind.success_message if outcome.success else (outcome.message or "Failed")
            result = ActionResult(success=outcome.success, message=message)
            self._last_results[device_id] = result
            logger.info(
                "%s %s %s on %s: %s",
                self.lp,
                "✓" if result.success else "✗",
                kind.value,
                engine.identity.name,
                message,
                extra={"device_id": str(device_id), "action": kind.value, "success": result.success},
            )
            self._publish(ActionCompleted(device_id, kind=kind, result=result))
            return result
