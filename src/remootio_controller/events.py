"""Typed events published by protocol engines and the device orchestrator.

Subscribers receive events synchronously on the event loop. A subscriber that
raises is logged and skipped; delivery to the remaining subscribers continues.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from remootio_controller.logging_abstraction import get_logger
from remootio_controller.structs import ActionKind, ActionResult, ConnectionState, GateStatus

logger = get_logger(__name__)

__all__ = [
    "ActionCompleted",
    "ActionStarted",
    "ConnectionStateChanged",
    "DevicesReconciled",
    "DiagnosticRaised",
    "Event",
    "EventCallback",
    "GateStatusChanged",
    "Observable",
]


@dataclass(frozen=True, slots=True)
class Event:
    device_id: uuid.UUID | None
    at: float = field(default_factory=time.time, kw_only=True)


@dataclass(frozen=True, slots=True)
class ConnectionStateChanged(Event):
    old: ConnectionState
    new: ConnectionState


@dataclass(frozen=True, slots=True)
class GateStatusChanged(Event):
    old: GateStatus
    new: GateStatus


@dataclass(frozen=True, slots=True)
class DiagnosticRaised(Event):
    """A new last-error value replaced the previous one."""

    message: str
    error: BaseException | None = field(default=None, compare=False)


@dataclass(frozen=True, slots=True)
class ActionStarted(Event):
    kind: ActionKind


@dataclass(frozen=True, slots=True)
class ActionCompleted(Event):
    kind: ActionKind
    result: ActionResult


@dataclass(frozen=True, slots=True)
class DevicesReconciled(Event):
    added: tuple[uuid.UUID, ...]
    removed: tuple[uuid.UUID, ...]
    replaced: tuple[uuid.UUID, ...]


EventCallback = Callable[[Event], None]


class Observable:
    """Mixin providing ``subscribe(callback) -> unsubscribe``."""

    def __init__(self) -> None:
        self._subscribers: list[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register ``callback`` for every event; returns an unsubscribe callable."""
        if callback not in self._subscribers:
            self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: EventCallback) -> bool:
        if callback not in self._subscribers:
            return False
        self._subscribers.remove(callback)
        return True

    def _publish(self, event: Event) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Subscriber callback failed for %s",
                    type(event).__name__,
                    extra={"event": type(event).__name__, "device_id": event.device_id},
                )
