"""Prometheus metrics registry for Remootio device connections."""

import threading
from typing import Final

from prometheus_client import (  # type: ignore[import-untyped]
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from remootio_controller.structs import ConnectionState

# Frame traffic
remootio_frames_sent_total: Final = Counter(  # type: ignore[assignment]
    "remootio_frames_sent_total",
    "Total frames sent to devices",
    ["device_id", "frame_type", "outcome"],
)

remootio_frames_received_total: Final = Counter(  # type: ignore[assignment]
    "remootio_frames_received_total",
    "Total frames received from devices",
    ["device_id", "frame_type"],
)

remootio_mac_failures_total: Final = Counter(  # type: ignore[assignment]
    "remootio_mac_failures_total",
    "Total frames dropped on authentication-tag mismatch",
    ["device_id"],
)

remootio_frame_errors_total: Final = Counter(  # type: ignore[assignment]
    "remootio_frame_errors_total",
    "Total frames dropped as undecryptable or malformed",
    ["device_id", "reason"],
)

remootio_device_errors_total: Final = Counter(  # type: ignore[assignment]
    "remootio_device_errors_total",
    "Total ERROR envelopes sent by devices",
    ["device_id"],
)

# Connection
remootio_connection_state: Final = Gauge(  # type: ignore[assignment]
    "remootio_connection_state",
    "Current connection state",
    ["device_id", "state"],
)

remootio_handshake_total: Final = Counter(  # type: ignore[assignment]
    "remootio_handshake_total",
    "Total authentication handshakes",
    ["device_id", "outcome"],
)

remootio_keepalive_total: Final = Counter(  # type: ignore[assignment]
    "remootio_keepalive_total",
    "Total keepalive PINGs",
    ["device_id", "outcome"],
)

# Actions
remootio_actions_total: Final = Counter(  # type: ignore[assignment]
    "remootio_actions_total",
    "Total actions resolved",
    ["device_id", "action", "outcome"],
)

remootio_action_latency_seconds: Final = Histogram(  # type: ignore[assignment]
    "remootio_action_latency_seconds",
    "Action round-trip latency in seconds",
    ["device_id", "action"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

remootio_pending_actions: Final = Gauge(  # type: ignore[assignment]
    "remootio_pending_actions",
    "Actions awaiting a device response",
    ["device_id"],
)

# Orchestrator
remootio_managed_engines: Final = Gauge(  # type: ignore[assignment]
    "remootio_managed_engines",
    "Protocol engines managed by the orchestrator",
)

remootio_reconcile_total: Final = Counter(  # type: ignore[assignment]
    "remootio_reconcile_total",
    "Total device reconciliations",
)

_server_state = {"started": False}
_server_lock = threading.Lock()


def start_metrics_server(port: int = 9400) -> None:
    """Start Prometheus HTTP metrics server (idempotent)."""
    with _server_lock:
        if not _server_state["started"]:
            start_http_server(port)  # type: ignore[no-untyped-call]
            _server_state["started"] = True


def record_frame_sent(device_id: str, frame_type: str, outcome: str) -> None:
    """Record a frame sent to a device."""
    remootio_frames_sent_total.labels(
        device_id=device_id, frame_type=frame_type, outcome=outcome,
    ).inc()  # type: ignore[no-untyped-call]


def record_frame_received(device_id: str, frame_type: str) -> None:
    """Record a frame received from a device."""
    remootio_frames_received_total.labels(device_id=device_id, frame_type=frame_type).inc()  # type: ignore[no-untyped-call]


def record_mac_failure(device_id: str) -> None:
    remootio_mac_failures_total.labels(device_id=device_id).inc()  # type: ignore[no-untyped-call]


def record_frame_error(device_id: str, reason: str) -> None:
    """Record a frame dropped as undecryptable or malformed."""
    remootio_frame_errors_total.labels(device_id=device_id, reason=reason).inc()  # type: ignore[no-untyped-call]


def record_device_error(device_id: str) -> None:
    remootio_device_errors_total.labels(device_id=device_id).inc()  # type: ignore[no-untyped-call]


def record_connection_state(device_id: str, state: str) -> None:
    """Record connection state change."""
    # Set gauge to 1 for current state, 0 for all others
    for s in ConnectionState:
        value = 1 if s.value == state else 0
        remootio_connection_state.labels(device_id=device_id, state=s.value).set(value)  # type: ignore[no-untyped-call]


def record_handshake(device_id: str, outcome: str) -> None:
    """Record a handshake outcome (success, bad_challenge, query_failed)."""
    remootio_handshake_total.labels(device_id=device_id, outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_keepalive(device_id: str, outcome: str) -> None:
    remootio_keepalive_total.labels(device_id=device_id, outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_action(device_id: str, action: str, outcome: str) -> None:
    """Record a resolved action."""
    remootio_actions_total.labels(device_id=device_id, action=action, outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_action_latency(device_id: str, action: str, latency_seconds: float) -> None:
    """Record action round-trip latency."""
    remootio_action_latency_seconds.labels(device_id=device_id, action=action).observe(
        latency_seconds,
    )  # type: ignore[no-untyped-call]


def record_pending_actions(device_id: str, count: int) -> None:
    remootio_pending_actions.labels(device_id=device_id).set(count)  # type: ignore[no-untyped-call]


def record_managed_engines(count: int) -> None:
    """Record the number of engines the orchestrator manages."""
    remootio_managed_engines.set(count)  # type: ignore[no-untyped-call]


def record_reconcile() -> None:
    remootio_reconcile_total.inc()  # type: ignore[no-untyped-call]
