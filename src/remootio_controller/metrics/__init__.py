"""Metrics module."""

from .registry import (
    record_action,
    record_action_latency,
    record_connection_state,
    record_frame_received,
    record_frame_sent,
    record_handshake,
    start_metrics_server,
)

__all__ = [
    "record_action",
    "record_action_latency",
    "record_connection_state",
    "record_frame_received",
    "record_frame_sent",
    "record_handshake",
    "start_metrics_server",
]
