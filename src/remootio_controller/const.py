import os
from dataclasses import dataclass
from pathlib import Path

from remootio_controller import __version__

__all__ = [
    "ACTION_ID_MODULUS",
    "CRYPTO_IV_BYTES",
    "CRYPTO_KEY_BYTES",
    "DEVICE_KEY_HEX_LENGTH",
    "REMOOTIO_ACTION_TIMEOUT",
    "REMOOTIO_CONFIG_FILE_PATH",
    "REMOOTIO_CONNECT_TIMEOUT",
    "REMOOTIO_DEBUG",
    "REMOOTIO_DROP_ON_MAC_FAILURE",
    "REMOOTIO_KEEPALIVE_INTERVAL",
    "REMOOTIO_LOG_FORMAT",
    "REMOOTIO_LOG_HUMAN_OUTPUT",
    "REMOOTIO_LOG_JSON_FILE",
    "REMOOTIO_LOG_NAME",
    "REMOOTIO_METRICS_PORT",
    "REMOOTIO_PERF_THRESHOLD_MS",
    "REMOOTIO_PERF_TRACKING",
    "REMOOTIO_PORT",
    "REMOOTIO_RECONCILE_DEBOUNCE",
    "REMOOTIO_VERSION",
    "RuntimeSettings",
    "YES_ANSWER",
    "runtime_settings",
]

YES_ANSWER = ("true", "1", "yes", "y", "t", 1, "on", "o")
REMOOTIO_LOG_NAME: str = "remootio_controller"
REMOOTIO_VERSION: str = __version__

# Wire protocol constants (Remootio websocket API v3)
ACTION_ID_MODULUS: int = 0x7FFFFFFF
CRYPTO_KEY_BYTES: int = 32
CRYPTO_IV_BYTES: int = 16
DEVICE_KEY_HEX_LENGTH: int = CRYPTO_KEY_BYTES * 2


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.casefold() in YES_ANSWER


# Logging configuration
REMOOTIO_LOG_FORMAT: str = os.environ.get("REMOOTIO_LOG_FORMAT", "human").casefold()
_json_file = os.environ.get("REMOOTIO_LOG_JSON_FILE")
REMOOTIO_LOG_JSON_FILE: str | None = _json_file if _json_file else None
REMOOTIO_LOG_HUMAN_OUTPUT: str = os.environ.get("REMOOTIO_LOG_HUMAN_OUTPUT", "stdout")

REMOOTIO_CONFIG_FILE_PATH: str = os.environ.get(
    "REMOOTIO_CONFIG_FILE",
    str(Path("~/.config/remootio/devices.yaml")),
)


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    """Connection and orchestration settings read from the environment.

    ``runtime_settings()`` reads them again on every call, so values from a
    ``.env`` file loaded after import still apply.
    """

    debug: bool
    port: int
    connect_timeout: float
    keepalive_interval: float
    # None waits for a response until disconnect
    action_timeout: float | None
    drop_on_mac_failure: bool
    reconcile_debounce: float


def runtime_settings() -> RuntimeSettings:
    return RuntimeSettings(
        debug=_env_bool("REMOOTIO_DEBUG", False),
        port=_env_int("REMOOTIO_PORT", 8080),
        connect_timeout=_env_float("REMOOTIO_CONNECT_TIMEOUT", 10.0) or 10.0,
        keepalive_interval=_env_float("REMOOTIO_KEEPALIVE_INTERVAL", 60.0) or 60.0,
        action_timeout=_env_float("REMOOTIO_ACTION_TIMEOUT", None),
        drop_on_mac_failure=_env_bool("REMOOTIO_DROP_ON_MAC_FAILURE", False),
        reconcile_debounce=_env_float("REMOOTIO_RECONCILE_DEBOUNCE", 0.3) or 0.0,
    )


_startup = runtime_settings()
REMOOTIO_DEBUG: bool = _startup.debug

# Device connection
REMOOTIO_PORT: int = _startup.port
REMOOTIO_CONNECT_TIMEOUT: float = _startup.connect_timeout
REMOOTIO_KEEPALIVE_INTERVAL: float = _startup.keepalive_interval
REMOOTIO_ACTION_TIMEOUT: float | None = _startup.action_timeout
REMOOTIO_DROP_ON_MAC_FAILURE: bool = _startup.drop_on_mac_failure

# Orchestrator
REMOOTIO_RECONCILE_DEBOUNCE: float = _startup.reconcile_debounce

_metrics_port = _env_int("REMOOTIO_METRICS_PORT", 0)
REMOOTIO_METRICS_PORT: int | None = _metrics_port if _metrics_port > 0 else None

# Performance instrumentation
REMOOTIO_PERF_TRACKING: bool = _env_bool("REMOOTIO_PERF_TRACKING", True)
REMOOTIO_PERF_THRESHOLD_MS: int = _env_int("REMOOTIO_PERF_THRESHOLD_MS", 500)
