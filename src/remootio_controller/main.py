from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import uuid
from pathlib import Path

import dotenv
import uvloop

from remootio_controller.config_store import InMemoryConfigStore, load_devices
from remootio_controller.const import (
    REMOOTIO_CONFIG_FILE_PATH,
    REMOOTIO_LOG_NAME,
    REMOOTIO_METRICS_PORT,
    REMOOTIO_VERSION,
    RuntimeSettings,
    runtime_settings,
)
from remootio_controller.correlation import correlation_context, ensure_correlation_id
from remootio_controller.engine import ProtocolEngine
from remootio_controller.events import (
    ActionCompleted,
    ConnectionStateChanged,
    DiagnosticRaised,
    Event,
    GateStatusChanged,
)
from remootio_controller.logging_abstraction import get_logger
from remootio_controller.metrics import start_metrics_server
from remootio_controller.orchestrator import DeviceOrchestrator
from remootio_controller.protocol.exceptions import ActionError
from remootio_controller.structs import ActionResult, DeviceIdentity
from remootio_controller.transport.types import Transport
from remootio_controller.transport.websocket import WebSocketTransport

logger = get_logger(__name__)

COMMANDS = ("status", "open", "close", "trigger", "query", "toggle", "watch")
DEFAULT_READY_TIMEOUT = 10.0

EXIT_OK = 0
EXIT_ACTION_FAILED = 1
EXIT_USAGE = 2


def find_device(orchestrator: DeviceOrchestrator, query: str) -> uuid.UUID | None:
    """Match ``query`` against managed device ids, then case-insensitive names."""
    try:
        wanted = uuid.UUID(query)
    except ValueError:
        pass
    else:
        return wanted if orchestrator.engine(wanted) is not None else None
    needle = query.casefold()
    for device_id in orchestrator.device_ids:
        record = orchestrator.record(device_id)
        if record is not None and record.name.casefold() == needle:
            return device_id
    return None


def format_event(event: Event, names: dict[uuid.UUID, str]) -> str | None:
    name = names.get(event.device_id, "?") if event.device_id else "-"
    if isinstance(event, ConnectionStateChanged):
        return f"{name}: {event.new.label}"
    if isinstance(event, GateStatusChanged):
        return f"{name}: {event.new.value}"
    if isinstance(event, DiagnosticRaised):
        return f"{name}: error: {event.message}"
    if isinstance(event, ActionCompleted):
        return f"{name}: {event.kind.value} → {event.result.message}"
    return None


class RemootioController:
    """Runs one CLI command against the configured devices."""

    lp: str = "RemootioController:"

    def __init__(self, args: argparse.Namespace) -> None:
        self.args: argparse.Namespace = args
        self.config_file: Path = Path(
            args.config or os.environ.get("REMOOTIO_CONFIG_FILE", REMOOTIO_CONFIG_FILE_PATH),
        ).expanduser()
        # Read after parse_cli so a --env file applies
        self.settings: RuntimeSettings = runtime_settings()
        self.store: InMemoryConfigStore = InMemoryConfigStore()
        self.orchestrator: DeviceOrchestrator = DeviceOrchestrator(
            self.store,
            engine_factory=self._build_engine,
            debounce_seconds=self.settings.reconcile_debounce,
            port=self.settings.port,
        )

    def _build_engine(self, identity: DeviceIdentity) -> ProtocolEngine:
        action_timeout = self.args.timeout if self.args.timeout is not None else self.settings.action_timeout
        return ProtocolEngine(
            identity,
            transport_factory=self._open_transport,
            keepalive_interval=self.settings.keepalive_interval,
            action_timeout=action_timeout,
            drop_on_mac_failure=self.settings.drop_on_mac_failure,
        )

    def _open_transport(self, identity: DeviceIdentity) -> Transport:
        return WebSocketTransport(identity.url, connect_timeout=self.settings.connect_timeout)

    async def start(self) -> int:
        """Load devices, run the command and tear everything down."""
        _ = ensure_correlation_id()
        if not self.config_file.exists():
            logger.error(
                " Configuration file not found",
                extra={"config_path": str(self.config_file)},
            )
            return EXIT_USAGE

        self.store.set_devices(load_devices(self.config_file))
        await self.orchestrator.start()
        if not self.orchestrator.device_ids:
            logger.error(" No valid devices configured", extra={"config_path": str(self.config_file)})
            await self.orchestrator.stop()
            return EXIT_USAGE

        metrics_port = self.args.metrics_port
        if metrics_port:
            start_metrics_server(metrics_port)
            logger.info(" Metrics exporter listening", extra={"port": metrics_port})

        try:
            if self.args.command == "status":
                return await self.status()
            if self.args.command == "watch":
                return await self.watch()
            return await self.act(self.args.command, self.args.device)
        finally:
            await self.orchestrator.stop()

    async def status(self) -> int:
        _ = await self.orchestrator.connect_all()
        engines = list(self.orchestrator.engines.values())
        _ = await asyncio.gather(*(e.wait_ready(self.args.ready_timeout) for e in engines))
        for snap in self.orchestrator.status_snapshot().values():
            line = f"{snap.name:<24} {snap.state.label:<16} {snap.status.value}"
            if snap.last_error:
                line += f"  ({snap.last_error})"
            print(line)
        return EXIT_OK

    async def act(self, command: str, device: str | None) -> int:
        if device is None:
            logger.error(" Command requires a device name or id", extra={"command": command})
            return EXIT_USAGE
        device_id = find_device(self.orchestrator, device)
        engine = self.orchestrator.engine(device_id) if device_id is not None else None
        if device_id is None or engine is None:
            logger.error(" Unknown device", extra={"device": device})
            return EXIT_USAGE

        _ = await engine.connect()
        if not await engine.wait_ready(self.args.ready_timeout):
            logger.error(" Device not ready", extra={"device": device, "error": engine.last_error or "timeout"})
            return EXIT_ACTION_FAILED

        try:
            result = await self._perform(command, device_id)
        except ActionError as e:
            logger.error(" Action failed: %s", e.reason, extra={"device": device, "command": command})
            return EXIT_ACTION_FAILED
        print(f"{engine.identity.name}: {result.message} ({engine.status.value})")
        return EXIT_OK

    async def _perform(self, command: str, device_id: uuid.UUID) -> ActionResult:
        """Run one orchestrator action.

        Raises:
            ActionError: the device rejected the action or was removed mid-flight

        """
        if command == "toggle":
            result = await self.orchestrator.toggle(device_id)
        else:
            result = await getattr(self.orchestrator, command)(device_id)
        if result is None:
            raise ActionError("device removed", kind=command.upper())
        if not result.success:
            raise ActionError(result.message, kind=command.upper())
        return result

    async def watch(self) -> int:
        names = {d: r.name for d in self.orchestrator.device_ids if (r := self.orchestrator.record(d)) is not None}

        def _print_event(event: Event) -> None:
            text = format_event(event, names)
            if text:
                print(text, flush=True)

        unsubscribe = self.orchestrator.subscribe(_print_event)
        try:
            _ = await self.orchestrator.connect_all()
            _ = await asyncio.Event().wait()
        finally:
            unsubscribe()
        return EXIT_OK


def parse_cli(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Remootio gate and garage door controller")
    _ = parser.add_argument("command", choices=COMMANDS, help="Command to run")
    _ = parser.add_argument("device", nargs="?", default=None, help="Device name or id (action commands)")
    _ = parser.add_argument("--config", help="Path to the device YAML file", default=None, type=Path)
    _ = parser.add_argument("--env", help="Path to the environment file", default=None, type=Path)
    _ = parser.add_argument("-D", "--debug", action="store_true", help="Enable debug mode")
    _ = parser.add_argument("--metrics-port", type=int, default=None, help="Start the Prometheus exporter on this port")
    _ = parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for an action response (default: wait until disconnect)",
    )
    _ = parser.add_argument(
        "--ready-timeout",
        type=float,
        default=DEFAULT_READY_TIMEOUT,
        help="Seconds to wait for authentication",
    )
    args = parser.parse_args(argv)

    if args.debug:
        get_logger(REMOOTIO_LOG_NAME).set_level(logging.DEBUG)
        logger.info("Debug mode enabled via CLI argument")

    if args.env:
        env_path = args.env.expanduser().resolve()
        if not env_path.exists():
            logger.error("Environment file not found", extra={"path": str(env_path)})
        elif dotenv.load_dotenv(env_path, override=True):
            logger.info(" Environment variables loaded", extra={"source": str(env_path)})
        else:
            logger.warning("No environment variables loaded from file", extra={"path": str(env_path)})

    if args.metrics_port is None:
        raw_port = os.environ.get("REMOOTIO_METRICS_PORT", "")
        args.metrics_port = int(raw_port) if raw_port.isdigit() else REMOOTIO_METRICS_PORT
    return args


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the remootio-controller CLI."""
    with correlation_context():
        logger.debug("Starting Remootio Controller", extra={"version": REMOOTIO_VERSION})
        args = parse_cli(argv)

        if runtime_settings().debug:
            get_logger(REMOOTIO_LOG_NAME).set_level(logging.DEBUG)

        controller = RemootioController(args)
        try:
            return uvloop.run(controller.start())
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down...")
            return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
