"""Logging abstraction layer for Remootio Controller.

Every module logs through ``get_logger(__name__)``. Handlers are attached once,
to the package logger (``remootio_controller``), and module loggers propagate
to it. Output is human-readable, JSON lines, or both; each record is stamped
with the current correlation id and any ``extra={...}`` context passed at the
call site.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO, cast

from typing_extensions import override

from remootio_controller.correlation import get_correlation_id

__all__ = [
    "HumanReadableFormatter",
    "JSONFormatter",
    "RemootioLogger",
    "get_logger",
]

# LogRecord attribute carrying the call-site context
CONTEXT_ATTR = "extra_data"
NO_CORRELATION = "--------"


def _context_of(record: logging.LogRecord) -> dict[str, object]:
    context = getattr(record, CONTEXT_ATTR, None)
    if isinstance(context, Mapping) and context:
        return dict(cast("Mapping[str, object]", context))
    return {}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
            "correlation_id": get_correlation_id(),
        }
        context = _context_of(record)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``time LEVEL [module:line] [corr-id] > message | key=value | ...``"""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s [%(module)s:%(lineno)d] [%(short_cid)s] > %(message)s",
            datefmt="%m/%d/%y %H:%M:%S",
        )

    @override
    def format(self, record: logging.LogRecord) -> str:
        correlation_id = get_correlation_id()
        record.short_cid = correlation_id[:8] if correlation_id else NO_CORRELATION
        line = super().format(record)
        context = _context_of(record)
        if not context:
            return line
        return " | ".join([line, *(f"{key}={value}" for key, value in context.items())])


def _open_handler(destination: str | Path, fallback: TextIO) -> logging.Handler:
    """Stream handler for ``stdout``/``stderr``, file handler for anything else.

    An unwritable file path falls back to ``fallback`` with a warning on stderr.
    """
    if destination == "stdout":
        return logging.StreamHandler(sys.stdout)
    if destination == "stderr":
        return logging.StreamHandler(sys.stderr)
    path = Path(destination).expanduser()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(path, mode="a")
    except OSError as e:
        print(f"Warning: cannot open log file {path}: {e}", file=sys.stderr)
        return logging.StreamHandler(fallback)


class RemootioLogger:
    """Thin wrapper over a stdlib logger accepting structured ``extra=`` context.

    The context is stored under a single record attribute so keys such as
    ``name`` or ``message`` never collide with reserved LogRecord fields.
    """

    def __init__(
        self,
        name: str,
        log_format: str = "human",
        json_file: str | Path | None = None,
        human_output: str | None = "stdout",
        *,
        attach_handlers: bool = True,
    ) -> None:
        """Initialize RemootioLogger.

        Args:
            name: Logger name (typically module name)
            log_format: "json", "human" or "both"
            json_file: JSON log file (JSON goes to stdout when unset)
            human_output: "stdout", "stderr" or a file path
            attach_handlers: False for module loggers that propagate to the package logger

        """
        self.name: str = name
        self.logger: logging.Logger = logging.getLogger(name)
        self.log_format: str = log_format
        if attach_handlers and not self.logger.handlers:
            from remootio_controller.const import REMOOTIO_DEBUG

            self.logger.setLevel(logging.DEBUG if REMOOTIO_DEBUG else logging.INFO)
            self._attach(json_file, human_output or "stdout")

    def _attach(self, json_file: str | Path | None, human_output: str) -> None:
        formatters: list[tuple[str | Path, TextIO, logging.Formatter]] = []
        if self.log_format in ("json", "both"):
            formatters.append((json_file or "stdout", sys.stderr, JSONFormatter()))
        if self.log_format in ("human", "both"):
            formatters.append((human_output, sys.stdout, HumanReadableFormatter()))

        for destination, fallback, formatter in formatters:
            handler = _open_handler(destination, fallback)
            handler.setFormatter(formatter)
            handler.setLevel(self.logger.level)
            self.logger.addHandler(handler)
        # The package logger owns output; don't repeat records through the root logger
        self.logger.propagate = False

    def _log(self, level: int, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        context = {CONTEXT_ATTR: dict(extra)} if extra else None
        # stacklevel=3: report the caller of info()/debug()/..., not this wrapper
        self.logger.log(level, msg, *args, extra=context, stacklevel=3)

    def debug(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.DEBUG, msg, *args, extra=extra)

    def info(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.INFO, msg, *args, extra=extra)

    def warning(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.WARNING, msg, *args, extra=extra)

    def error(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.ERROR, msg, *args, extra=extra)

    def exception(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        """Log at ERROR with the active exception's traceback."""
        context = {CONTEXT_ATTR: dict(extra)} if extra else None
        self.logger.exception(msg, *args, extra=context, stacklevel=2)

    def set_level(self, level: int) -> None:
        """Set the level on the logger and every handler it owns."""
        self.logger.setLevel(level)
        for handler in self.logger.handlers:
            handler.setLevel(level)

    @property
    def handlers(self) -> list[logging.Handler]:
        return self.logger.handlers


def get_logger(
    name: str,
    log_format: str | None = None,
    json_file: str | Path | None = None,
    human_output: str | None = None,
) -> RemootioLogger:
    """Get a RemootioLogger, configuring the package logger on first use.

    Module loggers under ``remootio_controller.`` get no handlers of their
    own; they propagate to the package logger, so ``set_level`` on that one
    logger governs the whole package.

    Args:
        name: Logger name
        log_format: Override REMOOTIO_LOG_FORMAT
        json_file: Override REMOOTIO_LOG_JSON_FILE
        human_output: Override REMOOTIO_LOG_HUMAN_OUTPUT

    """
    from remootio_controller.const import (
        REMOOTIO_LOG_FORMAT,
        REMOOTIO_LOG_HUMAN_OUTPUT,
        REMOOTIO_LOG_JSON_FILE,
        REMOOTIO_LOG_NAME,
    )

    log_format = log_format or REMOOTIO_LOG_FORMAT
    json_file = json_file or REMOOTIO_LOG_JSON_FILE
    human_output = human_output or REMOOTIO_LOG_HUMAN_OUTPUT

    is_module_logger = name.startswith(f"{REMOOTIO_LOG_NAME}.")
    if is_module_logger and not logging.getLogger(REMOOTIO_LOG_NAME).handlers:
        _ = RemootioLogger(REMOOTIO_LOG_NAME, log_format, json_file, human_output)

    return RemootioLogger(name, log_format, json_file, human_output, attach_handlers=not is_module_logger)
