"""Logging abstraction layer for the Tuya MQTT bridge.

Provides human-readable console output plus an optional size-rotated JSON
log file, correlation ids on every line, structured ``extra`` context and a
hook that records uncaught exceptions before the process exits.
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from collections.abc import Mapping
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import TracebackType
from typing import cast

from typing_extensions import override

__all__ = [
    "BridgeLogger",
    "HumanReadableFormatter",
    "JSONFormatter",
    "format_exception_chain",
    "get_logger",
    "install_exception_hook",
    "reconfigure_bridge_loggers",
    "set_bridge_log_level",
]

UNCAUGHT_LABEL = "UNCAUGHT EXCEPTION"

# One rotating handler per log file, shared by every logger writing to it
_json_handlers: dict[Path, RotatingFileHandler] = {}
_bridge_loggers: dict[str, BridgeLogger] = {}


def format_exception_chain(exc: BaseException) -> str:
    """Render an exception traceback followed by its ``Caused by`` chain."""
    lines = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__, chain=False)).rstrip()
    cause = exc.__cause__
    while cause is not None:
        lines += f"\nCaused by {type(cause).__name__}: {cause}"
        cause = cause.__cause__
    return lines


def _exc_from_record(record: logging.LogRecord) -> BaseException | None:
    if record.exc_info and record.exc_info[1] is not None:
        return record.exc_info[1]
    return None


class JSONFormatter(logging.Formatter):
    """Formatter that outputs structured JSON logs."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        from tuya_mqtt_bridge.correlation import get_correlation_id

        log_data: dict[str, object] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": getattr(record, "level_label", record.levelname),
            "logger": record.name,
            "module": record.module,
            "line": record.lineno,
            "message": record.getMessage(),
            "correlation_id": get_correlation_id(),
        }

        extra_data = getattr(record, "extra_data", None)
        if isinstance(extra_data, Mapping) and extra_data:
            log_data["context"] = dict(cast("Mapping[str, object]", extra_data))

        exc = _exc_from_record(record)
        if exc is not None:
            log_data["exception"] = format_exception_chain(exc)

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Formatter for console output: ``timestamp | LEVEL | [corr] message``."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s | %(level_label)s | %(correlation_id)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    @override
    def format(self, record: logging.LogRecord) -> str:
        """Format log record as human-readable text."""
        from tuya_mqtt_bridge.correlation import get_correlation_id

        correlation_id = get_correlation_id()
        record.correlation_id = f"[{correlation_id}]" if correlation_id else "[--------]"
        if not hasattr(record, "level_label"):
            record.level_label = record.levelname

        # exc_info is rendered by hand to include the cause chain
        exc = _exc_from_record(record)
        saved_exc_info, saved_exc_text = record.exc_info, record.exc_text
        record.exc_info, record.exc_text = None, None
        try:
            formatted = super().format(record)
        finally:
            record.exc_info, record.exc_text = saved_exc_info, saved_exc_text

        extra_data = getattr(record, "extra_data", None)
        if isinstance(extra_data, Mapping) and extra_data:
            context_map = cast("Mapping[str, object]", extra_data)
            context_str = " | ".join(f"{k}={v}" for k, v in context_map.items())
            formatted = f"{formatted} | {context_str}"

        if exc is not None:
            formatted = f"{formatted}\n{format_exception_chain(exc)}"
        return formatted


def _shared_json_handler(json_file: str | Path) -> RotatingFileHandler:
    """Return the rotating JSON handler for ``json_file``, creating it on first use.

    Raises:
        OSError: If the log directory or file cannot be created

    """
    from tuya_mqtt_bridge.const import LOG_FILE_MAX_BYTES

    json_path = Path(json_file).expanduser().resolve()
    handler = _json_handlers.get(json_path)
    if handler is None:
        json_path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(json_path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=1)
        handler.setFormatter(JSONFormatter())
        _json_handlers[json_path] = handler
    return handler


class BridgeLogger:
    """Logger wrapper with structured context and dual output.

    Human-readable lines go to stdout; JSON lines go to a rotating file when
    the format is ``json`` or ``both``.
    """

    def __init__(
        self,
        name: str,
        log_format: str = "human",
        json_file: str | Path | None = None,
    ) -> None:
        """Initialize BridgeLogger.

        Args:
            name: Logger name (typically module name)
            log_format: Output format - "json", "human", or "both"
            json_file: Path for the rotating JSON log file (None to disable)

        """
        from tuya_mqtt_bridge.const import LOG_LEVEL

        self.name: str = name
        self.logger: logging.Logger = logging.getLogger(name)
        self.log_format: str = log_format
        self.logger.setLevel(LOG_LEVEL)
        _bridge_loggers[name] = self

        if not self.logger.handlers:
            self._configure_handlers(json_file)

    def _configure_handlers(self, json_file: str | Path | None) -> None:
        handler_level = self.logger.level

        if self.log_format in ("json", "both") and json_file:
            try:
                json_handler = _shared_json_handler(json_file)
                json_handler.setLevel(handler_level)
                self.logger.addHandler(json_handler)
            except OSError as e:
                print(f"Warning: Failed to create JSON log file {json_file}: {e}", file=sys.stderr)

        if self.log_format in ("human", "both") or not self.logger.handlers:
            human_handler = logging.StreamHandler(sys.stdout)
            human_handler.setFormatter(HumanReadableFormatter())
            human_handler.setLevel(handler_level)
            self.logger.addHandler(human_handler)

    def _log(
        self,
        level: int,
        msg: str,
        *args: object,
        extra: Mapping[str, object] | None = None,
        exc_info: bool = False,
    ) -> None:
        extra_payload: Mapping[str, object] | None = None
        if extra:
            extra_payload = {"extra_data": dict(extra)}
        self.logger.log(level, msg, *args, extra=extra_payload, exc_info=exc_info)

    def debug(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        """Log debug message with optional structured context."""
        self._log(logging.DEBUG, msg, *args, extra=extra)

    def info(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        """Log info message with optional structured context."""
        self._log(logging.INFO, msg, *args, extra=extra)

    def warning(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        """Log warning message with optional structured context."""
        self._log(logging.WARNING, msg, *args, extra=extra)

    def error(
        self,
        msg: str,
        *args: object,
        extra: Mapping[str, object] | None = None,
        exc_info: bool = False,
    ) -> None:
        """Log error message with optional structured context."""
        self._log(logging.ERROR, msg, *args, extra=extra, exc_info=exc_info)

    def critical(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        """Log critical message with optional structured context."""
        self._log(logging.CRITICAL, msg, *args, extra=extra)

    def exception(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        """Log exception with traceback and optional structured context."""
        self._log(logging.ERROR, msg, *args, extra=extra, exc_info=True)

    def reconfigure(self, log_format: str, json_file: str | Path | None) -> None:
        """Replace this logger's handlers with ones for a new format and file."""
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
        self.log_format = log_format
        self._configure_handlers(json_file)

    def set_level(self, level: int) -> None:
        """Set logging level on the logger and all of its handlers."""
        self.logger.setLevel(level)
        for handler in self.logger.handlers:
            handler.setLevel(level)

    @property
    def handlers(self) -> list[logging.Handler]:
        """Get list of handlers."""
        return self.logger.handlers


def get_logger(
    name: str,
    log_format: str | None = None,
    json_file: str | Path | None = None,
) -> BridgeLogger:
    """Get or create a BridgeLogger instance.

    Args:
        name: Logger name
        log_format: Override default format ("json", "human", or "both")
        json_file: Override default JSON output file

    Returns:
        BridgeLogger instance

    """
    from tuya_mqtt_bridge.const import APP_LOG_FILE, APP_LOG_FORMAT

    return BridgeLogger(
        name=name,
        log_format=log_format or APP_LOG_FORMAT,
        json_file=json_file or APP_LOG_FILE,
    )


def install_exception_hook(logger: BridgeLogger) -> None:
    """Log uncaught exceptions as ``UNCAUGHT EXCEPTION`` before the interpreter exits."""

    def _hook(exc_type: type[BaseException], exc: BaseException, tb: TracebackType | None) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc, tb)
            return
        logger.logger.critical(
            "%s",
            exc,
            exc_info=(exc_type, exc, tb),
            extra={"level_label": UNCAUGHT_LABEL},
        )

    sys.excepthook = _hook


def reconfigure_bridge_loggers(log_format: str, json_file: str | Path | None) -> None:
    """Rebuild the handlers of every bridge logger created so far.

    Used after an env file changes ``APP_LOG_FORMAT`` or ``APP_LOG_FILE`` once
    the module loggers already exist. JSON files no longer in use are closed.
    """
    for bridge_logger in list(_bridge_loggers.values()):
        bridge_logger.reconfigure(log_format, json_file)

    in_use = {handler for bridge_logger in _bridge_loggers.values() for handler in bridge_logger.handlers}
    for path, handler in list(_json_handlers.items()):
        if handler not in in_use:
            handler.close()
            del _json_handlers[path]


def set_bridge_log_level(level: int) -> None:
    """Apply ``level`` to every bridge logger created so far, handlers included."""
    for name in list(logging.root.manager.loggerDict):
        if name == "tuya_mqtt_bridge" or name.startswith("tuya_mqtt_bridge."):
            std_logger = logging.getLogger(name)
            std_logger.setLevel(level)
            for handler in std_logger.handlers:
                handler.setLevel(level)
