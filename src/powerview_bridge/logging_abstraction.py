"""Logging abstraction layer for the PowerView bridge.

Every module logs through ``get_logger(__name__)``. Records carry the current
correlation id (one per discovery run, poll tick or shade command) and any
structured ``extra`` context, rendered either as JSON lines or as a single
human-readable line.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import cast, override

__all__ = [
    "HumanReadableFormatter",
    "JSONFormatter",
    "PowerViewLogger",
    "get_logger",
    "set_debug",
]

_loggers: dict[str, PowerViewLogger] = {}


def _context_of(record: logging.LogRecord) -> Mapping[str, object] | None:
    extra_data = getattr(record, "extra_data", None)
    if isinstance(extra_data, Mapping) and extra_data:
        return cast("Mapping[str, object]", extra_data)
    return None


def _open_handler(target: str) -> logging.Handler | None:
    """``stdout``/``stderr`` or a file path opened for append; None if the file cannot be opened."""
    if target == "stdout":
        return logging.StreamHandler(sys.stdout)
    if target == "stderr":
        return logging.StreamHandler(sys.stderr)
    try:
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(path, mode="a")
    except OSError as e:
        print(f"Warning: cannot open log file {target}: {e}", file=sys.stderr)
        return None



class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        from powerview_bridge.correlation import get_correlation_id

        log_data: dict[str, object] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
            "correlation_id": get_correlation_id(),
        }
        context = _context_of(record)
        if context:
            log_data["context"] = dict(context)
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """timestamp level [module:line] [corr-id] > message | key=value ..."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s [%(module)s:%(lineno)d] %(correlation_id)s > %(message)s",
            datefmt="%m/%d/%y %H:%M:%S",
        )

    @override
    def format(self, record: logging.LogRecord) -> str:
        from powerview_bridge.correlation import get_correlation_id

        correlation_id = get_correlation_id()
        record.correlation_id = f"[{correlation_id[:8]}]" if correlation_id else "[--------]"
        formatted = super().format(record)
        context = _context_of(record)
        if context:
            formatted = f"{formatted} | " + " | ".join(f"{k}={v}" for k, v in context.items())
        return formatted


class PowerViewLogger:
    """Thin wrapper over a stdlib logger that accepts structured ``extra`` context.

    Handlers are attached once per logger name; the level follows
    ``POWERVIEW_DEBUG`` until :func:`set_debug` changes it at runtime.
    """

    def __init__(
        self,
        name: str,
        log_format: str = "human",
        json_file: str | Path | None = None,
        human_output: str | None = "stdout",
    ) -> None:
        from powerview_bridge.const import POWERVIEW_DEBUG

        self.name: str = name
        self.logger: logging.Logger = logging.getLogger(name)
        self.log_format: str = log_format
        self.logger.setLevel(logging.DEBUG if POWERVIEW_DEBUG else logging.INFO)
        if not self.logger.handlers:
            self._configure_handlers(json_file, human_output)

    def _configure_handlers(self, json_file: str | Path | None, human_output: str | None) -> None:
        if self.log_format in ("json", "both") and json_file:
            handler = _open_handler(str(json_file))
            if handler is not None:
                self._attach(handler, JSONFormatter())
        if self.log_format in ("human", "both"):
            handler = _open_handler(human_output or "stdout") or logging.StreamHandler(sys.stdout)
            self._attach(handler, HumanReadableFormatter())

    def _attach(self, handler: logging.Handler, formatter: logging.Formatter) -> None:
        handler.setFormatter(formatter)
        handler.setLevel(self.logger.level)
        self.logger.addHandler(handler)

    def _log(self, level: int, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        payload = {"extra_data": dict(extra)} if extra else None
        self.logger.log(level, msg, *args, extra=payload)

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
        payload = {"extra_data": dict(extra)} if extra else None
        self.logger.exception(msg, *args, extra=payload)

    def set_level(self, level: int) -> None:
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
) -> PowerViewLogger:
    """Get (or create) the PowerViewLogger for ``name``.

    Unset arguments fall back to the ``POWERVIEW_LOG_*`` settings.
    """
    from powerview_bridge.const import (
        POWERVIEW_LOG_FORMAT,
        POWERVIEW_LOG_HUMAN_OUTPUT,
        POWERVIEW_LOG_JSON_FILE,
    )

    if name in _loggers:
        return _loggers[name]
    _loggers[name] = pv_logger = PowerViewLogger(
        name=name,
        log_format=log_format or POWERVIEW_LOG_FORMAT,
        json_file=json_file or POWERVIEW_LOG_JSON_FILE,
        human_output=human_output or POWERVIEW_LOG_HUMAN_OUTPUT,
    )
    return pv_logger


def set_debug(enabled: bool = True) -> None:
    """Switch every bridge logger created so far to DEBUG (or back to INFO)."""
    level = logging.DEBUG if enabled else logging.INFO
    for pv_logger in _loggers.values():
        pv_logger.set_level(level)
