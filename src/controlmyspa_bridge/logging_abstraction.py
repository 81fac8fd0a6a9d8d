"""Logging for the spa bridge.

Every module asks for a logger with ``get_logger(__name__)``. Records can be
written as JSON lines (for log shipping), as human-readable text, or both, and
each record carries the correlation id of the engine event that produced it.
Structured context goes in ``extra={...}``.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import cast, override

from controlmyspa_bridge.correlation import get_correlation_id

__all__ = [
    "BridgeLogger",
    "HumanReadableFormatter",
    "JSONFormatter",
    "get_logger",
    "quiet_foreign_loggers",
    "set_global_level",
]

_EXTRA_KEY = "spa_context"


def _context_of(record: logging.LogRecord) -> Mapping[str, object] | None:
    ctx = getattr(record, _EXTRA_KEY, None)
    if isinstance(ctx, Mapping) and ctx:
        return cast("Mapping[str, object]", ctx)
    return None


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
            "correlation_id": get_correlation_id(),
        }
        ctx = _context_of(record)
        if ctx:
            entry["context"] = dict(ctx)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Single-line text with the correlation id and trailing ``k=v`` context."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s [%(module)s:%(lineno)d] %(spa_cid)s > %(message)s",
            datefmt="%m/%d/%y %H:%M:%S",
        )

    @override
    def format(self, record: logging.LogRecord) -> str:
        cid = get_correlation_id()
        record.spa_cid = f"[{cid}]" if cid else "[-]"
        formatted = super().format(record)
        ctx = _context_of(record)
        if ctx:
            formatted = f"{formatted} | " + " ".join(f"{k}={v}" for k, v in ctx.items())
        return formatted


def _human_handler(output: str) -> logging.Handler:
    if output == "stdout":
        return logging.StreamHandler(sys.stdout)
    if output == "stderr":
        return logging.StreamHandler(sys.stderr)
    try:
        path = Path(output)
        path.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(path, mode="a")
    except OSError as e:
        print(f"Warning: cannot open log file {output}: {e}", file=sys.stderr)
        return logging.StreamHandler(sys.stdout)


class BridgeLogger:
    """Thin wrapper over :class:`logging.Logger` that accepts structured ``extra`` context."""

    def __init__(
        self,
        name: str,
        log_format: str = "human",
        json_file: str | Path | None = None,
        human_output: str | None = "stdout",
        debug: bool = False,
    ) -> None:
        self.name: str = name
        self.logger: logging.Logger = logging.getLogger(name)
        self.log_format: str = log_format
        self.logger.setLevel(logging.DEBUG if debug else logging.INFO)
        # loggers are process-wide; configure handlers only once per name
        if not self.logger.handlers:
            self._configure_handlers(json_file, human_output)

    def _configure_handlers(self, json_file: str | Path | None, human_output: str | None) -> None:
        if self.log_format in ("json", "both") and json_file:
            try:
                json_path = Path(json_file)
                json_path.parent.mkdir(parents=True, exist_ok=True)
                json_handler = logging.FileHandler(json_path, mode="a")
            except OSError as e:
                print(f"Warning: cannot open JSON log file {json_file}: {e}", file=sys.stderr)
            else:
                json_handler.setFormatter(JSONFormatter())
                self.logger.addHandler(json_handler)

        if self.log_format in ("human", "both") or not self.logger.handlers:
            handler = _human_handler(human_output or "stdout")
            handler.setFormatter(HumanReadableFormatter())
            self.logger.addHandler(handler)

    def _log(
        self,
        level: int,
        msg: str,
        *args: object,
        extra: Mapping[str, object] | None = None,
        exc_info: bool = False,
    ) -> None:
        payload = {_EXTRA_KEY: dict(extra)} if extra else None
        # stacklevel 3 skips _log and the level helper so records show the caller
        self.logger.log(level, msg, *args, extra=payload, exc_info=exc_info, stacklevel=3)

    def debug(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.DEBUG, msg, *args, extra=extra)

    def info(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.INFO, msg, *args, extra=extra)

    def warning(
        self,
        msg: str,
        *args: object,
        extra: Mapping[str, object] | None = None,
        exc_info: bool = False,
    ) -> None:
        self._log(logging.WARNING, msg, *args, extra=extra, exc_info=exc_info)

    def error(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.ERROR, msg, *args, extra=extra)

    def critical(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.CRITICAL, msg, *args, extra=extra)

    def exception(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        """Log at ERROR with the active exception's traceback."""
        self._log(logging.ERROR, msg, *args, extra=extra, exc_info=True)

    def set_level(self, level: int) -> None:
        """Set the level on the logger and all of its handlers."""
        self.logger.setLevel(level)
        for handler in self.logger.handlers:
            handler.setLevel(level)

    @property
    def handlers(self) -> list[logging.Handler]:
        return self.logger.handlers


_loggers: dict[str, BridgeLogger] = {}


def get_logger(name: str, log_format: str | None = None) -> BridgeLogger:
    """Get (or create) the :class:`BridgeLogger` for ``name``.

    Output format and destinations default to the ``SPA_LOG_*`` environment
    settings.

    Args:
        name: Logger name, normally the module's ``__name__``
        log_format: Override for ``SPA_LOG_FORMAT`` ("json", "human" or "both")

    Returns:
        BridgeLogger instance shared by every caller asking for ``name``

    """
    from controlmyspa_bridge.const import SPA_DEBUG, SPA_LOG_FORMAT, SPA_LOG_HUMAN_OUTPUT, SPA_LOG_JSON_FILE

    if name not in _loggers:
        _loggers[name] = BridgeLogger(
            name=name,
            log_format=log_format or SPA_LOG_FORMAT,
            json_file=SPA_LOG_JSON_FILE or None,
            human_output=SPA_LOG_HUMAN_OUTPUT,
            debug=SPA_DEBUG,
        )
    return _loggers[name]


def set_global_level(level: int) -> None:
    """Apply ``level`` to every bridge logger created so far."""
    for bridge_logger in _loggers.values():
        bridge_logger.set_level(level)


def quiet_foreign_loggers() -> None:
    """Keep chatty third-party libraries at WARNING."""
    for foreign in ("aiomqtt", "mqtt", "aiohttp", "asyncio"):
        logging.getLogger(foreign).setLevel(logging.WARNING)
