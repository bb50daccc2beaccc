"""Structured logging for the serial ingest bridge.

Every record becomes one JSON object. Bridge call sites attach their context
through ``extra=``: the serial ``port``, the endpoint ``url``, an HTTP
``status_code``, the delivery ``attempt``, the supervised ``task`` name and
the offending ``raw_line``. Those keys are lifted to the top level of the
object; anything else a caller attaches is ignored.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from logging.config import dictConfig
from logging.handlers import SysLogHandler
from pathlib import Path
from typing import Any, Final

import msgspec

from .model import RuntimeConfig

SYSLOG_SOCKETS: tuple[Path, ...] = (Path("/dev/log"), Path("/var/run/log"))
SYSLOG_IDENT: Final[str] = "serialingest: "

CONTEXT_KEYS: Final[tuple[str, ...]] = ("port", "baud", "url", "status_code", "attempt", "task")
RAW_LINE_PREVIEW: Final[int] = 200

# Third-party loggers that are too chatty at INFO for a long-running daemon.
_QUIET_LOGGERS: Final[tuple[str, ...]] = ("httpx", "httpcore", "transitions")

_encoder = msgspec.json.Encoder()


def _preview(raw: str | bytes) -> str:
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else str(raw)
    if len(text) <= RAW_LINE_PREVIEW:
        return text
    return f"{text[:RAW_LINE_PREVIEW]}... ({len(text)} chars)"


def _context_value(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


class StructuredLogFormatter(logging.Formatter):
    """Render a record as a single JSON line with the bridge context attached."""

    PREFIX = "serialingest."

    def format(self, record: logging.LogRecord) -> str:
        name = record.name.removeprefix(self.PREFIX)
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, Any] = {
            "ts": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": name,
            "message": record.getMessage(),
        }

        for key in CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = _context_value(value)

        raw_line = getattr(record, "raw_line", None)
        if raw_line is not None:
            payload["raw_line"] = _preview(raw_line)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return _encoder.encode(payload).decode("utf-8")


def _find_syslog_socket() -> Path | None:
    return next((path for path in SYSLOG_SOCKETS if path.exists()), None)


def _build_handler(stream: bool = False) -> logging.Handler:
    """Syslog when the daemon runs under a service manager, else stderr."""
    socket_path = None if stream else _find_syslog_socket()
    if socket_path is None:
        return logging.StreamHandler()
    handler = SysLogHandler(address=str(socket_path), facility=SysLogHandler.LOG_DAEMON)
    handler.ident = SYSLOG_IDENT
    return handler


def configure_logging(config: RuntimeConfig) -> None:
    level_name = "DEBUG" if config.debug_logging else "INFO"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"structured": {"()": StructuredLogFormatter}},
            "handlers": {
                "serialingest": {
                    "()": _build_handler,
                    "stream": config.log_stream,
                    "level": level_name,
                    "formatter": "structured",
                }
            },
            "root": {"level": level_name, "handlers": ["serialingest"]},
        }
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("serialingest").info(
        "Logging configured at %s (%s)",
        level_name,
        "stream" if config.log_stream else "syslog",
    )


__all__ = ["StructuredLogFormatter", "configure_logging"]
