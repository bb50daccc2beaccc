"""Data model for the serial ingest bridge configuration."""

from __future__ import annotations

from dataclasses import dataclass

from ..const import (
    DEFAULT_API_URL,
    DEFAULT_DEBUG_LOGGING,
    DEFAULT_FALLBACK_PORT,
    DEFAULT_LINE_DELIMITER,
    DEFAULT_LOG_STREAM,
    DEFAULT_MAX_LINE_BYTES,
    DEFAULT_MAX_POST_RETRIES,
    DEFAULT_METRICS_ENABLED,
    DEFAULT_METRICS_HOST,
    DEFAULT_METRICS_PORT,
    DEFAULT_POST_TIMEOUT,
    DEFAULT_RECONNECT_DELAY,
    DEFAULT_SERIAL_BAUD,
    DEFAULT_SERIAL_PORT,
    DEFAULT_SHUTDOWN_GRACE,
    SERIAL_PORT_AUTO,
)


@dataclass(frozen=True, slots=True)
class RuntimeConfig:
    """Strongly typed, read-only configuration for the bridge."""

    serial_port: str = DEFAULT_SERIAL_PORT
    serial_baud: int = DEFAULT_SERIAL_BAUD
    serial_fallback_port: str = DEFAULT_FALLBACK_PORT
    api_url: str = DEFAULT_API_URL
    line_delimiter: str = DEFAULT_LINE_DELIMITER
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    post_timeout: float = DEFAULT_POST_TIMEOUT
    max_post_retries: int = DEFAULT_MAX_POST_RETRIES
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES
    shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE
    debug_logging: bool = DEFAULT_DEBUG_LOGGING
    log_stream: bool = DEFAULT_LOG_STREAM
    metrics_enabled: bool = DEFAULT_METRICS_ENABLED
    metrics_host: str = DEFAULT_METRICS_HOST
    metrics_port: int = DEFAULT_METRICS_PORT

    @property
    def auto_discovery(self) -> bool:
        return self.serial_port.lower() == SERIAL_PORT_AUTO

    @property
    def delimiter_bytes(self) -> bytes:
        return self.line_delimiter.encode("utf-8")
