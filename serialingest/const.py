"""Shared constants and defaults for the serial ingest bridge."""

from __future__ import annotations

from typing import Final

# Settings defaults
DEFAULT_SERIAL_PORT: Final[str] = "auto"
DEFAULT_SERIAL_BAUD: Final[int] = 115200
DEFAULT_FALLBACK_PORT: Final[str] = "/dev/ttyACM0"
DEFAULT_API_URL: Final[str] = "http://127.0.0.1:8000/telemetry"
DEFAULT_LINE_DELIMITER: Final[str] = "\n"
DEFAULT_RECONNECT_DELAY: Final[float] = 3.0
DEFAULT_POST_TIMEOUT: Final[float] = 5.0
DEFAULT_MAX_POST_RETRIES: Final[int] = 3
DEFAULT_MAX_LINE_BYTES: Final[int] = 64 * 1024
DEFAULT_SHUTDOWN_GRACE: Final[float] = 2.0
DEFAULT_DEBUG_LOGGING: Final[bool] = False
DEFAULT_LOG_STREAM: Final[bool] = False
DEFAULT_METRICS_ENABLED: Final[bool] = False
DEFAULT_METRICS_HOST: Final[str] = "127.0.0.1"
DEFAULT_METRICS_PORT: Final[int] = 9131

SERIAL_PORT_AUTO: Final[str] = "auto"
MIN_LINE_BYTES: Final[int] = 16

SUPPORTED_BAUDRATES: Final[frozenset[int]] = frozenset(
    {
        300, 600, 1200, 2400, 4800, 9600, 14400, 19200, 28800, 38400,
        57600, 74880, 115200, 230400, 250000, 460800, 500000, 921600,
        1000000, 2000000,
    }
)

# Reserved enrichment fields
INGESTED_AT_FIELD: Final[str] = "_ingested_at"
SOURCE_FIELD: Final[str] = "_source"
SOURCE_TAG: Final[str] = "arduino-serial"

JSON_CONTENT_TYPE: Final[str] = "application/json"

# Auto-discovery heuristics
DEVICE_HINT_PATTERN: Final[str] = r"arduino|wch|usb"
PLATFORM_PORT_PATTERN: Final[str] = r"^(COM\d+|/dev/tty(ACM|USB)\d+|/dev/cu\.usb\S*)$"

# Task supervision
SUPERVISOR_DEFAULT_MIN_BACKOFF: Final[float] = 1.0
SUPERVISOR_DEFAULT_MAX_BACKOFF: Final[float] = 30.0
SUPERVISOR_DEFAULT_RESTART_INTERVAL: Final[float] = 60.0
SUPERVISOR_MIN_RESTART_WINDOW: Final[float] = 10.0
SUPERVISOR_METRICS_MAX_RESTARTS: Final[int] = 5

# Environment variable names
ENV_SERIAL_PORT: Final[str] = "SERIAL_PORT"
ENV_SERIAL_BAUD: Final[str] = "SERIAL_BAUD"
ENV_SERIAL_FALLBACK_PORT: Final[str] = "SERIAL_FALLBACK_PORT"
ENV_API_URL: Final[str] = "API_URL"
ENV_LINE_DELIMITER: Final[str] = "LINE_DELIMITER"
ENV_RECONNECT_DELAY: Final[str] = "RECONNECT_DELAY"
ENV_POST_TIMEOUT: Final[str] = "POST_TIMEOUT"
ENV_MAX_POST_RETRIES: Final[str] = "MAX_POST_RETRIES"
ENV_MAX_LINE_BYTES: Final[str] = "MAX_LINE_BYTES"
ENV_SHUTDOWN_GRACE: Final[str] = "SHUTDOWN_GRACE"
ENV_DEBUG_LOGGING: Final[str] = "DEBUG_LOGGING"
ENV_LOG_STREAM: Final[str] = "LOG_STREAM"
ENV_METRICS_ENABLED: Final[str] = "METRICS_ENABLED"
ENV_METRICS_HOST: Final[str] = "METRICS_HOST"
ENV_METRICS_PORT: Final[str] = "METRICS_PORT"
