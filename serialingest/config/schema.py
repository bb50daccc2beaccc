"""Marshmallow schema for RuntimeConfig validation."""

from __future__ import annotations

import codecs
from typing import Any, Dict

from marshmallow import EXCLUDE, Schema, ValidationError, fields, post_load, pre_load, validate, validates

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
    ENV_API_URL,
    ENV_DEBUG_LOGGING,
    ENV_LINE_DELIMITER,
    ENV_LOG_STREAM,
    ENV_MAX_LINE_BYTES,
    ENV_MAX_POST_RETRIES,
    ENV_METRICS_ENABLED,
    ENV_METRICS_HOST,
    ENV_METRICS_PORT,
    ENV_POST_TIMEOUT,
    ENV_RECONNECT_DELAY,
    ENV_SERIAL_BAUD,
    ENV_SERIAL_FALLBACK_PORT,
    ENV_SERIAL_PORT,
    ENV_SHUTDOWN_GRACE,
    MIN_LINE_BYTES,
    SUPPORTED_BAUDRATES,
)
from .model import RuntimeConfig


def _decode_escapes(value: str) -> str:
    """Turn a literal ``\\n`` (as typed in a shell) into the real character."""
    if "\\" not in value:
        return value
    try:
        return codecs.decode(value, "unicode_escape")
    except UnicodeDecodeError as exc:
        raise ValidationError(f"invalid escape sequence: {exc.reason}", field_name=ENV_LINE_DELIMITER) from exc


class RuntimeConfigSchema(Schema):
    """Declarative validation schema for the bridge settings.

    Field ``data_key`` values are the environment variable names, so the
    schema can load ``os.environ`` directly.
    """

    class Meta:
        unknown = EXCLUDE

    # Serial
    serial_port = fields.Str(
        data_key=ENV_SERIAL_PORT, load_default=DEFAULT_SERIAL_PORT, validate=validate.Length(min=1)
    )
    serial_baud = fields.Int(data_key=ENV_SERIAL_BAUD, load_default=DEFAULT_SERIAL_BAUD)
    serial_fallback_port = fields.Str(
        data_key=ENV_SERIAL_FALLBACK_PORT, load_default=DEFAULT_FALLBACK_PORT, validate=validate.Length(min=1)
    )
    line_delimiter = fields.Str(
        data_key=ENV_LINE_DELIMITER, load_default=DEFAULT_LINE_DELIMITER, validate=validate.Length(min=1)
    )
    reconnect_delay = fields.Float(
        data_key=ENV_RECONNECT_DELAY, load_default=DEFAULT_RECONNECT_DELAY, validate=validate.Range(min=0.0)
    )
    max_line_bytes = fields.Int(
        data_key=ENV_MAX_LINE_BYTES, load_default=DEFAULT_MAX_LINE_BYTES, validate=validate.Range(min=MIN_LINE_BYTES)
    )

    # HTTP delivery
    api_url = fields.Url(
        data_key=ENV_API_URL,
        load_default=DEFAULT_API_URL,
        schemes={"http", "https"},
        require_tld=False,
    )
    post_timeout = fields.Float(
        data_key=ENV_POST_TIMEOUT,
        load_default=DEFAULT_POST_TIMEOUT,
        validate=validate.Range(min=0.0, min_inclusive=False),
    )
    max_post_retries = fields.Int(
        data_key=ENV_MAX_POST_RETRIES, load_default=DEFAULT_MAX_POST_RETRIES, validate=validate.Range(min=0)
    )

    # System
    shutdown_grace = fields.Float(
        data_key=ENV_SHUTDOWN_GRACE, load_default=DEFAULT_SHUTDOWN_GRACE, validate=validate.Range(min=0.0)
    )
    debug_logging = fields.Bool(data_key=ENV_DEBUG_LOGGING, load_default=DEFAULT_DEBUG_LOGGING)
    log_stream = fields.Bool(data_key=ENV_LOG_STREAM, load_default=DEFAULT_LOG_STREAM)
    metrics_enabled = fields.Bool(data_key=ENV_METRICS_ENABLED, load_default=DEFAULT_METRICS_ENABLED)
    metrics_host = fields.Str(
        data_key=ENV_METRICS_HOST, load_default=DEFAULT_METRICS_HOST, validate=validate.Length(min=1)
    )
    metrics_port = fields.Int(
        data_key=ENV_METRICS_PORT, load_default=DEFAULT_METRICS_PORT, validate=validate.Range(min=0, max=65535)
    )

    @pre_load
    def normalize_environment(self, data: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        # Empty variables count as unset; everything but the delimiter is trimmed.
        normalized: Dict[str, Any] = {}
        for key, value in data.items():
            if isinstance(value, str):
                if key != ENV_LINE_DELIMITER:
                    value = value.strip()
                if value == "":
                    continue
            normalized[key] = value
        if isinstance(normalized.get(ENV_LINE_DELIMITER), str):
            normalized[ENV_LINE_DELIMITER] = _decode_escapes(normalized[ENV_LINE_DELIMITER])
        return normalized

    @validates("serial_baud")
    def validate_baudrate(self, value: int, **kwargs: Any) -> None:
        if value not in SUPPORTED_BAUDRATES:
            raise ValidationError(f"unsupported baud rate: {value}")

    @post_load
    def make_config(self, data: Dict[str, Any], **kwargs: Any) -> RuntimeConfig:
        return RuntimeConfig(**data)
