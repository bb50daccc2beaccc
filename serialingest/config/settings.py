"""Settings loader for the serial ingest bridge.

Configuration is read once at startup from environment variables (see
:class:`~serialingest.config.schema.RuntimeConfigSchema` for the names) and is
immutable afterwards.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from urllib.parse import urlsplit

from marshmallow import ValidationError

from .model import RuntimeConfig
from .schema import RuntimeConfigSchema

logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Raised when the startup settings cannot produce a usable config."""

    def __init__(self, messages: Mapping[str, object]) -> None:
        self.messages = dict(messages)
        details = "; ".join(f"{key}: {value}" for key, value in sorted(self.messages.items()))
        super().__init__(f"Invalid configuration: {details}")


def _flatten_messages(messages: object) -> dict[str, object]:
    if isinstance(messages, dict):
        return {str(key): value for key, value in messages.items()}
    return {"_schema": messages}


def load_runtime_config(environ: Mapping[str, str] | None = None) -> RuntimeConfig:
    """Build a validated RuntimeConfig from *environ* (defaults to ``os.environ``)."""

    source = dict(os.environ if environ is None else environ)
    try:
        config = RuntimeConfigSchema().load(source)
    except ValidationError as exc:
        raise ConfigurationError(_flatten_messages(exc.messages)) from exc

    if config.api_url.startswith("http://") and not _is_loopback_url(config.api_url):
        logger.warning("Ingestion endpoint %s is plain HTTP; payloads are sent unencrypted.", config.api_url)
    return config


def _is_loopback_url(url: str) -> bool:
    return urlsplit(url).hostname in {"localhost", "127.0.0.1", "::1"}


__all__ = ["ConfigurationError", "RuntimeConfig", "load_runtime_config"]
