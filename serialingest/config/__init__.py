"""Configuration helpers for the serial ingest bridge."""

from .settings import ConfigurationError, RuntimeConfig, load_runtime_config

__all__ = ["ConfigurationError", "RuntimeConfig", "load_runtime_config"]
