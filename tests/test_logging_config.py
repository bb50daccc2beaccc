"""Tests for the logging configuration."""

import json
import logging
import logging.handlers
import sys
from unittest.mock import patch

from serialingest.config import logging as log_mod
from serialingest.config.model import RuntimeConfig


def _record(name: str = "serialingest.pipeline", msg: str = "hello", **context) -> logging.LogRecord:
    record = logging.LogRecord(
        name=name,
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in context.items():
        setattr(record, key, value)
    return record


def test_formatter_lifts_bridge_context() -> None:
    record = _record(port="/dev/ttyACM0", status_code=503, attempt=2, url="http://127.0.0.1:8000/telemetry")

    payload = json.loads(log_mod.StructuredLogFormatter().format(record))

    assert payload["logger"] == "pipeline"
    assert payload["level"] == "WARNING"
    assert payload["message"] == "hello"
    assert payload["ts"].endswith("Z")
    assert payload["port"] == "/dev/ttyACM0"
    assert payload["status_code"] == 503
    assert payload["attempt"] == 2
    assert payload["url"] == "http://127.0.0.1:8000/telemetry"
    assert "task" not in payload


def test_formatter_ignores_unknown_extras_and_none_context() -> None:
    record = _record(custom_obj=object(), status_code=None)

    payload = json.loads(log_mod.StructuredLogFormatter().format(record))

    assert set(payload) == {"ts", "level", "logger", "message"}


def test_formatter_previews_long_raw_lines() -> None:
    short = json.loads(log_mod.StructuredLogFormatter().format(_record(raw_line=b"caf\xff")))
    assert short["raw_line"] == "caf\ufffd"

    long_line = "x" * 5000
    payload = json.loads(log_mod.StructuredLogFormatter().format(_record(raw_line=long_line)))
    assert payload["raw_line"].startswith("x" * log_mod.RAW_LINE_PREVIEW + "...")
    assert payload["raw_line"].endswith("(5000 chars)")


def test_formatter_includes_exception() -> None:
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord("serialingest", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

    payload = json.loads(log_mod.StructuredLogFormatter().format(record))

    assert payload["logger"] == "serialingest"
    assert "ValueError: boom" in payload["exception"]


def test_configure_logging_passes_settings_to_dict_config() -> None:
    with patch("serialingest.config.logging.dictConfig") as mock_dict_config:
        log_mod.configure_logging(RuntimeConfig(debug_logging=True))

    config_dict = mock_dict_config.call_args[0][0]
    handler_cfg = config_dict["handlers"]["serialingest"]
    assert handler_cfg["()"] is log_mod._build_handler
    assert handler_cfg["stream"] is False
    assert config_dict["formatters"]["structured"]["()"] is log_mod.StructuredLogFormatter
    assert config_dict["root"]["level"] == "DEBUG"


def test_build_handler_uses_first_existing_syslog_socket(tmp_path) -> None:
    fake_socket = tmp_path / "log"
    fake_socket.touch()

    with patch("serialingest.config.logging.SYSLOG_SOCKETS", (tmp_path / "missing", fake_socket)):
        handler = log_mod._build_handler()
    try:
        assert isinstance(handler, logging.handlers.SysLogHandler)
        assert handler.ident == log_mod.SYSLOG_IDENT
    finally:
        handler.close()


def test_build_handler_stream_requested(tmp_path) -> None:
    fake_socket = tmp_path / "log"
    fake_socket.touch()

    with patch("serialingest.config.logging.SYSLOG_SOCKETS", (fake_socket,)):
        handler = log_mod._build_handler(stream=True)
    assert type(handler) is logging.StreamHandler


def test_build_handler_falls_back_to_stream_without_syslog(tmp_path) -> None:
    with patch("serialingest.config.logging.SYSLOG_SOCKETS", (tmp_path / "missing",)):
        handler = log_mod._build_handler()
    assert type(handler) is logging.StreamHandler


def test_configure_logging_stream_end_to_end() -> None:
    log_mod.configure_logging(RuntimeConfig(log_stream=True))

    root = logging.getLogger()
    assert root.level == logging.INFO
    assert any(isinstance(h.formatter, log_mod.StructuredLogFormatter) for h in root.handlers)
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("transitions").level == logging.WARNING
