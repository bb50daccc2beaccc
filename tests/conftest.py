"""Pytest configuration for serial ingest bridge tests."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator
from typing import Any

import pytest
import serial

from serialingest.config.model import RuntimeConfig
from serialingest.state.context import RuntimeState, create_runtime_state


class FakeSerialTransport(asyncio.Transport):
    """In-memory stand-in for the pyserial-asyncio-fast transport."""

    def __init__(self, protocol: asyncio.Protocol) -> None:
        super().__init__()
        self._protocol = protocol
        self._closing = False

    def is_closing(self) -> bool:
        return self._closing

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        asyncio.get_running_loop().call_soon(self._protocol.connection_lost, None)

    def feed(self, data: bytes) -> None:
        self._protocol.data_received(data)

    def fail(self, exc: Exception) -> None:
        self._closing = True
        self._protocol.connection_lost(exc)


class FakeSerialOpener:
    """Awaitable replacement for ``create_serial_connection``.

    The first ``failures`` calls raise ``serial.SerialException``; successful
    opens feed ``initial_data`` into the new protocol right away.
    """

    def __init__(self, *, failures: int = 0, initial_data: bytes = b"") -> None:
        self.failures = failures
        self.initial_data = initial_data
        self.calls: list[tuple[str, int]] = []
        self.transports: list[FakeSerialTransport] = []

    async def __call__(
        self,
        loop: asyncio.AbstractEventLoop,
        protocol_factory: Callable[[], asyncio.Protocol],
        url: str,
        baudrate: int,
    ) -> tuple[FakeSerialTransport, asyncio.Protocol]:
        self.calls.append((url, baudrate))
        if len(self.calls) <= self.failures:
            raise serial.SerialException(f"could not open port {url}: [Errno 2] No such file or directory")
        protocol = protocol_factory()
        transport = FakeSerialTransport(protocol)
        protocol.connection_made(transport)
        self.transports.append(transport)
        if self.initial_data:
            transport.feed(self.initial_data)
        return transport, protocol


class RecordingSleep:
    """Injected sleep that records requested delays without waiting."""

    def __init__(self, hook: Callable[[float], Any] | None = None) -> None:
        self.delays: list[float] = []
        self._hook = hook

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._hook is not None:
            self._hook(delay)
        await asyncio.sleep(0)


@pytest.fixture
def runtime_config() -> RuntimeConfig:
    return RuntimeConfig(
        serial_port="/dev/ttyACM0",
        serial_baud=115200,
        api_url="http://127.0.0.1:8000/telemetry",
        reconnect_delay=3.0,
        post_timeout=5.0,
        max_post_retries=3,
        shutdown_grace=1.0,
        log_stream=True,
    )


@pytest.fixture
def runtime_state(runtime_config: RuntimeConfig) -> RuntimeState:
    return create_runtime_state(runtime_config)


@pytest.fixture
def fake_opener_factory() -> Callable[..., FakeSerialOpener]:
    return FakeSerialOpener


@pytest.fixture
def recording_sleep_factory() -> Callable[..., RecordingSleep]:
    return RecordingSleep


@pytest.fixture(autouse=True)
def reset_logging_handlers() -> Iterator[None]:
    """Close and remove all logging handlers after each test to prevent ResourceWarnings."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        try:
            handler.close()
        except (OSError, RuntimeError):
            pass
        root.removeHandler(handler)
