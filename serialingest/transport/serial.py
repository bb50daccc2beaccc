"""Supervised serial line source built on pyserial-asyncio-fast.

The connection lifecycle is an explicit state machine::

    disconnected --connect-->     connecting
    connecting   --opened-->      open
    connecting   --open_failed--> disconnected
    open         --fault-->       faulted
    faulted      --cleanup-->     disconnected

Lines are only read while ``open``. Leaving ``open`` closes the current
transport, so a handle never outlives its open period. Failed opens and lost
connections are both followed by a fixed ``reconnect_delay`` wait and the
supervisor retries forever until :meth:`ConnectionSupervisor.close` is called.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TYPE_CHECKING, Any, Final, cast

# pyserial-asyncio-fast is mandatory; a missing dependency must fail loudly.
import serial_asyncio_fast  # type: ignore
import tenacity
from transitions import Machine

from ..config.settings import RuntimeConfig
from ..state.context import RuntimeState
from .discovery import PortLister, discover_port

logger = logging.getLogger("serialingest.serial")

SerialOpener = Callable[..., Awaitable[tuple[asyncio.BaseTransport, asyncio.BaseProtocol]]]
SleepFunc = Callable[[float], Awaitable[None]]
StateListener = Callable[[str], None]

_CLOSED: Final = object()


class ConnectionOpenFailed(ConnectionError):
    """The device could not be opened."""

    def __init__(self, port: str, cause: BaseException) -> None:
        super().__init__(f"cannot open {port}: {cause}")
        self.port = port
        self.cause = cause


class ConnectionLost(ConnectionError):
    """An open stream ended because of a read error or a close."""


class SerialLineProtocol(asyncio.Protocol):
    """asyncio Protocol that splits the serial byte stream into text lines."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        *,
        delimiter: bytes,
        max_line_bytes: int,
        state: RuntimeState | None = None,
    ) -> None:
        self.loop = loop
        self.state = state
        self.transport: asyncio.Transport | None = None
        self.connected_future: asyncio.Future[None] = loop.create_future()
        self._delimiter = delimiter
        self._max_line_bytes = max_line_bytes
        self._buffer = bytearray()
        self._lines: asyncio.Queue[Any] = asyncio.Queue()
        self._close_reason: Exception | None = None

        # Discard state for oversized lines
        self._discarding = False

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = cast(asyncio.Transport, transport)
        logger.debug("Serial transport established.")
        if not self.connected_future.done():
            self.connected_future.set_result(None)

    def connection_lost(self, exc: Exception | None) -> None:
        self.transport = None
        self._close_reason = exc
        if not self.connected_future.done():
            self.connected_future.set_exception(exc or ConnectionError("Closed"))
        self._lines.put_nowait(_CLOSED)

    def data_received(self, data: bytes) -> None:
        self._buffer.extend(data)
        while True:
            index = self._buffer.find(self._delimiter)
            if index < 0:
                break
            chunk = bytes(self._buffer[:index])
            del self._buffer[: index + len(self._delimiter)]
            if self._discarding:
                # Tail of a line that was already flushed.
                self._discarding = False
                continue
            if len(chunk) > self._max_line_bytes:
                self._flush_oversized(len(chunk))
                continue
            self._emit(chunk)

        if len(self._buffer) > self._max_line_bytes:
            if not self._discarding:
                self._flush_oversized(len(self._buffer))
            # Keep a possible partial delimiter so the next chunk can finish it.
            keep = len(self._delimiter) - 1
            del self._buffer[: len(self._buffer) - keep]
            self._discarding = True

    def _flush_oversized(self, size: int) -> None:
        logger.warning("Serial line too large (%d > %d bytes), discarding.", size, self._max_line_bytes)
        if self.state is not None:
            self.state.record_oversized_line()

    def _emit(self, chunk: bytes) -> None:
        if self.state is not None:
            self.state.record_line()
        self._lines.put_nowait(chunk.decode("utf-8", errors="replace"))

    async def readline(self) -> str:
        """Return the next line, or raise :class:`ConnectionLost` once closed."""
        item = await self._lines.get()
        if item is _CLOSED:
            # Leave the marker in place so later calls fail the same way.
            self._lines.put_nowait(_CLOSED)
            reason = self._close_reason
            raise ConnectionLost(f"stream closed ({reason})" if reason else "stream closed")
        return cast(str, item)


class ConnectionSupervisor:
    """Owns the single serial handle and turns it into an endless line stream."""

    if TYPE_CHECKING:
        # FSM generated attributes for static analysis
        fsm_state: str
        trigger: Callable[..., bool]

    # FSM States
    STATE_DISCONNECTED = "disconnected"
    STATE_CONNECTING = "connecting"
    STATE_OPEN = "open"
    STATE_FAULTED = "faulted"

    def __init__(
        self,
        config: RuntimeConfig,
        state: RuntimeState,
        *,
        opener: SerialOpener | None = None,
        lister: PortLister | None = None,
        sleep: SleepFunc | None = None,
        state_listener: StateListener | None = None,
    ) -> None:
        self.config = config
        self._state = state
        self._opener = opener or serial_asyncio_fast.create_serial_connection
        self._lister = lister
        self._sleep = sleep or asyncio.sleep
        self._state_listener = state_listener
        self._reconnect_delay = config.reconnect_delay
        self._stop_event = asyncio.Event()
        self._transport: asyncio.BaseTransport | None = None
        self._protocol: SerialLineProtocol | None = None
        self._port: str | None = None

        # FSM Initialization
        self.state_machine = Machine(
            model=self,
            states=[
                self.STATE_DISCONNECTED,
                self.STATE_CONNECTING,
                {
                    "name": self.STATE_OPEN,
                    "on_exit": "_release_handle",
                },
                self.STATE_FAULTED,
            ],
            initial=self.STATE_DISCONNECTED,
            after_state_change="_on_state_change",
            ignore_invalid_triggers=True,
            model_attribute="fsm_state",
        )

        # FSM Transitions
        self.state_machine.add_transition(
            trigger="connect", source=self.STATE_DISCONNECTED, dest=self.STATE_CONNECTING
        )
        self.state_machine.add_transition(trigger="opened", source=self.STATE_CONNECTING, dest=self.STATE_OPEN)
        self.state_machine.add_transition(
            trigger="open_failed", source=self.STATE_CONNECTING, dest=self.STATE_DISCONNECTED
        )
        self.state_machine.add_transition(trigger="fault", source=self.STATE_OPEN, dest=self.STATE_FAULTED)
        self.state_machine.add_transition(
            trigger="cleanup", source=self.STATE_FAULTED, dest=self.STATE_DISCONNECTED
        )

    @property
    def port(self) -> str | None:
        return self._port

    @property
    def connected(self) -> bool:
        return self.fsm_state == self.STATE_OPEN

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _on_state_change(self) -> None:
        self._state.record_link_state(self.fsm_state)
        if self._state_listener is not None:
            self._state_listener(self.fsm_state)

    def _release_handle(self) -> None:
        transport, self._transport = self._transport, None
        self._protocol = None
        if transport is not None and not transport.is_closing():
            transport.close()

    def _cleanup_if_faulted(self) -> None:
        if self.fsm_state == self.STATE_FAULTED:
            self.trigger("cleanup")

    def _resolve_port(self) -> str:
        if self.config.auto_discovery:
            port = discover_port(self.config.serial_fallback_port, self._lister)
        else:
            port = self.config.serial_port
        self._port = port
        self._state.record_port_selected(port)
        return port

    def _before_sleep_log(self, retry_state: tenacity.RetryCallState) -> None:
        logger.warning(
            "Retrying serial connection in %.1fs... (attempt %d)",
            self._reconnect_delay,
            retry_state.attempt_number + 1,
        )

    async def _open_once(self) -> SerialLineProtocol:
        self.trigger("connect")
        port = self._resolve_port()
        baud = self.config.serial_baud
        loop = asyncio.get_running_loop()
        logger.info("Connecting to %s at %d baud...", port, baud, extra={"port": port, "baud": baud})

        protocol_factory = functools.partial(
            SerialLineProtocol,
            loop,
            delimiter=self.config.delimiter_bytes,
            max_line_bytes=self.config.max_line_bytes,
            state=self._state,
        )
        transport: asyncio.BaseTransport | None = None
        try:
            transport, proto = await self._opener(loop, protocol_factory, port, baudrate=baud)
            protocol = cast(SerialLineProtocol, proto)
            await protocol.connected_future
        except asyncio.CancelledError:
            if transport is not None:
                transport.close()
            self.trigger("open_failed")
            raise
        except (OSError, ValueError) as exc:
            # serial.SerialException derives from OSError.
            if transport is not None:
                transport.close()
            logger.warning("Failed to open serial port %s: %s", port, exc, extra={"port": port})
            self._state.record_open_failure(exc)
            self.trigger("open_failed")
            raise ConnectionOpenFailed(port, exc) from exc

        self._transport = transport
        self._protocol = protocol
        self.trigger("opened")
        self._state.record_connection_opened()
        logger.info("Serial port %s open.", port, extra={"port": port, "baud": baud})
        return protocol

    async def _open_with_retry(self) -> SerialLineProtocol | None:
        retryer = tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception_type(ConnectionOpenFailed),
            wait=tenacity.wait_fixed(self._reconnect_delay),
            stop=tenacity.stop_never,
            before_sleep=self._before_sleep_log,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retryer:
            with attempt:
                if self._stop_event.is_set():
                    return None
                protocol = await self._open_once()
                if self._stop_event.is_set():
                    # close() raced with a successful open.
                    self.trigger("fault")
                    self.trigger("cleanup")
                    return None
                return protocol
        return None

    async def lines(self) -> AsyncIterator[str]:
        """Yield raw lines across reconnects until :meth:`close` is called.

        Each open period reads from a fresh protocol; a lost connection ends
        that period, waits ``reconnect_delay`` in ``faulted`` and reconnects.
        """
        while not self._stop_event.is_set():
            protocol = await self._open_with_retry()
            if protocol is None:
                break

            lost = False
            try:
                while True:
                    yield await protocol.readline()
            except ConnectionLost as exc:
                lost = True
                self._state.record_connection_lost()
                if not self._stop_event.is_set():
                    logger.warning("Serial connection to %s lost: %s", self._port, exc, extra={"port": self._port})
            finally:
                if self.fsm_state == self.STATE_OPEN:
                    self.trigger("fault")
                if not lost:
                    # The consumer stopped iterating; nothing will reconnect.
                    self._cleanup_if_faulted()

            if self._stop_event.is_set():
                self._cleanup_if_faulted()
                break

            logger.info("Reconnecting to serial device in %.1fs...", self._reconnect_delay)
            await self._sleep(self._reconnect_delay)
            self._cleanup_if_faulted()

    def close(self) -> None:
        """Stop reconnecting and close the current handle. Safe to call twice."""
        if not self._stop_event.is_set():
            logger.info("Closing serial connection.")
        self._stop_event.set()
        if self.fsm_state == self.STATE_OPEN:
            self.trigger("fault")
        self._cleanup_if_faulted()


__all__ = [
    "ConnectionLost",
    "ConnectionOpenFailed",
    "ConnectionSupervisor",
    "SerialLineProtocol",
    "SerialOpener",
]
