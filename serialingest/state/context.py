"""Runtime state container for the serial ingest bridge."""

from __future__ import annotations

import logging
import time
from typing import Any, Final

import msgspec

from ..config.settings import RuntimeConfig

logger = logging.getLogger("serialingest.state")

LINK_STATE_DISCONNECTED: Final[str] = "disconnected"


class SupervisorStats(msgspec.Struct):
    """Task supervisor statistics."""

    restarts: int = 0
    last_failure_unix: float = 0.0
    last_exception: str | None = None
    backoff_seconds: float = 0.0
    fatal: bool = False

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


class SerialLinkStats(msgspec.Struct):
    """Counters for the serial side of the bridge."""

    lines_received: int = 0
    lines_oversized: int = 0
    decode_errors: int = 0
    open_failures: int = 0
    connections_opened: int = 0
    connections_lost: int = 0
    last_open_error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


class DeliveryStats(msgspec.Struct):
    """Counters for the HTTP side of the bridge."""

    submitted: int = 0
    succeeded: int = 0
    dropped: int = 0
    retries: int = 0
    in_flight: int = 0
    last_status_code: int | None = None
    last_error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


def _supervisor_stats_factory() -> dict[str, SupervisorStats]:
    return {}


class RuntimeState(msgspec.Struct):
    """Aggregated mutable state shared across the bridge layers.

    Everything here is touched from the event loop thread only.
    """

    link_state: str = LINK_STATE_DISCONNECTED
    link_state_since: float = 0.0
    serial_port: str | None = None
    serial_baud: int = 0
    api_url: str = ""
    started_unix: float = 0.0
    serial: SerialLinkStats = msgspec.field(default_factory=SerialLinkStats)
    delivery: DeliveryStats = msgspec.field(default_factory=DeliveryStats)
    supervisor_stats: dict[str, SupervisorStats] = msgspec.field(default_factory=_supervisor_stats_factory)

    def configure(self, config: RuntimeConfig) -> None:
        self.serial_baud = config.serial_baud
        self.api_url = config.api_url
        if not config.auto_discovery:
            self.serial_port = config.serial_port

    # Serial link --------------------------------------------------------

    def record_link_state(self, state: str) -> None:
        if state != self.link_state:
            logger.debug("Serial link state %s -> %s", self.link_state, state)
        self.link_state = state
        self.link_state_since = time.time()

    def record_port_selected(self, port: str) -> None:
        self.serial_port = port

    def record_connection_opened(self) -> None:
        self.serial.connections_opened += 1
        self.serial.last_open_error = None

    def record_open_failure(self, exc: BaseException) -> None:
        self.serial.open_failures += 1
        self.serial.last_open_error = f"{exc.__class__.__name__}: {exc}"

    def record_connection_lost(self) -> None:
        self.serial.connections_lost += 1

    def record_line(self) -> None:
        self.serial.lines_received += 1

    def record_oversized_line(self) -> None:
        self.serial.lines_oversized += 1

    def record_decode_error(self) -> None:
        self.serial.decode_errors += 1

    # Delivery -----------------------------------------------------------

    def record_delivery_submitted(self) -> None:
        self.delivery.submitted += 1
        self.delivery.in_flight += 1

    def record_delivery_finished(self) -> None:
        self.delivery.in_flight = max(0, self.delivery.in_flight - 1)

    def record_delivery_retry(self) -> None:
        self.delivery.retries += 1

    def record_delivery_success(self, status_code: int) -> None:
        self.delivery.succeeded += 1
        self.delivery.last_status_code = status_code

    def record_delivery_dropped(self, detail: str, status_code: int | None = None) -> None:
        self.delivery.dropped += 1
        self.delivery.last_error = detail
        if status_code is not None:
            self.delivery.last_status_code = status_code

    # Task supervision ---------------------------------------------------

    def record_supervisor_failure(
        self,
        name: str,
        *,
        backoff: float,
        exc: BaseException,
        fatal: bool = False,
    ) -> None:
        stats = self.supervisor_stats.get(name)
        if stats is None:
            stats = SupervisorStats()
            self.supervisor_stats[name] = stats
        stats.restarts += 1
        stats.last_failure_unix = time.time()
        stats.last_exception = f"{exc.__class__.__name__}: {exc}"
        stats.backoff_seconds = backoff
        stats.fatal = fatal

    def mark_supervisor_healthy(self, name: str) -> None:
        stats = self.supervisor_stats.get(name)
        if stats is None:
            return
        stats.backoff_seconds = 0.0
        stats.fatal = False

    # Snapshots ----------------------------------------------------------

    def build_metrics_snapshot(self) -> dict[str, Any]:
        uptime = time.time() - self.started_unix if self.started_unix else 0.0
        return {
            "uptime_seconds": uptime,
            "link": {
                "state": self.link_state,
                "open": self.link_state == "open",
                "port": self.serial_port,
                "baud": self.serial_baud,
            },
            "serial": self.serial.as_dict(),
            "delivery": self.delivery.as_dict(),
            "supervisor": {name: stats.as_dict() for name, stats in self.supervisor_stats.items()},
        }


def create_runtime_state(config: RuntimeConfig) -> RuntimeState:
    state = RuntimeState()
    state.configure(config)
    state.started_unix = time.time()
    return state


__all__ = [
    "DeliveryStats",
    "RuntimeState",
    "SerialLinkStats",
    "SupervisorStats",
    "create_runtime_state",
]
