#!/usr/bin/env python3
"""Async orchestrator for the serial ingest bridge.

Architecture:
    main() -> BridgeDaemon -> TaskGroup
        ├── serial-pipeline (ConnectionSupervisor -> ForwardingPipeline)
        ├── prometheus-exporter (optional)
        └── shutdown watcher (SIGINT/SIGTERM)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from typing import Any, NoReturn

import httpx
import msgspec

# uvloop is mandatory; do not fall back to the default loop.
import uvloop

from .config.logging import configure_logging
from .config.model import RuntimeConfig
from .config.settings import ConfigurationError, load_runtime_config
from .const import (
    SUPERVISOR_DEFAULT_MAX_BACKOFF,
    SUPERVISOR_DEFAULT_MIN_BACKOFF,
    SUPERVISOR_DEFAULT_RESTART_INTERVAL,
    SUPERVISOR_METRICS_MAX_RESTARTS,
)
from .metrics import PrometheusExporter
from .services.pipeline import ForwardingPipeline
from .services.task_supervisor import supervise_task
from .state.context import create_runtime_state
from .transport.discovery import PortLister
from .transport.http import DeliveryClient
from .transport.serial import ConnectionSupervisor, SerialOpener

logger = logging.getLogger("serialingest")

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class SupervisedTaskSpec(msgspec.Struct):
    """Describes one supervised async task and its restart policy."""

    name: str
    factory: Callable[[], Awaitable[None]]
    max_restarts: int | None = None
    restart_interval: float = SUPERVISOR_DEFAULT_RESTART_INTERVAL
    min_backoff: float = SUPERVISOR_DEFAULT_MIN_BACKOFF
    max_backoff: float = SUPERVISOR_DEFAULT_MAX_BACKOFF


class BridgeDaemon:
    """Owns every bridge component for the lifetime of the process.

    Attributes:
        config: Immutable runtime configuration.
        state: Shared counters and link state.
        supervisor: The serial connection supervisor.
        delivery: HTTP delivery client shared by all records.
        pipeline: Line-to-delivery forwarding pipeline.
        exporter: Optional Prometheus exporter.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        *,
        opener: SerialOpener | None = None,
        lister: PortLister | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.state = create_runtime_state(config)
        self.supervisor = ConnectionSupervisor(config, self.state, opener=opener, lister=lister)
        self.delivery = DeliveryClient(config, self.state, client=http_client)
        self.pipeline = ForwardingPipeline(self.delivery, self.state)
        self.exporter: PrometheusExporter | None = None
        self._shutdown = asyncio.Event()
        self._signals_installed: list[signal.Signals] = []

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def request_shutdown(self, signum: int | None = None) -> None:
        """Termination hook: stop reading, close the serial handle, let run() return."""
        if self._shutdown.is_set():
            return
        if signum is not None:
            logger.info("Received %s; shutting down.", signal.Signals(signum).name)
        else:
            logger.info("Shutdown requested.")
        self.pipeline.stop_accepting()
        self.supervisor.close()
        self._shutdown.set()

    async def _run_pipeline(self) -> None:
        # Closing the stream releases the serial handle before any restart reopens it.
        async with contextlib.aclosing(self.supervisor.lines()) as lines:
            await self.pipeline.run(lines)

    def _setup_supervision(self) -> list[SupervisedTaskSpec]:
        specs = [
            SupervisedTaskSpec(name="serial-pipeline", factory=self._run_pipeline),
        ]
        if self.config.metrics_enabled:
            self.exporter = PrometheusExporter(self.state, self.config.metrics_host, self.config.metrics_port)
            specs.append(
                SupervisedTaskSpec(
                    name="prometheus-exporter",
                    factory=self.exporter.run,
                    max_restarts=SUPERVISOR_METRICS_MAX_RESTARTS,
                )
            )
        return specs

    async def _supervise(self, spec: SupervisedTaskSpec) -> None:
        try:
            await supervise_task(
                spec.name,
                spec.factory,
                state=self.state,
                max_restarts=spec.max_restarts,
                restart_interval=spec.restart_interval,
                min_backoff=spec.min_backoff,
                max_backoff=spec.max_backoff,
            )
        except Exception as exc:
            # Only optional tasks have a restart budget; losing one must not stop ingestion.
            logger.error("%s disabled after repeated failures: %s", spec.name, exc, exc_info=exc)

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        message = context.get("message", "Unhandled exception in event loop")
        logger.error("Uncaught asyncio error: %s", message, exc_info=exc)

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in _SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, int(sig))
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for %s not supported on this platform", sig.name)
                continue
            self._signals_installed.append(sig)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        while self._signals_installed:
            loop.remove_signal_handler(self._signals_installed.pop())

    async def run(self) -> None:
        """Main async entry point; returns once shutdown has been requested and handled."""
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._handle_loop_exception)
        self._install_signal_handlers(loop)
        specs = self._setup_supervision()

        try:
            async with self.delivery:
                async with asyncio.TaskGroup() as task_group:
                    tasks = [task_group.create_task(self._supervise(spec), name=spec.name) for spec in specs]
                    await self._shutdown.wait()
                    for task in tasks:
                        task.cancel()
                await self.pipeline.drain(self.config.shutdown_grace)
        except* Exception as exc_group:
            for group_exc in exc_group.exceptions:
                logger.critical("Unhandled exception in main task group: %s", group_exc, exc_info=group_exc)
            raise
        finally:
            self._remove_signal_handlers(loop)
            logger.info("Serial ingest bridge stopped.")


def main() -> NoReturn:  # pragma: no cover (Entry point wrapper)
    try:
        config = load_runtime_config()
    except ConfigurationError as exc:
        configure_logging(RuntimeConfig(log_stream=True))
        logger.critical("Startup aborted: %s", exc)
        sys.exit(1)

    configure_logging(config)
    logger.info(
        "Starting serial ingest bridge. Serial: %s@%d API: %s",
        config.serial_port,
        config.serial_baud,
        config.api_url,
    )

    try:
        daemon = BridgeDaemon(config)
        asyncio.run(daemon.run(), loop_factory=uvloop.new_event_loop)
        sys.exit(0)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        sys.exit(0)
    except ExceptionGroup as exc_group:
        for group_exc in exc_group.exceptions:
            logger.critical("Fatal error in task group: %s", group_exc, exc_info=group_exc)
        sys.exit(1)
    except OSError as exc:
        logger.critical("System/OS error during daemon execution: %s", exc, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
