"""Prometheus exporter for the serial ingest bridge."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Iterator
from typing import Any, Final

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, InfoMetricFamily
from prometheus_client.registry import Collector

from .state.context import RuntimeState

logger = logging.getLogger("serialingest.metrics")

_NAMESPACE: Final[str] = "serialingest"

# snapshot section -> key -> (metric suffix, help text)
_COUNTERS: Final[dict[str, dict[str, tuple[str, str]]]] = {
    "serial": {
        "lines_received": ("serial_lines", "Lines read from the serial device"),
        "lines_oversized": ("serial_lines_oversized", "Lines discarded for exceeding the size limit"),
        "decode_errors": ("serial_decode_errors", "Lines that were not a single JSON object"),
        "open_failures": ("serial_open_failures", "Failed attempts to open the serial device"),
        "connections_opened": ("serial_connections_opened", "Successful serial device opens"),
        "connections_lost": ("serial_connections_lost", "Open serial connections that ended"),
    },
    "delivery": {
        "submitted": ("deliveries_submitted", "Records handed to the delivery client"),
        "succeeded": ("deliveries_succeeded", "Records acknowledged with a 2xx status"),
        "dropped": ("deliveries_dropped", "Records dropped after exhausting retries"),
        "retries": ("delivery_retries", "POST retries across all records"),
    },
}


class _RuntimeStateCollector(Collector):
    def __init__(self, state: RuntimeState) -> None:
        self._state = state

    def collect(self) -> Iterator[Any]:
        snapshot = self._state.build_metrics_snapshot()

        for section, keys in _COUNTERS.items():
            values = snapshot[section]
            for key, (suffix, doc) in keys.items():
                counter = CounterMetricFamily(f"{_NAMESPACE}_{suffix}", doc)
                counter.add_metric((), float(values[key]))
                yield counter

        link = snapshot["link"]
        yield self._gauge("serial_link_open", "1 while the serial device is open", 1.0 if link["open"] else 0.0)
        yield self._gauge("deliveries_in_flight", "Deliveries currently pending", snapshot["delivery"]["in_flight"])
        yield self._gauge("uptime_seconds", "Seconds since the bridge started", snapshot["uptime_seconds"])

        restarts = GaugeMetricFamily(
            f"{_NAMESPACE}_supervisor_restarts",
            "Restarts per supervised task",
            labels=("task",),
        )
        for name, stats in snapshot["supervisor"].items():
            restarts.add_metric((name,), float(stats["restarts"]))
        yield restarts

        info = InfoMetricFamily(f"{_NAMESPACE}_link", "Serial link details")
        info.add_metric(
            (),
            {
                "state": str(link["state"]),
                "port": str(link["port"] or ""),
                "baud": str(link["baud"]),
            },
        )
        yield info

    @staticmethod
    def _gauge(suffix: str, doc: str, value: float) -> GaugeMetricFamily:
        gauge = GaugeMetricFamily(f"{_NAMESPACE}_{suffix}", doc)
        gauge.add_metric((), float(value))
        return gauge


_SCRAPE_PATH: Final[bytes] = b"/metrics"
_REQUEST_TIMEOUT: Final[float] = 5.0
_PLAIN_TEXT: Final[str] = "text/plain; charset=utf-8"
_REASONS: Final[dict[int, str]] = {200: "OK", 400: "Bad Request", 404: "Not Found", 405: "Method Not Allowed"}


def _http_response(status: int, body: bytes, content_type: str) -> bytes:
    head = (
        f"HTTP/1.1 {status} {_REASONS[status]}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n\r\n"
    )
    return head.encode("ascii") + body


class PrometheusExporter:
    """Serves ``GET /metrics`` from a RuntimeState on a bare asyncio server.

    One request per connection; the scrape body is rendered on demand from
    the current snapshot. Bind errors propagate out of :meth:`run` so the
    task supervisor can retry or give up on the exporter.
    """

    def __init__(self, state: RuntimeState, host: str, port: int) -> None:
        self._host = host
        self._port = port
        self._server: asyncio.Server | None = None
        self._registry = CollectorRegistry(auto_describe=False)
        self._registry.register(_RuntimeStateCollector(state))
        self.ready = asyncio.Event()

    @property
    def port(self) -> int:
        """The bound port, which differs from the configured one when that was 0."""
        if self._server is not None and self._server.sockets:
            return int(self._server.sockets[0].getsockname()[1])
        return self._port

    def render(self) -> bytes:
        return generate_latest(self._registry)

    async def run(self) -> None:
        self._server = await asyncio.start_server(self._serve_scrape, self._host, self._port)
        logger.info("Metrics available at http://%s:%d%s", self._host, self.port, _SCRAPE_PATH.decode())
        self.ready.set()
        try:
            async with self._server:
                await self._server.serve_forever()
        finally:
            self.ready.clear()
            self._server = None

    async def _serve_scrape(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), _REQUEST_TIMEOUT)
            request_line = head.split(b"\r\n", 1)[0]
            writer.write(self._answer(request_line))
            await writer.drain()
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, TimeoutError, ConnectionError) as exc:
            logger.debug("Dropped metrics request: %r", exc)
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()

    def _answer(self, request_line: bytes) -> bytes:
        parts = request_line.split()
        if len(parts) != 3:
            return _http_response(400, b"malformed request line\n", _PLAIN_TEXT)
        method, target = parts[0], parts[1].split(b"?", 1)[0]
        if target != _SCRAPE_PATH:
            return _http_response(404, b"only /metrics is served\n", _PLAIN_TEXT)
        if method != b"GET":
            return _http_response(405, b"use GET\n", _PLAIN_TEXT)
        return _http_response(200, self.render(), CONTENT_TYPE_LATEST)


__all__ = ["PrometheusExporter"]
