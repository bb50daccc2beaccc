"""Forwarding pipeline: serial lines in, HTTP deliveries out."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, Callable
from datetime import datetime

from ..codec import DecodeError, Record, decode, enrich, utcnow
from ..state.context import RuntimeState
from ..transport.http import DeliveryClient, DeliveryResult

logger = logging.getLogger("serialingest.pipeline")

Clock = Callable[[], datetime]


class ForwardingPipeline:
    """Decodes each line in arrival order and hands it off for delivery.

    Deliveries run as independent tasks; the pipeline never waits for one to
    finish before reading the next line, and completion order is whatever
    the network makes it. A bad line is logged and skipped without touching
    the connection or other deliveries.
    """

    def __init__(
        self,
        delivery: DeliveryClient,
        state: RuntimeState,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.delivery = delivery
        self.state = state
        self._clock = clock
        self._in_flight: set[asyncio.Task[DeliveryResult]] = set()
        self._accepting = True

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def stop_accepting(self) -> None:
        self._accepting = False

    async def run(self, lines: AsyncIterable[str]) -> None:
        async for raw in lines:
            if not self._accepting:
                break
            self.handle_line(raw)

    def handle_line(self, raw: str) -> asyncio.Task[DeliveryResult] | None:
        try:
            record = decode(raw)
        except DecodeError as exc:
            self.state.record_decode_error()
            logger.warning("Invalid JSON line, skipping: %s", exc.detail, extra={"raw_line": exc.raw})
            return None
        if record is None:
            return None
        return self.submit(enrich(record, self._clock()))

    def submit(self, record: Record) -> asyncio.Task[DeliveryResult]:
        task = asyncio.create_task(self.delivery.deliver(record), name="serialingest-delivery")
        self._in_flight.add(task)
        self.state.record_delivery_submitted()
        task.add_done_callback(self._on_delivery_done)
        return task

    def _on_delivery_done(self, task: asyncio.Task[DeliveryResult]) -> None:
        self._in_flight.discard(task)
        self.state.record_delivery_finished()
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # deliver() reports failures as values; anything raised is a bug.
            logger.error("Delivery task crashed: %s", exc, exc_info=exc)

    async def drain(self, timeout: float) -> None:
        """Give in-flight deliveries *timeout* seconds, then cancel the rest."""
        pending = set(self._in_flight)
        if not pending:
            return
        logger.info("Waiting up to %.1fs for %d in-flight deliveries", timeout, len(pending))
        if timeout > 0:
            _, pending = await asyncio.wait(pending, timeout=timeout)
        if pending:
            logger.warning("Cancelling %d unfinished deliveries", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)


__all__ = ["ForwardingPipeline"]
