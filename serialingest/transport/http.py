"""HTTP delivery of enriched records with a bounded linear backoff."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from types import TracebackType

import httpx
import msgspec
import tenacity

from ..codec import Record, encode
from ..config.settings import RuntimeConfig
from ..const import JSON_CONTENT_TYPE
from ..state.context import RuntimeState

logger = logging.getLogger("serialingest.delivery")

SleepFunc = Callable[[float], Awaitable[None]]


class DeliveryFailureKind(StrEnum):
    TRANSPORT = "transport"
    STATUS = "status"
    TIMEOUT = "timeout"


class DeliveryError(Exception):
    """One failed POST attempt. Never escapes :meth:`DeliveryClient.deliver`."""

    def __init__(self, kind: DeliveryFailureKind, detail: str, status_code: int | None = None) -> None:
        super().__init__(f"{kind}: {detail}")
        self.kind = kind
        self.detail = detail
        self.status_code = status_code


class Ack(msgspec.Struct, frozen=True):
    status_code: int
    attempts: int


class DeliveryFailed(msgspec.Struct, frozen=True):
    kind: DeliveryFailureKind
    attempts: int
    detail: str
    status_code: int | None = None


DeliveryResult = Ack | DeliveryFailed


class DeliveryClient:
    """POSTs records to the ingestion endpoint.

    Every call to :meth:`deliver` is independent: it makes one initial
    attempt plus up to ``max_post_retries`` retries, waiting
    ``post_timeout * n`` before retry ``n``. Only a 2xx answer counts as
    delivered. Exhausting the budget drops the record and reports
    :class:`DeliveryFailed`; nothing is raised to the caller.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        state: RuntimeState,
        *,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFunc | None = None,
    ) -> None:
        self.config = config
        self.state = state
        self._url = config.api_url
        self._timeout = config.post_timeout
        self._max_retries = config.max_post_retries
        self._sleep = sleep or asyncio.sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.post_timeout)
        self._closed = False

    async def __aenter__(self) -> DeliveryClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owns_client:
            await self._client.aclose()

    def _before_sleep_log(self, retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        remaining = self._max_retries + 1 - retry_state.attempt_number
        self.state.record_delivery_retry()
        status_code = exc.status_code if isinstance(exc, DeliveryError) else None
        logger.warning(
            "POST to %s failed (%s). Retrying in %.1fs (%d left)",
            self._url,
            exc,
            delay,
            remaining,
            extra={"url": self._url, "status_code": status_code, "attempt": retry_state.attempt_number},
        )

    def _build_retryer(self) -> tenacity.AsyncRetrying:
        return tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception_type(DeliveryError),
            stop=tenacity.stop_after_attempt(self._max_retries + 1),
            wait=tenacity.wait_incrementing(start=self._timeout, increment=self._timeout),
            before_sleep=self._before_sleep_log,
            sleep=self._sleep,
            reraise=True,
        )

    async def _post_once(self, body: bytes) -> int:
        try:
            response = await self._client.post(
                self._url,
                content=body,
                headers={"Content-Type": JSON_CONTENT_TYPE},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise DeliveryError(DeliveryFailureKind.TIMEOUT, f"no answer within {self._timeout:.1f}s") from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(DeliveryFailureKind.TRANSPORT, f"{exc.__class__.__name__}: {exc}") from exc

        if not response.is_success:
            raise DeliveryError(
                DeliveryFailureKind.STATUS,
                f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.status_code

    async def deliver(self, record: Record) -> DeliveryResult:
        body = encode(record)
        attempts = 0
        try:
            async for attempt in self._build_retryer():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    status_code = await self._post_once(body)
        except DeliveryError as exc:
            logger.error(
                "Dropping record after %d attempt(s) to %s: %s; payload=%s",
                attempts,
                self._url,
                exc,
                body.decode("utf-8", errors="replace"),
                extra={"url": self._url, "status_code": exc.status_code, "attempt": attempts},
            )
            self.state.record_delivery_dropped(str(exc), exc.status_code)
            return DeliveryFailed(
                kind=exc.kind,
                attempts=attempts,
                detail=exc.detail,
                status_code=exc.status_code,
            )

        logger.debug(
            "Delivered record to %s (HTTP %d, %d attempt(s))",
            self._url,
            status_code,
            attempts,
            extra={"url": self._url, "status_code": status_code, "attempt": attempts},
        )
        self.state.record_delivery_success(status_code)
        return Ack(status_code=status_code, attempts=attempts)


__all__ = [
    "Ack",
    "DeliveryClient",
    "DeliveryError",
    "DeliveryFailed",
    "DeliveryFailureKind",
    "DeliveryResult",
]
