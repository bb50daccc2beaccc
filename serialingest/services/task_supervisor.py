"""Restart-on-failure supervision for the bridge's long-lived tasks."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

import tenacity

from ..const import (
    SUPERVISOR_DEFAULT_MAX_BACKOFF,
    SUPERVISOR_DEFAULT_MIN_BACKOFF,
    SUPERVISOR_DEFAULT_RESTART_INTERVAL,
    SUPERVISOR_MIN_RESTART_WINDOW,
)
from ..state.context import RuntimeState

_NEVER_RETRY: tuple[type[BaseException], ...] = (
    asyncio.CancelledError,
    SystemExit,
    KeyboardInterrupt,
    GeneratorExit,
)


class _SupervisorRetryState:
    """Tracks run time and reports failures between tenacity attempts."""

    def __init__(
        self,
        name: str,
        log: logging.Logger,
        state: RuntimeState | None,
        window: float,
    ) -> None:
        self.name = name
        self.log = log
        self.state = state
        self.window = window
        self.last_start_time = 0.0

    def mark_started(self) -> None:
        self.last_start_time = time.monotonic()

    def is_healthy_runtime(self) -> bool:
        if self.last_start_time <= 0:
            return False
        return (time.monotonic() - self.last_start_time) > self.window

    def before_sleep(self, retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        self.log.error(
            "%s failed (%s); restarting in %.1fs", self.name, exc, delay, exc_info=exc, extra={"task": self.name}
        )
        if self.state is not None and exc is not None:
            self.state.record_supervisor_failure(self.name, backoff=delay, exc=exc)

    def give_up(self, exc: BaseException, max_restarts: int) -> None:
        self.log.error("%s exceeded max restarts (%d); giving up", self.name, max_restarts, extra={"task": self.name})
        if self.state is not None:
            self.state.record_supervisor_failure(self.name, backoff=0.0, exc=exc, fatal=True)


async def supervise_task(
    name: str,
    coro_factory: Callable[[], Awaitable[None]],
    *,
    fatal_exceptions: tuple[type[BaseException], ...] = (),
    min_backoff: float = SUPERVISOR_DEFAULT_MIN_BACKOFF,
    max_backoff: float = SUPERVISOR_DEFAULT_MAX_BACKOFF,
    state: RuntimeState | None = None,
    max_restarts: int | None = None,
    restart_interval: float = SUPERVISOR_DEFAULT_RESTART_INTERVAL,
    logger: logging.Logger | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Run *coro_factory* and restart it with exponential backoff when it fails.

    A clean return ends supervision. Cancellation and *fatal_exceptions*
    propagate immediately. When ``max_restarts`` is set the last failure is
    re-raised once the budget is spent, unless the task had been running
    for longer than the restart window, which resets the budget.
    """
    log = logger or logging.getLogger("serialingest.supervisor")
    helper = _SupervisorRetryState(name, log, state, max(SUPERVISOR_MIN_RESTART_WINDOW, restart_interval))

    def _build_retryer() -> tenacity.AsyncRetrying:
        return tenacity.AsyncRetrying(
            wait=tenacity.wait_exponential(multiplier=min_backoff, max=max_backoff),
            retry=tenacity.retry_if_not_exception_type(_NEVER_RETRY + fatal_exceptions),
            stop=tenacity.stop_after_attempt(max_restarts + 1) if max_restarts is not None else tenacity.stop_never,
            before_sleep=helper.before_sleep,
            sleep=sleep,
            reraise=True,
        )

    try:
        while True:
            try:
                async for attempt in _build_retryer():
                    with attempt:
                        helper.mark_started()
                        await coro_factory()
                log.warning("%s task exited cleanly; supervisor exiting", name)
                if state is not None:
                    state.mark_supervisor_healthy(name)
                return
            except fatal_exceptions as exc:
                log.critical("%s failed with fatal exception: %s", name, exc)
                if state is not None:
                    state.record_supervisor_failure(name, backoff=0.0, exc=exc, fatal=True)
                raise
            except Exception as exc:
                if helper.is_healthy_runtime():
                    log.info("%s was healthy long enough; resetting backoff", name)
                    if state is not None:
                        state.mark_supervisor_healthy(name)
                    continue
                if max_restarts is not None:
                    helper.give_up(exc, max_restarts)
                raise
    except asyncio.CancelledError:
        log.debug("%s supervisor cancelled", name)
        raise


__all__ = ["supervise_task"]
