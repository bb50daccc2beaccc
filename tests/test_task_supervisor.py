"""Tests for supervise_task and its retry callbacks."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import MagicMock

import pytest
import tenacity

from serialingest.services.task_supervisor import _SupervisorRetryState, supervise_task
from serialingest.state.context import RuntimeState


class _TestException(Exception):
    """A normal exception that can be retried."""


class _FatalException(Exception):
    """An exception that must not be retried."""


def _flaky(failures: int):
    calls = {"count": 0}

    async def _factory() -> None:
        calls["count"] += 1
        if calls["count"] <= failures:
            raise _TestException(f"failure {calls['count']}")

    return _factory, calls


@pytest.mark.asyncio
async def test_restarts_with_exponential_backoff_until_clean_exit(
    runtime_state: RuntimeState, recording_sleep_factory
) -> None:
    factory, calls = _flaky(2)
    sleep = recording_sleep_factory()

    await supervise_task("flaky", factory, state=runtime_state, sleep=sleep)

    assert calls["count"] == 3
    assert sleep.delays == [1.0, 2.0]
    stats = runtime_state.supervisor_stats["flaky"]
    assert stats.restarts == 2
    assert stats.backoff_seconds == 0.0
    assert stats.fatal is False
    assert "failure 2" in (stats.last_exception or "")


@pytest.mark.asyncio
async def test_gives_up_after_max_restarts(
    runtime_state: RuntimeState, recording_sleep_factory, caplog: pytest.LogCaptureFixture
) -> None:
    factory, calls = _flaky(100)

    with caplog.at_level(logging.ERROR, logger="serialingest.supervisor"):
        with pytest.raises(_TestException):
            await supervise_task(
                "exporter",
                factory,
                state=runtime_state,
                max_restarts=2,
                sleep=recording_sleep_factory(),
            )

    assert calls["count"] == 3
    assert runtime_state.supervisor_stats["exporter"].fatal is True
    assert runtime_state.supervisor_stats["exporter"].restarts == 3
    assert "exceeded max restarts (2)" in caplog.text


@pytest.mark.asyncio
async def test_fatal_exception_is_not_retried(runtime_state: RuntimeState, recording_sleep_factory) -> None:
    sleep = recording_sleep_factory()

    async def _factory() -> None:
        raise _FatalException("unrecoverable")

    with pytest.raises(_FatalException):
        await supervise_task(
            "fatal",
            _factory,
            fatal_exceptions=(_FatalException,),
            state=runtime_state,
            sleep=sleep,
        )

    assert sleep.delays == []
    assert runtime_state.supervisor_stats["fatal"].fatal is True


@pytest.mark.asyncio
async def test_cancellation_propagates(runtime_state: RuntimeState) -> None:
    started = asyncio.Event()

    async def _forever() -> None:
        started.set()
        await asyncio.Event().wait()

    task = asyncio.create_task(supervise_task("forever", _forever, state=runtime_state))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert "forever" not in runtime_state.supervisor_stats


def test_before_sleep_logs_task_name_and_delay() -> None:
    log = MagicMock(spec=logging.Logger)
    helper = _SupervisorRetryState("serial-pipeline", log, None, 10.0)

    retry_state = MagicMock(spec=tenacity.RetryCallState)
    retry_state.outcome = MagicMock()
    retry_state.outcome.exception.return_value = _TestException("boom")
    retry_state.next_action = MagicMock()
    retry_state.next_action.sleep = 2.5

    helper.before_sleep(retry_state)

    log.error.assert_called_once()
    args = log.error.call_args[0]
    assert "serial-pipeline" in args
    assert 2.5 in args


def test_before_sleep_records_backoff() -> None:
    state = MagicMock()
    helper = _SupervisorRetryState("serial-pipeline", MagicMock(spec=logging.Logger), state, 10.0)

    retry_state = MagicMock(spec=tenacity.RetryCallState)
    retry_state.outcome = MagicMock()
    retry_state.outcome.exception.return_value = _TestException("boom")
    retry_state.next_action = MagicMock()
    retry_state.next_action.sleep = 4.0

    helper.before_sleep(retry_state)

    state.record_supervisor_failure.assert_called_once()
    kwargs = state.record_supervisor_failure.call_args.kwargs
    assert kwargs["backoff"] == 4.0
    assert "fatal" not in kwargs


def test_give_up_marks_failure_fatal() -> None:
    state = MagicMock()
    log = MagicMock(spec=logging.Logger)
    helper = _SupervisorRetryState("exporter", log, state, 10.0)

    helper.give_up(_TestException("final"), 5)

    log.error.assert_called_once()
    assert state.record_supervisor_failure.call_args.kwargs["fatal"] is True
    _SupervisorRetryState("exporter", log, None, 10.0).give_up(_TestException("final"), 5)


def test_healthy_runtime_requires_window(monkeypatch: pytest.MonkeyPatch) -> None:
    helper = _SupervisorRetryState("x", MagicMock(spec=logging.Logger), None, 10.0)
    assert helper.is_healthy_runtime() is False

    monkeypatch.setattr("serialingest.services.task_supervisor.time.monotonic", lambda: 100.0)
    helper.mark_started()
    assert helper.is_healthy_runtime() is False
    monkeypatch.setattr("serialingest.services.task_supervisor.time.monotonic", lambda: 111.0)
    assert helper.is_healthy_runtime() is True
