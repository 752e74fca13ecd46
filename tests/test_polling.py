from __future__ import annotations

import threading
import time

import pytest

from meshci.errors import RunCancelled, WaitTimeout
from meshci.polling import wait_until


def test_returns_first_truthy_value(clock) -> None:
    values = iter([None, 0, "", "ready"])
    result = wait_until(lambda: next(values), interval=5, ceiling=60, clock=clock, sleep=clock.sleep)
    assert result == "ready"
    assert clock.sleeps == [5, 5, 5]


def test_never_waits_past_the_ceiling(clock) -> None:
    with pytest.raises(WaitTimeout) as exc:
        wait_until(lambda: [], interval=7, ceiling=30, what="nothing", clock=clock, sleep=clock.sleep)

    # 0, 7, 14, 21, 28 and a final check at exactly 30
    assert clock.sleeps == [7, 7, 7, 7, 2]
    assert clock.now == 30
    assert exc.value.waited == 30
    assert exc.value.last == []
    assert "nothing" in str(exc.value)


def test_rejects_non_positive_interval(clock) -> None:
    with pytest.raises(ValueError):
        wait_until(lambda: True, interval=0, ceiling=1, clock=clock, sleep=clock.sleep)


def test_cancel_ends_the_wait(clock) -> None:
    cancel = threading.Event()
    calls = []

    def predicate():
        calls.append(clock.now)
        if len(calls) == 3:
            cancel.set()
        return None

    with pytest.raises(RunCancelled):
        wait_until(predicate, interval=5, ceiling=300, clock=clock, sleep=clock.sleep, cancel=cancel)

    assert calls == [0, 5, 10]


def test_cancel_interrupts_the_pause() -> None:
    cancel = threading.Event()
    threading.Timer(0.1, cancel.set).start()
    started = time.monotonic()

    with pytest.raises(RunCancelled):
        wait_until(lambda: None, interval=30, ceiling=60, cancel=cancel)

    assert time.monotonic() - started < 5
