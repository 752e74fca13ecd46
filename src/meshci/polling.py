# polling.py
from __future__ import annotations

import threading
import time
from typing import Callable, Optional, TypeVar

from .errors import RunCancelled, WaitTimeout

T = TypeVar("T")


def wait_until(
    predicate: Callable[[], Optional[T]],
    *,
    interval: float,
    ceiling: float,
    what: str = "condition",
    clock: Callable[[], float] = time.monotonic,
    sleep: Optional[Callable[[float], None]] = None,
    cancel: Optional[threading.Event] = None,
) -> T:
    """
    Poll `predicate` every `interval` seconds until it returns something truthy.

    Fixed interval, no backoff, hard ceiling: the predicate is checked one last
    time at the ceiling and then WaitTimeout is raised. The last (falsy) value
    the predicate produced is attached to the error for diagnosis.

    With a `cancel` event the wait ends with RunCancelled as soon as it is set;
    unless an explicit `sleep` is given, the pause between polls is
    cancel.wait() so the signal is seen immediately.
    """
    if interval <= 0:
        raise ValueError("interval must be positive")

    def pause(seconds: float) -> None:
        if sleep is not None:
            sleep(seconds)
        elif cancel is not None:
            cancel.wait(seconds)
        else:
            time.sleep(seconds)

    start = clock()
    last: Optional[T] = None
    while True:
        if cancel is not None and cancel.is_set():
            raise RunCancelled(f"cancelled while waiting for {what}")

        last = predicate()
        if last:
            return last

        elapsed = clock() - start
        if elapsed >= ceiling:
            raise WaitTimeout(what=what, waited=elapsed, ceiling=ceiling, last=last)

        pause(min(interval, ceiling - elapsed))
