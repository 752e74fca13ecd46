# concurrency.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from .model import JobStatus, RunResult
from .ui.console import get_console


@dataclass
class ActiveRun:
    key: str
    run_id: str
    cancel: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    started_at: float = field(default_factory=time.monotonic)
    superseded_by: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()


class RunRegistry(Protocol):
    def begin(self, key: str, run_id: str) -> ActiveRun: ...

    def record_job(self, active: ActiveRun, job: str, status: JobStatus) -> None: ...

    def end(self, active: ActiveRun, result: RunResult) -> None: ...


class LocalRunRegistry:
    """
    In-process concurrency groups: one active run per key.

    begin() on a key that already has an active run signals that run to cancel
    and waits (up to cancel_grace seconds) until it has settled, so the older
    run is cancelled before the newer run starts any job.
    """

    def __init__(self, cancel_grace: float = 60.0):
        self.cancel_grace = cancel_grace
        self._lock = threading.Lock()
        self._active: Dict[str, ActiveRun] = {}

    def active(self, key: str) -> Optional[ActiveRun]:
        with self._lock:
            return self._active.get(key)

    def begin(self, key: str, run_id: str) -> ActiveRun:
        new = ActiveRun(key=key, run_id=run_id)
        with self._lock:
            previous = self._active.get(key)
            self._active[key] = new

        if previous is not None and not previous.done.is_set():
            previous.superseded_by = run_id
            get_console().print_superseded(previous.run_id, by=run_id)
            previous.cancel.set()
            if not previous.done.wait(self.cancel_grace):
                get_console().print_info(
                    f"run {previous.run_id} did not settle within {self.cancel_grace:g}s; starting {run_id} anyway"
                )
        return new

    def record_job(self, active: ActiveRun, job: str, status: JobStatus) -> None:
        return None

    def end(self, active: ActiveRun, result: RunResult) -> None:
        active.done.set()
        with self._lock:
            if self._active.get(active.key) is active:
                del self._active[active.key]


_default_registry: Optional[LocalRunRegistry] = None


def default_registry() -> LocalRunRegistry:
    global _default_registry
    if _default_registry is None:
        _default_registry = LocalRunRegistry()
    return _default_registry
