# process.py
# Child process control shared by every step kind that shells out:
# timeouts, cooperative cancellation and process-tree teardown.

from __future__ import annotations

import subprocess
import threading
import time
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import psutil

from .errors import RunCancelled

# How often a waiting step wakes up to check for cancellation / deadline
POLL_SECONDS = 0.2
OUTPUT_TAIL = 4000


@dataclass
class Completed:
    returncode: int
    output: str

    @property
    def tail(self) -> str:
        return self.output[-OUTPUT_TAIL:]


class CommandTimeout(Exception):
    def __init__(self, timeout: float, output: str = ""):
        super().__init__(f"command timed out after {timeout:g}s")
        self.timeout = timeout
        self.output = output


def kill_tree(pid: int, *, grace: float = 3.0) -> None:
    """Terminate a process and all its descendants; kill whatever survives the grace period."""
    try:
        root = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    procs = root.children(recursive=True) + [root]
    terminate_processes(procs, grace=grace)


def terminate_processes(procs: Sequence[psutil.Process], *, grace: float = 3.0) -> List[psutil.Process]:
    """terminate -> wait(grace) -> kill. Returns the processes still alive afterwards."""
    for p in procs:
        with suppress(psutil.NoSuchProcess):
            p.terminate()

    _gone, alive = psutil.wait_procs(list(procs), timeout=grace)
    for p in alive:
        with suppress(psutil.NoSuchProcess):
            p.kill()

    _gone, alive = psutil.wait_procs(alive, timeout=grace)
    return list(alive)


def processes_running(executable: Path) -> List[psutil.Process]:
    """Live processes started from exactly this executable path."""
    target = str(Path(executable).resolve())
    found: List[psutil.Process] = []
    for p in psutil.process_iter(["pid", "exe", "cmdline", "status"]):
        info = p.info
        if info.get("status") == psutil.STATUS_ZOMBIE:
            continue
        exe = info.get("exe") or ""
        cmdline = info.get("cmdline") or []
        if exe == target or (cmdline and cmdline[0] == target):
            found.append(p)
    return found


def run_command(
    cmd: Union[str, Sequence[str]],
    *,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
) -> Completed:
    """
    Run a command to completion, capturing combined stdout/stderr.

    Raises CommandTimeout past `timeout` and RunCancelled once `cancel` is set;
    in both cases the whole process tree is killed first.
    """
    proc = subprocess.Popen(
        cmd,
        shell=isinstance(cmd, str),
        cwd=str(cwd) if cwd is not None else None,
        env=env,
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
    )

    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        try:
            out, _ = proc.communicate(timeout=POLL_SECONDS)
            return Completed(returncode=proc.returncode, output=out or "")
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_set():
                _abort(proc)
                raise RunCancelled(f"cancelled: {cmd}")
            if deadline is not None and time.monotonic() >= deadline:
                out = _abort(proc)
                raise CommandTimeout(timeout or 0.0, out)


def _abort(proc: subprocess.Popen) -> str:
    kill_tree(proc.pid, grace=1.0)
    with suppress(Exception):
        out, _ = proc.communicate(timeout=5)
        return out or ""
    return ""
