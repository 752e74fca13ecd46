# locks.py
# Mutual exclusion for the release advancer: two pushes to trunk must not
# compute and push the same version concurrently.
from __future__ import annotations

import os
import socket
import time
import uuid
from pathlib import Path
from typing import Any, Optional, Protocol

import psutil
import redis

from .errors import LockUnavailable
from .ui.console import get_console


class ReleaseLock(Protocol):
    def acquire(self) -> None: ...

    def release(self) -> None: ...

    def __enter__(self) -> "ReleaseLock": ...

    def __exit__(self, *exc: Any) -> None: ...


def _holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class _LockContext:
    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()


class RedisLock(_LockContext):
    """
    SET key token NX EX ttl; released only by the holder that set it.
    `client` is a sync redis client (redis.Redis) or anything with set/get/delete.
    """

    def __init__(self, client: Any, key: str = "meshci:release_lock", ttl: int = 600):
        self.client = client
        self.key = key
        self.ttl = ttl
        self.token = _holder()
        self._held = False

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisLock":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def acquire(self) -> None:
        if not self.client.set(self.key, self.token, nx=True, ex=self.ttl):
            holder = self.client.get(self.key)
            raise LockUnavailable(f"release lock {self.key} is held by {holder}")
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        if self.client.get(self.key) == self.token:
            self.client.delete(self.key)


class FileLock(_LockContext):
    """
    Exclusive-create lock file (O_CREAT | O_EXCL); the file holds the holder id.

    A lock left behind by a holder that died is broken: either its process is
    gone (same host) or the file is older than `ttl`, mirroring RedisLock's
    expiry.
    """

    def __init__(self, path: str | Path, ttl: int = 600):
        self.path = Path(path)
        self.ttl = ttl
        self.token = _holder()
        self._held = False

    def _stale(self, holder: str) -> bool:
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age > self.ttl:
            return True
        host, _, rest = holder.partition(":")
        pid = rest.partition(":")[0]
        if host == socket.gethostname() and pid.isdigit():
            return not psutil.pid_exists(int(pid))
        return False

    def _create(self) -> int:
        return os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = self._create()
        except FileExistsError:
            try:
                holder = self.path.read_text(encoding="utf-8").strip()
            except FileNotFoundError:
                holder = ""
            if not self._stale(holder):
                raise LockUnavailable(f"release lock {self.path} is held by {holder or 'unknown'}") from None
            get_console().print_info(f"Breaking stale release lock {self.path} (held by {holder or 'unknown'})")
            self.path.unlink(missing_ok=True)
            try:
                fd = self._create()
            except FileExistsError:
                # someone else broke it first
                raise LockUnavailable(f"release lock {self.path} was taken concurrently") from None
        with os.fdopen(fd, "w", encoding="utf-8") as fp:
            fp.write(self.token + "\n")
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        self.path.unlink(missing_ok=True)


def release_lock(redis_url: Optional[str], git_dir: str | Path) -> ReleaseLock:
    """RedisLock when a redis is configured (shared across hosts), else a lock file in the git dir."""
    if redis_url:
        return RedisLock.from_url(redis_url)
    return FileLock(Path(git_dir) / "meshci-release.lock")
