# artifacts.py
from __future__ import annotations

import gzip
import io
import os
import tarfile
import uuid
import urllib.error
import urllib.request
from pathlib import Path
from typing import Dict, Iterable, List, Protocol, Tuple
from urllib.parse import quote, urljoin

from .errors import ArtifactError, ArtifactExists, ArtifactNotFound

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# The build job publishes ONE archive per run:
#   key = artifacts-<run_id>.tar.gz
# and every network test job fetches that same key. Entries are write-once:
# a second put on the same key is an error, reads are safe to run concurrently.
#
# Diagnostics bundles use the same store under diagnostics/<run_id>/<name>.
# ---------------------------------------------------------------------


class ArtifactStore(Protocol):
    def put(self, key: str, blob: bytes) -> None: ...

    def get(self, key: str) -> bytes: ...


def artifact_key(run_id: str) -> str:
    return f"artifacts-{run_id}.tar.gz"


def diagnostics_key(run_id: str, name: str) -> str:
    return f"diagnostics/{run_id}/{name}"


def _check_key(key: str) -> str:
    parts = key.split("/")
    if not key or key.startswith("/") or any(p in ("", ".", "..") for p in parts):
        raise ValueError(f"Invalid artifact key: {key!r}")
    return key


class LocalArtifactStore:
    """
    Directory-backed store:
      root/
        artifacts-<run_id>.tar.gz
        diagnostics/<run_id>/<name>
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.root / _check_key(key)

    def put(self, key: str, blob: bytes) -> None:
        dest = self.path_for(key)
        dest.parent.mkdir(parents=True, exist_ok=True)

        tmp = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp.write_bytes(blob)
            # link() refuses to replace an existing entry -> atomic write-once
            try:
                os.link(tmp, dest)
            except FileExistsError:
                raise ArtifactExists(key) from None
        finally:
            tmp.unlink(missing_ok=True)

    def get(self, key: str) -> bytes:
        path = self.path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise ArtifactNotFound(key) from None

    def keys(self, prefix: str = "") -> List[str]:
        out = []
        for p in sorted(self.root.rglob("*")):
            if p.is_file() and not p.name.startswith("."):
                rel = p.relative_to(self.root).as_posix()
                if rel.startswith(prefix):
                    out.append(rel)
        return out


class HttpArtifactStore:
    """Blob bucket behind plain HTTP: PUT <base>/<key> to publish, GET to fetch."""

    def __init__(self, base_url: str, headers: Dict[str, str] | None = None, timeout: float = 120.0):
        self.base_url = base_url.rstrip("/")
        self.headers = dict(headers or {})
        # per socket operation, so a stalled transfer fails instead of hanging
        self.timeout = timeout

    def _url(self, key: str) -> str:
        return urljoin(self.base_url + "/", quote(_check_key(key)))

    def put(self, key: str, blob: bytes) -> None:
        req = urllib.request.Request(
            self._url(key),
            data=blob,
            headers={"Content-Type": "application/octet-stream", "If-None-Match": "*", **self.headers},
            method="PUT",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response.read()
        except urllib.error.HTTPError as e:
            if e.code in (409, 412):
                raise ArtifactExists(key) from None
            raise ArtifactError(f"upload of {key} failed: {e.code} {e.reason}") from None
        except urllib.error.URLError as e:
            raise ArtifactError(f"upload of {key} failed: {e.reason}") from None
        except TimeoutError:
            raise ArtifactError(f"upload of {key} timed out after {self.timeout:g}s") from None

    def get(self, key: str) -> bytes:
        req = urllib.request.Request(self._url(key), headers=self.headers, method="GET")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                return response.read()
        except urllib.error.HTTPError as e:
            if e.code in (403, 404):
                raise ArtifactNotFound(key) from None
            raise ArtifactError(f"download of {key} failed: {e.code} {e.reason}") from None
        except urllib.error.URLError as e:
            raise ArtifactError(f"download of {key} failed: {e.reason}") from None
        except TimeoutError:
            raise ArtifactError(f"download of {key} timed out after {self.timeout:g}s") from None


def open_store(location: str) -> ArtifactStore:
    """http(s)://... -> HttpArtifactStore, anything else is a local directory."""
    if location.startswith(("http://", "https://")):
        return HttpArtifactStore(location)
    if location.startswith("file://"):
        location = location[len("file://"):]
    return LocalArtifactStore(location)


# ---------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------

def pack_files(files: Iterable[Tuple[str, bytes, int]]) -> bytes:
    """
    Deterministic tar.gz from (arcname, content, mode) triples:
    sorted members, zeroed mtime/owner so identical inputs give identical bytes.
    """
    buf = io.BytesIO()
    # gzip header mtime=0 keeps the outer stream reproducible too
    with gzip.GzipFile(fileobj=buf, mode="wb", mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w") as tar:
            for arcname, content, mode in sorted(files, key=lambda t: t[0]):
                info = tarfile.TarInfo(name=arcname)
                info.size = len(content)
                info.mode = mode
                info.mtime = 0
                info.uid = info.gid = 0
                info.uname = info.gname = ""
                tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def unpack_files(blob: bytes, dest: str | Path) -> List[Path]:
    """
    Extract regular files from a tar.gz into dest, refusing anything that would
    land outside it. Returns the extracted paths.
    """
    dest_p = Path(dest).resolve()
    dest_p.mkdir(parents=True, exist_ok=True)
    out: List[Path] = []

    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        for member in tar.getmembers():
            if not member.isfile():
                continue
            target = (dest_p / member.name).resolve()
            if dest_p != target and dest_p not in target.parents:
                raise ArtifactError(f"refusing to extract {member.name!r} outside {dest_p}")
            src = tar.extractfile(member)
            if src is None:
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(src.read())
            target.chmod(member.mode & 0o777 or 0o644)
            out.append(target)
    return out
