from __future__ import annotations

import hashlib
import io
import socket
import tarfile
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from meshci.artifacts import (
    LocalArtifactStore,
    artifact_key,
    open_store,
    pack_files,
    unpack_files,
    HttpArtifactStore,
)
from meshci.errors import ArtifactError, ArtifactExists, ArtifactNotFound


def test_put_is_write_once(store: LocalArtifactStore) -> None:
    store.put("artifacts-1.tar.gz", b"first")
    with pytest.raises(ArtifactExists):
        store.put("artifacts-1.tar.gz", b"second")
    assert store.get("artifacts-1.tar.gz") == b"first"
    assert store.keys() == ["artifacts-1.tar.gz"]


def test_get_missing_key(store: LocalArtifactStore) -> None:
    with pytest.raises(ArtifactNotFound) as exc:
        store.get(artifact_key("nope"))
    assert "artifacts-nope.tar.gz" in str(exc.value)


@pytest.mark.parametrize("key", ["", "/abs", "../up", "a/../b", "a//b"])
def test_rejects_unsafe_keys(store: LocalArtifactStore, key: str) -> None:
    with pytest.raises(ValueError):
        store.put(key, b"x")


def test_concurrent_reads_are_identical(store: LocalArtifactStore) -> None:
    blob = pack_files([("sn_node", b"\x7fELF" * 1000, 0o755)])
    store.put(artifact_key("r"), blob)

    with ThreadPoolExecutor(max_workers=8) as pool:
        fetched = list(pool.map(lambda _: store.get(artifact_key("r")), range(16)))

    assert {hashlib.sha256(b).hexdigest() for b in fetched} == {hashlib.sha256(blob).hexdigest()}


def test_pack_is_deterministic_and_order_independent() -> None:
    a = pack_files([("testnet", b"t", 0o755), ("sn_node", b"n", 0o755)])
    b = pack_files([("sn_node", b"n", 0o755), ("testnet", b"t", 0o755)])
    assert a == b

    with tarfile.open(fileobj=io.BytesIO(a), mode="r:gz") as tar:
        members = tar.getmembers()
    assert [m.name for m in members] == ["sn_node", "testnet"]
    assert all(m.mtime == 0 and m.mode == 0o755 for m in members)


def test_unpack_restores_files_and_modes(tmp_path: Path) -> None:
    blob = pack_files([("sn_node", b"node", 0o755), ("docs/readme", b"hi", 0o644)])
    paths = unpack_files(blob, tmp_path / "out")

    assert sorted(p.relative_to(tmp_path / "out").as_posix() for p in paths) == ["docs/readme", "sn_node"]
    assert (tmp_path / "out" / "sn_node").read_bytes() == b"node"
    assert (tmp_path / "out" / "sn_node").stat().st_mode & 0o777 == 0o755


def test_unpack_refuses_path_traversal(tmp_path: Path) -> None:
    blob = pack_files([("../escape", b"x", 0o644)])
    with pytest.raises(ArtifactError):
        unpack_files(blob, tmp_path / "out")
    assert not (tmp_path / "escape").exists()


def test_open_store_picks_backend(tmp_path: Path) -> None:
    assert isinstance(open_store(str(tmp_path / "s")), LocalArtifactStore)
    assert isinstance(open_store(f"file://{tmp_path / 's2'}"), LocalArtifactStore)
    assert isinstance(open_store("https://blobs.example.com/ci"), HttpArtifactStore)


def test_http_store_gives_up_on_a_stalled_server() -> None:
    # accepts connections (via the backlog) but never answers
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(4)
    port = server.getsockname()[1]
    try:
        store = HttpArtifactStore(f"http://127.0.0.1:{port}/ci", timeout=0.3)
        started = time.monotonic()
        with pytest.raises(ArtifactError):
            store.get(artifact_key("42"))
        assert time.monotonic() - started < 5
    finally:
        server.close()
