from __future__ import annotations

import hashlib
import threading
from pathlib import Path
from typing import List

from meshci.artifacts import artifact_key
from meshci.dsl import gate, job, sh
from meshci.model import Job, JobStatus, Step
from meshci.runner import run_workflow
from meshci.step_workflows.build import build_job, publish_step
from meshci.step_workflows.network import NETWORK_STATE, fetch_binaries_step

COMPILE = (
    "mkdir -p target/x86_64-unknown-linux-musl/release && "
    "printf 'node-binary' > target/x86_64-unknown-linux-musl/release/sn_node && "
    "printf 'testnet-binary' > target/x86_64-unknown-linux-musl/release/testnet"
)


def test_build_job_shape(settings) -> None:
    j = build_job(settings)
    assert j.name == "build"
    assert j.runs_on == "self-hosted"
    assert j.env == {"CARGO_BUILD_TARGET": "x86_64-unknown-linux-musl"}
    assert [s.name for s in j.steps] == ["Build node binary", "Build testnet binary", "Package and publish binaries"]
    assert j.steps[-1].data["target_dir"] == "target/x86_64-unknown-linux-musl/release"


def test_built_once_and_every_test_job_gets_identical_bytes(
    tmp_path: Path, settings, store, registry, push_event
) -> None:
    seen: List[str] = []
    lock = threading.Lock()

    def record(ctx, step) -> None:
        instance = ctx.state[NETWORK_STATE]
        digest = hashlib.sha256((instance.bin_dir / "sn_node").read_bytes()).hexdigest()
        with lock:
            seen.append(digest)
        # the node binary is also placed where the bootstrap expects it
        assert (instance.node_home / "sn_node").read_bytes() == b"node-binary"

    suites = ["e2e", "api", "cli"]
    jobs = [
        job(
            "build",
            sh("Compile", COMPILE),
            publish_step(target_dir="target/x86_64-unknown-linux-musl/release"),
        ),
        *[
            Job(s, steps=[fetch_binaries_step(), Step(name="inspect", kind="record")], needs=["build"])
            for s in suites
        ],
        gate("ci", needs=suites),
    ]
    result = run_workflow(
        jobs,
        push_event,
        settings=settings,
        store=store,
        registry=registry,
        run_id="42",
        repo_root=tmp_path,
        handlers={"record": record},
    )

    assert result.passed, result.summary()
    assert store.keys() == [artifact_key("42")]
    assert len(seen) == 3
    assert set(seen) == {hashlib.sha256(b"node-binary").hexdigest()}


def test_publish_fails_when_binaries_are_missing(tmp_path: Path, settings, store, registry, push_event) -> None:
    jobs = [job("build", publish_step(target_dir="target/none/release"))]
    result = run_workflow(
        jobs, push_event, settings=settings, store=store, registry=registry, run_id="7", repo_root=tmp_path
    )

    assert result.status_of("build") is JobStatus.FAILED
    assert "build_output_missing" in result.jobs["build"].error
    assert store.keys() == []


def test_test_jobs_are_skipped_when_build_fails(tmp_path: Path, settings, store, registry, push_event) -> None:
    jobs = [
        job("build", sh("Compile", "exit 101")),
        Job("e2e", steps=[fetch_binaries_step()], needs=["build"]),
        gate("ci", ["e2e"]),
    ]
    result = run_workflow(jobs, push_event, settings=settings, store=store, registry=registry, repo_root=tmp_path)

    assert result.status_of("e2e") is JobStatus.SKIPPED
    assert result.status_of("ci") is JobStatus.FAILED
