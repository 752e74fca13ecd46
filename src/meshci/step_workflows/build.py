# step_workflows/build.py
from __future__ import annotations

from pathlib import Path
from typing import List, Sequence, Tuple

from ..artifacts import artifact_key, pack_files
from ..errors import CIError
from ..model import Job, Step, StepContext
from ..settings import NODE_BIN, TESTNET_BIN, Settings
from ..ui.console import get_console
from .shell import step_cwd

BUILD_JOB = "build"


# ---------------------------------------------------------------------
# Build step helpers
# ---------------------------------------------------------------------

def publish_step(
    name: str = "Package and publish binaries",
    *,
    binaries: Sequence[str] = (NODE_BIN, TESTNET_BIN),
    target_dir: str,
    timeout: float | None = 600,
) -> Step:
    """Package the compiled binaries into one archive and publish it under the run's key."""
    return Step(
        name=name,
        kind="publish_artifacts",
        data={"binaries": list(binaries), "target_dir": target_dir},
        timeout=timeout,
    )


def build_job(
    settings: Settings,
    *,
    name: str = BUILD_JOB,
    runs_on: str = "self-hosted",
    needs: List[str] | None = None,
) -> Job:
    """
    Compile the node and testnet binaries once per run for a fixed target
    triple and publish them; every network test job depends on this job.
    """
    target = settings.build_target
    return Job(
        name=name,
        runs_on=runs_on,
        needs=list(needs or []),
        env={"CARGO_BUILD_TARGET": target},
        requires=["cargo"],
        steps=[
            Step(
                name="Build node binary",
                run=f"cargo build --release --bin {NODE_BIN}",
                timeout=60 * 60,
            ),
            Step(
                name="Build testnet binary",
                run=f"cargo build --release --bin {TESTNET_BIN}",
                timeout=60 * 60,
            ),
            publish_step(target_dir=f"target/{target}/release"),
        ],
    )


# ---------------------------------------------------------------------
# Packaging
# ---------------------------------------------------------------------

def package_binaries(paths: Sequence[Path]) -> bytes:
    """Single archive with every binary at its root, executable bits set."""
    files: List[Tuple[str, bytes, int]] = []
    for p in paths:
        files.append((p.name, p.read_bytes(), 0o755))
    return pack_files(files)


def run_publish(ctx: StepContext, step: Step) -> None:
    target_dir = step_cwd(ctx, step) / step.data["target_dir"]
    binaries = [target_dir / b for b in step.data["binaries"]]

    missing = [str(b) for b in binaries if not b.is_file()]
    if missing:
        raise CIError(
            kind="build_output_missing",
            job=ctx.job.name,
            step=step.name,
            message="compiled binaries not found",
            details={"missing": missing},
        )

    blob = package_binaries(binaries)
    key = artifact_key(ctx.run_id)
    ctx.store.put(key, blob)
    ctx.state["artifact_key"] = key
    get_console().print_info(f"[{ctx.job.name}] published {key} ({len(blob)} bytes)")


HANDLERS = {"publish_artifacts": run_publish}
