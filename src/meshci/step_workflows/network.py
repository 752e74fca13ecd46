# step_workflows/network.py
from __future__ import annotations

import os
import shutil
import stat
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

import psutil

from ..artifacts import artifact_key, unpack_files
from ..errors import CIError, ConvergenceTimeout, WaitTimeout
from ..joinlog import DirectoryLogSource, LogSource, joined_nodes
from ..model import Criticality, Step, StepContext, When
from ..polling import wait_until
from ..process import processes_running, terminate_processes
from ..settings import NODE_BIN, TESTNET_BIN
from ..ui.console import get_console
from .shell import execute, step_cwd

NETWORK_STATE = "network"


# ---------------------------------------------------------------------
# Network instance
# ---------------------------------------------------------------------

@dataclass
class NetworkInstance:
    """
    The ephemeral set of node processes owned by one job.

    Everything that needs to look at the running network goes through this
    handle (log_source, live_nodes) rather than a hardcoded path, so two
    instances with different node homes can share a host.
    """
    bin_dir: Path
    node_home: Path
    node_count: int
    join_interval_ms: int
    home: Optional[Path] = None
    extra_nodes: List[subprocess.Popen] = field(default_factory=list)

    @property
    def node_binary(self) -> Path:
        return self.node_home / NODE_BIN

    @property
    def bootstrap_binary(self) -> Path:
        return self.bin_dir / TESTNET_BIN

    @property
    def log_dir(self) -> Path:
        return self.node_home / "local-test-network"

    @property
    def log_source(self) -> LogSource:
        return DirectoryLogSource(self.log_dir)

    def env(self) -> Dict[str, str]:
        """
        Environment for processes that talk to this instance. With a private
        HOME the nodes keep their state under it; cargo and rustup stay on the
        real home.
        """
        if self.home is None:
            return {}
        real = Path.home()
        return {
            "HOME": str(self.home),
            "CARGO_HOME": os.environ.get("CARGO_HOME", str(real / ".cargo")),
            "RUSTUP_HOME": os.environ.get("RUSTUP_HOME", str(real / ".rustup")),
        }

    def live_nodes(self) -> List[psutil.Process]:
        procs = {p.pid: p for p in processes_running(self.node_binary)}
        for popen in self.extra_nodes:
            if popen.poll() is None and popen.pid not in procs:
                try:
                    procs[popen.pid] = psutil.Process(popen.pid)
                except psutil.NoSuchProcess:
                    continue
        return list(procs.values())

    def teardown(self, grace: float = 3.0) -> int:
        """Terminate every node of this instance. Returns how many survived."""
        survivors = terminate_processes(self.live_nodes(), grace=grace)
        for popen in self.extra_nodes:
            try:
                popen.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                continue
        return len(survivors)


def instance_of(ctx: StepContext) -> NetworkInstance:
    instance = ctx.state.get(NETWORK_STATE)
    if instance is None:
        raise CIError(
            kind="network_not_started",
            job=ctx.job.name,
            step=None,
            message="no network instance in this job (fetch the binaries first)",
        )
    return instance


def _make_executable(path: Path) -> None:
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


# ---------------------------------------------------------------------
# Convergence
# ---------------------------------------------------------------------

def wait_for_convergence(
    source: LogSource,
    expected: int,
    *,
    ceiling: float,
    interval: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Optional[Callable[[float], None]] = None,
    cancel: Optional[threading.Event] = None,
) -> Set[str]:
    """
    Poll the membership log until `expected` distinct nodes have joined.

    Raises ConvergenceTimeout (with the partial join count) once the ceiling
    is reached; never waits longer than the ceiling. RunCancelled as soon as
    `cancel` is set.
    """
    console = get_console()
    latest: Set[str] = set()
    start = clock()

    def converged() -> Optional[Set[str]]:
        nonlocal latest
        latest = joined_nodes(source.records())
        console.print_poll("nodes joined", len(latest), expected, clock() - start)
        return latest if len(latest) >= expected else None

    try:
        return wait_until(
            converged,
            interval=interval,
            ceiling=ceiling,
            what=f"{expected} nodes to join",
            clock=clock,
            sleep=sleep,
            cancel=cancel,
        )
    except WaitTimeout as e:
        raise ConvergenceTimeout(
            expected=expected,
            observed=len(latest),
            waited=e.waited,
            joined=tuple(sorted(latest)),
        ) from e


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def fetch_binaries_step(name: str = "Download and unpack binaries", *, key: str | None = None) -> Step:
    return Step(name=name, kind="fetch_binaries", data={"key": key} if key else {}, timeout=600)


def start_network_step(name: str = "Start the network", *, timeout: float | None = 60 * 15) -> Step:
    return Step(name=name, kind="start_network", timeout=timeout)


def wait_for_nodes_step(name: str = "Wait for all nodes to join", *, ceiling: float | None = None) -> Step:
    return Step(name=name, kind="wait_for_nodes", data={"ceiling": ceiling} if ceiling else {})


def node_liveness_step(name: str = "Are nodes still running...?") -> Step:
    return Step(
        name=name,
        kind="node_liveness",
        criticality=Criticality.ADVISORY,
        when=When.ALWAYS,
        timeout=60,
    )


def kill_nodes_step(name: str = "Kill all nodes") -> Step:
    return Step(
        name=name,
        kind="kill_nodes",
        criticality=Criticality.ADVISORY,
        when=When.ALWAYS,
        timeout=60,
    )


# ---------------------------------------------------------------------
# Step execution
# ---------------------------------------------------------------------

def run_fetch(ctx: StepContext, step: Step) -> None:
    """Fetch the run's archive, unpack it and put the node binary where the bootstrap expects it."""
    key = step.data.get("key") or artifact_key(ctx.run_id)
    blob = ctx.store.get(key)

    bin_dir = ctx.workspace / "artifacts"
    unpack_files(blob, bin_dir)
    for binary in (NODE_BIN, TESTNET_BIN):
        path = bin_dir / binary
        if not path.is_file():
            raise CIError(
                kind="artifact_incomplete",
                job=ctx.job.name,
                step=step.name,
                message=f"{binary} missing from {key}",
            )
        _make_executable(path)

    home: Optional[Path] = None
    if step.data.get("node_home"):
        node_home = Path(step.data["node_home"]).expanduser()
    elif ctx.settings.isolate_networks:
        # one private HOME per job so parallel networks do not share ~/.safe
        home = (ctx.workspace / "home").resolve()
        node_home = home / ".safe" / "node"
    else:
        node_home = ctx.settings.node_home
    node_home.mkdir(parents=True, exist_ok=True)
    shutil.copy2(bin_dir / NODE_BIN, node_home / NODE_BIN)
    _make_executable(node_home / NODE_BIN)

    ctx.state[NETWORK_STATE] = NetworkInstance(
        bin_dir=bin_dir,
        node_home=node_home,
        node_count=ctx.settings.node_count,
        join_interval_ms=ctx.settings.join_interval_ms,
        home=home,
    )


def run_start(ctx: StepContext, step: Step) -> None:
    """Launch the bootstrap binary; it spawns N nodes staggered by the join interval."""
    instance = instance_of(ctx)
    execute(
        ctx,
        step,
        [str(instance.bootstrap_binary), "--interval", str(instance.join_interval_ms)],
        cwd=step_cwd(ctx, step),
        env={
            **instance.env(),
            "NODE_COUNT": str(instance.node_count),
            "RUST_LOG": ctx.settings.log_filter("network"),
        },
    )


def run_wait(ctx: StepContext, step: Step) -> None:
    instance = instance_of(ctx)
    ceiling = step.data.get("ceiling") or ctx.settings.timeout_for(step.name, ctx.settings.convergence_timeout_s)
    joined = wait_for_convergence(
        instance.log_source,
        instance.node_count,
        ceiling=float(ceiling),
        interval=ctx.settings.poll_interval_s,
        cancel=ctx.cancel,
    )
    get_console().print_info(f"[{ctx.job.name}] {len(joined)} nodes joined")


def run_liveness(ctx: StepContext, step: Step) -> None:
    instance = instance_of(ctx)
    console = get_console()
    console.print_info(f"[{ctx.job.name}] {len(instance.live_nodes())} nodes still running")
    if instance.log_dir.exists():
        for entry in sorted(instance.log_dir.iterdir()):
            console.print_info(f"  {entry.name}")


def run_kill(ctx: StepContext, step: Step) -> None:
    instance = ctx.state.get(NETWORK_STATE)
    if instance is None:
        return
    survivors = instance.teardown()
    get_console().print_info(f"[{ctx.job.name}] {survivors} nodes still running")
    if survivors:
        raise CIError(
            kind="teardown_incomplete",
            job=ctx.job.name,
            step=step.name,
            message=f"{survivors} node process(es) survived kill",
        )


HANDLERS = {
    "fetch_binaries": run_fetch,
    "start_network": run_start,
    "wait_for_nodes": run_wait,
    "node_liveness": run_liveness,
    "kill_nodes": run_kill,
}
