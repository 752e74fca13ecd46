# step_workflows/harness.py
from __future__ import annotations

import subprocess
import threading
from typing import List, Sequence

from ..errors import NodeDeparted, SuiteFailure
from ..joinlog import LogSource, departed_nodes
from ..model import Job, Step, StepContext
from ..settings import Settings
from ..ui.console import get_console
from . import diagnostics, network
from .build import BUILD_JOB
from .shell import execute

DEFAULT_NODE_ARGS = ("--root-dir", "{root}", "--log-dir", "{root}")


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def suite_step(name: str, cmd: str, *, suite: str, timeout: float | None = None) -> Step:
    """One test suite run against the live network."""
    return Step(name=name, run=cmd, kind="suite", data={"suite": suite}, timeout=timeout)


def churn_step(
    cmd: str,
    *,
    extra_nodes: int = 5,
    name: str = "Run churn test",
    suite: str = "churn",
    node_args: Sequence[str] = DEFAULT_NODE_ARGS,
    timeout: float | None = None,
) -> Step:
    """
    Run the churn suite while `extra_nodes` more nodes are launched one by one
    (staggered by the join interval), then require all N + extra joins and
    no departures.
    """
    return Step(
        name=name,
        run=cmd,
        kind="churn",
        data={"suite": suite, "extra_nodes": extra_nodes, "node_args": list(node_args)},
        timeout=timeout,
    )


def check_departures_step(name: str = "Check no nodes left the network") -> Step:
    return Step(name=name, kind="check_departures", timeout=60)


# ---------------------------------------------------------------------
# Job composers
# ---------------------------------------------------------------------

def _network_steps(settings: Settings) -> List[Step]:
    return [
        network.fetch_binaries_step(),
        network.start_network_step(),
        network.wait_for_nodes_step(ceiling=settings.convergence_timeout_s),
    ]


def _teardown_steps(suite: str, unconditional_diagnostics: bool) -> List[Step]:
    return [
        network.node_liveness_step(),
        diagnostics.timeline_step(suite, unconditional=unconditional_diagnostics),
        diagnostics.archive_logs_step(suite, unconditional=unconditional_diagnostics),
        network.kill_nodes_step(),
    ]


def network_test_job(
    settings: Settings,
    *,
    name: str,
    suite: str,
    cmd: str,
    needs: Sequence[str] = (BUILD_JOB,),
    timeout: float | None = 60 * 30,
    unconditional_diagnostics: bool = False,
    requires: Sequence[str] = (),
) -> Job:
    """
    fetch binaries -> start network -> wait for convergence -> run suite
    -> departures check, with liveness, diagnostics and teardown afterwards.
    """
    steps = _network_steps(settings)
    steps.append(suite_step(f"Run {suite} tests", cmd, suite=suite, timeout=timeout))
    steps.append(check_departures_step())
    steps.extend(_teardown_steps(suite, unconditional_diagnostics))
    return Job(name=name, steps=steps, needs=list(needs), requires=list(requires))


def churn_test_job(
    settings: Settings,
    *,
    name: str = "e2e-churn",
    cmd: str,
    extra_nodes: int = 5,
    needs: Sequence[str] = (BUILD_JOB,),
    timeout: float | None = 60 * 40,
    unconditional_diagnostics: bool = False,
    requires: Sequence[str] = (),
) -> Job:
    steps = _network_steps(settings)
    steps.append(churn_step(cmd, extra_nodes=extra_nodes, timeout=timeout))
    steps.extend(_teardown_steps("churn", unconditional_diagnostics))
    return Job(name=name, steps=steps, needs=list(needs), requires=list(requires))


# ---------------------------------------------------------------------
# Departures
# ---------------------------------------------------------------------

def assert_no_departures(source: LogSource) -> None:
    """Raise NodeDeparted if any node has a `Left` membership record."""
    left = departed_nodes(source.records())
    if left:
        raise NodeDeparted(nodes=tuple(sorted(left)))


# ---------------------------------------------------------------------
# Step execution
# ---------------------------------------------------------------------

def _instance_env(ctx: StepContext) -> dict:
    instance = ctx.state.get(network.NETWORK_STATE)
    return instance.env() if instance is not None else {}


def run_suite(ctx: StepContext, step: Step) -> None:
    suite = step.data["suite"]
    execute(
        ctx,
        step,
        step.run,
        env={**_instance_env(ctx), "RUST_LOG": ctx.settings.log_filter(suite)},
        failure=SuiteFailure,
    )


def _launch_extra_nodes(
    ctx: StepContext,
    step: Step,
    instance: network.NetworkInstance,
    count: int,
    node_args: Sequence[str],
    stop: threading.Event,
) -> None:
    env = ctx.env_for(step)
    env.update(instance.env())
    env["RUST_LOG"] = ctx.settings.log_filter("network")
    interval = instance.join_interval_ms / 1000.0
    for i in range(count):
        # stop is set once the suite has ended early (failure or cancellation)
        if stop.wait(interval) or ctx.cancel.is_set():
            return
        root = instance.log_dir / f"sn-node-{instance.node_count + i + 1}"
        root.mkdir(parents=True, exist_ok=True)
        args = [a.format(root=root) for a in node_args]
        popen = subprocess.Popen(
            [str(instance.node_binary), *args],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            env=env,
            start_new_session=True,
        )
        instance.extra_nodes.append(popen)
        get_console().print_info(f"[{ctx.job.name}] launched extra node {root.name} (pid {popen.pid})")


def run_churn(ctx: StepContext, step: Step) -> None:
    instance = network.instance_of(ctx)
    extra = int(step.data.get("extra_nodes", 0))
    suite = step.data.get("suite", "churn")

    stop = threading.Event()
    launcher = threading.Thread(
        target=_launch_extra_nodes,
        args=(ctx, step, instance, extra, step.data.get("node_args", DEFAULT_NODE_ARGS), stop),
        name=f"{ctx.job.name}-churn",
        daemon=True,
    )
    launcher.start()
    try:
        execute(
            ctx,
            step,
            step.run,
            env={**instance.env(), "RUST_LOG": ctx.settings.log_filter(suite)},
            failure=SuiteFailure,
        )
    except BaseException:
        stop.set()
        raise
    finally:
        launcher.join()

    network.wait_for_convergence(
        instance.log_source,
        instance.node_count + extra,
        ceiling=ctx.settings.timeout_for(f"{step.name} convergence", ctx.settings.convergence_timeout_s),
        interval=ctx.settings.poll_interval_s,
        cancel=ctx.cancel,
    )
    assert_no_departures(instance.log_source)


def run_check_departures(ctx: StepContext, step: Step) -> None:
    assert_no_departures(network.instance_of(ctx).log_source)


HANDLERS = {
    "suite": run_suite,
    "churn": run_churn,
    "check_departures": run_check_departures,
}
