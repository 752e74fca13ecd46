# runner.py
from __future__ import annotations

import os
import runpy
import shutil
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, List, Optional

from . import release
from .artifacts import ArtifactStore, open_store
from .concurrency import ActiveRun, RunRegistry, default_registry
from .dag import build_dag, resolve_blocked
from .errors import CIError, RunCancelled, StepTimeout
from .model import Job, JobResult, JobStatus, RunResult, Step, StepContext, StepResult, When
from .process import POLL_SECONDS
from .settings import Settings
from .step_workflows import build, diagnostics, harness, network, shell
from .triggers import TriggerEvent, concurrency_key, is_automated_release
from .ui.console import get_console

StepHandler = Callable[[StepContext, Step], None]

STEP_HANDLERS: Dict[str, StepHandler] = {
    **shell.HANDLERS,
    **build.HANDLERS,
    **network.HANDLERS,
    **harness.HANDLERS,
    **diagnostics.HANDLERS,
    **release.HANDLERS,
}

# How long a step that overran its timeout (or was cancelled) gets to clean
# up its own child processes before it is abandoned
ABANDON_GRACE_SECONDS = 5.0

TOOL_HINTS = {
    "cargo": "Install the Rust toolchain (rustup) or fix PATH.",
    "rustup": "Install rustup from https://rustup.rs.",
    "npx": "Install Node.js (includes npx) or fix PATH.",
    "git": "Install Git or fix PATH.",
    "rg": "Install ripgrep or fix PATH.",
}


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> List[Job]:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[Job]
      - JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"meshci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        jobs = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise TypeError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )

    return jobs


# ----------------------------------------------------------------------
# Job execution
# ----------------------------------------------------------------------

def _should_run(step: Step, failed: bool, cancelled: bool) -> bool:
    if step.when is When.ALWAYS:
        return True
    if cancelled:
        return False
    if step.when is When.FAILURE:
        return failed
    return not failed


def _hint_for(step: Step, exc: Exception) -> Optional[str]:
    if getattr(exc, "exit_code", None) != 127 or not step.run:
        return None
    tool = step.run.split()[0]
    return TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")


def _preflight(job: Job, settings: Settings) -> None:
    """Refuse a job this host cannot run: wrong runner label or a missing tool."""
    labels = settings.labels
    if job.runs_on not in labels:
        raise CIError(
            kind="runner_unavailable",
            job=job.name,
            step=None,
            message=f"no runner labelled {job.runs_on!r} (this host: {', '.join(labels)})",
            details={"hint": f"Run on a host labelled {job.runs_on} or add it to MESHCI_RUNNER_LABELS."},
        )
    for tool in job.requires:
        if shutil.which(tool) is None:
            raise CIError(
                kind="tool_unavailable",
                job=job.name,
                step=None,
                message=f"{tool} is not available",
                details={"hint": TOOL_HINTS.get(tool, f"Install {tool} or fix PATH."), "tool": tool},
            )


def _call_handler(handler: StepHandler, ctx: StepContext, step: Step) -> None:
    """
    Run one step handler under the step's timeout and the run's cancel signal.

    The handler runs on its own thread. Past the deadline the step fails with
    StepTimeout; once the run is cancelled a `success` step ends with
    RunCancelled. Either way the handler first gets ABANDON_GRACE_SECONDS to
    stop on its own (shell commands kill their process tree, polls see the
    cancel signal) and is abandoned after that.
    """
    timeout = ctx.settings.timeout_for(step.name, step.timeout)
    interruptible = step.when is When.SUCCESS
    outcome: Dict[str, Exception] = {}

    def target() -> None:
        try:
            handler(ctx, step)
        except Exception as e:
            outcome["error"] = e

    worker = threading.Thread(target=target, name=f"{ctx.job.name}:{step.name}", daemon=True)
    deadline = None if timeout is None else time.monotonic() + timeout
    worker.start()

    interrupt: Optional[Exception] = None
    while worker.is_alive():
        worker.join(POLL_SECONDS)
        if not worker.is_alive():
            break
        if interruptible and ctx.cancel.is_set():
            interrupt = RunCancelled(f"cancelled: {step.name}")
        elif deadline is not None and time.monotonic() >= deadline:
            interrupt = StepTimeout(job=ctx.job.name, step=step.name, timeout=timeout or 0.0)
        if interrupt is not None:
            worker.join(ABANDON_GRACE_SECONDS)
            break

    if "error" in outcome:
        raise outcome["error"]
    if worker.is_alive() or isinstance(interrupt, StepTimeout):
        raise interrupt


def _run_job(
    job: Job,
    ctx: StepContext,
    handlers: Dict[str, StepHandler],
) -> JobResult:
    """
    Run the steps of one job in order.

    A fatal step failure fails the job and skips the remaining `success`
    steps; `failure` steps then run, `always` steps run regardless (also after
    cancellation). Advisory failures are recorded and never flip the status.
    """
    console = get_console()
    console.print_job_start(job.name)
    ctx.workspace.mkdir(parents=True, exist_ok=True)

    try:
        _preflight(job, ctx.settings)
    except CIError as e:
        console.print_failure(job.name, e.message, hint=e.details.get("hint"), is_job=True)
        skipped = [StepResult(step=s.name, status=JobStatus.SKIPPED, criticality=s.criticality) for s in job.steps]
        return JobResult(name=job.name, status=JobStatus.FAILED, steps=skipped, error=f"{e.kind}: {e.message}")

    failed = False
    cancelled = False
    error: Optional[str] = None
    results: List[StepResult] = []

    for step in job.steps:
        if ctx.cancel.is_set():
            cancelled = True

        if not _should_run(step, failed, cancelled):
            results.append(StepResult(step=step.name, status=JobStatus.SKIPPED, criticality=step.criticality))
            continue

        console.print_step(job.name, step.name)
        started = time.monotonic()
        status = JobStatus.SUCCEEDED
        step_error: Optional[str] = None

        try:
            handler = handlers.get(step.kind)
            if handler is None:
                raise ValueError(f"[{job.name}] step '{step.name}' has unknown kind {step.kind!r}")
            _call_handler(handler, ctx, step)
        except RunCancelled as e:
            cancelled = True
            status = JobStatus.CANCELLED
            step_error = str(e)
        except Exception as e:
            status = JobStatus.FAILED
            step_error = str(e)
            if step.advisory:
                console.print_advisory(job.name, step.name, step_error)
            else:
                failed = True
                error = error or step_error
                console.print_failure(
                    f"{job.name} / {step.name}",
                    step_error,
                    exit_code=getattr(e, "exit_code", None),
                    hint=_hint_for(step, e),
                    output=getattr(e, "output", "") or "",
                )

        results.append(
            StepResult(
                step=step.name,
                status=status,
                criticality=step.criticality,
                error=step_error,
                duration=time.monotonic() - started,
            )
        )

    # a handler that stopped quietly on cancellation still ends the job cancelled
    if ctx.cancel.is_set():
        cancelled = True

    if cancelled:
        final = JobStatus.CANCELLED
    elif failed:
        final = JobStatus.FAILED
    else:
        final = JobStatus.SUCCEEDED
    return JobResult(name=job.name, status=final, steps=results, error=error)


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

def _settle_without_running(
    job: Job,
    event: TriggerEvent,
    results: Dict[str, JobResult],
    active: ActiveRun,
) -> Optional[JobResult]:
    if active.cancelled:
        return JobResult(name=job.name, status=JobStatus.CANCELLED, error="run superseded")

    blocked = resolve_blocked(job, [results[d].status for d in job.needs])
    if blocked is not None:
        not_ok = [d for d in job.needs if results[d].status is not JobStatus.SUCCEEDED]
        reason = f"dependencies not succeeded: {not_ok}" if not_ok else None
        return JobResult(name=job.name, status=blocked, error=reason)

    if not job.should_run(event):
        return JobResult(name=job.name, status=JobStatus.SKIPPED, error="run condition not met")
    return None


def run_workflow(
    jobs: List[Job],
    event: TriggerEvent,
    *,
    settings: Optional[Settings] = None,
    store: Optional[ArtifactStore] = None,
    registry: Optional[RunRegistry] = None,
    workflow: Optional[str] = None,
    run_id: Optional[str] = None,
    repo_root: str | Path = ".",
    work_root: str | Path = ".meshci/work",
    max_workers: int | None = None,
    handlers: Optional[Dict[str, StepHandler]] = None,
) -> RunResult:
    """
    Evaluate one Run of the job DAG for a trigger event.

    - automated release commits: every job skipped, gates trivially succeed
    - otherwise acquire the concurrency slot (superseding an older run on the
      same ref), then start each job as soon as all its needs have settled
    - a job whose needs did not all succeed is skipped; a gate fails instead
    """
    console = get_console()
    settings = settings or Settings.from_env()
    store = store if store is not None else open_store(settings.artifact_store)
    registry = registry or default_registry()
    workflow = workflow or event.workflow
    run_id = run_id or uuid.uuid4().hex[:12]
    all_handlers = {**STEP_HANDLERS, **(handlers or {})}

    adj, indeg = build_dag(jobs)
    by_name = {j.name: j for j in jobs}

    key = concurrency_key(workflow, event)
    result = RunResult(
        workflow=workflow,
        ref=event.ref,
        run_id=run_id,
        key=key,
        gates=[j.name for j in jobs if j.gate],
    )

    if is_automated_release(event, settings):
        # still a newer run on the ref: it supersedes whatever is in flight there
        active = registry.begin(key, run_id)
        try:
            console.print_release_skip("automated release commit")
            for j in jobs:
                status = JobStatus.SUCCEEDED if j.gate else JobStatus.SKIPPED
                result.jobs[j.name] = JobResult(name=j.name, status=status, error="automated release commit")
            result.status = JobStatus.SKIPPED
        finally:
            registry.end(active, result)
        return result

    repo_root_p = Path(repo_root).resolve()
    work_root_p = Path(work_root)
    if not work_root_p.is_absolute():
        work_root_p = repo_root_p / work_root_p

    if max_workers is None:
        c = os.cpu_count() or 2
        max_workers = max(2, c - 1)

    active = registry.begin(key, run_id)
    try:
        indeg = dict(indeg)
        ready: List[str] = sorted([n for n, d in indeg.items() if d == 0], reverse=True)
        in_flight: Dict = {}

        def settle(name: str, jr: JobResult) -> None:
            result.jobs[name] = jr
            console.print_job_status(name, jr.status.value, jr.error if jr.status is not JobStatus.SUCCEEDED else None)
            registry.record_job(active, name, jr.status)
            for nxt in sorted(adj[name]):
                indeg[nxt] -= 1
                if indeg[nxt] == 0:
                    ready.append(nxt)

        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            while ready or in_flight:
                # schedule everything that is currently unblocked
                while ready:
                    name = ready.pop()
                    job = by_name[name]
                    settled = _settle_without_running(job, event, result.jobs, active)
                    if settled is not None:
                        settle(name, settled)
                        continue

                    registry.record_job(active, name, JobStatus.RUNNING)
                    ctx = StepContext(
                        job=job,
                        run_id=run_id,
                        event=event,
                        settings=settings,
                        store=store,
                        repo_root=repo_root_p,
                        workspace=work_root_p / run_id / name,
                        cancel=active.cancel,
                    )
                    fut = pool.submit(_run_job, job, ctx, all_handlers)
                    in_flight[fut] = name

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                fut = next(as_completed(list(in_flight.keys())))
                name = in_flight.pop(fut)
                try:
                    jr = fut.result()
                except Exception as e:
                    console.print_exception(e)
                    jr = JobResult(name=name, status=JobStatus.FAILED, error=str(e))
                settle(name, jr)

        if active.cancelled:
            result.status = JobStatus.CANCELLED
            for g in result.gates:
                result.jobs[g].status = JobStatus.CANCELLED
        else:
            result.status = JobStatus.SUCCEEDED if result.passed else JobStatus.FAILED
    finally:
        registry.end(active, result)

    return result
