# step_workflows/shell.py
from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional, Sequence, Type, Union

from ..errors import StepFailure, StepTimeout
from ..model import Step, StepContext, When
from ..process import CommandTimeout, Completed, run_command


def step_cwd(ctx: StepContext, step: Step) -> Path:
    cwd = (ctx.repo_root / (step.cwd or ".")).resolve()
    if not cwd.exists():
        raise FileNotFoundError(f"[{ctx.job.name}] step '{step.name}' cwd not found: {cwd}")
    return cwd


def execute(
    ctx: StepContext,
    step: Step,
    cmd: Union[str, Sequence[str]],
    *,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    failure: Type[StepFailure] = StepFailure,
    check: bool = True,
) -> Completed:
    """
    Run one command on behalf of a step, honouring the step's (configurable)
    timeout and the run's cancel signal.

    Cleanup steps (when != success) are not interrupted by cancellation:
    they are what runs after it.
    """
    timeout = ctx.settings.timeout_for(step.name, step.timeout)
    cancel = ctx.cancel if step.when is When.SUCCESS else None
    merged = ctx.env_for(step)
    if env:
        merged.update(env)

    try:
        proc = run_command(
            cmd,
            cwd=cwd if cwd is not None else step_cwd(ctx, step),
            env=merged,
            timeout=timeout,
            cancel=cancel,
        )
    except CommandTimeout:
        raise StepTimeout(job=ctx.job.name, step=step.name, timeout=timeout or 0.0) from None

    if check and proc.returncode != 0:
        shown = cmd if isinstance(cmd, str) else " ".join(str(c) for c in cmd)
        raise failure(
            job=ctx.job.name,
            step=step.name,
            cmd=shown,
            exit_code=proc.returncode,
            output=proc.tail,
        )
    return proc


def run_step(ctx: StepContext, step: Step) -> None:
    """Plain shell step."""
    execute(ctx, step, step.run)


HANDLERS = {"sh": run_step}
