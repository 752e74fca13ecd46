# src/meshci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .model import Criticality, Job, Step, When
from .triggers import PULL_REQUEST, TriggerEvent


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    timeout: float | None = None,
    advisory: bool = False,
    when: When | str = When.SUCCESS,
    env: Optional[Dict[str, str]] = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        timeout=timeout,
        criticality=Criticality.ADVISORY if advisory else Criticality.FATAL,
        when=When(when),
        env={k: str(v) for k, v in (env or {}).items()},
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    requires: Optional[List[str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    condition: Optional[Callable[[TriggerEvent], bool]] = None,
    runs_on: str = "local",
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=needs or [],
        env={k: str(v) for k, v in (env or {}).items()},
        requires=requires or [],
        condition=condition,
        runs_on=runs_on,
    )


def gate(name: str, needs: List[str]) -> Job:
    """
    The aggregator job: no steps, succeeds iff every job in `needs` succeeded.
    This is the single status a merge bot should look at.
    """
    return Job(name=name, needs=list(needs), gate=True)


# ---------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------

def on_pull_request(event: TriggerEvent) -> bool:
    return event.kind == PULL_REQUEST


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("suite", ["e2e", "api"]).jobs(
            lambda v: job(f"test-{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job) -> List[Job]:
    """
    Workflow definition helper.

    Users can write:
        from meshci import wf, job, sh, gate

        def workflow():
            return wf(
                job("lint", sh("clippy", "cargo clippy")),
                gate("ci", needs=["lint"]),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    return list(jobs)


workflow = wf
