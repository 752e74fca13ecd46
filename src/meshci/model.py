# model.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .artifacts import ArtifactStore
    from .settings import Settings
    from .triggers import TriggerEvent


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


class Criticality(str, Enum):
    """Fatal step failures fail the job; advisory ones are only recorded."""
    FATAL = "fatal"
    ADVISORY = "advisory"


class When(str, Enum):
    SUCCESS = "success"   # only while the job is still healthy
    FAILURE = "failure"   # only once the job has failed
    ALWAYS = "always"


@dataclass(frozen=True)
class Step:
    """A single unit of work (step) inside a CI job."""
    name: str
    run: str = ""
    cwd: str | None = None

    # Handler selector: "sh" or a kind contributed by step_workflows/*
    kind: str = "sh"
    data: Dict[str, Any] = field(default_factory=dict)

    timeout: float | None = None               # seconds
    criticality: Criticality = Criticality.FATAL
    when: When = When.SUCCESS
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def advisory(self) -> bool:
        return self.criticality is Criticality.ADVISORY


@dataclass
class Job:
    """
    A CI job: steps + dependencies + the predicate deciding whether it runs.

    A job with gate=True is the synthetic aggregator: it has no steps and its
    status is derived from its dependencies.
    """
    name: str
    steps: list[Step] = field(default_factory=list)
    needs: list[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    requires: list[str] = field(default_factory=list)

    # Run predicate over trigger metadata; None means "always run"
    condition: Optional[Callable[["TriggerEvent"], bool]] = None
    gate: bool = False
    runs_on: str = "local"

    def should_run(self, event: "TriggerEvent") -> bool:
        if self.condition is None:
            return True
        return bool(self.condition(event))


@dataclass
class StepResult:
    step: str
    status: JobStatus
    criticality: Criticality = Criticality.FATAL
    error: str | None = None
    duration: float = 0.0


@dataclass
class JobResult:
    name: str
    status: JobStatus
    steps: List[StepResult] = field(default_factory=list)
    error: str | None = None

    @property
    def advisory_failures(self) -> List[StepResult]:
        return [
            s for s in self.steps
            if s.criticality is Criticality.ADVISORY and s.status is JobStatus.FAILED
        ]


@dataclass
class RunResult:
    workflow: str
    ref: str
    run_id: str
    key: str
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    gates: List[str] = field(default_factory=list)

    def status_of(self, job_name: str) -> JobStatus:
        return self.jobs[job_name].status

    @property
    def gate(self) -> Optional[JobResult]:
        """The first declared gate (the merge-readiness signal), if any."""
        if not self.gates:
            return None
        return self.jobs.get(self.gates[0])

    @property
    def passed(self) -> bool:
        if self.status is JobStatus.CANCELLED:
            return False
        if self.gates:
            return all(self.jobs[g].status is JobStatus.SUCCEEDED for g in self.gates)
        return not any(
            r.status in (JobStatus.FAILED, JobStatus.CANCELLED) for r in self.jobs.values()
        )

    def summary(self) -> Dict[str, str]:
        return {name: r.status.value for name, r in self.jobs.items()}


@dataclass
class StepContext:
    """Everything a step handler may touch while its job runs."""
    job: Job
    run_id: str
    event: "TriggerEvent"
    settings: "Settings"
    store: "ArtifactStore"
    repo_root: Path
    workspace: Path
    cancel: threading.Event = field(default_factory=threading.Event)

    # Per-job scratch state shared between steps (e.g. the network instance)
    state: Dict[str, Any] = field(default_factory=dict)

    def env_for(self, step: Step) -> Dict[str, str]:
        import os

        env = os.environ.copy()
        env.update(self.job.env or {})
        env.update(step.env or {})
        return env
