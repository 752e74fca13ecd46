from .dsl import gate, job, matrix, on_pull_request, sh, wf, workflow
from .model import Criticality, Job, JobStatus, Step, When
from .runner import run_workflow
from .settings import Settings
from .triggers import TriggerEvent

__all__ = [
    "gate",
    "job",
    "matrix",
    "on_pull_request",
    "sh",
    "wf",
    "workflow",
    "run_workflow",
    "Criticality",
    "Job",
    "JobStatus",
    "Step",
    "When",
    "Settings",
    "TriggerEvent",
]
