from __future__ import annotations

from pathlib import Path
from typing import List, Tuple

from meshci.control.api_client import APIError, RemoteRunRegistry
from meshci.dsl import gate, job, sh
from meshci.model import JobStatus
from meshci.runner import run_workflow


class FlakyControlPlane:
    """Accepts the run and its job reports, then fails to record completion."""

    def __init__(self) -> None:
        self.reports: List[Tuple[str, str]] = []

    def create_run(self, **kwargs) -> dict:
        return {"run_id": kwargs["run_id"], "superseded": []}

    def get_run(self, run_id: str) -> dict:
        return {"status": "running", "cancel_requested": False}

    def report_job(self, run_id: str, job_name: str, status: str) -> None:
        self.reports.append((job_name, status))

    def complete_run(self, run_id: str, status: str, jobs: dict) -> None:
        raise APIError("API request failed: 502 Bad Gateway.")


def test_completion_report_failure_keeps_the_run_result(tmp_path: Path, settings, store, push_event) -> None:
    client = FlakyControlPlane()
    registry = RemoteRunRegistry(client, workflow="ci", ref=push_event.ref, poll_interval=0.05)

    result = run_workflow(
        [job("unit", sh("tests", "true")), gate("ci", needs=["unit"])],
        push_event,
        settings=settings,
        store=store,
        registry=registry,
        run_id="r1",
        repo_root=tmp_path,
    )

    assert result.passed
    assert result.status is JobStatus.SUCCEEDED
    assert ("unit", "succeeded") in client.reports
