# control/api_client.py
from __future__ import annotations

import json
import threading
import time
import urllib.error
import urllib.request
from typing import Dict, List, Optional
from urllib.parse import quote, urljoin

from ..concurrency import ActiveRun
from ..model import JobStatus, RunResult
from ..ui.console import get_console

TERMINAL = {s.value for s in JobStatus if s.terminal}


class APIError(Exception):
    """Raised when API requests fail."""
    pass


class APIClient:
    """HTTP client for the meshci control plane."""

    def __init__(self, base_url: str, timeout: float = 30.0):
        """
        Args:
            base_url: Base URL of the API (e.g., "https://ci.example.com")
            timeout: Per-request socket timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> dict:
        """
        Make an HTTP request to the API and return the parsed JSON body.

        Raises:
            APIError: If the request fails
        """
        url = urljoin(self.base_url + "/", path.lstrip("/"))

        req_headers = {"Content-Type": "application/json"}
        if headers:
            req_headers.update(headers)

        req_data = None
        if data is not None:
            req_data = json.dumps(data).encode("utf-8")

        req = urllib.request.Request(url, data=req_data, headers=req_headers, method=method)

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response_data = response.read().decode("utf-8")
                if response_data:
                    return json.loads(response_data)
                return {}
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise APIError(f"API request failed: {e.code} {e.reason}. {error_body}")
        except urllib.error.URLError as e:
            raise APIError(f"Network error: {e.reason}")
        except json.JSONDecodeError as e:
            raise APIError(f"Invalid JSON response: {e}")

    def create_run(
        self,
        *,
        key: str,
        run_id: str,
        workflow: str = "",
        ref: str = "",
        jobs: Optional[List[str]] = None,
        gates: Optional[List[str]] = None,
    ) -> dict:
        """
        Register a run. The response lists the runs on the same key that this
        one supersedes (they are flagged for cancellation server side).
        """
        return self._request(
            "POST",
            "/runs",
            data={
                "key": key,
                "run_id": run_id,
                "workflow": workflow,
                "ref": ref,
                "jobs": jobs or [],
                "gates": gates or [],
            },
        )

    def get_run(self, run_id: str) -> dict:
        return self._request("GET", f"/runs/{quote(run_id)}")

    def report_job(self, run_id: str, job_name: str, status: str) -> None:
        self._request("POST", f"/runs/{quote(run_id)}/jobs/{quote(job_name)}", data={"status": status})

    def complete_run(self, run_id: str, status: str, jobs: Dict[str, str]) -> None:
        self._request("POST", f"/runs/{quote(run_id)}/complete", data={"status": status, "jobs": jobs})

    def gate(self, run_id: str) -> dict:
        return self._request("GET", f"/runs/{quote(run_id)}/gate")


class RemoteRunRegistry:
    """
    Concurrency groups held by the control plane, so supersession works across
    hosts. A watcher thread polls the run and sets the local cancel signal when
    the control plane has flagged it.
    """

    def __init__(
        self,
        client: APIClient,
        *,
        workflow: str = "",
        ref: str = "",
        jobs: Optional[List[str]] = None,
        gates: Optional[List[str]] = None,
        poll_interval: float = 5.0,
        cancel_grace: float = 60.0,
    ):
        self.client = client
        self.workflow = workflow
        self.ref = ref
        self.jobs = jobs or []
        self.gates = gates or []
        self.poll_interval = poll_interval
        self.cancel_grace = cancel_grace
        self._watchers: Dict[str, threading.Event] = {}

    def _wait_settled(self, run_id: str) -> None:
        deadline = time.monotonic() + self.cancel_grace
        while time.monotonic() < deadline:
            if self.client.get_run(run_id).get("status") in TERMINAL:
                return
            time.sleep(min(self.poll_interval, max(deadline - time.monotonic(), 0)))
        get_console().print_info(f"run {run_id} did not settle within {self.cancel_grace:g}s")

    def _watch(self, active: ActiveRun, stop: threading.Event) -> None:
        while not stop.wait(self.poll_interval):
            try:
                state = self.client.get_run(active.run_id)
            except APIError as e:
                get_console().print_debug(f"cancel watcher: {e}")
                continue
            if state.get("cancel_requested"):
                active.superseded_by = state.get("superseded_by")
                active.cancel.set()
                return

    def begin(self, key: str, run_id: str) -> ActiveRun:
        active = ActiveRun(key=key, run_id=run_id)
        resp = self.client.create_run(
            key=key,
            run_id=run_id,
            workflow=self.workflow,
            ref=self.ref,
            jobs=self.jobs,
            gates=self.gates,
        )
        for previous in resp.get("superseded", []):
            get_console().print_superseded(previous, by=run_id)
            self._wait_settled(previous)

        stop = threading.Event()
        self._watchers[run_id] = stop
        threading.Thread(target=self._watch, args=(active, stop), name=f"cancel-watch-{run_id}", daemon=True).start()
        return active

    def record_job(self, active: ActiveRun, job: str, status: JobStatus) -> None:
        try:
            self.client.report_job(active.run_id, job, status.value)
        except APIError as e:
            get_console().print_debug(f"job report failed: {e}")

    def end(self, active: ActiveRun, result: RunResult) -> None:
        stop = self._watchers.pop(active.run_id, None)
        if stop is not None:
            stop.set()
        active.done.set()
        try:
            self.client.complete_run(active.run_id, result.status.value, result.summary())
        except APIError as e:
            get_console().print_debug(f"run completion report failed: {e}")