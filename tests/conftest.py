from __future__ import annotations

import threading
from pathlib import Path
from typing import List

import pytest

from meshci.artifacts import LocalArtifactStore
from meshci.concurrency import LocalRunRegistry
from meshci.joinlog import MembershipRecord
from meshci.model import Job, StepContext
from meshci.settings import Settings
from meshci.triggers import PUSH, TriggerEvent


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TimedLogSource:
    """Membership records that become visible at given clock times."""

    def __init__(self, clock: FakeClock, joins: dict, leaves: dict | None = None):
        self.clock = clock
        self.joins = joins
        self.leaves = leaves or {}

    def records(self) -> List[MembershipRecord]:
        out = [MembershipRecord(node=n, event="joined") for n, t in self.joins.items() if t <= self.clock.now]
        out += [MembershipRecord(node=n, event="left") for n, t in self.leaves.items() if t <= self.clock.now]
        return out


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        node_count=3,
        join_interval_ms=50,
        convergence_timeout_s=10.0,
        poll_interval_s=0.05,
        node_home=tmp_path / "node",
        artifact_store=str(tmp_path / "store"),
        runner_platform="linux",
        isolate_networks=True,
    )


@pytest.fixture
def store(tmp_path: Path) -> LocalArtifactStore:
    return LocalArtifactStore(tmp_path / "store")


@pytest.fixture
def registry() -> LocalRunRegistry:
    return LocalRunRegistry(cancel_grace=10.0)


@pytest.fixture
def push_event() -> TriggerEvent:
    return TriggerEvent(
        kind=PUSH,
        ref="refs/heads/feature",
        head_message="feat: add things",
        repository_owner="maidsafe",
    )


@pytest.fixture
def make_ctx(tmp_path: Path, settings: Settings, store: LocalArtifactStore, push_event: TriggerEvent):
    def make(job: Job | None = None, run_id: str = "run1") -> StepContext:
        job = job or Job(name="job")
        workspace = tmp_path / "work" / run_id / job.name
        workspace.mkdir(parents=True, exist_ok=True)
        return StepContext(
            job=job,
            run_id=run_id,
            event=push_event,
            settings=settings,
            store=store,
            repo_root=tmp_path,
            workspace=workspace,
            cancel=threading.Event(),
        )
    return make
