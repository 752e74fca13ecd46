from __future__ import annotations

import pytest

from meshci.dag import build_dag, gate_status, resolve_blocked, topo_levels
from meshci.dsl import gate, job, sh
from meshci.model import Job, JobStatus

S = JobStatus.SUCCEEDED
F = JobStatus.FAILED
K = JobStatus.SKIPPED
C = JobStatus.CANCELLED


def test_build_dag_edges_and_levels() -> None:
    jobs = [
        job("build", sh("b", "true")),
        job("e2e", sh("t", "true"), needs=["build"]),
        job("api", sh("t", "true"), needs=["build"]),
        gate("ci", needs=["e2e", "api"]),
    ]
    adj, indeg = build_dag(jobs)
    assert adj["build"] == {"e2e", "api"}
    assert indeg == {"build": 0, "e2e": 1, "api": 1, "ci": 2}
    assert topo_levels(adj, indeg) == [["build"], ["api", "e2e"], ["ci"]]


def test_build_dag_rejects_duplicates_missing_and_cycles() -> None:
    with pytest.raises(ValueError, match="Duplicate"):
        build_dag([Job("a"), Job("a")])
    with pytest.raises(ValueError, match="missing job 'nope'"):
        build_dag([Job("a", needs=["nope"])])
    with pytest.raises(ValueError, match="cycle"):
        build_dag([Job("a", needs=["b"]), Job("b", needs=["a"])])


def test_gate_may_not_have_steps() -> None:
    bad = Job("ci", steps=[sh("x", "true")], gate=True)
    with pytest.raises(ValueError, match="must not declare steps"):
        build_dag([bad])


@pytest.mark.parametrize(
    "deps, expected",
    [
        ([S, S, S], S),
        ([S, F], F),
        ([S, K], F),
        ([C, S], F),
        ([], S),
    ],
)
def test_gate_succeeds_iff_every_dependency_succeeded(deps, expected) -> None:
    assert gate_status(deps) is expected
    assert resolve_blocked(Job("ci", gate=True), deps) is expected


def test_blocked_jobs_are_skipped_not_failed() -> None:
    j = Job("e2e", needs=["build"])
    assert resolve_blocked(j, [S]) is None
    assert resolve_blocked(j, [F]) is K
    assert resolve_blocked(j, [K]) is K
