# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .model import Job, JobStatus


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must run BEFORE this job)

    Returns (adj, indeg) where adj maps a job to its dependents.
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValueError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for dep in job.needs or []:
            if dep not in name_set:
                raise ValueError(
                    f"Job '{job.name}' depends on missing job '{dep}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            # edge dep -> job.name (dep must run before job)
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

        if job.gate and job.steps:
            raise ValueError(f"Gate '{job.name}' must not declare steps")

    # validates acyclicity
    topo_levels(adj, indeg)
    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise ValueError(f"DAG has a cycle (or unresolved needs). Stuck nodes: {remaining}")

    return levels


def gate_status(dep_statuses: Iterable[JobStatus]) -> JobStatus:
    """succeeded iff every dependency succeeded, else failed."""
    if all(s is JobStatus.SUCCEEDED for s in dep_statuses):
        return JobStatus.SUCCEEDED
    return JobStatus.FAILED


def resolve_blocked(job: Job, dep_statuses: Iterable[JobStatus]) -> JobStatus | None:
    """
    The single propagation rule.

    Returns the status a job settles to without executing, or None if every
    dependency succeeded and the job may run. Gates always settle here.
    """
    statuses = list(dep_statuses)
    if job.gate:
        return gate_status(statuses)
    if all(s is JobStatus.SUCCEEDED for s in statuses):
        return None
    return JobStatus.SKIPPED
