# triggers.py
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .settings import Settings


PUSH = "push"
PULL_REQUEST = "pull_request"


@dataclass(frozen=True)
class TriggerEvent:
    """The VCS event that started a run (push or pull request)."""
    kind: str
    ref: str
    head_message: str = ""
    actor: str = ""
    repository_owner: str = ""
    pr_number: Optional[int] = None
    pr_title: str = ""
    sha: str = ""
    workflow: str = "ci"

    @property
    def branch(self) -> str:
        prefix = "refs/heads/"
        return self.ref[len(prefix):] if self.ref.startswith(prefix) else self.ref

    @classmethod
    def from_github(cls, event_name: str, payload: Dict[str, Any], *, workflow: str = "ci") -> "TriggerEvent":
        """Build an event from a GitHub webhook payload (the event file of a run)."""
        repo = payload.get("repository") or {}
        owner = (repo.get("owner") or {}).get("login", "")
        actor = (payload.get("sender") or {}).get("login", "")

        if event_name == PULL_REQUEST:
            pr = payload.get("pull_request") or {}
            head = pr.get("head") or {}
            number = pr.get("number", payload.get("number"))
            return cls(
                kind=PULL_REQUEST,
                ref=f"refs/pull/{number}/merge",
                head_message="",
                actor=actor,
                repository_owner=owner,
                pr_number=int(number) if number is not None else None,
                pr_title=pr.get("title", ""),
                sha=head.get("sha", ""),
                workflow=workflow,
            )

        head_commit = payload.get("head_commit") or {}
        return cls(
            kind=PUSH,
            ref=payload.get("ref", ""),
            head_message=head_commit.get("message", ""),
            actor=actor,
            repository_owner=owner,
            sha=payload.get("after", head_commit.get("id", "")),
            workflow=workflow,
        )

    @classmethod
    def from_event_file(cls, event_name: str, path: str | Path, *, workflow: str = "ci") -> "TriggerEvent":
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.from_github(event_name, payload, workflow=workflow)


def is_release_commit(message: str, marker: str) -> bool:
    return message.lstrip().startswith(marker)


def is_automated_release(event: TriggerEvent, settings: Settings) -> bool:
    """
    True for commits/PRs produced by the release automation itself.
    Such runs skip the whole DAG; only the gate reports (trivial) success.
    """
    if event.kind == PULL_REQUEST:
        return event.pr_title.startswith(settings.automated_pr_marker)
    return is_release_commit(event.head_message, settings.release_marker)


def concurrency_group(workflow: str, event: TriggerEvent) -> str:
    target = event.pr_number if event.pr_number is not None else event.ref
    return f"{workflow}-{target}"


def concurrency_key(workflow: str, event: TriggerEvent) -> str:
    """At most one active run per key; a newer run cancels the older one."""
    group = concurrency_group(workflow, event)
    return hashlib.sha256(group.encode("utf-8")).hexdigest()[:16]
