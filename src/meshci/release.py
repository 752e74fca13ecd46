# release.py
from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Iterable, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from .errors import ReleaseError
from .git_facts import git
from .locks import ReleaseLock, release_lock
from .model import Job, Step, StepContext
from .settings import Settings
from .triggers import PUSH, TriggerEvent, is_release_commit
from .ui.console import get_console

Version = Tuple[int, int, int]

_HEADER_RE = re.compile(r"^(?P<type>[A-Za-z]+)(?:\([^)]*\))?(?P<bang>!)?:\s")
_BREAKING_RE = re.compile(r"^BREAKING[ -]CHANGE:", re.MULTILINE)
_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)")
_TABLE_RE = re.compile(r"^\s*\[\s*([^\]]+?)\s*\]\s*(?:#.*)?$")
_MANIFEST_VERSION_RE = re.compile(r'^(?P<lead>\s*version\s*=\s*)"(?P<value>[^"]*)"(?P<rest>.*)$')


class Bump(IntEnum):
    NONE = 0
    PATCH = 1
    MINOR = 2
    MAJOR = 3


# ---------------------------------------------------------------------
# Trigger policy
# ---------------------------------------------------------------------

def should_advance(event: TriggerEvent, settings: Settings) -> bool:
    """
    Only a push to trunk in the canonical repository advances the version;
    release commits themselves never do.
    """
    return (
        event.kind == PUSH
        and event.branch == settings.trunk_branch
        and event.repository_owner == settings.repository_owner
        and not is_release_commit(event.head_message, settings.release_marker)
    )


# ---------------------------------------------------------------------
# Conventional commits
# ---------------------------------------------------------------------

def classify(message: str) -> Bump:
    m = _HEADER_RE.match(message.strip())
    if m is None:
        return Bump.NONE
    if m.group("bang") or _BREAKING_RE.search(message):
        return Bump.MAJOR
    kind = m.group("type").lower()
    if kind == "feat":
        return Bump.MINOR
    if kind in ("fix", "perf"):
        return Bump.PATCH
    return Bump.NONE


def parse_version(raw: str) -> Version:
    m = _VERSION_RE.match(raw.strip())
    if m is None:
        raise ReleaseError(f"not a version: {raw!r}")
    return int(m.group(1)), int(m.group(2)), int(m.group(3))


def format_version(v: Version) -> str:
    return f"{v[0]}.{v[1]}.{v[2]}"


def bump_version(current: Version, bump: Bump) -> Version:
    major, minor, patch = current
    if major == 0:
        # 0.x: breaking changes only bump minor, features only patch
        if bump is Bump.MAJOR:
            return (0, minor + 1, 0)
        return (0, minor, patch + 1)
    if bump is Bump.MAJOR:
        return (major + 1, 0, 0)
    if bump is Bump.MINOR:
        return (major, minor + 1, 0)
    return (major, minor, patch + 1)


def next_version(current: str, messages: Iterable[str]) -> Optional[str]:
    """The version after `current` for these commits, or None if nothing releasable."""
    bump = max((classify(m) for m in messages), default=Bump.NONE)
    if bump is Bump.NONE:
        return None
    return format_version(bump_version(parse_version(current), bump))


# ---------------------------------------------------------------------
# Manifests
# ---------------------------------------------------------------------

def manifest_version(text: str) -> Optional[str]:
    table = None
    for line in text.splitlines():
        t = _TABLE_RE.match(line)
        if t:
            table = t.group(1)
            continue
        if table == "package":
            m = _MANIFEST_VERSION_RE.match(line)
            if m:
                return m.group("value")
    return None


def update_manifest(text: str, version: str) -> str:
    """Rewrite `version = "..."` in the [package] table, leaving everything else untouched."""
    out = []
    table = None
    done = False
    for line in text.splitlines(keepends=True):
        t = _TABLE_RE.match(line.rstrip("\r\n"))
        if t:
            table = t.group(1)
        elif table == "package" and not done:
            body = line.rstrip("\r\n")
            m = _MANIFEST_VERSION_RE.match(body)
            if m:
                newline = line[len(body):]
                line = f'{m.group("lead")}"{version}"{m.group("rest")}{newline}'
                done = True
        out.append(line)
    if not done:
        raise ReleaseError("no version field in the [package] table")
    return "".join(out)


# ---------------------------------------------------------------------
# Advancer
# ---------------------------------------------------------------------

@dataclass
class ReleaseOutcome:
    advanced: bool
    version: Optional[str] = None
    previous: Optional[str] = None
    reason: str = ""


def _authenticated(url: str, token: str) -> str:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, f"x-access-token:{token}@{host}", parts.path, parts.query, parts.fragment))


class ReleaseAdvancer:
    """
    Compute, commit, tag and push the next version on trunk.

    Runs under an explicit lock. A repository with no releasable commits
    since the last tag, or whose next tag already exists, is left untouched,
    so re-running after a release is a no-op.
    """

    def __init__(
        self,
        repo: str | Path,
        settings: Settings,
        *,
        lock: Optional[ReleaseLock] = None,
        push: bool = True,
        identity: Tuple[str, str] = ("meshci-release", "meshci-release@users.noreply.github.com"),
    ):
        self.repo = Path(repo)
        self.settings = settings
        self.lock = lock
        self.push = push
        self.identity = identity

    def _lock(self) -> ReleaseLock:
        if self.lock is None:
            self.lock = release_lock(self.settings.redis_url, git.git_dir(self.repo))
        return self.lock

    def _current(self, previous: Optional[str]) -> str:
        if previous:
            return previous
        for name in self.settings.version_manifests:
            path = self.repo / name
            if path.is_file():
                found = manifest_version(path.read_text(encoding="utf-8"))
                if found:
                    return found
        return "0.0.0"

    def advance(self) -> ReleaseOutcome:
        with self._lock():
            try:
                return self._advance()
            except subprocess.CalledProcessError as e:
                # keep the (possibly tokenised) command line out of the message
                stderr = (e.stderr or "").strip().splitlines()
                if self.settings.release_token:
                    stderr = [l.replace(self.settings.release_token, "***") for l in stderr]
                raise ReleaseError(
                    f"git {e.cmd[1] if len(e.cmd) > 1 else ''} failed (exit={e.returncode})"
                    + (f": {stderr[-1]}" if stderr else "")
                ) from None

    def _advance(self) -> ReleaseOutcome:
        console = get_console()
        marker = self.settings.release_marker

        previous = git.latest_tag("v*", self.repo)
        messages = [
            m for m in git.log_messages(previous, self.repo)
            if not is_release_commit(m, marker)
        ]
        version = next_version(self._current(previous), messages)
        if version is None:
            console.print_info(f"No releasable commits since {previous or 'the beginning'}")
            return ReleaseOutcome(False, None, previous, "no releasable commits")

        tag = f"v{version}"
        if git.tag_exists(tag, self.repo):
            console.print_info(f"{tag} already exists; nothing to do")
            return ReleaseOutcome(False, version, previous, "tag exists")

        changed = []
        for name in self.settings.version_manifests:
            path = self.repo / name
            if not path.is_file():
                continue
            path.write_text(update_manifest(path.read_text(encoding="utf-8"), version), encoding="utf-8")
            changed.append(name)
        if not changed:
            raise ReleaseError(f"none of the manifests exist: {list(self.settings.version_manifests)}")

        if git.config_get("user.email", self.repo) is None:
            git.config("user.name", self.identity[0], self.repo)
            git.config("user.email", self.identity[1], self.repo)

        base = git.head_sha(self.repo)
        git.add(changed, self.repo)
        git.commit(f"{marker} {tag}", self.repo)
        git.tag(tag, f"{marker} {tag}", self.repo)
        console.print_info(f"Committed and tagged {tag} (previous: {previous or 'none'})")

        if self.push:
            try:
                self._push(tag)
            except subprocess.CalledProcessError:
                # an unpushed local tag would hide these commits from the next run
                git.delete_tag(tag, self.repo)
                git.reset(base, self.repo)
                console.print_info(f"Push failed; dropped local {tag} and its commit")
                raise
        return ReleaseOutcome(True, version, previous, "released")

    def _push(self, tag: str) -> None:
        remote = self.settings.release_remote
        if self.settings.release_token:
            remote = _authenticated(git.remote_url(remote, self.repo), self.settings.release_token)
        git.push(
            remote,
            [f"HEAD:refs/heads/{self.settings.trunk_branch}", f"refs/tags/{tag}"],
            self.repo,
        )
        get_console().print_info(f"Pushed {tag} to {self.settings.trunk_branch}")


# ---------------------------------------------------------------------
# Workflow wiring
# ---------------------------------------------------------------------

def release_job(settings: Settings, *, name: str = "bump-version", push: bool = True) -> Job:
    """Single-job workflow: runs only on pushes that should advance the version."""
    return Job(
        name=name,
        steps=[Step(name="Advance version", kind="release", data={"push": push}, timeout=600)],
        requires=["git"],
        condition=lambda event: should_advance(event, settings),
    )


def run_release(ctx: StepContext, step: Step) -> None:
    outcome = ReleaseAdvancer(ctx.repo_root, ctx.settings, push=step.data.get("push", True)).advance()
    ctx.state["release"] = outcome


HANDLERS = {"release": run_release}
