# joinlog.py
# Reading the membership log written by the nodes under test.
#
# The nodes log every membership decision, e.g.
#   [2022-09-01T10:00:03.120Z INFO sn_node] Membership - decided: Joined(sn-node-3)
#   [2022-09-01T10:04:10.002Z INFO sn_node] Membership - decided: Left(sn-node-7)
# We only look at those lines; everything else in the logs is noise here.

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Protocol, Set

MEMBERSHIP_MARKER = "Membership - decided"
LOG_GLOB = "*.log*"

_RECORD_RE = re.compile(
    r"Membership - decided:?\s*(?P<event>Joined|Left)\b[\s(:]*(?P<node>[A-Za-z0-9_.:@-]+)?",
    re.IGNORECASE,
)
_TS_RE = re.compile(r"(?P<ts>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?)")


@dataclass(frozen=True)
class MembershipRecord:
    node: str
    event: str                       # "joined" | "left"
    timestamp: Optional[datetime] = None
    source: str = ""


class LogSource(Protocol):
    """Opaque handle to one network instance's membership log."""

    def records(self) -> List[MembershipRecord]: ...


def parse_timestamp(line: str) -> Optional[datetime]:
    m = _TS_RE.search(line)
    if not m:
        return None
    raw = m.group("ts").replace(" ", "T")
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


def parse_line(line: str, *, default_node: str = "", source: str = "") -> Optional[MembershipRecord]:
    if MEMBERSHIP_MARKER.lower() not in line.lower():
        return None
    m = _RECORD_RE.search(line)
    if not m:
        return None
    node = m.group("node") or default_node
    if not node:
        return None
    return MembershipRecord(
        node=node.strip(".:"),
        event=m.group("event").lower(),
        timestamp=parse_timestamp(line),
        source=source,
    )


def parse_lines(lines: Iterable[str], *, default_node: str = "", source: str = "") -> Iterator[MembershipRecord]:
    for line in lines:
        rec = parse_line(line, default_node=default_node, source=source)
        if rec is not None:
            yield rec


class DirectoryLogSource:
    """
    All *.log* files under a node log tree, one sub-directory per node:
      root/
        sn-node-1/sn_node.log
        sn-node-2/sn_node.log.2022-09-01
    """

    def __init__(self, root: str | Path, pattern: str = LOG_GLOB):
        self.root = Path(root)
        self.pattern = pattern

    def log_files(self) -> List[Path]:
        if not self.root.exists():
            return []
        return sorted(p for p in self.root.rglob(self.pattern) if p.is_file())

    def records(self) -> List[MembershipRecord]:
        out: List[MembershipRecord] = []
        for path in self.log_files():
            rel = path.relative_to(self.root)
            default_node = rel.parts[0] if len(rel.parts) > 1 else ""
            try:
                with path.open("r", encoding="utf-8", errors="replace") as fp:
                    out.extend(parse_lines(fp, default_node=default_node, source=str(rel)))
            except FileNotFoundError:
                # rotated away between listing and reading
                continue
        return out

    def __repr__(self) -> str:
        return f"DirectoryLogSource({str(self.root)!r})"


def joined_nodes(records: Iterable[MembershipRecord]) -> Set[str]:
    return {r.node for r in records if r.event == "joined"}


def departed_nodes(records: Iterable[MembershipRecord]) -> Set[str]:
    return {r.node for r in records if r.event == "left"}
