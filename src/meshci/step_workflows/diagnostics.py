# step_workflows/diagnostics.py
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
from xml.sax.saxutils import escape

from ..artifacts import diagnostics_key, pack_files
from ..errors import CIError
from ..joinlog import LOG_GLOB, DirectoryLogSource, MembershipRecord, parse_timestamp
from ..model import Criticality, Step, StepContext, When
from ..ui.console import get_console
from .network import NETWORK_STATE

# ---------------------------------------------------------------------
# Timeline rendering
# ---------------------------------------------------------------------
# One row per node. A row has up to three segments:
#   launched -> joined   (grey, node started but not yet a member)
#   joined   -> left/end (green, member of the network)
#   a red tick where the node left
# X positions come from record timestamps; records without timestamps fall
# back to their position in the log.

ROW_HEIGHT = 22
LABEL_WIDTH = 140
PLOT_WIDTH = 800
MARGIN = 20

COLOR_LAUNCHED = "#bbbbbb"
COLOR_MEMBER = "#4caf50"
COLOR_LEFT = "#e53935"


def _positions(
    records: Sequence[MembershipRecord],
    launched: Mapping[str, datetime],
) -> Tuple[List[float], Dict[str, float], float, float]:
    if all(r.timestamp is not None for r in records) and (records or launched):
        origin = min([*(r.timestamp for r in records), *launched.values()])  # type: ignore[type-var]
        xs = [(r.timestamp - origin).total_seconds() for r in records]  # type: ignore[operator]
        ls = {n: (t - origin).total_seconds() for n, t in launched.items()}
        end = max([*xs, *ls.values(), 0.0])
        return xs, ls, 0.0, end
    xs = [float(i) for i in range(len(records))]
    return xs, {}, 0.0, float(max(len(records) - 1, 0))


def render_timeline(
    records: Sequence[MembershipRecord],
    *,
    launched: Optional[Mapping[str, datetime]] = None,
    title: str = "membership timeline",
) -> str:
    """Render membership records as a standalone SVG document."""
    launched = dict(launched or {})
    nodes = sorted({r.node for r in records} | set(launched))
    height = MARGIN * 3 + ROW_HEIGHT * max(len(nodes), 1)
    width = LABEL_WIDTH + PLOT_WIDTH + MARGIN * 2

    out = [
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{width}" height="{height}" '
        f'viewBox="0 0 {width} {height}" font-family="monospace" font-size="12">',
        f'<text x="{MARGIN}" y="{MARGIN}" font-weight="bold">{escape(title)}</text>',
    ]

    if not nodes:
        out.append(f'<text x="{MARGIN}" y="{MARGIN * 2 + 12}">no membership records</text>')
        out.append("</svg>")
        return "\n".join(out) + "\n"

    xs, launch_xs, start, end = _positions(records, launched)
    span = (end - start) or 1.0

    def px(x: float) -> float:
        return round(LABEL_WIDTH + MARGIN + (x - start) / span * PLOT_WIDTH, 2)

    joined_at: Dict[str, float] = {}
    left_at: Dict[str, float] = {}
    for rec, x in zip(records, xs):
        if rec.event == "joined":
            joined_at.setdefault(rec.node, x)
        elif rec.event == "left":
            left_at.setdefault(rec.node, x)

    for row, node in enumerate(nodes):
        y = MARGIN * 2 + row * ROW_HEIGHT
        out.append(f'<g class="node" data-node="{escape(node)}">')
        out.append(f'<text x="{MARGIN}" y="{y + 14}">{escape(node)}</text>')

        joined = joined_at.get(node)
        left = left_at.get(node)
        if node in launch_xs:
            stop = joined if joined is not None else (left if left is not None else end)
            out.append(_rect(px(launch_xs[node]), y, px(stop), COLOR_LAUNCHED, "launched"))
        if joined is not None:
            stop = left if left is not None else end
            out.append(_rect(px(joined), y, px(stop), COLOR_MEMBER, "joined"))
        if left is not None:
            out.append(
                f'<line class="left" x1="{px(left)}" y1="{y}" x2="{px(left)}" y2="{y + ROW_HEIGHT - 4}" '
                f'stroke="{COLOR_LEFT}" stroke-width="3"/>'
            )
        out.append("</g>")

    out.append("</svg>")
    return "\n".join(out) + "\n"


def _rect(x0: float, y: int, x1: float, color: str, cls: str) -> str:
    w = max(x1 - x0, 2.0)
    return (
        f'<rect class="{cls}" x="{x0}" y="{y + 2}" width="{round(w, 2)}" '
        f'height="{ROW_HEIGHT - 6}" fill="{color}"/>'
    )


def first_seen(source: DirectoryLogSource) -> Dict[str, datetime]:
    """Earliest timestamp in each node's log directory (its launch time)."""
    seen: Dict[str, datetime] = {}
    for path in source.log_files():
        rel = path.relative_to(source.root)
        if len(rel.parts) < 2:
            continue
        with path.open("r", encoding="utf-8", errors="replace") as fp:
            for line in fp:
                ts = parse_timestamp(line)
                if ts is None:
                    continue
                node = rel.parts[0]
                if node not in seen or ts < seen[node]:
                    seen[node] = ts
                break
    return seen


# ---------------------------------------------------------------------
# Log bundle
# ---------------------------------------------------------------------

def archive_logs(log_dir: str | Path, pattern: str = LOG_GLOB) -> bytes:
    root = Path(log_dir)
    files = DirectoryLogSource(root, pattern).log_files()
    if not files:
        raise FileNotFoundError(f"no {pattern} files under {root}")
    return pack_files((p.relative_to(root).as_posix(), p.read_bytes(), 0o644) for p in files)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def timeline_name(suite: str, platform: str) -> str:
    return f"statemap_{suite}_{platform}.svg"


def logs_name(suite: str, platform: str) -> str:
    return f"node_logs_{suite}_{platform}.tar.gz"


def _diagnostic_step(name: str, kind: str, suite: str, unconditional: bool) -> Step:
    return Step(
        name=name,
        kind=kind,
        data={"suite": suite},
        criticality=Criticality.ADVISORY,
        when=When.ALWAYS if unconditional else When.FAILURE,
        timeout=300,
    )


def timeline_step(suite: str, *, unconditional: bool = False) -> Step:
    return _diagnostic_step(f"Generate statemap ({suite})", "timeline", suite, unconditional)


def archive_logs_step(suite: str, *, unconditional: bool = False) -> Step:
    return _diagnostic_step(f"Upload node logs ({suite})", "archive_logs", suite, unconditional)


# ---------------------------------------------------------------------
# Step execution
# ---------------------------------------------------------------------

def _log_dir(ctx: StepContext) -> Path:
    instance = ctx.state.get(NETWORK_STATE)
    return instance.log_dir if instance is not None else ctx.settings.log_dir


def _upload(ctx: StepContext, name: str, blob: bytes) -> str:
    key = diagnostics_key(ctx.run_id, name)
    ctx.store.put(key, blob)
    get_console().print_info(f"[{ctx.job.name}] uploaded {key}")
    return key


def run_timeline(ctx: StepContext, step: Step) -> None:
    suite = step.data["suite"]
    source = DirectoryLogSource(_log_dir(ctx))
    records = source.records()
    if not records and not source.log_files():
        raise CIError(
            kind="no_logs",
            job=ctx.job.name,
            step=step.name,
            message=f"no node logs under {source.root}",
        )
    svg = render_timeline(records, launched=first_seen(source), title=f"{suite} ({ctx.settings.runner_platform})")
    _upload(ctx, timeline_name(suite, ctx.settings.runner_platform), svg.encode("utf-8"))


def run_archive(ctx: StepContext, step: Step) -> None:
    suite = step.data["suite"]
    blob = archive_logs(_log_dir(ctx))
    _upload(ctx, logs_name(suite, ctx.settings.runner_platform), blob)


HANDLERS = {
    "timeline": run_timeline,
    "archive_logs": run_archive,
}
