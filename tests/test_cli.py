from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from meshci.cli import cli

GITHUB_VARS = (
    "GITHUB_EVENT_NAME",
    "GITHUB_EVENT_PATH",
    "GITHUB_RUN_ID",
    "GITHUB_REPOSITORY_OWNER",
    "MESHCI_API",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in GITHUB_VARS:
        monkeypatch.delenv(var, raising=False)


def write_logs(root: Path, joined: int, left: tuple[str, ...] = ()) -> Path:
    for i in range(1, joined + 1):
        node = root / f"sn-node-{i}"
        node.mkdir(parents=True, exist_ok=True)
        lines = [f"[2022-09-01T10:00:0{i}.000Z INFO sn_node] Membership - decided: Joined(sn-node-{i})"]
        if f"sn-node-{i}" in left:
            lines.append(f"[2022-09-01T10:00:09.000Z INFO sn_node] Membership - decided: Left(sn-node-{i})")
        (node / "sn_node.log").write_text("\n".join(lines) + "\n", encoding="utf-8")
    return root


def test_wait_for_nodes_passes_once_all_joined(tmp_path: Path) -> None:
    logs = write_logs(tmp_path / "logs", 3)
    result = CliRunner().invoke(
        cli, ["wait-for-nodes", "--log-dir", str(logs), "--count", "3", "--timeout", "1", "--interval", "0.01"]
    )
    assert result.exit_code == 0, result.output
    assert "All 3 nodes joined" in result.output


def test_wait_for_nodes_fails_at_the_ceiling(tmp_path: Path) -> None:
    logs = write_logs(tmp_path / "logs", 2)
    result = CliRunner().invoke(
        cli, ["wait-for-nodes", "--log-dir", str(logs), "--count", "3", "--timeout", "0.2", "--interval", "0.05"]
    )
    assert result.exit_code == 1


def test_check_departures(tmp_path: Path) -> None:
    clean = write_logs(tmp_path / "clean", 3)
    assert CliRunner().invoke(cli, ["check-departures", "--log-dir", str(clean)]).exit_code == 0

    churned = write_logs(tmp_path / "churned", 3, left=("sn-node-2",))
    assert CliRunner().invoke(cli, ["check-departures", "--log-dir", str(churned)]).exit_code == 1


def test_timeline_writes_svg(tmp_path: Path) -> None:
    logs = write_logs(tmp_path / "logs", 2, left=("sn-node-1",))
    out = tmp_path / "statemap.svg"

    result = CliRunner().invoke(cli, ["timeline", "--log-dir", str(logs), "-o", str(out), "--title", "e2e"])

    assert result.exit_code == 0, result.output
    svg = out.read_text(encoding="utf-8")
    assert svg.count('<g class="node"') == 2
    assert 'class="left"' in svg


WORKFLOW = """\
from meshci import gate, job, sh, wf

def workflow():
    return wf(
        job("unit", sh("tests", {cmd!r})),
        gate("ci", needs=["unit"]),
    )
"""


@pytest.mark.parametrize("cmd,code", [("true", 0), ("false", 1)])
def test_run_exit_code_follows_the_gate(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, cmd: str, code: int
) -> None:
    (tmp_path / "meshci_workflow.py").write_text(WORKFLOW.format(cmd=cmd), encoding="utf-8")
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(
        cli,
        ["run", "--run-id", "7", "--ref", "refs/heads/feature", "--message", "fix: x", "--workers", "2"],
    )

    assert result.exit_code == code, result.output
    assert "GATE:" in result.output


def test_run_without_workflow_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    result = CliRunner().invoke(cli, ["run"])
    assert result.exit_code == 1
