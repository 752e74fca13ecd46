from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from meshci.joinlog import DirectoryLogSource, departed_nodes, joined_nodes, parse_line


def test_parse_joined_and_left_lines() -> None:
    rec = parse_line("[2022-09-01T10:00:03.120Z INFO sn_node] Membership - decided: Joined(sn-node-3)")
    assert rec is not None
    assert (rec.node, rec.event) == ("sn-node-3", "joined")
    assert rec.timestamp == datetime(2022, 9, 1, 10, 0, 3, 120000, tzinfo=timezone.utc)

    left = parse_line("Membership - decided: Left(sn-node-7)")
    assert left is not None
    assert (left.node, left.event, left.timestamp) == ("sn-node-7", "left", None)


def test_unrelated_lines_are_ignored() -> None:
    assert parse_line("[2022-09-01T10:00:03Z INFO sn_node] Joined the network") is None
    assert parse_line("Membership - proposed: Joined(sn-node-1)") is None


def test_missing_node_falls_back_to_default() -> None:
    rec = parse_line("Membership - decided: Joined", default_node="sn-node-2")
    assert rec is not None and rec.node == "sn-node-2"
    assert parse_line("Membership - decided: Joined") is None


def test_directory_source_reads_every_log_file(tmp_path: Path) -> None:
    (tmp_path / "sn-node-1").mkdir()
    (tmp_path / "sn-node-2").mkdir()
    (tmp_path / "sn-node-1" / "sn_node.log").write_text(
        "noise\nMembership - decided: Joined(sn-node-1)\n", encoding="utf-8"
    )
    (tmp_path / "sn-node-2" / "sn_node.log.2022-09-01").write_text(
        "Membership - decided: Joined\nMembership - decided: Left(sn-node-2)\n", encoding="utf-8"
    )
    (tmp_path / "sn-node-2" / "notes.txt").write_text("Membership - decided: Left(x)\n", encoding="utf-8")

    source = DirectoryLogSource(tmp_path)
    records = source.records()

    assert [p.name for p in source.log_files()] == ["sn_node.log", "sn_node.log.2022-09-01"]
    assert joined_nodes(records) == {"sn-node-1", "sn-node-2"}
    assert departed_nodes(records) == {"sn-node-2"}
    assert {r.source for r in records} == {"sn-node-1/sn_node.log", "sn-node-2/sn_node.log.2022-09-01"}


def test_missing_directory_has_no_records(tmp_path: Path) -> None:
    assert DirectoryLogSource(tmp_path / "nope").records() == []
