from __future__ import annotations

import json
from pathlib import Path

from meshci.settings import Settings
from meshci.triggers import (
    PULL_REQUEST,
    PUSH,
    TriggerEvent,
    concurrency_group,
    concurrency_key,
    is_automated_release,
)

PUSH_PAYLOAD = {
    "ref": "refs/heads/main",
    "after": "abc123",
    "head_commit": {"id": "abc123", "message": "fix(node): handle relocation"},
    "repository": {"owner": {"login": "maidsafe"}},
    "sender": {"login": "dev"},
}

PR_PAYLOAD = {
    "number": 42,
    "pull_request": {"number": 42, "title": "feat: churn", "head": {"sha": "def456"}},
    "repository": {"owner": {"login": "maidsafe"}},
    "sender": {"login": "dev"},
}


def test_push_event_from_payload() -> None:
    event = TriggerEvent.from_github(PUSH, PUSH_PAYLOAD)
    assert event.kind == PUSH
    assert event.branch == "main"
    assert event.head_message == "fix(node): handle relocation"
    assert event.repository_owner == "maidsafe"
    assert event.sha == "abc123"
    assert event.pr_number is None


def test_pull_request_event_from_file(tmp_path: Path) -> None:
    path = tmp_path / "event.json"
    path.write_text(json.dumps(PR_PAYLOAD), encoding="utf-8")

    event = TriggerEvent.from_event_file(PULL_REQUEST, path, workflow="pr")

    assert event.kind == PULL_REQUEST
    assert event.pr_number == 42
    assert event.pr_title == "feat: churn"
    assert event.ref == "refs/pull/42/merge"
    assert event.workflow == "pr"


def test_concurrency_is_per_pull_request_or_ref() -> None:
    pr = TriggerEvent.from_github(PULL_REQUEST, PR_PAYLOAD)
    again = TriggerEvent.from_github(PULL_REQUEST, {**PR_PAYLOAD, "pull_request": {**PR_PAYLOAD["pull_request"], "head": {"sha": "fff"}}})
    push = TriggerEvent.from_github(PUSH, PUSH_PAYLOAD)

    assert concurrency_group("ci", pr) == "ci-42"
    assert concurrency_group("ci", push) == "ci-refs/heads/main"
    assert concurrency_key("ci", pr) == concurrency_key("ci", again)
    assert concurrency_key("ci", pr) != concurrency_key("ci", push)
    assert concurrency_key("ci", pr) != concurrency_key("release", pr)


def test_automated_release_detection() -> None:
    settings = Settings()
    assert is_automated_release(TriggerEvent(kind=PUSH, ref="refs/heads/main", head_message="chore(release): v1.2.3"), settings)
    assert not is_automated_release(TriggerEvent(kind=PUSH, ref="refs/heads/main", head_message="chore: v1.2.3"), settings)
    assert is_automated_release(
        TriggerEvent(kind=PULL_REQUEST, ref="refs/pull/1/merge", pr_number=1, pr_title="Automated version bump"), settings
    )
    assert not is_automated_release(
        TriggerEvent(kind=PULL_REQUEST, ref="refs/pull/1/merge", pr_number=1, pr_title="feat: x"), settings
    )


def test_settings_from_env() -> None:
    settings = Settings.from_env(
        {
            "NODE_COUNT": "7",
            "MESHCI_STEP_TIMEOUTS": "Run api tests=3000, Build testnet=3600,bogus",
            "RUST_LOG_API": "sn_client=trace",
            "RUST_LOG": "sn_node=debug",
            "MESHCI_ISOLATE_NETWORKS": "false",
            "VERSION_BUMP_COMMIT_PAT": "",
            "MESHCI_VERSION_MANIFESTS": "sn_node/Cargo.toml, sn_client/Cargo.toml",
            "MESHCI_RUNNER_LABELS": "self-hosted, gpu",
            "MESHCI_PLATFORM": "macos",
        }
    )

    assert settings.node_count == 7
    assert settings.timeout_for("Run api tests", 10) == 3000
    assert settings.timeout_for("Build testnet", 10) == 3600
    assert settings.timeout_for("Run cli tests", 10) == 10
    assert settings.log_filter("api") == "sn_client=trace"
    assert settings.log_filter("e2e") == "sn_node=debug"
    assert settings.isolate_networks is False
    assert settings.release_token is None
    assert settings.version_manifests == ("sn_node/Cargo.toml", "sn_client/Cargo.toml")
    assert settings.labels == ("self-hosted", "gpu", "macos")
    assert Settings.from_env({}).labels[:2] == ("local", "self-hosted")
