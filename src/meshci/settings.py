# settings.py
from __future__ import annotations

import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

NODE_BIN = "sn_node"
TESTNET_BIN = "testnet"

DEFAULT_NODE_COUNT = 15
DEFAULT_JOIN_INTERVAL_MS = 30_000
DEFAULT_CONVERGENCE_TIMEOUT_S = 300.0
DEFAULT_POLL_INTERVAL_S = 5.0
DEFAULT_NODE_HOME = "~/.safe/node"
DEFAULT_ARTIFACT_STORE = ".meshci/artifacts"
DEFAULT_BUILD_TARGET = "x86_64-unknown-linux-musl"
DEFAULT_NETWORK_LOG_FILTER = "sn_node,sn_consensus,sn_dysfunction=trace,sn_interface=trace"

RELEASE_MARKER = "chore(release):"
AUTOMATED_PR_MARKER = "Automated version bump"


def _parse_timeouts(raw: str) -> Dict[str, float]:
    """'Run client tests=3000,Build testnet=3600' -> {name: seconds}"""
    out: Dict[str, float] = {}
    for part in raw.split(","):
        if "=" not in part:
            continue
        name, _, value = part.rpartition("=")
        name = name.strip()
        if name:
            out[name] = float(value)
    return out


def _suite_env_name(suite: str) -> str:
    return "RUST_LOG_" + "".join(c if c.isalnum() else "_" for c in suite).upper()


@dataclass(frozen=True)
class Settings:
    node_count: int = DEFAULT_NODE_COUNT
    join_interval_ms: int = DEFAULT_JOIN_INTERVAL_MS
    convergence_timeout_s: float = DEFAULT_CONVERGENCE_TIMEOUT_S
    poll_interval_s: float = DEFAULT_POLL_INTERVAL_S
    node_home: Path = Path(DEFAULT_NODE_HOME).expanduser()
    artifact_store: str = DEFAULT_ARTIFACT_STORE
    build_target: str = DEFAULT_BUILD_TARGET
    runner_platform: str = platform.system().lower() or "unknown"
    runner_labels: Tuple[str, ...] = ("local", "self-hosted")
    step_timeouts: Dict[str, float] = field(default_factory=dict)
    log_filters: Dict[str, str] = field(default_factory=dict)
    default_log_filter: str = DEFAULT_NETWORK_LOG_FILTER
    isolate_networks: bool = True

    release_marker: str = RELEASE_MARKER
    automated_pr_marker: str = AUTOMATED_PR_MARKER
    trunk_branch: str = "main"
    repository_owner: str = "maidsafe"
    version_manifests: Tuple[str, ...] = ("Cargo.toml",)
    release_token: Optional[str] = None
    release_remote: str = "origin"
    redis_url: Optional[str] = None
    api_url: Optional[str] = None

    @property
    def log_dir(self) -> Path:
        """Where the bootstrap binary makes its nodes write their logs."""
        return self.node_home / "local-test-network"

    @property
    def labels(self) -> Tuple[str, ...]:
        """Runner labels a job's `runs_on` may name on this host; the platform is always one."""
        if self.runner_platform in self.runner_labels:
            return self.runner_labels
        return (*self.runner_labels, self.runner_platform)

    def timeout_for(self, step_name: str, default: float | None) -> float | None:
        return self.step_timeouts.get(step_name, default)

    def log_filter(self, suite: str) -> str:
        key = _suite_env_name(suite)[len("RUST_LOG_"):].lower()
        return self.log_filters.get(key, self.default_log_filter)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env

        log_filters = {}
        for key, value in env.items():
            if key.startswith("RUST_LOG_"):
                log_filters[key[len("RUST_LOG_"):].lower()] = value

        labels = tuple(
            label.strip() for label in env.get("MESHCI_RUNNER_LABELS", "local,self-hosted").split(",") if label.strip()
        )

        manifests = tuple(
            m.strip() for m in env.get("MESHCI_VERSION_MANIFESTS", "Cargo.toml").split(",") if m.strip()
        )

        return cls(
            node_count=int(env.get("NODE_COUNT", DEFAULT_NODE_COUNT)),
            join_interval_ms=int(env.get("MESHCI_JOIN_INTERVAL_MS", DEFAULT_JOIN_INTERVAL_MS)),
            convergence_timeout_s=float(env.get("MESHCI_CONVERGENCE_TIMEOUT_S", DEFAULT_CONVERGENCE_TIMEOUT_S)),
            poll_interval_s=float(env.get("MESHCI_POLL_INTERVAL_S", DEFAULT_POLL_INTERVAL_S)),
            node_home=Path(env.get("MESHCI_NODE_HOME", DEFAULT_NODE_HOME)).expanduser(),
            artifact_store=env.get("BUILD_ARTIFACTS_STORE", DEFAULT_ARTIFACT_STORE),
            build_target=env.get("MESHCI_BUILD_TARGET", DEFAULT_BUILD_TARGET),
            runner_platform=env.get("MESHCI_PLATFORM", platform.system().lower() or "unknown"),
            runner_labels=labels or ("local",),
            step_timeouts=_parse_timeouts(env.get("MESHCI_STEP_TIMEOUTS", "")),
            log_filters=log_filters,
            default_log_filter=env.get("RUST_LOG", DEFAULT_NETWORK_LOG_FILTER),
            isolate_networks=env.get("MESHCI_ISOLATE_NETWORKS", "1").lower() not in ("0", "false", "no"),
            release_marker=env.get("MESHCI_RELEASE_MARKER", RELEASE_MARKER),
            automated_pr_marker=env.get("MESHCI_AUTOMATED_PR_MARKER", AUTOMATED_PR_MARKER),
            trunk_branch=env.get("MESHCI_TRUNK_BRANCH", "main"),
            repository_owner=env.get("MESHCI_REPOSITORY_OWNER", "maidsafe"),
            version_manifests=manifests or ("Cargo.toml",),
            release_token=env.get("VERSION_BUMP_COMMIT_PAT") or None,
            release_remote=env.get("MESHCI_RELEASE_REMOTE", "origin"),
            redis_url=env.get("REDIS_URL") or None,
            api_url=env.get("MESHCI_API") or None,
        )
