# meshci_workflow.py
# Merge gating for the node network: parallel checks, one build, network
# suites against an ephemeral local network, churn test, and the `ci` gate.
from __future__ import annotations
from meshci.dsl import wf, job, sh, gate, matrix, on_pull_request
from meshci.settings import Settings
from meshci.step_workflows.build import build_job
from meshci.step_workflows.harness import churn_test_job, network_test_job

# suite -> command run against the live network
NETWORK_SUITES = {
    "e2e": "cd sn_client && cargo test --release --features check-replicas -- --test-threads=1",
    "api": "cd sn_api && cargo test --release -- --test-threads=1",
    "cli": "cd sn_cli && cargo test --release --test '*' -- --test-threads=1",
}


def workflow():
    settings = Settings.from_env()
    return wf(
        job(
            "checks",
            sh("Check formatting", "cargo fmt --all -- --check"),
            sh("Check documentation", "cargo doc --no-deps", env={"RUSTDOCFLAGS": "--deny=warnings"}),
            requires=["cargo"],
        ),

        job(
            "lint",
            sh("Clippy", "cargo clippy --all-targets --all-features -- -Dwarnings", timeout=60 * 30),
            requires=["cargo"],
        ),

        job(
            "cargo-udeps",
            sh("Run cargo-udeps", "cargo +nightly udeps --all-targets", timeout=60 * 30),
            requires=["cargo"],
        ),

        # PR only; not part of the gate so pushes are not blocked by its skip
        job(
            "commitlint",
            sh("Lint commit messages", "npx commitlint --from origin/main --to HEAD --verbose"),
            requires=["npx"],
            condition=on_pull_request,
        ),

        job(
            "unit",
            sh("Run sn_interface tests", "cargo test --release", cwd="sn_interface", timeout=60 * 25),
            sh("Run sn_dysfunction tests", "cargo test --release", cwd="sn_dysfunction", timeout=60 * 25),
            sh("Run sn_node tests", "cargo test --release", cwd="sn_node", timeout=60 * 25),
            sh("Run sn_cli tests", "cargo test --release --bin safe", cwd="sn_cli", timeout=60 * 25),
            requires=["cargo"],
        ),

        build_job(settings),

        *matrix("suite", NETWORK_SUITES).jobs(
            lambda suite: network_test_job(
                settings, name=suite, suite=suite, cmd=NETWORK_SUITES[suite], requires=["cargo"]
            )
        ),
        churn_test_job(
            settings,
            cmd="cargo run --release --example churn",
            unconditional_diagnostics=True,
            requires=["cargo"],
        ),

        gate("ci", needs=["cargo-udeps", "e2e", "api", "cli", "unit", "checks", "lint", "e2e-churn"]),
    )
