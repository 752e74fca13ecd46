# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import click

from meshci.control.api_client import APIClient, APIError, RemoteRunRegistry
from meshci.errors import ConvergenceTimeout, LockUnavailable, NodeDeparted, ReleaseError
from meshci.git_facts import git
from meshci.joinlog import DirectoryLogSource
from meshci.release import ReleaseAdvancer, should_advance
from meshci.runner import load_workflow, run_workflow
from meshci.settings import Settings
from meshci.step_workflows.diagnostics import first_seen, render_timeline
from meshci.step_workflows.harness import assert_no_departures
from meshci.step_workflows.network import wait_for_convergence
from meshci.triggers import PULL_REQUEST, PUSH, TriggerEvent, concurrency_key
from meshci.ui.console import Console, get_console, set_console


def find_workflow_files() -> list[Path]:
    """Workflow files in the current directory (meshci_workflow.py first)."""
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / "meshci_workflow.py"
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in sorted(current_dir.glob("*_workflow.py")):
        if path != default_workflow:
            workflow_files.append(path)

    return workflow_files


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    With no argument, meshci_workflow.py wins; otherwise exactly one
    *_workflow.py must exist.

    Raises:
        SystemExit: If workflow cannot be found or is ambiguous
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  meshci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if not workflow_files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", "  meshci_workflow.py", "  *_workflow.py"],
            suggestion="Create meshci_workflow.py or specify a workflow explicitly:\n  meshci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if workflow_files[0].name == "meshci_workflow.py":
        return workflow_files[0]

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  meshci run --workflow meshci_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def _fail(ctx: click.Context, e: BaseException, code: int = 1) -> None:
    console = get_console()
    if isinstance(e, KeyboardInterrupt):
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    console.print_exception(e)
    sys.exit(code)


def _local_event(event_name: str, ref: str | None, message: str | None, owner: str,
                 pr_number: int | None, pr_title: str, workflow: str) -> TriggerEvent:
    """Trigger metadata for a run started by hand: fill the gaps from the local checkout."""
    if ref is None:
        try:
            ref = f"refs/heads/{git.current_branch()}"
        except (subprocess.CalledProcessError, FileNotFoundError):
            ref = "refs/heads/local"
    if message is None and event_name == PUSH:
        try:
            message = git.head_message()
        except (subprocess.CalledProcessError, FileNotFoundError):
            message = ""
    try:
        sha = git.head_sha()
    except (subprocess.CalledProcessError, FileNotFoundError):
        sha = ""
    return TriggerEvent(
        kind=event_name,
        ref=ref,
        head_message=message or "",
        repository_owner=owner,
        pr_number=pr_number,
        pr_title=pr_title,
        sha=sha,
        workflow=workflow,
    )


def event_options(f):
    """Trigger metadata options shared by `run` and `release`."""
    options = [
        click.option("--event-name", type=click.Choice([PUSH, PULL_REQUEST]), default=PUSH,
                     envvar="GITHUB_EVENT_NAME", show_default=True, help="Kind of trigger"),
        click.option("--event-file", type=click.Path(exists=True, dir_okay=False), default=None,
                     envvar="GITHUB_EVENT_PATH", help="GitHub event payload (JSON)"),
        click.option("--ref", default=None, help="Git ref (defaults to the current branch)"),
        click.option("--message", default=None, help="Head commit message (defaults to HEAD's)"),
        click.option("--owner", default="", envvar="GITHUB_REPOSITORY_OWNER", help="Repository owner"),
        click.option("--pr-number", type=int, default=None, help="Pull request number"),
        click.option("--pr-title", default="", help="Pull request title"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _event(kwargs: dict, workflow: str) -> TriggerEvent:
    if kwargs["event_file"]:
        return TriggerEvent.from_event_file(kwargs["event_name"], kwargs["event_file"], workflow=workflow)
    return _local_event(
        kwargs["event_name"],
        kwargs["ref"],
        kwargs["message"],
        kwargs["owner"],
        kwargs["pr_number"],
        kwargs["pr_title"],
        workflow,
    )


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """meshci: CI orchestration for a P2P node network."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help="Workflow file path (defaults to meshci_workflow.py if present)",
)
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--run-id", default=None, envvar="GITHUB_RUN_ID", help="Run identifier (keys the build artifact)")
@click.option("--api", default=None, envvar="MESHCI_API", help="Control plane URL for cross-host concurrency groups")
@click.option("--work-dir", default=".meshci/work", show_default=True, help="Per-job workspace root")
@event_options
@click.pass_context
def run(ctx, workflow, workers, run_id, api, work_dir, **event_kwargs):
    """Run a workflow for one trigger event; exits 0 iff the gate succeeded."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        settings = Settings.from_env()
        jobs = load_workflow(workflow_path)
        name = workflow_path.stem
        event = _event(event_kwargs, name)

        try:
            repo_name = git.remote_url("origin").rstrip("/").split("/")[-1].replace(".git", "")
        except (subprocess.CalledProcessError, FileNotFoundError):
            repo_name = Path(".").resolve().name

        registry = None
        if api:
            registry = RemoteRunRegistry(
                APIClient(api),
                workflow=name,
                ref=event.ref,
                jobs=[j.name for j in jobs],
                gates=[j.name for j in jobs if j.gate],
            )

        console.print_run_started(
            repository=repo_name,
            workflow=workflow_path.name,
            job_count=len(jobs),
            run_id=run_id or "",
            ref=event.ref,
        )
        console.print_debug(f"concurrency key {concurrency_key(name, event)}")

        result = run_workflow(
            jobs,
            event,
            settings=settings,
            registry=registry,
            workflow=name,
            run_id=run_id,
            max_workers=workers,
            work_root=work_dir,
        )

        gate = result.gate
        console.print_results(result.summary(), gate=gate.status.value if gate else None)
        if not result.passed:
            sys.exit(1)

    except (KeyboardInterrupt, Exception) as e:
        _fail(ctx, e)


@cli.command("wait-for-nodes")
@click.option("--log-dir", type=click.Path(file_okay=False), default=None, help="Node log tree (defaults to the node home's)")
@click.option("--count", type=int, default=None, help="Nodes expected to join (defaults to NODE_COUNT)")
@click.option("--timeout", type=float, default=None, help="Ceiling in seconds")
@click.option("--interval", type=float, default=None, help="Poll interval in seconds")
@click.pass_context
def wait_for_nodes(ctx, log_dir, count, timeout, interval):
    """Poll the node logs until the expected number of nodes has joined."""
    console = get_console()
    settings = Settings.from_env()
    source = DirectoryLogSource(Path(log_dir) if log_dir else settings.log_dir)
    expected = count if count is not None else settings.node_count

    try:
        joined = wait_for_convergence(
            source,
            expected,
            ceiling=timeout if timeout is not None else settings.convergence_timeout_s,
            interval=interval if interval is not None else settings.poll_interval_s,
        )
    except ConvergenceTimeout as e:
        console.print_error("Network did not converge", str(e), details=list(e.joined))
        sys.exit(1)
    except KeyboardInterrupt as e:
        _fail(ctx, e)
    console.print_info(f"All {len(joined)} nodes joined")


@cli.command("check-departures")
@click.option("--log-dir", type=click.Path(file_okay=False), default=None, help="Node log tree (defaults to the node home's)")
def check_departures(log_dir):
    """Fail if any node left the network."""
    console = get_console()
    settings = Settings.from_env()
    source = DirectoryLogSource(Path(log_dir) if log_dir else settings.log_dir)
    try:
        assert_no_departures(source)
    except NodeDeparted as e:
        console.print_error("Nodes left the network", str(e), details=list(e.nodes))
        sys.exit(1)
    console.print_info("No departures")


@cli.command()
@click.option("--log-dir", type=click.Path(file_okay=False), default=None, help="Node log tree (defaults to the node home's)")
@click.option("--output", "-o", type=click.Path(dir_okay=False), required=True, help="SVG file to write")
@click.option("--title", default="membership timeline", show_default=True)
def timeline(log_dir, output, title):
    """Render the membership log as an SVG timeline."""
    settings = Settings.from_env()
    source = DirectoryLogSource(Path(log_dir) if log_dir else settings.log_dir)
    svg = render_timeline(source.records(), launched=first_seen(source), title=title)
    Path(output).write_text(svg, encoding="utf-8")
    get_console().print_info(f"Wrote {output}")


@cli.command()
@click.option("--repo", type=click.Path(file_okay=False, exists=True), default=".", show_default=True)
@click.option("--push/--no-push", default=True, show_default=True, help="Push the release commit and tag")
@click.option("--force", is_flag=True, default=False, help="Skip the trigger policy check")
@event_options
@click.pass_context
def release(ctx, repo, push, force, **event_kwargs):
    """Advance the version on trunk (commit, tag, push)."""
    console = get_console()
    settings = Settings.from_env()

    try:
        event = _event(event_kwargs, "release")
        if not force and not should_advance(event, settings):
            console.print_info(
                f"Not advancing: {event.kind} to {event.ref} (owner {event.repository_owner or 'unknown'})"
            )
            return

        outcome = ReleaseAdvancer(repo, settings, push=push).advance()
        if outcome.advanced:
            console.print_info(f"Released v{outcome.version}")
        else:
            console.print_info(f"No release: {outcome.reason}")
    except LockUnavailable as e:
        console.print_error("Release already in progress", str(e))
        sys.exit(75)
    except ReleaseError as e:
        console.print_error("Release failed", str(e))
        sys.exit(1)
    except (KeyboardInterrupt, Exception) as e:
        _fail(ctx, e)


@cli.command()
@click.argument("run_id")
@click.option("--api", required=True, envvar="MESHCI_API", help="Control plane URL")
def gate(run_id, api):
    """Print a run's gate status; exits 0 iff it succeeded."""
    console = get_console()
    try:
        state = APIClient(api).gate(run_id)
    except APIError as e:
        console.print_error("Control plane request failed", str(e))
        sys.exit(1)
    console.print_info(f"{state.get('gate') or run_id}: {state.get('status')}")
    if state.get("status") != "succeeded":
        sys.exit(1)


if __name__ == "__main__":
    cli()
