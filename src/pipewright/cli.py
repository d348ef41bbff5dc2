# cli.py
from __future__ import annotations

import json
import logging
import subprocess
import sys
from dataclasses import replace
from pathlib import Path

import click

from pipewright.actions import default_registry
from pipewright.cache import CacheStore
from pipewright.config import Settings
from pipewright.context import build_services
from pipewright.dag import validate_workflow
from pipewright.engine import run_workflow
from pipewright.environment import DockerProvisioner
from pipewright.errors import PipewrightError
from pipewright.events import event_from_git, load_event, parse_kind
from pipewright.loader import find_workflow_files, load_workflow
from pipewright.model import Event, EventKind, RunStatus
from pipewright.triggers import evaluate
from pipewright.ui.console import Console, get_console, set_console


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    # If workflow is explicitly provided, use it
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  pipewright run pages.yml",
            )
            sys.exit(1)
        return workflow_path

    # Otherwise, try to discover workflow
    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  .pipewright/workflows/*.yml",
                "  pipewright.yml",
                "  *_workflow.py",
            ],
            suggestion="Create a workflow file, or specify one explicitly:\n  pipewright run path/to/workflow.yml",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  pipewright run {workflow_files[0]}",
        )
        sys.exit(1)

    return workflow_files[0]


def _parse_pairs(values, what: str) -> dict:
    out = {}
    for item in values:
        if "=" not in item:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint=what)
        k, v = item.split("=", 1)
        out[k] = v
    return out


def build_event(
    *,
    event_path: str | None,
    kind: str,
    ref: str | None,
    compare_ref: str,
    change_request: int | None,
    inputs: dict,
    changed: tuple = (),
    message: str | None = None,
    default_branch: str = "main",
) -> Event:
    """Event from a payload file, else from local git state."""
    console = get_console()
    if event_path:
        event = load_event(event_path)
    else:
        event_kind = parse_kind(kind)
        try:
            event = event_from_git(
                event_kind,
                compare_ref=compare_ref,
                ref=ref,
                change_request=change_request,
                inputs=inputs,
            )
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            console.print_debug(f"git state unavailable ({e}); using a bare event")
            event = Event(
                kind=event_kind,
                ref=ref or default_branch,
                repository=Path(".").resolve().name,
                change_request=change_request,
                inputs=inputs,
            )
    overrides = {}
    if changed:
        overrides["changed_paths"] = tuple(changed)
    if message is not None:
        overrides["commit_message"] = message
    return replace(event, **overrides) if overrides else event


def _settings(ctx, **overrides) -> Settings:
    settings: Settings = ctx.obj["settings"]
    values = {k: v for k, v in overrides.items() if v is not None}
    if not values:
        return settings
    if "home" in values:
        # derived directories follow a new home unless given explicitly
        for name in ("cache_dir", "artifact_dir", "deploy_dir"):
            if Path(getattr(settings, name)).parent == settings.home:
                values.setdefault(name, None)
    return replace(settings, **values)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """pipewright: event-driven CI/CD workflow runner."""
    # Initialize console with debug flag
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = Settings.from_env()


event_options = [
    click.option("--event", "event_path", default=None, type=click.Path(exists=True, dir_okay=False),
                 help="JSON event payload (defaults to an event built from local git state)"),
    click.option("--kind", default=EventKind.PUSH.value, show_default=True,
                 help="Event kind when building the event from git"),
    click.option("--ref", default=None, help="Branch/ref (defaults to the current branch)"),
    click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against"),
    click.option("--change-request", default=None, type=int, help="Pull request number"),
    click.option("--input", "inputs", multiple=True, help="Manual-dispatch input KEY=VALUE"),
]


def with_event_options(fn):
    for option in reversed(event_options):
        fn = option(fn)
    return fn


@cli.command()
@click.argument("workflow", required=False)
@with_event_options
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--home", default=None, type=click.Path(file_okay=False, path_type=Path), help="State directory")
@click.option("--cache-dir", default=None, type=click.Path(file_okay=False, path_type=Path), help="Cache directory")
@click.option("--source", default=".", type=click.Path(exists=True, file_okay=False), help="Repository checkout to build")
@click.option("--fail-fast/--no-fail-fast", default=False, help="Stop scheduling new jobs after first failure")
@click.option("--retain-artifacts", is_flag=True, default=False, help="Keep this run's artifacts afterwards")
@click.option("--docker", is_flag=True, default=False, help="Run jobs in Docker containers chosen by runs-on")
@click.pass_context
def run(ctx, workflow, event_path, kind, ref, compare_ref, change_request, inputs,
        workers, home, cache_dir, source, fail_fast, retain_artifacts, docker):
    """Run a workflow for an event."""
    console = get_console()

    # Discover workflow file
    workflow_path = discover_workflow(workflow)

    try:
        settings = _settings(ctx, home=home, cache_dir=cache_dir, max_workers=workers)
        definition = load_workflow(workflow_path, base_dir=source)
        event = build_event(
            event_path=event_path,
            kind=kind,
            ref=ref,
            compare_ref=compare_ref,
            change_request=change_request,
            inputs=_parse_pairs(inputs, "--input"),
            default_branch=settings.default_branch,
        )
        provisioner = DockerProvisioner(base_dir=Path(settings.home) / "workspaces") if docker else None
        services = build_services(settings, source_root=source, provisioner=provisioner)

        result = run_workflow(
            definition,
            event,
            services,
            max_workers=settings.max_workers,
            fail_fast=fail_fast,
            retain_artifacts=retain_artifacts,
        )
        if result is None:
            console.print_info("No run created: the event did not match the workflow's triggers.")
            return
        if result.status == RunStatus.CANCELLED:
            sys.exit(130)
        if result.status == RunStatus.FAILURE:
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except PipewrightError as e:
        console.print_error(type(e).__name__, str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.argument("workflow", required=False)
@click.pass_context
def validate(ctx, workflow):
    """Check a workflow without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        definition = load_workflow(workflow_path)
        levels = validate_workflow(definition, default_registry())
    except (PipewrightError, FileNotFoundError, ValueError, TypeError) as e:
        console.print_error("Invalid workflow", f"{workflow_path}", details=str(e).splitlines())
        sys.exit(1)
    console.print_info(f"OK: {definition.name} ({len(definition.jobs)} job(s), {len(levels)} stage(s))")


@cli.command()
@click.argument("workflow", required=False)
@click.pass_context
def plan(ctx, workflow):
    """Print the stages a workflow executes in."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        definition = load_workflow(workflow_path)
        levels = validate_workflow(definition, default_registry())
    except (PipewrightError, FileNotFoundError, ValueError, TypeError) as e:
        console.print_error("Invalid workflow", f"{workflow_path}", details=str(e).splitlines())
        sys.exit(1)
    console.print_plan(levels)
    for job in definition.jobs:
        reason = f"needs {', '.join(job.needs)}" if job.needs else "no dependencies"
        console.print_plan_job(job.name, f"{reason}; runs-on {job.runs_on}")


@cli.command("check-trigger")
@click.argument("workflow", required=False)
@with_event_options
@click.option("--changed", multiple=True, help="Changed path (repeatable); overrides git")
@click.option("--message", default=None, help="Commit message; overrides git")
@click.pass_context
def check_trigger(ctx, workflow, event_path, kind, ref, compare_ref, change_request, inputs, changed, message):
    """Show whether an event would start a run. Exits 1 when rejected."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        definition = load_workflow(workflow_path)
        event = build_event(
            event_path=event_path,
            kind=kind,
            ref=ref,
            compare_ref=compare_ref,
            change_request=change_request,
            inputs=_parse_pairs(inputs, "--input"),
            changed=changed,
            message=message,
            default_branch=ctx.obj["settings"].default_branch,
        )
    except PipewrightError as e:
        console.print_error(type(e).__name__, str(e))
        sys.exit(1)
    decision = evaluate(event, definition.triggers)
    console.print_trigger_decision(decision)
    if not decision:
        sys.exit(1)


@cli.command()
@click.argument("run_id")
@click.option("--home", default=None, type=click.Path(file_okay=False, path_type=Path), help="State directory")
@click.pass_context
def show(ctx, run_id, home):
    """Show the recorded result of a run."""
    console = get_console()
    settings = _settings(ctx, home=home)
    record = Path(settings.home) / "runs" / f"{run_id}.json"
    if not record.exists():
        console.print_error("Run not found", f"No run record at {record}")
        sys.exit(1)
    data = json.loads(record.read_text(encoding="utf-8"))
    console.print_header(f"RUN {data['id']} ({data['status'].upper()})")
    console.print_info(f"Workflow: {data['workflow']}")
    console.print_info(f"Event: {data['event']['kind']} {data['event']['ref']}")
    for name, job in data["jobs"].items():
        line = f"  {name}: {job['status'].upper()}"
        if job.get("failed_step"):
            line += f" (step: {job['failed_step']})"
        elif job.get("reason"):
            line += f" ({job['reason']})"
        console.print_info(line)
        for step in job.get("steps", []):
            console.print_info(f"    - {step['name']}: {step['outcome']}")
            if step.get("error"):
                console.print_info(f"      {step['error'].splitlines()[0]}")


@cli.group()
def cache():
    """Inspect and prune the dependency cache."""


@cache.command("list")
@click.option("--cache-dir", default=None, type=click.Path(file_okay=False, path_type=Path), help="Cache directory")
@click.pass_context
def cache_list(ctx, cache_dir):
    """List cache entries, most recently used first."""
    console = get_console()
    settings = _settings(ctx, cache_dir=cache_dir)
    store = CacheStore(settings.cache_dir)
    entries = sorted(store.entries(), key=lambda e: e.last_access, reverse=True)
    if not entries:
        console.print_info("Cache is empty.")
        return
    for e in entries:
        console.print_info(f"{e.size:>12}  {e.key}")
    console.print_info(f"{len(entries)} entr{'y' if len(entries) == 1 else 'ies'}, {store.total_bytes()} bytes")


@cache.command("prune")
@click.option("--cache-dir", default=None, type=click.Path(file_okay=False, path_type=Path), help="Cache directory")
@click.option("--max-bytes", default=None, type=int, help="Byte budget (defaults to PIPEWRIGHT_CACHE_MAX_BYTES)")
@click.option("--all", "clear_all", is_flag=True, default=False, help="Remove every entry")
@click.pass_context
def cache_prune(ctx, cache_dir, max_bytes, clear_all):
    """Evict least-recently-used entries beyond the byte budget."""
    console = get_console()
    settings = _settings(ctx, cache_dir=cache_dir)
    store = CacheStore(settings.cache_dir)
    if clear_all:
        count = len(store.entries())
        store.clear()
        console.print_info(f"Removed {count} cache entr{'y' if count == 1 else 'ies'}.")
        return
    budget = max_bytes if max_bytes is not None else settings.cache_max_bytes
    if budget is None:
        console.print_info("No byte budget configured; nothing to prune.")
        return
    evicted = store.evict(budget)
    console.print_info(f"Evicted {len(evicted)} entr{'y' if len(evicted) == 1 else 'ies'}.")


if __name__ == "__main__":
    cli()
