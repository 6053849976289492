# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import click

from dagci import settings
from dagci.errors import CIError, ConfigurationError
from dagci.git_facts import git
from dagci.model import RunContext, Workflow
from dagci.report import ConsoleNotifier, NotificationError, SkippedPolicy, WebhookNotifier, write_report
from dagci.runner import RunOptions, load_workflow, plan_run, run_workflow
from dagci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "dagci_workflow.py"


def find_workflow_files() -> list[Path]:
    """Find all workflow files in the current directory."""
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        return [default_workflow]

    for path in current_dir.glob("*_workflow.py"):
        workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
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
                suggestion="Create a workflow file or specify a different path:\n  dagci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py"],
            suggestion=f"Create {DEFAULT_WORKFLOW} or specify one:\n  dagci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  dagci run --workflow {workflow_files[0]}",
        )
        sys.exit(1)

    return workflow_files[0]


def _load(workflow_arg: str | None) -> Workflow:
    path = discover_workflow(workflow_arg)
    get_console().print_debug(f"Loading workflow from {path}")
    return load_workflow(path)


def _git_or(default: str, fn, *args) -> str:
    try:
        return fn(*args)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return default


def _build_context(event: str, branch: str | None, actor: str | None, sha: str | None) -> RunContext:
    return RunContext(
        event=event,
        branch=branch if branch is not None else _git_or("", git.current_branch),
        actor=actor if actor is not None else _git_or("", git.current_actor),
        sha=sha if sha is not None else _git_or("", git.head_sha),
    )


def _change_set(changed: tuple[str, ...], git_diff: bool, compare_ref: str) -> list[str]:
    console = get_console()
    if changed:
        return list(changed)
    if not git_diff:
        return []
    try:
        sha, files = git.collect_change_set(compare_ref)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        console.print_warning(f"Could not compute git diff ({e}); assuming no changed files")
        return []
    if sha is None:
        console.print_debug("Working tree is dirty; using uncommitted files as the change set")
    console.print_debug(f"Changed files: {files}")
    return files


def _fail(ctx: click.Context, e: BaseException) -> None:
    console = get_console()
    if isinstance(e, CIError):
        details = [f"job: {e.job}"] if e.job else []
        details.extend(f"{k}: {v}" for k, v in e.details.items())
        console.print_error(e.kind, e.message, details=details)
        if ctx.obj.get("debug", False):
            console.print_exception(e)
    else:
        console.print_exception(e)
    sys.exit(1)


_context_options = [
    click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)"),
    click.option("--event", default="push", show_default=True, help="Triggering event name"),
    click.option("--branch", default=None, help="Branch name (defaults to the current git branch)"),
    click.option("--changed", multiple=True, help="Changed file path (repeatable); overrides --git-diff"),
    click.option("--git-diff/--no-git-diff", default=True, show_default=True, help="Compute changed files from git"),
    click.option("--compare-ref", default=settings.COMPARE_REF, show_default=True, help="Git ref to diff against"),
]


def context_options(fn):
    for opt in reversed(_context_options):
        fn = opt(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """dagci: condition-driven CI workflow runner."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@context_options
@click.option("--actor", default=None, help="Actor (defaults to git user.name)")
@click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)")
@click.option("--workers", default=settings.WORKERS, type=int, help="Number of parallel workers")
@click.option("--fail-fast/--no-fail-fast", default=settings.FAIL_FAST, show_default=True,
              help="Cancel pending dependents that need success after the first failure")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--report-json", default=None, type=click.Path(dir_okay=False), help="Write the run report as JSON")
@click.option("--webhook", default=settings.WEBHOOK_URL, help="POST the run report to this URL")
@click.option("--watch", default=None, help="Job whose status the notification reports (defaults to the last job)")
@click.option(
    "--on-skipped",
    type=click.Choice([p.value for p in SkippedPolicy]),
    default=settings.ON_SKIPPED,
    show_default=True,
    help="How a skipped watched job is reported",
)
@click.pass_context
def run(ctx, workflow, event, branch, changed, git_diff, compare_ref, actor, sha, workers,
        fail_fast, cache_dir, report_json, webhook, watch, on_skipped):
    """Run a dagci workflow."""
    console = get_console()

    try:
        wf = _load(workflow)
        context = _build_context(event, branch, actor, sha)
        change_set = _change_set(changed, git_diff, compare_ref)

        options = RunOptions(
            repo_root=Path("."),
            max_workers=workers,
            fail_fast=fail_fast,
            cache_root=Path(cache_dir) if cache_dir else None,
            cache_keep=settings.CACHE_KEEP,
            watch=watch,
            on_skipped=SkippedPolicy(on_skipped),
        )
        report = run_workflow(wf, context=context, change_set=change_set, options=options)

        if report.triggered:
            ConsoleNotifier(console).notify(report)
            if webhook:
                try:
                    WebhookNotifier(webhook).notify(report)
                except NotificationError as e:
                    console.print_warning(str(e))
        if report_json:
            write_report(report, report_json)

        sys.exit(report.exit_code)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except (CIError, FileNotFoundError, TypeError, ValueError) as e:
        _fail(ctx, e)


@cli.command()
@context_options
@click.pass_context
def plan(ctx, workflow, event, branch, changed, git_diff, compare_ref):
    """Print stages and category flags without running anything."""
    console = get_console()
    try:
        wf = _load(workflow)
        context = _build_context(event, branch, None, None)
        p = plan_run(wf, context, _change_set(changed, git_diff, compare_ref))
    except (CIError, FileNotFoundError, TypeError, ValueError) as e:
        _fail(ctx, e)
        return

    if not p.triggered:
        console.print_not_triggered(p.reason)
    console.print_flags(p.flags)
    console.print_plan(p.graph.levels())
    for name in p.graph.order:
        console.print_info(f"  {name}: if {p.graph.conditions[name].source}")


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.pass_context
def validate(ctx, workflow):
    """Validate the workflow declaration (graph, conditions, globs)."""
    console = get_console()
    try:
        wf = _load(workflow)
        p = plan_run(wf, RunContext(), [])
    except (ConfigurationError, FileNotFoundError, TypeError, ValueError) as e:
        _fail(ctx, e)
        return
    console.print_info(f"OK: {len(p.graph)} job(s), {len(wf.categories)} categor(y/ies)")


if __name__ == "__main__":
    cli()
