"""Typer CLI entrypoints for SDDC lifecycle operations."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from typer import Argument, Option

from sddc_cli.core.batch import DEFAULT_CONFIG_PATH, FailurePolicy
from sddc_cli.core.models import BatchDefaults, ExecutionMode, OperationKind, ProgressEvent, TaskSummary
from sddc_cli.core.runner import async_query_status, async_retry_task, async_run_batch, async_run_task
from sddc_cli.models import BatchOptions, RetryOptions, StatusOptions, TaskOptions
from sddc_cli.utils import configure_logging

app = typer.Typer(help="SDDC image lifecycle toolkit")

PASSWORD_ENVVAR = "SDDC_PASSWORD"


@app.callback()
def main_callback(
    verbose: Annotated[bool, Option("--verbose", "-v", help="Enable verbose logging globally")] = False,
) -> None:
    configure_logging(verbose)


def _manifest_path(value: str | None) -> Path:
    return Path(value).expanduser() if value else DEFAULT_CONFIG_PATH


def _echo_progress(event: ProgressEvent) -> None:
    step = event.current_step or "-"
    typer.echo(
        f"[{event.target_ref}] task {event.task_id}: {event.completed}/{event.total} steps, "
        f"current '{step}' ({event.elapsed:.0f}s)"
    )


def _interactive_policy(defaults: BatchDefaults) -> FailurePolicy:
    from sddc_cli.prompts import InteractivePolicy

    return InteractivePolicy(max_retry_attempts=defaults.max_retry_attempts)


def _format_summary(summary: TaskSummary) -> str:
    target = str(summary.target_ref) if summary.target_ref else "-"
    line = f"{summary.task_id}  {target}  {summary.status.value}  {summary.completed}/{summary.total}"
    if summary.current_step:
        line += f"  {summary.current_step}"
    if summary.last_error is not None:
        line += f"  [{summary.last_error.code}] {summary.last_error.message}"
    return line


task_app = typer.Typer(help="Single task commands")
app.add_typer(task_app, name="task")


@task_app.command("run", help="Submit one operation for one target and wait for it")
def task_run(
    kind: Annotated[OperationKind, Argument(help="Operation kind")],
    target: Annotated[str, Option("--target", "-t", help="Target name from the manifest")],
    password: Annotated[str, Option("--password", envvar=PASSWORD_ENVVAR, help="Control-plane password")],
    manifest: Annotated[str | None, Option("--manifest", "-m", help="Manifest path")] = None,
    verbose: Annotated[bool, Option("--verbose", help="Enable verbose logging for this run")] = False,
) -> None:
    options = TaskOptions(manifest=_manifest_path(manifest), kind=kind, target=target, verbose=verbose)
    exit_code = asyncio.run(
        async_run_task(
            config_path=options.manifest,
            kind=options.kind,
            target_name=options.target,
            password=password,
            verbose=options.verbose,
            on_progress=_echo_progress,
        )
    )
    raise typer.Exit(code=exit_code)


@task_app.command("retry", help="Resume a failed task from its failed sub-step")
def task_retry(
    task_id: Annotated[str, Argument(help="Identifier of the failed task")],
    password: Annotated[str, Option("--password", envvar=PASSWORD_ENVVAR, help="Control-plane password")],
    manifest: Annotated[str | None, Option("--manifest", "-m", help="Manifest path")] = None,
    verbose: Annotated[bool, Option("--verbose", help="Enable verbose logging for this run")] = False,
) -> None:
    options = RetryOptions(manifest=_manifest_path(manifest), task_id=task_id, verbose=verbose)
    exit_code = asyncio.run(
        async_retry_task(
            config_path=options.manifest,
            task_id=options.task_id,
            password=password,
            verbose=options.verbose,
            on_progress=_echo_progress,
        )
    )
    raise typer.Exit(code=exit_code)


@task_app.command("status", help="Show remote tasks of one operation kind")
def task_status(
    kind: Annotated[OperationKind, Argument(help="Operation kind")],
    password: Annotated[str, Option("--password", envvar=PASSWORD_ENVVAR, help="Control-plane password")],
    target: Annotated[str | None, Option("--target", "-t", help="Only tasks for this target")] = None,
    manifest: Annotated[str | None, Option("--manifest", "-m", help="Manifest path")] = None,
    verbose: Annotated[bool, Option("--verbose", help="Enable verbose logging for this run")] = False,
) -> None:
    options = StatusOptions(manifest=_manifest_path(manifest), kind=kind, target=target, verbose=verbose)
    exit_code, summaries = asyncio.run(
        async_query_status(
            config_path=options.manifest,
            kind=options.kind,
            target_name=options.target,
            password=password,
            verbose=options.verbose,
        )
    )
    if not summaries and exit_code == 0:
        typer.echo("No tasks found")
    for summary in summaries:
        typer.echo(_format_summary(summary))
    raise typer.Exit(code=exit_code)


batch_app = typer.Typer(help="Batch commands")
app.add_typer(batch_app, name="batch")


@batch_app.command("run", help="Apply one operation kind across targets in a manifest")
def batch_run(
    kind: Annotated[OperationKind, Argument(help="Operation kind")],
    password: Annotated[str, Option("--password", envvar=PASSWORD_ENVVAR, help="Control-plane password")],
    manifest: Annotated[str | None, Option("--manifest", "-m", help="Manifest path")] = None,
    target: Annotated[
        list[str] | None, Option("--target", "-t", help="Limit to target name", show_default=False)
    ] = None,
    limit: Annotated[int | None, Option("--limit", help="Process at most N targets")] = None,
    parallel: Annotated[bool, Option("--parallel", help="Submit all targets and return without waiting")] = False,
    interactive: Annotated[bool, Option("--interactive", "-i", help="Ask what to do after each failure")] = False,
    verbose: Annotated[bool, Option("--verbose", help="Enable verbose logging for this run")] = False,
) -> None:
    options = BatchOptions(
        manifest=_manifest_path(manifest),
        kind=kind,
        targets=tuple(target or []),
        limit=limit,
        mode=ExecutionMode.PARALLEL if parallel else ExecutionMode.SERIAL,
        interactive=interactive,
        verbose=verbose,
    )
    exit_code = asyncio.run(
        async_run_batch(
            config_path=options.manifest,
            kind=options.kind,
            target_filters=options.targets,
            limit=options.limit,
            mode=options.mode,
            password=password,
            verbose=options.verbose,
            policy_factory=_interactive_policy if options.interactive else None,
            on_progress=_echo_progress if options.interactive else None,
        )
    )
    raise typer.Exit(code=exit_code)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
