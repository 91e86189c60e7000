"""Async entry points behind the CLI commands.

Exit codes:
  0 - every target succeeded (or was submitted, in parallel mode)
  1 - manifest or configuration error
  2 - the control plane rejected our credentials
  3 - one or more targets failed, were rejected or could not be submitted
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path

import structlog

from sddc_cli.core.batch import FailurePolicy, load_manifest, select_targets
from sddc_cli.core.client import RestControlPlaneClient
from sddc_cli.core.exceptions import (
    AuthenticationError,
    ComplianceStoreError,
    DuplicateInFlightError,
    ManifestError,
    NotRetryableError,
    RemoteExecutionFailure,
    TargetSelectionError,
    TransportError,
    ValidationError,
)
from sddc_cli.core.models import (
    BatchDefaults,
    ControlPlaneSettings,
    ExecutionMode,
    OperationKind,
    PerTargetOutcome,
    TargetConfig,
    TargetOutcome,
    TaskSummary,
    TerminalResult,
)
from sddc_cli.core.monitor import ProgressCallback
from sddc_cli.core.orchestrator import Orchestrator
from sddc_cli.utils import bind_run_context, configure_logging

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_AUTH = 2
EXIT_FAILED = 3

PolicyFactory = Callable[[BatchDefaults], FailurePolicy]


def create_client(settings: ControlPlaneSettings, password: str) -> RestControlPlaneClient:
    return RestControlPlaneClient(settings, password)


def _load(
    config_path: Path,
    target_filters: Sequence[str],
) -> tuple[ControlPlaneSettings, BatchDefaults, list[TargetConfig]] | None:
    try:
        settings, defaults, targets = load_manifest(config_path)
    except ManifestError as exc:
        logger.error("manifest-error", error=str(exc))
        return None
    try:
        selected = select_targets(targets, target_filters)
    except TargetSelectionError as exc:
        logger.error("target-selection-error", error=str(exc))
        return None
    return settings, defaults, selected


def exit_code_for(outcomes: Sequence[PerTargetOutcome]) -> int:
    if any(outcome.outcome is TargetOutcome.UNAUTHENTICATED for outcome in outcomes):
        return EXIT_AUTH
    if all(outcome.ok for outcome in outcomes):
        return EXIT_OK
    return EXIT_FAILED


def _log_result(result: TerminalResult) -> int:
    try:
        result.raise_for_status()
    except RemoteExecutionFailure as exc:
        error = exc.result.last_error
        logger.error(
            "task-failed",
            task_id=exc.result.task_id,
            target=str(exc.result.target_ref),
            status=exc.result.status.value,
            sub_step=error.sub_step if error else None,
            error_code=error.code if error else None,
            details=error.message if error else "no details",
        )
        return EXIT_FAILED
    logger.info(
        "task-success",
        task_id=result.task_id,
        target=str(result.target_ref),
        elapsed_sec=result.elapsed,
    )
    return EXIT_OK


async def async_run_batch(
    *,
    config_path: Path,
    kind: OperationKind,
    target_filters: Sequence[str],
    limit: int | None,
    mode: ExecutionMode,
    password: str,
    verbose: bool,
    policy_factory: PolicyFactory | None = None,
    on_progress: ProgressCallback | None = None,
) -> int:
    """Run one operation kind across the selected manifest targets.

    ``policy_factory`` builds the failure policy from the manifest defaults
    once they are loaded; the unattended policy is used when it is omitted.
    """
    if limit is not None and limit <= 0:
        raise ValueError("Target limit must be greater than zero")

    configure_logging(verbose)
    bind_run_context("batch-run", kind=kind.value, mode=mode.value)
    loaded = _load(config_path, target_filters)
    if loaded is None:
        return EXIT_CONFIG
    settings, defaults, selected = loaded

    if limit is not None:
        selected = selected[:limit]
    if not selected:
        logger.warning("no-targets-selected")
        return EXIT_OK

    policy = policy_factory(defaults) if policy_factory is not None else None
    async with create_client(settings, password) as client:
        orchestrator = Orchestrator.build(client, defaults, policy=policy, on_progress=on_progress)
        try:
            outcomes = await orchestrator.submit_batch(kind, selected, mode)
        except AuthenticationError as exc:
            logger.error("authentication-error", error=str(exc))
            return EXIT_AUTH

    for outcome in outcomes:
        logger.info(
            "target-outcome",
            target=outcome.target,
            outcome=outcome.outcome.value,
            task_id=outcome.task_id,
            duration_sec=outcome.duration,
            details=outcome.reason,
        )
    return exit_code_for(outcomes)


async def async_run_task(
    *,
    config_path: Path,
    kind: OperationKind,
    target_name: str,
    password: str,
    verbose: bool,
    on_progress: ProgressCallback | None = None,
) -> int:
    """Submit one operation for one target and wait for it to finish."""
    configure_logging(verbose)
    bind_run_context("task-run", kind=kind.value, target=target_name)
    loaded = _load(config_path, (target_name,))
    if loaded is None:
        return EXIT_CONFIG
    settings, defaults, selected = loaded

    async with create_client(settings, password) as client:
        orchestrator = Orchestrator.build(client, defaults, on_progress=on_progress)
        try:
            result = await orchestrator.submit_and_monitor(kind, selected[0])
        except AuthenticationError as exc:
            logger.error("authentication-error", error=str(exc))
            return EXIT_AUTH
        except ValidationError as exc:
            logger.error("target-rejected", target=target_name, reason=str(exc))
            return EXIT_FAILED
        except DuplicateInFlightError as exc:
            logger.error("duplicate-in-flight", target=target_name, task_id=exc.task_id)
            return EXIT_FAILED
        except TransportError as exc:
            logger.error("transport-error", target=target_name, error=str(exc))
            return EXIT_FAILED
        except ComplianceStoreError as exc:
            logger.error("compliance-store-error", error=str(exc))
            return EXIT_CONFIG
    return _log_result(result)


async def async_retry_task(
    *,
    config_path: Path,
    task_id: str,
    password: str,
    verbose: bool,
    on_progress: ProgressCallback | None = None,
) -> int:
    """Resume a failed task by id and monitor it to completion."""
    configure_logging(verbose)
    bind_run_context("task-retry", task_id=task_id)
    loaded = _load(config_path, ())
    if loaded is None:
        return EXIT_CONFIG
    settings, defaults, _ = loaded

    async with create_client(settings, password) as client:
        orchestrator = Orchestrator.build(client, defaults, on_progress=on_progress)
        try:
            result = await orchestrator.retry_failed(task_id)
        except AuthenticationError as exc:
            logger.error("authentication-error", error=str(exc))
            return EXIT_AUTH
        except NotRetryableError as exc:
            logger.error("task-not-retryable", task_id=exc.task_id, error=str(exc))
            return EXIT_FAILED
        except TransportError as exc:
            logger.error("transport-error", task_id=task_id, error=str(exc))
            return EXIT_FAILED
    return _log_result(result)


async def async_query_status(
    *,
    config_path: Path,
    kind: OperationKind,
    target_name: str | None,
    password: str,
    verbose: bool,
) -> tuple[int, list[TaskSummary]]:
    """List the remote tasks of ``kind``, optionally narrowed to one manifest target."""
    configure_logging(verbose)
    bind_run_context("task-status", kind=kind.value)
    loaded = _load(config_path, (target_name,) if target_name else ())
    if loaded is None:
        return EXIT_CONFIG, []
    settings, defaults, selected = loaded
    target_ref = selected[0].ref if target_name else None

    async with create_client(settings, password) as client:
        orchestrator = Orchestrator.build(client, defaults)
        try:
            summaries = await orchestrator.query_status(kind, target_ref)
        except AuthenticationError as exc:
            logger.error("authentication-error", error=str(exc))
            return EXIT_AUTH, []
        except TransportError as exc:
            logger.error("transport-error", error=str(exc))
            return EXIT_FAILED, []
    return EXIT_OK, summaries


__all__ = [
    "EXIT_AUTH",
    "EXIT_CONFIG",
    "EXIT_FAILED",
    "EXIT_OK",
    "PolicyFactory",
    "async_query_status",
    "async_retry_task",
    "async_run_batch",
    "async_run_task",
    "create_client",
    "exit_code_for",
]
