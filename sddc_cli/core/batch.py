"""Core batch processing logic for control-plane operations."""

from __future__ import annotations

import asyncio
import time
import tomllib
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import Any, Protocol, TypeVar, cast

import structlog

from sddc_cli.core.client import ControlPlaneClient
from sddc_cli.core.exceptions import (
    AuthenticationError,
    ComplianceStoreError,
    DuplicateInFlightError,
    ManifestError,
    NotRetryableError,
    OperationCancelledError,
    SessionExpiredError,
    TargetSelectionError,
    TransportError,
    ValidationError,
)
from sddc_cli.core.gate import ComplianceGate, ComplianceStore
from sddc_cli.core.models import (
    BatchDefaults,
    ControlPlaneSettings,
    ExecutionMode,
    FailureDecision,
    OperationKind,
    PerTargetOutcome,
    TargetConfig,
    TargetOutcome,
    TargetRef,
    TaskHandle,
    TaskStatus,
    TerminalResult,
)
from sddc_cli.core.monitor import TaskMonitor
from sddc_cli.core.retry import RetryCoordinator

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "sddc-targets.toml"

DEFAULT_UNSAFE_ERROR_CODES = frozenset(
    {
        "CLUSTER_IMAGE_NOT_COMPLIANT",
        "CLUSTER_IMAGE_INCOMPATIBLE",
        "PERSONALITY_NOT_FOUND",
    }
)


# Manifest loading


def load_manifest(path: Path) -> tuple[ControlPlaneSettings, BatchDefaults, list[TargetConfig]]:
    """Load and validate manifest from TOML file."""
    try:
        with path.open("rb") as handle:
            data: dict[str, Any] = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ManifestError(f"Manifest file '{path}' was not found") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ManifestError(f"Manifest file '{path}' is invalid: {exc}") from exc

    control_raw = data.get("control_plane")
    if not isinstance(control_raw, dict):
        raise ManifestError("Manifest must include a [control_plane] table")
    try:
        settings = ControlPlaneSettings(**cast(dict[str, Any], control_raw))
    except (ValueError, TypeError) as exc:
        raise ManifestError(f"Invalid control_plane configuration: {exc}") from exc

    defaults_raw = data.get("defaults", {})
    if not isinstance(defaults_raw, dict):
        raise ManifestError("[defaults] must be a table")
    defaults_data = dict(cast(dict[str, Any], defaults_raw))
    if "unsafe_error_codes" in defaults_data:
        defaults_data["unsafe_error_codes"] = tuple(defaults_data["unsafe_error_codes"])
    try:
        defaults = BatchDefaults(**defaults_data)
    except (ValueError, TypeError) as exc:
        raise ManifestError(f"Invalid defaults configuration: {exc}") from exc

    targets_raw = data.get("targets")
    if not isinstance(targets_raw, list) or not targets_raw:
        raise ManifestError("Manifest must include a non-empty [[targets]] list")

    targets: list[TargetConfig] = []
    seen_names: set[str] = set()
    for entry_raw in cast(list[Any], targets_raw):
        if not isinstance(entry_raw, dict):
            raise ManifestError("Each [[targets]] entry must be a table")
        entry = cast(dict[str, Any], entry_raw)

        cluster_id = entry.get("cluster_id")
        if not cluster_id or not isinstance(cluster_id, str):
            raise ManifestError("Each target requires a 'cluster_id' value")

        name_value = entry.get("name", cluster_id)
        if not isinstance(name_value, str):
            raise ManifestError(f"Target name must be a string, got {type(name_value).__name__}")
        if name_value in seen_names:
            raise ManifestError(f"Duplicate target name '{name_value}' detected")
        seen_names.add(name_value)

        domain_id = entry.get("domain_id")
        if not domain_id or not isinstance(domain_id, str):
            raise ManifestError(f"Target '{name_value}' requires a 'domain_id' value")

        try:
            targets.append(
                TargetConfig(
                    name=name_value,
                    cluster_id=cluster_id,
                    domain_id=domain_id,
                    image_ref=entry.get("image_ref", defaults.image_ref),
                )
            )
        except (ValueError, TypeError) as exc:
            raise ManifestError(f"Invalid target configuration for '{name_value}': {exc}") from exc

    return settings, defaults, targets


def select_targets(targets: Sequence[TargetConfig], requested: Sequence[str]) -> list[TargetConfig]:
    """Filter targets by requested names."""
    if not requested:
        return list(targets)
    name_index = {target.name: target for target in targets}
    missing = [name for name in requested if name not in name_index]
    if missing:
        raise TargetSelectionError(f"Unknown target(s): {', '.join(missing)}")
    return [name_index[name] for name in requested]


# Failure policies


class FailurePolicy(Protocol):
    async def decide(self, target: TargetConfig, result: TerminalResult, attempt: int) -> FailureDecision: ...


class UnattendedPolicy:
    """Continue past failures, except Transition failures that leave the gate state unsafe."""

    def __init__(self, unsafe_error_codes: frozenset[str] | Sequence[str] = DEFAULT_UNSAFE_ERROR_CODES) -> None:
        self.unsafe_error_codes = frozenset(unsafe_error_codes)

    async def decide(self, target: TargetConfig, result: TerminalResult, attempt: int) -> FailureDecision:
        if result.kind is not OperationKind.TRANSITION:
            return FailureDecision.SKIP
        if result.status is TaskStatus.UNKNOWN:
            return FailureDecision.ABORT
        if result.last_error is not None and result.last_error.code in self.unsafe_error_codes:
            return FailureDecision.ABORT
        return FailureDecision.SKIP


def _failure_reason(result: TerminalResult) -> str:
    error = result.last_error
    if error is None:
        return f"task {result.task_id} finished {result.status.value}"
    step = error.sub_step or "unknown step"
    return f"{step}: {error.code} {error.message}".strip()


# Coordinator


class BatchCoordinator:
    """Applies one operation kind to many targets, serially or in parallel."""

    def __init__(
        self,
        client: ControlPlaneClient,
        monitor: TaskMonitor,
        retry: RetryCoordinator,
        gate: ComplianceGate,
        store: ComplianceStore,
        *,
        policy: FailurePolicy | None = None,
        max_retry_attempts: int = 2,
        max_parallel: int = 4,
    ) -> None:
        self.client = client
        self.monitor = monitor
        self.retry = retry
        self.gate = gate
        self.store = store
        self.policy = policy or UnattendedPolicy()
        self.max_retry_attempts = max(0, max_retry_attempts)
        self.max_parallel = max(1, max_parallel)

    async def _call(self, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except SessionExpiredError:
            logger.info("session-expired-before-call")
            await self.client.reauthenticate()
            return await call()

    async def prepare(self, target: TargetConfig, kind: OperationKind) -> dict[str, Any]:
        """Validate a target for ``kind`` and build the submission parameters."""
        ref = target.ref
        info = await self._call(lambda: self.client.get_target(ref))
        if info is None:
            raise ValidationError(f"target {target.name} ({ref}) does not exist")

        if kind is OperationKind.TRANSITION:
            decision = await self.gate.check(ref, target=info)
            if not decision.allowed or decision.image_ref is None:
                reason = decision.reason.value if decision.reason else "denied"
                raise ValidationError(f"{reason}: {decision.detail}")
            return {"image_ref": decision.image_ref}

        if kind is OperationKind.IMAGE_IMPORT:
            if info.image_ref:
                raise ValidationError(f"image {info.image_ref} was already imported from {target.name}")
            return {"name": f"{target.name}-image"}

        if not target.image_ref:
            raise ValidationError(f"no image reference configured for {target.name}")
        return {"image_ref": target.image_ref}

    async def submit(self, target: TargetConfig, kind: OperationKind, params: dict[str, Any]) -> TaskHandle:
        ref = target.ref
        task_id = await self._call(lambda: self.client.submit(kind, ref, params))
        logger.info("task-submitted", target=target.name, kind=kind.value, task_id=task_id)
        return TaskHandle(id=task_id, kind=kind, target_ref=ref)

    async def record_compliance(self, ref: TargetRef) -> None:
        """Write the control plane's latest evaluation for ``ref`` through to the store."""
        try:
            record = await self._call(lambda: self.client.get_compliance_record(ref))
        except TransportError as exc:
            logger.error("compliance-record-fetch-error", target=str(ref), error=str(exc))
            return
        if record is None:
            logger.warning("compliance-record-missing", target=str(ref))
            return
        try:
            self.store.put(record)
        except ComplianceStoreError as exc:
            logger.error("compliance-record-store-error", target=str(ref), error=str(exc))

    async def run(
        self,
        targets: Sequence[TargetConfig],
        kind: OperationKind,
        mode: ExecutionMode,
        *,
        cancel: asyncio.Event | None = None,
    ) -> list[PerTargetOutcome]:
        if mode is ExecutionMode.PARALLEL:
            return await self.run_parallel(targets, kind, cancel=cancel)
        return await self.run_serial(targets, kind, cancel=cancel)

    async def run_serial(
        self,
        targets: Sequence[TargetConfig],
        kind: OperationKind,
        *,
        cancel: asyncio.Event | None = None,
    ) -> list[PerTargetOutcome]:
        outcomes: list[PerTargetOutcome] = []
        for index, target in enumerate(targets):
            if cancel is not None and cancel.is_set():
                logger.warning("batch-cancelled", remaining=len(targets) - index)
                outcomes.extend(self._aborted(rest, kind, "batch cancelled") for rest in targets[index:])
                break
            outcome, abort = await self._run_one(target, kind, cancel)
            outcomes.append(outcome)
            if abort:
                remaining = targets[index + 1 :]
                logger.error("batch-aborted", target=target.name, remaining=len(remaining))
                outcomes.extend(
                    self._aborted(rest, kind, f"batch aborted after {target.name}") for rest in remaining
                )
                break
        return outcomes

    async def run_parallel(
        self,
        targets: Sequence[TargetConfig],
        kind: OperationKind,
        *,
        cancel: asyncio.Event | None = None,
    ) -> list[PerTargetOutcome]:
        if not targets:
            return []
        semaphore = asyncio.Semaphore(self.max_parallel)
        auth_failed = False

        async def worker(target: TargetConfig) -> PerTargetOutcome:
            nonlocal auth_failed
            async with semaphore:
                if cancel is not None and cancel.is_set():
                    return self._aborted(target, kind, "batch cancelled")
                if auth_failed:
                    return self._aborted(target, kind, "batch aborted after authentication failure")
                outcome = await self._submit_only(target, kind)
                if outcome.outcome is TargetOutcome.UNAUTHENTICATED:
                    auth_failed = True
                return outcome

        return list(await asyncio.gather(*(worker(target) for target in targets)))

    async def _submit_only(self, target: TargetConfig, kind: OperationKind) -> PerTargetOutcome:
        start = time.monotonic()
        try:
            handle, rejection = await self._prepare_and_submit(target, kind, start)
        except AuthenticationError as exc:
            logger.error("target-authentication-error", target=target.name, error=str(exc))
            return self._outcome(target, kind, TargetOutcome.UNAUTHENTICATED, start, reason=str(exc))
        if rejection is not None:
            return rejection
        assert handle is not None
        return self._outcome(
            target,
            kind,
            TargetOutcome.SUBMITTED,
            start,
            task_id=handle.id,
        )

    async def _prepare_and_submit(
        self,
        target: TargetConfig,
        kind: OperationKind,
        start: float,
    ) -> tuple[TaskHandle | None, PerTargetOutcome | None]:
        try:
            params = await self.prepare(target, kind)
        except ValidationError as exc:
            logger.warning("target-rejected", target=target.name, kind=kind.value, reason=str(exc))
            return None, self._outcome(target, kind, TargetOutcome.REJECTED, start, reason=str(exc))
        except (TransportError, ComplianceStoreError) as exc:
            logger.error("target-validation-error", target=target.name, error=str(exc))
            return None, self._outcome(target, kind, TargetOutcome.ERROR, start, reason=str(exc))

        try:
            handle = await self.submit(target, kind, params)
        except DuplicateInFlightError as exc:
            logger.warning("duplicate-in-flight", target=target.name, kind=kind.value, task_id=exc.task_id)
            return None, self._outcome(
                target, kind, TargetOutcome.DUPLICATE, start, task_id=exc.task_id, reason=str(exc)
            )
        except ValidationError as exc:
            logger.warning("target-rejected", target=target.name, kind=kind.value, reason=str(exc))
            return None, self._outcome(target, kind, TargetOutcome.REJECTED, start, reason=str(exc))
        except TransportError as exc:
            logger.error("task-submit-error", target=target.name, kind=kind.value, error=str(exc))
            return None, self._outcome(target, kind, TargetOutcome.ERROR, start, reason=str(exc))
        return handle, None

    async def _run_one(
        self,
        target: TargetConfig,
        kind: OperationKind,
        cancel: asyncio.Event | None,
    ) -> tuple[PerTargetOutcome, bool]:
        start = time.monotonic()
        handle: TaskHandle | None = None
        try:
            handle, rejection = await self._prepare_and_submit(target, kind, start)
            if rejection is not None:
                return rejection, False
            assert handle is not None
            return await self._follow(target, kind, handle, start, cancel)
        except AuthenticationError as exc:
            task_id = handle.id if handle is not None else None
            logger.error("target-authentication-error", target=target.name, task_id=task_id, error=str(exc))
            return self._outcome(
                target, kind, TargetOutcome.UNAUTHENTICATED, start, task_id=task_id, reason=str(exc)
            ), True

    async def _follow(
        self,
        target: TargetConfig,
        kind: OperationKind,
        handle: TaskHandle,
        start: float,
        cancel: asyncio.Event | None,
    ) -> tuple[PerTargetOutcome, bool]:
        try:
            result = await self.monitor.poll(handle, cancel=cancel)
        except OperationCancelledError as exc:
            return self._outcome(target, kind, TargetOutcome.ABORTED, start, task_id=handle.id, reason=str(exc)), True

        retries = 0
        abort = False
        while not result.succeeded:
            decision = await self.policy.decide(target, result, retries + 1)
            if decision is FailureDecision.ABORT:
                abort = True
                break
            if decision is FailureDecision.SKIP:
                break
            if retries >= self.max_retry_attempts:
                logger.warning("retry-limit-reached", target=target.name, task_id=result.task_id, attempts=retries)
                break
            retries += 1
            logger.info("task-retry", target=target.name, task_id=result.task_id, attempt=retries)
            try:
                resumed = await self.retry.retry(result.task_id, kind=kind, target_ref=handle.target_ref, cancel=cancel)
            except NotRetryableError as exc:
                logger.error("task-not-retryable", target=target.name, task_id=result.task_id, error=str(exc))
                break
            except TransportError as exc:
                logger.error("task-retry-error", target=target.name, task_id=result.task_id, error=str(exc))
                break
            except OperationCancelledError as exc:
                return self._outcome(
                    target, kind, TargetOutcome.ABORTED, start, task_id=exc.task_id, reason=str(exc)
                ), True
            result = resumed.model_copy(update={"attempts": retries + 1})

        if result.succeeded:
            if kind is OperationKind.COMPLIANCE_CHECK:
                await self.record_compliance(target.ref)
            logger.info("target-success", target=target.name, task_id=result.task_id)
            return self._outcome(
                target, kind, TargetOutcome.SUCCEEDED, start, task_id=result.task_id, result=result
            ), False

        reason = _failure_reason(result)
        logger.error("target-failed", target=target.name, task_id=result.task_id, details=reason)
        return self._outcome(
            target, kind, TargetOutcome.FAILED, start, task_id=result.task_id, result=result, reason=reason
        ), abort

    def _outcome(
        self,
        target: TargetConfig,
        kind: OperationKind,
        outcome: TargetOutcome,
        start: float,
        *,
        task_id: str | None = None,
        result: TerminalResult | None = None,
        reason: str | None = None,
    ) -> PerTargetOutcome:
        return PerTargetOutcome(
            target=target.name,
            target_ref=target.ref,
            kind=kind,
            outcome=outcome,
            task_id=task_id,
            result=result,
            reason=reason,
            duration=time.monotonic() - start,
        )

    def _aborted(self, target: TargetConfig, kind: OperationKind, reason: str) -> PerTargetOutcome:
        return PerTargetOutcome(
            target=target.name,
            target_ref=target.ref,
            kind=kind,
            outcome=TargetOutcome.ABORTED,
            reason=reason,
        )


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_UNSAFE_ERROR_CODES",
    "BatchCoordinator",
    "FailurePolicy",
    "UnattendedPolicy",
    "load_manifest",
    "select_targets",
]
