"""Caller-facing operations: single submissions, batches, retries and status queries."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import structlog

from sddc_cli.core.batch import (
    DEFAULT_UNSAFE_ERROR_CODES,
    BatchCoordinator,
    FailurePolicy,
    UnattendedPolicy,
)
from sddc_cli.core.client import ControlPlaneClient
from sddc_cli.core.clock import Clock
from sddc_cli.core.exceptions import TaskNotFoundError
from sddc_cli.core.gate import ComplianceGate, ComplianceStore
from sddc_cli.core.models import (
    BatchDefaults,
    ExecutionMode,
    OperationKind,
    PerTargetOutcome,
    TargetConfig,
    TargetRef,
    TaskStatus,
    TaskSummary,
    TerminalResult,
)
from sddc_cli.core.monitor import ProgressCallback, TaskMonitor
from sddc_cli.core.retry import RetryCoordinator

logger = structlog.get_logger(__name__)


class Orchestrator:
    def __init__(self, client: ControlPlaneClient, batch: BatchCoordinator) -> None:
        self.client = client
        self.batch = batch

    @classmethod
    def build(
        cls,
        client: ControlPlaneClient,
        defaults: BatchDefaults,
        *,
        policy: FailurePolicy | None = None,
        clock: Clock | None = None,
        on_progress: ProgressCallback | None = None,
        store: ComplianceStore | None = None,
    ) -> Orchestrator:
        """Wire the monitor, retry coordinator, gate and batch coordinator from manifest defaults."""
        monitor = TaskMonitor(
            client,
            clock=clock,
            poll_interval=defaults.poll_interval,
            stall_threshold=defaults.stall_threshold,
            on_progress=on_progress,
        )
        compliance_store = store or ComplianceStore(defaults.compliance_store)
        gate = ComplianceGate(client, compliance_store, max_record_age=defaults.max_record_age)
        if policy is None:
            policy = UnattendedPolicy(defaults.unsafe_error_codes or DEFAULT_UNSAFE_ERROR_CODES)
        batch = BatchCoordinator(
            client,
            monitor,
            RetryCoordinator(client, monitor),
            gate,
            compliance_store,
            policy=policy,
            max_retry_attempts=defaults.max_retry_attempts,
            max_parallel=defaults.max_parallel,
        )
        return cls(client, batch)

    @property
    def monitor(self) -> TaskMonitor:
        return self.batch.monitor

    @property
    def retry(self) -> RetryCoordinator:
        return self.batch.retry

    async def submit_and_monitor(
        self,
        kind: OperationKind,
        target: TargetConfig,
        *,
        cancel: asyncio.Event | None = None,
    ) -> TerminalResult:
        """Validate, submit and watch one operation; raises on rejection or duplicates."""
        params = await self.batch.prepare(target, kind)
        handle = await self.batch.submit(target, kind, params)
        result = await self.monitor.poll(handle, cancel=cancel)
        if result.succeeded and kind is OperationKind.COMPLIANCE_CHECK:
            await self.batch.record_compliance(target.ref)
        return result

    async def submit_batch(
        self,
        kind: OperationKind,
        targets: Sequence[TargetConfig],
        mode: ExecutionMode,
        *,
        cancel: asyncio.Event | None = None,
    ) -> list[PerTargetOutcome]:
        logger.info("batch-start", kind=kind.value, mode=mode.value, targets=len(targets))
        return await self.batch.run(targets, kind, mode, cancel=cancel)

    async def retry_failed(self, task_id: str, *, cancel: asyncio.Event | None = None) -> TerminalResult:
        result = await self.retry.retry(task_id, cancel=cancel)
        if result.succeeded and result.kind is OperationKind.COMPLIANCE_CHECK:
            await self.batch.record_compliance(result.target_ref)
        return result

    async def query_status(
        self,
        kind: OperationKind,
        target_ref: TargetRef | None = None,
        *,
        status: TaskStatus | None = None,
    ) -> list[TaskSummary]:
        """Report the remote state of every task of ``kind``, optionally for one target."""
        task_ids = await self.client.list_tasks(kind, status)
        summaries: list[TaskSummary] = []
        for task_id in task_ids:
            try:
                snapshot = await self.client.get_task(task_id)
            except TaskNotFoundError:
                logger.warning("task-not-found", task_id=task_id)
                continue
            if target_ref is not None and snapshot.target_ref != target_ref:
                continue
            summaries.append(TaskSummary.from_snapshot(snapshot, kind))
        return summaries


__all__ = ["Orchestrator"]
