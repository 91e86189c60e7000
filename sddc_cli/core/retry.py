"""Resume failed control-plane tasks from their last completed sub-step."""

from __future__ import annotations

import asyncio

import structlog

from sddc_cli.core.client import ControlPlaneClient
from sddc_cli.core.exceptions import NotRetryableError, SessionExpiredError, TaskNotFoundError
from sddc_cli.core.models import OperationKind, TargetRef, TaskHandle, TaskSnapshot, TaskStatus, TerminalResult
from sddc_cli.core.monitor import TaskMonitor

logger = structlog.get_logger(__name__)


class RetryCoordinator:
    """Issues the resume call for a failed task and monitors it again.

    Skipping sub-steps that already succeeded is the control plane's job;
    this class only guarantees that a resumable task is resumed rather than
    submitted again, and that the resumed task is watched by the same
    monitor as a fresh submission.
    """

    def __init__(self, client: ControlPlaneClient, monitor: TaskMonitor) -> None:
        self.client = client
        self.monitor = monitor

    async def retry(
        self,
        task_id: str,
        *,
        kind: OperationKind | None = None,
        target_ref: TargetRef | None = None,
        cancel: asyncio.Event | None = None,
    ) -> TerminalResult:
        try:
            snapshot = await self._get_task(task_id)
        except TaskNotFoundError as exc:
            logger.warning("task-not-found", task_id=task_id)
            raise NotRetryableError(f"Task {task_id} was not found", task_id=task_id) from exc
        if snapshot.status is not TaskStatus.FAILED:
            logger.warning("task-not-retryable", task_id=task_id, status=snapshot.status.value)
            raise NotRetryableError(
                f"Task {task_id} is {snapshot.status.value}; only failed tasks can be resumed",
                task_id=task_id,
            )

        resolved_kind = kind or snapshot.kind
        resolved_target = target_ref or snapshot.target_ref
        if resolved_kind is None or resolved_target is None:
            raise NotRetryableError(
                f"Task {task_id} does not identify its operation kind and target",
                task_id=task_id,
            )

        logger.info("task-resume", task_id=task_id, kind=resolved_kind.value, target=str(resolved_target))
        resumed_id = await self._resume(task_id)
        handle = TaskHandle(
            id=resumed_id,
            kind=resolved_kind,
            target_ref=resolved_target,
            sub_steps=list(snapshot.sub_steps),
        )
        if snapshot.started_at is not None:
            handle.started_at = snapshot.started_at
        handle.mark_resumed()
        return await self.monitor.poll(handle, cancel=cancel)

    async def _get_task(self, task_id: str) -> TaskSnapshot:
        try:
            return await self.client.get_task(task_id)
        except SessionExpiredError:
            await self.client.reauthenticate()
            return await self.client.get_task(task_id)

    async def _resume(self, task_id: str) -> str:
        try:
            return await self.client.resume_task(task_id)
        except SessionExpiredError:
            await self.client.reauthenticate()
            return await self.client.resume_task(task_id)


__all__ = ["RetryCoordinator"]
