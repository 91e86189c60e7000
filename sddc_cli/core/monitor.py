"""Drive a submitted control-plane task to a terminal status."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import structlog

from sddc_cli.core.client import ControlPlaneClient
from sddc_cli.core.clock import Clock, MonotonicClock
from sddc_cli.core.exceptions import (
    AuthenticationError,
    OperationCancelledError,
    SessionExpiredError,
    TaskNotFoundError,
    TransportError,
)
from sddc_cli.core.models import (
    ProgressEvent,
    TaskError,
    TaskHandle,
    TaskSnapshot,
    TaskStatus,
    TerminalResult,
)

logger = structlog.get_logger(__name__)

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_STALL_THRESHOLD = 300.0
DEFAULT_MAX_REAUTH_ATTEMPTS = 3

ProgressCallback = Callable[[ProgressEvent], None]
StallCallback = Callable[[TaskHandle, float], None]


class TaskMonitor:
    """Polls one task at a fixed interval until the control plane reports it finished.

    Each cycle sleeps the poll interval, refreshes the handle, and emits a
    progress event. Transport errors, including a failed session renewal,
    are logged and the next cycle retries. An expired session is renewed
    through the client and the same poll is repeated immediately. A task id
    the control plane no longer knows ends monitoring with an UNKNOWN result.
    A gap longer than ``stall_threshold`` between two successful polls
    produces a single warning for that gap.
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        *,
        clock: Clock | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        stall_threshold: float = DEFAULT_STALL_THRESHOLD,
        max_reauth_attempts: int = DEFAULT_MAX_REAUTH_ATTEMPTS,
        on_progress: ProgressCallback | None = None,
        on_stall: StallCallback | None = None,
    ) -> None:
        self.client = client
        self.clock = clock or MonotonicClock()
        self.poll_interval = poll_interval
        self.stall_threshold = stall_threshold
        self.max_reauth_attempts = max(0, max_reauth_attempts)
        self.on_progress = on_progress
        self.on_stall = on_stall

    async def poll(self, handle: TaskHandle, *, cancel: asyncio.Event | None = None) -> TerminalResult:
        log = logger.bind(task_id=handle.id, kind=handle.kind.value, target=str(handle.target_ref))
        start = self.clock.now()
        last_success = start
        log.info("task-monitor-start", status=handle.status.value)

        while not handle.is_terminal:
            if cancel is not None and cancel.is_set():
                log.warning("task-monitor-cancelled", status=handle.status.value)
                raise OperationCancelledError(handle.id)
            await self.clock.sleep(self.poll_interval)

            snapshot = await self._fetch(handle)
            now = self.clock.now()
            if snapshot is None:
                continue

            gap = now - last_success
            if gap > self.stall_threshold:
                log.warning("task-stall-detected", gap_sec=gap, threshold_sec=self.stall_threshold)
                if self.on_stall is not None:
                    self.on_stall(handle, gap)
            last_success = now

            handle.apply(snapshot)
            self._emit(handle, now - start)

        elapsed = self.clock.now() - start
        result = TerminalResult(
            task_id=handle.id,
            kind=handle.kind,
            target_ref=handle.target_ref,
            status=handle.status,
            last_error=handle.last_error,
            elapsed=elapsed,
        )
        if result.succeeded:
            log.info("task-finished", status=result.status.value, elapsed_sec=elapsed)
        else:
            error = result.last_error
            log.error(
                "task-finished",
                status=result.status.value,
                elapsed_sec=elapsed,
                sub_step=error.sub_step if error else None,
                error_code=error.code if error else None,
                error=error.message if error else None,
            )
        return result

    async def _fetch(self, handle: TaskHandle) -> TaskSnapshot | None:
        reauth_attempts = 0
        while True:
            try:
                return await self.client.get_task(handle.id)
            except SessionExpiredError as exc:
                if reauth_attempts >= self.max_reauth_attempts:
                    raise AuthenticationError(
                        f"Session kept expiring while polling task {handle.id}"
                    ) from exc
                reauth_attempts += 1
                logger.warning("task-poll-session-expired", task_id=handle.id, attempt=reauth_attempts)
                try:
                    await self.client.reauthenticate()
                except TransportError as reauth_exc:
                    logger.warning("task-poll-reauth-error", task_id=handle.id, error=str(reauth_exc))
                    return None
            except TaskNotFoundError as exc:
                logger.error("task-not-found", task_id=handle.id)
                return TaskSnapshot(
                    task_id=handle.id,
                    status=TaskStatus.UNKNOWN,
                    sub_steps=tuple(handle.sub_steps),
                    last_error=TaskError(code="TASK_NOT_FOUND", message=str(exc), sub_step=handle.current_step),
                )
            except TransportError as exc:
                logger.warning("task-poll-error", task_id=handle.id, error=str(exc))
                return None

    def _emit(self, handle: TaskHandle, elapsed: float) -> None:
        event = ProgressEvent(
            task_id=handle.id,
            target_ref=handle.target_ref,
            completed=handle.completed_count,
            total=handle.total_count,
            current_step=handle.current_step,
            elapsed=elapsed,
        )
        logger.info(
            "task-progress",
            task_id=handle.id,
            status=handle.status.value,
            completed=event.completed,
            total=event.total,
            step=event.current_step,
            elapsed_sec=elapsed,
        )
        if self.on_progress is not None:
            self.on_progress(event)


__all__ = [
    "DEFAULT_POLL_INTERVAL",
    "DEFAULT_STALL_THRESHOLD",
    "ProgressCallback",
    "StallCallback",
    "TaskMonitor",
]
