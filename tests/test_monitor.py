from __future__ import annotations

import asyncio

import pytest
from fakes import FakeClient, FakeClock, snapshot

from sddc_cli.core.exceptions import (
    AuthenticationError,
    OperationCancelledError,
    SessionExpiredError,
    TaskNotFoundError,
    TransportError,
)
from sddc_cli.core.models import (
    OperationKind,
    ProgressEvent,
    TargetRef,
    TaskError,
    TaskHandle,
    TaskStatus,
)
from sddc_cli.core.monitor import TaskMonitor

CL01 = TargetRef(cluster_id="cl01", domain_id="wld-01")

IN_PROGRESS = TaskStatus.IN_PROGRESS
SUCCESSFUL = TaskStatus.SUCCESSFUL


def _handle(task_id: str = "t-1", kind: OperationKind = OperationKind.COMPLIANCE_CHECK) -> TaskHandle:
    return TaskHandle(id=task_id, kind=kind, target_ref=CL01)


@pytest.mark.asyncio
async def test_poll_reports_progress_until_successful(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [
        snapshot("t-1", IN_PROGRESS, [("validate", SUCCESSFUL), ("evaluate", IN_PROGRESS)]),
        snapshot("t-1", SUCCESSFUL, [("validate", SUCCESSFUL), ("evaluate", SUCCESSFUL)]),
    ]
    events: list[ProgressEvent] = []
    monitor = TaskMonitor(client, clock=clock, poll_interval=5, on_progress=events.append)

    result = await monitor.poll(_handle())

    assert result.succeeded
    assert result.elapsed == 10
    assert clock.sleeps == [5, 5]
    assert [(e.completed, e.total, e.current_step) for e in events] == [
        (1, 2, "evaluate"),
        (2, 2, "evaluate"),
    ]
    assert events[0].elapsed == 5


@pytest.mark.asyncio
async def test_poll_returns_failed_result_with_step_error(client: FakeClient, clock: FakeClock) -> None:
    error = TaskError(code="DISK_FULL", message="datastore full", sub_step="transfer")
    client.scripts["t-1"] = [
        snapshot("t-1", TaskStatus.FAILED, [("prepare", SUCCESSFUL), ("transfer", TaskStatus.FAILED)], error=error),
    ]
    monitor = TaskMonitor(client, clock=clock, poll_interval=5)

    result = await monitor.poll(_handle(kind=OperationKind.IMAGE_IMPORT))

    assert result.status is TaskStatus.FAILED
    assert result.failed_step == "transfer"
    assert result.last_error == error


@pytest.mark.asyncio
async def test_failed_reading_without_details_gets_placeholder_error(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [snapshot("t-1", TaskStatus.FAILED, [("prepare", TaskStatus.FAILED)])]
    monitor = TaskMonitor(client, clock=clock)

    result = await monitor.poll(_handle())

    assert result.last_error is not None
    assert result.last_error.code == "UNSPECIFIED"
    assert result.last_error.sub_step == "prepare"


@pytest.mark.asyncio
async def test_unrecognized_status_is_terminal(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [snapshot("t-1", TaskStatus.UNKNOWN)]
    monitor = TaskMonitor(client, clock=clock)

    result = await monitor.poll(_handle())

    assert result.status is TaskStatus.UNKNOWN
    assert not result.succeeded
    assert client.call_names("get_task") == ["t-1"]


@pytest.mark.asyncio
async def test_transport_error_is_skipped_and_polling_continues(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [TransportError("connection reset"), snapshot("t-1", SUCCESSFUL)]
    events: list[ProgressEvent] = []
    monitor = TaskMonitor(client, clock=clock, poll_interval=5, on_progress=events.append)

    result = await monitor.poll(_handle())

    assert result.succeeded
    assert result.elapsed == 10
    assert len(events) == 1


@pytest.mark.asyncio
async def test_session_expiry_reauthenticates_and_polls_again(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [SessionExpiredError("expired"), snapshot("t-1", SUCCESSFUL)]
    monitor = TaskMonitor(client, clock=clock, poll_interval=5)

    result = await monitor.poll(_handle())

    assert result.succeeded
    assert [name for name, _ in client.calls] == ["get_task", "reauthenticate", "get_task"]
    assert clock.sleeps == [5]


@pytest.mark.asyncio
async def test_failed_session_renewal_skips_one_poll(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [SessionExpiredError("expired"), snapshot("t-1", SUCCESSFUL)]
    client.reauth_failures.append(TransportError("token endpoint returned 503"))
    monitor = TaskMonitor(client, clock=clock, poll_interval=5)

    result = await monitor.poll(_handle())

    assert result.succeeded
    assert client.reauth_count == 1
    assert client.call_names("get_task") == ["t-1", "t-1"]
    assert clock.sleeps == [5, 5]


@pytest.mark.asyncio
async def test_unknown_task_id_ends_with_unknown_result(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [TaskNotFoundError("t-1")]
    monitor = TaskMonitor(client, clock=clock, poll_interval=5)

    result = await monitor.poll(_handle())

    assert result.status is TaskStatus.UNKNOWN
    assert result.last_error is not None
    assert result.last_error.code == "TASK_NOT_FOUND"
    assert client.call_names("get_task") == ["t-1"]


@pytest.mark.asyncio
async def test_repeated_session_expiry_raises_authentication_error(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [SessionExpiredError("expired")]
    monitor = TaskMonitor(client, clock=clock, max_reauth_attempts=3)

    with pytest.raises(AuthenticationError):
        await monitor.poll(_handle())
    assert client.reauth_count == 3


@pytest.mark.asyncio
async def test_stall_reported_once_per_gap(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [
        snapshot("t-1", IN_PROGRESS),
        TransportError("timeout"),
        TransportError("timeout"),
        snapshot("t-1", IN_PROGRESS),
        snapshot("t-1", SUCCESSFUL),
    ]
    stalls: list[float] = []
    monitor = TaskMonitor(
        client,
        clock=clock,
        poll_interval=5,
        stall_threshold=12,
        on_stall=lambda _handle, gap: stalls.append(gap),
    )

    result = await monitor.poll(_handle())

    assert result.succeeded
    assert stalls == [15]


@pytest.mark.asyncio
async def test_no_stall_when_polls_are_evenly_spaced(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [snapshot("t-1", IN_PROGRESS)] * 20 + [snapshot("t-1", SUCCESSFUL)]
    stalls: list[float] = []
    monitor = TaskMonitor(
        client,
        clock=clock,
        poll_interval=5,
        stall_threshold=300,
        on_stall=lambda _handle, gap: stalls.append(gap),
    )

    await monitor.poll(_handle())

    assert stalls == []
    assert len(clock.sleeps) == 21


@pytest.mark.asyncio
async def test_cancel_stops_at_next_interval(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [snapshot("t-1", IN_PROGRESS)]
    cancel = asyncio.Event()
    clock.on_sleep = lambda count: cancel.set() if count == 2 else None
    monitor = TaskMonitor(client, clock=clock, poll_interval=5)

    with pytest.raises(OperationCancelledError) as excinfo:
        await monitor.poll(_handle(), cancel=cancel)

    assert excinfo.value.task_id == "t-1"
    assert client.call_names("get_task") == ["t-1", "t-1"]
