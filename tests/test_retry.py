from __future__ import annotations

import pytest
from fakes import FakeClient, FakeClock, snapshot

from sddc_cli.core.exceptions import NotRetryableError, SessionExpiredError, TaskNotFoundError, TransportError
from sddc_cli.core.models import OperationKind, TargetRef, TaskError, TaskStatus
from sddc_cli.core.monitor import TaskMonitor
from sddc_cli.core.retry import RetryCoordinator

CL01 = TargetRef(cluster_id="cl01", domain_id="wld-01")
FAILED_STEPS = [("prepare", TaskStatus.SUCCESSFUL), ("transfer", TaskStatus.FAILED)]
ERROR = TaskError(code="DISK_FULL", message="datastore full", sub_step="transfer")


def _coordinator(client: FakeClient, clock: FakeClock) -> RetryCoordinator:
    return RetryCoordinator(client, TaskMonitor(client, clock=clock, poll_interval=5))


def _failed(task_id: str = "t-1"):
    return snapshot(
        task_id,
        TaskStatus.FAILED,
        FAILED_STEPS,
        error=ERROR,
        kind=OperationKind.IMAGE_IMPORT,
        target_ref=CL01,
    )


@pytest.mark.asyncio
async def test_retry_resumes_failed_task_and_monitors_it(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [
        _failed(),
        snapshot("t-1", TaskStatus.SUCCESSFUL, [("prepare", TaskStatus.SUCCESSFUL), ("transfer", TaskStatus.SUCCESSFUL)]),
    ]

    result = await _coordinator(client, clock).retry("t-1")

    assert result.succeeded
    assert result.kind is OperationKind.IMAGE_IMPORT
    assert result.target_ref == CL01
    assert client.calls == [("get_task", "t-1"), ("resume_task", "t-1"), ("get_task", "t-1")]
    assert client.call_names("submit") == []


@pytest.mark.asyncio
async def test_retry_follows_new_task_id_from_resume(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [_failed()]
    client.resume_plan["t-1"] = "t-2"
    client.scripts["t-2"] = [snapshot("t-2", TaskStatus.SUCCESSFUL)]

    result = await _coordinator(client, clock).retry("t-1")

    assert result.task_id == "t-2"
    assert client.call_names("get_task") == ["t-1", "t-2"]


@pytest.mark.asyncio
async def test_successful_task_is_not_retryable(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [snapshot("t-1", TaskStatus.SUCCESSFUL, kind=OperationKind.IMAGE_IMPORT, target_ref=CL01)]

    with pytest.raises(NotRetryableError) as excinfo:
        await _coordinator(client, clock).retry("t-1")

    assert excinfo.value.task_id == "t-1"
    assert client.call_names("resume_task") == []


@pytest.mark.asyncio
async def test_in_progress_task_is_not_retryable(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [snapshot("t-1", TaskStatus.IN_PROGRESS, kind=OperationKind.TRANSITION, target_ref=CL01)]

    with pytest.raises(NotRetryableError):
        await _coordinator(client, clock).retry("t-1")


@pytest.mark.asyncio
async def test_control_plane_refusal_surfaces_as_not_retryable(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [_failed()]
    client.resume_plan["t-1"] = NotRetryableError("task not resumable", task_id="t-1")

    with pytest.raises(NotRetryableError):
        await _coordinator(client, clock).retry("t-1")
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_retry_requires_kind_and_target(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [snapshot("t-1", TaskStatus.FAILED, error=ERROR)]

    with pytest.raises(NotRetryableError):
        await _coordinator(client, clock).retry("t-1")

    client.scripts["t-1"] = [snapshot("t-1", TaskStatus.FAILED, error=ERROR), snapshot("t-1", TaskStatus.SUCCESSFUL)]
    result = await _coordinator(client, clock).retry("t-1", kind=OperationKind.TRANSITION, target_ref=CL01)
    assert result.kind is OperationKind.TRANSITION


@pytest.mark.asyncio
async def test_retry_reauthenticates_once_on_expired_session(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [SessionExpiredError("expired"), _failed(), snapshot("t-1", TaskStatus.SUCCESSFUL)]

    result = await _coordinator(client, clock).retry("t-1")

    assert result.succeeded
    assert client.reauth_count == 1


@pytest.mark.asyncio
async def test_retry_can_be_repeated_after_resume_transport_error(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [_failed(), _failed(), snapshot("t-1", TaskStatus.SUCCESSFUL)]
    client.resume_plan["t-1"] = TransportError("502 Bad Gateway")
    coordinator = _coordinator(client, clock)

    with pytest.raises(TransportError):
        await coordinator.retry("t-1")

    del client.resume_plan["t-1"]
    result = await coordinator.retry("t-1")

    assert result.succeeded
    assert result.task_id == "t-1"
    assert client.call_names("resume_task") == ["t-1", "t-1"]
    assert client.call_names("submit") == []


@pytest.mark.asyncio
async def test_missing_task_is_not_retryable(client: FakeClient, clock: FakeClock) -> None:
    client.scripts["t-1"] = [TaskNotFoundError("t-1")]

    with pytest.raises(NotRetryableError, match="was not found") as excinfo:
        await _coordinator(client, clock).retry("t-1")

    assert excinfo.value.task_id == "t-1"
    assert client.call_names("resume_task") == []
