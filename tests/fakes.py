from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from types import TracebackType
from typing import Any

from sddc_cli.core.models import (
    ComplianceRecord,
    ComplianceStatus,
    OperationKind,
    SubStep,
    TargetConfig,
    TargetInfo,
    TargetRef,
    TaskError,
    TaskSnapshot,
    TaskStatus,
)

ScriptEntry = TaskSnapshot | Exception


def make_target(name: str, *, domain_id: str = "wld-01", image_ref: str | None = "img-1") -> TargetConfig:
    return TargetConfig(name=name, cluster_id=name, domain_id=domain_id, image_ref=image_ref)


def snapshot(
    task_id: str,
    status: TaskStatus,
    steps: Sequence[tuple[str, TaskStatus]] = (),
    *,
    error: TaskError | None = None,
    kind: OperationKind | None = None,
    target_ref: TargetRef | None = None,
) -> TaskSnapshot:
    return TaskSnapshot(
        task_id=task_id,
        status=status,
        sub_steps=tuple(SubStep(name=name, status=step_status) for name, step_status in steps),
        last_error=error,
        kind=kind,
        target_ref=target_ref,
    )


def compliance_record(
    ref: TargetRef,
    image_ref: str = "img-1",
    *,
    evaluated_at: datetime | None = None,
) -> ComplianceRecord:
    return ComplianceRecord(
        target_ref=ref,
        image_ref=image_ref,
        status=ComplianceStatus.COMPLIANT,
        evaluated_at=evaluated_at or datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
    )


class FakeClock:
    """Deterministic clock; ``sleep`` advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.current = start
        self.sleeps: list[float] = []
        self.on_sleep: Callable[[int], None] | None = None

    def now(self) -> float:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds
        if self.on_sleep is not None:
            self.on_sleep(len(self.sleeps))


class FakeClient:
    """Scripted control plane that records every call it receives.

    ``scripts`` maps a task id to the readings ``get_task`` returns in order;
    the last entry repeats once the others are used up. Exceptions in a
    script, ``submit_plan`` or ``resume_plan`` are raised instead of returned,
    and ``reauthenticate`` raises the queued ``reauth_failures`` one per call.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.scripts: dict[str, list[ScriptEntry]] = {}
        self.submit_plan: dict[str, str | Exception] = {}
        self.resume_plan: dict[str, str | Exception] = {}
        self.submitted_params: dict[str, dict[str, Any]] = {}
        self.targets: dict[TargetRef, TargetInfo] = {}
        self.missing_targets: set[TargetRef] = set()
        self.images: set[str] = {"img-1"}
        self.compliance: dict[TargetRef, ComplianceRecord] = {}
        self.task_list: list[str] = []
        self.reauth_count = 0
        self.reauth_failures: list[Exception] = []
        self.closed = False

    async def __aenter__(self) -> FakeClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.closed = True

    def call_names(self, name: str) -> list[str]:
        return [arg for call, arg in self.calls if call == name]

    async def submit(self, kind: OperationKind, target_ref: TargetRef, params: Mapping[str, Any]) -> str:
        self.calls.append(("submit", target_ref.cluster_id))
        self.submitted_params[target_ref.cluster_id] = dict(params)
        planned = self.submit_plan.get(target_ref.cluster_id, f"task-{target_ref.cluster_id}")
        if isinstance(planned, Exception):
            raise planned
        return planned

    async def get_task(self, task_id: str) -> TaskSnapshot:
        self.calls.append(("get_task", task_id))
        script = self.scripts.get(task_id)
        if not script:
            return snapshot(task_id, TaskStatus.SUCCESSFUL)
        entry = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(entry, Exception):
            raise entry
        return entry

    async def resume_task(self, task_id: str) -> str:
        self.calls.append(("resume_task", task_id))
        planned = self.resume_plan.get(task_id, task_id)
        if isinstance(planned, Exception):
            raise planned
        return planned

    async def list_tasks(self, kind: OperationKind, status: TaskStatus | None = None) -> list[str]:
        self.calls.append(("list_tasks", kind.value))
        return list(self.task_list)

    async def reauthenticate(self) -> None:
        self.calls.append(("reauthenticate", ""))
        self.reauth_count += 1
        if self.reauth_failures:
            raise self.reauth_failures.pop(0)

    async def get_target(self, target_ref: TargetRef) -> TargetInfo | None:
        self.calls.append(("get_target", target_ref.cluster_id))
        if target_ref in self.missing_targets:
            return None
        return self.targets.get(target_ref, TargetInfo(ref=target_ref))

    async def image_exists(self, image_ref: str) -> bool:
        self.calls.append(("image_exists", image_ref))
        return image_ref in self.images

    async def get_compliance_record(self, target_ref: TargetRef) -> ComplianceRecord | None:
        self.calls.append(("get_compliance_record", target_ref.cluster_id))
        return self.compliance.get(target_ref)
