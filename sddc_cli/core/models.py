"""Unified Pydantic models for the SDDC lifecycle CLI."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sddc_cli.core.exceptions import RemoteExecutionFailure


def _expand_path(value: str | Path | None) -> Path | None:
    """Expand user paths like ~/."""
    if value is None:
        return None
    return Path(value).expanduser()


def utcnow() -> datetime:
    return datetime.now(UTC)


class _BaseModel(BaseModel):
    """Base model with common configuration."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# Enumerations


class OperationKind(StrEnum):
    IMAGE_IMPORT = "image-import"
    COMPLIANCE_CHECK = "compliance-check"
    TRANSITION = "transition"


class TaskStatus(StrEnum):
    QUEUED = "queued"
    IN_PROGRESS = "in-progress"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self not in (TaskStatus.QUEUED, TaskStatus.IN_PROGRESS)


_REMOTE_STATUS_ALIASES: dict[str, TaskStatus] = {
    "PENDING": TaskStatus.QUEUED,
    "QUEUED": TaskStatus.QUEUED,
    "NOT_STARTED": TaskStatus.QUEUED,
    "IN_PROGRESS": TaskStatus.IN_PROGRESS,
    "INPROGRESS": TaskStatus.IN_PROGRESS,
    "RUNNING": TaskStatus.IN_PROGRESS,
    "SUCCESSFUL": TaskStatus.SUCCESSFUL,
    "SUCCEEDED": TaskStatus.SUCCESSFUL,
    "COMPLETED_WITH_SUCCESS": TaskStatus.SUCCESSFUL,
    "FAILED": TaskStatus.FAILED,
    "COMPLETED_WITH_FAILURE": TaskStatus.FAILED,
}


def parse_remote_status(raw: str | None) -> TaskStatus:
    """Normalize a control-plane status string; anything unrecognized is UNKNOWN."""
    if not raw:
        return TaskStatus.UNKNOWN
    key = raw.strip().upper().replace(" ", "_").replace("-", "_")
    return _REMOTE_STATUS_ALIASES.get(key, TaskStatus.UNKNOWN)


class ComplianceStatus(StrEnum):
    COMPLIANT = "compliant"
    NON_COMPLIANT = "non-compliant"
    INCOMPATIBLE = "incompatible"
    UNKNOWN = "unknown"


class ExecutionMode(StrEnum):
    SERIAL = "serial"
    PARALLEL = "parallel"


class FailureDecision(StrEnum):
    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"


class TargetOutcome(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SUBMITTED = "submitted"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"
    ABORTED = "aborted"
    ERROR = "error"
    UNAUTHENTICATED = "unauthenticated"


# Remote records


def count_completed(steps: Sequence[SubStep]) -> int:
    return sum(1 for step in steps if step.status is TaskStatus.SUCCESSFUL)


def current_step_name(steps: Sequence[SubStep]) -> str | None:
    """Name of the first sub-step that has not succeeded, or the last one when all have."""
    for step in steps:
        if step.status is not TaskStatus.SUCCESSFUL:
            return step.name
    if steps:
        return steps[-1].name
    return None


class TargetRef(_FrozenModel):
    """A cluster, keyed by cluster id within its workload domain."""

    cluster_id: str
    domain_id: str

    def __str__(self) -> str:
        return f"{self.domain_id}/{self.cluster_id}"


class SubStep(_FrozenModel):
    name: str
    status: TaskStatus


class TaskError(_FrozenModel):
    code: str
    message: str
    sub_step: str | None = None


class TaskSnapshot(_FrozenModel):
    """One reading of a remote task as returned by the control plane."""

    task_id: str
    status: TaskStatus
    sub_steps: tuple[SubStep, ...] = ()
    last_error: TaskError | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    kind: OperationKind | None = None
    target_ref: TargetRef | None = None


class TargetInfo(_FrozenModel):
    ref: TargetRef
    name: str | None = None
    image_ref: str | None = None
    transitioned: bool = False


class ComplianceRecord(_FrozenModel):
    target_ref: TargetRef
    image_ref: str
    status: ComplianceStatus
    evaluated_at: datetime


# Task lifecycle


def _step_list_factory() -> list[SubStep]:
    return []


class TaskHandle(_BaseModel):
    """In-memory view of one submitted remote operation."""

    id: str
    kind: OperationKind
    target_ref: TargetRef
    status: TaskStatus = TaskStatus.QUEUED
    sub_steps: list[SubStep] = Field(default_factory=_step_list_factory)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    last_error: TaskError | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def total_count(self) -> int:
        return len(self.sub_steps)

    @property
    def completed_count(self) -> int:
        return count_completed(self.sub_steps)

    @property
    def current_step(self) -> str | None:
        return current_step_name(self.sub_steps)

    def apply(self, snapshot: TaskSnapshot) -> None:
        """Refresh status and sub-steps from a control-plane reading."""
        self.status = snapshot.status
        self.sub_steps = list(snapshot.sub_steps)
        if snapshot.status.is_terminal:
            self.completed_at = snapshot.completed_at or utcnow()
        else:
            self.completed_at = None
        if snapshot.status is TaskStatus.FAILED:
            self.last_error = snapshot.last_error or TaskError(
                code="UNSPECIFIED",
                message="Task failed without error details",
                sub_step=self.current_step,
            )
        else:
            self.last_error = snapshot.last_error

    def mark_resumed(self) -> None:
        self.status = TaskStatus.IN_PROGRESS
        self.completed_at = None
        self.last_error = None


class TerminalResult(_FrozenModel):
    task_id: str
    kind: OperationKind
    target_ref: TargetRef
    status: TaskStatus
    last_error: TaskError | None = None
    elapsed: float
    attempts: int = 1

    @property
    def succeeded(self) -> bool:
        return self.status is TaskStatus.SUCCESSFUL

    @property
    def failed_step(self) -> str | None:
        return self.last_error.sub_step if self.last_error else None

    def raise_for_status(self) -> None:
        if not self.succeeded:
            raise RemoteExecutionFailure(self)


class ProgressEvent(_FrozenModel):
    task_id: str
    target_ref: TargetRef
    completed: int
    total: int
    current_step: str | None
    elapsed: float


class TaskSummary(_FrozenModel):
    task_id: str
    kind: OperationKind | None
    target_ref: TargetRef | None
    status: TaskStatus
    completed: int
    total: int
    current_step: str | None = None
    last_error: TaskError | None = None

    @classmethod
    def from_snapshot(cls, snapshot: TaskSnapshot, kind: OperationKind | None = None) -> TaskSummary:
        return cls(
            task_id=snapshot.task_id,
            kind=snapshot.kind or kind,
            target_ref=snapshot.target_ref,
            status=snapshot.status,
            completed=count_completed(snapshot.sub_steps),
            total=len(snapshot.sub_steps),
            current_step=current_step_name(snapshot.sub_steps),
            last_error=snapshot.last_error if snapshot.status is TaskStatus.FAILED else None,
        )


# Configuration models


class ControlPlaneSettings(_BaseModel):
    """Connection settings for the control-plane REST API."""

    base_url: str
    username: str
    verify_ssl: bool = True
    request_timeout: float = 60.0

    @field_validator("base_url")
    @classmethod
    def _strip_slash(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return value.rstrip("/")


class BatchDefaults(_BaseModel):
    """Default configuration for batch processing."""

    poll_interval: float = 5.0
    stall_threshold: float = 300.0
    max_parallel: int = 4
    max_retry_attempts: int = 2
    max_record_age: float | None = None
    compliance_store: Path = Path("~/.local/state/sddc-cli/compliance.json").expanduser()
    image_ref: str | None = None
    unsafe_error_codes: tuple[str, ...] = Field(default_factory=tuple)

    @field_validator("compliance_store", mode="before")
    @classmethod
    def _expand_store(cls, value: str | Path | None) -> Path | None:
        return _expand_path(value)

    @field_validator("poll_interval", "stall_threshold")
    @classmethod
    def _validate_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("intervals must be positive")
        return value

    @field_validator("max_parallel")
    @classmethod
    def _validate_parallel(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("max_parallel must be positive")
        return value

    @field_validator("max_retry_attempts")
    @classmethod
    def _validate_attempts(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_retry_attempts must not be negative")
        return value


class TargetConfig(_BaseModel):
    """Configuration for a single cluster target."""

    name: str
    cluster_id: str
    domain_id: str
    image_ref: str | None = None

    @property
    def ref(self) -> TargetRef:
        return TargetRef(cluster_id=self.cluster_id, domain_id=self.domain_id)


class PerTargetOutcome(_FrozenModel):
    """Result of applying one operation kind to a single target."""

    target: str
    target_ref: TargetRef
    kind: OperationKind
    outcome: TargetOutcome
    task_id: str | None = None
    result: TerminalResult | None = None
    reason: str | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome in (TargetOutcome.SUCCEEDED, TargetOutcome.SUBMITTED)


__all__ = [
    "BatchDefaults",
    "ComplianceRecord",
    "ComplianceStatus",
    "ControlPlaneSettings",
    "ExecutionMode",
    "FailureDecision",
    "OperationKind",
    "PerTargetOutcome",
    "ProgressEvent",
    "SubStep",
    "TargetConfig",
    "TargetInfo",
    "TargetOutcome",
    "TargetRef",
    "TaskError",
    "TaskHandle",
    "TaskSnapshot",
    "TaskStatus",
    "TaskSummary",
    "TerminalResult",
    "count_completed",
    "current_step_name",
    "parse_remote_status",
    "utcnow",
]
