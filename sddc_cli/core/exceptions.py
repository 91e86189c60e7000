"""Centralized exception hierarchy for the SDDC lifecycle CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sddc_cli.core.models import TerminalResult


class SddcError(Exception):
    """Base exception for all SDDC lifecycle errors."""


class ManifestError(SddcError):
    """Raised when the TOML manifest is invalid or cannot be loaded."""


class TargetSelectionError(SddcError):
    """Raised when target filters reference unknown entries."""


class ComplianceStoreError(SddcError):
    """Raised when the compliance snapshot file cannot be read or written."""


class ValidationError(SddcError):
    """Raised when a target, image or state precondition is not met."""


class RemoteValidationError(ValidationError):
    """Raised when the control plane rejects a submission as invalid."""


class DuplicateInFlightError(SddcError):
    """Raised when an operation of the same kind is already running for a target."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class TransportError(SddcError):
    """Raised when the control plane cannot be reached or answers unexpectedly."""


class SessionExpiredError(TransportError):
    """Raised when the control-plane session token is no longer accepted."""


class AuthenticationError(SddcError):
    """Raised when re-authentication against the control plane fails."""


class RemoteExecutionFailure(SddcError):
    """Raised when a submitted operation finishes in a failed state."""

    def __init__(self, result: TerminalResult) -> None:
        error = result.last_error
        detail = f"{error.code}: {error.message}" if error else "no error details"
        super().__init__(f"Task {result.task_id} finished {result.status.value} ({detail})")
        self.result = result


class TaskNotFoundError(SddcError):
    """Raised when the control plane has no record of a task id."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} was not found")
        self.task_id = task_id


class NotRetryableError(SddcError):
    """Raised when a task cannot be resumed."""

    def __init__(self, message: str, *, task_id: str) -> None:
        super().__init__(message)
        self.task_id = task_id


class OperationCancelledError(SddcError):
    """Raised when monitoring is cancelled before the task reaches a terminal status."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Monitoring of task {task_id} was cancelled")
        self.task_id = task_id


__all__ = [
    "AuthenticationError",
    "ComplianceStoreError",
    "DuplicateInFlightError",
    "ManifestError",
    "NotRetryableError",
    "OperationCancelledError",
    "RemoteExecutionFailure",
    "RemoteValidationError",
    "SddcError",
    "SessionExpiredError",
    "TargetSelectionError",
    "TaskNotFoundError",
    "TransportError",
    "ValidationError",
]
