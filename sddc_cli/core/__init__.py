"""Core task orchestration logic for control-plane lifecycle operations."""

from sddc_cli.core.batch import (
    BatchCoordinator,
    FailurePolicy,
    UnattendedPolicy,
    load_manifest,
    select_targets,
)
from sddc_cli.core.client import ControlPlaneClient, RestControlPlaneClient
from sddc_cli.core.clock import Clock, MonotonicClock
from sddc_cli.core.exceptions import (
    AuthenticationError,
    ComplianceStoreError,
    DuplicateInFlightError,
    ManifestError,
    NotRetryableError,
    OperationCancelledError,
    RemoteExecutionFailure,
    RemoteValidationError,
    SddcError,
    SessionExpiredError,
    TargetSelectionError,
    TransportError,
    ValidationError,
)
from sddc_cli.core.gate import ComplianceGate, ComplianceStore, DenyReason, GateDecision
from sddc_cli.core.models import (
    BatchDefaults,
    ControlPlaneSettings,
    ExecutionMode,
    OperationKind,
    TargetConfig,
    TargetRef,
    TaskHandle,
    TaskStatus,
    TerminalResult,
)
from sddc_cli.core.monitor import TaskMonitor
from sddc_cli.core.orchestrator import Orchestrator
from sddc_cli.core.retry import RetryCoordinator
from sddc_cli.core.session import SessionContext

__all__ = [
    "AuthenticationError",
    "BatchCoordinator",
    "BatchDefaults",
    "Clock",
    "ComplianceGate",
    "ComplianceStore",
    "ComplianceStoreError",
    "ControlPlaneClient",
    "ControlPlaneSettings",
    "DenyReason",
    "DuplicateInFlightError",
    "ExecutionMode",
    "FailurePolicy",
    "GateDecision",
    "ManifestError",
    "MonotonicClock",
    "NotRetryableError",
    "OperationCancelledError",
    "OperationKind",
    "Orchestrator",
    "RemoteExecutionFailure",
    "RemoteValidationError",
    "RestControlPlaneClient",
    "RetryCoordinator",
    "SddcError",
    "SessionContext",
    "SessionExpiredError",
    "TargetConfig",
    "TargetRef",
    "TargetSelectionError",
    "TaskHandle",
    "TaskMonitor",
    "TaskStatus",
    "TerminalResult",
    "TransportError",
    "UnattendedPolicy",
    "ValidationError",
    "load_manifest",
    "select_targets",
]
