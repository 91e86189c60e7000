"""Control-plane client capability and its REST implementation."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Mapping
from datetime import datetime
from types import TracebackType
from typing import Any, Protocol, Self, cast

import aiohttp
import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from sddc_cli.core.exceptions import (
    AuthenticationError,
    DuplicateInFlightError,
    NotRetryableError,
    RemoteValidationError,
    SessionExpiredError,
    TaskNotFoundError,
    TransportError,
)
from sddc_cli.core.models import (
    ComplianceRecord,
    ComplianceStatus,
    ControlPlaneSettings,
    OperationKind,
    SubStep,
    TargetInfo,
    TargetRef,
    TaskError,
    TaskSnapshot,
    TaskStatus,
    parse_remote_status,
    utcnow,
)
from sddc_cli.core.session import AccessToken, SessionContext

logger = structlog.get_logger(__name__)


class ControlPlaneClient(Protocol):
    async def submit(
        self,
        kind: OperationKind,
        target_ref: TargetRef,
        params: Mapping[str, Any],
    ) -> str: ...

    async def get_task(self, task_id: str) -> TaskSnapshot: ...

    async def resume_task(self, task_id: str) -> str: ...

    async def list_tasks(self, kind: OperationKind, status: TaskStatus | None = None) -> list[str]: ...

    async def reauthenticate(self) -> None: ...

    async def get_target(self, target_ref: TargetRef) -> TargetInfo | None: ...

    async def image_exists(self, image_ref: str) -> bool: ...

    async def get_compliance_record(self, target_ref: TargetRef) -> ComplianceRecord | None: ...


# Remote payload models

TASK_TYPES: dict[OperationKind, str] = {
    OperationKind.IMAGE_IMPORT: "PERSONALITY_UPLOAD",
    OperationKind.COMPLIANCE_CHECK: "CLUSTER_IMAGE_COMPLIANCE_CHECK",
    OperationKind.TRANSITION: "CLUSTER_IMAGE_TRANSITION",
}
_KINDS_BY_TYPE = {value: key for key, value in TASK_TYPES.items()}

_REMOTE_STATUS_NAMES: dict[TaskStatus, str] = {
    TaskStatus.QUEUED: "PENDING",
    TaskStatus.IN_PROGRESS: "IN_PROGRESS",
    TaskStatus.SUCCESSFUL: "SUCCESSFUL",
    TaskStatus.FAILED: "FAILED",
}

_COMPLIANCE_STATUSES: dict[str, ComplianceStatus] = {
    "COMPLIANT": ComplianceStatus.COMPLIANT,
    "NON_COMPLIANT": ComplianceStatus.NON_COMPLIANT,
    "INCOMPATIBLE": ComplianceStatus.INCOMPATIBLE,
}


class _RemoteRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ErrorRecord(_RemoteRecord):
    error_code: str = Field(default="UNSPECIFIED", alias="errorCode")
    message: str = ""


def _empty_errors() -> list[ErrorRecord]:
    return []


class SubTaskRecord(_RemoteRecord):
    name: str
    status: str | None = None
    errors: list[ErrorRecord] = Field(default_factory=_empty_errors)


class ResourceRecord(_RemoteRecord):
    resource_id: str = Field(alias="resourceId")
    type: str


def _empty_subtasks() -> list[SubTaskRecord]:
    return []


def _empty_resources() -> list[ResourceRecord]:
    return []


class TaskRecord(_RemoteRecord):
    id: str
    type: str | None = None
    status: str | None = None
    creation_timestamp: datetime | None = Field(default=None, alias="creationTimestamp")
    completion_timestamp: datetime | None = Field(default=None, alias="completionTimestamp")
    sub_tasks: list[SubTaskRecord] = Field(default_factory=_empty_subtasks, alias="subTasks")
    errors: list[ErrorRecord] = Field(default_factory=_empty_errors)
    resources: list[ResourceRecord] = Field(default_factory=_empty_resources)


class ClusterRecord(_RemoteRecord):
    id: str
    name: str | None = None
    domain_id: str | None = Field(default=None, alias="domainId")
    is_image_based: bool = Field(default=False, alias="isImageBased")
    image_id: str | None = Field(default=None, alias="imageId")


class ComplianceReportRecord(_RemoteRecord):
    image_id: str = Field(alias="imageId")
    status: str
    check_time: datetime | None = Field(default=None, alias="checkTime")


class TaskListRecord(_RemoteRecord):
    elements: list[TaskRecord] = Field(default_factory=list)


TASK_ADAPTER = TypeAdapter(TaskRecord)
TASK_LIST_ADAPTER = TypeAdapter(TaskListRecord)
CLUSTER_ADAPTER = TypeAdapter(ClusterRecord)
COMPLIANCE_ADAPTER = TypeAdapter(ComplianceReportRecord)


def _first_error(errors: list[ErrorRecord], sub_step: str | None) -> TaskError | None:
    if not errors:
        return None
    error = errors[0]
    return TaskError(code=error.error_code, message=error.message, sub_step=sub_step)


def task_snapshot_from_record(record: TaskRecord) -> TaskSnapshot:
    """Translate a remote task payload into a snapshot the monitor understands."""
    sub_steps = tuple(
        SubStep(name=sub.name, status=parse_remote_status(sub.status)) for sub in record.sub_tasks
    )
    status = parse_remote_status(record.status)
    last_error: TaskError | None = None
    if status is TaskStatus.FAILED:
        failed_sub = next(
            (sub for sub in record.sub_tasks if parse_remote_status(sub.status) is TaskStatus.FAILED),
            None,
        )
        failed_name = failed_sub.name if failed_sub else None
        last_error = _first_error(failed_sub.errors if failed_sub else [], failed_name)
        if last_error is None:
            last_error = _first_error(record.errors, failed_name)
    resources = {resource.type.upper(): resource.resource_id for resource in record.resources}
    target_ref: TargetRef | None = None
    if "CLUSTER" in resources and "DOMAIN" in resources:
        target_ref = TargetRef(cluster_id=resources["CLUSTER"], domain_id=resources["DOMAIN"])
    return TaskSnapshot(
        task_id=record.id,
        status=status,
        sub_steps=sub_steps,
        last_error=last_error,
        started_at=record.creation_timestamp,
        completed_at=record.completion_timestamp,
        kind=_KINDS_BY_TYPE.get(record.type or ""),
        target_ref=target_ref,
    )


# REST client


class RestControlPlaneClient:
    """Control-plane client speaking to an SDDC-Manager-style REST API over aiohttp."""

    def __init__(
        self,
        settings: ControlPlaneSettings,
        password: str,
        *,
        token_lifetime: float = 3600.0,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._settings = settings
        self._password = password
        self._token_lifetime = token_lifetime
        self._http = http_session
        self._owns_http = http_session is None
        self.session = SessionContext(self._authenticate)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.close()
        self._http = None

    def _client(self) -> aiohttp.ClientSession:
        if self._http is None:
            self._owns_http = True
            connector = aiohttp.TCPConnector(ssl=self._settings.verify_ssl)
            self._http = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self._settings.request_timeout),
                headers={"Accept": "application/json"},
            )
        return self._http

    async def _authenticate(self) -> AccessToken:
        url = f"{self._settings.base_url}/v1/tokens"
        body = {"username": self._settings.username, "password": self._password}
        try:
            async with self._client().post(url, json=body) as response:
                if response.status in (401, 403):
                    raise AuthenticationError(f"Credentials for {self._settings.username} were rejected")
                if response.status >= 400:
                    raise TransportError(f"Token request failed with HTTP {response.status}")
                payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"Token request failed: {exc}") from exc
        token = payload.get("accessToken") if isinstance(payload, Mapping) else None
        if not token:
            raise AuthenticationError("Token response did not include an access token")
        return AccessToken(value=str(token), expires_at=time.monotonic() + self._token_lifetime)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        label: str,
        body: Mapping[str, Any] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> tuple[int, Any]:
        token = await self.session.token()
        url = f"{self._settings.base_url}{path}"
        headers = {"Authorization": f"Bearer {token}"}
        logger.debug("http-request", method=method, path=path)
        try:
            async with self._client().request(
                method, url, json=body, params=params, headers=headers
            ) as response:
                status = response.status
                text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"{label} request failed: {exc}") from exc
        if status == 401:
            raise SessionExpiredError(f"{label} was rejected: session expired")
        if status >= 500:
            raise TransportError(f"{label} failed with HTTP {status}")
        payload: Any = None
        if text.strip():
            try:
                payload = json.loads(text)
            except json.JSONDecodeError as exc:
                raise TransportError(f"{label} returned invalid JSON: {exc}") from exc
        return status, payload

    async def submit(
        self,
        kind: OperationKind,
        target_ref: TargetRef,
        params: Mapping[str, Any],
    ) -> str:
        path, body = self._submission(kind, target_ref, params)
        label = f"{kind.value} submission for {target_ref}"
        status, payload = await self._request("POST", path, label=label, body=body)
        if status == 409:
            raise DuplicateInFlightError(
                f"A {kind.value} operation is already running for {target_ref}",
                task_id=self._extract_task_id(payload),
            )
        if status in (400, 404, 422):
            raise RemoteValidationError(f"{label} was rejected: {self._error_message(payload)}")
        if status >= 300:
            raise TransportError(f"{label} failed with HTTP {status}")
        task_id = self._extract_task_id(payload)
        if not task_id:
            raise TransportError(f"{label} did not return a task id")
        return task_id

    def _submission(
        self,
        kind: OperationKind,
        target_ref: TargetRef,
        params: Mapping[str, Any],
    ) -> tuple[str, dict[str, Any]]:
        if kind is OperationKind.IMAGE_IMPORT:
            return "/v1/personalities", {
                "name": params.get("name") or f"{target_ref.cluster_id}-image",
                "uploadMode": "REFERRED",
                "uploadSpecReferredMode": {
                    "clusterId": target_ref.cluster_id,
                    "domainId": target_ref.domain_id,
                },
            }
        image_ref = params.get("image_ref")
        if not image_ref:
            raise RemoteValidationError(f"{kind.value} for {target_ref} requires an image reference")
        if kind is OperationKind.COMPLIANCE_CHECK:
            return f"/v1/clusters/{target_ref.cluster_id}/image-compliance-checks", {"imageId": image_ref}
        return f"/v1/clusters/{target_ref.cluster_id}/transitions", {"imageId": image_ref}

    async def get_task(self, task_id: str) -> TaskSnapshot:
        status, payload = await self._request("GET", f"/v1/tasks/{task_id}", label=f"Task {task_id}")
        if status == 404:
            raise TaskNotFoundError(task_id)
        if status >= 300:
            raise TransportError(f"Task {task_id} lookup failed with HTTP {status}")
        try:
            record = TASK_ADAPTER.validate_python(payload)
        except ValidationError as exc:
            raise TransportError(f"Invalid task payload for {task_id}: {exc}") from exc
        return task_snapshot_from_record(record)

    async def resume_task(self, task_id: str) -> str:
        status, payload = await self._request("PATCH", f"/v1/tasks/{task_id}", label=f"Resume of task {task_id}")
        if status in (400, 404, 409, 412, 422):
            raise NotRetryableError(
                f"Task {task_id} cannot be resumed: {self._error_message(payload)}",
                task_id=task_id,
            )
        if status >= 300:
            raise TransportError(f"Resume of task {task_id} failed with HTTP {status}")
        return self._extract_task_id(payload) or task_id

    async def list_tasks(self, kind: OperationKind, status: TaskStatus | None = None) -> list[str]:
        params = {"taskType": TASK_TYPES[kind]}
        remote_status = _REMOTE_STATUS_NAMES.get(status) if status is not None else None
        if remote_status:
            params["taskStatus"] = remote_status
        code, payload = await self._request("GET", "/v1/tasks", label="Task list", params=params)
        if code >= 300:
            raise TransportError(f"Task list failed with HTTP {code}")
        try:
            records = TASK_LIST_ADAPTER.validate_python(payload or {})
        except ValidationError as exc:
            raise TransportError(f"Invalid task list payload: {exc}") from exc
        return [record.id for record in records.elements]

    async def reauthenticate(self) -> None:
        await self.session.refresh()
        logger.info("session-reauthenticated", base_url=self._settings.base_url)

    async def get_target(self, target_ref: TargetRef) -> TargetInfo | None:
        status, payload = await self._request(
            "GET", f"/v1/clusters/{target_ref.cluster_id}", label=f"Cluster {target_ref}"
        )
        if status == 404:
            return None
        if status >= 300:
            raise TransportError(f"Cluster {target_ref} lookup failed with HTTP {status}")
        try:
            record = CLUSTER_ADAPTER.validate_python(payload)
        except ValidationError as exc:
            raise TransportError(f"Invalid cluster payload for {target_ref}: {exc}") from exc
        if record.domain_id and record.domain_id != target_ref.domain_id:
            return None
        return TargetInfo(
            ref=target_ref,
            name=record.name,
            image_ref=record.image_id,
            transitioned=record.is_image_based,
        )

    async def image_exists(self, image_ref: str) -> bool:
        status, _ = await self._request("GET", f"/v1/personalities/{image_ref}", label=f"Image {image_ref}")
        if status == 404:
            return False
        if status >= 300:
            raise TransportError(f"Image {image_ref} lookup failed with HTTP {status}")
        return True

    async def get_compliance_record(self, target_ref: TargetRef) -> ComplianceRecord | None:
        status, payload = await self._request(
            "GET",
            f"/v1/clusters/{target_ref.cluster_id}/image-compliance",
            label=f"Compliance report for {target_ref}",
        )
        if status == 404:
            return None
        if status >= 300:
            raise TransportError(f"Compliance report for {target_ref} failed with HTTP {status}")
        if not payload:
            return None
        try:
            record = COMPLIANCE_ADAPTER.validate_python(payload)
        except ValidationError as exc:
            raise TransportError(f"Invalid compliance payload for {target_ref}: {exc}") from exc
        return ComplianceRecord(
            target_ref=target_ref,
            image_ref=record.image_id,
            status=_COMPLIANCE_STATUSES.get(record.status.upper(), ComplianceStatus.UNKNOWN),
            evaluated_at=record.check_time or utcnow(),
        )

    def _extract_task_id(self, payload: Any) -> str | None:
        if isinstance(payload, Mapping):
            mapping = cast(Mapping[str, Any], payload)
            for key in ("id", "taskId"):
                value = mapping.get(key)
                if value:
                    return str(value)
        return None

    def _error_message(self, payload: Any) -> str:
        if isinstance(payload, Mapping):
            mapping = cast(Mapping[str, Any], payload)
            message = mapping.get("message") or mapping.get("errorCode")
            if message:
                return str(message)
        return "no details"


__all__ = [
    "TASK_TYPES",
    "ControlPlaneClient",
    "RestControlPlaneClient",
    "task_snapshot_from_record",
]
