"""Compliance snapshot store and the Transition precondition gate."""

from __future__ import annotations

import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from pathlib import Path

import structlog
from pydantic import TypeAdapter, ValidationError

from sddc_cli.core.client import ControlPlaneClient
from sddc_cli.core.exceptions import ComplianceStoreError
from sddc_cli.core.models import ComplianceRecord, TargetInfo, TargetRef, utcnow

logger = structlog.get_logger(__name__)

RECORDS_ADAPTER = TypeAdapter(dict[str, ComplianceRecord])


class ComplianceStore:
    """Write-through JSON cache of the latest compliance evaluation per target."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._records: dict[str, ComplianceRecord] | None = None

    def _load(self) -> dict[str, ComplianceRecord]:
        if self._records is not None:
            return self._records
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            self._records = {}
            return self._records
        except OSError as exc:
            raise ComplianceStoreError(f"Compliance store '{self.path}' could not be read: {exc}") from exc
        try:
            self._records = RECORDS_ADAPTER.validate_json(raw) if raw.strip() else {}
        except ValidationError as exc:
            raise ComplianceStoreError(f"Compliance store '{self.path}' is invalid: {exc}") from exc
        return self._records

    def get(self, target_ref: TargetRef) -> ComplianceRecord | None:
        return self._load().get(str(target_ref))

    def put(self, record: ComplianceRecord) -> None:
        records = dict(self._load())
        records[str(record.target_ref)] = record
        payload = RECORDS_ADAPTER.dump_json(records, indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile("wb", dir=str(self.path.parent), delete=False) as handle:
                handle.write(payload)
                temp_name = Path(handle.name)
            os.replace(temp_name, self.path)
        except OSError as exc:
            raise ComplianceStoreError(f"Compliance store '{self.path}' could not be written: {exc}") from exc
        self._records = records
        logger.info(
            "compliance-record-stored",
            target=str(record.target_ref),
            image_ref=record.image_ref,
            status=record.status.value,
        )

    def records(self) -> list[ComplianceRecord]:
        return list(self._load().values())


class DenyReason(StrEnum):
    NO_RECORD = "no-record"
    IMAGE_MISSING = "image-missing"
    TARGET_ALREADY_TRANSITIONED = "target-already-transitioned"
    STALE_RECORD = "stale-record"


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    image_ref: str | None = None
    reason: DenyReason | None = None
    detail: str | None = None

    @classmethod
    def allow(cls, image_ref: str) -> GateDecision:
        return cls(allowed=True, image_ref=image_ref)

    @classmethod
    def deny(cls, reason: DenyReason, detail: str) -> GateDecision:
        return cls(allowed=False, reason=reason, detail=detail)


class ComplianceGate:
    """Decides whether a Transition may be submitted for a target.

    The decision is read-then-decide and never retried. An allow carries the
    image reference it validated so the submission uses exactly that image.
    """

    def __init__(
        self,
        client: ControlPlaneClient,
        store: ComplianceStore,
        *,
        max_record_age: float | None = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.store = store
        self.max_record_age = max_record_age
        self._now = now

    async def check(self, target_ref: TargetRef, *, target: TargetInfo | None = None) -> GateDecision:
        info = target if target is not None else await self.client.get_target(target_ref)
        if info is not None and info.transitioned:
            return self._deny(
                target_ref,
                DenyReason.TARGET_ALREADY_TRANSITIONED,
                "target already uses image-based management",
            )

        record = self.store.get(target_ref)
        if record is None:
            return self._deny(target_ref, DenyReason.NO_RECORD, "no compliance evaluation on record")

        if self.max_record_age is not None:
            age = (self._now() - record.evaluated_at).total_seconds()
            if age > self.max_record_age:
                return self._deny(
                    target_ref,
                    DenyReason.STALE_RECORD,
                    f"compliance evaluation is {int(age)}s old (limit {int(self.max_record_age)}s)",
                )

        if not await self.client.image_exists(record.image_ref):
            return self._deny(
                target_ref,
                DenyReason.IMAGE_MISSING,
                f"evaluated image {record.image_ref} no longer exists",
            )

        logger.info("compliance-gate-allow", target=str(target_ref), image_ref=record.image_ref)
        return GateDecision.allow(record.image_ref)

    def _deny(self, target_ref: TargetRef, reason: DenyReason, detail: str) -> GateDecision:
        logger.warning("compliance-gate-deny", target=str(target_ref), reason=reason.value, detail=detail)
        return GateDecision.deny(reason, detail)


__all__ = [
    "ComplianceGate",
    "ComplianceStore",
    "DenyReason",
    "GateDecision",
]
