"""Pydantic models for Typer CLI options."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sddc_cli.core.batch import DEFAULT_CONFIG_PATH
from sddc_cli.core.models import ExecutionMode, OperationKind


class _BaseOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    manifest: Path = Field(default=DEFAULT_CONFIG_PATH)
    verbose: bool = False

    @field_validator("manifest", mode="before")
    @classmethod
    def _expand_manifest(cls, value: str | Path) -> Path:
        return Path(value).expanduser().resolve()


class BatchOptions(_BaseOptions):
    kind: OperationKind
    targets: tuple[str, ...] = Field(default_factory=tuple)
    limit: int | None = Field(default=None, ge=1)
    mode: ExecutionMode = ExecutionMode.SERIAL
    interactive: bool = False

    @field_validator("targets", mode="before")
    @classmethod
    def _coerce_targets(cls, value: Iterable[str] | str | None) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        return tuple(value)


class TaskOptions(_BaseOptions):
    kind: OperationKind
    target: str = Field(min_length=1)


class RetryOptions(_BaseOptions):
    task_id: str = Field(min_length=1)


class StatusOptions(_BaseOptions):
    kind: OperationKind
    target: str | None = None


__all__ = ["BatchOptions", "RetryOptions", "StatusOptions", "TaskOptions"]
