"""Questionary prompts for attended batch runs."""

from __future__ import annotations

import questionary
import structlog

from sddc_cli.core.models import FailureDecision, TargetConfig, TaskStatus, TerminalResult

logger = structlog.get_logger(__name__)


class PromptAbort(RuntimeError):
    """Raised when the user aborts a Questionary prompt."""


_CHOICE_LABELS: dict[FailureDecision, str] = {
    FailureDecision.RETRY: "Retry now (resume from the failed step)",
    FailureDecision.SKIP: "Skip this target and continue",
    FailureDecision.ABORT: "Abort the remaining batch",
}


def describe_failure(target: TargetConfig, result: TerminalResult) -> str:
    error = result.last_error
    if error is None:
        return f"{target.name}: task {result.task_id} finished {result.status.value}"
    step = error.sub_step or "unknown step"
    return f"{target.name}: task {result.task_id} failed at '{step}' ({error.code}: {error.message})"


async def ask_failure_decision(
    target: TargetConfig,
    result: TerminalResult,
    *,
    allow_retry: bool = True,
) -> FailureDecision:
    """Ask whether to retry, skip or abort after a failed task."""

    questionary.print(describe_failure(target, result), style="bold red")
    choices = [
        questionary.Choice(title=label, value=decision.value)
        for decision, label in _CHOICE_LABELS.items()
        if allow_retry or decision is not FailureDecision.RETRY
    ]
    response = await questionary.select("How should the batch proceed?", choices=choices).ask_async()
    if response is None:
        raise PromptAbort()
    return FailureDecision(response)


class InteractivePolicy:
    """Failure policy that asks the operator after every failed task."""

    def __init__(self, max_retry_attempts: int = 2) -> None:
        self.max_retry_attempts = max_retry_attempts

    async def decide(self, target: TargetConfig, result: TerminalResult, attempt: int) -> FailureDecision:
        allow_retry = result.status is TaskStatus.FAILED and attempt <= self.max_retry_attempts
        try:
            return await ask_failure_decision(target, result, allow_retry=allow_retry)
        except PromptAbort:
            logger.warning("prompt-aborted", target=target.name)
            return FailureDecision.ABORT


__all__ = [
    "InteractivePolicy",
    "PromptAbort",
    "ask_failure_decision",
    "describe_failure",
]
