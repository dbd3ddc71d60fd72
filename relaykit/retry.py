"""Bounded failure recovery: one retry or one bounce per step per failure episode."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .definition import FailureAction, StepSpec
from .state import PipelineState, RetryEntry, RetryOutcome


class RetryKind(str, Enum):
    RETRY_SAME = "retry_same"
    BOUNCE_TO = "bounce_to"
    STOP = "stop"


@dataclass(frozen=True)
class RetryAction:
    kind: RetryKind
    target: int | None = None
    reason: str = ""


def _format_reason(errors: list[str] | tuple[str, ...]) -> str:
    return "; ".join(str(e) for e in errors) or "unspecified failure"


class RetryCoordinator:
    def __init__(self, *, logger: logging.Logger | None = None):
        self._logger = logger or logging.getLogger(__name__)

    def pending_entries(self, state: PipelineState, step_index: int) -> list[RetryEntry]:
        return [
            entry
            for entry in state.retry_log
            if entry.step_index == step_index and entry.outcome is RetryOutcome.PENDING
        ]

    def last_pending(self, state: PipelineState) -> RetryEntry | None:
        for entry in reversed(state.retry_log):
            if entry.outcome is RetryOutcome.PENDING:
                return entry
        return None

    def handle_failure(
        self, state: PipelineState, step: StepSpec, errors: list[str] | tuple[str, ...]
    ) -> RetryAction:
        reason = _format_reason(errors)
        pending = self.pending_entries(state, step.index)
        if pending:
            for entry in pending:
                entry.outcome = RetryOutcome.FAILED
            self._logger.error(
                "Retry ceiling reached for step %d (%s); stopping", step.index, step.name
            )
            return RetryAction(RetryKind.STOP, reason=reason)

        policy = step.on_fail
        if policy.action is FailureAction.STOP:
            return RetryAction(RetryKind.STOP, reason=reason)

        attempt = 1 + sum(1 for entry in state.retry_log if entry.step_index == step.index)
        if policy.action is FailureAction.RETRY_ONCE:
            state.retry_log.append(
                RetryEntry(step_index=step.index, attempt=attempt, reason=reason)
            )
            self._logger.warning(
                "Retrying step %d (%s) once (attempt=%d)", step.index, step.name, attempt
            )
            return RetryAction(RetryKind.RETRY_SAME, target=step.index, reason=reason)

        target = policy.target
        if target is None:
            raise ValueError(f"Step {step.index} ({step.name}) bounce_to policy has no target")
        state.retry_log.append(
            RetryEntry(
                step_index=step.index, attempt=attempt, reason=reason, target_index=target
            )
        )
        self._apply_bounce(state, target)
        self._logger.warning(
            "Bouncing from step %d (%s) back to step %d (attempt=%d)",
            step.index,
            step.name,
            target,
            attempt,
        )
        return RetryAction(RetryKind.BOUNCE_TO, target=target, reason=reason)

    def resolve(self, state: PipelineState, step_index: int) -> list[RetryEntry]:
        resolved = self.pending_entries(state, step_index)
        for entry in resolved:
            entry.outcome = RetryOutcome.RESOLVED
        if resolved:
            self._logger.info("Step %d passed; resolved retry entries=%d", step_index, len(resolved))
        return resolved

    def _apply_bounce(self, state: PipelineState, target: int) -> None:
        for record in state.steps:
            if record.index < target:
                continue
            record.decision = None
            record.running_since = None
            record.completed_at = None
        state.current_step_index = target
