from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from .definition import StepSpec


class StepRecorder(Protocol):
    def on_step_start(self, logger: logging.Logger, step: StepSpec, **metrics: Any) -> None:
        ...

    def on_step_end(self, logger: logging.Logger, step: StepSpec, record: dict[str, Any]) -> None:
        ...

    def on_step_error(self, logger: logging.Logger, step: StepSpec, exc: Exception) -> None:
        ...


def _step_label(step: StepSpec) -> str:
    return f"{step.index:02d}/{step.name}"


class DefaultStepRecorder:
    def on_step_start(self, logger: logging.Logger, step: StepSpec, **metrics: Any) -> None:
        tokens: list[str] = [
            f"executor={step.executor_ref}",
            f"gate={step.gate.value}",
            f"on_fail={step.on_fail.describe()}",
        ]
        feedback = metrics.get("feedback")
        if isinstance(feedback, str) and feedback.strip():
            tokens.append(f"feedback={json.dumps(feedback.strip(), ensure_ascii=False)}")
        failure_reason = metrics.get("failure_reason")
        if isinstance(failure_reason, str) and failure_reason.strip():
            tokens.append(f"after_failure={json.dumps(failure_reason.strip(), ensure_ascii=False)}")

        logger.info("Step: %s (%s)", _step_label(step), ", ".join(tokens))

    def on_step_end(self, logger: logging.Logger, step: StepSpec, record: dict[str, Any]) -> None:
        errors = record.get("errors") or []
        if errors:
            logger.warning(
                "Validation failed for %s (%d error(s)): %s",
                _step_label(step),
                len(errors),
                "; ".join(str(e) for e in errors),
            )
            return

        deliverables = record.get("deliverables") or []
        summary = record.get("summary") or ""
        tokens = [f"deliverables={len(deliverables)}"]
        if summary:
            tokens.append(f"summary={json.dumps(summary, ensure_ascii=False)}")
        logger.info("Completed %s (%s)", _step_label(step), ", ".join(tokens))

    def on_step_error(self, logger: logging.Logger, step: StepSpec, exc: Exception) -> None:
        logger.error("Step failed: %s (%s)", _step_label(step), exc)


class NullStepRecorder:
    def on_step_start(self, logger: logging.Logger, step: StepSpec, **metrics: Any) -> None:
        return

    def on_step_end(self, logger: logging.Logger, step: StepSpec, record: dict[str, Any]) -> None:
        return

    def on_step_error(self, logger: logging.Logger, step: StepSpec, exc: Exception) -> None:
        return


def validate_recorder(recorder: StepRecorder) -> None:
    required = ("on_step_start", "on_step_end", "on_step_error")
    for name in required:
        method = getattr(recorder, name, None)
        if method is None or not callable(method):
            raise TypeError(f"Step recorder missing required method: {name}")
