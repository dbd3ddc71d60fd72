"""Post-step validation.

Every criterion is evaluated even after an earlier one fails so a single report
lists everything that is wrong with the step's output.
"""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from .definition import StepSpec
from .executor import ExecutionResult
from .store import StateStore

_CHECK_OUTPUT_TAIL_CHARS = 400


@dataclass(frozen=True)
class ValidationOutcome:
    passed: bool
    errors: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_errors(cls, errors: list[str]) -> "ValidationOutcome":
        return cls(passed=not errors, errors=tuple(errors))


def resolve_deliverable(deliverables_dir: str | os.PathLike[str], path: str) -> Path:
    candidate = Path(os.path.expandvars(os.path.expanduser(path)))
    if not candidate.is_absolute():
        candidate = Path(deliverables_dir) / candidate
    return Path(os.path.normpath(os.path.abspath(candidate)))


def is_inside(deliverables_dir: str | os.PathLike[str], path: str | os.PathLike[str]) -> bool:
    """True only for paths strictly below the deliverables directory (symlinks resolved)."""
    root = os.path.realpath(deliverables_dir)
    target = os.path.realpath(path)
    if target == root:
        return False
    try:
        return os.path.commonpath([root, target]) == root
    except ValueError:
        return False


def _candidate_deliverables(
    deliverables_dir: Path, step: StepSpec, result: ExecutionResult | None
) -> list[tuple[str, str]]:
    reported = result.deliverable_artifacts if result is not None else ()
    seen: set[str] = set()
    out: list[tuple[str, str]] = []
    for raw in (*step.deliverables, *reported):
        resolved = str(resolve_deliverable(deliverables_dir, raw))
        if resolved in seen:
            continue
        seen.add(resolved)
        out.append((raw, resolved))
    return out


def collect_deliverables(
    deliverables_dir: Path, step: StepSpec, result: ExecutionResult | None
) -> list[str]:
    """Declared deliverables followed by any extra ones the executor reported.

    Paths that escape the deliverables directory are dropped; the gate reports them.
    """
    return [
        resolved
        for _raw, resolved in _candidate_deliverables(deliverables_dir, step, result)
        if is_inside(deliverables_dir, resolved)
    ]


def _tail(text: str | None) -> str:
    if not text:
        return ""
    stripped = text.strip()
    if len(stripped) <= _CHECK_OUTPUT_TAIL_CHARS:
        return stripped
    return "..." + stripped[-_CHECK_OUTPUT_TAIL_CHARS:]


class GateEngine:
    def __init__(self, store: StateStore, deliverables_dir: str | os.PathLike[str]):
        self._store = store
        self._deliverables_dir = Path(deliverables_dir)

    @property
    def deliverables_dir(self) -> Path:
        return self._deliverables_dir

    def validate(self, step: StepSpec, result: ExecutionResult) -> ValidationOutcome:
        errors: list[str] = []
        errors.extend(self._check_state_record(step, result))
        errors.extend(self._check_deliverables(step, result))
        errors.extend(self._check_external(step))
        return ValidationOutcome.from_errors(errors)

    def _check_state_record(self, step: StepSpec, result: ExecutionResult) -> list[str]:
        if self._store.exists(step.state_key):
            return []
        if result.state_artifacts_present:
            return [
                f"State record {step.state_key} missing from store "
                "(executor reported it as written)"
            ]
        return [f"State record {step.state_key} missing"]

    def _check_deliverables(self, step: StepSpec, result: ExecutionResult) -> list[str]:
        errors: list[str] = []
        for raw, path in _candidate_deliverables(self._deliverables_dir, step, result):
            if not is_inside(self._deliverables_dir, path):
                errors.append(f"Deliverable outside {self._deliverables_dir}: {raw}")
            elif not os.path.exists(path):
                errors.append(f"Deliverable missing: {path}")
        return errors

    def _check_external(self, step: StepSpec) -> list[str]:
        if not step.check:
            return []
        cwd = self._deliverables_dir if self._deliverables_dir.is_dir() else None
        try:
            proc = subprocess.run(
                step.check,
                shell=True,
                cwd=str(cwd) if cwd is not None else None,
                capture_output=True,
                text=True,
                timeout=step.check_timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return [f"Check timed out after {step.check_timeout_seconds}s: {step.check}"]
        except OSError as exc:
            return [f"Check could not start ({exc}): {step.check}"]

        if proc.returncode == 0:
            return []
        detail = _tail(proc.stderr) or _tail(proc.stdout)
        message = f"Check failed (exit={proc.returncode}): {step.check}"
        if detail:
            message = f"{message}: {detail}"
        return [message]
