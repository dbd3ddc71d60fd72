"""Step executor boundary: the contract between the orchestrator and workers.

Executors may be re-invoked for a step that already ran (a crash between the
running marker and the gate decision is indistinguishable from a crash before the
executor started), so they must overwrite their own state record and deliverables.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Protocol

from .definition import StepSpec, step_state_key
from .store import StateStore


@dataclass(frozen=True)
class ExecutionResult:
    state_artifacts_present: bool
    deliverable_artifacts: tuple[str, ...] = ()
    summary: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "deliverable_artifacts", tuple(str(p) for p in self.deliverable_artifacts)
        )
        if not isinstance(self.summary, str):
            raise TypeError(
                f"ExecutionResult.summary must be a string (type={type(self.summary).__name__})"
            )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ExecutionResult":
        unknown = sorted(
            set(data) - {"state_artifacts_present", "deliverable_artifacts", "summary"}
        )
        if unknown:
            raise ValueError(f"Unknown ExecutionResult keys: {', '.join(unknown)}")
        return cls(
            state_artifacts_present=bool(data.get("state_artifacts_present", False)),
            deliverable_artifacts=tuple(data.get("deliverable_artifacts") or ()),
            summary=str(data.get("summary") or ""),
        )


@dataclass
class StepContext:
    step: StepSpec
    store: StateStore
    deliverables_dir: Path
    parameters: dict[str, str] = field(default_factory=dict)
    prior_deliverables: dict[str, list[str]] = field(default_factory=dict)
    feedback: str | None = None
    failure_reason: str | None = None

    @property
    def state_key(self) -> str:
        return self.step.state_key

    @property
    def state_path(self) -> Path | None:
        path_for = getattr(self.store, "path_for", None)
        if path_for is None:
            return None
        return Path(path_for(self.state_key))

    def write_state(self, record: Mapping[str, Any], *, suffix: str | None = None) -> str:
        key = step_state_key(self.step.index, self.step.name, suffix)
        self.store.write(key, record)
        return key

    def deliverable_path(self, relative: str) -> Path:
        return self.deliverables_dir / relative


class StepExecutor(Protocol):
    def invoke(self, step: StepSpec, context: StepContext) -> ExecutionResult:
        ...
