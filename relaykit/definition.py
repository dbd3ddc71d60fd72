"""Immutable pipeline definition: ordered steps with gate and on-failure policy."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .errors import InvalidState


class GateType(str, Enum):
    APPROVAL = "approval"
    AUTO = "auto"
    NONE = "none"


class FailureAction(str, Enum):
    RETRY_ONCE = "retry_once"
    BOUNCE_TO = "bounce_to"
    STOP = "stop"


@dataclass(frozen=True)
class FailurePolicy:
    action: FailureAction = FailureAction.STOP
    target: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.action, FailureAction):
            object.__setattr__(self, "action", FailureAction(self.action))
        if self.action is FailureAction.BOUNCE_TO:
            if isinstance(self.target, bool) or not isinstance(self.target, int):
                raise TypeError(
                    f"bounce_to policy requires an int target (type={type(self.target).__name__})"
                )
            if self.target < 1:
                raise ValueError(f"bounce_to target must be >= 1 (got {self.target})")
        elif self.target is not None:
            raise ValueError(f"{self.action.value} policy does not take a target")

    @classmethod
    def retry_once(cls) -> "FailurePolicy":
        return cls(FailureAction.RETRY_ONCE)

    @classmethod
    def bounce_to(cls, index: int) -> "FailurePolicy":
        return cls(FailureAction.BOUNCE_TO, index)

    @classmethod
    def stop(cls) -> "FailurePolicy":
        return cls(FailureAction.STOP)

    def describe(self) -> str:
        if self.action is FailureAction.BOUNCE_TO:
            return f"bounce_to({self.target})"
        return self.action.value


@dataclass(frozen=True)
class StepSpec:
    index: int
    name: str
    executor_ref: str
    gate: GateType = GateType.APPROVAL
    on_fail: FailurePolicy = field(default_factory=FailurePolicy)
    deliverables: tuple[str, ...] = ()
    check: str | None = None
    check_timeout_seconds: int = 600
    when: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.index, bool) or not isinstance(self.index, int):
            raise TypeError(f"Step index must be an int (type={type(self.index).__name__})")
        if self.index < 1:
            raise ValueError(f"Step index must be >= 1 (got {self.index})")

        if not isinstance(self.name, str):
            raise TypeError(f"Step name must be a string (type={type(self.name).__name__})")
        name = self.name.strip()
        if not name:
            raise ValueError(f"Step {self.index} name cannot be empty")
        if "/" in name or "\\" in name:
            raise ValueError(f"Step name cannot contain path separators: {name!r}")
        object.__setattr__(self, "name", name)

        if not isinstance(self.executor_ref, str) or not self.executor_ref.strip():
            raise ValueError(f"Step {name} executor_ref must be a non-empty string")
        object.__setattr__(self, "executor_ref", self.executor_ref.strip())

        if not isinstance(self.gate, GateType):
            object.__setattr__(self, "gate", GateType(self.gate))

        if self.deliverables:
            cleaned = tuple(str(item).strip() for item in self.deliverables)
            if any(not item for item in cleaned):
                raise ValueError(f"Step {name} deliverables cannot contain empty paths")
            object.__setattr__(self, "deliverables", cleaned)

        if self.check is not None:
            check = str(self.check).strip()
            object.__setattr__(self, "check", check or None)
        if self.check_timeout_seconds <= 0:
            raise ValueError(f"Step {name} check_timeout_seconds must be > 0")

        if self.when is not None:
            when = str(self.when).strip()
            object.__setattr__(self, "when", when or None)

    @property
    def state_key(self) -> str:
        return step_state_key(self.index, self.name)

    @property
    def key_prefix(self) -> str:
        return step_key_prefix(self.index)


PIPELINE_STATE_KEY = "00-pipeline"


def step_key_prefix(index: int) -> str:
    return f"{index:02d}-"


def step_state_key(index: int, name: str, suffix: str | None = None) -> str:
    key = f"{step_key_prefix(index)}{name}"
    if suffix:
        key = f"{key}-{suffix}"
    return key


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    steps: tuple[StepSpec, ...]

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("Pipeline name must be a non-empty string")
        object.__setattr__(self, "name", self.name.strip())
        object.__setattr__(self, "steps", tuple(self.steps))

        if not self.steps:
            raise ValueError(f"Pipeline {self.name} defines no steps")

        for expected, step in enumerate(self.steps, start=1):
            if not isinstance(step, StepSpec):
                raise TypeError(f"Pipeline steps must be StepSpec (type={type(step).__name__})")
            if step.index != expected:
                raise ValueError(
                    f"Step indices must be contiguous from 1: expected {expected}, "
                    f"got {step.index} ({step.name})"
                )

        for step in self.steps:
            policy = step.on_fail
            if policy.action is not FailureAction.BOUNCE_TO:
                continue
            if policy.target is None:
                raise ValueError(f"Step {step.index} ({step.name}) bounce_to policy has no target")
            if policy.target >= step.index:
                raise ValueError(
                    f"Step {step.index} ({step.name}) bounce_to target must be an earlier step "
                    f"(got {policy.target})"
                )
            target = self.steps[policy.target - 1]
            if target.on_fail.action is FailureAction.BOUNCE_TO:
                raise InvalidState(
                    f"Chained bounce is unsupported: step {step.index} ({step.name}) bounces to "
                    f"step {target.index} ({target.name}) which itself bounces to "
                    f"{target.on_fail.target}"
                )

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def step(self, index: int) -> StepSpec:
        if not 1 <= index <= len(self.steps):
            raise IndexError(f"Step index out of range: {index} (1..{len(self.steps)})")
        return self.steps[index - 1]

    def names(self) -> tuple[str, ...]:
        return tuple(step.name for step in self.steps)
