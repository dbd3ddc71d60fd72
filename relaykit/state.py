"""Persisted orchestration state: pipeline record, step records, retry log."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from .definition import PipelineDefinition

STATE_VERSION = 1


def utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class RunStatus(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class Decision(str, Enum):
    RUNNING = "running"
    APPROVED = "approved"
    AUTO = "auto"
    REVISED = "revised"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self is not Decision.RUNNING


class RetryOutcome(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


PAUSE_AWAITING_APPROVAL = "awaiting_approval"


@dataclass(frozen=True)
class RunState:
    """Snapshot of where the run stands, returned by every control operation."""

    status: RunStatus
    step_index: int | None = None
    reason: str | None = None

    def describe(self) -> str:
        if self.status is RunStatus.PAUSED:
            return f"paused ({self.reason or PAUSE_AWAITING_APPROVAL}) at step {self.step_index}"
        if self.status is RunStatus.FAILED:
            return f"failed at step {self.step_index}: {self.reason}"
        if self.status is RunStatus.RUNNING:
            return f"running at step {self.step_index}"
        return self.status.value


@dataclass
class StepRecord:
    index: int
    name: str
    decision: Decision | None = None
    completed_at: str | None = None
    running_since: str | None = None
    deliverables: list[str] = field(default_factory=list)
    revisions: int = 0
    summary: str | None = None
    errors: list[str] = field(default_factory=list)
    feedback: str | None = None

    @property
    def has_terminal_decision(self) -> bool:
        return self.decision is not None and self.decision.is_terminal

    @property
    def is_marked_running(self) -> bool:
        return self.decision is Decision.RUNNING

    def clear(self) -> None:
        self.decision = None
        self.completed_at = None
        self.running_since = None
        self.deliverables = []
        self.revisions = 0
        self.summary = None
        self.errors = []
        self.feedback = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name,
            "decision": self.decision.value if self.decision is not None else None,
            "completed_at": self.completed_at,
            "running_since": self.running_since,
            "deliverables": list(self.deliverables),
            "revisions": self.revisions,
            "summary": self.summary,
            "errors": list(self.errors),
            "feedback": self.feedback,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StepRecord":
        raw_decision = data.get("decision")
        return cls(
            index=int(data["index"]),
            name=str(data.get("name", "")),
            decision=Decision(raw_decision) if raw_decision else None,
            completed_at=data.get("completed_at"),
            running_since=data.get("running_since"),
            deliverables=[str(item) for item in data.get("deliverables") or []],
            revisions=int(data.get("revisions") or 0),
            summary=data.get("summary"),
            errors=[str(item) for item in data.get("errors") or []],
            feedback=data.get("feedback"),
        )


@dataclass
class RetryEntry:
    step_index: int
    attempt: int
    reason: str
    outcome: RetryOutcome = RetryOutcome.PENDING
    target_index: int | None = None
    created_at: str = field(default_factory=utc_now_iso8601)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_index": self.step_index,
            "attempt": self.attempt,
            "reason": self.reason,
            "outcome": self.outcome.value,
            "target_index": self.target_index,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RetryEntry":
        target = data.get("target_index")
        return cls(
            step_index=int(data["step_index"]),
            attempt=int(data["attempt"]),
            reason=str(data.get("reason", "")),
            outcome=RetryOutcome(data.get("outcome", RetryOutcome.PENDING.value)),
            target_index=int(target) if target is not None else None,
            created_at=str(data.get("created_at") or ""),
        )


@dataclass
class PipelineState:
    pipeline: str
    started_at: str
    status: RunStatus = RunStatus.NOT_STARTED
    current_step_index: int = 1
    paused_step_index: int | None = None
    pause_reason: str | None = None
    failure: dict[str, Any] | None = None
    parameters: dict[str, str] = field(default_factory=dict)
    steps: list[StepRecord] = field(default_factory=list)
    retry_log: list[RetryEntry] = field(default_factory=list)
    updated_at: str | None = None

    @classmethod
    def fresh(
        cls, definition: PipelineDefinition, parameters: Mapping[str, str] | None = None
    ) -> "PipelineState":
        now = utc_now_iso8601()
        return cls(
            pipeline=definition.name,
            started_at=now,
            updated_at=now,
            parameters={str(k): str(v) for k, v in (parameters or {}).items()},
            steps=[StepRecord(index=step.index, name=step.name) for step in definition.steps],
        )

    def record(self, index: int) -> StepRecord:
        if not 1 <= index <= len(self.steps):
            raise IndexError(f"Step record out of range: {index} (1..{len(self.steps)})")
        return self.steps[index - 1]

    def first_unresolved_index(self) -> int | None:
        for record in self.steps:
            if not record.has_terminal_decision:
                return record.index
        return None

    def run_state(self) -> RunState:
        if self.status is RunStatus.PAUSED:
            return RunState(RunStatus.PAUSED, self.paused_step_index, self.pause_reason)
        if self.status is RunStatus.FAILED:
            failure = self.failure or {}
            return RunState(RunStatus.FAILED, failure.get("step_index"), failure.get("reason"))
        if self.status is RunStatus.COMPLETED:
            return RunState(RunStatus.COMPLETED)
        return RunState(self.status, self.current_step_index)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "version": STATE_VERSION,
            "pipeline": self.pipeline,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "status": self.status.value,
            "current_step_index": self.current_step_index,
            "paused_step_index": self.paused_step_index,
            "pause_reason": self.pause_reason,
            "failure": dict(self.failure) if self.failure is not None else None,
            "parameters": dict(self.parameters),
            "steps": [record.to_dict() for record in self.steps],
        }
        if self.retry_log:
            payload["retry_log"] = [entry.to_dict() for entry in self.retry_log]
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PipelineState":
        version = data.get("version", STATE_VERSION)
        if version != STATE_VERSION:
            raise ValueError(f"Unsupported pipeline state version: {version!r}")
        paused = data.get("paused_step_index")
        failure = data.get("failure")
        return cls(
            pipeline=str(data.get("pipeline", "")),
            started_at=str(data.get("started_at", "")),
            updated_at=data.get("updated_at"),
            status=RunStatus(data.get("status", RunStatus.NOT_STARTED.value)),
            current_step_index=int(data.get("current_step_index", 1)),
            paused_step_index=int(paused) if paused is not None else None,
            pause_reason=data.get("pause_reason"),
            failure=dict(failure) if isinstance(failure, Mapping) else None,
            parameters={str(k): str(v) for k, v in (data.get("parameters") or {}).items()},
            steps=[StepRecord.from_dict(item) for item in data.get("steps") or []],
            retry_log=[RetryEntry.from_dict(item) for item in data.get("retry_log") or []],
        )
