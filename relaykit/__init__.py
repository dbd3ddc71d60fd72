"""Resumable, gated pipeline kernel.

This package is intentionally independent of `relay.*`. Configuration formats,
concrete executors, logging setup and reporting live in the consuming application.
"""

from relaykit.definition import (
    PIPELINE_STATE_KEY,
    FailureAction,
    FailurePolicy,
    GateType,
    PipelineDefinition,
    StepSpec,
    step_key_prefix,
    step_state_key,
)
from relaykit.errors import (
    ExecutorFailure,
    Halted,
    InvalidState,
    RelayError,
    UnknownStep,
    ValidationFailure,
)
from relaykit.executor import ExecutionResult, StepContext, StepExecutor
from relaykit.gates import GateEngine, ValidationOutcome
from relaykit.orchestrator import (
    Approve,
    ControlDecision,
    Orchestrator,
    Revert,
    Revise,
    Stop,
)
from relaykit.recorder import DefaultStepRecorder, NullStepRecorder, StepRecorder
from relaykit.registry import ExecutorRef, ExecutorRegistry
from relaykit.retry import RetryAction, RetryCoordinator, RetryKind
from relaykit.revert import RevertManager, RevertTarget
from relaykit.state import (
    Decision,
    PipelineState,
    RetryEntry,
    RetryOutcome,
    RunState,
    RunStatus,
    StepRecord,
    utc_now_iso8601,
)
from relaykit.store import FileStateStore, MemoryStateStore, StateStore

__all__ = [
    "PIPELINE_STATE_KEY",
    "Approve",
    "ControlDecision",
    "Decision",
    "DefaultStepRecorder",
    "ExecutionResult",
    "ExecutorFailure",
    "ExecutorRef",
    "ExecutorRegistry",
    "FailureAction",
    "FailurePolicy",
    "FileStateStore",
    "GateEngine",
    "GateType",
    "Halted",
    "InvalidState",
    "MemoryStateStore",
    "NullStepRecorder",
    "Orchestrator",
    "PipelineDefinition",
    "PipelineState",
    "RelayError",
    "RetryAction",
    "RetryCoordinator",
    "RetryEntry",
    "RetryKind",
    "RetryOutcome",
    "Revert",
    "RevertManager",
    "RevertTarget",
    "Revise",
    "RunState",
    "RunStatus",
    "StateStore",
    "StepContext",
    "StepExecutor",
    "StepRecord",
    "StepRecorder",
    "StepSpec",
    "Stop",
    "UnknownStep",
    "ValidationFailure",
    "ValidationOutcome",
    "step_key_prefix",
    "step_state_key",
    "utc_now_iso8601",
]
