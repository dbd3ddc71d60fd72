"""Control loop that drives a pipeline definition against durable state.

The pipeline record is owned by this module: every mutation of `PipelineState`
happens inside an `Orchestrator` method and is persisted before the method
returns or hands control to an executor.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Union

from .definition import PIPELINE_STATE_KEY, GateType, PipelineDefinition, StepSpec
from .errors import ExecutorFailure, InvalidState, ValidationFailure
from .executor import ExecutionResult, StepContext, StepExecutor
from .gates import GateEngine, ValidationOutcome, collect_deliverables
from .recorder import DefaultStepRecorder, StepRecorder, validate_recorder
from .retry import RetryCoordinator, RetryKind
from .revert import RevertManager, RevertTarget, remove_deliverable
from .state import (
    PAUSE_AWAITING_APPROVAL,
    Decision,
    PipelineState,
    RunState,
    RunStatus,
    utc_now_iso8601,
)
from .store import StateStore

_FALSY_PARAMETER_VALUES = frozenset({"", "0", "false", "no", "off"})


@dataclass(frozen=True)
class Approve:
    pass


@dataclass(frozen=True)
class Revise:
    feedback: str

    def __post_init__(self) -> None:
        if not isinstance(self.feedback, str) or not self.feedback.strip():
            raise ValueError("Revise feedback must be a non-empty string")
        object.__setattr__(self, "feedback", self.feedback.strip())


@dataclass(frozen=True)
class Revert:
    target: RevertTarget


@dataclass(frozen=True)
class Stop:
    pass


ControlDecision = Union[Approve, Revise, Revert, Stop]

ExecutorLookup = Callable[[str], StepExecutor]


def _executor_lookup(
    executors: Mapping[str, StepExecutor] | ExecutorLookup | Any,
) -> ExecutorLookup:
    if isinstance(executors, Mapping):
        table = dict(executors)

        def lookup(ref: str) -> StepExecutor:
            try:
                return table[ref]
            except KeyError:
                available = ", ".join(sorted(table)) or "<none>"
                raise ValueError(f"Unknown executor ref: {ref} (available: {available})") from None

        return lookup
    resolve = getattr(executors, "resolve", None)
    if callable(resolve):
        return resolve
    if callable(executors):
        return executors
    raise TypeError(
        f"executors must be a mapping, a registry, or a callable (type={type(executors).__name__})"
    )


class Orchestrator:
    def __init__(
        self,
        definition: PipelineDefinition,
        store: StateStore,
        executors: Mapping[str, StepExecutor] | ExecutorLookup | Any,
        *,
        deliverables_dir: str | os.PathLike[str],
        parameters: Mapping[str, str] | None = None,
        logger: logging.Logger | None = None,
        recorder: StepRecorder | None = None,
    ):
        self.definition = definition
        self.store = store
        self.deliverables_dir = Path(deliverables_dir)
        self.parameters = {str(k): str(v) for k, v in (parameters or {}).items()}
        self.logger = logger or logging.getLogger(__name__)
        self._recorder = recorder or DefaultStepRecorder()
        validate_recorder(self._recorder)

        self._lookup = _executor_lookup(executors)
        self._executors: dict[str, StepExecutor] = {}
        for step in definition.steps:
            if step.executor_ref not in self._executors:
                self._executors[step.executor_ref] = self._lookup(step.executor_ref)

        self.gates = GateEngine(store, self.deliverables_dir)
        self.retry = RetryCoordinator(logger=self.logger)
        self.revert = RevertManager(
            definition, store, deliverables_dir=self.deliverables_dir, logger=self.logger
        )

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    def load_state(self) -> PipelineState | None:
        payload = self.store.read(PIPELINE_STATE_KEY)
        if payload is None:
            return None
        state = PipelineState.from_dict(payload)
        self._check_matches_definition(state)
        return state

    def _check_matches_definition(self, state: PipelineState) -> None:
        if state.pipeline != self.definition.name:
            raise InvalidState(
                f"Stored state belongs to pipeline {state.pipeline!r}, not "
                f"{self.definition.name!r}; reset state first"
            )
        stored = tuple(record.name for record in state.steps)
        if stored != self.definition.names():
            raise InvalidState(
                "Stored step records do not match the pipeline definition "
                f"(stored: {', '.join(stored) or '<none>'}; "
                f"defined: {', '.join(self.definition.names())}); reset state first"
            )

    def _persist(self, state: PipelineState) -> None:
        state.updated_at = utc_now_iso8601()
        self.store.write(PIPELINE_STATE_KEY, state.to_dict())

    def _load_or_create(self) -> PipelineState:
        state = self.load_state()
        if state is not None:
            return state
        state = PipelineState.fresh(self.definition, self.parameters)
        self._persist(state)
        self.logger.info(
            "Created pipeline state for %s (%d steps)", self.definition.name, self.definition.step_count
        )
        return state

    # ------------------------------------------------------------------
    # Public control surface
    # ------------------------------------------------------------------

    def resume(self) -> RunState:
        state = self._load_or_create()
        if state.status in (RunStatus.PAUSED, RunStatus.COMPLETED, RunStatus.FAILED):
            return state.run_state()
        if self._normalize(state):
            self._persist(state)
        return state.run_state()

    def advance(self) -> RunState:
        state = self._load_or_create()
        if state.status is RunStatus.PAUSED:
            raise InvalidState(
                f"Pipeline is paused at step {state.paused_step_index}; apply a decision first"
            )
        if state.status in (RunStatus.COMPLETED, RunStatus.FAILED):
            return state.run_state()
        if self._normalize(state):
            self._persist(state)
        if state.status is RunStatus.COMPLETED:
            return state.run_state()
        return self._drive(state)

    def run(self) -> RunState:
        outcome = self.resume()
        while outcome.status in (RunStatus.NOT_STARTED, RunStatus.RUNNING):
            outcome = self.advance()
        return outcome

    def apply_decision(self, decision: ControlDecision) -> RunState:
        state = self.load_state()
        if state is None:
            raise InvalidState("No pipeline state exists; resume the pipeline first")

        if isinstance(decision, Revert):
            return self._apply_revert(state, decision.target)

        if state.status is not RunStatus.PAUSED:
            raise InvalidState(
                f"Decisions are only accepted while paused (status={state.status.value})"
            )
        index = state.paused_step_index
        if index is None:
            raise InvalidState("Paused state has no paused step index")
        step = self.definition.step(index)

        if isinstance(decision, Stop):
            self.logger.info("Stop requested while paused at step %d (%s)", index, step.name)
            return state.run_state()
        if isinstance(decision, Approve):
            return self._apply_approve(state, step)
        if isinstance(decision, Revise):
            return self._apply_revise(state, step, decision.feedback)
        raise TypeError(f"Unsupported decision type: {type(decision).__name__}")

    def reset_state(self) -> list[str]:
        removed = self.store.delete_with_prefix("")
        self.logger.info("Reset state: removed records=%d", len(removed))
        return removed

    def reset_all(self) -> list[str]:
        state = self.load_state()
        paths: list[str] = []
        if state is not None:
            for record in state.steps:
                paths.extend(record.deliverables)
        self.reset_state()
        removed: list[str] = []
        for path in paths:
            if remove_deliverable(self.deliverables_dir, path, logger=self.logger):
                removed.append(path)
        self.logger.info("Reset all: removed deliverables=%d", len(removed))
        return removed

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _apply_approve(self, state: PipelineState, step: StepSpec) -> RunState:
        record = state.record(step.index)
        record.decision = Decision.REVISED if record.revisions else Decision.APPROVED
        record.feedback = None
        if record.completed_at is None:
            record.completed_at = utc_now_iso8601()
        self._clear_pause(state)
        self.logger.info(
            "Step %d (%s) %s", step.index, step.name, record.decision.value
        )
        self._advance_cursor(state, step.index)
        self._persist(state)
        if state.status is RunStatus.COMPLETED:
            return state.run_state()
        return self.run()

    def _apply_revise(self, state: PipelineState, step: StepSpec, feedback: str) -> RunState:
        record = state.record(step.index)
        self.logger.info("Revising step %d (%s)", step.index, step.name)
        record.revisions += 1
        record.feedback = feedback
        record.completed_at = None
        self._clear_pause(state)
        outcome = self._execute(state, step)
        if outcome is not None:
            return outcome
        return self.run()

    def _apply_revert(self, state: PipelineState, target: RevertTarget) -> RunState:
        if state.status is RunStatus.PAUSED:
            limit = state.paused_step_index
        elif state.status is RunStatus.FAILED:
            limit = (state.failure or {}).get("step_index")
        else:
            raise InvalidState(
                f"Revert is only accepted while paused or failed (status={state.status.value})"
            )

        index = self.revert.resolve(target)
        if limit is not None and index > int(limit):
            raise InvalidState(
                f"Cannot revert forward: target step {index} is after the current step {limit}"
            )
        self.revert.apply(state, index)
        self._persist(state)
        return self.run()

    # ------------------------------------------------------------------
    # Loop internals
    # ------------------------------------------------------------------

    def _normalize(self, state: PipelineState) -> bool:
        """Drop stale running markers and place the cursor; True if anything changed."""
        changed = False
        for record in state.steps:
            if record.is_marked_running:
                self.logger.warning(
                    "Step %d (%s) was marked running since %s with no decision; will re-invoke",
                    record.index,
                    record.name,
                    record.running_since,
                )
                record.decision = None
                record.running_since = None
                changed = True

        cursor = state.first_unresolved_index()
        if cursor is None:
            if state.status is not RunStatus.COMPLETED:
                state.status = RunStatus.COMPLETED
                changed = True
        elif cursor != state.current_step_index:
            state.current_step_index = cursor
            changed = True
        return changed

    def _drive(self, state: PipelineState) -> RunState:
        while True:
            step = self.definition.step(state.current_step_index)
            if self._should_skip(state, step):
                self._skip(state, step)
            else:
                outcome = self._execute(state, step)
                if outcome is not None:
                    return outcome
            if state.status is RunStatus.COMPLETED:
                return state.run_state()

    def _should_skip(self, state: PipelineState, step: StepSpec) -> bool:
        if step.when is None:
            return False
        value = state.parameters.get(step.when, "")
        return value.strip().lower() in _FALSY_PARAMETER_VALUES

    def _skip(self, state: PipelineState, step: StepSpec) -> None:
        record = state.record(step.index)
        record.decision = Decision.SKIPPED
        record.completed_at = utc_now_iso8601()
        state.status = RunStatus.RUNNING
        self.logger.info(
            "Skipping step %d (%s): parameter %s is not set", step.index, step.name, step.when
        )
        self._advance_cursor(state, step.index)
        self._persist(state)

    def _advance_cursor(self, state: PipelineState, index: int) -> None:
        if index >= self.definition.step_count:
            state.status = RunStatus.COMPLETED
            state.current_step_index = self.definition.step_count
            self.logger.info("Pipeline %s completed", self.definition.name)
            return
        state.status = RunStatus.RUNNING
        state.current_step_index = index + 1

    def _clear_pause(self, state: PipelineState) -> None:
        state.status = RunStatus.RUNNING
        state.paused_step_index = None
        state.pause_reason = None

    def _build_context(self, state: PipelineState, step: StepSpec) -> StepContext:
        prior: dict[str, list[str]] = {}
        for record in state.steps:
            if record.index >= step.index:
                break
            if record.has_terminal_decision and record.deliverables:
                prior[record.name] = list(record.deliverables)
        last_failure = self.retry.last_pending(state)
        return StepContext(
            step=step,
            store=self.store,
            deliverables_dir=self.deliverables_dir,
            parameters=dict(state.parameters),
            prior_deliverables=prior,
            feedback=state.record(step.index).feedback,
            failure_reason=last_failure.reason if last_failure is not None else None,
        )

    def _invoke(self, step: StepSpec, context: StepContext) -> ExecutionResult:
        result = self._executors[step.executor_ref].invoke(step, context)
        if isinstance(result, ExecutionResult):
            return result
        raise ExecutorFailure(
            f"Executor {step.executor_ref} returned {type(result).__name__}, expected ExecutionResult"
        )

    def _execute(self, state: PipelineState, step: StepSpec) -> RunState | None:
        """Run one step through the gate.

        Returns the run state when control goes back to the caller, or None when the
        loop should keep going (none-gated pass, retry, bounce).
        """

        record = state.record(step.index)
        record.decision = Decision.RUNNING
        record.running_since = utc_now_iso8601()
        record.errors = []
        state.status = RunStatus.RUNNING
        state.current_step_index = step.index
        self._persist(state)
        for key in self.store.delete_with_prefix(step.key_prefix):
            self.logger.debug("Cleared previous state record %s", key)

        context = self._build_context(state, step)
        self._recorder.on_step_start(
            self.logger,
            step,
            feedback=context.feedback,
            failure_reason=context.failure_reason,
        )

        result: ExecutionResult | None = None
        try:
            result = self._invoke(step, context)
            validation = self.gates.validate(step, result)
        except Exception as exc:
            self.logger.exception("Executor failed for step %d (%s)", step.index, step.name)
            try:
                self._recorder.on_step_error(self.logger, step, exc)
            except Exception:
                self.logger.exception("Step recorder failed during error handling for %s", step.name)
            validation = ValidationOutcome.from_errors([f"Executor failed: {exc}"])

        deliverables = collect_deliverables(self.deliverables_dir, step, result)
        record.running_since = None
        if validation.passed:
            record.deliverables = deliverables
            record.summary = result.summary if result is not None else None
            record.completed_at = utc_now_iso8601()
        else:
            # Keep tracking files from earlier attempts that are still on disk.
            kept = list(dict.fromkeys([*record.deliverables, *deliverables]))
            record.deliverables = [path for path in kept if os.path.exists(path)]
            record.errors = list(validation.errors)
        record.decision = None

        self._recorder.on_step_end(self.logger, step, record.to_dict())

        if not validation.passed:
            return self._handle_failure(state, step, list(validation.errors))

        self.retry.resolve(state, step.index)
        if step.gate is GateType.APPROVAL:
            state.status = RunStatus.PAUSED
            state.paused_step_index = step.index
            state.pause_reason = PAUSE_AWAITING_APPROVAL
            self._persist(state)
            self.logger.info("Awaiting approval for step %d (%s)", step.index, step.name)
            return state.run_state()

        record.decision = Decision.AUTO
        self._advance_cursor(state, step.index)
        self._persist(state)
        if state.status is RunStatus.COMPLETED:
            return state.run_state()
        if step.gate is GateType.AUTO:
            return state.run_state()
        return None

    def _handle_failure(self, state: PipelineState, step: StepSpec, errors: list[str]) -> RunState | None:
        action = self.retry.handle_failure(state, step, errors)
        if action.kind is RetryKind.STOP:
            state.status = RunStatus.FAILED
            state.failure = {
                "step_index": step.index,
                "step_name": step.name,
                "reason": action.reason,
                "errors": list(errors),
                "failed_at": utc_now_iso8601(),
            }
            self._persist(state)
            self.logger.error(
                "Pipeline failed (%s): %s", step.name, ValidationFailure(step.index, errors)
            )
            return state.run_state()

        # retry_same keeps the cursor; bounce_to already moved it.
        self._persist(state)
        return None
