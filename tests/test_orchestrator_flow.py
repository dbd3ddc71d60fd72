import logging

import pytest

from relaykit import (
    PIPELINE_STATE_KEY,
    Approve,
    Decision,
    ExecutionResult,
    FailurePolicy,
    GateType,
    InvalidState,
    MemoryStateStore,
    NullStepRecorder,
    Orchestrator,
    PipelineDefinition,
    Revise,
    RunState,
    RunStatus,
    StepSpec,
    Stop,
)


class ScriptedExecutor:
    """Writes its state record and deliverables unless the next scripted call fails."""

    def __init__(self, failures=()):
        self.failures = list(failures)
        self.calls = []

    def invoke(self, step, context):
        fail = self.failures.pop(0) if self.failures else False
        self.calls.append(
            {
                "index": step.index,
                "feedback": context.feedback,
                "failure_reason": context.failure_reason,
                "prior": dict(context.prior_deliverables),
                "parameters": dict(context.parameters),
            }
        )
        if fail:
            return ExecutionResult(state_artifacts_present=False, summary="failed")
        context.write_state({"step": step.name})
        for rel in step.deliverables:
            path = context.deliverable_path(rel)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(step.name, encoding="utf-8")
        return ExecutionResult(state_artifacts_present=True, summary=f"ran {step.name}")


def _logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger


def _step(index, gate, on_fail=None, **kwargs) -> StepSpec:
    return StepSpec(
        index=index,
        name=f"s{index}",
        executor_ref=f"e{index}",
        gate=gate,
        on_fail=on_fail or FailurePolicy.stop(),
        **kwargs,
    )


def _build(tmp_path, steps, executors=None, *, store=None, parameters=None):
    definition = PipelineDefinition(name="demo", steps=tuple(steps))
    executors = executors or {}
    for step in definition.steps:
        executors.setdefault(step.executor_ref, ScriptedExecutor())
    orchestrator = Orchestrator(
        definition,
        store if store is not None else MemoryStateStore(),
        executors,
        deliverables_dir=tmp_path / "deliverables",
        parameters=parameters,
        logger=_logger("test.orchestrator"),
        recorder=NullStepRecorder(),
    )
    return orchestrator, executors


def test_resume_on_empty_store_creates_unset_records(tmp_path):
    orchestrator, executors = _build(
        tmp_path, [_step(1, GateType.APPROVAL), _step(2, GateType.AUTO)]
    )

    outcome = orchestrator.resume()

    assert outcome == RunState(RunStatus.NOT_STARTED, 1)
    state = orchestrator.load_state()
    assert state is not None
    assert state.current_step_index == 1
    assert [r.decision for r in state.steps] == [None, None]
    assert all(r.completed_at is None and r.running_since is None for r in state.steps)
    assert state.retry_log == []
    assert executors["e1"].calls == []


def test_resume_twice_is_idempotent(tmp_path):
    orchestrator, _ = _build(tmp_path, [_step(1, GateType.APPROVAL), _step(2, GateType.AUTO)])

    orchestrator.resume()
    first = orchestrator.store.read(PIPELINE_STATE_KEY)
    orchestrator.resume()
    second = orchestrator.store.read(PIPELINE_STATE_KEY)
    assert first == second

    orchestrator.run()
    paused = orchestrator.store.read(PIPELINE_STATE_KEY)
    assert orchestrator.resume() == orchestrator.resume()
    assert orchestrator.store.read(PIPELINE_STATE_KEY) == paused


def test_approval_auto_none_scenario(tmp_path):
    orchestrator, executors = _build(
        tmp_path,
        [_step(1, GateType.APPROVAL), _step(2, GateType.AUTO), _step(3, GateType.NONE)],
    )

    outcome = orchestrator.run()
    assert outcome == RunState(RunStatus.PAUSED, 1, "awaiting_approval")
    state = orchestrator.load_state()
    assert state.current_step_index == 1
    assert state.record(1).decision is None
    assert state.record(1).completed_at is not None
    assert len(executors["e1"].calls) == 1
    assert executors["e2"].calls == []

    outcome = orchestrator.apply_decision(Approve())

    assert outcome.status is RunStatus.COMPLETED
    state = orchestrator.load_state()
    assert [r.decision for r in state.steps] == [Decision.APPROVED, Decision.AUTO, Decision.AUTO]
    assert len(executors["e2"].calls) == 1
    assert len(executors["e3"].calls) == 1


def test_auto_gate_advances_cursor_without_pausing(tmp_path):
    orchestrator, executors = _build(tmp_path, [_step(1, GateType.AUTO), _step(2, GateType.APPROVAL)])

    orchestrator.resume()
    outcome = orchestrator.advance()

    assert outcome == RunState(RunStatus.RUNNING, 2)
    state = orchestrator.load_state()
    assert state.current_step_index == 2
    assert state.record(1).decision is Decision.AUTO
    assert executors["e2"].calls == []

    outcome = orchestrator.advance()
    assert outcome == RunState(RunStatus.PAUSED, 2, "awaiting_approval")


def test_none_gate_chains_into_next_step(tmp_path):
    orchestrator, executors = _build(
        tmp_path,
        [_step(1, GateType.NONE), _step(2, GateType.NONE), _step(3, GateType.APPROVAL)],
    )

    outcome = orchestrator.advance()

    assert outcome == RunState(RunStatus.PAUSED, 3, "awaiting_approval")
    assert len(executors["e1"].calls) == 1
    assert len(executors["e2"].calls) == 1
    assert len(executors["e3"].calls) == 1


def test_decisions_rejected_unless_paused(tmp_path):
    orchestrator, _ = _build(tmp_path, [_step(1, GateType.AUTO)])

    with pytest.raises(InvalidState, match="No pipeline state"):
        orchestrator.apply_decision(Approve())

    orchestrator.resume()
    with pytest.raises(InvalidState, match="only accepted while paused"):
        orchestrator.apply_decision(Approve())

    assert orchestrator.run().status is RunStatus.COMPLETED
    with pytest.raises(InvalidState):
        orchestrator.apply_decision(Stop())


def test_advance_while_paused_raises(tmp_path):
    orchestrator, _ = _build(tmp_path, [_step(1, GateType.APPROVAL), _step(2, GateType.AUTO)])
    orchestrator.run()

    with pytest.raises(InvalidState, match="paused at step 1"):
        orchestrator.advance()


def test_stop_leaves_state_untouched(tmp_path):
    orchestrator, _ = _build(tmp_path, [_step(1, GateType.APPROVAL), _step(2, GateType.AUTO)])
    orchestrator.run()
    before = orchestrator.store.read(PIPELINE_STATE_KEY)

    outcome = orchestrator.apply_decision(Stop())

    assert outcome == RunState(RunStatus.PAUSED, 1, "awaiting_approval")
    assert orchestrator.store.read(PIPELINE_STATE_KEY) == before
    assert orchestrator.resume() == outcome


def test_revise_reinvokes_with_feedback_without_consuming_retry(tmp_path):
    orchestrator, executors = _build(
        tmp_path,
        [_step(1, GateType.APPROVAL, FailurePolicy.retry_once()), _step(2, GateType.AUTO)],
    )
    orchestrator.run()

    outcome = orchestrator.apply_decision(Revise("tighten the summary"))
    assert outcome == RunState(RunStatus.PAUSED, 1, "awaiting_approval")
    outcome = orchestrator.apply_decision(Revise("  shorter please "))
    assert outcome.status is RunStatus.PAUSED

    calls = executors["e1"].calls
    assert [c["feedback"] for c in calls] == [None, "tighten the summary", "shorter please"]
    state = orchestrator.load_state()
    assert state.record(1).revisions == 2
    assert state.retry_log == []

    outcome = orchestrator.apply_decision(Approve())
    assert outcome.status is RunStatus.COMPLETED
    assert orchestrator.load_state().record(1).decision is Decision.REVISED


def test_revise_requires_feedback():
    with pytest.raises(ValueError, match="feedback"):
        Revise("   ")


def test_prior_deliverables_and_parameters_reach_executor(tmp_path):
    orchestrator, executors = _build(
        tmp_path,
        [
            _step(1, GateType.AUTO, deliverables=("one.md",)),
            _step(2, GateType.AUTO, deliverables=("two.md",)),
        ],
        parameters={"topic": "widgets"},
    )

    assert orchestrator.run().status is RunStatus.COMPLETED

    second = executors["e2"].calls[0]
    assert second["prior"] == {"s1": [str(tmp_path / "deliverables" / "one.md")]}
    assert second["parameters"] == {"topic": "widgets"}
    state = orchestrator.load_state()
    assert state.record(2).deliverables == [str(tmp_path / "deliverables" / "two.md")]
    assert state.record(2).summary == "ran s2"


@pytest.mark.parametrize(
    ("value", "expected"),
    [("yes", Decision.AUTO), ("no", Decision.SKIPPED), ("", Decision.SKIPPED)],
)
def test_when_parameter_skips_step(tmp_path, value, expected):
    orchestrator, executors = _build(
        tmp_path,
        [_step(1, GateType.AUTO), _step(2, GateType.AUTO, when="publish"), _step(3, GateType.AUTO)],
        parameters={"publish": value},
    )

    assert orchestrator.run().status is RunStatus.COMPLETED

    state = orchestrator.load_state()
    assert state.record(2).decision is expected
    assert len(executors["e2"].calls) == (1 if expected is Decision.AUTO else 0)
    assert len(executors["e3"].calls) == 1


def test_state_from_other_definition_is_rejected(tmp_path):
    store = MemoryStateStore()
    first, _ = _build(tmp_path, [_step(1, GateType.AUTO)], store=store)
    first.resume()

    second, _ = _build(tmp_path, [_step(1, GateType.AUTO), _step(2, GateType.AUTO)], store=store)
    with pytest.raises(InvalidState, match="do not match"):
        second.resume()


def test_unknown_executor_ref_fails_at_construction(tmp_path):
    definition = PipelineDefinition(name="demo", steps=(_step(1, GateType.AUTO),))
    with pytest.raises(ValueError, match="Unknown executor ref: e1"):
        Orchestrator(
            definition,
            MemoryStateStore(),
            {"other": ScriptedExecutor()},
            deliverables_dir=tmp_path,
        )


def test_approved_feedback_does_not_reach_later_bounce(tmp_path):
    orchestrator, executors = _build(
        tmp_path,
        [_step(1, GateType.APPROVAL), _step(2, GateType.AUTO, FailurePolicy.bounce_to(1))],
        {"e2": ScriptedExecutor(failures=[True])},
    )
    orchestrator.run()
    orchestrator.apply_decision(Revise("add a changelog link"))

    outcome = orchestrator.apply_decision(Approve())

    assert outcome == RunState(RunStatus.PAUSED, 1, "awaiting_approval")
    calls = executors["e1"].calls
    assert [c["feedback"] for c in calls] == [None, "add a changelog link", None]
    assert calls[2]["failure_reason"]
    assert orchestrator.load_state().record(1).feedback is None
