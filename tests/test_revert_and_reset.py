import logging

import pytest

from relaykit import (
    PIPELINE_STATE_KEY,
    Approve,
    Decision,
    ExecutionResult,
    FailurePolicy,
    FileStateStore,
    GateType,
    InvalidState,
    MemoryStateStore,
    NullStepRecorder,
    Orchestrator,
    PipelineDefinition,
    Revert,
    RevertManager,
    Revise,
    RunState,
    RunStatus,
    StepSpec,
    UnknownStep,
)
from relaykit.revert import remove_deliverable


class WritingExecutor:
    def __init__(self, failures=()):
        self.failures = list(failures)
        self.calls = 0

    def invoke(self, step, context):
        self.calls += 1
        if self.failures and self.failures.pop(0):
            return ExecutionResult(state_artifacts_present=False)
        context.write_state({"step": step.name})
        context.write_state({"detail": True}, suffix="extra")
        for rel in step.deliverables:
            path = context.deliverable_path(rel)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(step.name, encoding="utf-8")
        return ExecutionResult(state_artifacts_present=True)


def _quiet_logger() -> logging.Logger:
    logger = logging.getLogger("test.revert")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


def _four_steps() -> PipelineDefinition:
    return PipelineDefinition(
        name="revert-demo",
        steps=(
            StepSpec(1, "outline", "e1", gate=GateType.AUTO, deliverables=("outline.md",)),
            StepSpec(2, "draft", "e2", gate=GateType.AUTO, deliverables=("draft.md",)),
            StepSpec(3, "edit", "e3", gate=GateType.AUTO, deliverables=("edit.md",)),
            StepSpec(4, "review", "e4", gate=GateType.APPROVAL, deliverables=("review.md",)),
        ),
    )


def _make_orchestrator(tmp_path, definition=None, *, store=None, executors=None):
    definition = definition or _four_steps()
    executors = executors or {}
    for step in definition.steps:
        executors.setdefault(step.executor_ref, WritingExecutor())
    orchestrator = Orchestrator(
        definition,
        store if store is not None else MemoryStateStore(),
        executors,
        deliverables_dir=tmp_path / "out",
        logger=_quiet_logger(),
        recorder=NullStepRecorder(),
    )
    return orchestrator, executors


def test_revert_manager_purges_only_downstream(tmp_path):
    orchestrator, _ = _make_orchestrator(tmp_path)
    assert orchestrator.run().status is RunStatus.PAUSED
    state = orchestrator.load_state()
    manager = RevertManager(
        orchestrator.definition,
        orchestrator.store,
        deliverables_dir=tmp_path / "out",
        logger=_quiet_logger(),
    )

    removed = manager.apply(state, 2)

    out = tmp_path / "out"
    assert sorted(removed) == sorted(str(out / name) for name in ("draft.md", "edit.md", "review.md"))
    assert (out / "outline.md").exists()
    assert not (out / "draft.md").exists()
    assert orchestrator.store.list() == [PIPELINE_STATE_KEY, "01-outline", "01-outline-extra"]
    assert state.record(1).decision is Decision.AUTO
    assert state.record(1).deliverables == [str(out / "outline.md")]
    for index in (2, 3, 4):
        record = state.record(index)
        assert record.decision is None
        assert record.completed_at is None
        assert record.deliverables == []
    assert state.current_step_index == 2
    assert state.status is RunStatus.RUNNING
    assert state.paused_step_index is None


def test_revert_by_name_reruns_downstream_steps(tmp_path):
    orchestrator, executors = _make_orchestrator(tmp_path)
    orchestrator.run()

    outcome = orchestrator.apply_decision(Revert("draft"))

    assert outcome == RunState(RunStatus.PAUSED, 4, "awaiting_approval")
    assert executors["e1"].calls == 1
    assert executors["e2"].calls == 2
    assert executors["e3"].calls == 2
    assert executors["e4"].calls == 2
    assert orchestrator.load_state().retry_log == []


def test_revert_accepts_index_and_digit_string(tmp_path):
    orchestrator, executors = _make_orchestrator(tmp_path)
    orchestrator.run()

    orchestrator.apply_decision(Revert(3))
    orchestrator.apply_decision(Revert("4"))

    assert executors["e3"].calls == 2
    assert executors["e4"].calls == 3


@pytest.mark.parametrize("target", ["nope", 0, 9, "Draft"])
def test_unknown_revert_target_leaves_state_untouched(tmp_path, target):
    orchestrator, _ = _make_orchestrator(tmp_path)
    orchestrator.run()
    before = orchestrator.store.read(PIPELINE_STATE_KEY)
    keys = orchestrator.store.list()

    with pytest.raises(UnknownStep):
        orchestrator.apply_decision(Revert(target))

    assert orchestrator.store.read(PIPELINE_STATE_KEY) == before
    assert orchestrator.store.list() == keys
    assert (tmp_path / "out" / "draft.md").exists()


def test_ambiguous_step_name_is_unknown_step(tmp_path):
    definition = PipelineDefinition(
        name="dupes",
        steps=(
            StepSpec(1, "pass", "e1", gate=GateType.AUTO),
            StepSpec(2, "pass", "e2", gate=GateType.APPROVAL),
        ),
    )
    orchestrator, _ = _make_orchestrator(tmp_path, definition)
    orchestrator.run()

    with pytest.raises(UnknownStep, match="Ambiguous"):
        orchestrator.apply_decision(Revert("pass"))


def test_revert_forward_or_when_completed_is_invalid(tmp_path):
    definition = PipelineDefinition(
        name="short",
        steps=(
            StepSpec(1, "a", "e1", gate=GateType.APPROVAL),
            StepSpec(2, "b", "e2", gate=GateType.AUTO),
        ),
    )
    orchestrator, _ = _make_orchestrator(tmp_path, definition)
    orchestrator.run()

    with pytest.raises(InvalidState, match="Cannot revert forward"):
        orchestrator.apply_decision(Revert(2))

    orchestrator.apply_decision(Revert(1))
    assert orchestrator.apply_decision(Approve()).status is RunStatus.COMPLETED
    with pytest.raises(InvalidState, match="paused or failed"):
        orchestrator.apply_decision(Revert(1))


def test_revert_recovers_failed_pipeline(tmp_path):
    definition = PipelineDefinition(
        name="fails",
        steps=(StepSpec(1, "only", "e1", gate=GateType.AUTO, on_fail=FailurePolicy.retry_once()),),
    )
    flaky = WritingExecutor(failures=[True, True])
    orchestrator, _ = _make_orchestrator(tmp_path, definition, executors={"e1": flaky})
    assert orchestrator.run().status is RunStatus.FAILED

    outcome = orchestrator.apply_decision(Revert("only"))

    assert outcome.status is RunStatus.COMPLETED
    state = orchestrator.load_state()
    assert state.failure is None
    assert len(state.retry_log) == 1
    assert flaky.calls == 3


def test_reset_state_keeps_deliverables(tmp_path):
    store = FileStateStore(tmp_path / "state")
    orchestrator, _ = _make_orchestrator(tmp_path, store=store)
    orchestrator.run()

    removed = orchestrator.reset_state()

    assert PIPELINE_STATE_KEY in removed
    assert store.list() == []
    assert (tmp_path / "out" / "outline.md").exists()
    assert (tmp_path / "out" / "review.md").exists()
    assert orchestrator.resume() == RunState(RunStatus.NOT_STARTED, 1)


def test_reset_all_removes_recorded_deliverables(tmp_path):
    store = FileStateStore(tmp_path / "state")
    orchestrator, _ = _make_orchestrator(tmp_path, store=store)
    orchestrator.run()
    (tmp_path / "out" / "unrelated.txt").write_text("keep", encoding="utf-8")

    removed = orchestrator.reset_all()

    assert len(removed) == 4
    assert store.list() == []
    assert not (tmp_path / "out" / "outline.md").exists()
    assert not (tmp_path / "out" / "review.md").exists()
    assert (tmp_path / "out" / "unrelated.txt").exists()


class RaisingOnReviseExecutor:
    """Writes the draft every time but blows up on every call after the first."""

    def __init__(self):
        self.calls = 0

    def invoke(self, step, context):
        self.calls += 1
        context.write_state({"step": step.name})
        path = context.deliverable_path("draft.md")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"attempt {self.calls}", encoding="utf-8")
        if self.calls > 1:
            raise RuntimeError("model went away")
        return ExecutionResult(state_artifacts_present=True)


def test_reset_all_removes_files_left_by_failed_attempt(tmp_path):
    definition = PipelineDefinition(
        name="draft-only",
        steps=(StepSpec(1, "draft", "e1", gate=GateType.APPROVAL, deliverables=("draft.md",)),),
    )
    store = FileStateStore(tmp_path / "state")
    orchestrator, _ = _make_orchestrator(
        tmp_path, definition, store=store, executors={"e1": RaisingOnReviseExecutor()}
    )
    assert orchestrator.run().status is RunStatus.PAUSED

    assert orchestrator.apply_decision(Revise("again")).status is RunStatus.FAILED

    draft = tmp_path / "out" / "draft.md"
    assert draft.read_text(encoding="utf-8") == "attempt 2"
    assert orchestrator.load_state().record(1).deliverables == [str(draft)]

    removed = orchestrator.reset_all()

    assert removed == [str(draft)]
    assert not draft.exists()


class EscapingExecutor:
    def invoke(self, step, context):
        context.write_state({"step": step.name})
        return ExecutionResult(state_artifacts_present=True, deliverable_artifacts=("../state",))


def test_deliverable_outside_output_dir_fails_and_survives_reset(tmp_path):
    definition = PipelineDefinition(
        name="escape", steps=(StepSpec(1, "sneaky", "e1", gate=GateType.AUTO),)
    )
    store = FileStateStore(tmp_path / "state")
    orchestrator, _ = _make_orchestrator(
        tmp_path, definition, store=store, executors={"e1": EscapingExecutor()}
    )
    (tmp_path / "out").mkdir()
    (tmp_path / "state").mkdir()
    sentinel = tmp_path / "state" / "keep.txt"
    sentinel.write_text("keep", encoding="utf-8")

    assert orchestrator.run().status is RunStatus.FAILED
    state = orchestrator.load_state()
    assert state.record(1).deliverables == []
    assert any("Deliverable outside" in error for error in state.record(1).errors)

    assert orchestrator.reset_all() == []
    assert sentinel.exists()


def test_reset_all_refuses_tampered_paths_outside_output_dir(tmp_path):
    store = FileStateStore(tmp_path / "state")
    orchestrator, _ = _make_orchestrator(tmp_path, store=store)
    orchestrator.run()
    precious = tmp_path / "precious"
    precious.mkdir()
    (precious / "data.txt").write_text("keep", encoding="utf-8")
    state = orchestrator.load_state()
    state.record(1).deliverables.extend([str(precious), str(tmp_path / "out")])
    store.write(PIPELINE_STATE_KEY, state.to_dict())

    removed = orchestrator.reset_all()

    assert str(precious) not in removed
    assert str(tmp_path / "out") not in removed
    assert (precious / "data.txt").exists()
    assert (tmp_path / "out").is_dir()
    assert not (tmp_path / "out" / "outline.md").exists()


def test_remove_deliverable_only_touches_paths_below_root(tmp_path):
    root = tmp_path / "out"
    (root / "nested").mkdir(parents=True)
    (root / "nested" / "a.md").write_text("a", encoding="utf-8")
    outside = tmp_path / "outside.md"
    outside.write_text("keep", encoding="utf-8")

    assert remove_deliverable(root, str(outside), logger=_quiet_logger()) is False
    assert remove_deliverable(root, str(root), logger=_quiet_logger()) is False
    assert remove_deliverable(root, str(root / "nested" / ".." / ".." / "outside.md")) is False
    assert outside.exists()

    assert remove_deliverable(root, str(root / "nested"), logger=_quiet_logger()) is True
    assert not (root / "nested").exists()
    assert remove_deliverable(root, str(root / "gone.md"), logger=_quiet_logger()) is False
