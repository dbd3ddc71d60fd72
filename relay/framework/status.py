from __future__ import annotations

import os

import pandas as pd

from relaykit import PipelineDefinition, PipelineState, RunState

STATUS_COLUMNS: list[str] = [
    "index",
    "name",
    "gate",
    "on_fail",
    "decision",
    "completed_at",
    "running_since",
    "deliverables",
    "revisions",
    "errors",
]

RETRY_COLUMNS: list[str] = ["step_index", "attempt", "outcome", "target_index", "reason", "created_at"]


def status_frame(definition: PipelineDefinition, state: PipelineState | None) -> pd.DataFrame:
    rows: list[dict[str, object]] = []
    for step in definition.steps:
        record = state.record(step.index) if state is not None else None
        rows.append(
            {
                "index": step.index,
                "name": step.name,
                "gate": step.gate.value,
                "on_fail": step.on_fail.describe(),
                "decision": (
                    record.decision.value
                    if record is not None and record.decision is not None
                    else ""
                ),
                "completed_at": (record.completed_at if record is not None else None) or "",
                "running_since": (record.running_since if record is not None else None) or "",
                "deliverables": len(record.deliverables) if record is not None else 0,
                "revisions": record.revisions if record is not None else 0,
                "errors": len(record.errors) if record is not None else 0,
            }
        )
    return pd.DataFrame(rows, columns=STATUS_COLUMNS)


def retry_frame(state: PipelineState | None) -> pd.DataFrame:
    rows: list[dict[str, object]] = []
    for entry in state.retry_log if state is not None else []:
        row = entry.to_dict()
        if row["target_index"] is None:
            row["target_index"] = ""
        rows.append(row)
    return pd.DataFrame(rows, columns=RETRY_COLUMNS)


def render_status(
    definition: PipelineDefinition, state: PipelineState | None, run_state: RunState | None
) -> str:
    lines = [f"Pipeline: {definition.name}"]
    if state is None:
        lines.append("State: no state recorded")
    else:
        lines.append(f"State: {run_state.describe() if run_state is not None else state.status.value}")
        lines.append(f"Started: {state.started_at}  Updated: {state.updated_at or '-'}")
        if state.failure:
            for error in state.failure.get("errors") or []:
                lines.append(f"  error: {error}")
    lines.append("")
    lines.append(status_frame(definition, state).to_string(index=False))

    retries = retry_frame(state)
    if not retries.empty:
        lines.append("")
        lines.append("Retry log:")
        lines.append(retries.to_string(index=False))
    return "\n".join(lines)


def write_status_csv(path: str, definition: PipelineDefinition, state: PipelineState | None) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    status_frame(definition, state).to_csv(path, index=False, encoding="utf-8")
