from __future__ import annotations

import logging
import os
import shutil
from typing import Union

from .definition import PipelineDefinition
from .errors import UnknownStep
from .gates import is_inside
from .state import PipelineState, RunStatus
from .store import StateStore

RevertTarget = Union[int, str]


class RevertManager:
    """Resolves revert targets and purges state and deliverables downstream of them."""

    def __init__(
        self,
        definition: PipelineDefinition,
        store: StateStore,
        *,
        deliverables_dir: str | os.PathLike[str],
        logger: logging.Logger | None = None,
    ):
        self._definition = definition
        self._store = store
        self._deliverables_dir = deliverables_dir
        self._logger = logger or logging.getLogger(__name__)

    def resolve(self, target: RevertTarget) -> int:
        """Map a step index or a case-sensitive step name to an index.

        Strings made only of digits are read as indexes, so `"2"` and `2` agree.
        """

        if isinstance(target, bool):
            raise UnknownStep(f"Unknown step: {target!r}")
        if isinstance(target, int):
            return self._resolve_index(target)
        if not isinstance(target, str):
            raise UnknownStep(f"Unknown step: {target!r}")

        text = target.strip()
        if text.isdigit():
            return self._resolve_index(int(text))

        matches = [step.index for step in self._definition.steps if step.name == text]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            raise UnknownStep(
                f"Ambiguous step name: {target!r} (matches indexes: "
                f"{', '.join(str(i) for i in matches)})"
            )
        available = ", ".join(self._definition.names()) or "<none>"
        raise UnknownStep(f"Unknown step: {target!r} (available: {available})")

    def _resolve_index(self, index: int) -> int:
        count = self._definition.step_count
        if 1 <= index <= count:
            return index
        raise UnknownStep(f"Unknown step index: {index} (1..{count})")

    def apply(self, state: PipelineState, index: int) -> list[str]:
        """Clear records >= index, delete their state and deliverables; return removed paths."""

        self._resolve_index(index)
        removed_paths: list[str] = []
        for record in state.steps:
            if record.index < index:
                continue
            removed_keys = self._store.delete_with_prefix(f"{record.index:02d}-")
            for key in removed_keys:
                self._logger.debug("Deleted state record %s", key)
            for path in record.deliverables:
                if remove_deliverable(self._deliverables_dir, path, logger=self._logger):
                    removed_paths.append(path)
            record.clear()

        state.current_step_index = index
        state.status = RunStatus.RUNNING
        state.paused_step_index = None
        state.pause_reason = None
        state.failure = None
        self._logger.info(
            "Reverted to step %d (%s); removed deliverables=%d",
            index,
            self._definition.step(index).name,
            len(removed_paths),
        )
        return removed_paths


def remove_deliverable(
    deliverables_dir: str | os.PathLike[str],
    path: str,
    *,
    logger: logging.Logger | None = None,
) -> bool:
    if not is_inside(deliverables_dir, path):
        (logger or logging.getLogger(__name__)).warning(
            "Refusing to remove %s: not inside %s", path, deliverables_dir
        )
        return False
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
        return True
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    return True
