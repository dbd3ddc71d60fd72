from __future__ import annotations

import difflib
from dataclasses import dataclass
from typing import Iterable

from .executor import StepExecutor


@dataclass(frozen=True)
class ExecutorRef:
    id: str
    executor: StepExecutor
    doc: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise TypeError("ExecutorRef.id must be a non-empty string")
        object.__setattr__(self, "id", self.id.strip())
        invoke = getattr(self.executor, "invoke", None)
        if invoke is None or not callable(invoke):
            raise TypeError(
                f"Executor {self.id} must provide an invoke() method "
                f"(type={type(self.executor).__name__})"
            )
        if self.doc is not None and (not isinstance(self.doc, str) or not self.doc.strip()):
            raise TypeError("ExecutorRef.doc must be a non-empty string or None")


@dataclass(frozen=True)
class ExecutorRegistry:
    _by_id: dict[str, ExecutorRef]

    @classmethod
    def from_refs(cls, refs: Iterable[ExecutorRef]) -> "ExecutorRegistry":
        entries: dict[str, ExecutorRef] = {}
        for ref in refs:
            if ref.id in entries:
                raise ValueError(f"Duplicate executor id: {ref.id}")
            entries[ref.id] = ref
        return cls(_by_id=entries)

    def available(self) -> tuple[str, ...]:
        return tuple(sorted(self._by_id.keys()))

    def resolve(self, executor_id: str) -> StepExecutor:
        if not isinstance(executor_id, str) or not executor_id.strip():
            raise ValueError("executor_id must be a non-empty string")
        key = executor_id.strip()

        ref = self._by_id.get(key)
        if ref is not None:
            return ref.executor

        available = ", ".join(self.available()) or "<none>"
        suggestions = self.suggest(key)
        if suggestions:
            raise ValueError(
                f"Unknown executor id: {executor_id} (did you mean: {', '.join(suggestions)}; "
                f"available: {available})"
            )
        raise ValueError(f"Unknown executor id: {executor_id} (available: {available})")

    def suggest(self, executor_id: str, *, limit: int = 3) -> tuple[str, ...]:
        key = (executor_id or "").strip()
        if not key:
            return ()
        return tuple(difflib.get_close_matches(key, list(self.available()), n=limit))
