"""Exception hierarchy for orchestration control errors."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for every orchestration error surfaced to callers."""


class InvalidState(RelayError):
    """A control operation was attempted in a run state that does not allow it."""


class UnknownStep(RelayError):
    """A step reference (index or name) could not be resolved to exactly one step."""


class ValidationFailure(RelayError):
    def __init__(self, step_index: int, errors: list[str]):
        self.step_index = step_index
        self.errors = list(errors)
        super().__init__(f"Step {step_index} failed validation: {'; '.join(self.errors)}")


class ExecutorFailure(RelayError):
    """The executor itself errored instead of returning a result."""


class Halted(RelayError):
    """The pipeline is stopped or failed and needs external intervention."""

    def __init__(self, message: str, *, step_index: int | None = None):
        self.step_index = step_index
        super().__init__(message)
