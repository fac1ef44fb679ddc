"""Error hierarchy raised by the workflow engine."""

from __future__ import annotations

from typing import Iterable, List


class WorkflowError(RuntimeError):
    """Base exception for workflow engine errors."""


class ValidationError(WorkflowError):
    """Raised before any mutation when a command or template is malformed."""

    def __init__(self, message: str, problems: Iterable[str] = ()) -> None:
        self.problems: List[str] = list(problems)
        if self.problems:
            message = f"{message}: " + "; ".join(self.problems)
        super().__init__(message)


class StateConflict(WorkflowError):
    """Raised when a step is not in the state a command requires."""

    def __init__(self, step_id: str, message: str) -> None:
        self.step_id = step_id
        super().__init__(f"Step {step_id!r}: {message}")


__all__ = ["WorkflowError", "ValidationError", "StateConflict"]
