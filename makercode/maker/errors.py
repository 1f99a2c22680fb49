"""Exceptions raised by the decomposition-and-voting pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from makercode.maker.orchestrator import ExecutionContext


class MakerError(Exception):
    """Base class for pipeline errors."""


class CandidateGenerationError(MakerError):
    """A voting round produced no candidates at all."""


class CyclicDependencyError(MakerError):
    """The dependency graph contains a cycle and cannot be ordered."""

    def __init__(self, cycle: list[int]) -> None:
        self.cycle = cycle
        path = " → ".join(str(node) for node in cycle)
        super().__init__(f"Dependency cycle detected: {path}")


class SubtaskExecutionError(MakerError):
    """A subtask could not be completed to the required standard."""

    def __init__(self, subtask_id: int, message: str) -> None:
        self.subtask_id = subtask_id
        super().__init__(message)


class VotingCancelledError(MakerError):
    """Cancellation was requested before a provider call."""


class ExecutionAbortedError(MakerError):
    """Execution stopped early because ``stop_on_error`` was set.

    The execution context travels with the exception so the log of the
    steps that did run is not lost.
    """

    def __init__(self, message: str, context: ExecutionContext) -> None:
        self.context = context
        super().__init__(message)
