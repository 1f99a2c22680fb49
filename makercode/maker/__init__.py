"""Decompose, red-flag, cluster and vote: reliable multi-step code generation."""

from __future__ import annotations

from makercode.maker.clusterer import StructuralClusterer
from makercode.maker.decomposer import TaskDecomposer
from makercode.maker.errors import (
    CandidateGenerationError,
    CyclicDependencyError,
    ExecutionAbortedError,
    MakerError,
    SubtaskExecutionError,
    VotingCancelledError,
)
from makercode.maker.orchestrator import ExecutionContext, ExecutionOptions, Orchestrator
from makercode.maker.types import Plan, Subtask, SubtaskType, TaskContext, TaskProfile
from makercode.maker.validator import ResponseValidator
from makercode.maker.voting import VotingManager

__all__ = [
    "CandidateGenerationError",
    "CyclicDependencyError",
    "ExecutionAbortedError",
    "ExecutionContext",
    "ExecutionOptions",
    "MakerError",
    "Orchestrator",
    "Plan",
    "ResponseValidator",
    "StructuralClusterer",
    "Subtask",
    "SubtaskExecutionError",
    "SubtaskType",
    "TaskContext",
    "TaskDecomposer",
    "TaskProfile",
    "VotingCancelledError",
    "VotingManager",
]
