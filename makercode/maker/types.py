"""Shared types for the decomposition-and-voting pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def _now() -> str:
    return datetime.now(UTC).isoformat()


class SubtaskType(StrEnum):
    """Closed set of operations a subtask can perform on its target."""

    READ = "read"
    WRITE = "write"
    EDIT = "edit"
    CREATE = "create"
    DELETE = "delete"
    EXECUTE = "execute"

    @classmethod
    def parse(cls, value: str) -> SubtaskType:
        """Lenient lookup; anything unknown becomes ``execute``."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.EXECUTE


class SubtaskStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"


class Severity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class LogStatus(StrEnum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class ComplexityLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ── Decomposition ─────────────────────────────────────────────────────────────


@dataclass
class Subtask:
    """One atomic unit of work produced by the decomposer."""

    id: int
    description: str
    type: SubtaskType = SubtaskType.EXECUTE
    target: str = "unknown"
    depends: list[int] = field(default_factory=list)
    action: str = ""
    status: SubtaskStatus = SubtaskStatus.PENDING
    estimated_tokens: int = 0
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DependencyNode:
    task: Subtask
    depends_on: list[int] = field(default_factory=list)
    required_by: list[int] = field(default_factory=list)


@dataclass
class Complexity:
    total_steps: int
    total_tokens: int
    max_depth: int
    parallelizable: int
    avg_tokens_per_step: int
    complexity: ComplexityLevel

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Plan:
    """Decomposed task, owned by exactly one execution."""

    original_task: str
    subtasks: list[Subtask]
    dependency_graph: dict[int, DependencyNode]
    execution_order: list[int]
    complexity: Complexity

    def get(self, subtask_id: int) -> Subtask | None:
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_task": self.original_task,
            "subtasks": [s.to_dict() for s in self.subtasks],
            "dependency_graph": {
                node_id: {"depends_on": node.depends_on, "required_by": node.required_by}
                for node_id, node in self.dependency_graph.items()
            },
            "execution_order": self.execution_order,
            "complexity": self.complexity.to_dict(),
        }


@dataclass
class TaskContext:
    """Caller-supplied context for decomposition and execution."""

    files: list[str] = field(default_factory=list)
    codebase: str = ""
    relevant_files: list[str] = field(default_factory=list)


# ── Validation ────────────────────────────────────────────────────────────────


@dataclass
class TaskProfile:
    """What a candidate is expected to look like, and how much it matters."""

    type: str = "code"
    expected_length: int = 200
    expected_format: str | None = None  # function | class | import | export
    estimated_steps: int = 1
    critical: bool = False
    base_reliability: float = 0.7


@dataclass
class Flag:
    """A single red flag raised against a response."""

    type: str
    severity: Severity
    message: str
    line: int | None = None
    column: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ValidationResult:
    valid: bool
    flags: list[Flag]
    confidence: float
    summary: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "flags": [f.to_dict() for f in self.flags],
            "confidence": self.confidence,
            "summary": self.summary,
        }


# ── Structural features ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class FunctionSignature:
    name: str | None
    arity: int
    is_async: bool = False
    is_lambda: bool = False


@dataclass(frozen=True)
class ClassShape:
    name: str
    methods: int


@dataclass(frozen=True)
class ImportShape:
    source: str
    specifiers: int


@dataclass(frozen=True)
class ExportShape:
    kind: str
    declaration: str | None = None


@dataclass(frozen=True)
class VariableShape:
    name: str
    kind: str


@dataclass(frozen=True)
class Feature:
    """Structural fingerprint of one candidate."""

    functions: tuple[FunctionSignature, ...] = ()
    classes: tuple[ClassShape, ...] = ()
    imports: tuple[ImportShape, ...] = ()
    exports: tuple[ExportShape, ...] = ()
    variables: tuple[VariableShape, ...] = ()
    tokens: frozenset[str] = frozenset()
    syntax_valid: bool = True

    @property
    def counts(self) -> tuple[int, int, int, int, int]:
        return (
            len(self.functions),
            len(self.classes),
            len(self.imports),
            len(self.exports),
            len(self.variables),
        )


# ── Clustering & voting ───────────────────────────────────────────────────────


@dataclass
class Candidate:
    """One sampled completion attempt."""

    index: int
    content: str
    temperature: float
    token_count: int = 0


@dataclass
class ClusterMember:
    content: str
    source_index: int
    similarity: float


@dataclass
class Cluster:
    representative: str
    members: list[ClusterMember]
    avg_similarity: float = 1.0

    @property
    def size(self) -> int:
        return len(self.members)

    def to_dict(self) -> dict[str, Any]:
        return {
            "representative": self.representative,
            "members": [asdict(m) for m in self.members],
            "size": self.size,
            "avg_similarity": self.avg_similarity,
        }


@dataclass
class VotingStats:
    total_candidates: int
    valid_candidates: int
    cluster_count: int
    winner_votes: int
    runner_up_votes: int
    margin: int
    votes_needed: int
    reliable: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class VotingResult:
    winner: str
    confidence: float
    voting_stats: VotingStats
    warning: str | None = None
    clusters: list[Cluster] = field(default_factory=list)

    @property
    def reliable(self) -> bool:
        return self.voting_stats.reliable

    def to_dict(self) -> dict[str, Any]:
        return {
            "winner": self.winner,
            "confidence": self.confidence,
            "voting_stats": self.voting_stats.to_dict(),
            "warning": self.warning,
            "clusters": [c.to_dict() for c in self.clusters],
        }


@dataclass
class CostEstimate:
    """Analytic projection of a voting round's cost (planning only)."""

    k: int
    max_candidates: int
    expected_valid_candidates: float
    total_completion_tokens: int
    scaling_factor: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Execution ─────────────────────────────────────────────────────────────────


@dataclass
class TargetFile:
    path: str
    content: str
    truncated: bool = False


@dataclass
class DependencyOutput:
    subtask_id: int
    description: str
    result: str


@dataclass
class MinimalContext:
    """Only what a single step needs: its own task plus direct dependency outputs."""

    task: str
    type: SubtaskType
    target: str
    dependencies: list[DependencyOutput] = field(default_factory=list)
    target_file: TargetFile | None = None
    relevant_files: list[str] = field(default_factory=list)


@dataclass
class SubtaskResult:
    subtask_id: int
    description: str
    result: str
    confidence: float
    warning: str | None = None


@dataclass
class ExecutionLogEntry:
    subtask_id: int
    description: str
    status: LogStatus
    confidence: float | None = None
    error: str | None = None
    warning: str | None = None
    voting_stats: VotingStats | None = None
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionSummary:
    task: str
    total_subtasks: int
    completed: int
    errors: int
    success_rate: float
    avg_confidence: float
    k: int
    execution_log: list[ExecutionLogEntry]
    results: list[SubtaskResult]
    plan: Plan

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task,
            "total_subtasks": self.total_subtasks,
            "completed": self.completed,
            "errors": self.errors,
            "success_rate": self.success_rate,
            "avg_confidence": self.avg_confidence,
            "k": self.k,
            "execution_log": [e.to_dict() for e in self.execution_log],
            "results": [asdict(r) for r in self.results],
            "plan": self.plan.to_dict(),
        }
