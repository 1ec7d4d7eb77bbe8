"""Core data models for resolveq."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


class DecisionState(str, Enum):
    PENDING = "pending"
    FALSE_POSITIVE = "false_positive"
    FIXED = "fixed"
    DEFERRED = "deferred"
    BLOCKED = "blocked"


class BatchMode(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class BatchStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    BLOCKED = "blocked"


class RiskLevel(str, Enum):
    LOW = "low_risk"
    HIGH = "high_risk"


class ConflictOutcome(str, Enum):
    NO_CONFLICT = "no_conflict"
    MERGED = "merged"
    ESCALATED = "escalated"


@dataclass(frozen=True)
class Issue:
    """A previously identified code issue. Immutable after ingestion."""

    file: str
    line: int
    category: str
    severity: Severity
    description: str = ""
    remediation: str = ""  # opaque, handed to the fixer untouched
    function: str | None = None  # enclosing function, if discovery knew it

    @property
    def key(self) -> str:
        return f"{self.file}:{self.line}:{self.category}"

    @property
    def sort_key(self) -> tuple[str, int, str]:
        return (self.file, self.line, self.category)


@dataclass(frozen=True)
class Decision:
    """Terminal (or pending) outcome for one issue."""

    state: DecisionState = DecisionState.PENDING
    reasoning: str = ""
    batch_id: str = ""
    change_ref: str = ""  # only meaningful when FIXED
    artifacts: tuple[str, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.state != DecisionState.PENDING


@dataclass(frozen=True)
class DependencyEdge:
    """``dependent`` must not start until ``dependency`` is resolved."""

    dependent: str
    dependency: str
    weight: int


@dataclass(frozen=True)
class Batch:
    id: str
    layer: int
    issues: tuple[Issue, ...]
    mode: BatchMode = BatchMode.PARALLEL
    wait_on: tuple[str, ...] = ()

    @property
    def keys(self) -> list[str]:
        return [i.key for i in self.issues]


@dataclass
class FixPlan:
    """Risk signals a fixer reports before touching any code.

    ``None`` means the fixer could not tell, which the risk policy
    treats as the risky answer.
    """

    files: list[str] = field(default_factory=list)
    changes_public_interface: bool | None = None
    touches_shared_state: bool | None = None
    requires_migration: bool | None = None
    summary: str = ""


@dataclass
class AppliedFix:
    change_ref: str
    artifacts: list[str] = field(default_factory=list)
    summary: str = ""


@dataclass
class WorkerResult:
    """Per-batch output returned by a worker."""

    batch_id: str
    layer: int
    decisions: list[tuple[Issue, Decision]] = field(default_factory=list)
    touched: list[str] = field(default_factory=list)
    status: BatchStatus = BatchStatus.COMPLETE
    worker: str = ""
    dispatched_at: float = 0.0
    completed_at: float = 0.0


class Stance(str, Enum):
    HOLDS = "holds"
    ADJUSTED = "adjusted"
    UNRESOLVED = "unresolved"


@dataclass
class ReconcileRequest:
    """What a worker is shown during one conflict negotiation round."""

    artifact: str
    round: int
    batch_id: str
    fixes: list[tuple[Issue, Decision]]
    other_batch_id: str
    other_changes: list[str] = field(default_factory=list)


@dataclass
class ReconcileResponse:
    stance: Stance
    amendments: dict[str, str] = field(default_factory=dict)  # issue key -> change ref
    note: str = ""


@dataclass
class ConflictReport:
    """Outcome of negotiating one shared artifact between two batches."""

    artifact: str
    batch_a: str
    batch_b: str
    outcome: ConflictOutcome
    rounds: int = 0
    amendments: dict[str, str] = field(default_factory=dict)  # issue key -> change ref
    downgraded: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)


@dataclass
class LedgerEntry:
    key: str
    reasoning: str
    batch_id: str = ""
    change_ref: str = ""


@dataclass
class Ledger:
    """Final, externally visible result of a run."""

    fixed: list[LedgerEntry] = field(default_factory=list)
    deferred: list[LedgerEntry] = field(default_factory=list)
    false_positive: list[LedgerEntry] = field(default_factory=list)
    blocked: list[LedgerEntry] = field(default_factory=list)
    conflicts: list[ConflictReport] = field(default_factory=list)
    touched: list[str] = field(default_factory=list)

    @property
    def counts(self) -> dict[str, int]:
        return {
            DecisionState.FIXED.value: len(self.fixed),
            DecisionState.DEFERRED.value: len(self.deferred),
            DecisionState.FALSE_POSITIVE.value: len(self.false_positive),
            DecisionState.BLOCKED.value: len(self.blocked),
        }

    @property
    def unresolved(self) -> list[ConflictReport]:
        return [c for c in self.conflicts if c.outcome == ConflictOutcome.ESCALATED]

    def to_dict(self) -> dict:
        def _entries(entries: list[LedgerEntry]) -> list[dict]:
            return [
                {"key": e.key, "reasoning": e.reasoning, "batch": e.batch_id}
                for e in entries
            ]

        return {
            "fixed": [
                {"key": e.key, "reasoning": e.reasoning, "batch": e.batch_id,
                 "change": e.change_ref}
                for e in self.fixed
            ],
            "deferred": _entries(self.deferred),
            "falsePositive": _entries(self.false_positive),
            "blocked": _entries(self.blocked),
            "conflicts": [
                {
                    "artifact": c.artifact,
                    "batches": [c.batch_a, c.batch_b],
                    "outcome": c.outcome.value,
                    "rounds": c.rounds,
                    "downgraded": list(c.downgraded),
                }
                for c in self.conflicts
            ],
            "counts": self.counts,
            "touched": list(self.touched),
        }
