"""Resolution workers: validate → classify risk → act → report."""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import anyio
import structlog

from .models import (
    AppliedFix,
    Batch,
    BatchStatus,
    Decision,
    DecisionState,
    FixPlan,
    Issue,
    ReconcileRequest,
    ReconcileResponse,
    RiskLevel,
    Stance,
    WorkerResult,
)
from .risk import DEFAULT_MAX_FILES, classify_risk

logger = structlog.get_logger()


class ValidationUnavailable(Exception):
    """The referenced location cannot be examined at all."""


@dataclass
class Validation:
    holds: bool
    reasoning: str


class Validator(Protocol):
    async def validate(self, issue: Issue) -> Validation: ...


class Fixer(Protocol):
    async def plan(self, issue: Issue) -> FixPlan: ...

    async def apply(self, issue: Issue, plan: FixPlan) -> AppliedFix: ...

    async def reconcile(self, request: ReconcileRequest) -> ReconcileResponse: ...


class Worker(Protocol):
    """Anything that can take a batch and report a WorkerResult."""

    name: str

    async def dispatch(self, batch: Batch, recorder: BatchRecorder) -> WorkerResult: ...

    async def reconcile(self, request: ReconcileRequest) -> ReconcileResponse: ...


# ---------------------------------------------------------------------------
# Per-batch recorder
# ---------------------------------------------------------------------------

class BatchRecorder:
    """Collects a batch's decisions as they happen.

    Owned by the orchestrator, so decisions made before a timeout survive it.
    """

    def __init__(self, batch: Batch):
        self.batch = batch
        self._decisions: dict[str, Decision] = {}
        self._validated: set[str] = set()
        self._keys = set(batch.keys)

    def mark_validated(self, key: str) -> None:
        self._validated.add(key)

    def record(self, issue: Issue, decision: Decision) -> None:
        if issue.key not in self._keys:
            raise ValueError(f"Issue '{issue.key}' is not part of batch {self.batch.id}")
        if issue.key in self._decisions:
            raise ValueError(f"Issue '{issue.key}' already decided in batch {self.batch.id}")
        self._decisions[issue.key] = decision

    def is_decided(self, key: str) -> bool:
        return key in self._decisions

    def block_remaining(self, reason: str) -> list[str]:
        """Mark every undecided issue BLOCKED. Returns their keys."""
        blocked = []
        for issue in self.batch.issues:
            if issue.key not in self._decisions:
                self._decisions[issue.key] = Decision(
                    state=DecisionState.BLOCKED,
                    reasoning=reason,
                    batch_id=self.batch.id,
                )
                blocked.append(issue.key)
        return blocked

    def status(self) -> BatchStatus:
        if not self._validated:
            return BatchStatus.BLOCKED
        decided = [self._decisions.get(k) for k in self.batch.keys]
        if all(d is not None and d.state != DecisionState.BLOCKED for d in decided):
            return BatchStatus.COMPLETE
        return BatchStatus.PARTIAL

    def result(self, worker: str = "") -> WorkerResult:
        decisions = [
            (issue, self._decisions[issue.key])
            for issue in self.batch.issues
            if issue.key in self._decisions
        ]
        touched = sorted({
            a for _, d in decisions
            if d.state == DecisionState.FIXED
            for a in d.artifacts
        })
        return WorkerResult(
            batch_id=self.batch.id,
            layer=self.batch.layer,
            decisions=decisions,
            touched=touched,
            status=self.status(),
            worker=worker,
        )


# ---------------------------------------------------------------------------
# Standard worker
# ---------------------------------------------------------------------------

class ResolutionWorker:
    """Runs the per-issue state machine over a batch, one issue at a time."""

    def __init__(
        self,
        name: str,
        validator: Validator,
        fixer: Fixer,
        max_files: int = DEFAULT_MAX_FILES,
    ):
        self.name = name
        self.validator = validator
        self.fixer = fixer
        self.max_files = max_files

    async def dispatch(self, batch: Batch, recorder: BatchRecorder) -> WorkerResult:
        log = logger.bind(worker=self.name, batch=batch.id)
        for issue in batch.issues:
            decision = await self.resolve(issue, batch.id, recorder)
            recorder.record(issue, decision)
            log.info("issue_resolved", issue=issue.key, state=decision.state.value)
        return recorder.result(self.name)

    async def resolve(
        self, issue: Issue, batch_id: str, recorder: BatchRecorder
    ) -> Decision:
        def _decide(state: DecisionState, reasoning: str, **kw) -> Decision:
            return Decision(state=state, reasoning=reasoning, batch_id=batch_id, **kw)

        # Validate
        try:
            validation = await self.validator.validate(issue)
        except ValidationUnavailable as exc:
            return _decide(DecisionState.BLOCKED, f"Could not validate: {exc}")
        except Exception as exc:
            return _decide(DecisionState.BLOCKED, f"Validation error: {exc}")
        recorder.mark_validated(issue.key)
        if not validation.holds:
            return _decide(DecisionState.FALSE_POSITIVE, validation.reasoning)

        # Risk assessment
        try:
            plan = await self.fixer.plan(issue)
        except Exception as exc:
            return _decide(DecisionState.BLOCKED, f"Planning failed: {exc}")
        level, why = classify_risk(plan, self.max_files)
        if level == RiskLevel.HIGH:
            return _decide(DecisionState.DEFERRED, f"High risk, no changes made ({why})")

        # Act
        try:
            applied = await self.fixer.apply(issue, plan)
        except Exception as exc:
            return _decide(DecisionState.BLOCKED, f"Fix failed: {exc}")
        return _decide(
            DecisionState.FIXED,
            applied.summary or f"Low risk fix applied ({why})",
            change_ref=applied.change_ref,
            artifacts=tuple(sorted(set(applied.artifacts or plan.files))),
        )

    async def reconcile(self, request: ReconcileRequest) -> ReconcileResponse:
        return await self.fixer.reconcile(request)


async def dispatch_batch(
    worker: Worker, batch: Batch, timeout: float
) -> WorkerResult:
    """Run one batch under a timeout, isolating the worker's failures.

    Issues left undecided (timeout or worker crash) become BLOCKED; decisions
    already recorded are kept.
    """
    recorder = BatchRecorder(batch)
    log = logger.bind(worker=worker.name, batch=batch.id)
    dispatched_at = time.monotonic()
    reason = ""

    with anyio.move_on_after(timeout) as scope:
        try:
            returned = await worker.dispatch(batch, recorder)
        except Exception as exc:
            reason = f"Worker error: {exc}"
            log.error("worker_failed", error=str(exc))
        else:
            # Workers that report only through their result, not the recorder.
            for issue, decision in returned.decisions:
                if issue.key in batch.keys and not recorder.is_decided(issue.key):
                    if decision.state != DecisionState.BLOCKED:
                        recorder.mark_validated(issue.key)
                    if decision.is_terminal:
                        recorder.record(issue, decision)
            reason = "Worker returned without a decision"
    if scope.cancelled_caught:
        reason = f"Timed out after {timeout:g}s"
        log.warning("batch_timed_out", timeout=timeout)

    blocked = recorder.block_remaining(reason)
    if blocked:
        log.warning("issues_blocked", issues=blocked, reason=reason)

    result = recorder.result(worker.name)
    result.dispatched_at = dispatched_at
    result.completed_at = time.monotonic()
    return result


# ---------------------------------------------------------------------------
# Local validator
# ---------------------------------------------------------------------------

class LocationValidator:
    """Checks that the referenced file and line still exist under ``root``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    async def validate(self, issue: Issue) -> Validation:
        path = self.root / issue.file
        if not path.is_file():
            raise ValidationUnavailable(f"{issue.file} not found")
        text = await anyio.to_thread.run_sync(
            lambda: path.read_text(encoding="utf-8", errors="replace")
        )
        line_count = len(text.splitlines())
        if issue.line > line_count:
            return Validation(
                holds=False,
                reasoning=f"Line {issue.line} is past the end of {issue.file} ({line_count} lines)",
            )
        return Validation(holds=True, reasoning="Referenced location still present")
