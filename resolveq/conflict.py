"""Bounded negotiation between workers whose fixes touched the same artifact."""

from __future__ import annotations

from itertools import combinations

import anyio
import structlog

from .errors import InvalidConfigurationError
from .models import (
    ConflictOutcome,
    ConflictReport,
    Decision,
    DecisionState,
    Issue,
    ReconcileRequest,
    ReconcileResponse,
    Stance,
    WorkerResult,
)
from .worker import Worker

logger = structlog.get_logger()

MAX_ROUNDS = 2


def find_conflicts(
    results: list[WorkerResult],
) -> list[tuple[str, WorkerResult, WorkerResult]]:
    """Pairs of same-layer results sharing a touched artifact, one per artifact."""
    found = []
    ordered = sorted(results, key=lambda r: (r.layer, r.batch_id))
    for a, b in combinations(ordered, 2):
        if a.layer != b.layer:
            continue
        for artifact in sorted(set(a.touched) & set(b.touched)):
            found.append((artifact, a, b))
    return found


def _fixes_on(
    result: WorkerResult,
    artifact: str,
    refs: dict[str, str],
    downgraded: set[str],
) -> list[tuple[Issue, Decision]]:
    fixes = []
    for issue, decision in result.decisions:
        if decision.state != DecisionState.FIXED or issue.key in downgraded:
            continue
        if artifact not in decision.artifacts:
            continue
        if issue.key in refs:
            decision = Decision(
                state=decision.state,
                reasoning=decision.reasoning,
                batch_id=decision.batch_id,
                change_ref=refs[issue.key],
                artifacts=decision.artifacts,
            )
        fixes.append((issue, decision))
    return fixes


def _describe(fixes: list[tuple[Issue, Decision]]) -> list[str]:
    return [f"{i.key} -> {d.change_ref or '?'}: {d.reasoning}" for i, d in fixes]


async def _ask_all(
    asks: list[tuple[Worker, ReconcileRequest]],
    timeout: float | None = None,
) -> list[ReconcileResponse]:
    """Ask every worker in parallel.

    A worker that fails or does not answer within ``timeout`` seconds
    counts as unresolved.
    """
    responses: list[ReconcileResponse | None] = [None] * len(asks)

    async def _ask(idx: int, worker: Worker, request: ReconcileRequest) -> None:
        with anyio.move_on_after(timeout) as scope:
            try:
                responses[idx] = await worker.reconcile(request)
            except Exception as exc:
                responses[idx] = ReconcileResponse(
                    stance=Stance.UNRESOLVED,
                    note=f"Reconcile error: {exc}",
                )
        if scope.cancelled_caught:
            responses[idx] = ReconcileResponse(
                stance=Stance.UNRESOLVED,
                note=f"No answer within {timeout:g}s",
            )

    async with anyio.create_task_group() as tg:
        for idx, (worker, request) in enumerate(asks):
            tg.start_soon(_ask, idx, worker, request)

    return [r for r in responses if r is not None]


async def negotiate(
    artifact: str,
    a: WorkerResult,
    b: WorkerResult,
    workers: dict[str, Worker],
    max_rounds: int = MAX_ROUNDS,
    refs: dict[str, str] | None = None,
    downgraded: set[str] | None = None,
    timeout: float | None = None,
) -> ConflictReport:
    """Run up to ``max_rounds`` rounds for one shared artifact.

    ``timeout`` bounds each worker's answer within a round.
    """
    if not 1 <= max_rounds <= MAX_ROUNDS:
        raise InvalidConfigurationError(
            f"max_rounds must be between 1 and {MAX_ROUNDS}, got {max_rounds}"
        )
    refs = refs if refs is not None else {}
    downgraded = downgraded if downgraded is not None else set()
    log = logger.bind(artifact=artifact, batch_a=a.batch_id, batch_b=b.batch_id)

    report = ConflictReport(
        artifact=artifact,
        batch_a=a.batch_id,
        batch_b=b.batch_id,
        outcome=ConflictOutcome.NO_CONFLICT,
    )
    fixes_a = _fixes_on(a, artifact, refs, downgraded)
    fixes_b = _fixes_on(b, artifact, refs, downgraded)
    if not fixes_a or not fixes_b:
        report.notes.append("No live fixes on both sides")
        return report

    adjusted = False
    for round_no in range(1, max_rounds + 1):
        report.rounds = round_no
        sides = [(a, fixes_a, b, fixes_b), (b, fixes_b, a, fixes_a)]
        asks = [
            (workers[own.batch_id], ReconcileRequest(
                artifact=artifact,
                round=round_no,
                batch_id=own.batch_id,
                fixes=own_fixes,
                other_batch_id=other.batch_id,
                other_changes=_describe(other_fixes),
            ))
            for own, own_fixes, other, other_fixes in sides
        ]
        responses = await _ask_all(asks, timeout)

        for (own, own_fixes, _, _), response in zip(sides, responses):
            if response.note:
                report.notes.append(f"round {round_no} {own.batch_id}: {response.note}")
            if response.stance != Stance.ADJUSTED:
                continue
            own_keys = {i.key for i, _ in own_fixes}
            for key, ref in response.amendments.items():
                if key in own_keys:
                    report.amendments[key] = ref
                    refs[key] = ref
            adjusted = True

        stances = [r.stance for r in responses]
        log.info("conflict_round", round=round_no, stances=[s.value for s in stances])
        if Stance.UNRESOLVED not in stances:
            report.outcome = ConflictOutcome.MERGED if adjusted else ConflictOutcome.NO_CONFLICT
            return report

        # Later rounds see the amended change refs.
        fixes_a = _fixes_on(a, artifact, refs, downgraded)
        fixes_b = _fixes_on(b, artifact, refs, downgraded)

    report.outcome = ConflictOutcome.ESCALATED
    report.downgraded = sorted({i.key for i, _ in fixes_a + fixes_b})
    downgraded.update(report.downgraded)
    log.warning("conflict_escalated", rounds=report.rounds, downgraded=report.downgraded)
    return report


async def resolve_conflicts(
    results: list[WorkerResult],
    workers: dict[str, Worker],
    max_rounds: int = MAX_ROUNDS,
    timeout: float | None = None,
) -> list[ConflictReport]:
    """Negotiate every shared artifact among concurrently executed batches.

    Candidates are handled one after another so amendments and escalations
    from earlier artifacts are visible to later ones.
    """
    refs: dict[str, str] = {}
    downgraded: set[str] = set()
    reports = []
    for artifact, a, b in find_conflicts(results):
        reports.append(
            await negotiate(
                artifact, a, b, workers, max_rounds, refs, downgraded, timeout
            )
        )
    return reports
