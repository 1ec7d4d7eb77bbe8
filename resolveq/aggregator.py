"""Result aggregation: fold worker results and conflict reports into a ledger."""

from __future__ import annotations

from dataclasses import replace

from .models import (
    ConflictOutcome,
    ConflictReport,
    Decision,
    DecisionState,
    Ledger,
    LedgerEntry,
    WorkerResult,
)


def apply_overrides(
    decisions: dict[str, Decision], reports: list[ConflictReport]
) -> dict[str, Decision]:
    """Return a copy of ``decisions`` with Merged/Escalated outcomes applied.

    Amendments only change a FIXED decision's change ref. Escalations
    downgrade FIXED decisions to BLOCKED and win over any amendment.
    """
    final = dict(decisions)
    for report in reports:
        if report.outcome != ConflictOutcome.MERGED:
            continue
        for key, ref in report.amendments.items():
            current = final.get(key)
            if current is not None and current.state == DecisionState.FIXED:
                final[key] = replace(current, change_ref=ref)

    for report in reports:
        if report.outcome != ConflictOutcome.ESCALATED:
            continue
        for key in report.downgraded:
            current = final.get(key)
            if current is None or current.state != DecisionState.FIXED:
                continue
            final[key] = replace(
                current,
                state=DecisionState.BLOCKED,
                reasoning=(
                    f"Unresolved conflict on {report.artifact} between "
                    f"{report.batch_a} and {report.batch_b} after "
                    f"{report.rounds} round(s); fix not kept"
                ),
            )
    return final


def aggregate(
    results: list[WorkerResult], reports: list[ConflictReport]
) -> Ledger:
    """Deterministic fold over a run's results. No I/O, no side effects."""
    decisions: dict[str, Decision] = {}
    for result in sorted(results, key=lambda r: (r.layer, r.batch_id)):
        for issue, decision in result.decisions:
            decisions[issue.key] = decision

    final = apply_overrides(decisions, reports)

    ledger = Ledger(conflicts=list(reports))
    buckets = {
        DecisionState.FIXED: ledger.fixed,
        DecisionState.DEFERRED: ledger.deferred,
        DecisionState.FALSE_POSITIVE: ledger.false_positive,
        DecisionState.BLOCKED: ledger.blocked,
    }
    for key in sorted(final):
        decision = final[key]
        bucket = buckets.get(decision.state)
        if bucket is None:
            continue
        bucket.append(LedgerEntry(
            key=key,
            reasoning=decision.reasoning,
            batch_id=decision.batch_id,
            change_ref=decision.change_ref,
        ))

    # Everything workers modified, including fixes later downgraded.
    ledger.touched = sorted({a for r in results for a in r.touched})
    return ledger
