"""Risk policy: an ordered rule table, first match wins."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from .models import FixPlan, RiskLevel

DEFAULT_MAX_FILES = 3


@dataclass(frozen=True)
class RiskRule:
    name: str
    predicate: Callable[[FixPlan, int], bool]
    level: RiskLevel
    reason: str


def _contained(plan: FixPlan, max_files: int) -> bool:
    return (
        plan.changes_public_interface is False
        and plan.touches_shared_state is False
        and plan.requires_migration is False
        and 0 < len(set(plan.files)) <= max_files
    )


# Unknown signals (None) are treated as the risky answer.
RISK_RULES: list[RiskRule] = [
    RiskRule(
        "public_interface",
        lambda p, _: p.changes_public_interface is not False,
        RiskLevel.HIGH,
        "changes a public interface",
    ),
    RiskRule(
        "shared_state",
        lambda p, _: p.touches_shared_state is not False,
        RiskLevel.HIGH,
        "touches shared or global state",
    ),
    RiskRule(
        "file_span",
        lambda p, limit: len(set(p.files)) > limit,
        RiskLevel.HIGH,
        "spans more files than allowed",
    ),
    RiskRule(
        "migration",
        lambda p, _: p.requires_migration is not False,
        RiskLevel.HIGH,
        "requires a schema or data migration",
    ),
    RiskRule(
        "contained",
        _contained,
        RiskLevel.LOW,
        "contained change",
    ),
]


def classify_risk(
    plan: FixPlan,
    max_files: int = DEFAULT_MAX_FILES,
    rules: list[RiskRule] | None = None,
) -> tuple[RiskLevel, str]:
    """Evaluate ``rules`` top-down. No match means HIGH."""
    for rule in rules if rules is not None else RISK_RULES:
        if rule.predicate(plan, max_files):
            return rule.level, f"{rule.name}: {rule.reason}"
    return RiskLevel.HIGH, "unclassified: defaulting to high risk"
