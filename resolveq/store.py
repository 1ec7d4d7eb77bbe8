"""Issue store: immutable issue set plus per-run decision state."""

from __future__ import annotations

from .errors import DuplicateDecisionError, IncompleteRunError, InvalidConfigurationError
from .models import Decision, DecisionState, Issue, Severity


def validate_issue(issue: Issue) -> None:
    """Reject issues the scheduler cannot reason about."""
    if not issue.file:
        raise InvalidConfigurationError(f"Issue has no file path: {issue!r}")
    if not isinstance(issue.line, int) or issue.line < 1:
        raise InvalidConfigurationError(
            f"Issue '{issue.file}' has invalid line number: {issue.line!r}"
        )
    if not issue.category:
        raise InvalidConfigurationError(f"Issue '{issue.file}:{issue.line}' has no category")
    if not isinstance(issue.severity, Severity):
        raise InvalidConfigurationError(
            f"Issue '{issue.key}' has unknown severity: {issue.severity!r}"
        )


class IssueStore:
    """Holds one run's issues and their decisions.

    Scoped to a single run; nothing is carried over between runs.
    """

    def __init__(self, issues: list[Issue]):
        self._issues: dict[str, Issue] = {}
        for issue in issues:
            validate_issue(issue)
            if issue.key in self._issues:
                raise InvalidConfigurationError(f"Duplicate issue key: {issue.key}")
            self._issues[issue.key] = issue
        self._decisions: dict[str, Decision] = {
            key: Decision() for key in self._issues
        }

    @classmethod
    def ingest(cls, issues: list[Issue]) -> IssueStore:
        return cls(issues)

    @property
    def issues(self) -> list[Issue]:
        """Issues in ingestion order."""
        return list(self._issues.values())

    def get_issue(self, key: str) -> Issue:
        return self._issues[key]

    def get_decision(self, key: str) -> Decision:
        return self._decisions[key]

    def set_decision(self, key: str, decision: Decision) -> None:
        if key not in self._decisions:
            raise KeyError(key)
        if not decision.is_terminal:
            raise ValueError(f"Refusing to record a pending decision for '{key}'")
        if self._decisions[key].is_terminal:
            raise DuplicateDecisionError(key)
        self._decisions[key] = decision

    def revise(self, key: str, decision: Decision) -> None:
        """Replace a FIXED decision after conflict negotiation."""
        current = self._decisions[key]
        if current.state != DecisionState.FIXED:
            raise ValueError(
                f"Only fixed decisions can be revised; '{key}' is {current.state.value}"
            )
        self._decisions[key] = decision

    def pending_keys(self) -> list[str]:
        return [k for k, d in self._decisions.items() if not d.is_terminal]

    def pending_count(self) -> int:
        return len(self.pending_keys())

    def finalize(self) -> dict[str, Decision]:
        pending = self.pending_keys()
        if pending:
            raise IncompleteRunError(pending)
        return dict(self._decisions)
