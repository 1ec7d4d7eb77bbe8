"""Run-level errors raised by the orchestrator's own bookkeeping."""

from __future__ import annotations


class ResolveqError(Exception):
    """Base class for fatal orchestrator errors."""


class InvalidConfigurationError(ResolveqError):
    """Raised for bad settings or malformed issues, before scheduling starts."""


class DuplicateDecisionError(ResolveqError):
    """Raised when an issue would receive a second terminal decision."""

    def __init__(self, key: str):
        super().__init__(f"Issue '{key}' already has a terminal decision")
        self.key = key


class IncompleteRunError(ResolveqError):
    """Raised when issues are still pending at finalization."""

    def __init__(self, pending: list[str]):
        super().__init__(
            f"{len(pending)} issue(s) left without a decision: {', '.join(pending)}"
        )
        self.pending = pending
