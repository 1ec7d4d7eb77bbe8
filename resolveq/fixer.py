"""CommandFixer: plan and apply fixes through external commands.

Each command receives a JSON document on stdin and may answer with a JSON
document on stdout. The commands are whatever the team uses to edit code
(a coding agent CLI, a codemod script, ...); resolveq never looks inside
the remediation text itself.

Plan reply::

    {"files": ["a.py"], "public_interface": false, "shared_state": false,
     "migration": false, "summary": "..."}

Apply reply (optional; git is consulted when absent)::

    {"change_ref": "abc123", "files": ["a.py"], "summary": "..."}

Reconcile reply::

    {"stance": "holds" | "adjusted" | "unresolved",
     "amendments": {"<issue key>": "<change ref>"}, "note": "..."}
"""

from __future__ import annotations

import json
import shlex
from pathlib import Path

import anyio

from .git_ops import get_commit_files, get_latest_commit, get_uncommitted_files
from .intake import issue_payload
from .models import (
    AppliedFix,
    FixPlan,
    Issue,
    ReconcileRequest,
    ReconcileResponse,
    Stance,
)


class FixerCommandError(Exception):
    """A fixer command exited non-zero or produced unusable output."""


def _split(cmd: str | list[str]) -> list[str]:
    return shlex.split(cmd) if isinstance(cmd, str) else list(cmd)


def _opt_bool(data: dict, key: str) -> bool | None:
    value = data.get(key)
    return value if isinstance(value, bool) else None


class CommandFixer:
    """Fixer backed by shell commands run in the project root."""

    def __init__(
        self,
        plan_cmd: str | list[str],
        apply_cmd: str | list[str],
        cwd: Path,
        reconcile_cmd: str | list[str] | None = None,
    ):
        self.plan_cmd = _split(plan_cmd)
        self.apply_cmd = _split(apply_cmd)
        self.reconcile_cmd = _split(reconcile_cmd) if reconcile_cmd else []
        self.cwd = Path(cwd)

    async def _call(self, cmd: list[str], payload: dict) -> dict:
        try:
            proc = await anyio.run_process(
                cmd,
                input=json.dumps(payload).encode(),
                cwd=str(self.cwd),
                check=False,
            )
        except OSError as exc:
            raise FixerCommandError(f"Cannot run {cmd[0]}: {exc}") from exc
        if proc.returncode != 0:
            stderr = proc.stderr.decode(errors="replace").strip()
            raise FixerCommandError(
                f"{cmd[0]} exited with {proc.returncode}: {stderr[:500]}"
            )
        out = proc.stdout.decode(errors="replace").strip()
        if not out:
            return {}
        try:
            data = json.loads(out)
        except json.JSONDecodeError as exc:
            raise FixerCommandError(f"{cmd[0]} did not return JSON: {out[:200]}") from exc
        if not isinstance(data, dict):
            raise FixerCommandError(f"{cmd[0]} returned {type(data).__name__}, expected object")
        return data

    async def plan(self, issue: Issue) -> FixPlan:
        data = await self._call(self.plan_cmd, {"action": "plan", "issue": issue_payload(issue)})
        files = data.get("files")
        return FixPlan(
            files=[str(f) for f in files] if isinstance(files, list) else [],
            changes_public_interface=_opt_bool(data, "public_interface"),
            touches_shared_state=_opt_bool(data, "shared_state"),
            requires_migration=_opt_bool(data, "migration"),
            summary=str(data.get("summary", "")),
        )

    async def apply(self, issue: Issue, plan: FixPlan) -> AppliedFix:
        head_before = await get_latest_commit(self.cwd)
        data = await self._call(self.apply_cmd, {
            "action": "apply",
            "issue": issue_payload(issue),
            "plan": {"files": plan.files, "summary": plan.summary},
        })
        files = data.get("files")
        artifacts = [str(f) for f in files] if isinstance(files, list) else []
        change_ref = str(data.get("change_ref", ""))
        if not change_ref:
            # Only a commit made during this apply belongs to the fix.
            head_after = await get_latest_commit(self.cwd)
            if head_after and head_after != head_before:
                change_ref = head_after
        if not artifacts and change_ref:
            artifacts = await get_commit_files(self.cwd, change_ref)
        if not artifacts:
            artifacts = list(plan.files) or await get_uncommitted_files(self.cwd)
        return AppliedFix(
            change_ref=change_ref,
            artifacts=artifacts,
            summary=str(data.get("summary", "")),
        )

    async def reconcile(self, request: ReconcileRequest) -> ReconcileResponse:
        if not self.reconcile_cmd:
            return ReconcileResponse(
                stance=Stance.UNRESOLVED,
                note="No reconcile command configured",
            )
        data = await self._call(self.reconcile_cmd, {
            "action": "reconcile",
            "artifact": request.artifact,
            "round": request.round,
            "batch": request.batch_id,
            "fixes": [
                {"issue": issue_payload(i), "change_ref": d.change_ref}
                for i, d in request.fixes
            ],
            "other_batch": request.other_batch_id,
            "other_changes": request.other_changes,
        })
        try:
            stance = Stance(data.get("stance", Stance.UNRESOLVED.value))
        except ValueError:
            stance = Stance.UNRESOLVED
        amendments = data.get("amendments")
        return ReconcileResponse(
            stance=stance,
            amendments={str(k): str(v) for k, v in amendments.items()}
            if isinstance(amendments, dict) else {},
            note=str(data.get("note", "")),
        )
