"""Tests for CommandFixer — external plan/apply/reconcile commands."""

import json
import subprocess
import sys

import pytest

from resolveq.fixer import CommandFixer, FixerCommandError
from resolveq.models import Decision, DecisionState, FixPlan, ReconcileRequest, Stance


def _script(tmp_path, name, body):
    """Write a small command that reads the JSON request from stdin."""
    path = tmp_path / name
    path.write_text("import json, sys\nrequest = json.load(sys.stdin)\n" + body)
    return [sys.executable, str(path)]


@pytest.fixture
def echo_plan(tmp_path):
    return _script(tmp_path, "plan.py", """\
print(json.dumps({
    "files": [request["issue"]["file"]],
    "public_interface": False,
    "shared_state": False,
    "migration": False,
    "summary": "guard " + request["issue"]["category"],
}))
""")


@pytest.fixture
def echo_apply(tmp_path):
    return _script(tmp_path, "apply.py", """\
print(json.dumps({"change_ref": "abc123", "files": request["plan"]["files"],
                  "summary": "applied"}))
""")


@pytest.mark.asyncio
async def test_plan_parses_signals(tmp_path, echo_plan, echo_apply, make_issue):
    fixer = CommandFixer(echo_plan, echo_apply, cwd=tmp_path)
    plan = await fixer.plan(make_issue())
    assert plan.files == ["app/models.py"]
    assert plan.changes_public_interface is False
    assert plan.touches_shared_state is False
    assert plan.requires_migration is False
    assert plan.summary == "guard null-deref"


@pytest.mark.asyncio
async def test_plan_missing_signals_are_unknown(tmp_path, echo_apply, make_issue):
    plan_cmd = _script(tmp_path, "vague.py", 'print(json.dumps({"files": ["a.py"]}))\n')
    plan = await CommandFixer(plan_cmd, echo_apply, cwd=tmp_path).plan(make_issue())
    assert plan.changes_public_interface is None
    assert plan.requires_migration is None


@pytest.mark.asyncio
async def test_apply_reports_change(tmp_path, echo_plan, echo_apply, make_issue):
    fixer = CommandFixer(echo_plan, echo_apply, cwd=tmp_path)
    applied = await fixer.apply(make_issue(), FixPlan(files=["app/models.py"]))
    assert applied.change_ref == "abc123"
    assert applied.artifacts == ["app/models.py"]
    assert applied.summary == "applied"


@pytest.mark.asyncio
async def test_nonzero_exit_raises(tmp_path, echo_apply, make_issue):
    plan_cmd = _script(tmp_path, "fail.py", 'sys.stderr.write("no model"); sys.exit(3)\n')
    fixer = CommandFixer(plan_cmd, echo_apply, cwd=tmp_path)
    with pytest.raises(FixerCommandError, match="exited with 3"):
        await fixer.plan(make_issue())


@pytest.mark.asyncio
async def test_non_json_output_raises(tmp_path, echo_apply, make_issue):
    plan_cmd = _script(tmp_path, "chatty.py", 'print("sure, here you go")\n')
    with pytest.raises(FixerCommandError, match="did not return JSON"):
        await CommandFixer(plan_cmd, echo_apply, cwd=tmp_path).plan(make_issue())


@pytest.mark.asyncio
async def test_missing_command_raises(tmp_path, echo_apply, make_issue):
    fixer = CommandFixer(["/nonexistent/fixer-bin"], echo_apply, cwd=tmp_path)
    with pytest.raises(FixerCommandError, match="Cannot run"):
        await fixer.plan(make_issue())


def test_string_commands_split(tmp_path):
    fixer = CommandFixer("agent plan --fast", "agent 'apply now'", cwd=tmp_path)
    assert fixer.plan_cmd == ["agent", "plan", "--fast"]
    assert fixer.apply_cmd == ["agent", "apply now"]
    assert fixer.reconcile_cmd == []


def _git_repo(path, files):
    """Repo with one commit holding ``files``."""
    path.mkdir()
    for args in (
        ["init", "-b", "main"],
        ["config", "user.email", "test@test.com"],
        ["config", "user.name", "test"],
        ["config", "commit.gpgsign", "false"],
    ):
        subprocess.run(["git", *args], cwd=path, check=True, capture_output=True)
    for name, content in files.items():
        (path / name).parent.mkdir(parents=True, exist_ok=True)
        (path / name).write_text(content)
    subprocess.run(["git", "add", "."], cwd=path, check=True, capture_output=True)
    subprocess.run(["git", "commit", "--no-gpg-sign", "-m", "init"],
                   cwd=path, check=True, capture_output=True)
    return path


@pytest.mark.asyncio
async def test_apply_falls_back_to_git(tmp_path, echo_plan, make_issue):
    """Apply command that only commits: ref and files come from git."""
    repo = _git_repo(tmp_path / "repo", {"app/models.py": "x = 1\n"})
    apply_cmd = _script(tmp_path, "commit.py", """\
import pathlib, subprocess
pathlib.Path("app/models.py").write_text("x = 2\\n")
subprocess.run(["git", "commit", "--no-gpg-sign", "-am", "fix"], check=True,
               capture_output=True)
""")
    fixer = CommandFixer(echo_plan, apply_cmd, cwd=repo)
    applied = await fixer.apply(make_issue(), FixPlan(files=["other.py"]))

    head = subprocess.run(["git", "rev-parse", "--short", "HEAD"], cwd=repo,
                          check=True, capture_output=True, text=True).stdout.strip()
    assert applied.change_ref == head
    assert applied.artifacts == ["app/models.py"]


@pytest.mark.asyncio
async def test_apply_without_commit_ignores_old_head(tmp_path, echo_plan, make_issue):
    """Uncommitted edits are not attributed to the previous commit."""
    repo = _git_repo(tmp_path / "repo", {"unrelated.py": "u = 1\n", "app.py": "a = 1\n"})
    apply_cmd = _script(tmp_path, "edit.py", """\
import pathlib
pathlib.Path("app.py").write_text("a = 2\\n")
""")
    fixer = CommandFixer(echo_plan, apply_cmd, cwd=repo)

    applied = await fixer.apply(make_issue(), FixPlan())
    assert applied.change_ref == ""
    assert applied.artifacts == ["app.py"]

    planned = await fixer.apply(make_issue(), FixPlan(files=["app.py", "lib.py"]))
    assert planned.artifacts == ["app.py", "lib.py"]


# --- Reconcile ---

def _request(make_issue):
    issue = make_issue()
    decision = Decision(state=DecisionState.FIXED, batch_id="b0-1", change_ref="abc")
    return ReconcileRequest(artifact="app/models.py", round=1, batch_id="b0-1",
                            fixes=[(issue, decision)], other_batch_id="b0-2",
                            other_changes=["app/models.py:40:leak -> def: closed"])


@pytest.mark.asyncio
async def test_reconcile_without_command_is_unresolved(tmp_path, echo_plan, echo_apply,
                                                        make_issue):
    fixer = CommandFixer(echo_plan, echo_apply, cwd=tmp_path)
    response = await fixer.reconcile(_request(make_issue))
    assert response.stance == Stance.UNRESOLVED
    assert "No reconcile command" in response.note


@pytest.mark.asyncio
async def test_reconcile_adjusted(tmp_path, echo_plan, echo_apply, make_issue):
    reconcile_cmd = _script(tmp_path, "reconcile.py", """\
key = request["fixes"][0]["issue"]["key"]
print(json.dumps({"stance": "adjusted", "amendments": {key: "abc-2"},
                  "note": "rebased on " + request["other_batch"]}))
""")
    fixer = CommandFixer(echo_plan, echo_apply, cwd=tmp_path, reconcile_cmd=reconcile_cmd)
    response = await fixer.reconcile(_request(make_issue))
    assert response.stance == Stance.ADJUSTED
    assert response.amendments == {"app/models.py:10:null-deref": "abc-2"}
    assert response.note == "rebased on b0-2"


@pytest.mark.asyncio
async def test_reconcile_unknown_stance_is_unresolved(tmp_path, echo_plan, echo_apply,
                                                       make_issue):
    reconcile_cmd = _script(tmp_path, "odd.py", 'print(json.dumps({"stance": "maybe"}))\n')
    fixer = CommandFixer(echo_plan, echo_apply, cwd=tmp_path, reconcile_cmd=reconcile_cmd)
    response = await fixer.reconcile(_request(make_issue))
    assert response.stance == Stance.UNRESOLVED
