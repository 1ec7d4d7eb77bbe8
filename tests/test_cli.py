"""Tests for CLI commands."""

import json
import shlex
import sys

import pytest
from typer.testing import CliRunner

from resolveq.cli import app
from resolveq.dag import ResolveqDAGError

runner = CliRunner()


@pytest.fixture
def fixer_project(tmp_project):
    """tmp_project wired to tiny plan/apply scripts."""
    plan = tmp_project / "plan.py"
    plan.write_text("""\
import json, sys
request = json.load(sys.stdin)
print(json.dumps({"files": [request["issue"]["file"]], "public_interface": False,
                  "shared_state": False, "migration": False}))
""")
    apply = tmp_project / "apply.py"
    apply.write_text("""\
import json, sys
request = json.load(sys.stdin)
print(json.dumps({"change_ref": "cli-%d" % request["issue"]["line"],
                  "files": request["plan"]["files"]}))
""")
    python = shlex.quote(sys.executable)
    (tmp_project / ".resolveq" / "local.config.yaml").write_text(f"""\
workers:
  plan_cmd: {python} {shlex.quote(str(plan))}
  apply_cmd: {python} {shlex.quote(str(apply))}
logging:
  level: WARNING
""")
    return tmp_project


def _json_output(result):
    return json.loads(result.output[result.output.index("{"):])


def test_init_creates_structure(tmp_path, monkeypatch):
    """resolveq init creates .resolveq/ + config.yaml + .gitignore."""
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0
    assert (tmp_path / ".resolveq" / "config.yaml").exists()
    assert (tmp_path / ".resolveq" / "local.config.yaml").exists()
    gitignore = (tmp_path / ".gitignore").read_text()
    assert ".resolveq/local.config.yaml" in gitignore
    assert ".resolveq/state.db" in gitignore


def test_init_idempotent(tmp_path, monkeypatch):
    """resolveq init repeated does not overwrite existing config."""
    monkeypatch.chdir(tmp_path)
    runner.invoke(app, ["init"])
    (tmp_path / ".resolveq" / "config.yaml").write_text("custom: true")
    runner.invoke(app, ["init"])
    assert "custom: true" in (tmp_path / ".resolveq" / "config.yaml").read_text()


def test_init_config_loads(tmp_path, monkeypatch):
    """The generated template is a valid config."""
    monkeypatch.chdir(tmp_path)
    runner.invoke(app, ["init"])
    result = runner.invoke(app, ["config"])
    assert result.exit_code == 0
    assert "batch_size: 5" in result.output


def test_plan_shows_batches(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["plan", "issues.yaml"])
    assert result.exit_code == 0
    assert "Issues: 3" in result.output
    assert "Edges: 1" in result.output
    assert "b0-1" in result.output
    assert "app/views.py:4:missing-auth" in result.output


def test_plan_missing_file(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["plan", "nope.yaml"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_plan_invalid_batch_size(tmp_project, monkeypatch):
    (tmp_project / ".resolveq" / "config.yaml").write_text("scheduling:\n  batch_size: 0\n")
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["plan", "issues.yaml"])
    assert result.exit_code == 1
    assert "batch_size" in result.output


def test_plan_malformed_issue(tmp_project, monkeypatch):
    (tmp_project / "bad.yaml").write_text("- file: a.py\n  line: 1\n")
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["plan", "bad.yaml"])
    assert result.exit_code == 1
    assert "missing fields" in result.output


def test_plan_scheduling_error_exits_cleanly(tmp_project, monkeypatch):
    def _broken(graph, issues, batch_size):
        raise ResolveqDAGError("Cannot schedule issues with unresolved dependencies")

    monkeypatch.setattr("resolveq.pipeline.schedule_batches", _broken)
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["plan", "issues.yaml"])
    assert result.exit_code == 1
    assert "Error: Cannot schedule" in result.output
    assert result.exception is None or isinstance(result.exception, SystemExit)


def test_deps_shows_edges(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["deps", "issues.yaml"])
    assert result.exit_code == 0
    assert "app/models.py:10:null-deref ← app/models.py:15:sql-injection (w=2)" in result.output
    assert "app/views.py:4:missing-auth (root)" in result.output


def test_status_empty_project(tmp_project, monkeypatch):
    """Empty project status doesn't crash."""
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "No runs yet" in result.output


def test_run_requires_commands(tmp_project, monkeypatch):
    (tmp_project / ".resolveq" / "local.config.yaml").write_text(
        "workers:\n  plan_cmd: ''\n"
    )
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["run", "issues.yaml"])
    assert result.exit_code == 1
    assert "plan_cmd" in result.output


def test_run_json_ledger(fixer_project, monkeypatch):
    monkeypatch.chdir(fixer_project)
    result = runner.invoke(app, ["run", "issues.yaml", "--json"])
    assert result.exit_code == 0, result.output

    data = _json_output(result)
    assert data["counts"] == {"fixed": 3, "deferred": 0, "false_positive": 0, "blocked": 0}
    refs = {e["key"]: e["change"] for e in data["fixed"]}
    assert refs["app/views.py:4:missing-auth"] == "cli-4"
    assert data["touched"] == ["app/models.py", "app/views.py"]


def test_run_closes_notifier(fixer_project, monkeypatch):
    closed = []

    class _Notifier:
        def __init__(self, webhook_url, events):
            pass

        async def notify(self, event, run_id, ledger=None, error=""):
            pass

        async def close(self):
            closed.append(True)

    monkeypatch.setattr("resolveq.notifier.Notifier", _Notifier)
    monkeypatch.chdir(fixer_project)
    result = runner.invoke(app, ["run", "issues.yaml"])
    assert result.exit_code == 0, result.output
    assert closed == [True]


def test_run_db_failure_opens_no_notifier(fixer_project, monkeypatch):
    created = []

    async def _no_db(root):
        raise OSError("disk full")

    monkeypatch.setattr("resolveq.notifier.Notifier",
                        lambda **kw: created.append(kw))
    monkeypatch.setattr("resolveq.cli._get_db", _no_db)
    monkeypatch.chdir(fixer_project)
    result = runner.invoke(app, ["run", "issues.yaml"])
    assert isinstance(result.exception, OSError)
    assert created == []


def test_run_then_inspect(fixer_project, monkeypatch):
    monkeypatch.chdir(fixer_project)
    result = runner.invoke(app, ["run", "issues.yaml"])
    assert result.exit_code == 0, result.output
    assert "Run complete" in result.output
    assert "fixed: 3" in result.output

    status = runner.invoke(app, ["status"])
    assert "completed" in status.output
    run_id = status.output.split("─" * 60)[1].split()[0]

    ledger = runner.invoke(app, ["ledger", "--json"])
    assert ledger.exit_code == 0
    data = _json_output(ledger)
    assert data["run"] == run_id
    assert len(data["fixed"]) == 3

    logs = runner.invoke(app, ["logs", run_id])
    assert "run.started" in logs.output
    assert "run.completed" in logs.output


def test_ledger_unknown_run(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["ledger", "nope"])
    assert result.exit_code == 0
    assert "not found" in result.output


def test_logs_unknown_run(tmp_project, monkeypatch):
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["logs", "nope"])
    assert "No logs" in result.output


def test_config_show(tmp_project, monkeypatch):
    """resolveq config shows merged config."""
    monkeypatch.chdir(tmp_project)
    result = runner.invoke(app, ["config"])
    assert result.exit_code == 0
    assert "max_workers: 2" in result.output
