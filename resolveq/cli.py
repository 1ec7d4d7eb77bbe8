"""resolveq CLI — typer-based command interface."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer

from .errors import ResolveqError

app = typer.Typer(
    name="resolveq",
    help="resolveq — issue-resolution orchestrator",
    no_args_is_help=True,
)

# -------------------------------------------------------------------
# Templates
# -------------------------------------------------------------------

DEFAULT_CONFIG_TEMPLATE = """\
# .resolveq/config.yaml — team-shared configuration
scheduling:
  batch_size: 5
  line_window: 30

workers:
  max_workers: 4
  batch_timeout_sec: 600
  # Commands receive the issue as JSON on stdin and answer with JSON.
  plan_cmd: ""
  apply_cmd: ""
  reconcile_cmd: ""

conflicts:
  max_rounds: 2
  round_timeout_sec: 300

risk:
  max_files: 3

notify:
  webhook_url: ""
  events:
    - run.completed
    - run.escalated
    - run.failed

logging:
  level: INFO
  json: false
"""

DEFAULT_LOCAL_CONFIG_TEMPLATE = """\
# .resolveq/local.config.yaml — personal overrides (DO NOT commit)
# workers:
#   max_workers: 2
# logging:
#   level: DEBUG
"""

GITIGNORE_ENTRIES = [
    ".resolveq/local.config.yaml",
    ".resolveq/state.db",
    ".resolveq/state.db-wal",
    ".resolveq/state.db-shm",
]

STATE_ICONS = {
    "fixed": "✅",
    "deferred": "⏭️",
    "false_positive": "➖",
    "blocked": "❌",
}


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def _get_project_root() -> Path:
    return Path.cwd()


def _run_async(coro):
    """Run an async coroutine from sync context."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


def _fail(exc: Exception) -> None:
    typer.echo(f"  Error: {exc}", err=True)
    raise typer.Exit(1)


def _load(root: Path):
    """Load config and set up logging from it."""
    from .config import load_config
    from .log import configure_logging

    try:
        config = load_config(root)
    except ResolveqError as e:
        _fail(e)
    configure_logging(level=config.logging.level, json_output=config.logging.json)
    return config


def _load_issues(path: Path):
    from .intake import load_issues

    try:
        return load_issues(path)
    except FileNotFoundError:
        _fail(ResolveqError(f"Issues file not found: {path}"))
    except ResolveqError as e:
        _fail(e)


async def _get_db(project_root: Path):
    from .db import Database
    db_path = project_root / ".resolveq" / "state.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = Database(str(db_path))
    await db.init()
    return db


def _echo_entries(title: str, entries: list[dict]) -> None:
    if not entries:
        return
    typer.echo(f"\n  {title} ({len(entries)})")
    for e in entries:
        batch = f" [{e['batch']}]" if e.get("batch") else ""
        typer.echo(f"    {e['key']}{batch}: {e['reasoning']}")


def _echo_ledger(data: dict) -> None:
    counts = data["counts"]
    typer.echo(
        "  "
        + " · ".join(f"{STATE_ICONS.get(k, '')} {k}: {v}" for k, v in counts.items())
    )
    _echo_entries("Fixed", data["fixed"])
    _echo_entries("Deferred", data["deferred"])
    _echo_entries("False positive", data["falsePositive"])
    _echo_entries("Blocked", data["blocked"])
    if data["conflicts"]:
        typer.echo(f"\n  Conflicts ({len(data['conflicts'])})")
        for c in data["conflicts"]:
            typer.echo(
                f"    {c['artifact']}: {' vs '.join(c['batches'])} → "
                f"{c['outcome']} ({c['rounds']} round(s))"
            )
    if data.get("touched"):
        typer.echo(f"\n  Touched: {', '.join(data['touched'])}")
    typer.echo("")


# -------------------------------------------------------------------
# Commands
# -------------------------------------------------------------------

@app.command()
def init():
    """Initialize resolveq in the current project."""
    root = _get_project_root()

    cfg_dir = root / ".resolveq"
    cfg_dir.mkdir(exist_ok=True)

    config_path = cfg_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text(DEFAULT_CONFIG_TEMPLATE)
        typer.echo(f"  Created {config_path.relative_to(root)}")
    else:
        typer.echo(f"  Exists  {config_path.relative_to(root)}")

    local_path = cfg_dir / "local.config.yaml"
    if not local_path.exists():
        local_path.write_text(DEFAULT_LOCAL_CONFIG_TEMPLATE)
        typer.echo(f"  Created {local_path.relative_to(root)}")

    gitignore_path = root / ".gitignore"
    existing = ""
    if gitignore_path.exists():
        existing = gitignore_path.read_text()
    additions = [e for e in GITIGNORE_ENTRIES if e not in existing]
    if additions:
        with open(gitignore_path, "a") as f:
            if existing and not existing.endswith("\n"):
                f.write("\n")
            f.write("# resolveq\n")
            for entry in additions:
                f.write(f"{entry}\n")
        typer.echo("  Updated .gitignore")

    typer.echo("\n  resolveq initialized. Run `resolveq plan ISSUES` to preview.")


@app.command()
def plan(issues_file: Path = typer.Argument(..., help="YAML or JSON issue list")):
    """Show the batch schedule (dry-run)."""
    root = _get_project_root()
    config = _load(root)
    issues = _load_issues(issues_file)

    if not issues:
        typer.echo("  No issues found.")
        return

    from .pipeline import plan_run

    try:
        run_plan = plan_run(issues, config)
    except ResolveqError as e:
        _fail(e)

    typer.echo("")
    typer.echo("  resolveq — Resolution Plan")
    typer.echo(
        f"  Issues: {len(issues)} · Edges: {len(run_plan.graph.weights)}"
        f" · Batches: {len(run_plan.batches)}"
    )
    typer.echo("")
    typer.echo(f"  {'Batch':<8} {'Layer':<6} {'Mode':<11} {'Waits on':<15} {'Issues'}")
    typer.echo(f"  {'---':<8} {'---':<6} {'---':<11} {'---':<15} {'---'}")
    for b in run_plan.batches:
        wait = ", ".join(b.wait_on) if b.wait_on else "—"
        typer.echo(
            f"  {b.id:<8} {b.layer:<6} {b.mode.value:<11} {wait:<15} {', '.join(b.keys)}"
        )
    typer.echo("")
    typer.echo(
        f"  Workers: {config.workers.max_workers} · "
        f"Timeout: {config.workers.batch_timeout_sec:g}s · "
        f"Batch size: {config.scheduling.batch_size}"
    )
    typer.echo("")


@app.command()
def deps(issues_file: Path = typer.Argument(..., help="YAML or JSON issue list")):
    """Show the issue dependency graph."""
    root = _get_project_root()
    config = _load(root)
    issues = _load_issues(issues_file)
    if not issues:
        typer.echo("  No issues found.")
        return

    from .dag import build_dependency_graph, topological_order
    from .store import IssueStore

    try:
        store = IssueStore.ingest(issues)
    except ResolveqError as e:
        _fail(e)
    graph = build_dependency_graph(store.issues, config.scheduling.line_window)
    order = topological_order(graph.to_mapping())

    typer.echo("\n  Issue Dependency Graph")
    typer.echo("  " + "─" * 40)
    for node in order:
        deps_set = graph.dependencies_of(node)
        if deps_set:
            labels = [f"{d} (w={graph.weight(node, d)})" for d in sorted(deps_set)]
            typer.echo(f"  {node} ← {', '.join(labels)}")
        else:
            typer.echo(f"  {node} (root)")
    typer.echo("")


@app.command()
def run(
    issues_file: Path = typer.Argument(..., help="YAML or JSON issue list"),
    as_json: bool = typer.Option(False, "--json", help="Print the ledger as JSON"),
):
    """Resolve every issue in ISSUES_FILE."""
    root = _get_project_root()
    config = _load(root)
    issues = _load_issues(issues_file)

    async def _run():
        from .notifier import Notifier
        from .pipeline import build_workers, run_pipeline

        workers = build_workers(config)
        db = await _get_db(root)
        try:
            notifier = Notifier(
                webhook_url=config.notify.webhook_url,
                events=config.notify.events,
            )
            try:
                return await run_pipeline(
                    issues, workers, config,
                    db=db, notifier=notifier, source=str(issues_file),
                )
            finally:
                await notifier.close()
        finally:
            await db.close()

    if not as_json:
        typer.echo("  resolveq — Starting run...")
    try:
        ledger = _run_async(_run())
    except ResolveqError as e:
        _fail(e)

    if as_json:
        typer.echo(json.dumps(ledger.to_dict(), indent=2, ensure_ascii=False))
        return
    typer.echo("  resolveq — Run complete.")
    _echo_ledger(ledger.to_dict())


@app.command()
def status():
    """Show recent runs."""
    root = _get_project_root()

    async def _status():
        db = await _get_db(root)
        try:
            return await db.list_runs()
        finally:
            await db.close()

    runs = _run_async(_status())
    if not runs:
        typer.echo("  No runs yet.")
        return

    typer.echo("\n  resolveq — Runs")
    typer.echo("  " + "─" * 60)
    for r in runs:
        counts = " ".join(f"{k}={v}" for k, v in r["counts"].items())
        typer.echo(f"  {r['id']:<14} {r['status']:<10} {r['started_at'][:19]}  {counts}")
        if r["error"]:
            typer.echo(f"    {r['error']}")
    typer.echo("")


@app.command()
def ledger(
    run_id: str = typer.Argument(None, help="Run ID (defaults to latest)"),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
):
    """Show the final ledger of a run."""
    root = _get_project_root()

    async def _ledger():
        db = await _get_db(root)
        try:
            run_row = await db.get_run(run_id) if run_id else await db.latest_run()
            if not run_row:
                return None, [], []
            return (
                run_row,
                await db.get_decisions(run_row["id"]),
                await db.get_conflicts(run_row["id"]),
            )
        finally:
            await db.close()

    run_row, decisions, conflicts = _run_async(_ledger())
    if not run_row:
        typer.echo(f"  Run '{run_id}' not found." if run_id else "  No runs yet.")
        return

    def _bucket(state: str) -> list[dict]:
        return [d for d in decisions if d["state"] == state]

    data = {
        "fixed": _bucket("fixed"),
        "deferred": _bucket("deferred"),
        "falsePositive": _bucket("false_positive"),
        "blocked": _bucket("blocked"),
        "conflicts": conflicts,
        "counts": run_row["counts"],
    }
    if as_json:
        typer.echo(json.dumps({"run": run_row["id"], **data}, indent=2, ensure_ascii=False))
        return
    typer.echo(f"\n  Ledger — {run_row['id']} ({run_row['status']})")
    typer.echo("  " + "─" * 50)
    _echo_ledger(data)


@app.command()
def logs(run_id: str = typer.Argument(..., help="Run ID")):
    """Show run events."""
    root = _get_project_root()

    async def _logs():
        db = await _get_db(root)
        try:
            return await db.get_logs(run_id)
        finally:
            await db.close()

    entries = _run_async(_logs())
    if not entries:
        typer.echo(f"  No logs for '{run_id}'.")
        return
    typer.echo(f"\n  Logs — {run_id}")
    typer.echo("  " + "─" * 50)
    for entry in entries:
        typer.echo(f"  [{entry['created_at']}] {entry['event']}")
        if entry.get("detail"):
            typer.echo(f"    {json.dumps(entry['detail'], ensure_ascii=False)}")


@app.command("config")
def config_show():
    """Show merged configuration."""
    root = _get_project_root()

    import yaml
    from dataclasses import asdict

    config = _load(root)
    data = asdict(config)

    typer.echo("\n  resolveq — Merged Configuration")
    typer.echo("  " + "─" * 40)
    typer.echo(yaml.dump(data, default_flow_style=False, allow_unicode=True))


if __name__ == "__main__":
    app()
