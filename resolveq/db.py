"""SQLite run history with WAL mode."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import aiosqlite

from .models import DecisionState, Ledger

_SCHEMA = """
CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    source TEXT DEFAULT '',
    status TEXT NOT NULL DEFAULT 'running',
    total INTEGER DEFAULT 0,
    counts TEXT DEFAULT '{}',
    error TEXT DEFAULT '',
    started_at TEXT NOT NULL,
    finished_at TEXT DEFAULT ''
);

CREATE TABLE IF NOT EXISTS decisions (
    run_id TEXT NOT NULL REFERENCES runs(id),
    issue_key TEXT NOT NULL,
    state TEXT NOT NULL,
    reasoning TEXT DEFAULT '',
    batch_id TEXT DEFAULT '',
    change_ref TEXT DEFAULT '',
    PRIMARY KEY (run_id, issue_key)
);

CREATE TABLE IF NOT EXISTS conflicts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES runs(id),
    artifact TEXT NOT NULL,
    batch_a TEXT NOT NULL,
    batch_b TEXT NOT NULL,
    outcome TEXT NOT NULL,
    rounds INTEGER DEFAULT 0,
    downgraded TEXT DEFAULT '[]',
    created_at TEXT NOT NULL,
    UNIQUE(run_id, artifact, batch_a, batch_b)
);

CREATE TABLE IF NOT EXISTS run_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL,
    event TEXT NOT NULL,
    detail TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_decisions_run ON decisions(run_id);
CREATE INDEX IF NOT EXISTS idx_conflicts_run ON conflicts(run_id);
CREATE INDEX IF NOT EXISTS idx_run_log_run ON run_log(run_id);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        if self.db_path != ":memory:":
            await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    # ---------------------------------------------------------------
    # Runs
    # ---------------------------------------------------------------

    async def create_run(self, run_id: str, source: str = "", total: int = 0) -> None:
        await self._conn.execute(
            "INSERT INTO runs (id, source, status, total, started_at) VALUES (?,?,?,?,?)",
            (run_id, source, "running", total, _now()),
        )
        await self._conn.commit()

    async def finish_run(
        self,
        run_id: str,
        status: str,
        counts: dict[str, int] | None = None,
        error: str = "",
    ) -> None:
        await self._conn.execute(
            """UPDATE runs SET status = ?, counts = ?, error = ?, finished_at = ?
               WHERE id = ?""",
            (status, json.dumps(counts or {}), error, _now(), run_id),
        )
        await self._conn.commit()

    async def get_run(self, run_id: str) -> dict | None:
        cursor = await self._conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,))
        row = await cursor.fetchone()
        return self._row_to_run(row) if row else None

    async def list_runs(self) -> list[dict]:
        cursor = await self._conn.execute(
            "SELECT * FROM runs ORDER BY started_at DESC, id DESC"
        )
        rows = await cursor.fetchall()
        return [self._row_to_run(r) for r in rows]

    async def latest_run(self) -> dict | None:
        runs = await self.list_runs()
        return runs[0] if runs else None

    # ---------------------------------------------------------------
    # Ledger
    # ---------------------------------------------------------------

    async def save_ledger(self, run_id: str, ledger: Ledger) -> None:
        buckets = [
            (DecisionState.FIXED, ledger.fixed),
            (DecisionState.DEFERRED, ledger.deferred),
            (DecisionState.FALSE_POSITIVE, ledger.false_positive),
            (DecisionState.BLOCKED, ledger.blocked),
        ]
        for state, entries in buckets:
            for e in entries:
                await self._conn.execute(
                    """INSERT INTO decisions
                       (run_id, issue_key, state, reasoning, batch_id, change_ref)
                       VALUES (?,?,?,?,?,?)
                       ON CONFLICT(run_id, issue_key) DO UPDATE SET
                         state=excluded.state,
                         reasoning=excluded.reasoning,
                         batch_id=excluded.batch_id,
                         change_ref=excluded.change_ref
                    """,
                    (run_id, e.key, state.value, e.reasoning, e.batch_id, e.change_ref),
                )
        now = _now()
        for c in ledger.conflicts:
            await self._conn.execute(
                """INSERT INTO conflicts
                   (run_id, artifact, batch_a, batch_b, outcome, rounds, downgraded, created_at)
                   VALUES (?,?,?,?,?,?,?,?)
                   ON CONFLICT(run_id, artifact, batch_a, batch_b) DO UPDATE SET
                     outcome=excluded.outcome,
                     rounds=excluded.rounds,
                     downgraded=excluded.downgraded
                """,
                (
                    run_id, c.artifact, c.batch_a, c.batch_b, c.outcome.value,
                    c.rounds, json.dumps(c.downgraded), now,
                ),
            )
        await self._conn.commit()

    async def get_decisions(self, run_id: str) -> list[dict]:
        cursor = await self._conn.execute(
            "SELECT * FROM decisions WHERE run_id = ? ORDER BY issue_key",
            (run_id,),
        )
        rows = await cursor.fetchall()
        return [
            {
                "key": r["issue_key"],
                "state": r["state"],
                "reasoning": r["reasoning"] or "",
                "batch": r["batch_id"] or "",
                "change": r["change_ref"] or "",
            }
            for r in rows
        ]

    async def get_conflicts(self, run_id: str) -> list[dict]:
        cursor = await self._conn.execute(
            "SELECT * FROM conflicts WHERE run_id = ? ORDER BY id",
            (run_id,),
        )
        rows = await cursor.fetchall()
        return [
            {
                "artifact": r["artifact"],
                "batches": [r["batch_a"], r["batch_b"]],
                "outcome": r["outcome"],
                "rounds": r["rounds"],
                "downgraded": json.loads(r["downgraded"]) if r["downgraded"] else [],
            }
            for r in rows
        ]

    # ---------------------------------------------------------------
    # Run Log
    # ---------------------------------------------------------------

    async def log_event(
        self, run_id: str, event: str, detail: dict | None = None
    ) -> None:
        await self._conn.execute(
            "INSERT INTO run_log (run_id, event, detail, created_at) VALUES (?,?,?,?)",
            (run_id, event, json.dumps(detail) if detail else None, _now()),
        )
        await self._conn.commit()

    async def get_logs(self, run_id: str) -> list[dict]:
        cursor = await self._conn.execute(
            "SELECT * FROM run_log WHERE run_id = ? ORDER BY id",
            (run_id,),
        )
        rows = await cursor.fetchall()
        return [
            {
                "event": r["event"],
                "detail": json.loads(r["detail"]) if r["detail"] else None,
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    # ---------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------

    @staticmethod
    def _row_to_run(row) -> dict:
        return {
            "id": row["id"],
            "source": row["source"] or "",
            "status": row["status"],
            "total": row["total"],
            "counts": json.loads(row["counts"]) if row["counts"] else {},
            "error": row["error"] or "",
            "started_at": row["started_at"],
            "finished_at": row["finished_at"] or "",
        }
