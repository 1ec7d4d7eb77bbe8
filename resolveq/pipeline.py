"""Core execution pipeline — the layer-by-layer orchestration loop."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import anyio
import structlog

from .aggregator import aggregate, apply_overrides
from .config import Config
from .conflict import resolve_conflicts
from .dag import DependencyGraph, break_cycles, build_dependency_graph, check_acyclic
from .db import Database
from .errors import InvalidConfigurationError
from .fixer import CommandFixer
from .models import Batch, ConflictReport, Issue, Ledger, WorkerResult
from .notifier import Notifier
from .scheduler import group_layers, schedule_batches
from .store import IssueStore
from .worker import LocationValidator, ResolutionWorker, Worker, dispatch_batch

logger = structlog.get_logger()


@dataclass
class RunContext:
    """Everything one run owns. Passed explicitly, never stored globally."""

    run_id: str
    config: Config
    store: IssueStore
    graph: DependencyGraph
    batches: list[Batch]
    assignments: dict[str, Worker] = field(default_factory=dict)
    results: list[WorkerResult] = field(default_factory=list)
    reports: list[ConflictReport] = field(default_factory=list)
    db: Database | None = None
    log: Any = None

    async def event(self, name: str, detail: dict | None = None) -> None:
        if self.db is not None:
            await self.db.log_event(self.run_id, name, detail)


@dataclass
class RunPlan:
    store: IssueStore
    graph: DependencyGraph
    batches: list[Batch]


def plan_run(issues: list[Issue], config: Config) -> RunPlan:
    """Ingest, analyze and schedule without dispatching anything."""
    store = IssueStore.ingest(issues)
    graph = build_dependency_graph(store.issues, config.scheduling.line_window)
    break_cycles(graph)
    check_acyclic(graph.to_mapping())
    batches = schedule_batches(graph, store.issues, config.scheduling.batch_size)
    return RunPlan(store=store, graph=graph, batches=batches)


def build_workers(config: Config) -> list[Worker]:
    """One ResolutionWorker per pool slot, backed by the configured commands."""
    w = config.workers
    if not w.plan_cmd or not w.apply_cmd:
        raise InvalidConfigurationError(
            "workers.plan_cmd and workers.apply_cmd must be set to run fixes"
        )
    root = Path(config.project_root or ".")
    return [
        ResolutionWorker(
            name=f"worker-{n}",
            validator=LocationValidator(root),
            fixer=CommandFixer(
                plan_cmd=w.plan_cmd,
                apply_cmd=w.apply_cmd,
                cwd=root,
                reconcile_cmd=w.reconcile_cmd or None,
            ),
            max_files=config.risk.max_files,
        )
        for n in range(1, w.max_workers + 1)
    ]


def assign_workers(batches: list[Batch], workers: list[Worker]) -> dict[str, Worker]:
    """Round-robin batches over the pool, restarting at each layer."""
    if not workers:
        raise InvalidConfigurationError("At least one worker is required")
    assignments: dict[str, Worker] = {}
    for layer in group_layers(batches):
        for n, batch in enumerate(layer):
            assignments[batch.id] = workers[n % len(workers)]
    return assignments


async def _run_layer(
    ctx: RunContext,
    layer: list[Batch],
    limiter: anyio.CapacityLimiter,
    finished: dict[str, anyio.Event],
) -> list[WorkerResult]:
    results: list[WorkerResult] = []
    timeout = ctx.config.workers.batch_timeout_sec

    async def _run(batch: Batch) -> None:
        for dep in batch.wait_on:
            await finished[dep].wait()
        async with limiter:
            worker = ctx.assignments[batch.id]
            ctx.log.info(
                "batch_dispatched",
                batch=batch.id,
                worker=worker.name,
                mode=batch.mode.value,
                issues=len(batch.issues),
            )
            result = await dispatch_batch(worker, batch, timeout)
        results.append(result)
        finished[batch.id].set()
        ctx.log.info("batch_completed", batch=batch.id, status=result.status.value)

    async with anyio.create_task_group() as tg:
        for batch in layer:
            tg.start_soon(_run, batch)

    return sorted(results, key=lambda r: r.batch_id)


def _record(ctx: RunContext, results: list[WorkerResult]) -> None:
    for result in results:
        for issue, decision in result.decisions:
            ctx.store.set_decision(issue.key, decision)


def _revise(ctx: RunContext, results: list[WorkerResult], reports: list[ConflictReport]) -> None:
    current = {
        issue.key: ctx.store.get_decision(issue.key)
        for result in results
        for issue, _ in result.decisions
    }
    for key, decision in apply_overrides(current, reports).items():
        if decision != current[key]:
            ctx.store.revise(key, decision)


async def run_pipeline(
    issues: list[Issue],
    workers: list[Worker],
    config: Config,
    db: Database | None = None,
    notifier: Notifier | None = None,
    run_id: str | None = None,
    source: str = "",
) -> Ledger:
    """Resolve an issue set and return the final ledger.

    Layers run one after another. Within a layer, batches run concurrently
    up to ``workers.max_workers``; conflicts among a layer's results are
    negotiated before the next layer starts.
    """
    run_id = run_id or uuid.uuid4().hex[:12]
    log = logger.bind(run_id=run_id)

    if db is not None:
        await db.create_run(run_id, source=source, total=len(issues))

    try:
        plan = plan_run(issues, config)
        ctx = RunContext(
            run_id=run_id,
            config=config,
            store=plan.store,
            graph=plan.graph,
            batches=plan.batches,
            assignments=assign_workers(plan.batches, workers),
            db=db,
            log=log,
        )
        await ctx.event("run.started", {
            "issues": len(issues),
            "edges": [[e.dependent, e.dependency, e.weight] for e in plan.graph.edges],
            "batches": [b.id for b in plan.batches],
        })
        log.info("run_started", issues=len(issues), batches=len(plan.batches))

        limiter = anyio.CapacityLimiter(config.workers.max_workers)
        finished = {b.id: anyio.Event() for b in ctx.batches}

        for layer in group_layers(ctx.batches):
            layer_results = await _run_layer(ctx, layer, limiter, finished)
            _record(ctx, layer_results)
            ctx.results.extend(layer_results)

            layer_workers = {b.id: ctx.assignments[b.id] for b in layer}
            reports = await resolve_conflicts(
                layer_results, layer_workers, config.conflicts.max_rounds,
                timeout=config.conflicts.round_timeout_sec,
            )
            _revise(ctx, layer_results, reports)
            ctx.reports.extend(reports)

            await ctx.event("layer.completed", {
                "layer": layer[0].layer,
                "batches": {r.batch_id: r.status.value for r in layer_results},
                "conflicts": [
                    {"artifact": c.artifact, "outcome": c.outcome.value}
                    for c in reports
                ],
            })

        ctx.store.finalize()
        ledger = aggregate(ctx.results, ctx.reports)
    except Exception as exc:
        log.error("run_failed", error=str(exc))
        if db is not None:
            await db.log_event(run_id, "run.failed", {"error": str(exc)})
            await db.finish_run(run_id, "failed", error=str(exc))
        if notifier is not None:
            await notifier.notify("run.failed", run_id, error=str(exc))
        raise

    log.info("run_completed", **ledger.counts, escalated=len(ledger.unresolved))
    if db is not None:
        await db.save_ledger(run_id, ledger)
        await db.log_event(run_id, "run.completed", ledger.counts)
        await db.finish_run(run_id, "completed", counts=ledger.counts)
    if notifier is not None:
        await notifier.notify("run.completed", run_id, ledger)
        if ledger.unresolved:
            await notifier.notify("run.escalated", run_id, ledger)
    return ledger
