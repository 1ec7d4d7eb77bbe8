"""Shared fixtures for resolveq tests."""

import anyio
import pytest
import pytest_asyncio

from resolveq.models import (
    AppliedFix,
    FixPlan,
    Issue,
    ReconcileResponse,
    Severity,
    Stance,
)
from resolveq.worker import ResolutionWorker, Validation, ValidationUnavailable


class ScriptedValidator:
    """Validator whose answers are fixed up front."""

    def __init__(self, false_positives=(), missing=()):
        self.false_positives = set(false_positives)
        self.missing = set(missing)
        self.seen = []

    async def validate(self, issue):
        self.seen.append(issue.key)
        if issue.key in self.missing:
            raise ValidationUnavailable(f"{issue.file} not found")
        if issue.key in self.false_positives:
            return Validation(holds=False, reasoning="Condition no longer present")
        return Validation(holds=True, reasoning="Still present")


class ScriptedFixer:
    """Fixer with canned plans, failures, delays and reconcile stances."""

    def __init__(self, plans=None, failures=(), slow=None, stance=Stance.HOLDS,
                 amendments=None):
        self.plans = plans or {}
        self.failures = set(failures)
        self.slow = slow or {}
        self.stance = stance
        self.amendments = amendments or {}
        self.applied = []
        self.reconcile_calls = []

    async def plan(self, issue):
        if issue.key in self.plans:
            return self.plans[issue.key]
        return FixPlan(
            files=[issue.file],
            changes_public_interface=False,
            touches_shared_state=False,
            requires_migration=False,
        )

    async def apply(self, issue, plan):
        if issue.key in self.slow:
            await anyio.sleep(self.slow[issue.key])
        if issue.key in self.failures:
            raise RuntimeError("patch did not apply")
        self.applied.append(issue.key)
        return AppliedFix(
            change_ref=f"c{len(self.applied)}-{issue.line}",
            artifacts=list(plan.files),
            summary=f"Fixed {issue.category}",
        )

    async def reconcile(self, request):
        self.reconcile_calls.append(request)
        amendments = {
            k: v for k, v in self.amendments.items()
            if any(i.key == k for i, _ in request.fixes)
        }
        return ReconcileResponse(stance=self.stance, amendments=amendments,
                                 note=f"{self.stance.value} in round {request.round}")


def low_risk_plan(*files):
    return FixPlan(files=list(files), changes_public_interface=False,
                   touches_shared_state=False, requires_migration=False)


@pytest.fixture
def make_issue():
    """Factory for issues with sensible defaults."""
    def _make(file="app/models.py", line=10, category="null-deref",
              severity=Severity.HIGH, function=None, **kw):
        return Issue(file=file, line=line, category=category,
                     severity=severity, function=function, **kw)
    return _make


@pytest.fixture
def make_worker():
    """Factory for ResolutionWorkers backed by scripted collaborators."""
    def _make(name="w1", false_positives=(), missing=(), max_files=3, **fixer_kw):
        return ResolutionWorker(
            name=name,
            validator=ScriptedValidator(false_positives, missing),
            fixer=ScriptedFixer(**fixer_kw),
            max_files=max_files,
        )
    return _make


@pytest.fixture
def plan_for():
    """Build a low-risk FixPlan touching the given files."""
    return low_risk_plan


@pytest.fixture
def tmp_project(tmp_path):
    """Temporary project: .resolveq/config.yaml + source files + issues.yaml"""
    cfg_dir = tmp_path / ".resolveq"
    cfg_dir.mkdir()
    (cfg_dir / "config.yaml").write_text("""\
scheduling:
  batch_size: 5
  line_window: 30
workers:
  max_workers: 2
  batch_timeout_sec: 30
  plan_cmd: "fixer plan"
  apply_cmd: "fixer apply"
conflicts:
  max_rounds: 2
risk:
  max_files: 3
notify:
  webhook_url: ""
  events:
    - run.completed
    - run.failed
""")

    src = tmp_path / "app"
    src.mkdir()
    (src / "models.py").write_text("\n".join(f"line {n}" for n in range(1, 61)) + "\n")
    (src / "views.py").write_text("\n".join(f"line {n}" for n in range(1, 21)) + "\n")

    (tmp_path / "issues.yaml").write_text("""\
issues:
  - file: app/models.py
    line: 10
    category: null-deref
    severity: high
    function: save
    description: save() dereferences a missing owner
  - file: app/models.py
    line: 15
    category: sql-injection
    severity: critical
    function: save
  - file: app/views.py
    line: 4
    category: missing-auth
    severity: medium
""")
    return tmp_path


@pytest_asyncio.fixture
async def db(tmp_path):
    """Real SQLite file database (WAL mode)."""
    from resolveq.db import Database
    db = Database(str(tmp_path / "test.db"))
    await db.init()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def memory_db():
    """In-memory database for fast unit tests."""
    from resolveq.db import Database
    db = Database(":memory:")
    await db.init()
    yield db
    await db.close()
