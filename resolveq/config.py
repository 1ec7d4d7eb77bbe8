"""Three-layer config loading and merging."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .conflict import MAX_ROUNDS
from .errors import InvalidConfigurationError


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass
class SchedulingConfig:
    batch_size: int = 5
    line_window: int = 30


@dataclass
class WorkersConfig:
    max_workers: int = 4
    batch_timeout_sec: float = 600
    plan_cmd: str = ""
    apply_cmd: str = ""
    reconcile_cmd: str = ""


@dataclass
class ConflictsConfig:
    max_rounds: int = MAX_ROUNDS
    round_timeout_sec: float = 300


@dataclass
class RiskConfig:
    max_files: int = 3


@dataclass
class NotifyConfig:
    webhook_url: str = ""
    events: list[str] = field(default_factory=lambda: [
        "run.completed", "run.escalated", "run.failed",
    ])


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Config:
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    workers: WorkersConfig = field(default_factory=WorkersConfig)
    conflicts: ConflictsConfig = field(default_factory=ConflictsConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    project_root: str = ""


# ---------------------------------------------------------------------------
# Deep merge
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """Field-level deep merge. Lists are replaced, None values ignored."""
    result = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# ---------------------------------------------------------------------------
# Dict → Config mapping
# ---------------------------------------------------------------------------

def _section(data: dict, name: str) -> dict:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


def _dict_to_config(data: dict, project_root: str) -> Config:
    cfg = Config(project_root=project_root)

    s = _section(data, "scheduling")
    cfg.scheduling = SchedulingConfig(
        batch_size=s.get("batch_size", cfg.scheduling.batch_size),
        line_window=s.get("line_window", cfg.scheduling.line_window),
    )

    w = _section(data, "workers")
    cfg.workers = WorkersConfig(
        max_workers=w.get("max_workers", cfg.workers.max_workers),
        batch_timeout_sec=w.get("batch_timeout_sec", cfg.workers.batch_timeout_sec),
        plan_cmd=w.get("plan_cmd", "") or "",
        apply_cmd=w.get("apply_cmd", "") or "",
        reconcile_cmd=w.get("reconcile_cmd", "") or "",
    )

    c = _section(data, "conflicts")
    cfg.conflicts = ConflictsConfig(
        max_rounds=c.get("max_rounds", cfg.conflicts.max_rounds),
        round_timeout_sec=c.get("round_timeout_sec", cfg.conflicts.round_timeout_sec),
    )

    r = _section(data, "risk")
    cfg.risk = RiskConfig(max_files=r.get("max_files", cfg.risk.max_files))

    n = _section(data, "notify")
    cfg.notify = NotifyConfig(
        webhook_url=n.get("webhook_url", "") or "",
        events=n.get("events", cfg.notify.events),
    )

    lg = _section(data, "logging")
    cfg.logging = LoggingConfig(
        level=str(lg.get("level", cfg.logging.level)),
        json=bool(lg.get("json", cfg.logging.json)),
    )
    return cfg


def validate_config(cfg: Config) -> None:
    """Reject settings the scheduler or workers cannot run with."""
    def _int(value, name: str, minimum: int) -> None:
        if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
            raise InvalidConfigurationError(
                f"{name} must be an integer >= {minimum}, got {value!r}"
            )

    _int(cfg.scheduling.batch_size, "scheduling.batch_size", 1)
    _int(cfg.scheduling.line_window, "scheduling.line_window", 0)
    _int(cfg.workers.max_workers, "workers.max_workers", 1)
    _int(cfg.risk.max_files, "risk.max_files", 0)
    for name, timeout in (
        ("workers.batch_timeout_sec", cfg.workers.batch_timeout_sec),
        ("conflicts.round_timeout_sec", cfg.conflicts.round_timeout_sec),
    ):
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise InvalidConfigurationError(f"{name} must be positive, got {timeout!r}")
    rounds = cfg.conflicts.max_rounds
    if isinstance(rounds, bool) or not isinstance(rounds, int) or not 1 <= rounds <= MAX_ROUNDS:
        raise InvalidConfigurationError(
            f"conflicts.max_rounds must be between 1 and {MAX_ROUNDS}, got {rounds!r}"
        )


# ---------------------------------------------------------------------------
# Load config (3-layer)
# ---------------------------------------------------------------------------

def _read_yaml(path: Path, strict: bool) -> dict:
    if not path.exists():
        return {}
    try:
        parsed = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise InvalidConfigurationError(f"Invalid {path.name}: {e}") from e
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        if strict:
            raise InvalidConfigurationError(
                f"Invalid {path.name}: expected mapping, got {type(parsed).__name__}"
            )
        return {}
    return parsed


def load_config(project_root: str | Path) -> Config:
    """Load and merge config from up to 3 layers.

    Priority (highest first):
      1. Environment variables (RESOLVEQ_LOG_LEVEL, RESOLVEQ_WEBHOOK_URL)
      2. .resolveq/local.config.yaml
      3. .resolveq/config.yaml
    """
    project_root = Path(project_root)
    config_dir = project_root / ".resolveq"

    base_data = _read_yaml(config_dir / "config.yaml", strict=True)
    local_data = _read_yaml(config_dir / "local.config.yaml", strict=False)

    merged = deep_merge(base_data, local_data)
    cfg = _dict_to_config(merged, str(project_root))

    env_level = os.environ.get("RESOLVEQ_LOG_LEVEL")
    if env_level:
        cfg.logging.level = env_level

    env_webhook = os.environ.get("RESOLVEQ_WEBHOOK_URL")
    if env_webhook:
        cfg.notify.webhook_url = env_webhook

    validate_config(cfg)
    return cfg
