"""Load the issue list handed over by the discovery step."""

from __future__ import annotations

import json
from pathlib import Path

import yaml

from .errors import InvalidConfigurationError
from .models import Issue, Severity
from .store import validate_issue


def parse_issue(data: dict) -> Issue:
    """Build an Issue from a mapping. Raises on anything malformed."""
    if not isinstance(data, dict):
        raise InvalidConfigurationError(f"Issue must be a mapping, got {type(data).__name__}")

    missing = [k for k in ("file", "line", "category", "severity") if k not in data]
    if missing:
        raise InvalidConfigurationError(f"Issue is missing fields {missing}: {data!r}")

    try:
        severity = Severity(str(data["severity"]).lower())
    except ValueError as e:
        raise InvalidConfigurationError(
            f"Unknown severity {data['severity']!r}; expected one of "
            f"{[s.value for s in Severity]}"
        ) from e

    line = data["line"]
    if isinstance(line, bool) or not isinstance(line, int):
        raise InvalidConfigurationError(f"Issue line must be an integer, got {line!r}")

    issue = Issue(
        file=str(data["file"]),
        line=line,
        category=str(data["category"]),
        severity=severity,
        description=str(data.get("description", "") or ""),
        remediation=str(data.get("remediation", "") or ""),
        function=data.get("function") or None,
    )
    validate_issue(issue)
    return issue


def issue_payload(issue: Issue) -> dict:
    """Plain-dict form of an issue, for fixer commands and persistence."""
    return {
        "key": issue.key,
        "file": issue.file,
        "line": issue.line,
        "category": issue.category,
        "severity": issue.severity.value,
        "description": issue.description,
        "remediation": issue.remediation,
        "function": issue.function,
    }


def load_issues(path: str | Path) -> list[Issue]:
    """Read issues from a YAML or JSON file.

    Accepts either a top-level list or a mapping with an ``issues`` list.
    Order is preserved.
    """
    path = Path(path)
    raw = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".json":
            data = json.loads(raw)
        else:
            data = yaml.safe_load(raw)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise InvalidConfigurationError(f"Cannot parse {path}: {e}") from e

    if data is None:
        return []
    if isinstance(data, dict):
        data = data.get("issues", [])
    if not isinstance(data, list):
        raise InvalidConfigurationError(
            f"Invalid issues file {path}: expected a list, got {type(data).__name__}"
        )
    return [parse_issue(item) for item in data]
