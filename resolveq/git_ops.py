"""Git operations wrapper using subprocess / anyio."""

from __future__ import annotations

import subprocess
from pathlib import Path

import anyio


async def _run_git(args: list[str], cwd: Path) -> str:
    """Run a git command and return stdout."""
    result = await anyio.to_thread.run_sync(
        lambda: subprocess.run(
            ["git"] + args,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            check=True,
        )
    )
    return result.stdout.strip()


async def get_latest_commit(cwd: Path) -> str:
    """Get the short hash of the latest commit."""
    try:
        return await _run_git(["rev-parse", "--short", "HEAD"], cwd)
    except (subprocess.CalledProcessError, OSError):
        return ""


async def get_commit_files(cwd: Path, ref: str = "HEAD") -> list[str]:
    """Files touched by a single commit."""
    try:
        output = await _run_git(
            ["show", "--name-only", "--pretty=format:", ref], cwd
        )
    except (subprocess.CalledProcessError, OSError):
        return []
    return sorted({f for f in output.splitlines() if f})


async def get_uncommitted_files(cwd: Path) -> list[str]:
    """Tracked files changed since HEAD plus untracked files."""
    try:
        changed = await _run_git(["diff", "--name-only", "HEAD"], cwd)
        untracked = await _run_git(["ls-files", "--others", "--exclude-standard"], cwd)
    except (subprocess.CalledProcessError, OSError):
        return []
    return sorted({f for f in (changed + "\n" + untracked).splitlines() if f})
