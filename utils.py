"""Shared utility functions for memory-graph."""

from __future__ import annotations

import re
import subprocess
import sys
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path

LOG_PREFIX = "[memory-graph]"


def log(message: str) -> None:
    """Write a diagnostic line to stderr (stdout belongs to the MCP protocol)."""
    print(f"{LOG_PREFIX} {message}", file=sys.stderr)


def normalize_git_url(url: str) -> str:
    """Normalize git URLs to canonical format: provider.com/owner/repo

    Examples:
        git@github.com:owner/repo.git -> github.com/owner/repo
        https://github.com/owner/repo.git -> github.com/owner/repo
        git@gitlab.com:owner/project -> gitlab.com/owner/project
    """
    url = url.removesuffix(".git")

    ssh_match = re.match(r"git@([^:]+):(.+)", url)
    if ssh_match:
        return f"{ssh_match.group(1)}/{ssh_match.group(2)}"

    https_match = re.match(r"https?://(.+)", url)
    if https_match:
        return https_match.group(1)

    return url


def is_git_url(project: str) -> bool:
    return (
        project.startswith("git@")
        or project.startswith("http://")
        or project.startswith("https://")
        or project.endswith(".git")
    )


@lru_cache(maxsize=1)
def get_project_id() -> str:
    """Get current project identifier from git or cwd. Cached per session."""
    try:
        result = subprocess.run(
            ["git", "config", "--get", "remote.origin.url"],
            capture_output=True,
            text=True,
            timeout=2,
        )
        if result.returncode == 0 and result.stdout.strip():
            return normalize_git_url(result.stdout.strip())
    except (OSError, subprocess.SubprocessError):  # git may not be available
        pass
    return str(Path.cwd())


def now_iso() -> str:
    """Get current UTC timestamp as ISO string."""
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def age_days(timestamp: str, now: datetime | None = None) -> float:
    """Age of an ISO timestamp in fractional days, never negative."""
    now = now or datetime.now(timezone.utc)
    delta = now - parse_iso(timestamp)
    return max(delta.total_seconds() / 86400.0, 0.0)


def escape_sql_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")


def sql_literal(value: object) -> str:
    """Render a Python scalar as a SQL literal for LanceDB expressions."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return repr(value)
    return f"'{escape_sql_value(str(value))}'"


def shorten(text: str, width: int = 80) -> str:
    return text if len(text) <= width else text[:width] + "..."
