"""
Shared helpers for pbdeploy.
"""

import os
import shlex
import uuid
from datetime import datetime, timezone
from pathlib import Path

from pbdeploy.constants import LOG_DATETIME_FORMAT


def get_project_root() -> Path:
    """
    Get the pbdeploy working root.

    PBDEPLOY_HOME wins; otherwise the current directory is used so logs and
    the local database live next to pbdeploy.yml.
    """
    home = os.environ.get("PBDEPLOY_HOME")
    if home:
        return Path(home).expanduser().resolve()
    return Path.cwd()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:15]


def quote(value) -> str:
    """Shell-quote one argument for a remote command."""
    return shlex.quote(str(value))


def format_duration(seconds: float) -> str:
    """
    Render a duration the way deployment listings show it.

    Examples: 45s, 2m 5s, 1h 3m
    """
    seconds = int(max(seconds, 0))
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def format_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def append_capped_log(logs: str, message: str, max_bytes: int, now: datetime = None) -> str:
    """
    Append a timestamped line and trim the oldest lines past max_bytes.

    Args:
        logs: Existing log text
        message: Line to append (without timestamp)
        max_bytes: Size cap for the whole log
        now: Timestamp override

    Returns:
        New log text
    """
    stamp = (now or utcnow()).strftime(LOG_DATETIME_FORMAT)
    logs = f"{logs}[{stamp}] {message}\n"

    if len(logs.encode("utf-8")) <= max_bytes:
        return logs

    lines = logs.splitlines(keepends=True)
    size = sum(len(line.encode("utf-8")) for line in lines)
    while lines and size > max_bytes:
        size -= len(lines.pop(0).encode("utf-8"))
    return "".join(lines)
