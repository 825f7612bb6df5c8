"""Rollgate utility functions."""

from __future__ import annotations

import datetime as dt
import os
import re
import uuid
from pathlib import Path

from .constants import (
    ACTOR_ENV_VAR,
    DEFAULT_INVENTORY_FILE_NAME,
    EVENT_LOG_FILE_NAME,
    INVENTORY_ENV_VAR,
    STATE_DIR_NAME,
)
from .exceptions import ConfigError


def utc_now_iso() -> str:
    """Return current UTC time in ISO format without microseconds."""
    return dt.datetime.now(dt.UTC).replace(microsecond=0).isoformat()


def new_run_id() -> str:
    """Return a short, sortable identifier for a deployment run."""
    stamp = dt.datetime.now(dt.UTC).strftime("%Y%m%dT%H%M%SZ")
    return f"{stamp}-{uuid.uuid4().hex[:6]}"


def format_elapsed_time(seconds: float) -> str:
    """Format elapsed time in human-readable format.

    Args:
        seconds: Elapsed time in seconds

    Returns:
        Formatted string like "1m25s", "45s", or "1h05m30s"
    """
    total_seconds = int(seconds)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)

    if hours:
        return f"{hours}h{minutes:02d}m{secs:02d}s"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"


_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str | int | float, *, field: str = "duration") -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) or strings such as "10s", "250ms",
    "2m" or "1m30s".

    Raises:
        ConfigError: If the value is negative or cannot be parsed
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid {field}: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for m in _DURATION_PART_RE.finditer(text):
                if m.start() != pos:
                    break
                seconds += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
                pos = m.end()
            if pos == 0 or pos != len(text):
                raise ConfigError(f"Invalid {field}: {value!r}") from None
    if seconds < 0:
        raise ConfigError(f"Invalid {field}: {value!r} (must not be negative)")
    return seconds


def ensure_parent_dir(p: Path) -> None:
    """Create parent directory of path if it doesn't exist."""
    p.parent.mkdir(parents=True, exist_ok=True)


def infer_actor() -> str:
    """Infer the actor (user) performing the deployment."""
    return (
        os.environ.get(ACTOR_ENV_VAR)
        or os.environ.get("SUDO_USER")
        or os.environ.get("USER")
        or "unknown"
    )


def default_event_log_path() -> Path:
    """Return default path for the append-only run event log."""
    home = Path(os.path.expanduser("~"))
    return home / STATE_DIR_NAME / EVENT_LOG_FILE_NAME


def default_inventory_path() -> Path:
    """Return the inventory path from the environment, or ./inventory.yaml."""
    env = os.environ.get(INVENTORY_ENV_VAR)
    if env:
        return Path(env)
    return Path(DEFAULT_INVENTORY_FILE_NAME)
