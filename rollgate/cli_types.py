"""Type definitions for CLI command arguments."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class RunArgs:
    """Arguments shared by check/backend/frontend/api."""

    inventory: str | None
    max_attempts: int | None
    retry_delay: str | None
    per_attempt_timeout: str | None
    run_timeout: str | None
    settle_time: str | None
    transport: str
    ssh_option: list[str] | None
    connect_timeout: int
    action_timeout: int
    ssh_user: str | None
    workers: int | None
    event_log: str | None
    report: str | None
    json: bool
    verbose: bool
    quiet: bool
