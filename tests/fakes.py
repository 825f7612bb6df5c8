"""Test doubles shared by the Rollgate test suite."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from pathlib import Path

from rollgate.exceptions import CheckFailed, ConnectivityError
from rollgate.models import ExecResult, Target


def read_events(path: Path) -> list[dict]:
    """Parse a JSONL event log into a list of records."""
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


class ManualClock:
    """Monotonic clock that only moves when something sleeps or advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeExecutor:
    """Records (target, action) calls; results default to success.

    results maps (target name, action) to an ExecResult, or to a list of
    ExecResults consumed in order (the last one repeats). The timeout passed
    with each call is kept in timeouts.
    """

    def __init__(self, results: dict | None = None):
        self.calls: list[tuple[str, str]] = []
        self.timeouts: list[float | None] = []
        self.results = dict(results or {})
        self.on_execute: Callable[[Target, str], None] | None = None

    def execute(
        self, target: Target, action: str, *, timeout_s: float | None = None
    ) -> ExecResult:
        self.calls.append((target.name, action))
        self.timeouts.append(timeout_s)
        if self.on_execute is not None:
            self.on_execute(target, action)
        result = self.results.get((target.name, action), ExecResult.success())
        if isinstance(result, list):
            return result.pop(0) if len(result) > 1 else result[0]
        return result

    def actions_for(self, name: str) -> list[str]:
        return [a for n, a in self.calls if n == name]


class FakeCheck:
    """Health check driven by a per-target script of True/False answers.

    Targets without a script are healthy unless listed in unhealthy.
    unreachable lists targets that raise ConnectivityError instead.
    """

    def __init__(self, unhealthy=(), unreachable=(), script: dict | None = None):
        self.unhealthy = set(unhealthy)
        self.unreachable = set(unreachable)
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, target: Target, timeout_s: float) -> None:
        with self._lock:
            self.calls.append(target.name)
            answers = self.script.get(target.name)
            healthy = answers.pop(0) if answers else target.name not in self.unhealthy
        if target.name in self.unreachable:
            raise ConnectivityError(f"{target.name} connection refused")
        if not healthy:
            raise CheckFailed(f"{target.name} returned HTTP 503")

    def count(self, name: str) -> int:
        return self.calls.count(name)

