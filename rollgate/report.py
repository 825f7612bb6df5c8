"""Run reporting: append-only event log, final summary and report file."""

from __future__ import annotations

import json
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .models import DeploymentRun, EngineState, OutcomeStatus, Phase, RunStatus, Target
from .utils import ensure_parent_dir, format_elapsed_time, infer_actor, utc_now_iso


def append_jsonl(path: Path, record: dict[str, Any]) -> None:
    """Append a JSON record to a JSONL file."""
    ensure_parent_dir(path)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(record, sort_keys=True) + "\n")


@dataclass(frozen=True)
class TargetHealth:
    name: str
    role: str
    health: str


@dataclass(frozen=True)
class RunSummary:
    """Immutable end-of-run view used for CLI output, exit code and report file."""

    run_id: str
    plan: str
    status: RunStatus
    reason: str | None
    error: str | None
    started_at: str | None
    finished_at: str | None
    duration_s: float
    total: int
    passed: int
    failed: int
    warned: int
    skipped: int
    targets: tuple[TargetHealth, ...]
    phases: tuple[Phase, ...]

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "plan": self.plan,
            "status": self.status.value,
            "reason": self.reason,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_s": round(self.duration_s, 3),
            "counts": {
                "total": self.total,
                "pass": self.passed,
                "fail": self.failed,
                "warn": self.warned,
                "skipped": self.skipped,
            },
            "targets": [
                {"name": t.name, "role": t.role, "health": t.health} for t in self.targets
            ],
            "phases": [phase_to_dict(p) for p in self.phases],
        }


def phase_to_dict(phase: Phase) -> dict[str, Any]:
    return {
        "phase": phase.kind.value,
        "position": phase.position,
        "target": phase.target,
        "role": phase.role,
        "gating": phase.gating,
        "status": phase.outcome.status.value,
        "attempts": phase.outcome.attempts,
        "error": phase.outcome.error,
        "duration_s": round(phase.outcome.duration_s, 3),
    }


class RunReporter:
    """Accumulates run events as they happen.

    With an event log path every event is also appended to that JSONL file.
    """

    def __init__(self, event_log: Path | None = None, *, actor: str | None = None):
        self.event_log = event_log
        self.actor = actor or infer_actor()
        self.events: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def _emit(self, run: DeploymentRun, event: str, **fields: Any) -> None:
        record = {
            "ts": utc_now_iso(),
            "run_id": run.run_id,
            "actor": self.actor,
            "event": event,
            **fields,
        }
        with self._lock:
            self.events.append(record)
            if self.event_log is not None:
                append_jsonl(self.event_log, record)

    def run_started(self, run: DeploymentRun, targets: Sequence[Target]) -> None:
        self._emit(run, "run.start", plan=run.plan.value, targets=[t.name for t in targets])

    def state_changed(self, run: DeploymentRun, state: EngineState) -> None:
        self._emit(run, "state", state=state.value)

    def phase_recorded(self, run: DeploymentRun, phase: Phase) -> None:
        self._emit(run, "phase", **phase_to_dict(phase))

    def run_finished(self, run: DeploymentRun, targets: Sequence[Target]) -> RunSummary:
        summary = summarize(run, targets)
        self._emit(
            run,
            "run.finish",
            status=run.status.value,
            reason=run.reason,
            error=run.error,
            duration_s=round(run.duration_s, 3),
            targets={t.name: t.health for t in summary.targets},
        )
        return summary


def summarize(run: DeploymentRun, targets: Sequence[Target]) -> RunSummary:
    """Count outcomes and pair each target with its last known health."""
    statuses = [p.outcome.status for p in run.phases]
    return RunSummary(
        run_id=run.run_id,
        plan=run.plan.value,
        status=run.status,
        reason=run.reason,
        error=run.error,
        started_at=run.started_at,
        finished_at=run.finished_at,
        duration_s=run.duration_s,
        total=len(statuses),
        passed=statuses.count(OutcomeStatus.PASS),
        failed=statuses.count(OutcomeStatus.FAIL),
        warned=statuses.count(OutcomeStatus.WARN),
        skipped=statuses.count(OutcomeStatus.SKIPPED),
        targets=tuple(
            TargetHealth(t.name, t.role, run.target_health.get(t.name, "unknown"))
            for t in targets
        ),
        phases=tuple(run.phases),
    )


_STATUS_SYMBOLS = {
    OutcomeStatus.PASS: "✓",
    OutcomeStatus.FAIL: "✗",
    OutcomeStatus.WARN: "⚠",
    OutcomeStatus.SKIPPED: "-",
}


def format_summary_table(summary: RunSummary, verbose: bool = False) -> str:
    """Format a run summary as a human-readable table."""
    lines = []
    lines.append("\nSummary:")
    lines.append("=" * 60)
    lines.append(f"Run:                {summary.run_id} ({summary.plan})")
    status = summary.status.value.upper()
    if summary.reason:
        status += f" ({summary.reason})"
    lines.append(f"Status:             {status}")
    lines.append(f"Duration:           {format_elapsed_time(summary.duration_s)}")
    lines.append(
        f"Phases:             {summary.total} "
        f"(pass {summary.passed}, fail {summary.failed}, "
        f"warn {summary.warned}, skipped {summary.skipped})"
    )
    if summary.error:
        lines.append(f"Error:              {summary.error}")

    lines.append("\nPhases:")
    lines.append("-" * 60)
    for phase in summary.phases:
        outcome = phase.outcome
        symbol = _STATUS_SYMBOLS[outcome.status]
        line = f"{symbol} {phase.name}"
        if outcome.error:
            line += f" ({outcome.error})"
        lines.append(line)
        if verbose and outcome.status is not OutcomeStatus.SKIPPED:
            lines.append(
                f"    Attempts: {outcome.attempts}  Duration: {outcome.duration_s:.1f}s"
                f"  Gating: {'yes' if phase.gating else 'no'}"
            )

    lines.append("\nTargets:")
    lines.append("-" * 60)
    for t in summary.targets:
        lines.append(f"{t.name:<30} {t.role:<14} {t.health}")
    return "\n".join(lines)


def format_summary_quiet(summary: RunSummary) -> str:
    """Single-line summary."""
    symbol = "✓" if summary.succeeded else "✗"
    detail = f" ({summary.reason})" if summary.reason else ""
    return (
        f"{symbol} {summary.status.value}{detail}: {summary.passed}/{summary.total} phases passed "
        f"({format_elapsed_time(summary.duration_s)})"
    )


def write_report(path: Path, summary: RunSummary) -> None:
    """Write the final summary as a flat JSON report file."""
    ensure_parent_dir(path)
    path.write_text(json.dumps(summary.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
