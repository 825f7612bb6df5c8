"""Rollgate data model: targets, policies, phases, outcomes and runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .exceptions import ConfigError, RollgateError


@dataclass(frozen=True)
class Target:
    """One addressable unit of the fleet. Immutable for the duration of a run."""

    name: str
    address: str
    role: str
    port: int | None = None
    health_endpoint: str | None = None
    service: str | None = None
    ssh_user: str | None = None
    expect: str | None = None

    def url(self, path: str) -> str:
        """Return an http URL for path on this target's address and port."""
        if not path.startswith("/"):
            path = "/" + path
        host = f"{self.address}:{self.port}" if self.port else self.address
        return f"http://{host}{path}"

    @property
    def ssh_host(self) -> str:
        return f"{self.ssh_user}@{self.address}" if self.ssh_user else self.address


@dataclass(frozen=True)
class HealthCheckPolicy:
    """Retry budget for a health probe. Durations are in seconds."""

    max_attempts: int
    retry_delay: float
    per_attempt_timeout: float

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
            raise ConfigError(f"max_attempts must be an integer, got {self.max_attempts!r}")
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.retry_delay < 0:
            raise ConfigError(f"retry_delay must not be negative, got {self.retry_delay}")
        if self.per_attempt_timeout <= 0:
            raise ConfigError(
                f"per_attempt_timeout must be positive, got {self.per_attempt_timeout}"
            )

    def with_attempts(self, max_attempts: int) -> HealthCheckPolicy:
        return HealthCheckPolicy(max_attempts, self.retry_delay, self.per_attempt_timeout)


@dataclass(frozen=True)
class ProbeResult:
    """Healthy, or Unhealthy carrying the most recent failure reason."""

    healthy: bool
    attempts: int
    error: str | None = None
    elapsed_s: float = 0.0


@dataclass(frozen=True)
class ExecResult:
    """Success, or Failure carrying a human-readable reason.

    connectivity marks failures where the target could not be reached
    at all; those are the only executor failures worth retrying.
    """

    ok: bool
    reason: str | None = None
    connectivity: bool = False

    @classmethod
    def success(cls) -> ExecResult:
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: str, *, connectivity: bool = False) -> ExecResult:
        return cls(ok=False, reason=reason, connectivity=connectivity)


class OutcomeStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Outcome:
    """Result of one phase."""

    status: OutcomeStatus
    attempts: int = 0
    error: str | None = None
    duration_s: float = 0.0


class PhaseKind(str, Enum):
    PRE_VALIDATE = "pre-validate"
    DEPLOY = "deploy"
    HEALTH = "health"
    POST_VALIDATE = "post-validate"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class Phase:
    """A named step of the plan together with its recorded outcome.

    gating phases stop the run on failure; advisory phases record WARN.
    """

    kind: PhaseKind
    position: int
    outcome: Outcome
    target: str | None = None
    role: str | None = None
    gating: bool = True

    @property
    def name(self) -> str:
        return f"{self.kind.value}[{self.target}]" if self.target else self.kind.value


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


TERMINAL_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ROLLED_BACK})


class EngineState(str, Enum):
    IDLE = "idle"
    PRE_VALIDATING = "pre_validating"
    UPDATING_TARGETS = "updating_targets"
    POST_VALIDATING = "post_validating"
    ROLLING_BACK = "rolling_back"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class Plan(str, Enum):
    """Which part of the rollout a run covers."""

    FULL = "check"
    BACKEND = "backend"
    FRONTEND = "frontend"
    API = "api"


@dataclass
class DeploymentRun:
    """Record of a single run. Only RolloutEngine writes to it."""

    run_id: str
    plan: Plan = Plan.FULL
    status: RunStatus = RunStatus.PENDING
    state: EngineState = EngineState.IDLE
    phases: list[Phase] = field(default_factory=list)
    target_health: dict[str, str] = field(default_factory=dict)
    started_at: str | None = None
    finished_at: str | None = None
    duration_s: float = 0.0
    reason: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _check_mutable(self) -> None:
        if self.is_terminal:
            raise RollgateError(f"run {self.run_id} is {self.status.value}; record is closed")

    def start(self, started_at: str) -> None:
        self._check_mutable()
        self.status = RunStatus.RUNNING
        self.started_at = started_at

    def set_state(self, state: EngineState) -> None:
        self._check_mutable()
        self.state = state

    def add_phase(self, phase: Phase) -> None:
        self._check_mutable()
        self.phases.append(phase)

    def set_health(self, target: str, health: str) -> None:
        self._check_mutable()
        self.target_health[target] = health

    def finish(
        self,
        status: RunStatus,
        *,
        finished_at: str,
        duration_s: float,
        reason: str | None = None,
        error: str | None = None,
    ) -> None:
        self._check_mutable()
        if status not in TERMINAL_STATUSES:
            raise RollgateError(f"cannot finish run with non-terminal status {status.value}")
        self.state = {
            RunStatus.SUCCEEDED: EngineState.SUCCEEDED,
            RunStatus.ROLLED_BACK: EngineState.ROLLED_BACK,
            RunStatus.FAILED: EngineState.FAILED,
        }[status]
        self.finished_at = finished_at
        self.duration_s = duration_s
        self.reason = reason
        self.error = error
        self.status = status
