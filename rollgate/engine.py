"""Rolling update state machine.

Idle -> PreValidating -> UpdatingTargets -> PostValidating -> Succeeded,
and from any failed step -> RollingBack -> RolledBack | Failed.

Backend-role targets are updated strictly one at a time: target N+1 is
never touched until target N has deployed and passed its health probe.
Front-door targets are updated only after every backend is healthy.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed

from .config import RunConfig
from .exceptions import (
    Cancelled,
    ConfigError,
    ConnectivityError,
    DeploymentError,
    DeploymentFailure,
    HealthCheckTimeout,
    RollbackFailure,
    RollgateError,
    RunTimeout,
)
from .executor import Executor, execute_safely
from .models import (
    DeploymentRun,
    EngineState,
    Outcome,
    OutcomeStatus,
    Phase,
    PhaseKind,
    Plan,
    ProbeResult,
    RunStatus,
    Target,
)
from .probe import HealthProbe, build_route_probe
from .registry import TargetRegistry
from .report import RunReporter, RunSummary
from .rollback import RollbackContext, RollbackController
from .utils import format_elapsed_time, new_run_id, utc_now_iso

logger = logging.getLogger("rollgate")

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"


class RolloutEngine:
    """Drives one deployment run at a time across the registry's targets.

    HealthProbe and Executor failures are captured as phase outcomes; this
    class alone decides when a run stops and how it ends.
    """

    def __init__(
        self,
        config: RunConfig,
        registry: TargetRegistry,
        executor: Executor,
        probe: HealthProbe,
        *,
        route_probe: HealthProbe | None = None,
        rollback: RollbackController | None = None,
        reporter: RunReporter | None = None,
        cancel: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.registry = registry
        self.executor = executor
        self.probe = probe
        self.route_probe = route_probe or build_route_probe(config.api_path, sleep=sleep)
        self.rollback = rollback or RollbackController(
            config, executor, probe, sleep=sleep, clock=clock
        )
        self.reporter = reporter or RunReporter()
        self.cancel = cancel or threading.Event()
        self.clock = clock
        self.sleep = sleep
        self._in_progress = threading.Lock()
        self.summary: RunSummary | None = None

        self._run: DeploymentRun | None = None
        self._pending: deque[tuple[PhaseKind, Target | None]] = deque()
        self._touched: list[Target] = []
        self._current: tuple[PhaseKind, Target | None] = (PhaseKind.PRE_VALIDATE, None)
        self._started = 0.0
        self._deadline = 0.0

    # -- planning -----------------------------------------------------------

    def plan_targets(self, plan: Plan) -> tuple[list[Target], list[Target]]:
        """Return (backends, front_doors) covered by plan, in registry order."""
        backends = list(self.registry.targets_by_role(self.config.backend_role))
        front_doors = list(self.registry.targets_excluding_role(self.config.backend_role))
        if plan is Plan.BACKEND:
            front_doors = []
        elif plan in (Plan.FRONTEND, Plan.API):
            backends = []

        if plan is Plan.BACKEND and not backends:
            raise ConfigError(f"No targets with role {self.config.backend_role!r} to deploy")
        if plan in (Plan.FRONTEND, Plan.API) and not front_doors:
            raise ConfigError("No front-door targets (any role other than backend) configured")
        if not backends and not front_doors:
            raise ConfigError("Target list is empty")
        return backends, front_doors

    def _in_registry_order(self, targets: Sequence[Target]) -> list[Target]:
        wanted = set(targets)
        return [t for t in self.registry if t in wanted]

    def _plan_phases(
        self, plan: Plan, backends: Sequence[Target], front_doors: Sequence[Target]
    ) -> deque[tuple[PhaseKind, Target | None]]:
        phases: deque[tuple[PhaseKind, Target | None]] = deque()
        if plan is not Plan.API:
            for t in self._in_registry_order([*backends, *front_doors]):
                phases.append((PhaseKind.PRE_VALIDATE, t))
            for t in [*backends, *front_doors]:
                phases.append((PhaseKind.DEPLOY, t))
                phases.append((PhaseKind.HEALTH, t))
        if plan is not Plan.BACKEND:
            for t in front_doors:
                phases.append((PhaseKind.POST_VALIDATE, t))
        return phases

    # -- run record (sole writer) -------------------------------------------

    def _transition(self, state: EngineState) -> None:
        assert self._run is not None
        logger.info("Run %s: %s -> %s", self._run.run_id, self._run.state.value, state.value)
        self._run.set_state(state)
        self.reporter.state_changed(self._run, state)

    def _record(
        self,
        kind: PhaseKind,
        target: Target | None,
        outcome: Outcome,
        *,
        gating: bool = True,
    ) -> Phase:
        assert self._run is not None
        try:
            self._pending.remove((kind, target))
        except ValueError:
            pass
        phase = Phase(
            kind=kind,
            position=len(self._run.phases) + 1,
            outcome=outcome,
            target=target.name if target else None,
            role=target.role if target else None,
            gating=gating,
        )
        self._run.add_phase(phase)
        self.reporter.phase_recorded(self._run, phase)
        if outcome.status is OutcomeStatus.FAIL:
            logger.warning("%s failed: %s", phase.name, outcome.error)
        elif outcome.status is OutcomeStatus.WARN:
            logger.warning("%s (advisory): %s", phase.name, outcome.error)
        else:
            logger.debug("%s: %s", phase.name, outcome.status.value)
        return phase

    def _skip_pending(self, reason: str) -> None:
        while self._pending:
            kind, target = self._pending[0]
            self._record(kind, target, Outcome(OutcomeStatus.SKIPPED, error=reason))

    def _finish(
        self, status: RunStatus, *, reason: str | None = None, error: str | None = None
    ) -> None:
        assert self._run is not None
        self._run.finish(
            status,
            finished_at=utc_now_iso(),
            duration_s=self.clock() - self._started,
            reason=reason,
            error=error,
        )
        self.reporter.state_changed(self._run, self._run.state)
        log = logger.info if status is RunStatus.SUCCEEDED else logger.error
        log("Run %s finished: %s%s", self._run.run_id, status.value, f" ({error})" if error else "")

    # -- boundaries -----------------------------------------------------------

    def _deadline_passed(self) -> bool:
        return self.clock() >= self._deadline

    def _run_timeout(self, target: Target | None = None, phase: str | None = None) -> RunTimeout:
        return RunTimeout(
            f"run exceeded its {format_elapsed_time(self.config.run_timeout)} ceiling",
            target=target.name if target else None,
            phase=phase,
        )

    def _boundary(self, kind: PhaseKind, target: Target | None = None) -> None:
        """Honor cancellation and the run deadline before starting a phase."""
        self._current = (kind, target)
        if self.cancel.is_set():
            raise Cancelled(
                "cancelled by operator", target=target.name if target else None, phase=kind.value
            )
        if self._deadline_passed():
            raise self._run_timeout(target, kind.value)

    def _gate(self, failure: DeploymentFailure, target: Target) -> DeploymentFailure:
        """Failures seen after the deadline are reported as the timeout."""
        if self._deadline_passed():
            return self._run_timeout(target, failure.phase)
        return failure

    # -- phases -------------------------------------------------------------------

    def _pre_validate(self, targets: Sequence[Target]) -> None:
        """Best-effort probe of every target; failures are advisory."""
        self._boundary(PhaseKind.PRE_VALIDATE)
        policy = self.config.pre_validate_policy
        results: dict[str, ProbeResult] = {}
        started = self.clock()
        workers = max(1, min(self.config.workers, len(targets)))

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self.probe.probe, t, policy, deadline=self._deadline): t
                for t in targets
            }
            for future in as_completed(futures):
                results[futures[future].name] = future.result()

        assert self._run is not None
        for t in targets:
            result = results[t.name]
            status = OutcomeStatus.PASS if result.healthy else OutcomeStatus.WARN
            outcome = Outcome(status, result.attempts, result.error, result.elapsed_s)
            self._record(PhaseKind.PRE_VALIDATE, t, outcome, gating=False)
            self._run.set_health(t.name, HEALTHY if result.healthy else UNHEALTHY)
        elapsed = self.clock() - started
        logger.debug("Pre-validation of %d target(s) took %.2fs", len(targets), elapsed)

    def _execute(self, target: Target, action: str) -> tuple[Outcome, DeploymentFailure | None]:
        """Run action, retrying only when the target could not be reached."""
        policy = self.config.policy
        start = self.clock()
        reason: str | None = None
        attempts = 0
        for attempt in range(1, policy.max_attempts + 1):
            attempts = attempt
            result = execute_safely(self.executor, target, action)
            if result.ok:
                return Outcome(OutcomeStatus.PASS, attempt, None, self.clock() - start), None
            reason = result.reason or "unknown error"
            if not result.connectivity:
                error = f"{action} failed: {reason}"
                outcome = Outcome(OutcomeStatus.FAIL, attempt, error, self.clock() - start)
                return outcome, DeploymentError(error, target=target.name, phase="deploy")
            logger.debug(
                "%s on %s unreachable (attempt %d/%d): %s",
                action,
                target.name,
                attempt,
                policy.max_attempts,
                reason,
            )
            if attempt < policy.max_attempts and not self._deadline_passed():
                self.sleep(policy.retry_delay)
            else:
                break

        error = f"{action} unreachable after {attempts} attempt(s): {reason}"
        outcome = Outcome(OutcomeStatus.FAIL, attempts, error, self.clock() - start)
        return outcome, ConnectivityError(error, target=target.name, phase="deploy")

    def _update_target(self, target: Target, action: str) -> None:
        """Deploy one target and wait for it to be healthy, or raise."""
        assert self._run is not None
        self._boundary(PhaseKind.DEPLOY, target)
        logger.info("Updating %s (%s) with %s", target.name, target.role, action)
        self._touched.append(target)
        outcome, failure = self._execute(target, action)
        self._record(PhaseKind.DEPLOY, target, outcome)
        if failure is not None:
            self._run.set_health(target.name, UNHEALTHY)
            raise self._gate(failure, target)

        self._boundary(PhaseKind.HEALTH, target)
        result = self.probe.probe(target, self.config.policy, deadline=self._deadline)
        status = OutcomeStatus.PASS if result.healthy else OutcomeStatus.FAIL
        self._record(
            PhaseKind.HEALTH,
            target,
            Outcome(status, result.attempts, result.error, result.elapsed_s),
        )
        self._run.set_health(target.name, HEALTHY if result.healthy else UNHEALTHY)
        if not result.healthy:
            failure = HealthCheckTimeout(
                f"unhealthy after {result.attempts} attempt(s): {result.error}",
                target=target.name,
                phase="health",
            )
            raise self._gate(failure, target)

    def _update_targets(self, targets: Sequence[Target]) -> None:
        for target in targets:
            self._update_target(target, self.config.update_action(target.role))

    def _post_validate(self, front_doors: Sequence[Target]) -> None:
        """End-to-end routing check through each front door."""
        policy = self.config.post_validate_policy
        for target in front_doors:
            self._boundary(PhaseKind.POST_VALIDATE, target)
            result = self.route_probe.probe(target, policy, deadline=self._deadline)
            status = OutcomeStatus.PASS if result.healthy else OutcomeStatus.FAIL
            self._record(
                PhaseKind.POST_VALIDATE,
                target,
                Outcome(status, result.attempts, result.error, result.elapsed_s),
            )
            if not result.healthy:
                failure = HealthCheckTimeout(
                    f"routing check failed after {result.attempts} attempt(s): {result.error}",
                    target=target.name,
                    phase="post-validate",
                )
                raise self._gate(failure, target)

    # -- termination ------------------------------------------------------------------

    def _skip_recovery(self, reason: str) -> None:
        """Record the recovery that will not run: one phase per touched target.

        A run that already recorded a failure but touched nothing still gets a
        single untargeted rollback phase.
        """
        assert self._run is not None
        error = f"{reason}: recovery not attempted"
        skipped = Outcome(OutcomeStatus.SKIPPED, error=error)
        if self._touched:
            for target in self._touched:
                self._record(PhaseKind.ROLLBACK, target, skipped)
        elif any(p.outcome.status is OutcomeStatus.FAIL for p in self._run.phases):
            self._record(PhaseKind.ROLLBACK, None, skipped)

    def _stop(self, failure: Cancelled | RunTimeout) -> None:
        """End the run without recovery; touched targets are marked unrecovered."""
        reason = type(failure).__name__
        self._skip_pending(reason)
        self._skip_recovery(reason)
        self._finish(RunStatus.FAILED, reason=reason, error=str(failure))

    def _abort(self, error: Exception) -> None:
        """Close the run after an unexpected error so a summary is still produced."""
        assert self._run is not None
        if self._run.is_terminal:
            return
        kind, target = self._current
        reason = type(error).__name__
        self._skip_pending(reason)
        self._skip_recovery(reason)
        where = f"{kind.value} {target.name}" if target else kind.value
        self._finish(RunStatus.FAILED, reason=reason, error=f"{where}: {error}")

    def _recover(self, failure: DeploymentFailure) -> None:
        assert self._run is not None
        self._skip_pending(f"stopped after {failure.phase} failure")
        self._transition(EngineState.ROLLING_BACK)

        failed_target = self.registry.get(failure.target) if failure.target else None
        context = RollbackContext(
            failed_phase=failure.phase or "unknown",
            reason=failure.reason,
            touched=tuple(self._touched),
            deadline=self._deadline,
        )
        result = self.rollback.attempt(failed_target, context)

        if not result.targets:
            outcome = Outcome(OutcomeStatus.FAIL, error="no targets to recover")
            self._record(PhaseKind.ROLLBACK, None, outcome)
        for recovery in result.targets:
            self._record(PhaseKind.ROLLBACK, recovery.target, recovery.outcome)
            health = HEALTHY if recovery.outcome.status is OutcomeStatus.PASS else UNHEALTHY
            self._run.set_health(recovery.target.name, health)

        if self._deadline_passed():
            timeout = self._run_timeout(phase="rollback")
            self._finish(
                RunStatus.FAILED, reason=type(timeout).__name__, error=f"{failure}; {timeout}"
            )
            return

        if result.recovered:
            self._finish(RunStatus.ROLLED_BACK, reason=type(failure).__name__, error=str(failure))
            return

        unrecovered = result.unrecovered
        rollback_failure = RollbackFailure(
            "recovery pass did not restore health",
            target=", ".join(t.name for t in unrecovered) or None,
            phase="rollback",
        )
        self._finish(
            RunStatus.FAILED,
            reason=type(rollback_failure).__name__,
            error=f"{failure}; {rollback_failure}",
        )

    # -- entry point --------------------------------------------------------------------

    def run(self, plan: Plan = Plan.FULL) -> DeploymentRun:
        """Execute plan and return the terminal run record.

        Raises:
            ConfigError: If the plan has no targets (before any remote action)
            RollgateError: If another run is already in progress
        """
        if not self._in_progress.acquire(blocking=False):
            raise RollgateError("a deployment run is already in progress")
        try:
            return self._run_locked(plan)
        finally:
            self._in_progress.release()

    def _run_locked(self, plan: Plan) -> DeploymentRun:
        backends, front_doors = self.plan_targets(plan)
        targets = self._in_registry_order([*backends, *front_doors])

        run = DeploymentRun(run_id=new_run_id(), plan=plan)
        self._run = run
        self._pending = self._plan_phases(plan, backends, front_doors)
        self._touched = []
        self._current = (PhaseKind.PRE_VALIDATE, None)
        self._started = self.clock()
        self._deadline = self._started + self.config.run_timeout

        run.start(utc_now_iso())
        self.reporter.run_started(run, targets)
        logger.info(
            "Run %s (%s): %d backend(s), %d front door(s)",
            run.run_id,
            plan.value,
            len(backends),
            len(front_doors),
        )

        try:
            try:
                if plan is not Plan.API:
                    self._transition(EngineState.PRE_VALIDATING)
                    self._pre_validate(targets)
                    self._transition(EngineState.UPDATING_TARGETS)
                    self._update_targets(backends)
                    # Front doors only ever route to backends that are already healthy
                    self._update_targets(front_doors)
                if front_doors:
                    self._transition(EngineState.POST_VALIDATING)
                    self._post_validate(front_doors)
            except (Cancelled, RunTimeout) as e:
                logger.error("Stopping run %s: %s", run.run_id, e)
                self._stop(e)
            except DeploymentFailure as e:
                logger.error("Run %s failed at %s", run.run_id, e)
                self._recover(e)
            else:
                self._finish(RunStatus.SUCCEEDED)
        except Exception as e:
            # Recovery and reporting errors land here too
            logger.exception("Run %s aborted by an unexpected error", run.run_id)
            self._abort(e)

        self.summary = self.reporter.run_finished(run, targets)
        return run
