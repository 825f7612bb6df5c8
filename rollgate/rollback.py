"""Single bounded recovery pass after a failed rollout step."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from .config import RunConfig
from .executor import Executor, execute_safely
from .models import Outcome, OutcomeStatus, Target
from .probe import HealthProbe

logger = logging.getLogger("rollgate")


@dataclass(frozen=True)
class RollbackContext:
    """What the engine knows when it gives up on a step.

    touched lists every target acted on since the last known-good state,
    in the order they were touched.
    """

    failed_phase: str
    reason: str
    touched: Sequence[Target] = ()
    deadline: float | None = None


@dataclass(frozen=True)
class TargetRecovery:
    target: Target
    outcome: Outcome


@dataclass(frozen=True)
class RecoveryResult:
    """Recovered when every affected target is healthy again."""

    recovered: bool
    targets: tuple[TargetRecovery, ...] = field(default_factory=tuple)

    @property
    def unrecovered(self) -> list[Target]:
        return [r.target for r in self.targets if r.outcome.status is not OutcomeStatus.PASS]


def affected_targets(failed_target: Target | None, touched: Sequence[Target]) -> list[Target]:
    """Touched targets plus the failed one, each once, in touch order."""
    affected = list(dict.fromkeys(touched))
    if failed_target is not None and failed_target not in affected:
        affected.append(failed_target)
    return affected


class RollbackController:
    """Re-issue the recovery action for each affected target, settle, re-probe once.

    Never loops: a second recovery pass is up to whoever invoked the run.
    With a deadline in the context the settle wait is cut short at the
    deadline and no probe starts after it.
    """

    def __init__(
        self,
        config: RunConfig,
        executor: Executor,
        probe: HealthProbe,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.executor = executor
        self.probe = probe
        self.sleep = sleep
        self.clock = clock

    def attempt(self, failed_target: Target | None, context: RollbackContext) -> RecoveryResult:
        affected = affected_targets(failed_target, context.touched)
        if not affected:
            logger.warning("Recovery after %s: no targets to recover", context.failed_phase)
            return RecoveryResult(recovered=False)

        logger.warning(
            "Recovery pass for %d target(s) after %s: %s",
            len(affected),
            context.failed_phase,
            context.reason,
        )

        started: dict[str, float] = {}
        action_errors: dict[str, str] = {}
        for target in affected:
            action = self.config.recovery_action(target.role)
            started[target.name] = self.clock()
            result = execute_safely(self.executor, target, action)
            if not result.ok:
                action_errors[target.name] = f"{action} failed: {result.reason}"
                logger.warning("Recovery %s on %s failed: %s", action, target.name, result.reason)
            else:
                logger.info("Recovery %s issued on %s", action, target.name)

        settle = self.config.settle_time
        if context.deadline is not None:
            settle = min(settle, max(0.0, context.deadline - self.clock()))
        if settle > 0:
            logger.debug("Waiting %.1fs for services to settle", settle)
            self.sleep(settle)

        recoveries = []
        for target in affected:
            probe = self.probe.probe(target, self.config.policy, deadline=context.deadline)
            error = action_errors.get(target.name)
            if not probe.healthy:
                error = "; ".join(e for e in (error, probe.error) if e) or "unhealthy"
            status = OutcomeStatus.FAIL if error else OutcomeStatus.PASS
            outcome = Outcome(
                status=status,
                attempts=probe.attempts,
                error=error,
                duration_s=self.clock() - started[target.name],
            )
            recoveries.append(TargetRecovery(target, outcome))

        recovered = all(r.outcome.status is OutcomeStatus.PASS for r in recoveries)
        if recovered:
            logger.warning("Recovery pass restored health on all affected targets")
        else:
            logger.error(
                "Recovery pass failed for: %s",
                ", ".join(r.target.name for r in recoveries if r.outcome.error),
            )
        return RecoveryResult(recovered=recovered, targets=tuple(recoveries))
