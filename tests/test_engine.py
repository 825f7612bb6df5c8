"""Tests for rollgate/engine.py - the rolling update state machine."""

from __future__ import annotations

import threading

import pytest
from rollgate.config import RunConfig
from rollgate.exceptions import ConfigError, RollgateError
from rollgate.models import (
    EngineState,
    ExecResult,
    HealthCheckPolicy,
    OutcomeStatus,
    PhaseKind,
    Plan,
    RunStatus,
    Target,
)
from rollgate.registry import TargetRegistry
from rollgate.report import RunReporter

from fakes import FakeCheck, FakeExecutor


def shape(run):
    return [(p.kind, p.target, p.outcome.status, p.outcome.attempts) for p in run.phases]


def statuses(run):
    return [(p.kind.value, p.target, p.outcome.status) for p in run.phases]


class TestHappyPath:
    """Runs where every probe and action succeeds."""

    def test_all_healthy_succeeds(self, make_engine, fleet):
        """Every probe healthy on first attempt reaches SUCCEEDED with no FAIL."""
        executor = FakeExecutor()
        engine = make_engine(fleet, executor=executor)

        run = engine.run()

        assert run.status is RunStatus.SUCCEEDED
        assert run.state is EngineState.SUCCEEDED
        assert all(p.outcome.status is OutcomeStatus.PASS for p in run.phases)
        assert all(p.outcome.attempts == 1 for p in run.phases)
        assert run.reason is None

    def test_phase_order(self, make_engine, fleet):
        """Pre-validate in registry order, backends, front door, then routing check."""
        run = make_engine(fleet).run()

        assert [(p.kind.value, p.target) for p in run.phases] == [
            ("pre-validate", "lb"),
            ("pre-validate", "b1"),
            ("pre-validate", "b2"),
            ("deploy", "b1"),
            ("health", "b1"),
            ("deploy", "b2"),
            ("health", "b2"),
            ("deploy", "lb"),
            ("health", "lb"),
            ("post-validate", "lb"),
        ]
        assert [p.position for p in run.phases] == list(range(1, 11))

    def test_action_order_and_role_actions(self, make_engine, fleet):
        """Backends get deploy one at a time; the load balancer gets reload-proxy last."""
        executor = FakeExecutor()
        make_engine(fleet, executor=executor).run()

        assert executor.calls == [
            ("b1", "deploy"),
            ("b2", "deploy"),
            ("lb", "reload-proxy"),
        ]

    def test_target_health_recorded(self, make_engine, fleet):
        run = make_engine(fleet).run()
        assert run.target_health == {"lb": "healthy", "b1": "healthy", "b2": "healthy"}

    def test_idempotent_repeat(self, make_engine, fleet):
        """Running check twice on a healthy fleet gives identical outcome shapes."""
        engine = make_engine(fleet)

        first = engine.run()
        second = engine.run()

        assert first.status is RunStatus.SUCCEEDED
        assert second.status is RunStatus.SUCCEEDED
        assert shape(first) == shape(second)
        assert first.run_id != second.run_id

    def test_summary_available_after_run(self, make_engine, fleet):
        engine = make_engine(fleet)
        engine.run()
        assert engine.summary is not None
        assert engine.summary.exit_code == 0
        assert engine.summary.passed == 10

    def test_pre_validate_failure_is_advisory(self, make_engine, fleet):
        """A failed pre-validation probe is recorded as WARN and the run continues."""
        check = FakeCheck(script={"lb": [False]})
        engine = make_engine(fleet, check=check)

        run = engine.run()

        assert run.status is RunStatus.SUCCEEDED
        pre_lb = run.phases[0]
        assert pre_lb.kind is PhaseKind.PRE_VALIDATE
        assert pre_lb.outcome.status is OutcomeStatus.WARN
        assert pre_lb.gating is False
        assert engine.summary.warned == 1


class TestZeroDowntimeOrdering:
    """Target N+1 is never touched before target N is healthy."""

    def test_failed_deploy_never_touches_next_backend(self, make_engine, fleet):
        executor = FakeExecutor({("b1", "deploy"): ExecResult.failure("artifact missing")})
        engine = make_engine(fleet, executor=executor)

        run = engine.run()

        assert ("b2", "deploy") not in executor.calls
        assert executor.actions_for("b2") == []
        assert executor.actions_for("lb") == []
        assert run.status is RunStatus.ROLLED_BACK

    def test_deploy_error_not_retried(self, make_engine, fleet):
        """An action that ran and failed is a DeploymentError with one attempt."""
        executor = FakeExecutor({("b1", "deploy"): ExecResult.failure("exit 1")})
        run = make_engine(fleet, executor=executor).run()

        assert executor.actions_for("b1").count("deploy") == 1
        deploy = next(p for p in run.phases if p.kind is PhaseKind.DEPLOY)
        assert deploy.outcome.status is OutcomeStatus.FAIL
        assert deploy.outcome.attempts == 1
        assert run.reason == "DeploymentError"
        assert "deploy b1" in run.error
        assert "exit 1" in run.error

    def test_unhealthy_backend_blocks_front_door(self, make_engine, fleet):
        """The load balancer is never updated while a backend is failing."""
        executor = FakeExecutor()
        check = FakeCheck(unhealthy={"b2"})
        make_engine(fleet, executor=executor, check=check).run()

        assert ("lb", "reload-proxy") not in executor.calls

    def test_next_backend_waits_for_health(self, make_engine, fleet):
        """b2 deploy happens only after b1's health probe has been run."""
        events: list[str] = []
        executor = FakeExecutor()
        executor.on_execute = lambda t, a: events.append(f"exec:{t.name}:{a}")

        class RecordingCheck(FakeCheck):
            def __call__(self, target, timeout_s):
                events.append(f"probe:{target.name}")
                super().__call__(target, timeout_s)

        make_engine(fleet, executor=executor, check=RecordingCheck()).run()

        update_events = events[3:]  # after the three pre-validation probes
        assert update_events[:4] == [
            "exec:b1:deploy",
            "probe:b1",
            "exec:b2:deploy",
            "probe:b2",
        ]

    def test_remaining_phases_skipped(self, make_engine, fleet):
        executor = FakeExecutor({("b1", "deploy"): ExecResult.failure("boom")})
        run = make_engine(fleet, executor=executor).run()

        skipped = [(p.kind.value, p.target) for p in run.phases if p.outcome.status is OutcomeStatus.SKIPPED]
        assert skipped == [
            ("health", "b1"),
            ("deploy", "b2"),
            ("health", "b2"),
            ("deploy", "lb"),
            ("health", "lb"),
            ("post-validate", "lb"),
        ]


class TestRollback:
    """Failures lead to exactly one recovery pass."""

    def test_health_failure_recovered(self, make_engine, fleet):
        """b1 fails all health attempts, recovery probe succeeds -> ROLLED_BACK."""
        executor = FakeExecutor()
        # pre-validate (1 attempt), health (2 attempts), recovery probe
        check = FakeCheck(script={"b1": [True, False, False, True]})
        engine = make_engine(fleet, executor=executor, check=check)

        run = engine.run()

        assert run.status is RunStatus.ROLLED_BACK
        assert run.state is EngineState.ROLLED_BACK
        assert run.reason == "HealthCheckTimeout"
        assert executor.actions_for("b1") == ["deploy", "restart-service"]
        assert executor.actions_for("b2") == []
        rollbacks = [p for p in run.phases if p.kind is PhaseKind.ROLLBACK]
        assert [(p.target, p.outcome.status) for p in rollbacks] == [("b1", OutcomeStatus.PASS)]
        assert engine.summary.exit_code == 1

    def test_health_failure_unrecovered(self, make_engine, fleet):
        """Recovery probe still unhealthy -> FAILED with RollbackFailure."""
        executor = FakeExecutor()
        check = FakeCheck(script={"b1": [True]}, unhealthy={"b1"})
        run = make_engine(fleet, executor=executor, check=check).run()

        assert run.status is RunStatus.FAILED
        assert run.reason == "RollbackFailure"
        assert executor.actions_for("b1").count("restart-service") == 1
        assert run.target_health["b1"] == "unhealthy"
        assert "health b1" in run.error
        assert "rollback b1" in run.error

    def test_recovery_covers_all_touched_targets(self, make_engine, fleet):
        """b2 failing recovers b1 and b2, one recovery action each."""
        executor = FakeExecutor()
        check = FakeCheck(script={"b2": [True, False, False, True]})
        run = make_engine(fleet, executor=executor, check=check).run()

        assert run.status is RunStatus.ROLLED_BACK
        assert executor.actions_for("b1").count("restart-service") == 1
        assert executor.actions_for("b2").count("restart-service") == 1
        assert executor.actions_for("lb") == []

    def test_rollback_phase_recorded_for_every_failure(self, make_engine, fleet):
        executor = FakeExecutor({("b1", "deploy"): ExecResult.failure("boom")})
        run = make_engine(fleet, executor=executor).run()

        kinds = [p.kind for p in run.phases]
        assert PhaseKind.ROLLBACK in kinds
        assert kinds.index(PhaseKind.ROLLBACK) > max(
            i for i, p in enumerate(run.phases) if p.outcome.status is OutcomeStatus.FAIL
        )

    def test_settle_time_waited_once(self, make_engine, fleet, clock, fast_policy):
        config = RunConfig(policy=fast_policy, settle_time=30)
        check = FakeCheck(script={"b2": [True, False, False, True]})
        make_engine(fleet, check=check, config=config).run()

        assert clock.sleeps.count(30) == 1

    def test_recovery_action_failure_is_unrecovered(self, make_engine, fleet):
        executor = FakeExecutor(
            {
                ("b1", "deploy"): ExecResult.failure("boom"),
                ("b1", "restart-service"): ExecResult.failure("unit not found"),
            }
        )
        run = make_engine(fleet, executor=executor).run()

        assert run.status is RunStatus.FAILED
        rollback = next(p for p in run.phases if p.kind is PhaseKind.ROLLBACK)
        assert "unit not found" in rollback.outcome.error


class TestConnectivity:
    """Unreachable targets are retried within the policy budget."""

    def test_deploy_retried_on_connectivity(self, make_engine, fleet):
        executor = FakeExecutor(
            {
                ("b1", "deploy"): [
                    ExecResult.failure("Connection refused", connectivity=True),
                    ExecResult.success(),
                ]
            }
        )
        run = make_engine(fleet, executor=executor).run()

        assert run.status is RunStatus.SUCCEEDED
        deploy = next(p for p in run.phases if p.kind is PhaseKind.DEPLOY)
        assert deploy.outcome.attempts == 2

    def test_deploy_unreachable_exhausts_budget(self, make_engine, fleet):
        executor = FakeExecutor(
            {("b1", "deploy"): ExecResult.failure("Connection refused", connectivity=True)}
        )
        run = make_engine(fleet, executor=executor).run()

        assert executor.actions_for("b1").count("deploy") == 2
        assert run.status is RunStatus.ROLLED_BACK
        assert run.reason == "ConnectivityError"
        assert "unreachable after 2 attempt(s)" in run.error


class TestPostValidate:
    """Cross-fleet routing check through the front door."""

    def test_uses_larger_attempt_budget(self, make_engine, fleet, fast_policy):
        config = RunConfig(policy=fast_policy, settle_time=0, post_validate_attempts=5)
        route_check = FakeCheck(unhealthy={"lb"})
        run = make_engine(fleet, route_check=route_check, config=config).run()

        assert route_check.count("lb") == 5
        post = next(p for p in run.phases if p.kind is PhaseKind.POST_VALIDATE)
        assert post.outcome.status is OutcomeStatus.FAIL
        assert post.outcome.attempts == 5

    def test_failure_recovers_everything_touched(self, make_engine, fleet):
        executor = FakeExecutor()
        route_check = FakeCheck(unhealthy={"lb"})
        run = make_engine(fleet, executor=executor, route_check=route_check).run()

        assert run.status is RunStatus.ROLLED_BACK
        assert executor.calls[-3:] == [
            ("b1", "restart-service"),
            ("b2", "restart-service"),
            ("lb", "reload-proxy"),
        ]


class TestPlans:
    """check/backend/frontend/api restrict the plan."""

    def test_backend_plan(self, make_engine, fleet):
        executor = FakeExecutor()
        route_check = FakeCheck()
        run = make_engine(fleet, executor=executor, route_check=route_check).run(Plan.BACKEND)

        assert run.status is RunStatus.SUCCEEDED
        assert executor.calls == [("b1", "deploy"), ("b2", "deploy")]
        assert {p.target for p in run.phases} == {"b1", "b2"}
        assert route_check.calls == []

    def test_frontend_plan(self, make_engine, fleet):
        executor = FakeExecutor()
        run = make_engine(fleet, executor=executor).run(Plan.FRONTEND)

        assert run.status is RunStatus.SUCCEEDED
        assert executor.calls == [("lb", "reload-proxy")]
        assert [p.kind for p in run.phases] == [
            PhaseKind.PRE_VALIDATE,
            PhaseKind.DEPLOY,
            PhaseKind.HEALTH,
            PhaseKind.POST_VALIDATE,
        ]

    def test_api_plan_only_routes(self, make_engine, fleet):
        executor = FakeExecutor()
        check = FakeCheck()
        run = make_engine(fleet, executor=executor, check=check).run(Plan.API)

        assert run.status is RunStatus.SUCCEEDED
        assert [p.kind for p in run.phases] == [PhaseKind.POST_VALIDATE]
        assert executor.calls == []
        assert check.calls == []

    def test_api_plan_failure_recovers_front_door(self, make_engine, fleet):
        executor = FakeExecutor()
        run = make_engine(
            fleet, executor=executor, route_check=FakeCheck(unhealthy={"lb"})
        ).run(Plan.API)

        assert run.status is RunStatus.ROLLED_BACK
        assert executor.calls == [("lb", "reload-proxy")]

    def test_backend_plan_without_backends(self, make_engine, lb):
        executor = FakeExecutor()
        engine = make_engine(TargetRegistry([lb]), executor=executor)
        with pytest.raises(ConfigError, match="backend"):
            engine.run(Plan.BACKEND)
        assert executor.calls == []

    def test_api_plan_without_front_door(self, make_engine, b1):
        with pytest.raises(ConfigError, match="front-door"):
            make_engine(TargetRegistry([b1])).run(Plan.API)

    def test_backends_only_fleet_skips_post_validate(self, make_engine, b1, b2):
        run = make_engine(TargetRegistry([b1, b2])).run()
        assert run.status is RunStatus.SUCCEEDED
        assert PhaseKind.POST_VALIDATE not in [p.kind for p in run.phases]

    def test_custom_role_is_front_door(self, make_engine, b1):
        edge = Target(name="edge", address="10.0.0.9", role="gateway")
        executor = FakeExecutor()
        run = make_engine(TargetRegistry([edge, b1]), executor=executor).run()

        assert run.status is RunStatus.SUCCEEDED
        assert executor.calls == [("b1", "deploy"), ("edge", "deploy")]


class TestCancellation:
    """External cancellation is honored at phase boundaries."""

    def test_cancel_before_start(self, make_engine, fleet):
        cancel = threading.Event()
        cancel.set()
        executor = FakeExecutor()
        check = FakeCheck()
        run = make_engine(fleet, executor=executor, check=check, cancel=cancel).run()

        assert run.status is RunStatus.FAILED
        assert run.reason == "Cancelled"
        assert executor.calls == []
        assert check.calls == []
        assert all(p.outcome.status is OutcomeStatus.SKIPPED for p in run.phases)

    def test_cancel_mid_update_finishes_in_flight_call(self, make_engine, fleet):
        cancel = threading.Event()
        executor = FakeExecutor()
        executor.on_execute = lambda t, a: cancel.set()
        run = make_engine(fleet, executor=executor, cancel=cancel).run()

        assert run.status is RunStatus.FAILED
        assert run.reason == "Cancelled"
        assert executor.calls == [("b1", "deploy")]
        deploy = next(p for p in run.phases if p.kind is PhaseKind.DEPLOY)
        assert deploy.outcome.status is OutcomeStatus.PASS
        rollback = [p for p in run.phases if p.kind is PhaseKind.ROLLBACK]
        assert [(p.target, p.outcome.status) for p in rollback] == [
            ("b1", OutcomeStatus.SKIPPED)
        ]

    def test_cancel_api_plan_records_no_rollback(self, make_engine, fleet):
        cancel = threading.Event()
        cancel.set()
        run = make_engine(fleet, cancel=cancel).run(Plan.API)

        assert statuses(run) == [("post-validate", "lb", OutcomeStatus.SKIPPED)]


class TestRunTimeout:
    """Wall-clock ceiling for the whole run."""

    def test_timeout_at_phase_boundary(self, make_engine, fleet, clock, fast_policy):
        config = RunConfig(policy=fast_policy, settle_time=0, run_timeout=60)
        executor = FakeExecutor()
        executor.on_execute = lambda t, a: clock.advance(120)
        run = make_engine(fleet, executor=executor, config=config).run()

        assert run.status is RunStatus.FAILED
        assert run.reason == "RunTimeout"
        assert executor.calls == [("b1", "deploy")]
        assert "1m00s" in run.error

    def test_timeout_during_probe_retries(self, make_engine, fleet, clock):
        policy = HealthCheckPolicy(max_attempts=3, retry_delay=10, per_attempt_timeout=5)
        config = RunConfig(policy=policy, settle_time=0, run_timeout=15)
        check = FakeCheck(script={"b1": [True]}, unhealthy={"b1"})
        run = make_engine(fleet, check=check, config=config).run()

        assert run.status is RunStatus.FAILED
        assert run.reason == "RunTimeout"
        health = next(p for p in run.phases if p.kind is PhaseKind.HEALTH)
        assert health.outcome.attempts == 2

    def test_recovery_bounded_by_deadline(self, make_engine, fleet, clock):
        """Health gives up just before the ceiling; recovery must not outlive it."""
        policy = HealthCheckPolicy(max_attempts=3, retry_delay=10, per_attempt_timeout=5)
        config = RunConfig(policy=policy, settle_time=30, run_timeout=25)
        executor = FakeExecutor()
        check = FakeCheck(script={"b1": [True]}, unhealthy={"b1"})
        run = make_engine(fleet, executor=executor, check=check, config=config).run()

        assert run.status is RunStatus.FAILED
        assert run.reason == "RunTimeout"
        assert run.duration_s <= 26
        assert clock.sleeps == [10, 10, 5]
        assert executor.actions_for("b1") == ["deploy", "restart-service"]
        assert executor.actions_for("b2") == []
        rollback = [p for p in run.phases if p.kind is PhaseKind.ROLLBACK]
        assert [(p.target, p.outcome.status) for p in rollback] == [("b1", OutcomeStatus.FAIL)]
        assert "rollback: run exceeded" in run.error
        assert "health b1" in run.error

    def test_api_plan_timeout_records_skipped_rollback(self, make_engine, fleet, clock):
        """A routing failure past the ceiling still leaves a rollback phase."""
        policy = HealthCheckPolicy(max_attempts=3, retry_delay=10, per_attempt_timeout=5)
        config = RunConfig(
            policy=policy, settle_time=0, post_validate_attempts=5, run_timeout=15
        )
        executor = FakeExecutor()
        route_check = FakeCheck(unhealthy={"lb"})
        run = make_engine(
            fleet, executor=executor, route_check=route_check, config=config
        ).run(Plan.API)

        assert run.status is RunStatus.FAILED
        assert run.reason == "RunTimeout"
        assert statuses(run) == [
            ("post-validate", "lb", OutcomeStatus.FAIL),
            ("rollback", None, OutcomeStatus.SKIPPED),
        ]
        assert "recovery not attempted" in run.phases[-1].outcome.error
        assert executor.calls == []


class TestUnexpectedErrors:
    """Errors the engine did not anticipate still end the run with a summary."""

    def test_executor_exception_is_deploy_failure(self, make_engine, fleet):
        def broken(target, action):
            if action == "deploy":
                raise RollgateError("transport closed")

        executor = FakeExecutor()
        executor.on_execute = broken
        engine = make_engine(fleet, executor=executor)

        run = engine.run()

        assert run.status is RunStatus.ROLLED_BACK
        assert run.reason == "DeploymentError"
        assert "RollgateError: transport closed" in run.error
        assert executor.actions_for("b1") == ["deploy", "restart-service"]
        assert executor.actions_for("b2") == []
        assert engine.summary is not None
        assert engine.summary.exit_code == 1

    def test_executor_exception_not_retried(self, make_engine, fleet):
        def broken(target, action):
            raise OSError("ssh: not found")

        executor = FakeExecutor()
        executor.on_execute = broken
        run = make_engine(fleet, executor=executor).run()

        assert run.status is RunStatus.FAILED
        assert run.reason == "RollbackFailure"
        assert executor.calls == [("b1", "deploy"), ("b1", "restart-service")]

    def test_unexpected_check_error_closes_run(self, make_engine, fleet):
        def broken_route(target, timeout_s):
            raise ValueError("malformed route table")

        engine = make_engine(fleet, route_check=broken_route)

        run = engine.run()

        assert run.status is RunStatus.FAILED
        assert run.state is EngineState.FAILED
        assert run.reason == "ValueError"
        assert run.error == "post-validate lb: malformed route table"
        assert statuses(run)[-4:] == [
            ("post-validate", "lb", OutcomeStatus.SKIPPED),
            ("rollback", "b1", OutcomeStatus.SKIPPED),
            ("rollback", "b2", OutcomeStatus.SKIPPED),
            ("rollback", "lb", OutcomeStatus.SKIPPED),
        ]
        assert engine.summary is not None
        assert engine.summary.exit_code == 1

    def test_engine_usable_after_unexpected_error(self, make_engine, fleet):
        calls = []

        def flaky_route(target, timeout_s):
            calls.append(target.name)
            if len(calls) == 1:
                raise ValueError("malformed route table")

        engine = make_engine(fleet, route_check=flaky_route)

        assert engine.run().status is RunStatus.FAILED
        assert engine.run().status is RunStatus.SUCCEEDED


class TestRunRecord:
    """The engine is the only writer and runs one at a time."""

    def test_one_run_at_a_time(self, make_engine, fleet):
        executor = FakeExecutor()
        engine = make_engine(fleet, executor=executor)
        rejected = []

        def reenter(target, action):
            with pytest.raises(RollgateError, match="already in progress"):
                engine.run()
            rejected.append(target.name)

        executor.on_execute = reenter
        run = engine.run()

        assert run.status is RunStatus.SUCCEEDED
        assert rejected == ["b1", "b2", "lb"]

    def test_record_closed_after_finish(self, make_engine, fleet):
        run = make_engine(fleet).run()
        with pytest.raises(RollgateError, match="closed"):
            run.set_state(EngineState.IDLE)

    def test_reporter_sees_every_phase(self, make_engine, fleet):
        reporter = RunReporter()
        run = make_engine(fleet, reporter=reporter).run()

        phase_events = [e for e in reporter.events if e["event"] == "phase"]
        assert len(phase_events) == len(run.phases)
        states = [e["state"] for e in reporter.events if e["event"] == "state"]
        assert states == [
            "pre_validating",
            "updating_targets",
            "post_validating",
            "succeeded",
        ]


class TestScenario:
    """lb + two backends, b2 never becomes healthy."""

    @pytest.fixture
    def scenario_config(self) -> RunConfig:
        policy = HealthCheckPolicy(max_attempts=2, retry_delay=0, per_attempt_timeout=5)
        return RunConfig(policy=policy, settle_time=0)

    def _expected_prefix(self):
        return [
            ("pre-validate", "lb", OutcomeStatus.PASS),
            ("pre-validate", "b1", OutcomeStatus.PASS),
            ("pre-validate", "b2", OutcomeStatus.WARN),
            ("deploy", "b1", OutcomeStatus.PASS),
            ("health", "b1", OutcomeStatus.PASS),
            ("deploy", "b2", OutcomeStatus.PASS),
            ("health", "b2", OutcomeStatus.FAIL),
        ]

    def test_unrecovered(self, make_engine, fleet, scenario_config):
        executor = FakeExecutor()
        engine = make_engine(
            fleet, executor=executor, check=FakeCheck(unhealthy={"b2"}), config=scenario_config
        )
        run = engine.run()

        assert statuses(run)[:7] == self._expected_prefix()
        assert run.status is RunStatus.FAILED
        assert engine.summary.exit_code == 1
        assert executor.actions_for("lb") == []

    def test_recovered(self, make_engine, fleet, scenario_config):
        check = FakeCheck(script={"b2": [False, False, False, True]})
        engine = make_engine(fleet, check=check, config=scenario_config)
        run = engine.run()

        assert statuses(run)[:7] == self._expected_prefix()
        assert run.status is RunStatus.ROLLED_BACK
        assert engine.summary.exit_code == 1
