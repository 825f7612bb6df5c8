"""Shared pytest fixtures for Rollgate tests."""

from __future__ import annotations

import tempfile
import threading
from collections.abc import Generator
from pathlib import Path

import pytest
from rollgate.config import RunConfig
from rollgate.engine import RolloutEngine
from rollgate.models import HealthCheckPolicy, Target
from rollgate.probe import HealthProbe
from rollgate.registry import TargetRegistry
from rollgate.report import RunReporter

from fakes import FakeCheck, FakeExecutor, ManualClock


@pytest.fixture
def tmp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def fast_policy() -> HealthCheckPolicy:
    return HealthCheckPolicy(max_attempts=2, retry_delay=0, per_attempt_timeout=5)


@pytest.fixture
def fast_config(fast_policy: HealthCheckPolicy) -> RunConfig:
    """Run config with no waiting anywhere."""
    return RunConfig(policy=fast_policy, settle_time=0, post_validate_attempts=2)


@pytest.fixture
def lb() -> Target:
    return Target(name="lb", address="10.0.0.1", role="loadbalancer", service="nginx")


@pytest.fixture
def b1() -> Target:
    return Target(name="b1", address="10.0.0.2", role="backend", port=8080, service="app")


@pytest.fixture
def b2() -> Target:
    return Target(name="b2", address="10.0.0.3", role="backend", port=8080, service="app")


@pytest.fixture
def fleet(lb: Target, b1: Target, b2: Target) -> TargetRegistry:
    """Load balancer first in the file, as in a typical inventory."""
    return TargetRegistry([lb, b1, b2])


@pytest.fixture
def make_engine(clock: ManualClock, fast_config: RunConfig):
    """Factory for engines wired to fakes and the manual clock."""

    def factory(
        registry: TargetRegistry,
        *,
        executor: FakeExecutor | None = None,
        check: FakeCheck | None = None,
        route_check: FakeCheck | None = None,
        config: RunConfig | None = None,
        cancel: threading.Event | None = None,
        reporter: RunReporter | None = None,
    ) -> RolloutEngine:
        check = check or FakeCheck()
        probe = HealthProbe(check, sleep=clock.sleep, clock=clock)
        route_probe = HealthProbe(route_check or FakeCheck(), sleep=clock.sleep, clock=clock)
        return RolloutEngine(
            config or fast_config,
            registry,
            executor or FakeExecutor(),
            probe,
            route_probe=route_probe,
            reporter=reporter or RunReporter(),
            cancel=cancel,
            clock=clock,
            sleep=clock.sleep,
        )

    return factory


@pytest.fixture
def inventory_yaml() -> str:
    return """\
targets:
  loadbalancer:
    - name: lb
      address: 10.0.0.1
      port: 80
      health_path: /health
      service: nginx
  backend:
    - {address: 10.0.0.2, port: 8080, health_path: /api/employees, service: employee-backend}
    - {address: 10.0.0.3, port: 8080, health_path: /api/employees, service: employee-backend}
options:
  max_attempts: 2
  retry_delay: 0s
  settle_time: 0
  api_path: /api/employees
"""


@pytest.fixture
def inventory_file(tmp_dir: Path, inventory_yaml: str) -> Path:
    path = tmp_dir / "inventory.yaml"
    path.write_text(inventory_yaml)
    return path
