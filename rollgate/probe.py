"""Health probes: bounded, retried liveness/readiness checks."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

import requests

from .constants import ACTION_CHECK_SERVICE
from .exceptions import CheckFailed, ConnectivityError, DeploymentFailure
from .executor import Executor, execute_safely
from .models import HealthCheckPolicy, ProbeResult, Target

logger = logging.getLogger("rollgate")

# A check performs one attempt against a target within timeout_s seconds.
# It returns on success and raises ConnectivityError or CheckFailed otherwise.
HealthCheck = Callable[[Target, float], None]


class HttpCheck:
    """GET an endpoint; any 2xx (and the expected body text, if set) is healthy.

    With path set, the URL is built from the target's address instead of its
    health endpoint; used for routing checks through the front door.
    """

    def __init__(self, path: str | None = None, *, session: requests.Session | None = None):
        self.path = path
        self.session = session or requests.Session()

    def url_for(self, target: Target) -> str:
        if self.path is not None:
            return target.url(self.path)
        return target.health_endpoint or target.url("/")

    def __call__(self, target: Target, timeout_s: float) -> None:
        url = self.url_for(target)
        try:
            resp = self.session.get(url, timeout=timeout_s)
        except requests.Timeout:
            raise ConnectivityError(f"GET {url} timed out after {timeout_s:g}s")
        except requests.ConnectionError as e:
            raise ConnectivityError(f"GET {url} failed: connection error ({type(e).__name__})")
        except requests.RequestException as e:
            raise CheckFailed(f"GET {url} failed: {e}")

        if not 200 <= resp.status_code < 300:
            raise CheckFailed(f"GET {url} returned HTTP {resp.status_code}")
        if target.expect and target.expect not in resp.text:
            raise CheckFailed(f"GET {url} body does not contain {target.expect!r}")


class ServiceCheck:
    """Ask the executor whether the target's service is active.

    The action runs under the probe's per-attempt timeout, not the
    executor's default action timeout.
    """

    def __init__(self, executor: Executor):
        self.executor = executor

    def __call__(self, target: Target, timeout_s: float) -> None:
        if not target.service:
            return
        result = execute_safely(self.executor, target, ACTION_CHECK_SERVICE, timeout_s=timeout_s)
        if result.ok:
            return
        if result.connectivity:
            raise ConnectivityError(result.reason or "unreachable")
        raise CheckFailed(f"service {target.service} is not active: {result.reason}")


class CompositeCheck:
    """Run several checks in order; the first failure fails the attempt."""

    def __init__(self, *checks: HealthCheck):
        self.checks = checks

    def __call__(self, target: Target, timeout_s: float) -> None:
        for check in self.checks:
            check(target, timeout_s)


class HealthProbe:
    """Repeatedly check one target until healthy or out of attempts.

    Never retries forever: policy.max_attempts is a hard ceiling. Sleeps
    policy.retry_delay between attempts but not after the last one. The
    probe only reads from the target.
    """

    def __init__(
        self,
        check: HealthCheck,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.check = check
        self.sleep = sleep
        self.clock = clock

    def probe(
        self,
        target: Target,
        policy: HealthCheckPolicy,
        *,
        deadline: float | None = None,
    ) -> ProbeResult:
        """Return a healthy result on first success, else the last failure reason.

        deadline is a clock() value after which no new attempt is started.
        """
        start = self.clock()
        last_error: str | None = None
        attempts = 0

        for attempt in range(1, policy.max_attempts + 1):
            if deadline is not None and self.clock() >= deadline:
                last_error = last_error or "run deadline exceeded before probe"
                break

            attempts = attempt
            attempt_start = self.clock()
            try:
                self.check(target, policy.per_attempt_timeout)
            except DeploymentFailure as e:
                last_error = e.reason
                logger.debug(
                    "Probe %s attempt %d/%d failed: %s",
                    target.name,
                    attempt,
                    policy.max_attempts,
                    last_error,
                )
            else:
                took = self.clock() - attempt_start
                if took <= policy.per_attempt_timeout:
                    logger.debug("Probe %s healthy on attempt %d", target.name, attempt)
                    return ProbeResult(True, attempt, None, self.clock() - start)
                last_error = (
                    f"check took {took:.1f}s, over the {policy.per_attempt_timeout:g}s limit"
                )
                logger.debug("Probe %s attempt %d too slow: %s", target.name, attempt, last_error)

            if attempt < policy.max_attempts:
                self.sleep(policy.retry_delay)

        return ProbeResult(False, attempts, last_error, self.clock() - start)


def build_target_probe(
    executor: Executor,
    *,
    session: requests.Session | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> HealthProbe:
    """Probe a target's service (if named) and then its health endpoint."""
    check = CompositeCheck(ServiceCheck(executor), HttpCheck(session=session))
    return HealthProbe(check, sleep=sleep)


def build_route_probe(
    api_path: str,
    *,
    session: requests.Session | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> HealthProbe:
    """Probe a request through the front door that must reach a backend."""
    return HealthProbe(HttpCheck(api_path, session=session), sleep=sleep)
