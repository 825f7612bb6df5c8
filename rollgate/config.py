"""Run configuration: defaults, inventory options and CLI overrides."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .constants import (
    ACTION_DEPLOY,
    ACTION_RESTART_SERVICE,
    DEFAULT_API_PATH,
    DEFAULT_BACKEND_ROLE,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PER_ATTEMPT_TIMEOUT_S,
    DEFAULT_POST_VALIDATE_ATTEMPTS,
    DEFAULT_PRE_VALIDATE_ATTEMPTS,
    DEFAULT_RECOVERY_ACTIONS,
    DEFAULT_RETRY_DELAY_S,
    DEFAULT_RUN_TIMEOUT_S,
    DEFAULT_SETTLE_TIME_S,
    DEFAULT_UPDATE_ACTIONS,
    DEFAULT_WORKERS,
)
from .exceptions import ConfigError
from .models import HealthCheckPolicy
from .utils import parse_duration

OPTION_KEYS = frozenset(
    {
        "max_attempts",
        "retry_delay",
        "per_attempt_timeout",
        "run_timeout",
        "settle_time",
        "pre_validate_attempts",
        "post_validate_attempts",
        "api_path",
        "backend_role",
        "update_actions",
        "recovery_actions",
        "workers",
    }
)


@dataclass(frozen=True)
class RunConfig:
    """Everything a run needs besides its collaborators.

    Built once per invocation and never mutated afterwards.
    """

    policy: HealthCheckPolicy = field(
        default_factory=lambda: HealthCheckPolicy(
            DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_DELAY_S, DEFAULT_PER_ATTEMPT_TIMEOUT_S
        )
    )
    pre_validate_attempts: int = DEFAULT_PRE_VALIDATE_ATTEMPTS
    post_validate_attempts: int = DEFAULT_POST_VALIDATE_ATTEMPTS
    settle_time: float = DEFAULT_SETTLE_TIME_S
    run_timeout: float = DEFAULT_RUN_TIMEOUT_S
    api_path: str = DEFAULT_API_PATH
    backend_role: str = DEFAULT_BACKEND_ROLE
    update_actions: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_UPDATE_ACTIONS))
    recovery_actions: Mapping[str, str] = field(
        default_factory=lambda: dict(DEFAULT_RECOVERY_ACTIONS)
    )
    workers: int = DEFAULT_WORKERS

    def __post_init__(self) -> None:
        if self.settle_time < 0:
            raise ConfigError(f"settle_time must not be negative, got {self.settle_time}")
        if self.run_timeout <= 0:
            raise ConfigError(f"run_timeout must be positive, got {self.run_timeout}")
        if self.workers < 1:
            raise ConfigError(f"workers must be >= 1, got {self.workers}")
        # Attempt counts share HealthCheckPolicy validation
        for attempts in (self.pre_validate_attempts, self.post_validate_attempts):
            self.policy.with_attempts(attempts)

    @property
    def pre_validate_policy(self) -> HealthCheckPolicy:
        return self.policy.with_attempts(self.pre_validate_attempts)

    @property
    def post_validate_policy(self) -> HealthCheckPolicy:
        return self.policy.with_attempts(self.post_validate_attempts)

    def update_action(self, role: str) -> str:
        return self.update_actions.get(role, ACTION_DEPLOY)

    def recovery_action(self, role: str) -> str:
        return self.recovery_actions.get(role, ACTION_RESTART_SERVICE)


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid {name}: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid {name}: {value!r}") from None


def _as_action_map(value: Any, name: str, defaults: Mapping[str, str]) -> dict[str, str]:
    if not isinstance(value, Mapping):
        raise ConfigError(f"{name} must be a mapping of role to action")
    merged = dict(defaults)
    for role, action in value.items():
        if not isinstance(action, str) or not action:
            raise ConfigError(f"{name}[{role}] must be a non-empty action name")
        merged[str(role)] = action
    return merged


def build_run_config(
    options: Mapping[str, Any] | None = None, **overrides: Any
) -> RunConfig:
    """Build a RunConfig from inventory options and CLI overrides.

    Precedence: built-in defaults < options < overrides. Overrides whose
    value is None are ignored so unset CLI flags do not mask the file.

    Raises:
        ConfigError: On unknown keys or invalid values
    """
    merged: dict[str, Any] = dict(options or {})
    merged.update({k: v for k, v in overrides.items() if v is not None})
    unknown = sorted(set(merged) - OPTION_KEYS)
    if unknown:
        raise ConfigError(f"Unknown option(s): {', '.join(unknown)}")

    policy = HealthCheckPolicy(
        max_attempts=_as_int(merged.get("max_attempts", DEFAULT_MAX_ATTEMPTS), "max_attempts"),
        retry_delay=parse_duration(
            merged.get("retry_delay", DEFAULT_RETRY_DELAY_S), field="retry_delay"
        ),
        per_attempt_timeout=parse_duration(
            merged.get("per_attempt_timeout", DEFAULT_PER_ATTEMPT_TIMEOUT_S),
            field="per_attempt_timeout",
        ),
    )
    api_path = str(merged.get("api_path", DEFAULT_API_PATH))
    if not api_path.startswith("/"):
        api_path = "/" + api_path

    return RunConfig(
        policy=policy,
        pre_validate_attempts=_as_int(
            merged.get("pre_validate_attempts", DEFAULT_PRE_VALIDATE_ATTEMPTS),
            "pre_validate_attempts",
        ),
        post_validate_attempts=_as_int(
            merged.get("post_validate_attempts", DEFAULT_POST_VALIDATE_ATTEMPTS),
            "post_validate_attempts",
        ),
        settle_time=parse_duration(
            merged.get("settle_time", DEFAULT_SETTLE_TIME_S), field="settle_time"
        ),
        run_timeout=parse_duration(
            merged.get("run_timeout", DEFAULT_RUN_TIMEOUT_S), field="run_timeout"
        ),
        api_path=api_path,
        backend_role=str(merged.get("backend_role", DEFAULT_BACKEND_ROLE)),
        update_actions=_as_action_map(
            merged.get("update_actions", {}), "update_actions", DEFAULT_UPDATE_ACTIONS
        ),
        recovery_actions=_as_action_map(
            merged.get("recovery_actions", {}), "recovery_actions", DEFAULT_RECOVERY_ACTIONS
        ),
        workers=_as_int(merged.get("workers", DEFAULT_WORKERS), "workers"),
    )
