"""Rollgate exception classes."""

from __future__ import annotations


class RollgateError(RuntimeError):
    """Base exception for Rollgate errors."""


class UserError(RollgateError):
    """Errors that should be shown to user without traceback."""

    def __init__(self, message: str, rc: int = 2):
        super().__init__(message)
        self.rc = rc


class ConfigError(UserError):
    """Inventory or run options are missing, empty or malformed.

    Always raised before any remote action is issued.
    """


class CommandFailureError(RollgateError):
    """Command failed - output already printed, just need to exit.

    This exception is for cases where a command has already printed
    its report and just needs to signal failure without additional
    output from main().
    """

    def __init__(self, rc: int = 1):
        super().__init__("")
        self.rc = rc


class DeploymentFailure(RollgateError):
    """A failure tied to one target and one phase of a run.

    The string form always names the phase and the target so that no
    failure reaches the operator without context.
    """

    def __init__(self, reason: str, *, target: str | None = None, phase: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.target = target
        self.phase = phase

    def __str__(self) -> str:
        where = " ".join(p for p in (self.phase, self.target) if p)
        return f"{where}: {self.reason}" if where else self.reason


class ConnectivityError(DeploymentFailure):
    """The target could not be reached at all (retryable)."""


class HealthCheckTimeout(DeploymentFailure):
    """Probe attempts were exhausted without a healthy result."""


class DeploymentError(DeploymentFailure):
    """The executor ran an action and it failed (not retried)."""


class RollbackFailure(DeploymentFailure):
    """The recovery pass did not restore health."""


class Cancelled(DeploymentFailure):
    """External cancellation observed at a phase boundary."""


class RunTimeout(DeploymentFailure):
    """The run exceeded its wall-clock ceiling."""


class CheckFailed(DeploymentFailure):
    """A single health check attempt got an unhealthy answer."""
