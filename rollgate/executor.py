"""Executors: run a named action on one target.

The engine only depends on the Executor protocol. SshExecutor and
LocalExecutor render the same action command templates and differ only
in where the command runs.
"""

from __future__ import annotations

import logging
import shlex
from collections.abc import Mapping
from typing import Protocol

from .constants import DEFAULT_ACTION_COMMANDS, SSH_TIMEOUT_EXIT_CODE
from .models import ExecResult, Target
from .ssh import is_connection_error, remote_command_script, run_process, run_ssh

logger = logging.getLogger("rollgate")


class Executor(Protocol):
    """Runs one action on one target and blocks until it completes or times out."""

    def execute(
        self, target: Target, action: str, *, timeout_s: float | None = None
    ) -> ExecResult: ...


def execute_safely(
    executor: Executor, target: Target, action: str, *, timeout_s: float | None = None
) -> ExecResult:
    """Call executor.execute, turning anything it raises into a failed result."""
    try:
        return executor.execute(target, action, timeout_s=timeout_s)
    except Exception as e:
        logger.debug("Executor raised during %s on %s", action, target.name, exc_info=True)
        return ExecResult.failure(f"{type(e).__name__}: {e}")


class CommandExecutor:
    """Base for executors that map actions to shell command templates.

    Templates may use {service}, {address} and {name}.
    """

    remote = True

    def __init__(self, actions: Mapping[str, str] | None = None, *, timeout_s: float = 300):
        self.actions = {**DEFAULT_ACTION_COMMANDS, **(actions or {})}
        self.timeout_s = timeout_s

    def render(self, target: Target, action: str) -> str | None:
        """Return the command for action on target, or None if it cannot be built."""
        template = self.actions.get(action)
        if template is None:
            return None
        if "{service}" in template and not target.service:
            return None
        return template.format(
            service=shlex.quote(target.service or ""),
            address=shlex.quote(target.address),
            name=shlex.quote(target.name),
        )

    def run(self, target: Target, command: str, timeout_s: float) -> tuple[int, str, str]:
        raise NotImplementedError

    def execute(
        self, target: Target, action: str, *, timeout_s: float | None = None
    ) -> ExecResult:
        """Run action on target; timeout_s overrides the executor default."""
        if action not in self.actions:
            return ExecResult.failure(f"unknown action {action!r}")
        command = self.render(target, action)
        if command is None:
            return ExecResult.failure(f"action {action!r} needs a service name; none configured")

        timeout = self.timeout_s if timeout_s is None else timeout_s
        logger.debug("Executing %s on %s: %s", action, target.name, command)
        rc, out, err = self.run(target, command, timeout)
        if rc == 0:
            return ExecResult.success()

        detail = (err.strip() or out.strip()).splitlines()
        reason = detail[-1] if detail else f"exit code {rc}"
        if rc == SSH_TIMEOUT_EXIT_CODE:
            reason = f"timed out after {timeout:g}s"
        connectivity = self.remote and is_connection_error(rc, err)
        logger.debug("Action %s on %s failed (rc=%d): %s", action, target.name, rc, reason)
        return ExecResult.failure(reason, connectivity=connectivity)


class SshExecutor(CommandExecutor):
    """Runs action commands on the target over the local ssh client."""

    def __init__(
        self,
        actions: Mapping[str, str] | None = None,
        *,
        ssh_options: list[str] | None = None,
        timeout_s: float = 300,
    ):
        super().__init__(actions, timeout_s=timeout_s)
        self.ssh_options = list(ssh_options or [])

    def run(self, target: Target, command: str, timeout_s: float) -> tuple[int, str, str]:
        return run_ssh(
            target.ssh_host,
            remote_command_script(command),
            ssh_options=self.ssh_options,
            timeout_s=timeout_s,
        )


class LocalExecutor(CommandExecutor):
    """Runs action commands on this machine (single-box setups and staging)."""

    remote = False

    def run(self, target: Target, command: str, timeout_s: float) -> tuple[int, str, str]:
        return run_process(["sh", "-c", command], timeout_s=timeout_s)
