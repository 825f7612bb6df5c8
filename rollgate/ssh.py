"""Rollgate SSH and local process execution."""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from collections.abc import Sequence

from .constants import (
    CONNECTION_ERROR_MARKERS,
    SSH_ERROR_EXIT_CODE,
    SSH_TIMEOUT_EXIT_CODE,
)
from .exceptions import RollgateError

logger = logging.getLogger("rollgate")


def _decode(data: bytes | None) -> str:
    return data.decode("utf-8", "replace") if data else ""


def run_process(argv: Sequence[str], *, timeout_s: float) -> tuple[int, str, str]:
    """
    Executes argv with a hard timeout.

    Returns (returncode, stdout, stderr). Does NOT raise on non-zero rc.
    A timeout is reported as SSH_TIMEOUT_EXIT_CODE with any partial output.
    """
    start_time = time.time()
    try:
        p = subprocess.run(
            list(argv),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout_s,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        elapsed = time.time() - start_time
        logger.debug("%s timeout after %.2fs", argv[0], elapsed)
        return (
            SSH_TIMEOUT_EXIT_CODE,
            _decode(e.stdout),
            _decode(e.stderr) or f"{argv[0]} timeout",
        )
    except FileNotFoundError:
        raise RollgateError(f"{argv[0]} binary not found on PATH.")

    elapsed = time.time() - start_time
    logger.debug("%s completed in %.2fs (rc=%d)", argv[0], elapsed, p.returncode)
    return p.returncode, _decode(p.stdout), _decode(p.stderr)


def run_ssh(
    host: str,
    remote_cmd: str,
    *,
    ssh_options: list[str],
    timeout_s: float = 60,
) -> tuple[int, str, str]:
    """
    Executes: ssh [opts...] host remote_cmd

    Returns (returncode, stdout, stderr). Does NOT raise on non-zero rc.
    """
    cmd = ["ssh", "-o", "BatchMode=yes"] + ssh_options + [host, remote_cmd]
    logger.debug("SSH command: ssh %s %s '<script>'", " ".join(ssh_options), host)
    logger.debug("SSH timeout: %ss", timeout_s)
    try:
        return run_process(cmd, timeout_s=timeout_s)
    except RollgateError:
        raise RollgateError("ssh binary not found on PATH. Install OpenSSH client (ssh).")


def build_ssh_options(connect_timeout: int, ssh_option: list[str] | None = None) -> list[str]:
    """Build SSH options list from connect timeout and extra options."""
    opts: list[str] = []
    # ConnectTimeout is client-side only; safe default for humans.
    opts += ["-o", f"ConnectTimeout={connect_timeout}"]
    # Fail fast rather than hang on unknown host key prompts.
    opts += ["-o", "StrictHostKeyChecking=accept-new"]
    if ssh_option:
        for item in ssh_option:
            # Each --ssh-option can include multiple tokens, e.g. "-J bastion" or "-p 2222"
            opts += shlex.split(item)
    return opts


def remote_command_script(command: str) -> str:
    """Wrap a command for the remote login shell."""
    script = f"""
set -eu
{command}
"""
    return "sh -c " + shlex.quote(script.strip("\n"))


def is_connection_error(rc: int, stderr: str) -> bool:
    """Return True if rc/stderr mean the target was never reached."""
    if rc == 0:
        return False
    return rc == SSH_ERROR_EXIT_CODE or any(m in stderr for m in CONNECTION_ERROR_MARKERS)
