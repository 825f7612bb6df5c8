"""Rollgate run command: wire collaborators, run a plan, report."""

from __future__ import annotations

import json
import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING

import click

from ..config import build_run_config
from ..engine import RolloutEngine
from ..exceptions import CommandFailureError, UserError
from ..executor import CommandExecutor, LocalExecutor, SshExecutor
from ..models import Plan
from ..probe import build_route_probe, build_target_probe
from ..registry import TargetRegistry, load_inventory
from ..report import (
    RunReporter,
    format_summary_quiet,
    format_summary_table,
    write_report,
)
from ..ssh import build_ssh_options
from ..utils import default_event_log_path, default_inventory_path

if TYPE_CHECKING:
    from ..cli_types import RunArgs

logger = logging.getLogger("rollgate")


def build_executor(args: RunArgs, actions: dict[str, str]) -> CommandExecutor:
    """Pick the executor transport from --transport."""
    if args.transport == "local":
        return LocalExecutor(actions, timeout_s=args.action_timeout)
    if args.transport == "ssh":
        return SshExecutor(
            actions,
            ssh_options=build_ssh_options(args.connect_timeout, args.ssh_option),
            timeout_s=args.action_timeout,
        )
    raise UserError(f"Unknown transport: {args.transport}")


@contextmanager
def cancel_on_signals(cancel: threading.Event) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cancellation request for the running engine.

    The engine stops at the next phase boundary; a second signal falls back
    to the default handlers.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = {}

    def handler(signum, _frame):
        name = signal.Signals(signum).name
        logger.warning("Received %s; stopping at the next phase boundary", name)
        cancel.set()
        for sig, prev in previous.items():
            signal.signal(sig, prev)

    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, handler)
    try:
        yield
    finally:
        for sig, prev in previous.items():
            signal.signal(sig, prev)


def cmd_run(args: RunArgs, plan: Plan) -> None:
    """Run plan against the inventory and print the summary.

    Raises:
        ConfigError: If the inventory or options are invalid (nothing is touched)
        CommandFailureError: If the run did not end in Succeeded
    """
    inventory_path = Path(args.inventory) if args.inventory else default_inventory_path()
    inventory = load_inventory(inventory_path)
    config = build_run_config(
        inventory.options,
        max_attempts=args.max_attempts,
        retry_delay=args.retry_delay,
        per_attempt_timeout=args.per_attempt_timeout,
        run_timeout=args.run_timeout,
        settle_time=args.settle_time,
        workers=args.workers,
    )

    registry = inventory.registry
    if args.ssh_user:
        registry = TargetRegistry(
            [t if t.ssh_user else replace(t, ssh_user=args.ssh_user) for t in registry]
        )

    executor = build_executor(args, inventory.actions)
    event_log = Path(args.event_log) if args.event_log else default_event_log_path()
    reporter = RunReporter(event_log)
    cancel = threading.Event()

    engine = RolloutEngine(
        config,
        registry,
        executor,
        build_target_probe(executor),
        route_probe=build_route_probe(config.api_path),
        reporter=reporter,
        cancel=cancel,
    )

    if not args.quiet and not args.json:
        click.echo(f"Running {plan.value} against {len(registry)} target(s) from {inventory_path}")

    with cancel_on_signals(cancel):
        engine.run(plan)
    summary = engine.summary
    assert summary is not None

    if args.report:
        write_report(Path(args.report), summary)
        logger.debug("Report written to %s", args.report)

    if args.json:
        click.echo(json.dumps(summary.to_dict(), indent=2, sort_keys=True))
    elif args.quiet:
        click.echo(format_summary_quiet(summary))
    else:
        click.echo(format_summary_table(summary, verbose=args.verbose))
        click.echo(f"\nEvent log: {event_log}")

    if not summary.succeeded:
        raise CommandFailureError(rc=summary.exit_code)
