"""Rollgate CLI using Click."""

from __future__ import annotations

import logging
import sys
from importlib.metadata import version

import click

from .cli_types import RunArgs
from .commands import cmd_run
from .constants import DEFAULT_CONNECT_TIMEOUT_S, INVENTORY_ENV_VAR
from .exceptions import CommandFailureError, RollgateError, UserError
from .models import Plan

# Module logger
logger = logging.getLogger("rollgate")


def setup_logging(debug: bool = False) -> None:
    """Configure logging for the CLI."""
    level = logging.DEBUG if debug else logging.WARNING
    logger.setLevel(level)
    if any(
        isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
        for h in logger.handlers
    ):
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(handler)


class RollgateGroup(click.Group):
    """Command group that reports unknown commands with exit code 1."""

    def resolve_command(self, ctx: click.Context, args: list[str]):
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError as e:
            click.echo(f"ERROR: {e.format_message()}", err=True)
            click.echo(f"Try '{ctx.command_path} help' for usage.", err=True)
            ctx.exit(1)


# Options that shape every run
def run_options(func):
    """Decorator to add run options to the command group."""
    func = click.option(
        "--inventory",
        "-i",
        type=click.Path(),
        help=f"Inventory YAML file (default: ${INVENTORY_ENV_VAR} or ./inventory.yaml).",
    )(func)
    func = click.option(
        "--max-attempts",
        type=click.IntRange(min=1),
        help="Health probe attempts per target (default: 3).",
    )(func)
    func = click.option(
        "--retry-delay",
        help="Delay between probe attempts, e.g. 10s (default: 10s).",
    )(func)
    func = click.option(
        "--per-attempt-timeout",
        help="Hard timeout for a single probe attempt (default: 30s).",
    )(func)
    func = click.option(
        "--run-timeout",
        help="Wall-clock ceiling for the whole run (default: 30m).",
    )(func)
    func = click.option(
        "--settle-time",
        help="Wait after recovery actions before re-probing (default: 30s).",
    )(func)
    func = click.option(
        "--workers",
        type=click.IntRange(min=1),
        help="Parallel workers for pre-validation probes (default: 10).",
    )(func)
    return func


def transport_options(func):
    """Decorator to add executor transport options."""
    func = click.option(
        "--transport",
        type=click.Choice(["ssh", "local"], case_sensitive=False),
        default="ssh",
        show_default=True,
        help="Where action commands run.",
    )(func)
    func = click.option(
        "--ssh-option",
        multiple=True,
        help="Extra ssh options, e.g. '--ssh-option \"-J bastion\"' (repeatable).",
    )(func)
    func = click.option(
        "--connect-timeout",
        type=int,
        default=DEFAULT_CONNECT_TIMEOUT_S,
        show_default=True,
        help="SSH connect timeout seconds.",
    )(func)
    func = click.option(
        "--action-timeout",
        type=int,
        default=300,
        show_default=True,
        help="Timeout seconds for a single remote action.",
    )(func)
    func = click.option(
        "--ssh-user",
        help="SSH user for targets that do not set one.",
    )(func)
    return func


def output_options(func):
    """Decorator to add report and output options."""
    func = click.option(
        "--event-log",
        type=click.Path(),
        help="Path to JSONL event log (default: ~/.rollgate/events.jsonl).",
    )(func)
    func = click.option(
        "--report",
        type=click.Path(),
        help="Write the final summary as JSON to this file.",
    )(func)
    func = click.option(
        "--json",
        "json_output",
        is_flag=True,
        help="Emit machine-readable JSON summary to stdout.",
    )(func)
    func = click.option(
        "--verbose",
        is_flag=True,
        help="Show attempts and durations per phase.",
    )(func)
    func = click.option(
        "--quiet",
        "-q",
        is_flag=True,
        help="Single-line output.",
    )(func)
    return func


@click.group(
    cls=RollgateGroup,
    invoke_without_command=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(version=version("rollgate"), prog_name="rollgate")
@click.option(
    "--debug",
    "-d",
    is_flag=True,
    help="Enable debug logging to stderr.",
)
@run_options
@transport_options
@output_options
@click.pass_context
def cli(
    ctx: click.Context,
    debug: bool,
    inventory: str | None,
    max_attempts: int | None,
    retry_delay: str | None,
    per_attempt_timeout: str | None,
    run_timeout: str | None,
    settle_time: str | None,
    workers: int | None,
    transport: str,
    ssh_option: tuple[str, ...],
    connect_timeout: int,
    action_timeout: int,
    ssh_user: str | None,
    event_log: str | None,
    report: str | None,
    json_output: bool,
    verbose: bool,
    quiet: bool,
):
    """Rollgate: rolling deployments gated on health checks.

    Backends are updated one at a time and must pass their health probe
    before the next one is touched; the load balancer follows once every
    backend is healthy. Any failure triggers one recovery pass.

    Runs `check` when no command is given.
    """
    if verbose and quiet:
        raise click.UsageError("--verbose and --quiet are mutually exclusive")

    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    setup_logging(debug=debug)
    ctx.obj["args"] = RunArgs(
        inventory=inventory,
        max_attempts=max_attempts,
        retry_delay=retry_delay,
        per_attempt_timeout=per_attempt_timeout,
        run_timeout=run_timeout,
        settle_time=settle_time,
        transport=transport.lower(),
        ssh_option=list(ssh_option) if ssh_option else None,
        connect_timeout=connect_timeout,
        action_timeout=action_timeout,
        ssh_user=ssh_user,
        workers=workers,
        event_log=event_log,
        report=report,
        json=json_output,
        verbose=verbose,
        quiet=quiet,
    )
    if ctx.invoked_subcommand is None:
        cmd_run(ctx.obj["args"], Plan.FULL)


@cli.command("check")
@click.pass_context
def check(ctx: click.Context):
    """Full run: pre-validate, update backends then front door, post-validate."""
    cmd_run(ctx.obj["args"], Plan.FULL)


@cli.command("backend")
@click.pass_context
def backend(ctx: click.Context):
    """Rolling update of backend-role targets only."""
    cmd_run(ctx.obj["args"], Plan.BACKEND)


@cli.command("frontend")
@click.pass_context
def frontend(ctx: click.Context):
    """Update the front-door role only, then check routing through it."""
    cmd_run(ctx.obj["args"], Plan.FRONTEND)


@cli.command("api")
@click.pass_context
def api(ctx: click.Context):
    """Only check that requests through the front door reach a backend."""
    cmd_run(ctx.obj["args"], Plan.API)


@cli.command("help")
@click.pass_context
def help_(ctx: click.Context):
    """Show this help message."""
    click.echo(ctx.parent.get_help() if ctx.parent else ctx.get_help())


def main():
    """Main entry point for the CLI."""
    try:
        cli()
    except CommandFailureError as e:
        # Command already printed its report, just exit
        sys.exit(e.rc)
    except UserError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(e.rc)
    except RollgateError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(2)
    except KeyboardInterrupt:
        click.echo("ERROR: Interrupted", err=True)
        sys.exit(130)
