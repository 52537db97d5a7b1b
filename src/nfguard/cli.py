"""Main CLI entry point using Typer.

Commands:
- run: install the rules, keep them in place until SIGINT/SIGTERM, remove them
- status: check whether the rules are loaded
- clean: remove everything nfguard installs
- config: show, validate or print an example system rules file
"""

import os
import signal
import threading
from pathlib import Path
from typing import Annotated, Optional

import typer

from nfguard import __version__
from nfguard.core.audit import configure_audit_logger
from nfguard.core.config import DEFAULT_CONFIG_PATH, FirewallConfig, get_example_config
from nfguard.core.context import ExecutionContext, create_context
from nfguard.core.exceptions import NFGuardError, PrerequisiteError
from nfguard.core.output import console as app_console
from nfguard.services.controller import FirewallController


app = typer.Typer(
    name="nfguard",
    help="NFQUEUE firewall rule controller.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

config_app = typer.Typer(
    name="config",
    help="System rules file management.",
    no_args_is_help=True,
)

app.add_typer(config_app, name="config")


# Type aliases for common options
DryRunOption = Annotated[
    bool,
    typer.Option(
        "--dry-run",
        "-n",
        help="Print iptables commands without executing them.",
        is_flag=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet",
        "-q",
        help="Suppress non-essential output. Only show errors.",
        is_flag=True,
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Disable colored output.",
        is_flag=True,
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help=f"Path to the system rules file. Default: {DEFAULT_CONFIG_PATH}",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]

QueueNumOption = Annotated[
    Optional[int],
    typer.Option(
        "--queue-num",
        help="Decision queue number (NFQUEUE). Default: 0 or NFGUARD_QUEUE_NUM.",
        min=0,
        max=65535,
    ),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        app_console.print(f"nfguard version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """nfguard - keeps NFQUEUE interception rules installed.

    [bold]Examples:[/bold]
        nfguard run --queue-num 0
        nfguard status
        nfguard clean
        nfguard config validate
    """
    pass


def handle_error(error: NFGuardError) -> None:
    """Print a formatted NFGuardError and exit with its code."""
    app_console.error(error.message)

    if error.details:
        for detail in error.details:
            app_console.print(f"  [dim]{detail}[/dim]")

    if error.hint:
        app_console.hint(error.hint)

    raise typer.Exit(error.exit_code)


def _check_root(ctx: ExecutionContext) -> None:
    """iptables needs root unless only printing commands."""
    if ctx.dry_run:
        return
    if os.geteuid() != 0:
        raise PrerequisiteError(
            "This operation requires root privileges",
            hint="Run with: sudo nfguard ...",
        )


def _build_controller(ctx: ExecutionContext, **kwargs) -> FirewallController:
    audit = configure_audit_logger(
        ctx.settings.audit_log,
        enabled=ctx.settings.audit_enabled and not ctx.dry_run,
    )
    return FirewallController(ctx, audit=audit, **kwargs)


# ============================================================================
# Rule commands
# ============================================================================

@app.command("run")
def run_cmd(
    config: ConfigOption = None,
    queue_num: QueueNumOption = None,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Install the rules and keep them in place until interrupted.

    Rules removed by other tools are reinstalled every 30 seconds.
    Changes to the system rules file are applied as they happen.
    On SIGINT/SIGTERM all rules nfguard added are removed.
    """
    ctx = create_context(
        dry_run=dry_run,
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
        config=config,
        queue_num=queue_num,
    )

    try:
        _check_root(ctx)
        controller = _build_controller(ctx)

        stop_requested = threading.Event()

        def _on_signal(signum: int, _frame: object) -> None:
            ctx.console.info(f"Received {signal.Signals(signum).name}, stopping")
            stop_requested.set()

        signal.signal(signal.SIGINT, _on_signal)
        signal.signal(signal.SIGTERM, _on_signal)

        ctx.console.step(
            f"Installing firewall rules (queue {ctx.effective_queue_num}, "
            f"IPv6 {'on' if ctx.ipv6_enabled else 'off'})"
        )
        controller.init()
        ctx.console.success("Firewall rules installed")

        while not stop_requested.wait(1.0):
            pass

        controller.stop()
        ctx.console.success("Firewall rules removed")

    except NFGuardError as e:
        handle_error(e)


@app.command("status")
def status_cmd(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Check whether the queue and drop rules are loaded.

    Exits with 1 when they are not.
    """
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        _check_root(ctx)
        controller = FirewallController(ctx, watch_config=False)
        report = controller.inspect()

        rows = []
        for stack, present in report.queue_rule.items():
            rows.append([stack.value, "queue (mangle/OUTPUT)", "yes" if present else "no"])
        for stack, present in report.drop_rule.items():
            rows.append([stack.value, "drop marked (OUTPUT)", "yes" if present else "no"])
        if rows:
            ctx.console.table("Baseline rules", ["Stack", "Rule", "Loaded"], rows)

        if report.error:
            ctx.console.warn(report.error)

        if report.loaded:
            ctx.console.success("Firewall rules are loaded")
        else:
            ctx.console.error("Firewall rules are not loaded")
            raise typer.Exit(1)

    except NFGuardError as e:
        handle_error(e)


@app.command("clean")
def clean_cmd(
    config: ConfigOption = None,
    queue_num: QueueNumOption = None,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Remove the queue and drop rules and the configured chains.

    Use after an unclean shutdown left rules behind.
    """
    ctx = create_context(
        dry_run=dry_run,
        verbose=verbose,
        no_color=no_color,
        config=config,
        queue_num=queue_num,
    )

    try:
        _check_root(ctx)
        controller = _build_controller(ctx, watch_config=False)

        # Chains are only known once their rules have been seen
        config_rules = FirewallConfig.load_or_default(ctx.rules_path).enabled_rules()
        controller.reconciler.track_system_chains(config_rules)

        ctx.console.step("Removing firewall rules")
        controller.clean_rules(log_errors=ctx.is_verbose)
        ctx.console.success("Firewall rules removed")

    except NFGuardError as e:
        handle_error(e)


# ============================================================================
# Config commands
# ============================================================================

@config_app.command("show")
def config_show(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Show the system rules file as loaded."""
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        path = ctx.rules_path
        loaded = FirewallConfig.load_or_default(path)

        ctx.console.print()
        ctx.console.print(f"[bold]System rules file:[/bold] {path}")
        ctx.console.print(f"[bold]File exists:[/bold] {path.exists()}")
        ctx.console.print()

        ctx.console.yaml(loaded.to_yaml(), title="System rules")

        settings = ctx.settings
        ctx.console.summary("Settings (from environment)", {
            "NFGUARD_QUEUE_NUM": settings.queue_num,
            "NFGUARD_IPV6": "auto" if settings.ipv6 is None else settings.ipv6,
            "IPv6 in effect": ctx.ipv6_enabled,
            "NFGUARD_AUDIT_LOG": settings.audit_log,
        })

    except NFGuardError as e:
        handle_error(e)


@config_app.command("validate")
def config_validate(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Validate the system rules file.

    Checks that the file exists and parses, and that every rule has
    a chain and a target.
    """
    ctx = create_context(verbose=verbose, no_color=no_color, config=config)

    try:
        loaded = FirewallConfig.load(ctx.rules_path)

        problems = []
        for entry in loaded.system_rules:
            rule = entry.rule.to_rule()
            try:
                rule.validate()
            except NFGuardError as e:
                problems.append(e.message)

        if problems:
            for problem in problems:
                ctx.console.error(problem)
            raise typer.Exit(2)

        enabled = len(loaded.enabled_rules())
        ctx.console.success(
            f"Configuration is valid: {ctx.rules_path} "
            f"({enabled}/{len(loaded.system_rules)} rule(s) enabled)"
        )

        if ctx.is_verbose:
            ctx.console.yaml(loaded.to_yaml())

    except NFGuardError as e:
        handle_error(e)


@config_app.command("example")
def config_example(no_color: NoColorOption = False) -> None:
    """Print an example system rules file."""
    ctx = create_context(no_color=no_color)
    ctx.console.print(get_example_config(), markup=False)


if __name__ == "__main__":
    app()
