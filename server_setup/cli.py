"""
Command-line interface for server-setup.

    server-setup run --mode full --rollback-on-failure
    server-setup checkpoint create before-upgrade
    server-setup checkpoint list
    server-setup rollback 07-security
    server-setup password --length 24
    server-setup modes
    server-setup validate

License: MIT
Version: 1.1.0
"""

import logging
import signal
import sys
from typing import List, Optional

import pydantic
import pyfiglet
import typer
from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm
from rich.table import Table

from .checkpoint import CheckpointManager
from .config import APP_NAME, VERSION, Settings
from .console import make_console
from .errors import CheckpointError, InsecureEntropyError, ValidationError
from .logging_config import setup_logging
from .orchestrator import SetupOrchestrator
from .report import render_report
from .runner import CommandRunner
from .security import DEFAULT_CHARSET, SPECIAL_CHARACTERS, generate_password
from .steps import MODE_DESCRIPTIONS, MODES
from .validation import validate_pre_installation

EXIT_FAILURE = 1
EXIT_USAGE = 2
SIGNAL_EXIT_CODES = {signal.SIGINT: 130, signal.SIGTERM: 143}

app = typer.Typer(
    help="Provision a fresh Ubuntu server with checkpoints and rollback.",
    no_args_is_help=True,
    add_completion=False,
)
checkpoint_app = typer.Typer(help="Create and inspect configuration checkpoints.")
app.add_typer(checkpoint_app, name="checkpoint")


#####################################
# Helpers
#####################################


def load_settings(**overrides) -> Settings:
    """Build Settings from the environment, letting non-None CLI values win."""
    values = {k: v for k, v in overrides.items() if v is not None}
    try:
        return Settings(**values)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid configuration: {problems}") from e


def build_runner(settings: Settings, logger: logging.Logger) -> CommandRunner:
    return CommandRunner(
        dry_run=settings.dry_run,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay,
        logger=logger,
    )


def print_banner(console: Console) -> None:
    console.print(pyfiglet.figlet_format("server-setup", font="slant"), style="header")
    console.print(f"{APP_NAME} v{VERSION}", style="info")


def install_signal_handlers(logger: logging.Logger) -> None:
    def handler(signum, frame):
        name = signal.Signals(signum).name
        logger.error(f"Interrupted by {name}")
        sys.exit(SIGNAL_EXIT_CODES.get(signum, 128 + signum))

    for sig in SIGNAL_EXIT_CODES:
        signal.signal(sig, handler)


def fail(console: Console, message: str, code: int) -> None:
    console.print(f"✗ {escape(message)}", style="error")
    raise typer.Exit(code=code)


def settings_or_exit(console: Console, **overrides) -> Settings:
    try:
        return load_settings(**overrides)
    except ValidationError as e:
        fail(console, str(e), EXIT_USAGE)


def start_logging(settings: Settings, console: Console) -> logging.Logger:
    return setup_logging(
        settings.resolve(settings.log_dir), settings.effective_log_level, console
    )


#####################################
# Commands
#####################################


@app.command()
def run(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be done without doing it."),
    skip_updates: bool = typer.Option(False, "--skip-updates", help="Skip apt update/upgrade."),
    user: Optional[str] = typer.Option(None, "--user", help="Primary application user."),
    mode: Optional[str] = typer.Option(None, "--mode", help="full, nginx-only, dev-only or minimal."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    rollback_on_failure: bool = typer.Option(
        False, "--rollback-on-failure", help="Restore a failed step's checkpoint."
    ),
):
    """Provision this host with the steps of the selected mode."""
    err = make_console(stderr=True)
    settings = settings_or_exit(
        err,
        verbose=verbose or None,
        dry_run=dry_run or None,
        skip_updates=skip_updates or None,
        primary_user=user,
        mode=mode,
        assume_yes=yes or None,
        rollback_on_failure=rollback_on_failure or None,
    )
    console = make_console(no_color=settings.no_color)
    logger = start_logging(settings, console)
    install_signal_handlers(logger)
    print_banner(console)

    steps = ", ".join(MODES[settings.mode])
    console.print(f"Mode [info]{settings.mode}[/info]: {steps}")
    if not (settings.dry_run or settings.assume_yes):
        if not Confirm.ask("This will modify system configuration. Continue?", console=console):
            logger.info("Setup cancelled by user")
            raise typer.Exit(code=0)

    runner = build_runner(settings, logger)
    orchestrator = SetupOrchestrator(settings, runner, console=console, logger=logger)
    try:
        report = orchestrator.run()
    except ValidationError as e:
        logger.error(str(e))
        raise typer.Exit(code=EXIT_USAGE)
    render_report(report, console, logger)
    if not report.success:
        raise typer.Exit(code=EXIT_FAILURE)


@checkpoint_app.command("create")
def checkpoint_create(
    name: str = typer.Argument(..., help="Checkpoint name (letters, digits, - and _)."),
    path: Optional[List[str]] = typer.Option(
        None, "--path", "-p", help="File or directory to capture; repeatable."
    ),
):
    """Capture the configured files under NAME."""
    err = make_console(stderr=True)
    settings = settings_or_exit(err)
    console = make_console(no_color=settings.no_color)
    logger = start_logging(settings, console)
    manager = CheckpointManager(settings, build_runner(settings, logger), logger=logger)
    try:
        directory = manager.create(name, path or None)
    except ValidationError as e:
        fail(console, str(e), EXIT_USAGE)
    except CheckpointError as e:
        fail(console, str(e), EXIT_FAILURE)
    console.print(f"✓ Checkpoint created: {directory}", style="success")


@checkpoint_app.command("list")
def checkpoint_list(
    name: Optional[str] = typer.Argument(None, help="Only show checkpoints with this name."),
):
    """List checkpoints, newest first."""
    err = make_console(stderr=True)
    settings = settings_or_exit(err)
    out = make_console(no_color=settings.no_color, stderr=False)
    manager = CheckpointManager(settings, build_runner(settings, logging.getLogger("server_setup")))
    try:
        checkpoints = manager.list(name)
    except ValidationError as e:
        fail(err, str(e), EXIT_USAGE)
    if not checkpoints:
        out.print("No checkpoints found.", style="warning")
        return
    table = Table(
        show_header=True,
        header_style="table.header",
        border_style="panel.border",
        row_styles=["table.cell"],
    )
    for column in ("Name", "Created", "Files", "Directory"):
        table.add_column(column)
    for cp in checkpoints:
        table.add_row(cp.name, f"{cp.created_at:%Y-%m-%d %H:%M:%S}", str(len(cp.files)), str(cp.directory))
    out.print(table)


@app.command()
def rollback(
    name: str = typer.Argument(..., help="Checkpoint name to restore."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be restored."),
):
    """Restore the files of the newest checkpoint called NAME."""
    err = make_console(stderr=True)
    settings = settings_or_exit(err, dry_run=dry_run or None, assume_yes=yes or None)
    console = make_console(no_color=settings.no_color)
    logger = start_logging(settings, console)
    install_signal_handlers(logger)
    manager = CheckpointManager(settings, build_runner(settings, logger), logger=logger)
    try:
        checkpoint = manager.latest(name)
    except ValidationError as e:
        fail(console, str(e), EXIT_USAGE)
    except CheckpointError as e:
        fail(console, str(e), EXIT_FAILURE)

    console.print(
        f"Rolling back [info]{checkpoint.name}[/info] from {checkpoint.directory} "
        f"({len(checkpoint.files)} file(s))"
    )
    if not (settings.dry_run or settings.assume_yes):
        if not Confirm.ask("Restore these files?", console=console):
            logger.info("Rollback cancelled by user")
            raise typer.Exit(code=0)
    try:
        result = manager.rollback(name)
    except CheckpointError as e:
        fail(console, str(e), EXIT_FAILURE)
    if not result.success:
        fail(
            console,
            f"Not restored: {', '.join(result.missing + result.failed)} "
            f"({len(result.restored)} file(s) restored)",
            EXIT_FAILURE,
        )
    console.print(f"✓ Restored {len(result.restored)} file(s)", style="success")


@app.command()
def password(
    length: int = typer.Option(16, "--length", "-l", help="Number of characters."),
    no_special: bool = typer.Option(False, "--no-special", help="Letters and digits only."),
):
    """Print a random password drawn from a cryptographic source."""
    err = make_console(stderr=True)
    charset = DEFAULT_CHARSET if no_special else DEFAULT_CHARSET + SPECIAL_CHARACTERS
    try:
        typer.echo(generate_password(length, charset))
    except ValidationError as e:
        fail(err, str(e), EXIT_USAGE)
    except InsecureEntropyError as e:
        fail(err, str(e), EXIT_FAILURE)


@app.command()
def modes():
    """Show the installation modes and the steps each one runs."""
    out = make_console(stderr=False)
    table = Table(
        show_header=True,
        header_style="table.header",
        border_style="panel.border",
        row_styles=["table.cell"],
    )
    table.add_column("Mode")
    table.add_column("Description")
    table.add_column("Steps")
    for mode, steps in MODES.items():
        table.add_row(mode, MODE_DESCRIPTIONS[mode], "\n".join(steps))
    out.print(table)


@app.command()
def validate():
    """Check whether this host meets the installation requirements."""
    err = make_console(stderr=True)
    settings = settings_or_exit(err)
    console = make_console(no_color=settings.no_color)
    logger = start_logging(settings, console)
    results = validate_pre_installation(settings, build_runner(settings, logger))

    out = make_console(no_color=settings.no_color, stderr=False)
    table = Table(
        show_header=True,
        header_style="table.header",
        border_style="panel.border",
        row_styles=["table.cell"],
    )
    table.add_column("Check")
    table.add_column("Result")
    table.add_column("Details")
    for r in results:
        if r.passed:
            verdict = "[success]✓ PASS[/success]"
        elif r.fatal:
            verdict = "[error]✗ FAIL[/error]"
        else:
            verdict = "[warning]⚠ WARN[/warning]"
        table.add_row(r.name, verdict, r.message)
    out.print(table)
    if any(r.blocking for r in results):
        raise typer.Exit(code=EXIT_USAGE)


if __name__ == "__main__":
    app()
