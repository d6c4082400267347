"""Command-line interface for itemwatch.

This module provides:
- Typer-based CLI application
- Config file loading and logging setup
- The collector process driver (prepare outputs, schedule items, clean up)
- One-shot and config-check commands

Usage:
    itemwatch                      # Run the collector (same as 'itemwatch run')
    itemwatch run -c config.yaml   # Run with a custom config file
    itemwatch check                # Validate the config and list items
    itemwatch once --item os.load  # Run a single tick and print the result

Examples:
    # Run in the background, logging at debug level
    itemwatch run --daemonize -vv

    # Try out a new regex without writing anything
    itemwatch once --item os.loadavg --dry-run
"""

import asyncio
import contextlib
import logging
import os
from pathlib import Path
import signal
import subprocess
import sys
from typing import Annotated

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table
import typer

from itemwatch import __version__
from itemwatch.collectors import ItemScheduler
from itemwatch.config import Config, LoggingConfig, load_config
from itemwatch.models import CommandKind, FileKind, Item, RegexDigest, TickResult
from itemwatch.outputs import OutputError, clean_up_outputs, prepare_outputs
from itemwatch.sentry import init_sentry, set_itemwatch_context

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="itemwatch",
    help="Lightweight, config-driven telemetry collector",
    no_args_is_help=False,
    add_completion=True,
    rich_markup_mode="rich",
)

# Set in the environment of a detached collector so it never detaches again
DAEMONIZED_ENV = "ITEMWATCH_DAEMONIZED"

# Console for rich output
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Display version and exit."""
    if value:
        console.print(f"itemwatch version {__version__}")
        raise typer.Exit()


ConfigOption = Annotated[
    Path | None,
    typer.Option(
        "--config",
        "-c",
        help="Path to config file (default: $XDG_CONFIG_HOME/itemwatch/config.yaml)",
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase log verbosity (-v info, -vv debug)",
    ),
]

DaemonizeOption = Annotated[
    bool,
    typer.Option(
        "--daemonize",
        "-d",
        help="Start the collector detached in the background",
    ),
]

VersionOption = Annotated[
    bool | None,
    typer.Option(
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
]


def resolve_log_level(config: LoggingConfig, verbosity: int) -> int:
    """Combine the configured level with -v flags.

    Args:
        config: Logging configuration
        verbosity: Number of -v flags

    Returns:
        The effective logging level
    """
    level = logging.getLevelName(config.level)
    if verbosity >= 2:
        return min(level, logging.DEBUG)
    if verbosity == 1:
        return min(level, logging.INFO)
    return level


def setup_logging(config: LoggingConfig, verbosity: int = 0) -> None:
    """Configure the root logger for the collector process.

    Logs go to stderr, and to ``config.file`` when one is set.

    Args:
        config: Logging configuration
        verbosity: Number of -v flags
    """
    handlers: list[logging.Handler] = [
        RichHandler(console=err_console, show_path=False, rich_tracebacks=True),
    ]
    if config.file:
        log_path = Path(config.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=resolve_log_level(config, verbosity),
        format="%(message)s",
        handlers=handlers,
        force=True,
    )


def load_or_exit(config: Path | None) -> Config:
    """Load the configuration, printing errors and exiting on failure."""
    try:
        return load_config(config_path=str(config) if config else None)
    except FileNotFoundError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    except Exception as e:
        err_console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1) from e


def daemonize(argv: list[str]) -> int:
    """Relaunch the collector detached from the terminal.

    The child gets the same arguments, including any daemonize flag, and
    ``ITEMWATCH_DAEMONIZED=1`` in its environment, which makes it run in the
    foreground of its new session.

    Args:
        argv: Command-line arguments of this invocation (without program name)

    Returns:
        PID of the background process
    """
    child = subprocess.Popen(
        [sys.executable, "-m", "itemwatch", *argv],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        env={**os.environ, DAEMONIZED_ENV: "1"},
    )
    return child.pid


async def run_collector(cfg: Config, config_path: str | None = None) -> None:
    """Prepare outputs and run every item until SIGINT or SIGTERM.

    Args:
        cfg: Validated configuration
        config_path: Custom config path, for error reporting context

    Raises:
        OutputError: If an output cannot be prepared
    """
    outputs = await prepare_outputs(cfg.outputs, cfg.items)
    set_itemwatch_context(items=cfg.items, outputs=outputs, config_path=config_path)

    scheduler = ItemScheduler(cfg.items, outputs, shell=cfg.general.shell)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, scheduler.request_stop)

    await scheduler.run_until_stopped()


def describe_kind(item: Item) -> str:
    """Return a short description of how an item is acquired."""
    kind = item.kind
    if isinstance(kind, FileKind):
        return f"file {kind.path}"
    if isinstance(kind, CommandKind):
        return " ".join(["command", str(kind.path), *kind.args])
    return f"shell {kind.script}"


def describe_digest(item: Item) -> str:
    """Return a short description of an item's digest rule."""
    if isinstance(item.digest, RegexDigest):
        return f"regex {item.digest.regex.pattern}"
    return "raw"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    daemonize_: DaemonizeOption = False,
    version: VersionOption = None,
) -> None:
    """itemwatch - lightweight, config-driven telemetry collector.

    Without a subcommand the collector runs in the foreground.
    """
    if ctx.invoked_subcommand is not None:
        return
    run_command(config=config, verbose=verbose, daemonize_=daemonize_)


@app.command("run")
def run_command(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    daemonize_: DaemonizeOption = False,
) -> None:
    """Run the collector until interrupted."""
    cfg = load_or_exit(config)

    if daemonize_ and not os.environ.get(DAEMONIZED_ENV):
        try:
            pid = daemonize(sys.argv[1:])
        except OSError as e:
            err_console.print(f"[red]Failed daemonizing the process:[/red] {e}")
            raise typer.Exit(1) from e
        console.print(f"itemwatch running in background (pid {pid})")
        return

    setup_logging(cfg.logging, verbose)
    init_sentry(cfg.sentry)

    if not cfg.items:
        err_console.print("[yellow]No items configured, nothing to do.[/yellow]")
        return

    logger.info("Starting with %d items and %d outputs", len(cfg.items), len(cfg.outputs))
    try:
        asyncio.run(run_collector(cfg, str(config) if config else None))
    except OutputError as e:
        logger.error("Error while preparing an output: %s", e)
        err_console.print(f"[red]Error while preparing an output:[/red] {e}")
        err_console.print("Abort start-up")
        raise typer.Exit(1) from e


@app.command("check")
def check_command(config: ConfigOption = None) -> None:
    """Validate the configuration and list items and outputs."""
    cfg = load_or_exit(config)

    table = Table(title="Items")
    table.add_column("Key", style="bold")
    table.add_column("Interval", justify="right")
    table.add_column("Acquisition")
    table.add_column("Digest")
    for item in cfg.items:
        table.add_row(
            item.key,
            f"{item.interval}s",
            escape(describe_kind(item)),
            escape(describe_digest(item)),
        )
    console.print(table)

    for output in cfg.outputs:
        settings = output.model_dump(exclude={"type", "password"})
        console.print(f"Output: {output.type} {escape(str(settings))}")
    console.print(f"[green]Configuration OK[/green] ({len(cfg.items)} items)")


@app.command("once")
def once_command(
    config: ConfigOption = None,
    item: Annotated[
        list[str] | None,
        typer.Option("--item", "-i", help="Key of an item to run (repeatable, default: all)"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Print results without writing to outputs"),
    ] = False,
    verbose: VerboseOption = 0,
) -> None:
    """Run a single tick of items and print what they produced."""
    cfg = load_or_exit(config)
    setup_logging(cfg.logging, verbose)

    keys = item or [i.key for i in cfg.items]
    unknown = [k for k in keys if cfg.get_item(k) is None]
    if unknown:
        err_console.print(f"[red]Unknown item:[/red] {', '.join(unknown)}")
        raise typer.Exit(1)

    async def tick() -> list[TickResult]:
        outputs = [] if dry_run else await prepare_outputs(cfg.outputs, cfg.items)
        scheduler = ItemScheduler(cfg.items, outputs, shell=cfg.general.shell)
        try:
            return await scheduler.run_once(keys)
        finally:
            await clean_up_outputs(outputs)

    try:
        results = asyncio.run(tick())
    except OutputError as e:
        err_console.print(f"[red]Error while preparing an output:[/red] {e}")
        raise typer.Exit(1) from e

    table = Table(title="Results")
    table.add_column("Key", style="bold")
    table.add_column("Raw")
    table.add_column("Values")
    failed = False
    for result in results:
        if result.error is not None:
            failed = True
            table.add_row(result.key, f"[red]{escape(result.error)}[/red]", "")
            continue
        values = "\n".join(f"{m.key} = {m.value}" for m in result.measurements()) or "-"
        table.add_row(result.key, escape(result.raw or ""), values)
    console.print(table)

    if failed:
        raise typer.Exit(1)


def cli_main() -> None:
    """Entry point for the CLI application."""
    app()
