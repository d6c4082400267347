"""Acquisition of raw values for monitored items.

Each item names one acquisition strategy. This module runs it for a single
tick and returns the captured text:

- File: read the entire file as UTF-8
- Command: spawn an executable and capture its stdout
- Shell: run a snippet with the configured shell interpreter

Any failure is raised as AcquisitionError; the scheduler turns it into a
log line and skips the rest of the tick.
"""

import asyncio
import logging
import os
from pathlib import Path

from itemwatch.models import CommandKind, FileKind, Item, ShellKind

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/sh"


class AcquisitionError(Exception):
    """Raised when the raw value of an item could not be acquired.

    Attributes:
        key: Key of the item whose acquisition failed
        reason: Human-readable description of the failure
    """

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(f"{key}: {reason}")


def merged_env(extra: dict[str, str]) -> dict[str, str]:
    """Return the inherited process environment overridden by ``extra``.

    The process environment itself is left untouched.
    """
    env = dict(os.environ)
    env.update(extra)
    return env


def _read_file(key: str, path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise AcquisitionError(key, f"could not read output from file {path}: {e}") from e
    except OSError as e:
        raise AcquisitionError(key, f"could not open file {path}: {e}") from e


async def run_command(
    key: str,
    program: str | Path,
    args: tuple[str, ...] | list[str],
    env: dict[str, str],
) -> str:
    """Run a program and return its decoded stdout.

    A non-zero exit status is not an error: whatever the program printed is
    still used. Only a failure to spawn it or undecodable output is.

    Args:
        key: Item key, used for error reporting
        program: Executable to run
        args: Arguments passed to the executable
        env: Extra environment variables merged over the inherited ones

    Returns:
        Captured standard output

    Raises:
        AcquisitionError: If the process cannot be spawned or its output is not UTF-8
    """
    try:
        process = await asyncio.create_subprocess_exec(
            str(program),
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            env=merged_env(env),
        )
    except OSError as e:
        raise AcquisitionError(key, f"could not run command {program}: {e}") from e

    try:
        stdout, _ = await process.communicate()
    except asyncio.CancelledError:
        # Only reached when a caller gave up on the tick; reap the child
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise
    if process.returncode != 0:
        logger.debug("Command %s for '%s' exited with status %s", program, key, process.returncode)

    try:
        return stdout.decode("utf-8")
    except UnicodeDecodeError as e:
        raise AcquisitionError(key, f"could not read output from command {program}: {e}") from e


async def acquire(item: Item, shell: str = DEFAULT_SHELL) -> str:
    """Acquire the raw value of an item.

    Args:
        item: The item to run
        shell: Shell interpreter used for shell items

    Returns:
        The raw, untrimmed text

    Raises:
        AcquisitionError: If the value could not be acquired
    """
    kind = item.kind
    if isinstance(kind, FileKind):
        raw = await asyncio.to_thread(_read_file, item.key, kind.path)
    elif isinstance(kind, CommandKind):
        raw = await run_command(item.key, kind.path, kind.args, item.env)
    elif isinstance(kind, ShellKind):
        raw = await run_command(item.key, shell, ["-c", kind.script], item.env)
    else:
        raise AcquisitionError(item.key, f"unsupported item kind {type(kind).__name__}")

    logger.debug("%s=%s", item.key, raw)
    return raw
