"""File output.

Appends one line per sample to a file named after the measurement key
inside a base directory:

    <unix-epoch-seconds> <value>

Numbers are written in plain positional notation without a trailing
``.0`` (``1``, ``0.42``, ``0.0000001``); not-a-number is ``NaN``.
"""

import asyncio
from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
import math
import os
from pathlib import Path

from itemwatch.models import Item
from itemwatch.outputs.base import Output, OutputError, OutputErrorKind


class FileOutput(Output):
    """Output writing one plain-text file per measurement key.

    Each write appends a complete line with a single ``write()`` while
    holding a per-key lock, so concurrent writers never interleave partial
    lines.

    Example:
        output = FileOutput(Path("/var/lib/itemwatch"))
        await output.prepare(items)
        await output.write_value("os.loadavg.one", now, 0.42)
    """

    name = "FileOutput"

    def __init__(
        self,
        base_path: Path,
        always_write_raw: bool = False,
        use_raw_as_fallback: bool = True,
    ) -> None:
        super().__init__(always_write_raw, use_raw_as_fallback)
        self.base_path = Path(base_path)
        self._locks: dict[str, asyncio.Lock] = {}

    async def prepare(self, items: Sequence[Item]) -> "FileOutput":
        """Create the base directory and check that it is writable."""
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OutputError(OutputErrorKind.PREPARE, self.name, e) from e

        if not os.access(self.base_path, os.W_OK | os.X_OK):
            raise OutputError(
                OutputErrorKind.PREPARE,
                self.name,
                f"base path {self.base_path} is not writable",
            )
        return self

    def path_for(self, key: str) -> Path:
        """Return the file a measurement key is written to."""
        if not key or os.sep in key or key in (".", ".."):
            raise OutputError(OutputErrorKind.WRITE, self.name, f"invalid key {key!r}")
        return self.base_path / key

    async def write_value(self, key: str, time: datetime, value: float) -> None:
        await self._append(key, time, format_float(value))

    async def _write_raw(self, key: str, time: datetime, value: str) -> None:
        await self._append(key, time, value.strip())

    async def _append(self, key: str, time: datetime, value: str) -> None:
        path = self.path_for(key)
        line = f"{int(time.timestamp())} {value}\n"
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            try:
                await asyncio.to_thread(_append_line, path, line)
            except OSError as e:
                raise OutputError(OutputErrorKind.WRITE, self.name, e) from e

    def __repr__(self) -> str:
        return (
            f"FileOutput(base_path={str(self.base_path)!r}, "
            f"always_write_raw={self.always_write_raw}, "
            f"use_raw_as_fallback={self.use_raw_as_fallback})"
        )


def format_float(value: float) -> str:
    """Format a float for a data file line."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    if value.is_integer():
        if value == 0 and math.copysign(1.0, value) < 0:
            return "-0"
        return str(int(value))
    return format(Decimal(repr(value)), "f")


def _append_line(path: Path, line: str) -> None:
    with open(path, "a", encoding="utf-8") as f:
        f.write(line)
