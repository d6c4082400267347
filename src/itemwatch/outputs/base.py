"""Abstract base class for outputs.

An output durably records the values produced by items. Every output is
prepared once before scheduling starts, shared by all item pipelines while
the process runs, and cleaned up once when it stops.

Output Lifecycle:
1. Construction: Output built from its configuration section
2. prepare(): One-time setup; failure aborts start-up
3. Runtime: write_value / write_raw_value / write_raw_value_as_fallback,
   called concurrently from many items
4. clean_up(): Best-effort teardown
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime
from enum import Enum

from itemwatch.models import Item


class OutputErrorKind(str, Enum):
    """Phase of the output lifecycle an error happened in."""

    PREPARE = "prepare"
    WRITE = "write"
    CLEANUP = "cleanup"


class OutputError(Exception):
    """Raised when an output fails to prepare, write or clean up.

    Attributes:
        kind: Lifecycle phase that failed
        output_name: Name of the failing output
        cause: Underlying exception, if any
    """

    def __init__(
        self,
        kind: OutputErrorKind,
        output_name: str,
        cause: BaseException | str | None = None,
    ) -> None:
        self.kind = kind
        self.output_name = output_name
        self.cause = cause
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if self.kind == OutputErrorKind.PREPARE:
            message = f"failed to prepare output {self.output_name}"
        elif self.kind == OutputErrorKind.WRITE:
            message = f"failed writing values to output {self.output_name}"
        else:
            message = f"cleanup of output {self.output_name} returned an error"
        if self.cause:
            message += f": {self.cause}"
        return message


class Output(ABC):
    """Base class for all outputs.

    Subclasses implement numeric and raw writes; the flags deciding whether
    raw text is written live here so every output treats them the same.

    Class Attributes:
        name: Identifier of this output type, used in log and error messages

    Instance Attributes:
        always_write_raw: Write the raw text on every tick, not only as fallback
        use_raw_as_fallback: Write the raw text when a tick produced no numbers
    """

    name: str = "output"

    def __init__(self, always_write_raw: bool = False, use_raw_as_fallback: bool = True) -> None:
        self.always_write_raw = always_write_raw
        self.use_raw_as_fallback = use_raw_as_fallback

    async def prepare(self, items: Sequence[Item]) -> "Output":
        """Prepare the output for writing.

        Called once per process start, before any item runs.

        Args:
            items: All configured items

        Returns:
            The ready output

        Raises:
            OutputError: If the output cannot be used
        """
        return self

    @abstractmethod
    async def write_value(self, key: str, time: datetime, value: float) -> None:
        """Record a numeric sample.

        Must be safe to call concurrently from many items.

        Raises:
            OutputError: If the value could not be written
        """
        ...

    @abstractmethod
    async def _write_raw(self, key: str, time: datetime, value: str) -> None:
        """Record raw text unconditionally."""
        ...

    async def write_raw_value(self, key: str, time: datetime, value: str) -> None:
        """Record raw text if this output always keeps it, otherwise do nothing."""
        if self.always_write_raw:
            await self._write_raw(key, time, value)

    async def write_raw_value_as_fallback(self, key: str, time: datetime, value: str) -> None:
        """Record raw text for a tick that produced no numeric values."""
        if self.use_raw_as_fallback:
            await self._write_raw(key, time, value)

    async def clean_up(self) -> None:
        """Release resources when the process is stopping.

        Raises:
            OutputError: If teardown failed; callers log it and carry on
        """
        return None

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(always_write_raw={self.always_write_raw}, "
            f"use_raw_as_fallback={self.use_raw_as_fallback})"
        )
