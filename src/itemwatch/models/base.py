"""Pydantic data models for monitored items.

This module defines the types every other part of itemwatch works with:
- Item: One configured thing to monitor (key, interval, kind, env, digest)
- FileKind, CommandKind, ShellKind: The acquisition strategies of an item
- RawDigest, RegexDigest: The rules for turning raw text into numbers
- Measurement: A single (key, timestamp, value) sample handed to outputs
- TickResult: What one execution of an item's pipeline produced
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
import re
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(UTC)


class FileKind(BaseModel):
    """Read the file at the given location, e.g. something below /proc or /sys."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["file"] = "file"
    path: Path


class CommandKind(BaseModel):
    """Run an executable with a list of arguments and capture its stdout."""

    model_config = ConfigDict(frozen=True, extra="forbid", coerce_numbers_to_str=True)

    type: Literal["command"] = "command"
    path: Path
    args: tuple[str, ...] = ()


class ShellKind(BaseModel):
    """Run a snippet with the configured shell (``<shell> -c <script>``)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["shell"] = "shell"
    script: str


ItemKind = Annotated[FileKind | CommandKind | ShellKind, Field(discriminator="type")]


class RawDigest(BaseModel):
    """Parse the whole trimmed output as a single float."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["raw"] = "raw"


class RegexDigest(BaseModel):
    """Extract one value per named capture group of a regular expression."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["regex"] = "regex"
    regex: re.Pattern[str]

    @property
    def group_names(self) -> list[str]:
        """Named groups of the pattern, in the order they appear."""
        return sorted(self.regex.groupindex, key=self.regex.groupindex.__getitem__)


DigestKind = Annotated[RawDigest | RegexDigest, Field(discriminator="type")]

# Keys of the flat config syntax that select the acquisition strategy
KIND_KEYS = ("file", "command", "shell")


class Item(BaseModel):
    """A single monitored item.

    Items are built once from configuration and never change afterwards.
    Each item is driven by its own scheduling task for the life of the
    process.

    Attributes:
        key: Dotted identifier used to name written measurements (e.g. os.loadavg)
        interval: Seconds between two ticks of this item
        kind: How the raw value is acquired
        env: Extra environment variables for command and shell items
        digest: How numeric measurements are extracted from the raw value
    """

    # YAML numbers in env values (PORT: 8080) are taken as their text
    model_config = ConfigDict(frozen=True, extra="forbid", coerce_numbers_to_str=True)

    key: str = Field(min_length=1)
    interval: int = Field(gt=0)
    kind: ItemKind
    env: dict[str, str] = Field(default_factory=dict)
    digest: DigestKind = Field(default_factory=RawDigest)

    @model_validator(mode="before")
    @classmethod
    def parse_flat_kind(cls, data: Any) -> Any:
        """Accept the flat config syntax for the acquisition strategy.

        An item in the config file names exactly one of ``file``, ``command``
        (with optional ``args``) or ``shell`` instead of a nested ``kind``.
        """
        if not isinstance(data, dict) or "kind" in data:
            return data

        present = [k for k in KIND_KEYS if k in data]
        if len(present) > 1:
            raise ValueError(f"only one of {', '.join(KIND_KEYS)} may be given, got {present}")
        if not present:
            raise ValueError(f"one of {', '.join(KIND_KEYS)} is required")

        data = dict(data)
        kind_name = present[0]
        value = data.pop(kind_name)
        if kind_name == "file":
            data["kind"] = {"type": "file", "path": value}
        elif kind_name == "command":
            data["kind"] = {"type": "command", "path": value, "args": data.pop("args", ())}
        else:
            data["kind"] = {"type": "shell", "script": value}

        if "args" in data:
            raise ValueError("args is only valid together with command")
        return data

    @property
    def raw_key(self) -> str:
        """Measurement key under which the raw text is recorded."""
        return f"{self.key}.raw"


@dataclass(frozen=True)
class Measurement:
    """A single sample produced by one tick of one item.

    Attributes:
        key: Measurement name (``<item.key>.<suffix>``)
        timestamp: Capture time of the tick
        value: Extracted number, or the raw text for raw writes
    """

    key: str
    timestamp: datetime
    value: float | str


@dataclass
class TickResult:
    """Outcome of one execution of an item's pipeline.

    Attributes:
        key: Key of the item that ran
        raw: Trimmed raw text (None if acquisition failed)
        values: Extracted measurements by name
        error: Acquisition error message, if any
        timestamp: Capture time of the raw value
    """

    key: str
    raw: str | None = None
    values: dict[str, float] = field(default_factory=dict)
    error: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def success(self) -> bool:
        """Whether the tick acquired a value and fanned it out."""
        return self.raw is not None and self.error is None

    def measurements(self) -> list[Measurement]:
        """Return the numeric results of this tick as Measurements."""
        return [Measurement(k, self.timestamp, v) for k, v in self.values.items()]
