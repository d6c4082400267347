"""Pydantic data models for itemwatch.

This module provides the core data models used throughout itemwatch:
- Item: A monitored item with its acquisition kind and digest rule
- FileKind, CommandKind, ShellKind: Acquisition strategies
- RawDigest, RegexDigest: Digestion rules
- Measurement: A single sample handed to outputs
- TickResult: Outcome of one item tick
"""

from itemwatch.models.base import (
    CommandKind,
    DigestKind,
    FileKind,
    Item,
    ItemKind,
    Measurement,
    RawDigest,
    RegexDigest,
    ShellKind,
    TickResult,
)

__all__ = [
    # Items
    "Item",
    "ItemKind",
    "FileKind",
    "CommandKind",
    "ShellKind",
    # Digestion rules
    "DigestKind",
    "RawDigest",
    "RegexDigest",
    # Results
    "Measurement",
    "TickResult",
]
