"""Item pipeline for itemwatch.

This module provides the per-tick pipeline and its scheduling:

- acquire: Run an item's acquisition strategy and return the raw text
- digest_value: Turn raw text into named float values
- ItemScheduler: Fixed-rate per-item tasks with output fan-out

All operations are asyncio-based; items never block each other.
"""

from itemwatch.collectors.acquisition import AcquisitionError, acquire
from itemwatch.collectors.digest import digest_value, parse_float
from itemwatch.collectors.scheduler import ItemScheduler, ItemState, SchedulerStats

__all__ = [
    "AcquisitionError",
    "acquire",
    "digest_value",
    "parse_float",
    "ItemScheduler",
    "ItemState",
    "SchedulerStats",
]
