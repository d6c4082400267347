"""Outputs that record item values.

This module provides:
- Output: Abstract base class for outputs
- OutputError, OutputErrorKind: Errors raised by outputs
- FileOutput: One plain-text file per measurement key
- InfluxOutput: InfluxDB HTTP line-protocol writes
- build_output / prepare_outputs: Construction from configuration
"""

from collections.abc import Sequence
import logging

from itemwatch.config import FileOutputConfig, InfluxOutputConfig, OutputConfig
from itemwatch.models import Item
from itemwatch.outputs.base import Output, OutputError, OutputErrorKind
from itemwatch.outputs.file import FileOutput
from itemwatch.outputs.influx import InfluxOutput

logger = logging.getLogger(__name__)


def build_output(config: OutputConfig) -> Output:
    """Create an output from its configuration section.

    Args:
        config: A validated output configuration

    Returns:
        The unprepared output

    Raises:
        ValueError: If the configuration type is unknown
    """
    if isinstance(config, FileOutputConfig):
        return FileOutput(
            base_path=config.base_path,
            always_write_raw=config.always_write_raw,
            use_raw_as_fallback=config.use_raw_as_fallback,
        )
    if isinstance(config, InfluxOutputConfig):
        return InfluxOutput(
            database=config.database,
            username=config.username,
            password=config.password,
            hosts=config.hosts,
            always_write_raw=config.always_write_raw,
            use_raw_as_fallback=config.use_raw_as_fallback,
            timeout=config.timeout,
        )
    raise ValueError(f"Unknown output configuration: {type(config).__name__}")


async def prepare_outputs(
    configs: Sequence[OutputConfig],
    items: Sequence[Item],
) -> list[Output]:
    """Build and prepare every configured output.

    Args:
        configs: Output configuration sections
        items: All configured items

    Returns:
        Ready outputs, in configuration order

    Raises:
        OutputError: If any output fails to prepare; outputs prepared so far
            are cleaned up first
    """
    ready: list[Output] = []
    for config in configs:
        output = build_output(config)
        try:
            ready.append(await output.prepare(items))
        except OutputError:
            await clean_up_outputs(ready)
            raise
    return ready


async def clean_up_outputs(outputs: Sequence[Output]) -> None:
    """Run clean_up on every output, logging failures."""
    for output in outputs:
        try:
            await output.clean_up()
        except Exception as e:
            logger.error("Error while cleaning up an output: %s", e)


__all__ = [
    "Output",
    "OutputError",
    "OutputErrorKind",
    "FileOutput",
    "InfluxOutput",
    "build_output",
    "prepare_outputs",
    "clean_up_outputs",
]
