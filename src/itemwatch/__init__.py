"""itemwatch - lightweight, config-driven telemetry collector.

Periodically reads files, runs commands or shell snippets, extracts numeric
values with regular expressions and writes them to file and InfluxDB
outputs.
"""

__version__ = "0.3.0"
