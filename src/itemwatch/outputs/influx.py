"""InfluxDB output.

Sends every sample as a single point to the InfluxDB 1.x HTTP write API,
using the line protocol:

    <measurement> value=<float> <timestamp-ns>
    <measurement> value="<string>" <timestamp-ns>

Writes are dispatched as background tasks. Failures are logged and never
block or fail the tick that produced the sample.
"""

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
import logging
import math

import httpx

from itemwatch.models import Item
from itemwatch.outputs.base import Output, OutputError, OutputErrorKind

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def timestamp_ns(time: datetime) -> int:
    """Return nanoseconds since the Unix epoch for a timezone-aware datetime."""
    return (time - EPOCH) // timedelta(microseconds=1) * 1000


def escape_measurement(name: str) -> str:
    """Escape a measurement name for the line protocol."""
    return name.replace("\\", "\\\\").replace(",", "\\,").replace(" ", "\\ ")


def escape_string_field(value: str) -> str:
    """Quote and escape a string field value for the line protocol."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def format_point(key: str, time: datetime, value: float | str) -> str:
    """Format a single point with the field ``value``.

    Args:
        key: Measurement name
        time: Sample timestamp
        value: Float value, or string for raw writes

    Returns:
        One line of line protocol
    """
    if isinstance(value, str):
        field_value = escape_string_field(value)
    else:
        field_value = repr(float(value))
    return f"{escape_measurement(key)} value={field_value} {timestamp_ns(time)}"


class InfluxOutput(Output):
    """Output writing to one or more InfluxDB hosts.

    Hosts are tried in order for each point until one accepts it.

    Attributes:
        database: Target database
        hosts: Base URLs of the InfluxDB servers
        timeout: Request timeout in seconds
    """

    name = "InfluxOutput"

    def __init__(
        self,
        database: str = "itemwatch",
        username: str | None = None,
        password: str | None = None,
        hosts: Sequence[str] = ("http://localhost:8086",),
        always_write_raw: bool = False,
        use_raw_as_fallback: bool = False,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(always_write_raw, use_raw_as_fallback)
        self.database = database
        self.username = username
        self.password = password
        self.hosts = list(hosts)
        self.timeout = timeout
        self._transport = transport
        self._clients: list[httpx.AsyncClient] = []
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending_writes(self) -> int:
        """Number of writes dispatched but not yet finished."""
        return len(self._pending)

    async def prepare(self, items: Sequence[Item]) -> "InfluxOutput":
        """Build one HTTP client per configured host."""
        if not self.hosts:
            raise OutputError(OutputErrorKind.PREPARE, self.name, "no hosts configured")

        auth = None
        if self.username is not None:
            auth = httpx.BasicAuth(self.username, self.password or "")

        try:
            self._clients = [
                httpx.AsyncClient(
                    base_url=host,
                    auth=auth,
                    timeout=self.timeout,
                    transport=self._transport,
                )
                for host in self.hosts
            ]
        except (httpx.InvalidURL, ValueError) as e:
            raise OutputError(OutputErrorKind.PREPARE, self.name, e) from e
        logger.debug("Prepared InfluxOutput for %s (database %s)", self.hosts, self.database)
        return self

    async def write_value(self, key: str, time: datetime, value: float) -> None:
        if not math.isfinite(value):
            # The line protocol has no representation for nan or inf
            logger.debug("Skipping non-finite value for '%s': %s", key, value)
            return
        self._dispatch(format_point(key, time, value))

    async def _write_raw(self, key: str, time: datetime, value: str) -> None:
        self._dispatch(format_point(key, time, value))

    def _dispatch(self, line: str) -> None:
        if not self._clients:
            raise OutputError(OutputErrorKind.WRITE, self.name, "client is not prepared")
        task = asyncio.create_task(self._send(line))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, line: str) -> None:
        """Post one point, trying each host in turn."""
        params = {"db": self.database, "precision": "ns"}
        for client in self._clients:
            try:
                response = await client.post("/write", params=params, content=line)
            except httpx.HTTPError as e:
                logger.warning("InfluxDB host %s unreachable: %s", client.base_url, e)
                continue

            if response.is_success:
                return
            logger.warning(
                "InfluxDB host %s rejected write (%s): %s",
                client.base_url,
                response.status_code,
                response.text.strip(),
            )

        logger.error("Failure writing to output %s: %s", self.name, line)

    async def clean_up(self) -> None:
        """Wait for outstanding writes, then close all clients."""
        if self._pending:
            _, not_done = await asyncio.wait(set(self._pending), timeout=self.timeout)
            for task in not_done:
                task.cancel()
            if not_done:
                logger.warning("Dropped %d unfinished InfluxDB writes", len(not_done))

        errors = []
        for client in self._clients:
            try:
                await client.aclose()
            except Exception as e:
                errors.append(e)
        self._clients = []

        if errors:
            raise OutputError(OutputErrorKind.CLEANUP, self.name, errors[0])

    def __repr__(self) -> str:
        return (
            f"InfluxOutput(database={self.database!r}, username={self.username!r}, "
            f"hosts={self.hosts!r}, always_write_raw={self.always_write_raw}, "
            f"use_raw_as_fallback={self.use_raw_as_fallback})"
        )
