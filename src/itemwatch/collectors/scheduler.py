"""Item scheduler driving acquisition, digestion and output fan-out.

Every item gets its own asyncio task that fires at a fixed rate: firing n
is due at ``start + n * interval``, the first one immediately. Each firing
runs one tick:

1. Acquisition (file, command or shell); a failure ends the tick
2. Digestion into named float values
3. Fan-out to every output

Key features:
- Per-item timers, no shared queue; items never wait on each other
- Fixed-rate ticks; a firing that finds the previous tick of the same item
  still running is skipped and logged
- Independent failure handling per item, per tick and per output call
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
import logging
import math
from typing import Any

from itemwatch.collectors.acquisition import DEFAULT_SHELL, AcquisitionError, acquire
from itemwatch.collectors.digest import digest_value
from itemwatch.models import Item, Measurement, TickResult
from itemwatch.outputs import Output, clean_up_outputs

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(UTC)


@dataclass
class ItemState:
    """Scheduling state of a single item.

    Attributes:
        item: The monitored item
        timer: Task firing the item at its interval (if started)
        tick: Task running the current or most recent tick
        total_ticks: Ticks started
        total_failures: Ticks that ended in an acquisition failure
        total_skipped: Firings dropped because the previous tick was still running
        last_result: Result of the most recent finished tick
    """

    item: Item
    timer: asyncio.Task[None] | None = None
    tick: asyncio.Task[TickResult | None] | None = None
    total_ticks: int = 0
    total_failures: int = 0
    total_skipped: int = 0
    last_result: TickResult | None = None

    @property
    def busy(self) -> bool:
        """Whether a tick of this item is in flight."""
        return self.tick is not None and not self.tick.done()


@dataclass
class SchedulerStats:
    """Statistics about the scheduler's state.

    Attributes:
        running: Whether the scheduler is currently running
        items_registered: Number of items
        ticks_in_flight: Number of ticks currently running
        total_ticks: Sum of all ticks across all items
        total_failures: Sum of all failed ticks
        total_skipped: Sum of all skipped firings
    """

    running: bool = False
    items_registered: int = 0
    ticks_in_flight: int = 0
    total_ticks: int = 0
    total_failures: int = 0
    total_skipped: int = 0


class ItemScheduler:
    """Scheduler running every item at its own fixed interval.

    Outputs are shared by all items and must already be prepared. They are
    cleaned up by stop().

    Example:
        scheduler = ItemScheduler(config.items, outputs, shell="/bin/sh")
        loop.add_signal_handler(signal.SIGTERM, scheduler.request_stop)
        await scheduler.run_until_stopped()
    """

    def __init__(
        self,
        items: Sequence[Item],
        outputs: Sequence[Output],
        shell: str = DEFAULT_SHELL,
    ) -> None:
        """Initialize the scheduler.

        Args:
            items: Items to run; keys must be unique
            outputs: Prepared outputs every tick fans out to
            shell: Interpreter used for shell items

        Raises:
            ValueError: If two items share a key
        """
        self._items: dict[str, ItemState] = {}
        for item in items:
            if item.key in self._items:
                raise ValueError(f"Item '{item.key}' is already registered")
            self._items[item.key] = ItemState(item=item)

        self._outputs = list(outputs)
        self._shell = shell
        self._running = False
        self._stop_requested = asyncio.Event()

    @property
    def running(self) -> bool:
        """Check if the scheduler is running."""
        return self._running

    @property
    def outputs(self) -> list[Output]:
        """Outputs every tick fans out to."""
        return list(self._outputs)

    def list_items(self) -> list[str]:
        """Get the keys of all scheduled items."""
        return list(self._items.keys())

    def get_state(self, key: str) -> ItemState | None:
        """Get the scheduling state of an item, or None if unknown."""
        return self._items.get(key)

    def get_stats(self) -> SchedulerStats:
        """Get scheduler statistics."""
        states = self._items.values()
        return SchedulerStats(
            running=self._running,
            items_registered=len(self._items),
            ticks_in_flight=sum(1 for s in states if s.busy),
            total_ticks=sum(s.total_ticks for s in states),
            total_failures=sum(s.total_failures for s in states),
            total_skipped=sum(s.total_skipped for s in states),
        )

    async def start(self) -> None:
        """Arm the timer of every item.

        Does nothing if already running.
        """
        if self._running:
            return

        self._running = True
        self._stop_requested.clear()

        for key, state in self._items.items():
            state.timer = asyncio.create_task(self._timer_loop(state), name=f"item-{key}")
        logger.info("Scheduler started with %d items", len(self._items))

    def request_stop(self) -> None:
        """Ask run_until_stopped() to stop. Safe to call from a signal handler."""
        self._stop_requested.set()

    async def run_until_stopped(self, timeout: float | None = None) -> None:
        """Run every item until request_stop() is called, then stop.

        Args:
            timeout: Maximum seconds to wait for in-flight ticks when stopping
                (None lets every running tick finish)
        """
        await self.start()
        try:
            await self._stop_requested.wait()
        finally:
            await self.stop(timeout=timeout)

    async def stop(self, timeout: float | None = None) -> None:
        """Stop all timers, let in-flight ticks finish and clean up outputs.

        Running ticks, and the child processes they wait on, run to completion.
        Only when an explicit ``timeout`` is given are ticks that outlast it
        cancelled.

        Args:
            timeout: Maximum seconds to wait for in-flight ticks (None waits forever)
        """
        if not self._running:
            return

        self._running = False

        timers = [s.timer for s in self._items.values() if s.timer is not None]
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.wait(timers)

        ticks = [s.tick for s in self._items.values() if s.busy]
        if ticks:
            logger.info("Waiting for %d running ticks to finish", len(ticks))
            _, not_done = await asyncio.wait(ticks, timeout=timeout)
            for task in not_done:
                logger.warning("Cancelling tick %s after %ss", task.get_name(), timeout)
                task.cancel()
            if not_done:
                await asyncio.wait(not_done)

        for state in self._items.values():
            state.timer = None

        await clean_up_outputs(self._outputs)
        logger.info("Scheduler stopped")

    async def run_once(self, keys: Sequence[str] | None = None) -> list[TickResult]:
        """Run a single tick of the given items (all items by default).

        Ticks of different items run concurrently.

        Args:
            keys: Keys of the items to run

        Returns:
            TickResults in the order of ``keys``

        Raises:
            KeyError: If a key is not registered
        """
        selected = list(keys) if keys is not None else self.list_items()
        for key in selected:
            if key not in self._items:
                raise KeyError(f"Item '{key}' is not registered")

        return list(
            await asyncio.gather(*(self.run_tick(self._items[key].item) for key in selected))
        )

    async def _timer_loop(self, state: ItemState) -> None:
        """Fire an item at a fixed rate until cancelled.

        The next due time is computed from the start time, not from the end
        of the previous tick, so slow ticks do not shift the schedule.

        Args:
            state: State of the item to fire
        """
        loop = asyncio.get_running_loop()
        interval = state.item.interval
        started = loop.time()
        firing = 0

        while self._running:
            self._fire(state)

            # Never fire more than once per nominal slot, even if we fell behind
            now = loop.time()
            firing = max(firing + 1, math.floor((now - started) / interval) + 1)
            try:
                await asyncio.sleep(started + firing * interval - now)
            except asyncio.CancelledError:
                break

    def _fire(self, state: ItemState) -> None:
        if state.busy:
            state.total_skipped += 1
            logger.warning(
                "Skipping tick of '%s': previous tick still running after %ss",
                state.item.key,
                state.item.interval,
            )
            return

        state.total_ticks += 1
        state.tick = asyncio.create_task(
            self._guarded_tick(state),
            name=f"tick-{state.item.key}",
        )

    async def _guarded_tick(self, state: ItemState) -> TickResult | None:
        try:
            result = await self.run_tick(state.item)
        except asyncio.CancelledError:
            raise
        except Exception:
            state.total_failures += 1
            logger.exception("Unexpected error in tick of '%s'", state.item.key)
            return None

        if result.error is not None:
            state.total_failures += 1
        state.last_result = result
        return result

    async def run_tick(self, item: Item) -> TickResult:
        """Run one tick of an item: acquire, digest, fan out.

        Args:
            item: The item to run

        Returns:
            TickResult describing what happened
        """
        try:
            raw = await acquire(item, self._shell)
        except AcquisitionError as e:
            logger.error("Could not acquire value of '%s': %s", item.key, e.reason)
            return TickResult(key=item.key, error=e.reason)

        captured_at = _utcnow()
        text, values = digest_value(item, raw)
        await self.fan_out(item, captured_at, text, values)
        return TickResult(key=item.key, raw=text, values=values, timestamp=captured_at)

    async def fan_out(
        self,
        item: Item,
        time: datetime,
        raw: str,
        values: dict[str, float],
    ) -> None:
        """Write a tick's results to every output.

        Without numeric values the raw text is written as a fallback;
        otherwise the raw text (subject to each output's own flag) and every
        value are written. Each call is isolated: a failing output never
        prevents the next call.

        Args:
            item: Item the values belong to
            time: Capture time of the tick
            raw: Trimmed raw text
            values: Measurements by name
        """
        raw_sample = Measurement(item.raw_key, time, raw)
        samples = [Measurement(key, time, value) for key, value in values.items()]

        for output in self._outputs:
            if not samples:
                await self._write(output.write_raw_value_as_fallback, raw_sample)
                continue

            await self._write(output.write_raw_value, raw_sample)
            for sample in samples:
                await self._write(output.write_value, sample)

    async def _write(
        self,
        method: Callable[[str, datetime, Any], Awaitable[None]],
        sample: Measurement,
    ) -> None:
        try:
            await method(sample.key, sample.timestamp, sample.value)
        except Exception as e:
            logger.error("Failure writing '%s' to output: %s", sample.key, e)
