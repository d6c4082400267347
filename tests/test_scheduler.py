"""Tests for the item scheduler and output fan-out."""

import asyncio
from datetime import datetime
import logging
from pathlib import Path
from typing import Any

import pytest

from itemwatch.collectors import ItemScheduler
from itemwatch.models import Item
from itemwatch.outputs import Output, OutputError, OutputErrorKind

# Test fixtures and mock implementations


class RecordingOutput(Output):
    """Output that records every call instead of writing anywhere."""

    name = "RecordingOutput"

    def __init__(self, always_write_raw: bool = False, use_raw_as_fallback: bool = True) -> None:
        super().__init__(always_write_raw, use_raw_as_fallback)
        self.values: list[tuple[str, datetime, float]] = []
        self.raw: list[tuple[str, datetime, str]] = []
        self.cleaned_up = False

    async def write_value(self, key: str, time: datetime, value: float) -> None:
        self.values.append((key, time, value))

    async def _write_raw(self, key: str, time: datetime, value: str) -> None:
        self.raw.append((key, time, value))

    async def clean_up(self) -> None:
        self.cleaned_up = True

    @property
    def value_map(self) -> dict[str, float]:
        return {key: value for key, _, value in self.values}

    @property
    def raw_values(self) -> list[tuple[str, str]]:
        return [(key, value) for key, _, value in self.raw]


class FailingOutput(RecordingOutput):
    """Output whose every write fails."""

    name = "FailingOutput"

    async def write_value(self, key: str, time: datetime, value: float) -> None:
        raise OutputError(OutputErrorKind.WRITE, self.name, "disk full")

    async def _write_raw(self, key: str, time: datetime, value: str) -> None:
        raise RuntimeError("unexpected")


class FailingCleanupOutput(RecordingOutput):
    """Output whose clean_up fails."""

    async def clean_up(self) -> None:
        raise OutputError(OutputErrorKind.CLEANUP, self.name, "gone")


def _item(key: str = "test", interval: int = 1, **kwargs: Any) -> Item:
    return Item(key=key, interval=interval, **kwargs)


# ============================================================================
# Registration Tests
# ============================================================================


class TestRegistration:
    """Tests for creating a scheduler."""

    def test_list_items(self) -> None:
        """Test that items are kept in configuration order."""
        scheduler = ItemScheduler([_item("b", shell="true"), _item("a", shell="true")], [])

        assert scheduler.list_items() == ["b", "a"]
        assert scheduler.running is False

    def test_duplicate_keys_rejected(self) -> None:
        """Test that two items cannot share a key."""
        with pytest.raises(ValueError, match="already registered"):
            ItemScheduler([_item("a", shell="true"), _item("a", shell="false")], [])

    def test_get_state(self) -> None:
        """Test state lookup by key."""
        scheduler = ItemScheduler([_item("a", shell="true")], [])

        state = scheduler.get_state("a")
        assert state is not None
        assert state.total_ticks == 0
        assert state.busy is False
        assert scheduler.get_state("missing") is None

    def test_initial_stats(self) -> None:
        """Test statistics of a fresh scheduler."""
        stats = ItemScheduler([_item("a", shell="true")], []).get_stats()

        assert stats.running is False
        assert stats.items_registered == 1
        assert stats.total_ticks == 0


# ============================================================================
# Fan-out Tests
# ============================================================================


class TestFanOut:
    """Tests for writing tick results to outputs."""

    @pytest.mark.asyncio
    async def test_values_written(self) -> None:
        """Test that every value goes to every output."""
        first, second = RecordingOutput(), RecordingOutput()
        scheduler = ItemScheduler([], [first, second])
        item = _item("x", shell="true")

        await scheduler.fan_out(item, datetime.now(), "1 2", {"x.a": 1.0, "x.b": 2.0})

        for output in (first, second):
            assert output.value_map == {"x.a": 1.0, "x.b": 2.0}
            assert output.raw == []

    @pytest.mark.asyncio
    async def test_always_write_raw(self) -> None:
        """Test that raw text is written alongside values when enabled."""
        output = RecordingOutput(always_write_raw=True)
        scheduler = ItemScheduler([], [output])

        await scheduler.fan_out(_item("x", shell="true"), datetime.now(), "1", {"x.parsed": 1.0})

        assert output.raw_values == [("x.raw", "1")]
        assert output.value_map == {"x.parsed": 1.0}

    @pytest.mark.asyncio
    async def test_fallback_without_values(self) -> None:
        """Test that raw text is the fallback when no values were extracted."""
        with_fallback = RecordingOutput(use_raw_as_fallback=True)
        without_fallback = RecordingOutput(use_raw_as_fallback=False)
        scheduler = ItemScheduler([], [with_fallback, without_fallback])

        await scheduler.fan_out(_item("x", shell="true"), datetime.now(), "hello", {})

        assert with_fallback.raw_values == [("x.raw", "hello")]
        assert without_fallback.raw == []
        assert with_fallback.values == []

    @pytest.mark.asyncio
    async def test_failing_output_isolated(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that a failing output does not stop writes to the next one."""
        failing = FailingOutput(always_write_raw=True)
        healthy = RecordingOutput(always_write_raw=True)
        scheduler = ItemScheduler([], [failing, healthy])

        with caplog.at_level(logging.ERROR):
            await scheduler.fan_out(
                _item("x", shell="true"), datetime.now(), "1 2", {"x.a": 1.0, "x.b": 2.0}
            )

        assert healthy.value_map == {"x.a": 1.0, "x.b": 2.0}
        assert healthy.raw_values == [("x.raw", "1 2")]
        assert "disk full" in caplog.text
        assert "unexpected" in caplog.text


# ============================================================================
# Tick Tests
# ============================================================================


class TestRunTick:
    """Tests for a single tick of the pipeline."""

    @pytest.mark.asyncio
    async def test_file_not_a_number_falls_back(self, tmp_path: Path) -> None:
        """Test a file whose content is not one number."""
        path = tmp_path / "uptime"
        path.write_text("123.45 67.89\n", encoding="utf-8")
        output = RecordingOutput()
        scheduler = ItemScheduler([], [output])

        result = await scheduler.run_tick(_item("os.uptime", file=str(path)))

        assert result.success is True
        assert result.raw == "123.45 67.89"
        assert result.values == {}
        assert output.values == []
        assert output.raw_values == [("os.uptime.raw", "123.45 67.89")]

    @pytest.mark.asyncio
    async def test_shell_with_regex(self) -> None:
        """Test a shell item digested by a regex."""
        output = RecordingOutput()
        scheduler = ItemScheduler([], [output])
        item = _item(
            "os.loadavg",
            shell="echo 0.42 0.38 0.31",
            digest={"type": "regex", "regex": r"^(?P<one>\S+)"},
        )

        result = await scheduler.run_tick(item)

        assert result.values == {"os.loadavg.one": 0.42}
        assert output.value_map == {"os.loadavg.one": 0.42}
        assert output.raw == []

    @pytest.mark.asyncio
    async def test_missing_command(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        """Test that a failed acquisition writes nothing."""
        output = RecordingOutput(always_write_raw=True)
        scheduler = ItemScheduler([], [output])

        with caplog.at_level(logging.ERROR):
            result = await scheduler.run_tick(_item("gone", command=str(tmp_path / "nope")))

        assert result.success is False
        assert result.error is not None
        assert output.values == []
        assert output.raw == []
        assert "Could not acquire value of 'gone'" in caplog.text

    @pytest.mark.asyncio
    async def test_measurements_share_timestamp(self) -> None:
        """Test that all values of a tick carry the same capture time."""
        output = RecordingOutput(always_write_raw=True)
        scheduler = ItemScheduler([], [output])
        item = _item("x", shell="echo 1 2", digest={"type": "regex", "regex": r"(?P<a>\d) (?P<b>\d)"})

        result = await scheduler.run_tick(item)

        times = {time for _, time, _ in output.values} | {time for _, time, _ in output.raw}
        assert times == {result.timestamp}


# ============================================================================
# run_once Tests
# ============================================================================


class TestRunOnce:
    """Tests for ItemScheduler.run_once."""

    @pytest.mark.asyncio
    async def test_all_items(self) -> None:
        """Test running every item once."""
        output = RecordingOutput()
        scheduler = ItemScheduler(
            [_item("a", shell="echo 1"), _item("b", shell="echo 2")],
            [output],
        )

        results = await scheduler.run_once()

        assert [r.key for r in results] == ["a", "b"]
        assert output.value_map == {"a.parsed": 1.0, "b.parsed": 2.0}

    @pytest.mark.asyncio
    async def test_selected_items(self) -> None:
        """Test running a subset of items in the given order."""
        scheduler = ItemScheduler(
            [_item("a", shell="echo 1"), _item("b", shell="echo 2")],
            [],
        )

        results = await scheduler.run_once(["b"])

        assert [r.key for r in results] == ["b"]
        assert results[0].values == {"b.parsed": 2.0}

    @pytest.mark.asyncio
    async def test_unknown_item(self) -> None:
        """Test that unknown keys are rejected."""
        scheduler = ItemScheduler([_item("a", shell="echo 1")], [])

        with pytest.raises(KeyError, match="not registered"):
            await scheduler.run_once(["missing"])


# ============================================================================
# Scheduling Tests
# ============================================================================


class TestScheduling:
    """Tests for timer-driven ticks."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        """Test that the first tick runs immediately and stop cleans up."""
        output = RecordingOutput()
        scheduler = ItemScheduler([_item("a", shell="echo 1")], [output])

        await scheduler.start()
        assert scheduler.running is True
        await asyncio.sleep(0.3)
        await scheduler.stop()

        assert scheduler.running is False
        assert output.value_map == {"a.parsed": 1.0}
        assert output.cleaned_up is True
        assert scheduler.get_stats().total_ticks == 1

    @pytest.mark.asyncio
    async def test_fixed_rate(self) -> None:
        """Test that an item ticks once per interval."""
        output = RecordingOutput()
        scheduler = ItemScheduler([_item("a", interval=1, shell="echo 1")], [output])

        await scheduler.start()
        await asyncio.sleep(2.5)
        await scheduler.stop()

        assert len(output.values) == 3

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_schedule(self, tmp_path: Path) -> None:
        """Test that a failing item keeps being scheduled."""
        scheduler = ItemScheduler([_item("gone", command=str(tmp_path / "nope"))], [])

        await scheduler.start()
        await asyncio.sleep(1.5)
        await scheduler.stop()

        state = scheduler.get_state("gone")
        assert state is not None
        assert state.total_ticks == 2
        assert state.total_failures == 2
        assert state.last_result is not None
        assert state.last_result.success is False

    @pytest.mark.asyncio
    async def test_slow_item_skips_firing(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that a firing is skipped while the previous tick still runs."""
        scheduler = ItemScheduler([_item("slow", interval=1, shell="sleep 1.5; echo 1")], [])

        with caplog.at_level(logging.WARNING):
            await scheduler.start()
            await asyncio.sleep(1.3)
            stats = scheduler.get_stats()
            await scheduler.stop()

        assert stats.total_ticks == 1
        assert stats.total_skipped == 1
        assert stats.ticks_in_flight == 1
        assert "previous tick still running" in caplog.text

    @pytest.mark.asyncio
    async def test_stop_waits_for_running_tick(self) -> None:
        """Test that stop lets an in-flight tick finish its writes."""
        output = RecordingOutput()
        scheduler = ItemScheduler([_item("slow", interval=5, shell="sleep 0.5; echo 9")], [output])

        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert output.value_map == {"slow.parsed": 9.0}

    @pytest.mark.asyncio
    async def test_stop_cancels_after_explicit_timeout(self) -> None:
        """Test that ticks outlasting an explicit stop timeout are cancelled."""
        output = RecordingOutput()
        scheduler = ItemScheduler([_item("slow", interval=5, shell="sleep 5; echo 9")], [output])

        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop(timeout=0.2)

        assert output.values == []
        assert output.cleaned_up is True

    @pytest.mark.asyncio
    async def test_clean_up_failure_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that a failing clean_up is logged and others still run."""
        failing = FailingCleanupOutput()
        healthy = RecordingOutput()
        scheduler = ItemScheduler([_item("a", interval=5, shell="echo 1")], [failing, healthy])

        await scheduler.start()
        with caplog.at_level(logging.ERROR):
            await scheduler.stop()

        assert healthy.cleaned_up is True
        assert "cleanup of output" in caplog.text

    @pytest.mark.asyncio
    async def test_run_until_stopped(self) -> None:
        """Test that request_stop ends run_until_stopped."""
        output = RecordingOutput()
        scheduler = ItemScheduler([_item("a", interval=5, shell="echo 1")], [output])

        async def stop_soon() -> None:
            await asyncio.sleep(0.3)
            scheduler.request_stop()

        await asyncio.gather(scheduler.run_until_stopped(), stop_soon())

        assert scheduler.running is False
        assert output.cleaned_up is True
        assert output.value_map == {"a.parsed": 1.0}

    @pytest.mark.asyncio
    async def test_request_stop_lets_long_tick_finish(self) -> None:
        """Test that a tick longer than its interval still writes after request_stop."""
        output = RecordingOutput()
        scheduler = ItemScheduler([_item("slow", interval=1, shell="sleep 1.5; echo 9")], [output])

        async def stop_soon() -> None:
            await asyncio.sleep(0.2)
            scheduler.request_stop()

        await asyncio.gather(scheduler.run_until_stopped(), stop_soon())

        assert output.value_map == {"slow.parsed": 9.0}
        state = scheduler.get_state("slow")
        assert state is not None
        assert state.last_result is not None
        assert state.last_result.success is True
        assert output.cleaned_up is True
