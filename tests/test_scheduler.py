"""Tests for schedule parsing and the inventory scheduler."""

import asyncio
from datetime import UTC, datetime

import pytest

from siteagent.retry import RetryPolicy
from siteagent.scheduler import InventoryScheduler, Schedule, ScheduleError, parse_duration, parse_schedule


class TestParseDuration:
    """Tests for parse_duration()."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("3m", 180.0),
            ("1h30m", 5400.0),
            ("90s", 90.0),
            ("1.5h", 5400.0),
            ("500ms", 0.5),
        ],
    )
    def test_valid(self, text: str, expected: float) -> None:
        """Test compound and fractional durations."""
        assert parse_duration(text) == pytest.approx(expected)

    @pytest.mark.parametrize("text", ["", "3", "m", "3x", "3m garbage", "-3m"])
    def test_invalid(self, text: str) -> None:
        """Test that malformed durations are rejected."""
        with pytest.raises(ScheduleError):
            parse_duration(text)


class TestParseSchedule:
    """Tests for parse_schedule()."""

    def test_every(self) -> None:
        """Test the @every form."""
        schedule = parse_schedule("@every 3m")

        assert schedule.interval_seconds == 180.0
        assert schedule.cron is None
        assert schedule.next_delay() == 180.0

    def test_descriptors(self) -> None:
        """Test that named descriptors map onto cron expressions."""
        assert parse_schedule("@hourly").cron == "0 * * * *"
        assert parse_schedule("@daily").cron == "0 0 * * *"
        assert parse_schedule(" @midnight ").cron == "0 0 * * *"
        assert parse_schedule("@weekly").cron == "0 0 * * 0"

    def test_cron_expression(self) -> None:
        """Test a standard five-field cron expression."""
        schedule = parse_schedule("*/5 * * * *")

        assert schedule.cron == "*/5 * * * *"
        assert schedule.interval_seconds is None
        assert schedule.expression == "*/5 * * * *"

    @pytest.mark.parametrize(
        "expression,now,expected",
        [
            ("*/5 * * * *", datetime(2024, 5, 1, 12, 3, 30, tzinfo=UTC), 90.0),
            ("*/5 * * * *", datetime(2024, 5, 1, 12, 5, 0, tzinfo=UTC), 300.0),
            ("@hourly", datetime(2024, 5, 1, 12, 59, 0, tzinfo=UTC), 60.0),
            ("0 2 * * *", datetime(2024, 5, 1, 3, 0, 0, tzinfo=UTC), 23 * 3600.0),
        ],
    )
    def test_cron_next_delay(self, expression: str, now: datetime, expected: float) -> None:
        """Test the wait until the next cron tick."""
        assert parse_schedule(expression).next_delay(now) == expected

    def test_sub_second_rejected(self) -> None:
        """Test that intervals below one second are rejected."""
        with pytest.raises(ScheduleError, match="at least 1s"):
            parse_schedule("@every 500ms")

    @pytest.mark.parametrize(
        "expression", ["every 3m", "", "@every", "@fortnightly", "*/5 * * *", "0 0 * * * *", "61 * * * *"]
    )
    def test_unsupported(self, expression: str) -> None:
        """Test that unsupported expressions raise ScheduleError."""
        with pytest.raises(ScheduleError):
            parse_schedule(expression)

    def test_schedule_error_is_value_error(self) -> None:
        """Test that callers catching ValueError also catch schedule errors."""
        assert issubclass(ScheduleError, ValueError)


class TestInventoryScheduler:
    """Tests for InventoryScheduler."""

    def test_register(self) -> None:
        """Test that registration parses the interval."""
        scheduler = InventoryScheduler()

        async def job() -> None:
            return None

        registered = scheduler.register("vpc", "@every 3m", job)

        assert registered.schedule.interval_seconds == 180.0
        assert "vpc" in scheduler.jobs

    def test_register_duplicate(self) -> None:
        """Test that a resource type can only be registered once."""
        scheduler = InventoryScheduler()

        async def job() -> None:
            return None

        scheduler.register("vpc", "@every 3m", job)

        with pytest.raises(ValueError, match="already registered"):
            scheduler.register("vpc", "@every 5m", job)

    def test_register_bad_schedule(self) -> None:
        """Test that an unparseable schedule is rejected at registration."""
        scheduler = InventoryScheduler()

        async def job() -> None:
            return None

        with pytest.raises(ScheduleError):
            scheduler.register("vpc", "sometimes", job)
        assert scheduler.jobs == {}

    @pytest.mark.asyncio
    async def test_run_once_retries_then_logs(self, fast_sleep, caplog) -> None:
        """Test that a failing job uses the retry policy and is not fatal."""
        scheduler = InventoryScheduler(retry_policy=RetryPolicy(maximum_attempts=2), sleep=fast_sleep)
        calls = 0

        async def job() -> None:
            nonlocal calls
            calls += 1
            raise ConnectionError("controller down")

        scheduler.register("sku", "@every 3m", job)

        ok = await scheduler.run_once("sku")

        assert ok is False
        assert calls == 2
        assert scheduler.jobs["sku"].failures == 1
        assert "Inventory job failed" in caplog.text

    @pytest.mark.asyncio
    async def test_run_once_success(self, fast_sleep) -> None:
        """Test that a successful run is counted."""
        scheduler = InventoryScheduler(sleep=fast_sleep)

        async def job() -> None:
            return None

        scheduler.register("sku", "@every 3m", job)

        assert await scheduler.run_once("sku") is True
        assert scheduler.jobs["sku"].runs == 1
        assert scheduler.jobs["sku"].failures == 0

    @pytest.mark.asyncio
    async def test_job_keeps_firing_after_failure(self, fast_sleep) -> None:
        """Test that the loop survives a failed run and fires again."""
        scheduler = InventoryScheduler(retry_policy=RetryPolicy(maximum_attempts=1), sleep=fast_sleep)
        runs = 0

        async def job() -> None:
            nonlocal runs
            runs += 1
            if runs == 1:
                raise RuntimeError("first run fails")

        scheduler.register("vpc", "@every 1s", job)
        scheduler.jobs["vpc"].schedule = Schedule("@every 10ms", interval_seconds=0.01)

        scheduler.start()
        for _ in range(200):
            if runs >= 3:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert runs >= 3
        assert scheduler.jobs["vpc"].failures == 1
        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_stop_waits(self) -> None:
        """Test that start twice creates one task per job."""
        scheduler = InventoryScheduler()

        async def job() -> None:
            return None

        scheduler.register("vpc", "@hourly", job)
        scheduler.start()
        scheduler.start()

        assert scheduler.running is True
        assert len(scheduler._tasks) == 1

        await asyncio.wait_for(scheduler.stop(), timeout=1)

        assert scheduler.running is False
        assert scheduler.jobs["vpc"].runs == 0
