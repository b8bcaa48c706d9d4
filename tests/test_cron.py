from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import List

import pytest

from cadence.cron import CroniterCronScheduler, next_fire_times, normalize_expression, resolve_zone
from cadence.errors import ScheduleValueError

UTC = timezone.utc


def test_normalize_moves_leading_seconds_last() -> None:
    assert normalize_expression("*/5 * * * *") == "*/5 * * * *"
    assert normalize_expression("30 0 9 * * MON-FRI") == "0 9 * * MON-FRI 30"


@pytest.mark.parametrize("expression", ["", "* * *", "* * * * * * * *", "61 * * * *", "nonsense * * * *"])
def test_normalize_rejects_invalid(expression: str) -> None:
    with pytest.raises(ScheduleValueError):
        normalize_expression(expression)


def test_resolve_zone() -> None:
    tz, name = resolve_zone("America/New_York")
    assert name == "America/New_York"
    assert datetime(2026, 1, 15, 12, tzinfo=tz).utcoffset() is not None
    _, local_name = resolve_zone("local")
    assert local_name
    with pytest.raises(ScheduleValueError, match="Invalid timezone"):
        resolve_zone("Nowhere/Special")


def test_next_fire_times_in_zone() -> None:
    now = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
    runs = next_fire_times("0 9 * * *", zone="Asia/Tokyo", count=3, now=now)
    assert [run.isoformat() for run in runs] == [
        "2026-03-03T09:00:00+09:00",
        "2026-03-04T09:00:00+09:00",
        "2026-03-05T09:00:00+09:00",
    ]


def test_next_fire_times_with_seconds_field() -> None:
    now = datetime(2026, 3, 2, 12, 0, 0, tzinfo=UTC)
    runs = next_fire_times("*/20 * * * * *", zone="UTC", count=3, now=now)
    assert [run.second for run in runs] == [20, 40, 0]


@pytest.mark.asyncio
async def test_croniter_scheduler_fires_and_stops() -> None:
    fired: List[str] = []

    async def callback() -> None:
        fired.append("tick")

    cron = CroniterCronScheduler()
    cron.add("every-second", "* * * * * *", "UTC", callback)
    await cron.start()
    await asyncio.sleep(2.2)
    await cron.shutdown()
    count = len(fired)
    assert count >= 1
    await asyncio.sleep(1.1)
    assert len(fired) == count


@pytest.mark.asyncio
async def test_croniter_scheduler_isolates_callback_errors(caplog: pytest.LogCaptureFixture) -> None:
    async def callback() -> None:
        raise RuntimeError("cron body failed")

    cron = CroniterCronScheduler()
    cron.add("broken", "* * * * * *", "UTC", callback)
    await cron.start()
    await asyncio.sleep(1.2)
    await cron.shutdown()
    assert cron.jobs["broken"].fired >= 1
    assert "cron body failed" in caplog.text


def test_duplicate_cron_names_are_suffixed() -> None:
    async def callback() -> None:
        pass

    cron = CroniterCronScheduler()
    cron.add("job", "* * * * *", "UTC", callback)
    cron.add("job", "0 * * * *", "UTC", callback)
    assert sorted(cron.jobs) == ["job", "job#2"]
    with pytest.raises(ScheduleValueError):
        cron.add("bad", "* *", "UTC", callback)
