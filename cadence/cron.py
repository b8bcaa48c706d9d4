from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from .errors import ScheduleValueError

logger = logging.getLogger("cadence.cron")
UTC = timezone.utc

CronCallback = Callable[[], Awaitable[None]]

# A run this far behind its instant is treated as missed rather than fired late.
MISSED_FIRE_GRACE = timedelta(seconds=1)


class CronCapability(Protocol):
    """Invokes a callback at each instant matching a cron expression."""

    def add(self, name: str, expression: str, zone: str, callback: CronCallback) -> None:
        ...

    async def start(self) -> None:
        ...

    async def shutdown(self) -> None:
        ...


def system_timezone() -> Tuple[tzinfo, str]:
    local_tz = datetime.now().astimezone().tzinfo
    if isinstance(local_tz, ZoneInfo):
        return local_tz, local_tz.key
    tz_name = os.environ.get("TZ")
    if tz_name:
        try:
            return ZoneInfo(tz_name), tz_name
        except (ZoneInfoNotFoundError, ValueError):
            pass
    if local_tz is None:
        return UTC, "UTC"
    return local_tz, local_tz.tzname(None) or "local"


def resolve_zone(name: str) -> Tuple[tzinfo, str]:
    """Return the tzinfo for an IANA zone name, or the host zone for "local"."""
    text = name.strip()
    if not text or text.lower() == "local":
        return system_timezone()
    try:
        return ZoneInfo(text), text
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ScheduleValueError(f'Error: Invalid timezone "{name}".') from exc


def normalize_expression(expression: str) -> str:
    """Accept 5-field or 6-field (leading seconds) cron and return croniter's layout.

    croniter expects the optional seconds field last, so a leading seconds
    field is moved to the end.
    """
    fields = expression.split()
    if len(fields) == 5:
        normalized = " ".join(fields)
    elif len(fields) == 6:
        normalized = " ".join(fields[1:] + fields[:1])
    else:
        raise ScheduleValueError(
            f'Error: Invalid cron expression "{expression}": expected 5 fields '
            f"(minute hour day month weekday) or 6 with a leading seconds field, got {len(fields)}."
        )
    if not croniter.is_valid(normalized):
        raise ScheduleValueError(f'Error: Invalid cron expression "{expression}".')
    return normalized


def next_fire_times(
    expression: str,
    zone: str = "local",
    count: int = 5,
    now: Optional[datetime] = None,
) -> List[datetime]:
    tz, _ = resolve_zone(zone)
    start = (now or datetime.now(tz=UTC)).astimezone(tz)
    iterator = croniter(normalize_expression(expression), start)
    return [iterator.get_next(datetime) for _ in range(count)]


@dataclass
class CronJob:
    name: str
    expression: str
    zone_name: str
    tz: tzinfo
    callback: CronCallback
    fired: int = 0


class CroniterCronScheduler:
    """One watcher task per job; each firing is dispatched as its own task."""

    def __init__(self) -> None:
        self.jobs: Dict[str, CronJob] = {}
        self._watchers: List["asyncio.Task[None]"] = []
        self._inflight: Set["asyncio.Task[None]"] = set()
        self._running = False

    def add(self, name: str, expression: str, zone: str, callback: CronCallback) -> None:
        normalized = normalize_expression(expression)
        tz, zone_name = resolve_zone(zone)
        key = name
        suffix = 2
        while key in self.jobs:
            key = f"{name}#{suffix}"
            suffix += 1
        job = CronJob(name=key, expression=normalized, zone_name=zone_name, tz=tz, callback=callback)
        self.jobs[key] = job
        if self._running:
            self._spawn(job)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for job in self.jobs.values():
            self._spawn(job)
        logger.info("Cron scheduler started with %s job(s)", len(self.jobs))

    async def shutdown(self) -> None:
        self._running = False
        pending = list(self._watchers) + list(self._inflight)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._watchers.clear()
        self._inflight.clear()
        logger.info("Cron scheduler stopped")

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    def _spawn(self, job: CronJob) -> None:
        self._watchers.append(asyncio.create_task(self._watch(job), name=f"cadence:cron:{job.name}"))

    async def _watch(self, job: CronJob) -> None:
        iterator = croniter(job.expression, datetime.now(tz=job.tz))
        while True:
            fire_at: datetime = iterator.get_next(datetime)
            now = datetime.now(tz=UTC)
            if fire_at < now - MISSED_FIRE_GRACE:
                logger.warning("Cron job %s missed %s; skipping to the next instant", job.name, fire_at.isoformat())
                continue
            delay = (fire_at - now).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            job.fired += 1
            run = asyncio.create_task(self._fire(job), name=f"cadence:cron-run:{job.name}")
            self._inflight.add(run)
            run.add_done_callback(self._inflight.discard)

    async def _fire(self, job: CronJob) -> None:
        try:
            await job.callback()
        except Exception:
            logger.exception("Cron job %s raised", job.name)
