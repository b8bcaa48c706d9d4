from __future__ import annotations

import asyncio
import functools
import logging
import re
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, Union

from .config import ConfigStore, load_toml_config, load_yaml_config, resolve
from .cron import CronCapability, CroniterCronScheduler, normalize_expression, resolve_zone
from .errors import ScheduleValueError, SchedulerError, SchedulerStateError
from .handle import SchedulerHandle, SchedulerState
from .registry import DescriptorFactory, Registry
from .task import DEFAULT_ZONE, Cron, FixedDelay, FixedRate, TaskDescriptor, WorkHandle
from .time_unit import TimeUnit, describe_suffix_error, parse_duration, parse_unit_name

logger = logging.getLogger("cadence.scheduler")

# None means no ceiling: the pool grows a thread only when every existing one is busy.
DEFAULT_MAX_WORKERS: Optional[int] = None
DIGITS_RE = re.compile(r"^[0-9]+$")


@dataclass(frozen=True)
class TaskPlan:
    """Fully resolved timing for one enabled descriptor."""

    name: str
    kind: str
    origin: str
    time_unit: TimeUnit = TimeUnit.MILLISECONDS
    initial_delay_millis: int = 0
    expression: Optional[str] = None
    zone: str = DEFAULT_ZONE
    interval_millis: Optional[int] = None

    def describe(self) -> str:
        if self.kind == Cron.kind:
            text = f"cron={self.expression} zone={self.zone}"
        else:
            text = f"{self.kind}={self.interval_millis}ms"
        return f"{text} time_unit={self.time_unit.value} initial_delay={self.initial_delay_millis}ms"


@dataclass(frozen=True)
class PlanOutcome:
    name: str
    enabled: bool
    plan: Optional[TaskPlan] = None
    error: Optional[Exception] = None


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve_enabled(descriptor: TaskDescriptor, config: ConfigStore) -> bool:
    if isinstance(descriptor.enabled, bool):
        return descriptor.enabled
    value = resolve(_text(descriptor.enabled), config).strip().lower()
    if value == "false":
        return False
    if value != "true":
        logger.warning(
            "Task '%s': enabled resolved to '%s', expected true or false; treating it as enabled",
            descriptor.name,
            value,
        )
    return True


def resolve_time_unit(descriptor: TaskDescriptor, config: ConfigStore) -> TimeUnit:
    if isinstance(descriptor.time_unit, TimeUnit):
        return descriptor.time_unit
    raw = resolve(descriptor.time_unit, config)
    unit = parse_unit_name(raw)
    if unit is None:
        logger.warning(
            "Task '%s': invalid time_unit '%s', falling back to milliseconds "
            "(valid: milliseconds, seconds, minutes, hours, days)",
            descriptor.name,
            raw,
        )
        return TimeUnit.MILLISECONDS
    return unit


def _duration_millis(
    raw: Any,
    unit: TimeUnit,
    config: ConfigStore,
    field_name: str,
    task_name: str,
    strict: bool,
) -> int:
    text = resolve(_text(raw), config).strip()
    parsed = parse_duration(text)
    if parsed is not None:
        amount, suffix_unit = parsed
        if unit != TimeUnit.MILLISECONDS:
            logger.warning(
                "Task '%s': %s '%s' carries its own unit; time_unit=%s is ignored",
                task_name,
                field_name,
                text,
                unit.value,
            )
        millis = suffix_unit.to_millis(amount)
    elif DIGITS_RE.match(text):
        millis = unit.to_millis(int(text))
    elif strict:
        if text.startswith("-"):
            reason = "must not be negative"
        else:
            reason = describe_suffix_error(text)
        raise ScheduleValueError(f"Error: Invalid {field_name} '{text}' for task '{task_name}': {reason}.")
    else:
        logger.warning(
            "Task '%s': invalid %s '%s' (%s); using 0",
            task_name,
            field_name,
            text,
            describe_suffix_error(text),
        )
        return 0
    if strict and millis <= 0:
        raise ScheduleValueError(
            f"Error: Invalid {field_name} '{text}' for task '{task_name}': must be greater than zero."
        )
    return millis


def resolve_initial_delay(descriptor: TaskDescriptor, unit: TimeUnit, config: ConfigStore) -> int:
    return _duration_millis(descriptor.initial_delay, unit, config, "initial_delay", descriptor.name, strict=False)


def resolve_interval(descriptor: TaskDescriptor, unit: TimeUnit, config: ConfigStore) -> int:
    return _duration_millis(descriptor.schedule.value, unit, config, descriptor.schedule.kind, descriptor.name, strict=True)


def plan_schedule(descriptor: TaskDescriptor, config: ConfigStore) -> TaskPlan:
    """Resolve everything except ``enabled`` into a TaskPlan."""
    schedule = descriptor.schedule
    unit = resolve_time_unit(descriptor, config)
    delay = resolve_initial_delay(descriptor, unit, config)
    zone = resolve(schedule.zone, config).strip() or DEFAULT_ZONE
    if isinstance(schedule, Cron):
        expression = resolve(schedule.expression, config).strip()
        normalize_expression(expression)
        resolve_zone(zone)
        if unit != TimeUnit.MILLISECONDS:
            logger.warning("Task '%s': time_unit is ignored for cron tasks", descriptor.name)
        return TaskPlan(
            name=descriptor.name,
            kind=schedule.kind,
            origin=descriptor.origin,
            time_unit=unit,
            initial_delay_millis=delay,
            expression=expression,
            zone=zone,
        )
    if isinstance(schedule, (FixedRate, FixedDelay)):
        if zone.lower() != DEFAULT_ZONE:
            logger.warning("Task '%s': zone '%s' only applies to cron tasks and is ignored", descriptor.name, zone)
        return TaskPlan(
            name=descriptor.name,
            kind=schedule.kind,
            origin=descriptor.origin,
            time_unit=unit,
            initial_delay_millis=delay,
            zone=DEFAULT_ZONE,
            interval_millis=resolve_interval(descriptor, unit, config),
        )
    raise SchedulerError(f"Error: task '{descriptor.name}' has unknown schedule {schedule!r}.")


def plan_task(descriptor: TaskDescriptor, config: ConfigStore) -> PlanOutcome:
    """Resolve one descriptor without starting anything; errors are returned, not raised."""
    try:
        if not resolve_enabled(descriptor, config):
            return PlanOutcome(name=descriptor.name, enabled=False)
        return PlanOutcome(name=descriptor.name, enabled=True, plan=plan_schedule(descriptor, config))
    except SchedulerError as exc:
        return PlanOutcome(name=descriptor.name, enabled=True, error=exc)


class IntervalTicker:
    """Periodic ticker: the first tick is immediate, later ticks land on start + k * period.

    When the caller falls behind, overdue ticks complete immediately until the
    schedule has caught up. ``reset`` moves the next tick to one period from now.
    """

    def __init__(self, period: float):
        if period <= 0:
            raise ScheduleValueError("Error: ticker period must be greater than zero.")
        self.period = period
        self._loop = asyncio.get_running_loop()
        self._next = self._loop.time()

    async def tick(self) -> float:
        delay = self._next - self._loop.time()
        if delay > 0:
            await asyncio.sleep(delay)
        fired = self._next
        self._next += self.period
        return fired

    def reset(self) -> None:
        self._next = self._loop.time() + self.period


def blocking_executor(max_workers: Optional[int] = DEFAULT_MAX_WORKERS) -> ThreadPoolExecutor:
    """Thread pool for blocking task bodies.

    Idle threads are reused before new ones are started, so without a
    ceiling the pool only grows while runs actually overlap. A slow body
    never waits behind another task's runs unless ``max_workers`` is set.
    """
    ceiling = sys.maxsize if max_workers is None else max_workers
    return ThreadPoolExecutor(max_workers=ceiling, thread_name_prefix="cadence")


async def run_isolated(name: str, work: WorkHandle, executor: Optional[ThreadPoolExecutor]) -> None:
    try:
        await work.execute(executor)
    except Exception:
        logger.exception("Task '%s' raised", name)


async def fixed_delay_loop(plan: TaskPlan, work: WorkHandle, executor: Optional[ThreadPoolExecutor]) -> None:
    if plan.initial_delay_millis > 0:
        await asyncio.sleep(plan.initial_delay_millis / 1000)
    ticker = IntervalTicker((plan.interval_millis or 0) / 1000)
    await ticker.tick()
    while True:
        await run_isolated(plan.name, work, executor)
        ticker.reset()
        await ticker.tick()


async def fixed_rate_loop(
    plan: TaskPlan,
    work: WorkHandle,
    executor: Optional[ThreadPoolExecutor],
    track: Callable[["asyncio.Task[None]"], None],
) -> None:
    if plan.initial_delay_millis > 0:
        await asyncio.sleep(plan.initial_delay_millis / 1000)
    ticker = IntervalTicker((plan.interval_millis or 0) / 1000)
    await ticker.tick()
    while True:
        await ticker.tick()
        track(asyncio.create_task(run_isolated(plan.name, work, executor), name=f"cadence:run:{plan.name}"))


class Scheduler:
    def __init__(
        self,
        descriptors: List[TaskDescriptor],
        config: ConfigStore,
        cron_factory: Callable[[], CronCapability] = CroniterCronScheduler,
        max_workers: Optional[int] = DEFAULT_MAX_WORKERS,
    ):
        self.descriptors = list(descriptors)
        self.config = config
        self.cron_factory = cron_factory
        self.max_workers = max_workers
        self.handle: Optional[SchedulerHandle] = None
        self._state = SchedulerState.BUILT

    @property
    def state(self) -> SchedulerState:
        return self._state

    def _set_state(self, state: SchedulerState) -> None:
        logger.debug("Scheduler state %s -> %s", self._state.value, state.value)
        self._state = state

    def plan(self) -> List[PlanOutcome]:
        return [plan_task(descriptor, self.config) for descriptor in self.descriptors]

    async def start(self) -> SchedulerHandle:
        if self._state is not SchedulerState.BUILT:
            raise SchedulerStateError(f"Cannot start scheduler in state {self._state.value}.")
        self._set_state(SchedulerState.STARTING)
        executor = blocking_executor(self.max_workers)
        cron = self.cron_factory()
        handle = SchedulerHandle(cron, executor, on_state=self._set_state)
        logger.info("Starting scheduler with %s task(s)", len(self.descriptors))

        try:
            for descriptor in self.descriptors:
                if not resolve_enabled(descriptor, self.config):
                    logger.info("[DISABLED] %s", descriptor.name)
                    handle.disabled.append(descriptor.name)
                    continue
                self._register(descriptor, handle, cron, executor)
            await cron.start()
        except BaseException:
            self._set_state(SchedulerState.FAILED)
            await handle.abort()
            raise

        self.handle = handle
        self._set_state(SchedulerState.RUNNING)
        logger.info(
            "Scheduler running: %s registered, %s disabled, %s failed",
            len(handle.registered),
            len(handle.disabled),
            len(handle.failed),
        )
        return handle

    def _register(
        self,
        descriptor: TaskDescriptor,
        handle: SchedulerHandle,
        cron: CronCapability,
        executor: ThreadPoolExecutor,
    ) -> None:
        try:
            plan = plan_schedule(descriptor, self.config)
            if plan.kind == Cron.kind:
                callback = functools.partial(run_isolated, descriptor.name, descriptor.work, executor)
                cron.add(descriptor.name, plan.expression or "", plan.zone, callback)
            elif plan.kind == FixedDelay.kind:
                handle.add_loop(
                    asyncio.create_task(
                        fixed_delay_loop(plan, descriptor.work, executor),
                        name=f"cadence:fixed_delay:{descriptor.name}",
                    )
                )
            else:
                handle.add_loop(
                    asyncio.create_task(
                        fixed_rate_loop(plan, descriptor.work, executor, handle.track),
                        name=f"cadence:fixed_rate:{descriptor.name}",
                    )
                )
        except Exception as exc:
            logger.error("[ERROR] Failed to register %s: %s", descriptor.name, exc)
            handle.failed[descriptor.name] = exc
            return
        logger.info("[REGISTER] %s (%s) %s", descriptor.name, descriptor.origin, plan.describe())
        handle.registered.append(descriptor.name)

    async def run_until_stopped(self, stop_event: asyncio.Event) -> SchedulerHandle:
        handle = await self.start()
        try:
            await stop_event.wait()
        finally:
            await handle.shutdown()
        return handle


class SchedulerBuilder:
    """Collects tasks and configuration, then builds a Scheduler once."""

    def __init__(
        self,
        config: Optional[ConfigStore] = None,
        cron_factory: Callable[[], CronCapability] = CroniterCronScheduler,
        max_workers: Optional[int] = DEFAULT_MAX_WORKERS,
    ):
        if max_workers is not None and max_workers < 1:
            raise SchedulerError("Error: max_workers must be >= 1.")
        self.registry = Registry()
        self.config = config if config is not None else ConfigStore()
        self.cron_factory = cron_factory
        self.max_workers = max_workers

    def with_config(self, config: ConfigStore) -> "SchedulerBuilder":
        self.config = config
        return self

    def with_yaml(self, path: Union[str, Path], environ: Optional[Mapping[str, str]] = None) -> "SchedulerBuilder":
        self.config = load_yaml_config(path, environ)
        return self

    def with_toml(self, path: Union[str, Path], environ: Optional[Mapping[str, str]] = None) -> "SchedulerBuilder":
        self.config = load_toml_config(path, environ)
        return self

    def register(self, target: Any, name: Optional[str] = None, **declaration: Any) -> "SchedulerBuilder":
        self.registry.register(target, name=name, **declaration)
        return self

    def add(self, descriptor: TaskDescriptor) -> "SchedulerBuilder":
        self.registry.add(descriptor)
        return self

    def contribute(self, factory: DescriptorFactory) -> "SchedulerBuilder":
        self.registry.contribute(factory)
        return self

    def build(self) -> Scheduler:
        descriptors = self.registry.freeze()
        logger.debug("Built scheduler with %s descriptor(s) from %s", len(descriptors), self.config.source)
        return Scheduler(descriptors, self.config, cron_factory=self.cron_factory, max_workers=self.max_workers)
