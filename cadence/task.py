from __future__ import annotations

import asyncio
import functools
import inspect
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Union, runtime_checkable

from .config import validate_placeholder
from .errors import ConfigError
from .time_unit import TimeUnit

DurationSpec = Union[int, str]
BoolSpec = Union[bool, str]

SCHEDULE_KINDS = ("cron", "fixed_rate", "fixed_delay")
DEFAULT_ZONE = "local"
SCHEDULED_ATTR = "__cadence_schedule__"


@dataclass(frozen=True)
class Cron:
    expression: str
    zone: str = DEFAULT_ZONE

    kind = "cron"

    @property
    def value(self) -> str:
        return self.expression


@dataclass(frozen=True)
class FixedRate:
    interval: DurationSpec
    zone: str = DEFAULT_ZONE

    kind = "fixed_rate"

    @property
    def value(self) -> str:
        return str(self.interval)


@dataclass(frozen=True)
class FixedDelay:
    interval: DurationSpec
    zone: str = DEFAULT_ZONE

    kind = "fixed_delay"

    @property
    def value(self) -> str:
        return str(self.interval)


ScheduleKind = Union[Cron, FixedRate, FixedDelay]


def schedule_from_fields(kind: str, value: DurationSpec, zone: str = DEFAULT_ZONE) -> ScheduleKind:
    normalized = kind.strip().lower()
    if normalized == "cron":
        return Cron(str(value), zone)
    if normalized == "fixed_rate":
        return FixedRate(value, zone)
    if normalized == "fixed_delay":
        return FixedDelay(value, zone)
    raise ConfigError(f'Error: schedule kind must be one of {list(SCHEDULE_KINDS)}, got "{kind}".')


@runtime_checkable
class Runnable(Protocol):
    def run(self) -> Any:
        ...


async def call_work(func: Callable[[], Any], executor: Optional[Executor]) -> None:
    """Await coroutine functions on the loop; run plain callables on the executor."""
    if inspect.iscoroutinefunction(func):
        await func()
        return
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(executor, func)
    if inspect.isawaitable(result):
        await result


@dataclass(frozen=True)
class FunctionWork:
    func: Callable[[], Any]

    origin = "Function"

    async def execute(self, executor: Optional[Executor] = None) -> None:
        await call_work(self.func, executor)

    def describe(self) -> str:
        return getattr(self.func, "__qualname__", repr(self.func))


@dataclass(frozen=True)
class RunnableWork:
    target: Runnable

    origin = "Runnable"

    async def execute(self, executor: Optional[Executor] = None) -> None:
        await call_work(self.target.run, executor)

    def describe(self) -> str:
        return type(self.target).__qualname__


@dataclass(frozen=True)
class ScheduledMethodMetadata:
    method_name: str
    schedule: ScheduleKind
    initial_delay: DurationSpec = "0"
    enabled: BoolSpec = "true"
    time_unit: Union[TimeUnit, str] = TimeUnit.MILLISECONDS


class MethodTable:
    """Scheduled methods of one registered instance, bound once at registration."""

    def __init__(self, instance: Any, methods: List[ScheduledMethodMetadata]):
        self.instance = instance
        self.type_name = type(instance).__qualname__
        self._entries: Dict[str, Tuple[ScheduledMethodMetadata, Callable[[], Any]]] = {}
        for meta in methods:
            bound = getattr(instance, meta.method_name, None)
            if not callable(bound):
                raise ConfigError(
                    f'Error: {self.type_name} has no callable method "{meta.method_name}" to schedule.'
                )
            self._entries[meta.method_name] = (meta, bound)

    @classmethod
    def for_instance(cls, instance: Any) -> "MethodTable":
        declared = getattr(instance, "scheduled_methods", None)
        if callable(declared):
            return cls(instance, list(declared()))
        methods: List[ScheduledMethodMetadata] = []
        for name, member in inspect.getmembers(type(instance)):
            meta = getattr(member, SCHEDULED_ATTR, None)
            if isinstance(meta, ScheduledMethodMetadata) and not isinstance(member, type):
                methods.append(_rename(meta, name))
        return cls(instance, methods)

    @property
    def methods(self) -> List[ScheduledMethodMetadata]:
        return [meta for meta, _ in self._entries.values()]

    def __len__(self) -> int:
        return len(self._entries)

    def invoke(self, method_name: str, executor: Optional[Executor] = None) -> Awaitable[None]:
        entry = self._entries.get(method_name)
        if entry is None:
            raise ConfigError(f'Error: {self.type_name} has no scheduled method "{method_name}".')
        return call_work(entry[1], executor)


def _rename(meta: ScheduledMethodMetadata, name: str) -> ScheduledMethodMetadata:
    if meta.method_name == name:
        return meta
    return ScheduledMethodMetadata(
        method_name=name,
        schedule=meta.schedule,
        initial_delay=meta.initial_delay,
        enabled=meta.enabled,
        time_unit=meta.time_unit,
    )


@dataclass(frozen=True)
class MethodWork:
    table: MethodTable
    method_name: str

    origin = "Method"

    async def execute(self, executor: Optional[Executor] = None) -> None:
        await self.table.invoke(self.method_name, executor)

    def describe(self) -> str:
        return f"{self.table.type_name}.{self.method_name}"


WorkHandle = Union[FunctionWork, RunnableWork, MethodWork]


def work_for(target: Any) -> WorkHandle:
    if isinstance(target, (FunctionWork, RunnableWork, MethodWork)):
        return target
    if isinstance(target, Runnable) and not inspect.isroutine(target) and not isinstance(target, type):
        return RunnableWork(target)
    if callable(target):
        return FunctionWork(target)
    raise ConfigError(f"Error: cannot schedule {target!r}: expected a callable or an object with run().")


@dataclass(frozen=True)
class TaskDescriptor:
    name: str
    schedule: ScheduleKind
    work: WorkHandle
    initial_delay: DurationSpec = "0"
    enabled: BoolSpec = "true"
    time_unit: Union[TimeUnit, str] = TimeUnit.MILLISECONDS

    @property
    def origin(self) -> str:
        return self.work.origin

    @staticmethod
    def from_fields(
        name: str,
        work: Any,
        schedule_kind: str,
        schedule_value: DurationSpec,
        initial_delay: DurationSpec = "0",
        enabled: BoolSpec = "true",
        time_unit: Union[TimeUnit, str] = "milliseconds",
        zone: str = DEFAULT_ZONE,
    ) -> "TaskDescriptor":
        return TaskDescriptor(
            name=name,
            schedule=schedule_from_fields(schedule_kind, schedule_value, zone),
            work=work_for(work),
            initial_delay=initial_delay,
            enabled=enabled,
            time_unit=time_unit,
        )

    def validate(self) -> None:
        """Reject malformed ${...} placeholders before the scheduler is built."""
        fields = [
            (self.schedule.kind, self.schedule.value),
            ("initial_delay", self.initial_delay),
            ("enabled", self.enabled),
            ("zone", self.schedule.zone),
        ]
        if isinstance(self.time_unit, str):
            fields.append(("time_unit", self.time_unit))
        for field_name, value in fields:
            if isinstance(value, str):
                validate_placeholder(value, field_name, self.name)


def declaration_from_kwargs(
    cron: Optional[str] = None,
    fixed_rate: Optional[DurationSpec] = None,
    fixed_delay: Optional[DurationSpec] = None,
    initial_delay: DurationSpec = "0",
    enabled: BoolSpec = "true",
    time_unit: Union[TimeUnit, str] = TimeUnit.MILLISECONDS,
    zone: str = DEFAULT_ZONE,
    schedule: Optional[ScheduleKind] = None,
    method_name: str = "",
) -> ScheduledMethodMetadata:
    given = [
        kind
        for kind, value in (("cron", cron), ("fixed_rate", fixed_rate), ("fixed_delay", fixed_delay))
        if value is not None
    ]
    if schedule is not None:
        given.append("schedule")
    if len(given) != 1:
        raise ConfigError(
            f"Error: exactly one of cron, fixed_rate, fixed_delay or schedule is required, got {given or 'none'}."
        )
    if schedule is None:
        kind = given[0]
        value = {"cron": cron, "fixed_rate": fixed_rate, "fixed_delay": fixed_delay}[kind]
        schedule = schedule_from_fields(kind, value, zone)  # type: ignore[arg-type]
    return ScheduledMethodMetadata(
        method_name=method_name,
        schedule=schedule,
        initial_delay=initial_delay,
        enabled=enabled,
        time_unit=time_unit,
    )


def scheduled(**declaration: Any) -> Callable[[Any], Any]:
    """Attach schedule fields to a function, a method or a Runnable class.

    Nothing is scheduled until the target (or an instance of the class that
    owns the method) is passed to ``SchedulerBuilder.register``.
    """
    meta = declaration_from_kwargs(**declaration)

    def decorate(target: Any) -> Any:
        setattr(target, SCHEDULED_ATTR, _rename(meta, getattr(target, "__name__", "")))
        return target

    return decorate


def declared_schedule(target: Any) -> Optional[ScheduledMethodMetadata]:
    if inspect.isroutine(target) or isinstance(target, functools.partial):
        meta = getattr(target, SCHEDULED_ATTR, None)
    else:
        meta = getattr(type(target), SCHEDULED_ATTR, None)
    return meta if isinstance(meta, ScheduledMethodMetadata) else None
