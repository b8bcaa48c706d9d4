"""Recurring task scheduler: cron, fixed-rate and fixed-delay jobs on one asyncio loop."""

from .config import ConfigStore, load_config, load_toml_config, load_yaml_config, resolve
from .cron import CronCapability, CroniterCronScheduler, next_fire_times
from .errors import (
    ConfigError,
    MissingConfigKeyError,
    PlaceholderFormatError,
    ScheduleValueError,
    SchedulerError,
    SchedulerStateError,
)
from .handle import SchedulerHandle, SchedulerState
from .scheduler import Scheduler, SchedulerBuilder, TaskPlan
from .task import (
    Cron,
    FixedDelay,
    FixedRate,
    FunctionWork,
    MethodTable,
    MethodWork,
    Runnable,
    RunnableWork,
    ScheduledMethodMetadata,
    TaskDescriptor,
    scheduled,
)
from .time_unit import TimeUnit, parse_duration, parse_unit_name, to_millis

__all__ = [
    "ConfigError",
    "ConfigStore",
    "Cron",
    "CronCapability",
    "CroniterCronScheduler",
    "FixedDelay",
    "FixedRate",
    "FunctionWork",
    "MethodTable",
    "MethodWork",
    "MissingConfigKeyError",
    "PlaceholderFormatError",
    "Runnable",
    "RunnableWork",
    "ScheduleValueError",
    "ScheduledMethodMetadata",
    "Scheduler",
    "SchedulerBuilder",
    "SchedulerError",
    "SchedulerHandle",
    "SchedulerState",
    "SchedulerStateError",
    "TaskDescriptor",
    "TaskPlan",
    "TimeUnit",
    "load_config",
    "load_toml_config",
    "load_yaml_config",
    "next_fire_times",
    "parse_duration",
    "parse_unit_name",
    "resolve",
    "scheduled",
    "to_millis",
]
