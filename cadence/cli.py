"""
cadence command line

Validate, preview and run a YAML task file against an optional config file.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import importlib
import logging
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .config import ConfigStore, load_config
from .cron import next_fire_times
from .errors import ConfigError, SchedulerError
from .scheduler import DEFAULT_MAX_WORKERS, Scheduler, SchedulerBuilder
from .task import SCHEDULE_KINDS, FixedRate, TaskDescriptor

DEFAULT_TASKS = "tasks.yaml"
DEFAULT_PREVIEW_COUNT = 5
EXIT_INTERRUPTED = 130
TASK_KEYS = {"name", "target", "initial_delay", "enabled", "time_unit", "zone", *SCHEDULE_KINDS}
UTC = timezone.utc

logger = logging.getLogger("cadence")


def setup_logging(log_file: Optional[str] = None, level: int = logging.INFO) -> logging.Logger:
    if logger.handlers:
        return logger
    logger.setLevel(level)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_scalar(value: Any, field_path: str) -> Any:
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return value
    raise ConfigError(f"Error: {field_path} must be a string or an integer.")


def import_target(reference: str, field_path: str) -> Any:
    """Import ``package.module:attr`` (attr may be dotted); classes are instantiated."""
    module_name, sep, attr_path = reference.partition(":")
    if not sep or not module_name or not attr_path:
        raise ConfigError(f'Error: {field_path} must look like "package.module:attr", got "{reference}".')
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f'Error: {field_path} cannot import module "{module_name}": {exc}') from exc
    for part in attr_path.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise ConfigError(f'Error: {field_path} has no attribute "{attr_path}" in {module_name}.') from exc
    if isinstance(target, type):
        target = target()
    return target


def _load_tasks_payload(tasks_path: Path) -> Dict[str, Any]:
    if not tasks_path.exists():
        raise ConfigError(f"Error: Task file not found: {tasks_path}")
    try:
        payload = yaml.safe_load(tasks_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {tasks_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level task file must be a mapping.")
    return payload


def parse_tasks(tasks_path: Path, builder: SchedulerBuilder) -> int:
    """Register every entry of the task file on ``builder``; returns the entry count."""
    payload = _load_tasks_payload(tasks_path)
    unknown_top = set(payload.keys()) - {"tasks"}
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")
    tasks_raw = payload.get("tasks")
    if not isinstance(tasks_raw, list) or not tasks_raw:
        raise ConfigError("Error: tasks must be a non-empty list.")

    for idx, task_raw in enumerate(tasks_raw):
        path = f"tasks[{idx}]"
        if not isinstance(task_raw, dict):
            raise ConfigError(f"Error: {path} must be a mapping.")
        unknown = set(task_raw.keys()) - TASK_KEYS
        if unknown:
            raise ConfigError(f"Error: Unknown keys in {path}: {sorted(unknown)}.")

        target = import_target(ensure_str(task_raw.get("target"), f"{path}.target"), f"{path}.target")
        name = task_raw.get("name")
        if name is not None:
            name = ensure_str(name, f"{path}.name")

        kinds = [kind for kind in SCHEDULE_KINDS if kind in task_raw]
        if len(kinds) > 1:
            raise ConfigError(f"Error: {path} must set only one of {list(SCHEDULE_KINDS)}, got {kinds}.")
        if not kinds:
            # The target carries its own @scheduled declarations.
            extra = set(task_raw.keys()) - {"name", "target"}
            if extra:
                raise ConfigError(f"Error: {path} sets {sorted(extra)} without a schedule.")
            builder.register(target, name=name)
            continue

        declaration: Dict[str, Any] = {kinds[0]: ensure_scalar(task_raw[kinds[0]], f"{path}.{kinds[0]}")}
        for key in ("initial_delay", "time_unit", "zone"):
            if key in task_raw:
                declaration[key] = ensure_scalar(task_raw[key], f"{path}.{key}")
        if "enabled" in task_raw:
            enabled = task_raw["enabled"]
            if not isinstance(enabled, (bool, str)):
                raise ConfigError(f"Error: {path}.enabled must be true, false or a placeholder string.")
            declaration["enabled"] = enabled
        builder.register(target, name=name, **declaration)
    return len(tasks_raw)


def build_scheduler(
    config_path: Optional[Path], tasks_path: Path, max_workers: Optional[int] = DEFAULT_MAX_WORKERS
) -> Scheduler:
    config = load_config(config_path) if config_path else ConfigStore().overlay_env()
    builder = SchedulerBuilder(config=config, max_workers=max_workers)
    parse_tasks(tasks_path, builder)
    return builder.build()


def _select(scheduler: Scheduler, task_name: Optional[str]) -> List[TaskDescriptor]:
    if not task_name:
        return scheduler.descriptors
    selected = [descriptor for descriptor in scheduler.descriptors if descriptor.name == task_name]
    if not selected:
        raise SchedulerError(f'Unknown task "{task_name}".')
    return selected


def command_validate(config_path: Optional[Path], tasks_path: Path) -> int:
    scheduler = build_scheduler(config_path, tasks_path)
    outcomes = scheduler.plan()
    print(f"Tasks valid: {tasks_path}")
    print(f"Total tasks: {len(outcomes)}")
    print(f"Enabled tasks: {sum(1 for outcome in outcomes if outcome.enabled)}")
    exit_code = 0
    for outcome in outcomes:
        if outcome.error is not None:
            print(f"- {outcome.name}: ERROR {outcome.error}")
            exit_code = 1
        elif outcome.plan is None:
            print(f"- {outcome.name}: disabled")
        else:
            print(f"- {outcome.name}: {outcome.plan.describe()}")
    return exit_code


def command_preview(config_path: Optional[Path], tasks_path: Path, task_name: Optional[str], count: int) -> int:
    scheduler = build_scheduler(config_path, tasks_path)
    selected = {descriptor.name for descriptor in _select(scheduler, task_name)}
    now_utc = datetime.now(tz=UTC)

    exit_code = 0
    for outcome in scheduler.plan():
        if outcome.name not in selected:
            continue
        print("=" * 80)
        print(f"Task: {outcome.name} (enabled={outcome.enabled})")
        if outcome.error is not None:
            print(f"Error: {outcome.error}")
            exit_code = 1
            continue
        plan = outcome.plan
        if plan is None:
            continue
        print(f"Origin: {plan.origin}")
        print(f"Schedule: {plan.describe()}")
        if plan.expression:
            print(f"Next {count} run(s):")
            for run_dt in next_fire_times(plan.expression, plan.zone, count, now=now_utc):
                print(f"- {run_dt.isoformat()}")
        else:
            first = plan.initial_delay_millis
            if plan.kind == FixedRate.kind:
                first += plan.interval_millis or 0
            print(f"First run after: {first}ms")
    print("=" * 80)
    return exit_code


async def _run_until_signalled(scheduler: Scheduler) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    await scheduler.run_until_stopped(stop_event)


def command_run(config_path: Optional[Path], tasks_path: Path, max_workers: Optional[int]) -> int:
    scheduler = build_scheduler(config_path, tasks_path, max_workers=max_workers)
    try:
        asyncio.run(_run_until_signalled(scheduler))
    except KeyboardInterrupt:
        logger.info("Interrupted; scheduler stopped")
        return EXIT_INTERRUPTED
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="cadence recurring task scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="Path to a YAML or TOML config file for ${key} placeholders")
    parser.add_argument("--log-file", help="Also write log lines to this file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Load the task file and resolve every task")
    validate_parser.add_argument("--tasks", default=DEFAULT_TASKS, help=f"Path to task file (default: {DEFAULT_TASKS})")

    preview_parser = subparsers.add_parser("preview", help="Show resolved schedules and next cron runs")
    preview_parser.add_argument("--tasks", default=DEFAULT_TASKS, help=f"Path to task file (default: {DEFAULT_TASKS})")
    preview_parser.add_argument("--task", help="Preview a single task by name")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    run_parser = subparsers.add_parser("run", help="Run the scheduler until interrupted")
    run_parser.add_argument("--tasks", default=DEFAULT_TASKS, help=f"Path to task file (default: {DEFAULT_TASKS})")
    run_parser.add_argument(
        "--max-workers",
        type=int,
        default=DEFAULT_MAX_WORKERS,
        help="Optional ceiling on threads running blocking tasks (default: no ceiling)",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_file)
    config_path = Path(args.config).resolve() if args.config else None
    tasks_path = Path(args.tasks).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path, tasks_path)
        if args.command == "preview":
            if args.count <= 0:
                raise SchedulerError("--count must be >= 1")
            return command_preview(config_path, tasks_path, task_name=args.task, count=args.count)
        if args.command == "run":
            if args.max_workers is not None and args.max_workers <= 0:
                raise SchedulerError("--max-workers must be >= 1")
            return command_run(config_path, tasks_path, max_workers=args.max_workers)
        raise SchedulerError(f"Unsupported command: {args.command}")
    except SchedulerError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
