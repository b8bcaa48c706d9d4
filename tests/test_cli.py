from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterator

import pytest
import yaml

from cadence import cli
from cadence.errors import ConfigError
from cadence.scheduler import SchedulerBuilder

JOBS_MODULE = '''
from cadence import scheduled

CALLS = []


def heartbeat():
    CALLS.append("heartbeat")


async def report():
    CALLS.append("report")


class Housekeeping:
    @scheduled(fixed_rate="1s")
    def sweep(self):
        CALLS.append("sweep")

    @scheduled(cron="0 3 * * *", zone="UTC")
    def vacuum(self):
        CALLS.append("vacuum")
'''


@pytest.fixture(autouse=True)
def _reset_cli_logger() -> Iterator[None]:
    yield
    logger = logging.getLogger("cadence")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def jobs_module(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    (tmp_path / "cadence_cli_jobs.py").write_text(JOBS_MODULE, encoding="utf-8")
    monkeypatch.syspath_prepend(str(tmp_path))
    return "cadence_cli_jobs"


def _write_tasks(tmp_path: Path, tasks: list[dict]) -> Path:
    path = tmp_path / "tasks.yaml"
    path.write_text(yaml.safe_dump({"tasks": tasks}, sort_keys=False), encoding="utf-8")
    return path


def _write_config(tmp_path: Path, payload: dict) -> Path:
    path = tmp_path / "app.yaml"
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    return path


def test_validate_lists_resolved_tasks(
    tmp_path: Path, jobs_module: str, capsys: pytest.CaptureFixture[str]
) -> None:
    tasks = _write_tasks(
        tmp_path,
        [
            {"name": "beat", "target": f"{jobs_module}:heartbeat", "fixed_rate": "${app.beat:5s}"},
            {"name": "report", "target": f"{jobs_module}:report", "cron": "0 9 * * *", "zone": "UTC"},
            {"name": "off", "target": f"{jobs_module}:heartbeat", "fixed_delay": 500, "enabled": False},
        ],
    )
    config = _write_config(tmp_path, {"app": {"beat": "2s"}})
    exit_code = cli.main(["--config", str(config), "validate", "--tasks", str(tasks)])
    out = capsys.readouterr().out
    assert exit_code == 0
    assert "Total tasks: 3" in out
    assert "Enabled tasks: 2" in out
    assert "- beat: fixed_rate=2000ms" in out
    assert "- report: cron=0 9 * * * zone=UTC" in out
    assert "- off: disabled" in out


def test_validate_reports_task_errors(
    tmp_path: Path, jobs_module: str, capsys: pytest.CaptureFixture[str]
) -> None:
    tasks = _write_tasks(
        tmp_path,
        [
            {"name": "zero", "target": f"{jobs_module}:heartbeat", "fixed_rate": "0s"},
            {"name": "needs-key", "target": f"{jobs_module}:heartbeat", "fixed_rate": "${app.missing}"},
        ],
    )
    exit_code = cli.main(["validate", "--tasks", str(tasks)])
    out = capsys.readouterr().out
    assert exit_code == 1
    assert "- zero: ERROR" in out
    assert "- needs-key: ERROR" in out


def test_task_file_rejects_unknown_keys(tmp_path: Path, jobs_module: str) -> None:
    tasks = _write_tasks(
        tmp_path,
        [{"name": "beat", "target": f"{jobs_module}:heartbeat", "fixed_rate": "5s", "retries": 3}],
    )
    with pytest.raises(ConfigError, match="Unknown keys"):
        cli.parse_tasks(tasks, SchedulerBuilder())
    assert cli.main(["validate", "--tasks", str(tasks)]) == 1


@pytest.mark.parametrize(
    "entry, message",
    [
        ({"target": "cadence_cli_jobs:heartbeat", "fixed_rate": "5s", "cron": "* * * * *"}, "only one"),
        ({"target": "cadence_cli_jobs", "fixed_rate": "5s"}, "package.module:attr"),
        ({"target": "cadence_cli_jobs:nothing", "fixed_rate": "5s"}, "no attribute"),
        ({"target": "no_such_module_here:job", "fixed_rate": "5s"}, "cannot import"),
        ({"target": "cadence_cli_jobs:heartbeat", "fixed_rate": 1.5}, "string or an integer"),
        ({"target": "cadence_cli_jobs:heartbeat", "initial_delay": "1s"}, "without a schedule"),
    ],
)
def test_task_file_entry_errors(tmp_path: Path, jobs_module: str, entry: dict, message: str) -> None:
    tasks = _write_tasks(tmp_path, [entry])
    with pytest.raises(ConfigError, match=message):
        cli.parse_tasks(tasks, SchedulerBuilder())


def test_task_file_class_target_uses_scheduled_methods(tmp_path: Path, jobs_module: str) -> None:
    tasks = _write_tasks(tmp_path, [{"target": f"{jobs_module}:Housekeeping"}])
    builder = SchedulerBuilder()
    assert cli.parse_tasks(tasks, builder) == 1
    names = sorted(descriptor.name for descriptor in builder.build().descriptors)
    assert names == ["Housekeeping.sweep", "Housekeeping.vacuum"]


def test_missing_task_file(tmp_path: Path) -> None:
    assert cli.main(["validate", "--tasks", str(tmp_path / "absent.yaml")]) == 1


def test_preview_prints_cron_runs(tmp_path: Path, jobs_module: str, capsys: pytest.CaptureFixture[str]) -> None:
    tasks = _write_tasks(
        tmp_path,
        [
            {"name": "report", "target": f"{jobs_module}:report", "cron": "0 9 * * *", "zone": "UTC"},
            {"name": "beat", "target": f"{jobs_module}:heartbeat", "fixed_rate": "5s", "initial_delay": "1s"},
            {"name": "sweep", "target": f"{jobs_module}:heartbeat", "fixed_delay": "5s", "initial_delay": "2s"},
        ],
    )
    exit_code = cli.main(["preview", "--tasks", str(tasks), "--count", "2"])
    out = capsys.readouterr().out
    assert exit_code == 0
    assert "Task: report (enabled=True)" in out
    assert "Next 2 run(s):" in out
    assert out.count("T09:00:00+00:00") == 2
    assert "First run after: 6000ms" in out
    assert "First run after: 2000ms" in out


def test_preview_single_task_and_bad_count(
    tmp_path: Path, jobs_module: str, capsys: pytest.CaptureFixture[str]
) -> None:
    tasks = _write_tasks(
        tmp_path,
        [
            {"name": "report", "target": f"{jobs_module}:report", "cron": "0 9 * * *"},
            {"name": "beat", "target": f"{jobs_module}:heartbeat", "fixed_rate": "5s"},
        ],
    )
    assert cli.main(["preview", "--tasks", str(tasks), "--task", "beat"]) == 0
    out = capsys.readouterr().out
    assert "Task: beat" in out
    assert "Task: report" not in out
    assert cli.main(["preview", "--tasks", str(tasks), "--task", "ghost"]) == 1
    assert cli.main(["preview", "--tasks", str(tasks), "--count", "0"]) == 1


def test_run_returns_130_when_interrupted(
    tmp_path: Path, jobs_module: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    tasks = _write_tasks(tmp_path, [{"name": "beat", "target": f"{jobs_module}:heartbeat", "fixed_rate": "5s"}])

    def interrupted(coro: Any) -> None:
        coro.close()
        raise KeyboardInterrupt

    monkeypatch.setattr(cli.asyncio, "run", interrupted)
    assert cli.main(["run", "--tasks", str(tasks)]) == cli.EXIT_INTERRUPTED
    assert cli.main(["run", "--tasks", str(tasks), "--max-workers", "0"]) == 1


def test_setup_logging_installs_handlers_once(tmp_path: Path) -> None:
    log_file = tmp_path / "cadence.log"
    logger = cli.setup_logging(str(log_file))
    handler_count = len(logger.handlers)
    assert handler_count == 2
    assert cli.setup_logging(str(log_file)) is logger
    assert len(logger.handlers) == handler_count
    logger.info("hello from cadence")
    for handler in logger.handlers:
        handler.flush()
    assert "INFO hello from cadence" in log_file.read_text(encoding="utf-8")
