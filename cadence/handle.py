from __future__ import annotations

import asyncio
import enum
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Set

from .errors import SchedulerStateError

if TYPE_CHECKING:
    from .cron import CronCapability

logger = logging.getLogger("cadence.scheduler")


class SchedulerState(enum.Enum):
    BUILT = "built"
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    FAILED = "failed"


class SchedulerHandle:
    """Live handle over everything ``Scheduler.start()`` spawned.

    ``shutdown()`` cancels interval loops and in-flight runs abruptly; it
    does not wait for running task bodies to finish.
    """

    def __init__(
        self,
        cron: "CronCapability",
        executor: ThreadPoolExecutor,
        on_state: Optional[Callable[[SchedulerState], None]] = None,
    ) -> None:
        self.cron = cron
        self.executor = executor
        self.registered: List[str] = []
        self.disabled: List[str] = []
        self.failed: Dict[str, Exception] = {}
        self._loops: List["asyncio.Task[None]"] = []
        self._inflight: Set["asyncio.Task[None]"] = set()
        self._on_state = on_state
        self._closed = False

    @property
    def loop_count(self) -> int:
        return len(self._loops)

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    @property
    def closed(self) -> bool:
        return self._closed

    def add_loop(self, task: "asyncio.Task[None]") -> None:
        self._loops.append(task)

    def track(self, task: "asyncio.Task[None]") -> None:
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def shutdown(self) -> None:
        if self._closed:
            raise SchedulerStateError("Scheduler handle has already been shut down.")
        self._closed = True
        self._notify(SchedulerState.SHUTTING_DOWN)
        logger.info(
            "Shutting down scheduler (%s interval loop(s), %s in-flight run(s))",
            len(self._loops),
            len(self._inflight),
        )
        cron_error: Optional[Exception] = None
        try:
            await self.cron.shutdown()
        except Exception as exc:
            cron_error = exc
            logger.error("Cron scheduler failed to shut down: %s", exc)
        await self._cancel_all()
        self._notify(SchedulerState.STOPPED)
        logger.info("Scheduler stopped")
        if cron_error is not None:
            raise cron_error

    async def abort(self) -> None:
        """Tear down a partially started scheduler without raising."""
        self._closed = True
        try:
            await self.cron.shutdown()
        except Exception as exc:
            logger.warning("Cron scheduler failed to shut down during abort: %s", exc)
        await self._cancel_all()

    async def _cancel_all(self) -> None:
        pending = list(self._loops) + list(self._inflight)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._loops.clear()
        self._inflight.clear()
        self.executor.shutdown(wait=False, cancel_futures=True)

    def _notify(self, state: SchedulerState) -> None:
        if self._on_state is not None:
            self._on_state(state)
