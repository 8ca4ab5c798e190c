import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

from api.metrics import MetricsCollector


logger = logging.getLogger(__name__)


class Supervisor:
    """Awaits a worker task and respawns it if it dies while it should be running."""

    def __init__(
        self,
        name: str,
        worker: Callable[[], Awaitable[None]],
        should_run: Callable[[], bool],
        metrics: Optional[MetricsCollector] = None,
        restart_delay: float = 1.0,
        max_restarts_per_minute: int = 10,
        watchdog_interval: float = 10.0,
    ):
        self.name = name
        self.worker = worker
        self.should_run = should_run
        self.metrics = metrics or MetricsCollector()
        self.restart_delay = restart_delay
        self.max_restarts_per_minute = max_restarts_per_minute
        self.watchdog_interval = watchdog_interval
        self.task: Optional[asyncio.Task] = None
        self.restart_count = 0
        self.last_heartbeat: Optional[float] = None
        self._restarts: Deque[float] = deque()

    def spawn(self) -> asyncio.Task:
        self.task = asyncio.create_task(self.worker(), name=self.name)
        return self.task

    def is_alive(self) -> bool:
        return self.task is not None and not self.task.done()

    async def run(self):
        if not self.is_alive():
            self.spawn()
        while True:
            done, _ = await asyncio.wait({self.task}, timeout=self.watchdog_interval)
            self.last_heartbeat = time.monotonic()
            if not done:
                continue
            if not self.should_run():
                return
            self._report_death(self.task)
            if not await self._wait_before_restart():
                return
            self.restart_count += 1
            self.metrics.record_worker_restart(self.name)
            logger.warning("Restarting %s (restart #%s)", self.name, self.restart_count)
            self.spawn()

    def _report_death(self, task: asyncio.Task):
        if task.cancelled():
            logger.error("%s was cancelled while still required", self.name)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s crashed: %s", self.name, exc, exc_info=exc)
        else:
            logger.error("%s exited unexpectedly", self.name)

    async def _wait_before_restart(self) -> bool:
        now = time.monotonic()
        while self._restarts and now - self._restarts[0] > 60:
            self._restarts.popleft()
        delay = self.restart_delay
        if len(self._restarts) >= self.max_restarts_per_minute:
            logger.error(
                "%s restarted %s times in 60s; backing off for 60s", self.name, len(self._restarts)
            )
            delay = 60.0
        deadline = time.monotonic() + delay
        while time.monotonic() < deadline:
            if not self.should_run():
                return False
            await asyncio.sleep(min(0.5, max(0.0, deadline - time.monotonic())))
        self._restarts.append(time.monotonic())
        return self.should_run()
