from __future__ import annotations

"""
Task Scheduler

Starts/stops the chain watcher and the monitored-address refresher and handles
graceful shutdown. Embedded into the FastAPI lifespan, or run standalone by
``stealthmax watch``.

Key properties
--------------
- Async-first: both loops run in the current event loop.
- Delayed start: the watcher starts ``start_delay`` seconds after ``start()``
  so the HTTP server is up first.
- Clean shutdown: ``stop()`` signals an asyncio.Event, lets the current block
  finish, then cancels lingering tasks after ``shutdown_timeout``.
"""

import asyncio
import contextlib
import signal
from dataclasses import dataclass
from typing import List

from ..logging import get_logger
from .watcher import ChainWatcher


@dataclass(frozen=True)
class SchedulerConfig:
    start_delay: float = 2.0
    shutdown_timeout: float = 15.0


class TaskScheduler:
    def __init__(self, *, watcher: ChainWatcher, config: SchedulerConfig | None = None) -> None:
        self.watcher = watcher
        self.config = config or SchedulerConfig()
        self.log = get_logger(__name__).bind(role="scheduler")
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._stop.clear()
        self.log.info("scheduler.start", start_delay_s=self.config.start_delay)
        watch = asyncio.create_task(self._delayed_watch(), name="chain-watcher")
        watch.add_done_callback(self._on_done("watcher"))
        refresh = asyncio.create_task(self.watcher.run_refresher(self._stop), name="address-refresher")
        refresh.add_done_callback(self._on_done("refresher"))
        self._tasks = [watch, refresh]

    async def _delayed_watch(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.config.start_delay)
            return
        except asyncio.TimeoutError:
            pass
        await self.watcher.run(self._stop)

    def _on_done(self, label: str):
        def _cb(task: asyncio.Task):
            if task.cancelled():
                self.log.info("task.cancelled", task=label)
                return
            exc = task.exception()
            if exc is not None:
                self.log.error("task.crashed", task=label, error=f"{type(exc).__name__}: {exc}")
            else:
                self.log.info("task.exited", task=label)
        return _cb

    async def stop(self) -> None:
        if not self._started:
            return
        self.log.info("scheduler.stop.begin")
        self._stop.set()
        try:
            await asyncio.wait_for(
                asyncio.gather(*self._tasks, return_exceptions=True),
                timeout=self.config.shutdown_timeout,
            )
        except asyncio.TimeoutError:
            self.log.warning("scheduler.stop.timeout_cancel")
            for t in self._tasks:
                if not t.done():
                    t.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._started = False
        self.log.info("scheduler.stop.finished")

    async def __aenter__(self) -> "TaskScheduler":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def run_until_stopped(self) -> None:
        """Wire SIGINT/SIGTERM and block until stop is requested or the watcher gives up."""
        self._wire_signals()
        await self.start()
        watch = self._tasks[0]
        stop_wait = asyncio.create_task(self._stop.wait())
        await asyncio.wait({watch, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        stop_wait.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await stop_wait
        await self.stop()

    def _wire_signals(self) -> None:
        loop = asyncio.get_running_loop()

        def _handler(signame: str):
            self.log.info("scheduler.signal", signal=signame)
            self._stop.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _handler, sig.name)
            except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows
                self.log.warning("scheduler.signal_unsupported", signal=sig.name)


__all__ = ["SchedulerConfig", "TaskScheduler"]
