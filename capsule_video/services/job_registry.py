"""Background processing runs keyed by namespace and video id."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from ..core.abort import AbortController, AbortSignal
from ..core.exceptions import AbortError
from ..utils.logger import get_logger

logger = get_logger(__name__)

RunFactory = Callable[[AbortSignal], Awaitable[object]]


@dataclass
class _Run:
    key: str
    controller: AbortController
    task: Optional[asyncio.Task] = None


class ProcessingTaskRegistry:
    """
    Tracks one background run per key.

    Starting a run for a key that already has one aborts the old run and
    waits for it to finish before the new one starts.
    """

    def __init__(self):
        self._runs: Dict[str, _Run] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def start(
        self, key: str, factory: RunFactory, timeout_seconds: float = 0
    ) -> asyncio.Task:
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            previous = self._runs.get(key)
            if previous is not None and previous.task is not None:
                logger.info("Aborting previous run", key=key)
                previous.controller.abort("superseded by a new run")
                await asyncio.gather(previous.task, return_exceptions=True)

            controller = (
                AbortController.timeout(timeout_seconds)
                if timeout_seconds and timeout_seconds > 0
                else AbortController()
            )
            run = _Run(key=key, controller=controller)
            run.task = asyncio.create_task(self._execute(run, factory))
            run.task.add_done_callback(self._log_result)
            self._runs[key] = run
            return run.task

    async def _execute(self, run: _Run, factory: RunFactory) -> object:
        try:
            return await factory(run.controller.signal)
        finally:
            run.controller.dispose()
            if self._runs.get(run.key) is run:
                del self._runs[run.key]

    @staticmethod
    def _log_result(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, AbortError):
            logger.error("Background processing run failed", error=str(error))

    def is_running(self, key: str) -> bool:
        return key in self._runs

    def keys(self) -> List[str]:
        return list(self._runs)

    def abort(self, key: str, reason: str = "aborted by request") -> bool:
        """Fire the abort signal of the run for key. False when there is none."""
        run = self._runs.get(key)
        if run is None:
            return False
        run.controller.abort(reason)
        return True

    async def wait(self, key: str) -> None:
        run = self._runs.get(key)
        if run is not None and run.task is not None:
            await asyncio.gather(run.task, return_exceptions=True)

    async def shutdown(self, reason: str = "server shutting down") -> None:
        """Abort every run and wait until they have all stopped."""
        runs = list(self._runs.values())
        for run in runs:
            run.controller.abort(reason)
        tasks = [run.task for run in runs if run.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
