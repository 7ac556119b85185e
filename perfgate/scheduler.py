"""Bounded-concurrency task scheduler with retry and per-task timeout."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace

from perfgate.errors import SchedulerError, TaskTimeoutError
from perfgate.models import AuditResult, Task, utc_now

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Task], Awaitable[AuditResult]]


@dataclass
class SchedulerHooks:
    """Optional progress callbacks fired by the scheduler."""

    on_start: Callable[[Task], None] | None = None
    on_complete: Callable[[AuditResult], None] | None = None
    on_failed: Callable[[Task, Exception, bool], None] | None = None
    on_retry: Callable[[Task, int], None] | None = None
    on_all_complete: Callable[[list[AuditResult]], None] | None = None


class Scheduler:
    """Runs queued tasks through a handler with at most `concurrency` in flight.

    Failed tasks go to the back of the queue with `attempt + 1` while
    `attempt <= max_retries`; after that a failed AuditResult is recorded.
    """

    def __init__(
        self,
        concurrency: int,
        max_retries: int = 0,
        timeout_ms: int | None = None,
        hooks: SchedulerHooks | None = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.timeout_ms = timeout_ms
        self.hooks = hooks or SchedulerHooks()
        self._handler: TaskHandler | None = None
        self._queue: deque[Task] = deque()
        self._active: dict[str, Task] = {}
        self._results: list[AuditResult] = []
        self._running = False

    def set_handler(self, handler: TaskHandler) -> None:
        self._handler = handler

    def enqueue(self, tasks: list[Task]) -> None:
        self._queue.extend(tasks)

    @property
    def is_running(self) -> bool:
        return self._running

    def status(self) -> dict:
        return {
            "running": self._running,
            "queued": len(self._queue),
            "active": len(self._active),
            "completed": len(self._results),
        }

    def stop(self) -> None:
        """Drop queued tasks. Handlers already started run to completion."""
        self._running = False
        self._queue.clear()
        self._active.clear()

    async def run(self) -> list[AuditResult]:
        """Drain the queue and return one terminal result per task."""
        if self._running:
            raise SchedulerError("Scheduler is already running")
        if self._handler is None:
            raise SchedulerError("Task handler must be set before running the scheduler")

        self._running = True
        self._results = []
        in_flight: dict[asyncio.Task, Task] = {}
        try:
            while True:
                while self._running and self._queue and len(in_flight) < self.concurrency:
                    task = self._queue.popleft()
                    self._active[task.id] = task
                    in_flight[asyncio.create_task(self._process(task))] = task

                if not in_flight:
                    break

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for finished in done:
                    task = in_flight.pop(finished)
                    self._active.pop(task.id, None)
                    # _process handles every handler error; anything raised here is ours
                    finished.result()
        except BaseException:
            for pending in in_flight:
                pending.cancel()
            raise
        finally:
            self._running = False

        results = list(self._results)
        self._emit(self.hooks.on_all_complete, results)
        return results

    async def _process(self, task: Task) -> None:
        self._emit(self.hooks.on_start, task)
        try:
            result = await self._execute(task)
        except Exception as exc:
            will_retry = task.attempt <= self.max_retries and self._running
            logger.debug("Task %s attempt %d failed: %s", task.id, task.attempt, exc)
            self._emit(self.hooks.on_failed, task, exc, will_retry)
            if will_retry:
                retry = replace(task, attempt=task.attempt + 1)
                self._emit(self.hooks.on_retry, retry, retry.attempt)
                self._queue.append(retry)
            else:
                self._results.append(AuditResult(
                    task_id=task.id,
                    target=task.target,
                    profile_id=task.profile_id,
                    metrics={},
                    duration_ms=0.0,
                    timestamp=utc_now(),
                    error=str(exc) or type(exc).__name__,
                ))
            return

        self._results.append(result)
        self._emit(self.hooks.on_complete, result)

    async def _execute(self, task: Task) -> AuditResult:
        if not self.timeout_ms:
            return await self._handler(task)
        try:
            return await asyncio.wait_for(self._handler(task), timeout=self.timeout_ms / 1000)
        except TimeoutError as exc:
            raise TaskTimeoutError(f"Task {task.id} timed out after {self.timeout_ms}ms") from exc

    @staticmethod
    def _emit(callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Scheduler hook %s raised", getattr(callback, "__name__", callback))
