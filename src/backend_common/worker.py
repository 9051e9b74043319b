"""Reusable periodic background worker for aiohttp services.

Usage::

    from backend_common.worker import BackgroundWorker, WorkerTask

    async def sweep(now: datetime) -> str | None:
        processed = await scheduler.sweep(now)
        return f"processed={processed}" if processed else None

    worker = BackgroundWorker(
        interval_seconds=30.0,
        tasks=[WorkerTask(name="webhook_sweep", fn=sweep)],
    )

    app.on_startup.append(worker.start)
    app.on_cleanup.append(worker.stop)

The same task list can be driven by an external scheduler through
:meth:`BackgroundWorker.run_once`.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence

import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

# A task receives the current UTC time and returns an optional summary
# string (logged when non-empty).
TaskFn = Callable[[datetime], Awaitable[str | None]]


@dataclass
class WorkerTask:
    """A named periodic task executed by :class:`BackgroundWorker`."""

    name: str
    fn: TaskFn


@dataclass
class TaskRun:
    """Outcome of one task within a single cycle."""

    name: str
    summary: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


_WORKER_TASK_KEY = "__background_worker_task__"


@dataclass
class BackgroundWorker:
    """In-process async worker that runs a list of tasks in a loop.

    Each task is executed independently: if one fails the others still run.
    Lifecycle is managed through :meth:`start` / :meth:`stop` which are
    compatible with ``app.on_startup`` / ``app.on_cleanup``.
    """

    interval_seconds: float = 30.0
    tasks: Sequence[WorkerTask] = field(default_factory=list)
    enabled: bool = True

    async def start(self, app: web.Application) -> None:
        """Create the worker asyncio task. Register with ``app.on_startup``."""
        if not self.enabled:
            logger.info("background_worker disabled")
            return
        app[_WORKER_TASK_KEY] = asyncio.create_task(self._loop())

    async def stop(self, app: web.Application) -> None:
        """Cancel the worker task. Register with ``app.on_cleanup``."""
        task = app.get(_WORKER_TASK_KEY)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run_once(self, now: datetime | None = None) -> list[TaskRun]:
        """Run every task once, in order, isolating failures."""
        now = now or datetime.now(timezone.utc)
        runs: list[TaskRun] = []
        for task in self.tasks:
            try:
                summary = await task.fn(now)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("background_task failed", task=task.name)
                runs.append(TaskRun(name=task.name, error=str(exc) or type(exc).__name__))
                continue
            if summary:
                logger.info("background_task completed", task=task.name, summary=summary)
            runs.append(TaskRun(name=task.name, summary=summary))
        return runs

    async def _loop(self) -> None:
        logger.info(
            "background_worker started",
            interval_seconds=self.interval_seconds,
            tasks=[t.name for t in self.tasks],
        )
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("background_worker stopped")
                raise
            except Exception:
                logger.exception("background_worker cycle failed")
