"""Background workers for webhook-service.

Each worker is a standalone module exporting a single async task function
compatible with :class:`backend_common.worker.WorkerTask`.

The :data:`worker` instance runs them in-process; the sweep endpoint drives
the same task list from an external scheduler via ``worker.run_once``.
Reclaim runs first so records freed from a crashed worker are due in the
same cycle.
"""
from __future__ import annotations

from backend_common.worker import BackgroundWorker, WorkerTask

from webhook_service.settings import settings
from webhook_service.workers.webhook_reclaim import webhook_reclaim_stale
from webhook_service.workers.webhook_sweep import webhook_sweep

worker = BackgroundWorker(
    interval_seconds=settings.webhook_sweep_interval_seconds,
    tasks=[
        WorkerTask(name="webhook_reclaim_stale", fn=webhook_reclaim_stale),
        WorkerTask(name="webhook_sweep", fn=webhook_sweep),
    ],
    enabled=settings.background_worker_enabled,
)

start_background_worker = worker.start
stop_background_worker = worker.stop

__all__ = [
    "worker",
    "start_background_worker",
    "stop_background_worker",
]
